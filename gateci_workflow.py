# gateci_workflow.py
# Test, build docs and release gateci itself.
#
# Facts available to every gate (computed once per run):
#   facts.masterPush           push to refs/heads/master
#   facts.isPrTargetingMaster  pull request whose base is master
#   facts.publishDocs          static flag, see FLAGS below
from __future__ import annotations

from gateci import wf, job, sh, matrix

# set to False to disable docs publishing (or --flag publishDocs=false)
FLAGS = {"publishDocs": True}

PYTHON_VERSIONS = ["3.11"]


def _tests(py: str):
    return job(
        f"tests-py{py}",
        sh("Python version", "python3 --version"),
        sh("Install dependencies", "python3 -m pip install -e '.[test]'"),
        sh("Log facts", 'echo "$IS_PR_TARGETING_MASTER" "$MASTER_PUSH"'),
        sh("Run tests", "python3 -m pytest -q --junitxml=tests/results/junit.xml"),
        sh("Keep results on failure", "ls tests/results", if_="failure()"),
        sh("Report success", "echo tests passed", if_="success()"),
    )


def workflow():
    tests = matrix("py", PYTHON_VERSIONS)
    test_jobs = tests.names(lambda v: f"tests-py{v}")

    return wf(
        tests.jobs(_tests),

        job(
            "docs",
            sh("Build docs", "python3 -m pip install -e . && echo 'docs built'"),
            sh(
                "Deploy dev docs",
                "echo deploying dev docs",
                if_="!facts.masterPush",
                timeout=300,
            ),
            needs=test_jobs,
            if_="facts.publishDocs",
        ),

        # docs may be skipped by its flag; deploy still runs as long as
        # nothing upstream failed and the run was not cancelled
        job(
            "deploy",
            sh("Build dist", "python3 -m pip wheel --no-deps -w dist ."),
            sh("Deploy prod docs", "echo deploying prod docs", if_="facts.publishDocs", timeout=300),
            sh("Publish package", "echo publishing dist/*"),
            needs=test_jobs + ["docs"],
            if_="always() && !cancelled() && !failure() && facts.masterPush",
        ),

        job(
            "make_github_tag_and_release",
            sh(
                "Get new version",
                "VERSION=$(python3 -c 'from importlib.metadata import version; print(version(\"gateci\"))') && "
                'echo "version=$VERSION" >> "$GATECI_OUTPUT" && '
                'echo "tag=v$VERSION" >> "$GATECI_OUTPUT"',
            ),
            sh("Echo version", "echo releasing"),
            needs=["deploy"],
            if_="facts.masterPush",
            outputs=["tag", "version"],
        ),
    )
