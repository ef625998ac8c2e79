from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

# Lowest-priority static flags; the workflow file, the environment and the
# CLI override them in that order.
DEFAULT_FLAGS: Dict[str, bool] = {"publishDocs": True}

# env var -> flag name
ENV_FLAGS = {
    "GATECI_PUBLISH_DOCS": "publishDocs",
}


def _env_bool(value: str, name: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be true/false, got {value!r}")


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    main_branch: str = "master"
    # only flags that were set in the environment
    flags: Dict[str, bool] = field(default_factory=dict)
    workers: int = field(default_factory=default_workers)
    work_dir: str = ".gateci"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        flags = {
            flag: _env_bool(env[var], var)
            for var, flag in ENV_FLAGS.items()
            if env.get(var)
        }
        workers = int(env["GATECI_WORKERS"]) if env.get("GATECI_WORKERS") else default_workers()
        if workers < 1:
            raise ValueError(f"GATECI_WORKERS must be >= 1, got {workers}")
        return cls(
            main_branch=env.get("GATECI_MAIN_BRANCH") or "master",
            flags=flags,
            workers=workers,
            work_dir=env.get("GATECI_WORK_DIR") or ".gateci",
        )


def parse_flag(text: str) -> tuple[str, bool]:
    """'publishDocs=false' -> ('publishDocs', False)"""
    if "=" not in text:
        raise ValueError(f"Flag must look like name=true|false, got {text!r}")
    name, value = text.split("=", 1)
    name = name.strip()
    if not name:
        raise ValueError(f"Flag name missing in {text!r}")
    return name, _env_bool(value, name)


def resolve_flags(
    workflow_flags: Optional[Mapping[str, bool]],
    settings: Settings,
    cli_flags: Optional[Mapping[str, bool]] = None,
) -> Dict[str, bool]:
    flags = dict(DEFAULT_FLAGS)
    flags.update(workflow_flags or {})
    flags.update(settings.flags)
    flags.update(cli_flags or {})
    return flags
