# envfile.py
# Plain `name=value` text: the only format facts and job outputs take when
# they leave the process that produced them.
#
# Accepted forms (one entry per line):
#   name=value
#   name<<DELIM        multi-line value, terminated by a line equal to DELIM
#   ...
#   DELIM
# Blank lines and lines starting with '#' are ignored.

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Iterable, Mapping, Tuple

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


class EnvFileError(ValueError):
    """Raised for malformed name=value text."""


def _check_name(name: str, lineno: int) -> str:
    if not _NAME_RE.match(name):
        raise EnvFileError(f"line {lineno}: invalid name {name!r}")
    return name


def parse_pairs(text: str) -> Iterable[Tuple[str, str]]:
    """Yield (name, value) pairs in file order."""
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        lineno = i + 1
        i += 1

        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            name = _check_name(name.strip(), lineno)
            delim = delim.strip()
            if not delim:
                raise EnvFileError(f"line {lineno}: empty heredoc delimiter for {name!r}")
            body = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise EnvFileError(f"line {lineno}: unterminated heredoc for {name!r} (expected {delim!r})")
            i += 1  # consume delimiter
            yield name, "\n".join(body)
            continue

        if "=" not in line:
            raise EnvFileError(f"line {lineno}: expected name=value, got {line!r}")
        name, value = line.split("=", 1)
        yield _check_name(name.strip(), lineno), value


def parse(text: str) -> Dict[str, str]:
    """Parse text into a dict. Later entries win, like appending to $GITHUB_OUTPUT."""
    out: Dict[str, str] = {}
    for name, value in parse_pairs(text):
        out[name] = value
    return out


def read(path: str | Path) -> Dict[str, str]:
    p = Path(path)
    if not p.exists():
        return {}
    return parse(p.read_text(encoding="utf-8"))


def dump(values: Mapping[str, str]) -> str:
    lines = []
    for name, value in values.items():
        _check_name(name, 0)
        value = str(value)
        if "\n" in value:
            delim = "GATECI_EOF"
            while delim in value.splitlines():
                delim += "_"
            lines.append(f"{name}<<{delim}")
            lines.append(value)
            lines.append(delim)
        else:
            lines.append(f"{name}={value}")
    return "\n".join(lines) + ("\n" if lines else "")
