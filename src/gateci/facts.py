# facts.py
# Run-level facts: named booleans computed exactly once, before any gate is
# evaluated, then handed (read-only) to every gate and every job launch.

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from . import envfile


class FactError(Exception):
    """Fact computation failed. The run must not start."""


class TriggerEvent(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"
    SCHEDULE = "schedule"


@dataclass(frozen=True)
class Trigger:
    """What started the run."""
    event: TriggerEvent
    ref: str
    base_ref: Optional[str] = None

    @classmethod
    def create(cls, event: str, ref: str, base_ref: Optional[str] = None) -> Trigger:
        try:
            ev = TriggerEvent(event)
        except ValueError:
            known = ", ".join(e.value for e in TriggerEvent)
            raise FactError(f"Unknown trigger event {event!r} (known: {known})") from None
        if not ref:
            raise FactError("Trigger ref must be a non-empty string")
        return cls(event=ev, ref=ref, base_ref=base_ref or None)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Trigger:
        """
        Read trigger metadata from the environment.

        GATECI_* variables win; GITHUB_* ones are accepted so a run can be
        driven from inside an Actions job.
        """
        env = os.environ if environ is None else environ
        event = env.get("GATECI_EVENT") or env.get("GITHUB_EVENT_NAME")
        ref = env.get("GATECI_REF") or env.get("GITHUB_REF")
        base_ref = env.get("GATECI_BASE_REF") or env.get("GITHUB_BASE_REF")
        if not event or not ref:
            raise FactError(
                "Trigger metadata missing from environment "
                "(set GATECI_EVENT and GATECI_REF)"
            )
        return cls.create(event, ref, base_ref)

    @classmethod
    def from_git(cls) -> Trigger:
        """Treat the local checkout as a push of the current branch."""
        from .git_facts.git import current_branch

        try:
            branch = current_branch()
        except Exception as e:
            raise FactError(f"Could not read current git branch: {e}") from e
        return cls.create(TriggerEvent.PUSH.value, f"refs/heads/{branch}")


FactRule = Callable[[Trigger], bool]


def default_rules(main_branch: str = "master") -> Dict[str, FactRule]:
    return {
        "masterPush": lambda t: (
            t.event is TriggerEvent.PUSH and t.ref == f"refs/heads/{main_branch}"
        ),
        "isPrTargetingMaster": lambda t: (
            t.event is TriggerEvent.PULL_REQUEST and t.base_ref == main_branch
        ),
    }


def env_name(fact: str) -> str:
    """masterPush -> MASTER_PUSH, publish-docs -> PUBLISH_DOCS"""
    s = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", fact)
    return re.sub(r"[^A-Za-z0-9]", "_", s).upper()


def _to_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise FactError(f"Fact {name!r} must be a boolean, got {value!r}")


class FactSet(Mapping[str, bool]):
    """
    Immutable, ordered name -> bool mapping.

    Values are real booleans; text ("true"/"false") only appears when the
    set is serialized for another process or host.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, bool] | List[Tuple[str, bool]] = ()):
        pairs = list(items.items()) if isinstance(items, Mapping) else list(items)
        seen: Dict[str, bool] = {}
        for name, value in pairs:
            if name in seen:
                raise FactError(f"Fact {name!r} defined twice")
            seen[name] = _to_bool(name, value)
        object.__setattr__(self, "_items", tuple(seen.items()))

    def __setattr__(self, key, value):
        raise AttributeError("FactSet is read-only")

    def __getitem__(self, name: str) -> bool:
        for k, v in self._items:
            if k == name:
                return v
        raise KeyError(name)

    def __iter__(self) -> Iterator[str]:
        return (k for k, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={'true' if v else 'false'}" for k, v in self._items)
        return f"FactSet({inner})"

    def __eq__(self, other) -> bool:
        if isinstance(other, FactSet):
            return self._items == other._items
        if isinstance(other, Mapping):
            return dict(self._items) == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._items)

    # ---- boundary serialization ----

    def to_text(self) -> str:
        return envfile.dump({k: "true" if v else "false" for k, v in self._items})

    @classmethod
    def from_text(cls, text: str) -> FactSet:
        try:
            pairs = list(envfile.parse_pairs(text))
        except envfile.EnvFileError as e:
            raise FactError(f"Malformed facts text: {e}") from e
        parsed = []
        for name, value in pairs:
            # the text form is exactly "true" or "false"
            if value not in ("true", "false"):
                raise FactError(f"Fact {name!r} must be a boolean ('true' or 'false'), got {value!r}")
            parsed.append((name, value == "true"))
        return cls(parsed)

    def to_dict(self) -> Dict[str, bool]:
        return dict(self._items)

    def to_env(self) -> Dict[str, str]:
        return {env_name(k): "true" if v else "false" for k, v in self._items}


def compute_facts(
    trigger: Trigger,
    *,
    main_branch: str = "master",
    flags: Optional[Mapping[str, bool]] = None,
    rules: Optional[Mapping[str, FactRule]] = None,
) -> FactSet:
    """
    Compute the run's facts from trigger metadata plus static flags.

    Raises FactError on any problem; callers must abort the run rather than
    continue with partial facts.
    """
    if not isinstance(trigger, Trigger):
        raise FactError(f"Expected a Trigger, got {type(trigger).__name__}")

    all_rules = dict(default_rules(main_branch))
    if rules:
        all_rules.update(rules)

    pairs: List[Tuple[str, bool]] = []
    for name, rule in all_rules.items():
        try:
            value = rule(trigger)
        except Exception as e:
            raise FactError(f"Fact {name!r} could not be computed: {e}") from e
        if not isinstance(value, bool):
            raise FactError(f"Fact {name!r} rule returned {value!r}, expected bool")
        pairs.append((name, value))

    for name, value in (flags or {}).items():
        if name in all_rules:
            raise FactError(f"Flag {name!r} collides with a computed fact")
        pairs.append((name, _to_bool(name, value)))

    return FactSet(pairs)
