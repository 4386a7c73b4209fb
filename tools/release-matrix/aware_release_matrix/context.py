"""Trigger context captured once per release-matrix invocation."""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConditionEvaluationError, ConfigurationError


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"
    MERGE_GROUP = "merge_group"


class RefKind(str, Enum):
    BRANCH = "branch"
    TAG = "tag"


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_CONTEXT_FIELDS = ("event", "ref_name", "ref_kind", "repository_owner", "sha")


def to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


class TriggerContext(BaseModel):
    """Immutable description of the event that started the run."""

    event: EventKind
    ref_name: str
    ref_kind: RefKind = RefKind.BRANCH
    repository_owner: str
    inputs: Dict[str, bool] = Field(default_factory=dict)
    sha: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    def lookup(self, name: str) -> object:
        """Return the value of a predicate field, failing on unknown names."""

        if name.startswith("inputs."):
            key = name[len("inputs.") :]
            if key not in self.inputs:
                raise ConditionEvaluationError(
                    f"Predicate references undeclared dispatch input '{key}'. "
                    f"Declared inputs: {', '.join(sorted(self.inputs)) or 'none'}."
                )
            return self.inputs[key]
        if name in _CONTEXT_FIELDS:
            value = getattr(self, name)
            return value.value if isinstance(value, Enum) else value
        raise ConditionEvaluationError(f"Unknown context field '{name}' in predicate.")

    def with_input_defaults(self, declared: Mapping[str, bool]) -> "TriggerContext":
        """Return a copy whose inputs also carry defaults for every declared input."""

        missing = [name for name in declared if name not in self.inputs]
        if not missing:
            return self
        return self.model_copy(update={"inputs": resolve_inputs(self.inputs, declared)})

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        declared_inputs: Optional[Mapping[str, bool]] = None,
    ) -> "TriggerContext":
        """Build a context from GitHub Actions environment variables."""

        env = os.environ if environ is None else environ
        event_name = env.get("GITHUB_EVENT_NAME")
        if not event_name:
            raise ConfigurationError("GITHUB_EVENT_NAME is not set; cannot derive trigger context.")

        payload = _read_event_payload(env.get("GITHUB_EVENT_PATH"))
        raw_inputs = payload.get("inputs") or {}
        if not isinstance(raw_inputs, dict):
            raise ConfigurationError("Event payload 'inputs' must be an object.")

        try:
            return cls(
                event=event_name,
                ref_name=env.get("GITHUB_REF_NAME", ""),
                ref_kind=env.get("GITHUB_REF_TYPE") or RefKind.BRANCH,
                repository_owner=env.get("GITHUB_REPOSITORY_OWNER", ""),
                inputs=resolve_inputs(raw_inputs, declared_inputs or {}),
                sha=env.get("GITHUB_SHA"),
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid trigger context: {exc}") from exc


def resolve_inputs(provided: Mapping[str, object], declared: Mapping[str, bool]) -> Dict[str, bool]:
    """Merge provided dispatch inputs over declared defaults."""

    resolved: Dict[str, bool] = {name: bool(default) for name, default in declared.items()}
    for name, value in provided.items():
        resolved[name] = to_bool(value)
    return resolved


def _read_event_payload(path: Optional[str]) -> Dict[str, object]:
    if not path:
        return {}
    event_path = Path(path)
    if not event_path.exists():
        return {}
    try:
        payload = json.loads(event_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid event payload at {event_path}: {exc}") from exc
    return payload if isinstance(payload, dict) else {}


__all__ = ["EventKind", "RefKind", "TriggerContext", "resolve_inputs", "to_bool"]
