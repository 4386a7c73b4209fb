"""Boolean gating predicates evaluated over a trigger context.

Predicates are small immutable trees. They are either built in Python::

    Eq("repository_owner", "subspace") & Eq("event", "push")

or parsed from the mapping form used by configuration files::

    {"all": [{"eq": ["repository_owner", "subspace"]}, {"eq": ["event", "push"]}]}

Evaluation never guesses: a reference to a field that neither the context nor
the matrix entry defines raises :class:`ConditionEvaluationError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional, Sequence, Tuple

from .context import TriggerContext, to_bool
from .errors import ConditionEvaluationError

logger = logging.getLogger(__name__)

Resolver = Callable[[str], object]

ENTRY_FIELDS = ("platform", "target", "profile", "cross_compile")


class Predicate:
    def evaluate(self, resolve: Resolver) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def __and__(self, other: "Predicate") -> "All":
        return All((self, other))

    def __or__(self, other: "Predicate") -> "Any":
        return Any((self, other))

    def __invert__(self) -> "Not":
        return Not(self)


def _normalize(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(frozen=True)
class Always(Predicate):
    value: bool = True

    def evaluate(self, resolve: Resolver) -> bool:
        return self.value

    def __str__(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class Eq(Predicate):
    field: str
    value: object

    def evaluate(self, resolve: Resolver) -> bool:
        return _normalize(resolve(self.field)) == _normalize(self.value)

    def __str__(self) -> str:
        return f"{self.field} == {_normalize(self.value)!r}"


@dataclass(frozen=True)
class Ne(Predicate):
    field: str
    value: object

    def evaluate(self, resolve: Resolver) -> bool:
        return _normalize(resolve(self.field)) != _normalize(self.value)

    def __str__(self) -> str:
        return f"{self.field} != {_normalize(self.value)!r}"


@dataclass(frozen=True)
class Truthy(Predicate):
    field: str

    def evaluate(self, resolve: Resolver) -> bool:
        return to_bool(resolve(self.field))

    def __str__(self) -> str:
        return self.field


@dataclass(frozen=True)
class Not(Predicate):
    operand: Predicate

    def evaluate(self, resolve: Resolver) -> bool:
        return not self.operand.evaluate(resolve)

    def __str__(self) -> str:
        return f"!({self.operand})"


@dataclass(frozen=True)
class All(Predicate):
    operands: Tuple[Predicate, ...]

    def evaluate(self, resolve: Resolver) -> bool:
        for operand in self.operands:
            if not operand.evaluate(resolve):
                return False
        return True

    def __str__(self) -> str:
        return "(" + " && ".join(str(operand) for operand in self.operands) + ")"


@dataclass(frozen=True)
class Any(Predicate):
    operands: Tuple[Predicate, ...]

    def evaluate(self, resolve: Resolver) -> bool:
        for operand in self.operands:
            if operand.evaluate(resolve):
                return True
        return False

    def __str__(self) -> str:
        return "(" + " || ".join(str(operand) for operand in self.operands) + ")"


def parse_predicate(data: object) -> Predicate:
    """Parse the configuration-file form of a predicate."""

    if isinstance(data, Predicate):
        return data
    if isinstance(data, bool):
        return Always(data)
    if not isinstance(data, Mapping) or len(data) != 1:
        raise ConditionEvaluationError(f"Predicate must be a boolean or a single-key mapping (got {data!r}).")

    (operator, operand), = data.items()
    operator = str(operator).lower()
    if operator in ("eq", "ne"):
        field, value = _parse_comparison(operator, operand)
        return Eq(field, value) if operator == "eq" else Ne(field, value)
    if operator == "truthy":
        if not isinstance(operand, str) or not operand:
            raise ConditionEvaluationError(f"'truthy' expects a field name (got {operand!r}).")
        return Truthy(operand)
    if operator == "not":
        return Not(parse_predicate(operand))
    if operator in ("all", "any"):
        if not isinstance(operand, Sequence) or isinstance(operand, str) or not operand:
            raise ConditionEvaluationError(f"'{operator}' expects a non-empty list of predicates.")
        operands = tuple(parse_predicate(item) for item in operand)
        return All(operands) if operator == "all" else Any(operands)
    raise ConditionEvaluationError(f"Unknown predicate operator '{operator}'.")


def _parse_comparison(operator: str, operand: object) -> tuple[str, object]:
    if isinstance(operand, Mapping):
        field = operand.get("field")
        if "value" not in operand:
            raise ConditionEvaluationError(f"'{operator}' mapping requires 'field' and 'value'.")
        value = operand["value"]
    elif isinstance(operand, Sequence) and not isinstance(operand, str) and len(operand) == 2:
        field, value = operand
    else:
        raise ConditionEvaluationError(f"'{operator}' expects [field, value] (got {operand!r}).")
    if not isinstance(field, str) or not field:
        raise ConditionEvaluationError(f"'{operator}' field must be a non-empty string.")
    return field, value


class ConditionEvaluator:
    """Evaluates predicates against a context and an optional matrix entry."""

    def evaluate(
        self,
        predicate: Predicate,
        context: TriggerContext,
        entry: Optional[Mapping[str, object]] = None,
    ) -> bool:
        def resolve(name: str) -> object:
            if name in ENTRY_FIELDS:
                if entry is None:
                    raise ConditionEvaluationError(
                        f"Field '{name}' is only available to matrix-entry predicates."
                    )
                return entry[name]
            return context.lookup(name)

        result = predicate.evaluate(resolve)
        logger.debug("Predicate %s evaluated to %s", predicate, result)
        return result


__all__ = [
    "All",
    "Always",
    "Any",
    "ConditionEvaluator",
    "ENTRY_FIELDS",
    "Eq",
    "Ne",
    "Not",
    "Predicate",
    "Truthy",
    "parse_predicate",
]
