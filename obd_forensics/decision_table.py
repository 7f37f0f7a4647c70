"""Ordered decision tables: classification rules as data.

A :class:`DecisionTable` is a list of :class:`Rule` rows evaluated top
to bottom; the first row whose conditions all hold wins.  A condition
maps a feature name to one of:

* ``(low, high)``  -- half-open numeric range ``[low, high)``; either end
  may be ``None`` for "unbounded".
* a ``frozenset``  -- the feature must be one of the members.
* anything else    -- exact equality.

A feature that is missing or ``None`` never satisfies a condition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, Optional, Sequence, Tuple, TypeVar

V = TypeVar("V")

Range = Tuple[Optional[float], Optional[float]]


def _holds(value: Any, condition: Any) -> bool:
    if value is None:
        return False
    if isinstance(condition, tuple) and len(condition) == 2:
        low, high = condition
        if low is not None and value < low:
            return False
        if high is not None and value >= high:
            return False
        return True
    if isinstance(condition, frozenset):
        return value in condition
    return value == condition


@dataclass(frozen=True)
class Rule(Generic[V]):
    """One row: *outcome* applies when every condition in *when* holds."""

    name: str
    outcome: V
    when: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, features: Mapping[str, Any]) -> bool:
        return all(_holds(features.get(k), c) for k, c in self.when.items())


class DecisionTable(Generic[V]):
    """First-match-wins evaluation over ordered rules."""

    def __init__(self, rules: Sequence[Rule[V]], default: V) -> None:
        self.rules: Tuple[Rule[V], ...] = tuple(rules)
        self.default = default

    def match(self, features: Mapping[str, Any]) -> Optional[Rule[V]]:
        for rule in self.rules:
            if rule.matches(features):
                return rule
        return None

    def evaluate(self, features: Mapping[str, Any]) -> V:
        rule = self.match(features)
        return self.default if rule is None else rule.outcome
