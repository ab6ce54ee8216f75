"""
ECA (Event-Condition-Action) rules.

A rule binds an event (an action name) to a list of conditions on the
action payload. Before an action writes anything, every enabled rule for
that action is evaluated; if one does not hold, the action is rejected
with PreconditionError.

Rule file format (YAML):

    rules:
      - id: adjust-stock-needs-reason
        name: Stock adjustments carry a reason
        event: adjust_stock
        conditions:
          - {field: reason, operator: exists}
      - id: large-damage
        event: damage_product
        enabled: false
        conditions:
          - {field: quantity, operator: less, value: 1000}

Invariants:
    - Conditions are pure functions of the payload (no store access)
    - A rule with no conditions always holds
    - Rule ids are unique within a RuleSet

How to change safely:
    - New operators must be added to OPERATORS and documented above
    - Disabling a rule is preferred over removing it
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

_MISSING = object()


class RuleDefinitionError(Exception):
    """Rule definition is malformed."""
    pass


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(actual: Any, expected: Any) -> bool:
    return actual is not _MISSING and actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if actual is _MISSING or actual is None:
        return False
    if isinstance(actual, str):
        return str(expected) in actual
    try:
        return expected in actual
    except TypeError:
        return False


def _greater(actual: Any, expected: Any) -> bool:
    a, e = _as_number(actual), _as_number(expected)
    return a is not None and e is not None and a > e


def _less(actual: Any, expected: Any) -> bool:
    a, e = _as_number(actual), _as_number(expected)
    return a is not None and e is not None and a < e


def _exists(actual: Any, expected: Any) -> bool:
    return actual is not _MISSING and actual is not None and actual != ""


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "contains": _contains,
    "greater": _greater,
    "less": _less,
    "exists": _exists,
}


def resolve_path(payload: Dict[str, Any], path: str) -> Any:
    """Follow a dotted path into nested dicts (list indexes allowed)."""
    current: Any = payload
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


@dataclass(frozen=True)
class RuleCondition:
    """One condition: payload[field] <operator> value."""

    field: str
    operator: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.operator not in OPERATORS:
            raise RuleDefinitionError(
                f"Unknown operator '{self.operator}' (supported: {', '.join(OPERATORS)})"
            )

    def holds(self, payload: Dict[str, Any]) -> bool:
        return OPERATORS[self.operator](resolve_path(payload, self.field), self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass
class EcaRule:
    """An event-condition rule.

    Attributes:
        id: Unique rule identifier
        name: Human readable name
        event: Action name the rule applies to
        conditions: Conditions that must all hold
        enabled: Whether the rule is evaluated
        description: Free-form description
    """

    id: str
    name: str
    event: str
    conditions: Tuple[RuleCondition, ...] = ()
    enabled: bool = True
    description: str = ""

    def failing_condition(self, payload: Dict[str, Any]) -> Optional[RuleCondition]:
        for condition in self.conditions:
            if not condition.holds(payload):
                return condition
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EcaRule:
        try:
            return cls(
                id=str(data["id"]),
                name=str(data.get("name") or data["id"]),
                event=str(data["event"]),
                conditions=tuple(
                    RuleCondition(
                        field=str(c["field"]),
                        operator=str(c["operator"]),
                        value=c.get("value"),
                    )
                    for c in data.get("conditions") or []
                ),
                enabled=bool(data.get("enabled", True)),
                description=str(data.get("description") or ""),
            )
        except (KeyError, TypeError) as e:
            raise RuleDefinitionError(f"Malformed rule definition {data!r}: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "event": self.event,
            "conditions": [c.to_dict() for c in self.conditions],
            "enabled": self.enabled,
            "description": self.description,
        }


@dataclass
class RuleViolation:
    """The rule and condition that rejected a payload."""

    rule: EcaRule
    condition: RuleCondition


class RuleSet:
    """Mutable collection of ECA rules, safe for concurrent reads."""

    def __init__(self, rules: Optional[List[EcaRule]] = None) -> None:
        self._rules: Dict[str, EcaRule] = {}
        self._lock = threading.Lock()
        for rule in rules or []:
            self.add(rule)

    def __iter__(self) -> Iterator[EcaRule]:
        return iter(list(self._rules.values()))

    def __len__(self) -> int:
        return len(self._rules)

    def add(self, rule: EcaRule) -> None:
        with self._lock:
            if rule.id in self._rules:
                raise RuleDefinitionError(f"Rule '{rule.id}' already loaded")
            self._rules[rule.id] = rule

    def remove(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def enable(self, rule_id: str) -> None:
        self._set_enabled(rule_id, True)

    def disable(self, rule_id: str) -> None:
        self._set_enabled(rule_id, False)

    def _set_enabled(self, rule_id: str, enabled: bool) -> None:
        with self._lock:
            if rule_id not in self._rules:
                raise KeyError(rule_id)
            self._rules[rule_id].enabled = enabled
        logger.info(f"Rule {rule_id} {'enabled' if enabled else 'disabled'}")

    def get(self, rule_id: str) -> Optional[EcaRule]:
        return self._rules.get(rule_id)

    def rules_for(self, event: str) -> List[EcaRule]:
        """Enabled rules bound to an event."""
        return [rule for rule in self if rule.enabled and rule.event == event]

    def evaluate(self, event: str, payload: Dict[str, Any]) -> Optional[RuleViolation]:
        """Return the first violated rule for the event, or None."""
        for rule in self.rules_for(event):
            condition = rule.failing_condition(payload)
            if condition is not None:
                return RuleViolation(rule=rule, condition=condition)
        return None

    def stats(self) -> Dict[str, int]:
        rules = list(self)
        return {"loaded": len(rules), "enabled": sum(1 for r in rules if r.enabled)}

    @classmethod
    def from_yaml(cls, path: str) -> RuleSet:
        """Load rules from a YAML file (see module docstring for format)."""
        with Path(path).open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict) or not isinstance(data.get("rules", []), list):
            raise RuleDefinitionError(f"{path}: expected a mapping with a 'rules' list")
        rule_set = cls([EcaRule.from_dict(item) for item in data.get("rules", [])])
        logger.info(f"Loaded {len(rule_set)} ECA rules from {path}")
        return rule_set


def default_rules() -> List[EcaRule]:
    """Rules installed when no rule file is configured."""
    return [
        EcaRule(
            id="adjust-stock-reason",
            name="Stock adjustments carry a reason",
            event="adjust_stock",
            conditions=(RuleCondition("reason", "exists"),),
        ),
        EcaRule(
            id="damage-reason",
            name="Damaged product write-offs carry a reason",
            event="damage_product",
            conditions=(RuleCondition("reason", "exists"),),
        ),
        EcaRule(
            id="expire-reason",
            name="Expired product write-offs carry a reason",
            event="expire_product",
            conditions=(RuleCondition("reason", "exists"),),
        ),
        EcaRule(
            id="payment-positive-amount",
            name="Payments have a positive amount",
            event="register_payment",
            conditions=(RuleCondition("amount", "greater", 0),),
        ),
    ]
