"""
Unit tests for ECA rules.

Tests cover:
- Condition operators and dotted paths
- Rule evaluation per event
- Enabling and disabling rules
- YAML loading
"""

import os
import tempfile

import pytest

from retailhub.eca_server.apply.rules import (
    EcaRule,
    RuleCondition,
    RuleDefinitionError,
    RuleSet,
    default_rules,
    resolve_path,
)


class TestRuleCondition:
    """Tests for RuleCondition operators."""

    @pytest.mark.parametrize(
        "operator,value,payload,expected",
        [
            ("equals", "cash", {"method": "cash"}, True),
            ("equals", "cash", {"method": "card"}, False),
            ("contains", "rush", {"method": "rush order"}, True),
            ("contains", "b", {"method": ["a", "b"]}, True),
            ("greater", 0, {"method": 10}, True),
            ("greater", 0, {"method": "ten"}, False),
            ("less", 100, {"method": 99.5}, True),
            ("less", 100, {"method": True}, False),
            ("exists", None, {"method": "x"}, True),
            ("exists", None, {"method": ""}, False),
            ("exists", None, {}, False),
        ],
    )
    def test_operators(self, operator, value, payload, expected):
        """Each operator evaluates against the payload field."""
        assert RuleCondition("method", operator, value).holds(payload) is expected

    def test_unknown_operator(self):
        """Unknown operators are rejected at definition time."""
        with pytest.raises(RuleDefinitionError, match="Unknown operator"):
            RuleCondition("x", "between", [1, 2])

    def test_dotted_paths(self):
        """Paths follow nested objects and list indexes."""
        payload = {"items": [{"quantity": 3}], "customer": {"tier": "gold"}}

        assert resolve_path(payload, "items.0.quantity") == 3
        assert resolve_path(payload, "customer.tier") == "gold"
        assert RuleCondition("items.1.quantity", "exists").holds(payload) is False


class TestRuleSet:
    """Tests for RuleSet."""

    @pytest.fixture
    def rules(self):
        return RuleSet(default_rules())

    def test_default_rules_guard_adjustments(self, rules):
        """Stock adjustments without a reason violate a default rule."""
        violation = rules.evaluate("adjust_stock", {"quantity_delta": 5})

        assert violation is not None
        assert violation.rule.id == "adjust-stock-reason"
        assert violation.condition.field == "reason"

        assert rules.evaluate("adjust_stock", {"quantity_delta": 5, "reason": "count"}) is None

    def test_rules_only_apply_to_their_event(self, rules):
        """Other events are unaffected."""
        assert rules.evaluate("register_sale", {}) is None

    def test_disable_and_enable(self, rules):
        """Disabled rules are skipped until enabled again."""
        rules.disable("adjust-stock-reason")
        assert rules.evaluate("adjust_stock", {}) is None
        assert rules.stats() == {"loaded": 4, "enabled": 3}

        rules.enable("adjust-stock-reason")
        assert rules.evaluate("adjust_stock", {}) is not None

    def test_unknown_rule_id(self, rules):
        """Toggling an unknown rule raises KeyError."""
        with pytest.raises(KeyError):
            rules.disable("nope")

    def test_duplicate_rule_id(self, rules):
        """Rule ids are unique."""
        with pytest.raises(RuleDefinitionError):
            rules.add(EcaRule(id="damage-reason", name="dup", event="damage_product"))

    def test_rule_without_conditions_holds(self):
        """An empty condition list never rejects."""
        rules = RuleSet([EcaRule(id="r1", name="noop", event="register_sale")])
        assert rules.evaluate("register_sale", {}) is None

    def test_remove(self, rules):
        """Removed rules stop applying."""
        assert rules.remove("payment-positive-amount") is True
        assert rules.remove("payment-positive-amount") is False
        assert rules.evaluate("register_payment", {"amount": -1}) is None


class TestRuleFile:
    """Tests for loading rules from YAML."""

    @pytest.fixture
    def rules_file(self):
        """Temporary YAML rule file."""
        content = """
rules:
  - id: big-damage
    name: Large write-offs need approval
    event: damage_product
    conditions:
      - {field: quantity, operator: less, value: 100}
  - id: disabled
    event: adjust_stock
    enabled: false
    conditions:
      - {field: reason, operator: exists}
"""
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False) as f:
            f.write(content)
            path = f.name
        yield path
        os.unlink(path)

    def test_from_yaml(self, rules_file):
        """Rules, conditions and flags are loaded from YAML."""
        rules = RuleSet.from_yaml(rules_file)

        assert rules.stats() == {"loaded": 2, "enabled": 1}
        assert rules.get("disabled").name == "disabled"
        assert rules.evaluate("damage_product", {"quantity": 500}).rule.id == "big-damage"
        assert rules.evaluate("damage_product", {"quantity": 5}) is None
        assert rules.evaluate("adjust_stock", {}) is None

    def test_malformed_rule(self):
        """A rule without event is rejected."""
        with pytest.raises(RuleDefinitionError, match="Malformed"):
            EcaRule.from_dict({"id": "x"})
