"""Tests for the CONDITION expression language."""

import pytest

from core.exceptions import ConditionSyntaxError
from workflow.conditions import BoolOp, Compare, Var, evaluate_condition, parse_condition


@pytest.mark.unit
class TestStringConditions:
    def test_numeric_comparison(self):
        assert evaluate_condition("amount > 1000", {"amount": 1500}) is True
        assert evaluate_condition("amount > 1000", {"amount": 10}) is False

    def test_brace_tokens_are_variables(self):
        assert evaluate_condition("{{status}} == 'approved'", {"status": "approved"}) is True
        assert evaluate_condition("'{{status}}' == 'approved'", {"status": "approved"}) is True

    def test_operators_inside_string_literals_are_kept(self):
        assert evaluate_condition("status == 'a||b'", {"status": "a||b"}) is True
        assert evaluate_condition("name == 'x && y'", {"name": "x && y"}) is True
        assert evaluate_condition("note == '!{{ok}}'", {"note": "!{{ok}}"}) is True
        assert evaluate_condition("label === \"a===b\"", {"label": "a===b"}) is True

    def test_javascript_spellings(self):
        assert evaluate_condition("a === 1 && b !== 2", {"a": 1, "b": 3}) is True
        assert evaluate_condition("a === 2 || b === 3", {"a": 1, "b": 3}) is True

    def test_boolean_operators(self):
        context = {"amount": 50, "urgent": True}
        assert evaluate_condition("amount < 100 and urgent", context) is True
        assert evaluate_condition("not urgent", context) is False

    def test_chained_comparison(self):
        assert evaluate_condition("1 < level <= 5", {"level": 5}) is True
        assert evaluate_condition("1 < level <= 5", {"level": 6}) is False

    def test_membership(self):
        assert evaluate_condition("dept in ['finance', 'legal']", {"dept": "legal"}) is True
        assert evaluate_condition("dept not in ['finance', 'legal']", {"dept": "it"}) is True

    def test_missing_name_is_none(self):
        assert evaluate_condition("missing == None", {}) is True
        assert evaluate_condition("missing == null", {}) is True

    def test_incompatible_types_are_false(self):
        assert evaluate_condition("missing > 5", {}) is False
        assert evaluate_condition("amount > 'x'", {"amount": 5}) is False

    def test_named_literals(self):
        assert evaluate_condition("flag == true", {"flag": True}) is True
        assert evaluate_condition("flag == false", {"flag": True}) is False

    def test_negative_numbers(self):
        assert evaluate_condition("balance < -10", {"balance": -20}) is True

    def test_parse_builds_closed_tree(self):
        tree = parse_condition("a > 1 and b == 'x'")
        assert isinstance(tree, BoolOp)
        assert tree.op == "and"
        assert isinstance(tree.operands[0], Compare)
        assert tree.operands[0].left == Var("a")

    @pytest.mark.parametrize("source", [
        "__import__('os').system('echo hi')",
        "user.name == 'x'",
        "amount + 1 > 2",
        "items[0] == 1",
        "(lambda: 1)()",
        "",
        "a ==",
    ])
    def test_rejects_anything_outside_the_language(self, source):
        with pytest.raises(ConditionSyntaxError):
            evaluate_condition(source, {"amount": 1, "a": 1})


@pytest.mark.unit
class TestStructuredConditions:
    def test_all_any_not(self):
        condition = {
            "all": [
                {"var": "amount", "op": "gt", "value": 100},
                {"not": {"var": "status", "op": "eq", "value": "draft"}},
                {"any": [
                    {"var": "region", "op": "in", "value": ["eu", "us"]},
                    {"var": "vip", "op": "eq", "value": True},
                ]},
            ]
        }
        assert evaluate_condition(condition, {"amount": 500, "status": "open", "region": "eu"}) is True
        assert evaluate_condition(condition, {"amount": 500, "status": "draft", "region": "eu"}) is False

    def test_contains_is_case_insensitive_for_strings(self):
        condition = {"var": "title", "op": "contains", "value": "URGENT"}
        assert evaluate_condition(condition, {"title": "an urgent fix"}) is True

    def test_contains_on_lists(self):
        condition = {"var": "tags", "op": "contains", "value": "ops"}
        assert evaluate_condition(condition, {"tags": ["dev", "ops"]}) is True

    def test_default_operator_is_eq(self):
        assert evaluate_condition({"var": "x", "value": 1}, {"x": 1}) is True

    def test_unknown_operator(self):
        with pytest.raises(ConditionSyntaxError):
            evaluate_condition({"var": "x", "op": "matches", "value": ".*"}, {"x": "a"})

    def test_unrecognised_shape(self):
        with pytest.raises(ConditionSyntaxError):
            evaluate_condition({"when": "x"}, {})

    def test_boolean_literal_condition(self):
        assert evaluate_condition(True, {}) is True
        assert evaluate_condition(False, {}) is False
