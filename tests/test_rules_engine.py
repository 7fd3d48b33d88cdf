import pytest

from product_options.rules_engine import (
    ExpressionParseError,
    RuleEngine,
    build_condition_expression,
    compile_expression,
    describe_rule,
    evaluate_expression,
    evaluate_rules,
    extract_expression_variables,
)
from product_options.snapshot import parse_snapshot
from product_options.value_store import MultiSelectValue, ScalarValue, ValueStore


def build_snapshot(rules):
    return parse_snapshot(
        {
            "template": {
                "id": "t1",
                "name": "Apparel",
                "fields": [
                    {"id": "1", "name": "color", "label": "Color", "type": "select", "options": ["Red", "Blue"]},
                    {"id": "2", "name": "size", "label": "Size", "type": "radio", "options": ["Small", "Large"]},
                    {"id": "3", "name": "sizes", "label": "Sizes", "type": "checkbox", "options": ["Small", "Large"]},
                    {"id": "4", "name": "engraving", "label": "Engraving", "type": "text"},
                ],
                "rules": rules,
            }
        }
    )


def test_compound_expression_needs_every_condition() -> None:
    expression = 'color == "Red" && size == "Large"'
    assert evaluate_expression(expression, {"color": "Red", "size": "Large"}) is True
    assert evaluate_expression(expression, {"color": "Red", "size": "Small"}) is False
    assert evaluate_expression(expression, {"color": "Blue", "size": "Large"}) is False


def test_or_and_parentheses() -> None:
    expression = '(color == "Red" || color == "Blue") && engraving'
    assert evaluate_expression(expression, {"color": "Blue", "engraving": "Hi"}) is True
    assert evaluate_expression(expression, {"color": "Blue", "engraving": "  "}) is False
    assert evaluate_expression('color != "Red"', {"color": "Blue"}) is True


def test_includes_on_multi_valued_field() -> None:
    assert evaluate_expression('sizes includes "Large"', {"sizes": ["Small", "Large"]}) is True
    assert evaluate_expression('sizes includes "Large"', {"sizes": ["Small"]}) is False
    assert evaluate_expression('sizes includes "Large"', {"sizes": []}) is False


def test_multi_valued_equality_ignores_order() -> None:
    assert evaluate_expression('sizes == "Large"', {"sizes": ["Large"]}) is True
    assert evaluate_expression('sizes == "Large"', {"sizes": ["Large", "Small"]}) is False


def test_unset_field_makes_comparison_false() -> None:
    assert evaluate_expression('color == "Red"', {}) is False
    assert evaluate_expression('color != "Red"', {}) is False
    assert evaluate_expression("engraving", {}) is False


def test_quoted_values_can_contain_operators_and_quotes() -> None:
    assert evaluate_expression('engraving == "a && b"', {"engraving": "a && b"}) is True
    assert evaluate_expression(r'engraving == "say \"hi\""', {"engraving": 'say "hi"'}) is True


@pytest.mark.parametrize(
    "expression",
    ["", 'color == "Red" &&', 'color === "Red"', '(color == "Red"', 'color == "Red")', "__import__('os')"],
)
def test_malformed_expressions_are_rejected(expression) -> None:
    with pytest.raises(ExpressionParseError):
        compile_expression(expression)


def test_unknown_fields_are_rejected_when_names_are_known() -> None:
    with pytest.raises(ExpressionParseError, match="unknown field"):
        compile_expression('colour == "Red"', {"color", "size"})


def test_extract_expression_variables() -> None:
    assert extract_expression_variables('color == "Red" && (size == "Large" || engraving)') == {
        "color",
        "size",
        "engraving",
    }


def test_build_condition_expression_escapes_value() -> None:
    expression = build_condition_expression("engraving", "==", 'a "quoted" word')
    assert expression == 'engraving == "a \\"quoted\\" word"'
    assert evaluate_expression(expression, {"engraving": 'a "quoted" word'}) is True

    with pytest.raises(ExpressionParseError):
        build_condition_expression("color", ">=", "Red")
    with pytest.raises(ExpressionParseError):
        build_condition_expression("bad name", "==", "Red")


def test_malformed_rule_never_fires() -> None:
    snapshot = build_snapshot(
        [
            {"id": "r1", "expression": 'color == "Red" &&', "target_field_id": "4", "action": "show"},
            {"id": "r2", "expression": 'colour == "Red"', "target_field_id": "4", "action": "show"},
            {"id": "r3", "expression": 'color == "Red"', "target_field_id": "4", "action": "show"},
        ]
    )
    engine = RuleEngine.from_snapshot(snapshot)
    assert set(engine.invalid_rules) == {"r1", "r2"}

    values = ValueStore(snapshot)
    values.set("1", ScalarValue("Red"))
    result = engine.evaluate(values)
    assert result.fired_rule_ids == ["r3"]
    assert result.outcome("r1").error is not None


def test_structured_rule_compares_parent_value_exactly() -> None:
    snapshot = build_snapshot(
        [{"id": "r1", "parent_field_id": "1", "parent_value": "Red", "child_field_id": "4"}]
    )
    values = ValueStore(snapshot)
    assert evaluate_rules(snapshot, values).fired_rule_ids == []

    values.set("1", ScalarValue("red"))
    assert evaluate_rules(snapshot, values).fired_rule_ids == []

    values.set("1", ScalarValue("Red"))
    assert evaluate_rules(snapshot, values).fired_rule_ids == ["r1"]


def test_checkbox_parent_is_not_a_valid_structured_rule() -> None:
    snapshot = build_snapshot(
        [{"id": "r1", "parent_field_id": "3", "parent_value": "Large", "child_field_id": "4"}]
    )
    engine = RuleEngine.from_snapshot(snapshot)
    assert "r1" in engine.invalid_rules

    values = ValueStore(snapshot)
    values.set("3", MultiSelectValue(("Large",)))
    assert engine.evaluate(values).fired_rule_ids == []


def test_describe_rule_uses_labels() -> None:
    snapshot = build_snapshot(
        [
            {"id": "r1", "parent_field_id": "1", "parent_value": "Red", "child_field_id": "4"},
            {"id": "r2", "expression": 'size == "Large"', "target_field_id": "4", "action": "require"},
        ]
    )
    assert describe_rule(snapshot.rules[0], snapshot) == 'IF Color == "Red" THEN reveal "Engraving"'
    assert describe_rule(snapshot.rules[1], snapshot) == 'IF size == "Large" THEN require "Engraving"'
