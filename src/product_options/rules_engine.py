from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from .snapshot import ExpressionRule, FieldType, Rule, StructuredRule, TemplateSnapshot
from .value_store import FieldValue, MultiSelectValue, ScalarValue, ValueStore

COMPARISON_OPERATORS = ("==", "!=", "includes")
IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<and>&&)
    |(?P<or>\|\|)
    |(?P<eq>==)
    |(?P<ne>!=)
    |(?P<lparen>\()
    |(?P<rparen>\))
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

logger = logging.getLogger(__name__)


class ExpressionParseError(ValueError):
    """Raised when a rule expression is malformed."""


class ExpressionEvaluationError(ValueError):
    """Raised when a well-formed expression cannot be evaluated against the current values."""


class UnsetFieldError(ExpressionEvaluationError):
    """Raised when an expression references a field the shopper has not touched yet."""


@dataclass(slots=True, frozen=True)
class _Token:
    kind: str
    text: str
    position: int


@dataclass(slots=True, frozen=True)
class Literal:
    value: str


@dataclass(slots=True, frozen=True)
class FieldRef:
    name: str


Operand = Literal | FieldRef


@dataclass(slots=True, frozen=True)
class Comparison:
    operator: str
    left: Operand
    right: Operand


@dataclass(slots=True, frozen=True)
class Truthy:
    operand: Operand


@dataclass(slots=True, frozen=True)
class BoolOp:
    operator: str
    terms: tuple[Node, ...]


Node = Comparison | Truthy | BoolOp


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Parsed expression that can be evaluated repeatedly."""

    source: str
    tree: Node
    variables: frozenset[str]


@dataclass(slots=True)
class RuleOutcome:
    rule_id: str
    kind: str
    target_field_id: str
    fired: bool
    error: str | None = None


@dataclass(slots=True)
class EvaluationResult:
    outcomes: list[RuleOutcome]

    @property
    def fired_rule_ids(self) -> list[str]:
        return [outcome.rule_id for outcome in self.outcomes if outcome.fired]

    def outcome(self, rule_id: str) -> RuleOutcome | None:
        return next((item for item in self.outcomes if item.rule_id == rule_id), None)


def tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(expression):
        match = TOKEN_PATTERN.match(expression, position)
        if match is None:
            raise ExpressionParseError(f"unexpected character {expression[position]!r} at {position}")
        kind = match.lastgroup or ""
        if kind != "ws":
            text = match.group()
            if kind == "name" and text == "includes":
                kind = "includes"
            tokens.append(_Token(kind=kind, text=text, position=position))
        position = match.end()
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    def __init__(self, tokens: list[_Token], source: str) -> None:
        self.tokens = tokens
        self.source = source
        self.index = 0

    def peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def advance(self) -> _Token:
        token = self.peek()
        if token is None:
            raise ExpressionParseError("unexpected end of expression")
        self.index += 1
        return token

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionParseError("expression is empty")
        node = self.parse_or()
        trailing = self.peek()
        if trailing is not None:
            raise ExpressionParseError(f"unexpected {trailing.text!r} at {trailing.position}")
        return node

    def parse_or(self) -> Node:
        terms = [self.parse_and()]
        while (token := self.peek()) is not None and token.kind == "or":
            self.advance()
            terms.append(self.parse_and())
        return terms[0] if len(terms) == 1 else BoolOp(operator="||", terms=tuple(terms))

    def parse_and(self) -> Node:
        terms = [self.parse_term()]
        while (token := self.peek()) is not None and token.kind == "and":
            self.advance()
            terms.append(self.parse_term())
        return terms[0] if len(terms) == 1 else BoolOp(operator="&&", terms=tuple(terms))

    def parse_term(self) -> Node:
        token = self.peek()
        if token is not None and token.kind == "lparen":
            self.advance()
            node = self.parse_or()
            closing = self.advance()
            if closing.kind != "rparen":
                raise ExpressionParseError(f"expected ')' at {closing.position}")
            return node

        left = self.parse_operand()
        operator = self.peek()
        if operator is None or operator.kind not in {"eq", "ne", "includes"}:
            return Truthy(operand=left)
        self.advance()
        right = self.parse_operand()
        return Comparison(operator=operator.text, left=left, right=right)

    def parse_operand(self) -> Operand:
        token = self.advance()
        if token.kind == "name":
            return FieldRef(name=token.text)
        if token.kind == "string":
            return Literal(value=_unquote(token.text))
        raise ExpressionParseError(f"expected a field name or string at {token.position}, got {token.text!r}")


def _collect_variables(node: Node) -> set[str]:
    if isinstance(node, BoolOp):
        names: set[str] = set()
        for term in node.terms:
            names.update(_collect_variables(term))
        return names
    operands = [node.operand] if isinstance(node, Truthy) else [node.left, node.right]
    return {operand.name for operand in operands if isinstance(operand, FieldRef)}


def compile_expression(expression: str, known_fields: set[str] | None = None) -> ExpressionProgram:
    tree = _Parser(tokenize(expression), expression).parse()
    variables = frozenset(_collect_variables(tree))
    if known_fields is not None:
        unknown = sorted(variables - known_fields)
        if unknown:
            raise ExpressionParseError(f"unknown field(s): {', '.join(unknown)}")
    return ExpressionProgram(source=expression, tree=tree, variables=variables)


def extract_expression_variables(expression: str) -> set[str]:
    return set(compile_expression(expression).variables)


def _resolve(operand: Operand, values: Mapping[str, FieldValue]) -> str | frozenset[str]:
    if isinstance(operand, Literal):
        return operand.value
    value = values.get(operand.name)
    if value is None:
        raise UnsetFieldError(f"field '{operand.name}' has no value")
    if isinstance(value, MultiSelectValue):
        return value.as_set()
    return value.value


def _as_set(value: str | frozenset[str]) -> frozenset[str]:
    return value if isinstance(value, frozenset) else frozenset({value})


def _compare(operator: str, left: str | frozenset[str], right: str | frozenset[str]) -> bool:
    if operator == "includes":
        return _as_set(right) <= _as_set(left)
    if isinstance(left, str) and isinstance(right, str):
        equal = left == right
    else:
        equal = _as_set(left) == _as_set(right)
    return equal if operator == "==" else not equal


def _evaluate_node(node: Node, values: Mapping[str, FieldValue]) -> bool:
    if isinstance(node, BoolOp):
        if node.operator == "&&":
            return all(_evaluate_node(term, values) for term in node.terms)
        return any(_evaluate_node(term, values) for term in node.terms)
    if isinstance(node, Truthy):
        try:
            resolved = _resolve(node.operand, values)
        except UnsetFieldError:
            return False
        return bool(resolved.strip()) if isinstance(resolved, str) else bool(resolved)
    try:
        left = _resolve(node.left, values)
        right = _resolve(node.right, values)
    except UnsetFieldError:
        return False
    return _compare(node.operator, left, right)


def evaluate_program(program: ExpressionProgram, values: Mapping[str, FieldValue]) -> bool:
    return _evaluate_node(program.tree, values)


def evaluate_expression(expression: str, values: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against plain values keyed by field name.

    Strings become scalar values and lists/sets become multi-select values.
    Errors propagate; :class:`RuleEngine` is the fail-safe entry point.
    """
    typed: dict[str, FieldValue] = {}
    for name, value in values.items():
        if isinstance(value, (ScalarValue, MultiSelectValue)):
            typed[name] = value
        elif isinstance(value, (list, tuple, set, frozenset)):
            typed[name] = MultiSelectValue(tuple(str(item) for item in value))
        else:
            typed[name] = ScalarValue(str(value))
    return evaluate_program(compile_expression(expression), typed)


def build_condition_expression(field_name: str, operator: str, value: str) -> str:
    if not IDENTIFIER_PATTERN.fullmatch(field_name or ""):
        raise ExpressionParseError(f"invalid field name '{field_name}'")
    if operator not in COMPARISON_OPERATORS:
        raise ExpressionParseError(f"unsupported operator '{operator}'")
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'{field_name} {operator} "{escaped}"'


def describe_rule(rule: Rule, snapshot: TemplateSnapshot) -> str:
    def label(field_id: str) -> str:
        field_def = snapshot.field_by_id(field_id)
        return field_def.label if field_def else "unknown field"

    if isinstance(rule, StructuredRule):
        return f'IF {label(rule.parent_field_id)} == "{rule.parent_value}" THEN reveal "{label(rule.child_field_id)}"'
    return f'IF {rule.expression} THEN {rule.action} "{label(rule.target_field_id)}"'


@dataclass(slots=True)
class RuleEngine:
    snapshot: TemplateSnapshot
    programs: dict[str, ExpressionProgram] = field(default_factory=dict)
    invalid_rules: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: TemplateSnapshot) -> RuleEngine:
        engine = cls(snapshot=snapshot)
        known_fields = {item.name for item in snapshot.fields}
        field_ids = {item.id for item in snapshot.fields}

        for rule in snapshot.rules:
            reason: str | None = None
            if isinstance(rule, StructuredRule):
                parent = snapshot.field_by_id(rule.parent_field_id)
                if parent is None or rule.child_field_id not in field_ids:
                    reason = "rule references a field outside the template"
                elif parent.type == FieldType.CHECKBOX.value:
                    reason = "checkbox fields cannot be structured rule parents"
            else:
                if rule.target_field_id not in field_ids:
                    reason = "rule targets a field outside the template"
                else:
                    try:
                        engine.programs[rule.id] = compile_expression(rule.expression, known_fields)
                    except ExpressionParseError as error:
                        reason = str(error)

            if reason is not None:
                engine.invalid_rules[rule.id] = reason
                logger.warning(
                    "rule_invalid",
                    extra={"template_id": snapshot.id, "rule_id": rule.id, "reason": reason},
                )
        return engine

    def structured_fires(self, rule: StructuredRule, values: ValueStore) -> bool:
        if rule.id in self.invalid_rules:
            return False
        value = values.get(rule.parent_field_id)
        if not isinstance(value, ScalarValue):
            return False
        return value.value == rule.parent_value

    def expression_fires(self, rule: ExpressionRule, values: ValueStore) -> tuple[bool, str | None]:
        if rule.id in self.invalid_rules:
            return False, self.invalid_rules[rule.id]
        program = self.programs[rule.id]
        try:
            return evaluate_program(program, values.by_name()), None
        except UnsetFieldError as error:
            return False, str(error)
        except ExpressionEvaluationError as error:
            logger.warning(
                "rule_expression_failed",
                extra={"rule_id": rule.id, "expression": rule.expression, "error": str(error)},
            )
            return False, str(error)
        except Exception as error:
            logger.exception("rule_expression_failed", extra={"rule_id": rule.id, "expression": rule.expression})
            return False, str(error)

    def evaluate_rule(self, rule: Rule, values: ValueStore) -> RuleOutcome:
        if isinstance(rule, StructuredRule):
            return RuleOutcome(
                rule_id=rule.id,
                kind="structured",
                target_field_id=rule.child_field_id,
                fired=self.structured_fires(rule, values),
                error=self.invalid_rules.get(rule.id),
            )
        fired, error = self.expression_fires(rule, values)
        return RuleOutcome(
            rule_id=rule.id,
            kind="expression",
            target_field_id=rule.target_field_id,
            fired=fired,
            error=error,
        )

    def evaluate(self, values: ValueStore) -> EvaluationResult:
        return EvaluationResult(outcomes=[self.evaluate_rule(rule, values) for rule in self.snapshot.rules])


def evaluate_rules(snapshot: TemplateSnapshot, values: ValueStore) -> EvaluationResult:
    engine = RuleEngine.from_snapshot(snapshot)
    return engine.evaluate(values)
