from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

PRODUCT_GID_PREFIX = "gid://shopify/Product/"
OPTION_FIELD_TYPES = {"select", "radio", "checkbox"}
RULE_ACTIONS = {"show", "hide", "require", "disable"}
BUTTON_STYLE_KEYS = (
    "font_family",
    "font_size",
    "font_weight",
    "text_color",
    "background_color",
    "border_color",
    "border_radius",
    "padding",
    "hover_background_color",
    "hover_text_color",
)

logger = logging.getLogger(__name__)


class TemplateLoadError(RuntimeError):
    """Raised when the template lookup endpoint answers with a failure."""


class SnapshotFormatError(ValueError):
    """Raised when a lookup payload cannot be turned into a snapshot."""


class FieldType(str, Enum):
    TEXT = "text"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"


@dataclass(slots=True, frozen=True)
class Field:
    id: str
    name: str
    label: str
    type: str
    required: bool = False
    options: tuple[str, ...] = ()
    sort: int = 0

    @property
    def is_multi_valued(self) -> bool:
        return self.type == FieldType.CHECKBOX.value

    @property
    def is_supported(self) -> bool:
        return self.type in {item.value for item in FieldType}


@dataclass(slots=True, frozen=True)
class StructuredRule:
    """Reveals ``child_field_id`` while the parent field equals ``parent_value``."""

    id: str
    parent_field_id: str
    parent_value: str
    child_field_id: str
    child_options: tuple[str, ...] | None = None
    sort: int = 0


@dataclass(slots=True, frozen=True)
class ExpressionRule:
    id: str
    expression: str
    target_field_id: str
    action: str
    sort: int = 0


Rule = StructuredRule | ExpressionRule


@dataclass(slots=True, frozen=True)
class TemplateSnapshot:
    id: str
    name: str
    fields: tuple[Field, ...]
    rules: tuple[Rule, ...]
    product_gid: str = ""
    button_style: dict[str, str] = field(default_factory=dict)

    def field_by_id(self, field_id: str) -> Field | None:
        return next((item for item in self.fields if item.id == field_id), None)

    def field_by_name(self, name: str) -> Field | None:
        return next((item for item in self.fields if item.name == name), None)

    @property
    def structured_rules(self) -> list[StructuredRule]:
        return [rule for rule in self.rules if isinstance(rule, StructuredRule)]

    @property
    def expression_rules(self) -> list[ExpressionRule]:
        return [rule for rule in self.rules if isinstance(rule, ExpressionRule)]

    @property
    def cascaded_field_ids(self) -> set[str]:
        return {rule.child_field_id for rule in self.structured_rules}

    @property
    def root_fields(self) -> list[Field]:
        cascaded = self.cascaded_field_ids
        return [item for item in self.fields if item.id not in cascaded]


def normalize_product_gid(product_id: str) -> str:
    text = str(product_id or "").strip()
    if text.isdigit():
        return f"{PRODUCT_GID_PREFIX}{text}"
    return text


def _string_list(raw_value: Any) -> tuple[str, ...]:
    if raw_value is None:
        return ()
    if isinstance(raw_value, str):
        return tuple(item.strip() for item in raw_value.split(",") if item.strip())
    if not isinstance(raw_value, (list, tuple)):
        raise SnapshotFormatError(f"expected an option list, got {type(raw_value).__name__}")
    return tuple(str(item) for item in raw_value)


def _sort_key(raw_value: Any, owner: str) -> int:
    try:
        return int(raw_value or 0)
    except (TypeError, ValueError) as error:
        raise SnapshotFormatError(f"{owner}: sort must be an integer, got {raw_value!r}") from error


def parse_field(raw_field: dict[str, Any]) -> Field:
    if not isinstance(raw_field, dict):
        raise SnapshotFormatError(f"expected a field object, got {type(raw_field).__name__}")
    try:
        field_id = str(raw_field["id"])
        name = str(raw_field["name"])
    except (KeyError, TypeError) as error:
        raise SnapshotFormatError(f"field is missing {error}") from error
    return Field(
        id=field_id,
        name=name,
        label=str(raw_field.get("label") or name),
        type=str(raw_field.get("type") or FieldType.TEXT.value),
        required=bool(raw_field.get("required", False)),
        options=_string_list(raw_field.get("options")),
        sort=_sort_key(raw_field.get("sort"), f"field {field_id}"),
    )


def parse_rule(raw_rule: dict[str, Any]) -> Rule:
    if not isinstance(raw_rule, dict):
        raise SnapshotFormatError(f"expected a rule object, got {type(raw_rule).__name__}")
    rule_id = str(raw_rule.get("id", ""))
    sort = _sort_key(raw_rule.get("sort"), f"rule {rule_id}")
    if raw_rule.get("parent_field_id") and raw_rule.get("child_field_id"):
        # an empty override falls back to the child's own options
        child_options = _string_list(raw_rule.get("child_options")) or None
        return StructuredRule(
            id=rule_id,
            parent_field_id=str(raw_rule["parent_field_id"]),
            parent_value=str(raw_rule.get("parent_value") or ""),
            child_field_id=str(raw_rule["child_field_id"]),
            child_options=child_options,
            sort=sort,
        )
    if raw_rule.get("expression") is not None and raw_rule.get("target_field_id"):
        action = str(raw_rule.get("action") or "").strip().lower()
        if action not in RULE_ACTIONS:
            raise SnapshotFormatError(f"rule {rule_id}: unsupported action '{action}'")
        return ExpressionRule(
            id=rule_id,
            expression=str(raw_rule["expression"]),
            target_field_id=str(raw_rule["target_field_id"]),
            action=action,
            sort=sort,
        )
    raise SnapshotFormatError(f"rule {rule_id}: neither structured nor expression form")


def _entry_list(template: dict[str, Any], key: str) -> list[Any]:
    entries = template.get(key) or []
    if not isinstance(entries, list):
        raise SnapshotFormatError(f"template {key} must be a list, got {type(entries).__name__}")
    return entries


def parse_snapshot(payload: dict[str, Any]) -> TemplateSnapshot | None:
    if not isinstance(payload, dict):
        raise SnapshotFormatError(f"expected a JSON object, got {type(payload).__name__}")
    template = payload.get("template")
    if not template:
        return None
    if not isinstance(template, dict):
        raise SnapshotFormatError(f"template must be an object, got {type(template).__name__}")

    fields = sorted(
        (parse_field(raw) for raw in _entry_list(template, "fields")),
        key=lambda item: item.sort,
    )

    raw_rules = _entry_list(template, "rules")
    # a non-object entry means the payload itself is broken, not one rule
    if any(not isinstance(raw_rule, dict) for raw_rule in raw_rules):
        raise SnapshotFormatError("template rules must be objects")

    rules: list[Rule] = []
    for raw_rule in raw_rules:
        try:
            rule = parse_rule(raw_rule)
        except SnapshotFormatError as error:
            logger.warning("rule_skipped", extra={"template_id": template.get("id"), "error": str(error)})
            continue
        if _rule_trigger(rule) == _rule_target(rule):
            logger.warning("rule_skipped", extra={"template_id": template.get("id"), "error": "self-referential rule"})
            continue
        rules.append(rule)
    rules.sort(key=lambda item: item.sort)

    style = {key: str(template[key]) for key in BUTTON_STYLE_KEYS if template.get(key)}
    return TemplateSnapshot(
        id=str(template.get("id", "")),
        name=str(template.get("name", "")),
        fields=tuple(fields),
        rules=tuple(rules),
        product_gid=str(payload.get("product_gid") or ""),
        button_style=style,
    )


def _rule_trigger(rule: Rule) -> str | None:
    if isinstance(rule, StructuredRule):
        return rule.parent_field_id
    return None


def _rule_target(rule: Rule) -> str:
    if isinstance(rule, StructuredRule):
        return rule.child_field_id
    return rule.target_field_id


class TemplateSnapshotLoader:
    """Fetches the template for one product from the lookup endpoint."""

    def __init__(self, api_url: str, client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self.api_url = api_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def template_url(self, product_id: str) -> str:
        return f"{self.api_url}/api/template/{quote(normalize_product_gid(product_id), safe='')}"

    def load(self, product_id: str) -> TemplateSnapshot | None:
        url = self.template_url(product_id)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as error:
            raise TemplateLoadError(f"template request failed: {error}") from error

        if response.status_code == 404:
            logger.info("template_not_assigned", extra={"product_id": product_id})
            return None
        if not response.is_success:
            raise TemplateLoadError(f"template request returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as error:
            raise TemplateLoadError("template response is not valid JSON") from error

        try:
            snapshot = parse_snapshot(payload)
        except SnapshotFormatError as error:
            raise TemplateLoadError(str(error)) from error

        if snapshot is None or not snapshot.fields:
            logger.info("template_not_assigned", extra={"product_id": product_id})
            return None

        logger.info(
            "template_loaded",
            extra={
                "product_id": product_id,
                "template_id": snapshot.id,
                "field_count": len(snapshot.fields),
                "rule_count": len(snapshot.rules),
            },
        )
        return snapshot

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TemplateSnapshotLoader:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class StaticSnapshotLoader:
    """Serves an already-built snapshot, used for admin previews."""

    def __init__(self, snapshot: TemplateSnapshot | None) -> None:
        self.snapshot = snapshot
        self.calls = 0

    def load(self, product_id: str) -> TemplateSnapshot | None:
        self.calls += 1
        return self.snapshot

    def close(self) -> None:
        return None
