from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .form_state import FieldContainer, LiveForm
from .snapshot import FieldType, TemplateSnapshot
from .value_store import MultiSelectValue, ValueStore

PROPERTY_DELIMITER = ", "
ADD_TO_CART_ACTION_MARKER = "/cart/add"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HiddenInput:
    name: str
    value: str


@dataclass(slots=True)
class CartForm:
    """The host page's native add-to-cart form."""

    action: str = ADD_TO_CART_ACTION_MARKER
    method: str = "post"
    inputs: list[HiddenInput] = field(default_factory=list)

    @property
    def is_add_to_cart(self) -> bool:
        return ADD_TO_CART_ACTION_MARKER in self.action

    def form_data(self) -> dict[str, str]:
        return {item.name: item.value for item in self.inputs}


@dataclass(slots=True)
class SubmitEvent:
    form: CartForm
    default_prevented: bool = False
    prevent_default_calls: int = 0

    def prevent_default(self) -> None:
        self.prevent_default_calls += 1
        self.default_prevented = True


@dataclass(slots=True)
class SubmissionResult:
    allowed: bool
    properties: dict[str, str] = field(default_factory=dict)
    message: str | None = None
    failing_field_id: str | None = None


def property_input_name(key: str) -> str:
    return f"properties[{key}]"


class CartSubmissionGuard:
    def __init__(self, snapshot: TemplateSnapshot, delimiter: str = PROPERTY_DELIMITER) -> None:
        self.snapshot = snapshot
        self.delimiter = delimiter
        self._attached: list[HiddenInput] = []

    def _has_value(self, container: FieldContainer, values: ValueStore) -> bool:
        if container.field.type in {FieldType.CHECKBOX.value, FieldType.RADIO.value}:
            return container.has_input()
        value = values.get(container.field_id)
        return value is not None and not value.is_empty()

    def first_missing_required(self, form: LiveForm, values: ValueStore) -> FieldContainer | None:
        for container in form.visible_containers():
            if not container.state.required or container.state.disabled:
                continue
            if not container.field.is_supported:
                continue
            if not self._has_value(container, values):
                return container
        return None

    def collect_properties(self, form: LiveForm, values: ValueStore) -> dict[str, str]:
        properties: dict[str, str] = {}
        for container in form.visible_containers():
            if not container.field.is_supported:
                continue
            value = values.get(container.field_id)
            if value is None or value.is_empty():
                continue
            if isinstance(value, MultiSelectValue):
                properties[container.field.name] = value.display(self.delimiter)
            else:
                properties[container.field.name] = value.display()
        return properties

    def handle_submit(self, event: SubmitEvent, form: LiveForm, values: ValueStore) -> SubmissionResult:
        missing = self.first_missing_required(form, values)
        if missing is not None:
            event.prevent_default()
            message = f"Please fill in the required field: {missing.field.label}"
            logger.info(
                "cart_submission_blocked",
                extra={"template_id": self.snapshot.id, "field_id": missing.field_id},
            )
            return SubmissionResult(allowed=False, message=message, failing_field_id=missing.field_id)

        properties = self.collect_properties(form, values)
        self._attach(event.form, properties)
        logger.info(
            "cart_properties_attached",
            extra={"template_id": self.snapshot.id, "keys": sorted(properties)},
        )
        return SubmissionResult(allowed=True, properties=properties)

    def _attach(self, cart_form: CartForm, properties: dict[str, str]) -> None:
        # drop inputs left by an earlier attempt so resubmits do not duplicate them
        stale_ids = {id(item) for item in self._attached}
        cart_form.inputs[:] = [item for item in cart_form.inputs if id(item) not in stale_ids]
        self._attached = [HiddenInput(name=property_input_name(key), value=value) for key, value in properties.items()]
        cart_form.inputs.extend(self._attached)
