from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .snapshot import Field, FieldType, TemplateSnapshot

logger = logging.getLogger(__name__)

EVENT_TYPES = {"change", "input"}


@dataclass(slots=True)
class FieldState:
    visible: bool = True
    required: bool = False
    disabled: bool = False


@dataclass(slots=True)
class FieldContainer:
    """One rendered field: its state record plus the raw state of its controls."""

    field: Field
    options: tuple[str, ...]
    state: FieldState
    source_rule_id: str | None = None
    parent_field_id: str | None = None
    value: str = ""
    checked: set[str] = field(default_factory=set)

    @property
    def field_id(self) -> str:
        return self.field.id

    @property
    def is_cascaded(self) -> bool:
        return self.source_rule_id is not None

    def checked_in_order(self) -> list[str]:
        return [option for option in self.options if option in self.checked]

    def has_input(self) -> bool:
        if self.field.type == FieldType.CHECKBOX.value:
            return bool(self.checked)
        return bool(self.value.strip())


@dataclass(slots=True, frozen=True)
class ControlEvent:
    type: str
    field_id: str
    value: str = ""
    checked: bool = True


def container_for(
    field_def: Field,
    options: tuple[str, ...] | None = None,
    source_rule_id: str | None = None,
    parent_field_id: str | None = None,
) -> FieldContainer:
    return FieldContainer(
        field=field_def,
        options=tuple(options) if options is not None else field_def.options,
        state=FieldState(visible=True, required=field_def.required, disabled=False),
        source_rule_id=source_rule_id,
        parent_field_id=parent_field_id,
    )


class LiveForm:
    """Ordered field containers currently on the page."""

    def __init__(self, containers: list[FieldContainer] | None = None) -> None:
        self.containers: list[FieldContainer] = list(containers or [])

    @classmethod
    def from_snapshot(cls, snapshot: TemplateSnapshot) -> LiveForm:
        return cls([container_for(item) for item in snapshot.root_fields])

    def container(self, field_id: str) -> FieldContainer | None:
        return next((item for item in self.containers if item.field_id == field_id), None)

    def is_present(self, field_id: str) -> bool:
        return self.container(field_id) is not None

    def field_ids(self) -> list[str]:
        return [item.field_id for item in self.containers]

    def visible_containers(self) -> list[FieldContainer]:
        return [item for item in self.containers if item.state.visible]

    def insert_after(self, parent_field_id: str, container: FieldContainer) -> None:
        self.remove(container.field_id)
        for index, existing in enumerate(self.containers):
            if existing.field_id == parent_field_id:
                self.containers.insert(index + 1, container)
                return
        raise KeyError(f"parent field {parent_field_id} is not rendered")

    def remove(self, field_id: str) -> FieldContainer | None:
        existing = self.container(field_id)
        if existing is not None:
            self.containers.remove(existing)
        return existing

    def apply_event(self, event: ControlEvent) -> FieldContainer | None:
        container = self.container(event.field_id)
        if container is None or container.state.disabled:
            return None

        field_type = container.field.type
        if field_type == FieldType.TEXT.value:
            container.value = event.value
        elif field_type == FieldType.CHECKBOX.value:
            if event.value not in container.options:
                logger.debug("unknown_option", extra={"field_id": event.field_id, "value": event.value})
                return None
            if event.checked:
                container.checked.add(event.value)
            else:
                container.checked.discard(event.value)
        elif field_type in {FieldType.SELECT.value, FieldType.RADIO.value}:
            if event.value and event.value not in container.options:
                logger.debug("unknown_option", extra={"field_id": event.field_id, "value": event.value})
                return None
            if field_type == FieldType.RADIO.value and not event.checked:
                return None
            container.value = event.value
        else:
            return None
        return container
