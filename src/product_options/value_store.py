from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from .form_state import ControlEvent, FieldContainer, LiveForm
from .snapshot import FieldType, TemplateSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ScalarValue:
    value: str

    def is_empty(self) -> bool:
        return not self.value.strip()

    def display(self) -> str:
        return self.value


@dataclass(slots=True, frozen=True)
class MultiSelectValue:
    values: tuple[str, ...]

    def is_empty(self) -> bool:
        return len(self.values) == 0

    def display(self, delimiter: str = ", ") -> str:
        return delimiter.join(self.values)

    def as_set(self) -> frozenset[str]:
        return frozenset(self.values)


FieldValue = ScalarValue | MultiSelectValue


class ValueStore:
    """Shopper entries for one page view, keyed by field identifier."""

    def __init__(self, snapshot: TemplateSnapshot) -> None:
        self._snapshot = snapshot
        self._values: dict[str, FieldValue] = {}

    def __contains__(self, field_id: object) -> bool:
        return field_id in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def get(self, field_id: str) -> FieldValue | None:
        return self._values.get(field_id)

    def get_by_name(self, name: str) -> FieldValue | None:
        field_def = self._snapshot.field_by_name(name)
        if field_def is None:
            return None
        return self._values.get(field_def.id)

    def set(self, field_id: str, value: FieldValue) -> None:
        self._values[field_id] = value

    def delete(self, field_id: str) -> FieldValue | None:
        return self._values.pop(field_id, None)

    def clear(self) -> None:
        self._values.clear()

    def by_name(self) -> dict[str, FieldValue]:
        names: dict[str, FieldValue] = {}
        for field_id, value in self._values.items():
            field_def = self._snapshot.field_by_id(field_id)
            if field_def is not None:
                names[field_def.name] = value
        return names

    def as_dict(self) -> dict[str, str | list[str]]:
        return {
            field_id: list(value.values) if isinstance(value, MultiSelectValue) else value.value
            for field_id, value in self._values.items()
        }

    def accepts(self, event: ControlEvent, container: FieldContainer) -> bool:
        if event.type == "change":
            return True
        return event.type == "input" and container.field.type == FieldType.TEXT.value

    def update_from_form(self, event: ControlEvent, form: LiveForm) -> FieldValue | None:
        container = form.container(event.field_id)
        if container is None or not self.accepts(event, container):
            return None

        value: FieldValue
        if container.field.type == FieldType.CHECKBOX.value:
            # several checkboxes share one field; re-read the whole group
            value = MultiSelectValue(tuple(container.checked_in_order()))
        else:
            value = ScalarValue(container.value)
        self._values[container.field_id] = value
        logger.debug(
            "field_value_updated",
            extra={"field_id": container.field_id, "field_name": container.field.name, "event": event.type},
        )
        return value
