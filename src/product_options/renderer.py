from __future__ import annotations

import logging
import re

from markupsafe import Markup, escape

from .form_state import FieldContainer, FieldState, LiveForm
from .snapshot import Field, FieldType, TemplateSnapshot

LOAD_ERROR_MESSAGE = "Failed to load custom options"
BUTTON_SELECTOR = 'form[action*="/cart/add"] button[type="submit"], form[action*="/cart/add"] input[type="submit"]'
BUTTON_HOVER_SELECTOR = (
    'form[action*="/cart/add"] button[type="submit"]:hover, form[action*="/cart/add"] input[type="submit"]:hover'
)
BUTTON_STYLE_PROPERTIES = {
    "font_family": "font-family",
    "font_size": "font-size",
    "font_weight": "font-weight",
    "text_color": "color",
    "background_color": "background-color",
    "border_radius": "border-radius",
    "padding": "padding",
}
BUTTON_HOVER_PROPERTIES = {
    "hover_background_color": "background-color",
    "hover_text_color": "color",
}
UNSAFE_CSS_PATTERN = re.compile(r"[;{}<>\\]")

logger = logging.getLogger(__name__)


def field_element_id(field_id: str, index: int | None = None) -> str:
    if index is None:
        return f"field-{field_id}"
    return f"field-{field_id}-{index}"


def container_element_id(field_id: str) -> str:
    return f"custom-field-{field_id}"


def _flags(state: FieldState) -> str:
    flags = ""
    if state.required:
        flags += " required"
    if state.disabled:
        flags += " disabled"
    return flags


def _render_text(field: Field, state: FieldState, value: str) -> str:
    return (
        f'<input type="text" id="{escape(field_element_id(field.id))}" name="custom_{escape(field.name)}"'
        f' data-field-id="{escape(field.id)}" value="{escape(value)}"{_flags(state)} />'
    )


def _render_select(field: Field, options: tuple[str, ...], state: FieldState, value: str) -> str:
    parts = [
        f'<select id="{escape(field_element_id(field.id))}" name="custom_{escape(field.name)}"'
        f' data-field-id="{escape(field.id)}"{_flags(state)}>',
        f'<option value="">Select {escape(field.label)}...</option>',
    ]
    for option in options:
        selected = " selected" if option == value else ""
        parts.append(f'<option value="{escape(option)}"{selected}>{escape(option)}</option>')
    parts.append("</select>")
    return "".join(parts)


def _render_choices(field: Field, options: tuple[str, ...], state: FieldState, chosen: set[str]) -> str:
    input_type = field.type
    name = f"custom_{field.name}[]" if input_type == FieldType.CHECKBOX.value else f"custom_{field.name}"
    # browsers only enforce "required" per radio group, never per checkbox
    flags = _flags(state) if input_type == FieldType.RADIO.value else (" disabled" if state.disabled else "")
    group_required = ' data-required="true"' if state.required else ""
    parts = [f'<div class="custom-field-{input_type}-group"{group_required}>']
    for index, option in enumerate(options):
        checked = " checked" if option in chosen else ""
        parts.append(
            f'<label><input type="{input_type}" id="{escape(field_element_id(field.id, index))}"'
            f' name="{escape(name)}" data-field-id="{escape(field.id)}" value="{escape(option)}"'
            f"{checked}{flags} /><span>{escape(option)}</span></label>"
        )
    parts.append("</div>")
    return "".join(parts)


def render_field(
    field: Field,
    options: tuple[str, ...] | None = None,
    container: FieldContainer | None = None,
) -> Markup:
    """Render one field container.

    ``options`` overrides the field's own option list (cascaded children).
    ``container`` supplies the live state to project; without it the field
    renders in its authored initial state.
    """
    state = container.state if container is not None else FieldState(required=field.required)
    if options is None:
        options = container.options if container is not None else field.options
    value = container.value if container is not None else ""
    chosen = set(container.checked) if container is not None else set()
    if field.type == FieldType.RADIO.value and value:
        chosen = {value}

    if field.type == FieldType.TEXT.value:
        control = _render_text(field, state, value)
    elif field.type == FieldType.SELECT.value:
        control = _render_select(field, options, state, value)
    elif field.type in {FieldType.RADIO.value, FieldType.CHECKBOX.value}:
        control = _render_choices(field, options, state, chosen)
    else:
        control = f'<p class="custom-field-unsupported">Unsupported field type: {escape(field.type)}</p>'

    required_mark = '<span class="required">*</span>' if state.required else ""
    style = "" if state.visible else ' style="display: none"'
    return Markup(
        f'<div class="custom-field" id="{escape(container_element_id(field.id))}"'
        f' data-field-id="{escape(field.id)}"{style}>'
        f'<label for="{escape(field_element_id(field.id))}">{escape(field.label)}{required_mark}</label>'
        f"{control}</div>"
    )


def _css_declarations(style: dict[str, str], properties: dict[str, str]) -> list[str]:
    declarations = []
    for key, css_property in properties.items():
        value = style.get(key)
        if not value:
            continue
        if UNSAFE_CSS_PATTERN.search(value):
            logger.debug("button_style_skipped", extra={"key": key})
            continue
        declarations.append(f"{css_property}: {value}")
    return declarations


def render_button_styles(style: dict[str, str]) -> str:
    declarations = _css_declarations(style, BUTTON_STYLE_PROPERTIES)
    border_color = style.get("border_color")
    if border_color and not UNSAFE_CSS_PATTERN.search(border_color):
        declarations.append(f"border: 1px solid {border_color}")
    hover = _css_declarations(style, BUTTON_HOVER_PROPERTIES)

    rules = []
    if declarations:
        rules.append(f"{BUTTON_SELECTOR} {{ {'; '.join(declarations)}; }}")
    if hover:
        rules.append(f"{BUTTON_HOVER_SELECTOR} {{ {'; '.join(hover)}; }}")
    return "\n".join(rules)


def render_form(snapshot: TemplateSnapshot, form: LiveForm, product_id: str) -> Markup:
    if not form.containers:
        return Markup("")
    fields_markup = "".join(
        str(render_field(container.field, container=container)) for container in form.containers
    )
    styles = render_button_styles(snapshot.button_style)
    style_block = f"<style>{styles}</style>" if styles else ""
    return Markup(
        f'<div class="custom-options">{style_block}<h3>{escape(snapshot.name)}</h3>'
        f'<form id="custom-options-form-{escape(product_id)}" class="custom-options-form">'
        f"{fields_markup}</form></div>"
    )


def render_load_error() -> Markup:
    return Markup(f'<p class="custom-options-error">{escape(LOAD_ERROR_MESSAGE)}</p>')


def render_validation_error(message: str) -> Markup:
    return Markup(f'<div class="custom-options-validation-error" role="alert">{escape(message)}</div>')
