from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, abort, jsonify, redirect, render_template, request, session, url_for
from werkzeug.exceptions import BadRequest, HTTPException

from .cart import CartForm, SubmitEvent
from .db import (
    DEMO_SHOP,
    connect,
    delete_field,
    delete_template,
    init_db,
    insert_expression_rule,
    insert_field,
    insert_structured_rule,
    json_dumps,
    load_template_snapshot,
    template_payload,
)
from .form_state import EVENT_TYPES, ControlEvent
from .rules_engine import (
    ExpressionParseError,
    build_condition_expression,
    compile_expression,
    describe_rule,
)
from .snapshot import (
    BUTTON_STYLE_KEYS,
    OPTION_FIELD_TYPES,
    RULE_ACTIONS,
    FieldType,
    StaticSnapshotLoader,
    normalize_product_gid,
    parse_snapshot,
)
from .storefront import API_URL_ATTRIBUTE, PRODUCT_ID_ATTRIBUTE, HostContainer, StorefrontSession

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("product_options").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _configure_database(app: Flask, database_path: str | None) -> None:
    app.config["DATABASE_PATH"] = database_path or os.environ.get("PRODUCT_OPTIONS_DB_PATH", "./data.db")
    init_db(_db_path(app))


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("expected a JSON object")
    return body


def _is_logged_in() -> bool:
    return bool(session.get("username") and session.get("shop"))


def _current_shop() -> str:
    return str(session.get("shop", ""))


def _configure_auth(app: Flask) -> None:
    app.secret_key = os.environ.get("SESSION_SECRET", "dev-secret-change-me")

    @app.before_request
    def require_login() -> Any:
        if request.endpoint in {"login", "static", "healthz"}:
            return None
        if _is_logged_in():
            return None
        if _is_api_request():
            return jsonify({"error": "authentication required"}), 401
        return redirect(url_for("login"))

    @app.route("/login", methods=["GET", "POST"])
    def login() -> Any:
        error = None
        if request.method == "POST":
            username = request.form.get("username", "")
            password = request.form.get("password", "")
            shop = request.form.get("shop", "").strip() or DEMO_SHOP
            if username == ADMIN_USERNAME and password == ADMIN_PASSWORD:
                session["username"] = ADMIN_USERNAME
                session["shop"] = shop
                app.logger.info("login_success", extra={"username": username, "shop": shop})
                return redirect(url_for("index"))
            app.logger.warning("login_failed", extra={"username": username, "shop": shop})
            error = "Invalid credentials"
        return render_template("login.html", error=error)

    @app.post("/logout")
    def logout() -> Any:
        app.logger.info("logout", extra={"username": session.get("username", "anonymous")})
        session.clear()
        return redirect(url_for("login"))


def _owned_template(conn: Any, template_id: int) -> Any:
    row = conn.execute(
        "SELECT * FROM templates WHERE id = ? AND shop = ?", (template_id, _current_shop())
    ).fetchone()
    if row is None:
        abort(404, description="template not found")
    return row


def _owned_row(conn: Any, table: str, row_id: int) -> Any:
    row = conn.execute(
        f"""
        SELECT x.* FROM {table} x
        JOIN templates t ON x.template_id = t.id
        WHERE x.id = ? AND t.shop = ?
        """,
        (row_id, _current_shop()),
    ).fetchone()
    if row is None:
        abort(404, description=f"{table[:-1]} not found")
    return row


def _style_values(body: dict[str, Any]) -> dict[str, str | None]:
    return {key: (str(body[key]).strip() or None) if body.get(key) is not None else None for key in BUTTON_STYLE_KEYS}


def _validate_field(body: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    name = str(body.get("name", "")).strip()
    label = str(body.get("label", "")).strip() or name
    field_type = str(body.get("type", FieldType.TEXT.value)).strip()
    raw_options = body.get("options") or []
    if not name:
        return None, "name is required"
    if field_type not in {item.value for item in FieldType}:
        return None, f"unsupported field type '{field_type}'"
    if not isinstance(raw_options, list):
        return None, "options must be a list"
    options = [str(option).strip() for option in raw_options if str(option).strip()]
    if field_type in OPTION_FIELD_TYPES and not options:
        return None, f"{field_type} fields need at least one option"
    if field_type not in OPTION_FIELD_TYPES:
        options = []
    if len(set(options)) != len(options):
        return None, "options must be unique"
    return {
        "name": name,
        "label": label,
        "type": field_type,
        "required": bool(body.get("required", False)),
        "options": options,
    }, None


def _template_fields(conn: Any, template_id: int) -> dict[int, Any]:
    rows = conn.execute("SELECT * FROM fields WHERE template_id = ?", (template_id,)).fetchall()
    return {int(row["id"]): row for row in rows}


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _validate_rule(conn: Any, template_id: int, body: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    fields = _template_fields(conn, template_id)

    if body.get("parent_field_id") is not None:
        parent_id = _int_or_none(body.get("parent_field_id"))
        child_id = _int_or_none(body.get("child_field_id"))
        parent = fields.get(parent_id) if parent_id is not None else None
        if parent is None or child_id not in fields:
            return None, "rule references a field outside the template"
        if parent_id == child_id:
            return None, "a rule cannot reference the same field as trigger and target"
        if parent["type"] == FieldType.CHECKBOX.value:
            return None, "checkbox fields cannot trigger cascading rules"
        parent_value = str(body.get("parent_value", "")).strip()
        if not parent_value:
            return None, "parent_value is required"
        parent_options = json.loads(parent["options"] or "[]")
        if parent_options and parent_value not in parent_options:
            return None, f"'{parent_value}' is not an option of {parent['name']}"
        child_options = body.get("child_options")
        if child_options is not None and not isinstance(child_options, list):
            return None, "child_options must be a list"
        return {
            "kind": "structured",
            "parent_field_id": parent_id,
            "parent_value": parent_value,
            "child_field_id": child_id,
            "child_options": [str(option) for option in child_options] if child_options else None,
        }, None

    target_id = _int_or_none(body.get("target_field_id"))
    if target_id not in fields:
        return None, "rule targets a field outside the template"
    action = str(body.get("action", "")).strip().lower()
    if action not in RULE_ACTIONS:
        return None, f"unsupported action '{action}'"

    condition = body.get("condition")
    try:
        if isinstance(condition, dict):
            expression = build_condition_expression(
                str(condition.get("field", "")),
                str(condition.get("operator", "==")),
                str(condition.get("value", "")),
            )
        else:
            expression = str(body.get("expression", "")).strip()
        program = compile_expression(expression, {row["name"] for row in fields.values()})
    except ExpressionParseError as error:
        return None, f"invalid expression: {error}"

    if fields[target_id]["name"] in program.variables:
        return None, "a rule cannot reference the same field as trigger and target"
    return {"kind": "expression", "expression": expression, "target_field_id": target_id, "action": action}, None


def _field_response(row: Any) -> dict[str, Any]:
    return {
        "id": int(row["id"]),
        "template_id": int(row["template_id"]),
        "name": row["name"],
        "label": row["label"],
        "type": row["type"],
        "required": bool(row["required"]),
        "options": json.loads(row["options"] or "[]"),
        "sort": row["sort"],
    }


def _preview_events(raw_events: Any) -> list[ControlEvent]:
    if not isinstance(raw_events, list):
        raise BadRequest("events must be a list")
    events = []
    for raw in raw_events:
        if not isinstance(raw, dict) or str(raw.get("type", "change")) not in EVENT_TYPES:
            raise BadRequest("invalid event")
        events.append(
            ControlEvent(
                type=str(raw.get("type", "change")),
                field_id=str(raw.get("field_id", "")),
                value=str(raw.get("value", "")),
                checked=bool(raw.get("checked", True)),
            )
        )
    return events


def create_admin_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__, template_folder="templates")
    _configure_observability(app, "admin")
    _configure_error_handlers(app)
    _configure_database(app, database_path)
    _configure_auth(app)

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.get("/")
    def index() -> str:
        conn = connect(_db_path(app))
        rows = conn.execute(
            "SELECT id FROM templates WHERE shop = ? ORDER BY updated_at DESC, id DESC", (_current_shop(),)
        ).fetchall()
        templates = []
        for row in rows:
            payload = template_payload(conn, int(row["id"])) or {}
            snapshot = parse_snapshot({"template": payload})
            links = conn.execute(
                "SELECT product_gid FROM product_template_links WHERE template_id = ? ORDER BY id", (row["id"],)
            ).fetchall()
            templates.append(
                {
                    "id": payload.get("id"),
                    "name": payload.get("name"),
                    "fields": payload.get("fields", []),
                    "rules": [describe_rule(rule, snapshot) for rule in snapshot.rules] if snapshot else [],
                    "products": [link["product_gid"] for link in links],
                }
            )
        return render_template("admin/index.html", shop=_current_shop(), templates=templates)

    @app.get("/api/templates")
    def list_templates() -> Any:
        conn = connect(_db_path(app))
        rows = conn.execute(
            "SELECT id, name, updated_at FROM templates WHERE shop = ? ORDER BY updated_at DESC, id DESC",
            (_current_shop(),),
        ).fetchall()
        return jsonify({"templates": [dict(row) for row in rows]})

    @app.post("/api/templates")
    def create_template() -> Any:
        body = _json_body()
        name = str(body.get("name", "")).strip()
        if not name:
            return jsonify({"error": "name is required"}), 400
        style = _style_values(body)
        conn = connect(_db_path(app))
        with conn:
            cursor = conn.execute(
                f"INSERT INTO templates(shop, name, {', '.join(style)}) VALUES (?, ?, {', '.join('?' for _ in style)})",
                (_current_shop(), name, *style.values()),
            )
        template_id = int(cursor.lastrowid)
        app.logger.info("template_created", extra={"template_id": template_id, "shop": _current_shop()})
        return jsonify(template_payload(conn, template_id)), 201

    @app.get("/api/templates/<int:template_id>")
    def get_template(template_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_template(conn, template_id)
        return jsonify(template_payload(conn, template_id))

    @app.put("/api/templates/<int:template_id>")
    def update_template(template_id: int) -> Any:
        body = _json_body()
        conn = connect(_db_path(app))
        current = _owned_template(conn, template_id)
        name = str(body.get("name", "")).strip() or current["name"]
        style = {key: value for key, value in _style_values(body).items() if key in body}
        assignments = ", ".join(f"{key} = ?" for key in ["name", *style])
        with conn:
            conn.execute(
                f"UPDATE templates SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (name, *style.values(), template_id),
            )
        return jsonify(template_payload(conn, template_id))

    @app.delete("/api/templates/<int:template_id>")
    def remove_template(template_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_template(conn, template_id)
        with conn:
            delete_template(conn, template_id)
        app.logger.info("template_deleted", extra={"template_id": template_id, "shop": _current_shop()})
        return jsonify({"status": "deleted"})

    @app.post("/api/templates/<int:template_id>/fields")
    def create_field(template_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_template(conn, template_id)
        validated, error = _validate_field(_json_body())
        if validated is None:
            return jsonify({"error": error}), 400
        exists = conn.execute(
            "SELECT id FROM fields WHERE template_id = ? AND name = ?", (template_id, validated["name"])
        ).fetchone()
        if exists is not None:
            return jsonify({"error": f"a field named '{validated['name']}' already exists"}), 409
        with conn:
            field_id = insert_field(
                conn,
                template_id,
                validated["name"],
                validated["label"],
                validated["type"],
                validated["required"],
                validated["options"],
            )
            conn.execute("UPDATE templates SET updated_at = CURRENT_TIMESTAMP WHERE id = ?", (template_id,))
        row = conn.execute("SELECT * FROM fields WHERE id = ?", (field_id,)).fetchone()
        return jsonify(_field_response(row)), 201

    @app.put("/api/fields/<int:field_id>")
    def update_field(field_id: int) -> Any:
        conn = connect(_db_path(app))
        current = _owned_row(conn, "fields", field_id)
        body = {**_field_response(current), **_json_body()}
        validated, error = _validate_field(body)
        if validated is None:
            return jsonify({"error": error}), 400
        clash = conn.execute(
            "SELECT id FROM fields WHERE template_id = ? AND name = ? AND id != ?",
            (current["template_id"], validated["name"], field_id),
        ).fetchone()
        if clash is not None:
            return jsonify({"error": f"a field named '{validated['name']}' already exists"}), 409
        with conn:
            conn.execute(
                "UPDATE fields SET name = ?, label = ?, type = ?, required = ?, options = ?, sort = ? WHERE id = ?",
                (
                    validated["name"],
                    validated["label"],
                    validated["type"],
                    1 if validated["required"] else 0,
                    json.dumps(validated["options"]),
                    int(body.get("sort", current["sort"])),
                    field_id,
                ),
            )
        row = conn.execute("SELECT * FROM fields WHERE id = ?", (field_id,)).fetchone()
        return jsonify(_field_response(row))

    @app.delete("/api/fields/<int:field_id>")
    def remove_field(field_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_row(conn, "fields", field_id)
        with conn:
            delete_field(conn, field_id)
        return jsonify({"status": "deleted"})

    @app.post("/api/templates/<int:template_id>/rules")
    def create_rule(template_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_template(conn, template_id)
        validated, error = _validate_rule(conn, template_id, _json_body())
        if validated is None:
            return jsonify({"error": error}), 400
        with conn:
            if validated["kind"] == "structured":
                rule_id = insert_structured_rule(
                    conn,
                    template_id,
                    validated["parent_field_id"],
                    validated["parent_value"],
                    validated["child_field_id"],
                    validated["child_options"],
                )
            else:
                rule_id = insert_expression_rule(
                    conn,
                    template_id,
                    validated["expression"],
                    validated["target_field_id"],
                    validated["action"],
                )
            conn.execute("UPDATE templates SET updated_at = CURRENT_TIMESTAMP WHERE id = ?", (template_id,))
        app.logger.info("rule_created", extra={"template_id": template_id, "rule_id": rule_id, "kind": validated["kind"]})
        return jsonify({"id": rule_id, **validated}), 201

    @app.put("/api/rules/<int:rule_id>")
    def update_rule(rule_id: int) -> Any:
        conn = connect(_db_path(app))
        current = _owned_row(conn, "rules", rule_id)
        body = _json_body()
        validated, error = _validate_rule(conn, int(current["template_id"]), body)
        if validated is None:
            return jsonify({"error": error}), 400
        child_options = validated.get("child_options")
        with conn:
            conn.execute(
                """
                UPDATE rules
                SET kind = ?, parent_field_id = ?, parent_value = ?, child_field_id = ?, child_options = ?,
                    expression = ?, target_field_id = ?, action = ?, sort = ?
                WHERE id = ?
                """,
                (
                    validated["kind"],
                    validated.get("parent_field_id"),
                    validated.get("parent_value"),
                    validated.get("child_field_id"),
                    json.dumps(child_options) if child_options else None,
                    validated.get("expression"),
                    validated.get("target_field_id"),
                    validated.get("action"),
                    int(body.get("sort", current["sort"])),
                    rule_id,
                ),
            )
        return jsonify({"id": rule_id, **validated})

    @app.delete("/api/rules/<int:rule_id>")
    def remove_rule(rule_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_row(conn, "rules", rule_id)
        with conn:
            conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
        return jsonify({"status": "deleted"})

    @app.post("/api/templates/<int:template_id>/products")
    def link_product(template_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_template(conn, template_id)
        product_gid = normalize_product_gid(str(_json_body().get("product_id", "")))
        if not product_gid:
            return jsonify({"error": "product_id is required"}), 400
        with conn:
            conn.execute(
                """
                INSERT INTO product_template_links(template_id, shop, product_gid) VALUES (?, ?, ?)
                ON CONFLICT(product_gid) DO UPDATE SET template_id = excluded.template_id, shop = excluded.shop
                """,
                (template_id, _current_shop(), product_gid),
            )
        app.logger.info("product_linked", extra={"template_id": template_id, "product_gid": product_gid})
        return jsonify({"template_id": template_id, "product_gid": product_gid}), 201

    @app.delete("/api/templates/<int:template_id>/products/<path:product_id>")
    def unlink_product(template_id: int, product_id: str) -> Any:
        conn = connect(_db_path(app))
        _owned_template(conn, template_id)
        with conn:
            conn.execute(
                "DELETE FROM product_template_links WHERE template_id = ? AND product_gid = ?",
                (template_id, normalize_product_gid(product_id)),
            )
        return jsonify({"status": "deleted"})

    @app.post("/api/templates/<int:template_id>/preview")
    def preview(template_id: int) -> Any:
        conn = connect(_db_path(app))
        _owned_template(conn, template_id)
        body = _json_body()
        events = _preview_events(body.get("events", []))
        snapshot = parse_snapshot({"template": template_payload(conn, template_id)})

        storefront = StorefrontSession(
            HostContainer(attributes={PRODUCT_ID_ATTRIBUTE: f"preview-{template_id}", API_URL_ATTRIBUTE: ""}),
            loader=StaticSnapshotLoader(snapshot),
        )
        storefront.initialize()
        for event in events:
            storefront.dispatch(event)

        submit_event = SubmitEvent(form=CartForm())
        result = storefront.submit(submit_event)
        return jsonify(
            {
                "fields": [
                    {
                        "field_id": container.field_id,
                        "name": container.field.name,
                        "visible": container.state.visible,
                        "required": container.state.required,
                        "disabled": container.state.disabled,
                        "cascaded": container.is_cascaded,
                    }
                    for container in storefront.form.containers
                ],
                "values": storefront.values.as_dict() if storefront.values is not None else {},
                "submission": {
                    "allowed": result.allowed,
                    "message": result.message,
                    "properties": result.properties,
                },
                "markup": str(storefront.container.content),
            }
        )

    return app


def _cors(response: Any) -> Any:
    response.headers.update(CORS_HEADERS)
    return response


def create_storefront_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    # product gids contain "//"; keep them intact instead of redirecting
    app.url_map.merge_slashes = False
    _configure_observability(app, "storefront")
    _configure_error_handlers(app)
    _configure_database(app, database_path)
    app.config["TEMPLATE_CACHE_SECONDS"] = int(os.environ.get("TEMPLATE_CACHE_SECONDS", "300"))
    app.config["MISSING_TEMPLATE_CACHE_SECONDS"] = int(os.environ.get("MISSING_TEMPLATE_CACHE_SECONDS", "60"))

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.route("/api/template/", methods=["GET", "OPTIONS"], defaults={"product_id": ""})
    @app.route("/api/template/<path:product_id>", methods=["GET", "OPTIONS"])
    def template_lookup(product_id: str) -> Any:
        if request.method == "OPTIONS":
            return _cors(app.response_class(status=204))

        product_gid = normalize_product_gid(product_id)
        if not product_gid:
            return _cors(jsonify({"error": "Product ID required"})), 400

        conn = connect(_db_path(app))
        payload = load_template_snapshot(conn, product_gid)
        if payload is None:
            app.logger.info("template_lookup", extra={"product_gid": product_gid, "found": False})
            response = _cors(jsonify({"template": None, "message": "No template found for this product"}))
            response.status_code = 404
            response.cache_control.public = True
            response.cache_control.max_age = app.config["MISSING_TEMPLATE_CACHE_SECONDS"]
            return response

        app.logger.info(
            "template_lookup",
            extra={"product_gid": product_gid, "found": True, "template_id": payload["template"]["id"]},
        )
        response = _cors(jsonify(payload))
        response.cache_control.public = True
        response.cache_control.max_age = app.config["TEMPLATE_CACHE_SECONDS"]
        response.set_etag(hashlib.sha256(json_dumps(payload).encode("utf-8")).hexdigest())
        return response.make_conditional(request)

    return app
