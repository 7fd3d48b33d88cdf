from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from .snapshot import BUTTON_STYLE_KEYS

DEMO_SHOP = "demo-shop.myshopify.com"
DEMO_PRODUCT_GID = "gid://shopify/Product/1001"

SCHEMA = """
CREATE TABLE IF NOT EXISTS templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    shop TEXT NOT NULL,
    name TEXT NOT NULL,
    font_family TEXT,
    font_size TEXT,
    font_weight TEXT,
    text_color TEXT,
    background_color TEXT,
    border_color TEXT,
    border_radius TEXT,
    padding TEXT,
    hover_background_color TEXT,
    hover_text_color TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS fields (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    template_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    label TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    required INTEGER NOT NULL DEFAULT 0,
    options TEXT NOT NULL DEFAULT '[]',
    sort INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (template_id) REFERENCES templates(id),
    UNIQUE (template_id, name)
);

CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    template_id INTEGER NOT NULL,
    kind TEXT NOT NULL,
    parent_field_id INTEGER,
    parent_value TEXT,
    child_field_id INTEGER,
    child_options TEXT,
    expression TEXT,
    target_field_id INTEGER,
    action TEXT,
    sort INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (template_id) REFERENCES templates(id)
);

CREATE TABLE IF NOT EXISTS product_template_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    template_id INTEGER NOT NULL,
    shop TEXT NOT NULL,
    product_gid TEXT NOT NULL UNIQUE,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (template_id) REFERENCES templates(id)
);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path, seed_demo: bool = True) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_lookup_indexes(conn)
        if seed_demo:
            seed_demo_template(conn)
    conn.close()


def migrate_lookup_indexes(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_templates_shop ON templates(shop, updated_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_fields_order ON fields(template_id, sort, id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_rules_order ON rules(template_id, sort, id)")


def seed_demo_template(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT id FROM templates LIMIT 1").fetchone()
    if row is not None:
        return

    template_id = int(
        conn.execute(
            "INSERT INTO templates(shop, name) VALUES (?, ?)",
            (DEMO_SHOP, "Custom Apparel"),
        ).lastrowid
    )
    shirt_type_id = insert_field(conn, template_id, "shirt_type", "Shirt Type", "select", False, ["T-Shirt", "Hoodie"])
    brand_id = insert_field(conn, template_id, "brand", "Brand", "select", True, ["Acme", "Globex"])
    insert_field(conn, template_id, "engraving", "Engraving", "text", False, [])
    insert_structured_rule(conn, template_id, shirt_type_id, "Hoodie", brand_id, None)
    conn.execute(
        "INSERT INTO product_template_links(template_id, shop, product_gid) VALUES (?, ?, ?)",
        (template_id, DEMO_SHOP, DEMO_PRODUCT_GID),
    )


def _next_sort(conn: sqlite3.Connection, table: str, template_id: int) -> int:
    row = conn.execute(f"SELECT MAX(sort) AS max_sort FROM {table} WHERE template_id = ?", (template_id,)).fetchone()
    return int(row["max_sort"] or 0) + 1


def insert_field(
    conn: sqlite3.Connection,
    template_id: int,
    name: str,
    label: str,
    field_type: str,
    required: bool,
    options: list[str],
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO fields(template_id, name, label, type, required, options, sort)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            template_id,
            name,
            label,
            field_type,
            1 if required else 0,
            json.dumps(options),
            _next_sort(conn, "fields", template_id),
        ),
    )
    return int(cursor.lastrowid)


def insert_structured_rule(
    conn: sqlite3.Connection,
    template_id: int,
    parent_field_id: int,
    parent_value: str,
    child_field_id: int,
    child_options: list[str] | None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO rules(template_id, kind, parent_field_id, parent_value, child_field_id, child_options, sort)
        VALUES (?, 'structured', ?, ?, ?, ?, ?)
        """,
        (
            template_id,
            parent_field_id,
            parent_value,
            child_field_id,
            json.dumps(child_options) if child_options else None,
            _next_sort(conn, "rules", template_id),
        ),
    )
    return int(cursor.lastrowid)


def insert_expression_rule(
    conn: sqlite3.Connection,
    template_id: int,
    expression: str,
    target_field_id: int,
    action: str,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO rules(template_id, kind, expression, target_field_id, action, sort)
        VALUES (?, 'expression', ?, ?, ?, ?)
        """,
        (template_id, expression, target_field_id, action, _next_sort(conn, "rules", template_id)),
    )
    return int(cursor.lastrowid)


def field_payload(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "name": row["name"],
        "label": row["label"],
        "type": row["type"],
        "required": bool(row["required"]),
        "options": json.loads(row["options"] or "[]"),
        "sort": row["sort"],
    }


def rule_payload(row: sqlite3.Row) -> dict[str, Any]:
    if row["kind"] == "structured":
        return {
            "id": str(row["id"]),
            "sort": row["sort"],
            "parent_field_id": str(row["parent_field_id"]),
            "parent_value": row["parent_value"] or "",
            "child_field_id": str(row["child_field_id"]),
            "child_options": json.loads(row["child_options"]) if row["child_options"] else None,
        }
    return {
        "id": str(row["id"]),
        "sort": row["sort"],
        "expression": row["expression"] or "",
        "target_field_id": str(row["target_field_id"]),
        "action": row["action"],
    }


def template_payload(conn: sqlite3.Connection, template_id: int) -> dict[str, Any] | None:
    template = conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
    if template is None:
        return None
    fields = conn.execute(
        "SELECT * FROM fields WHERE template_id = ? ORDER BY sort, id", (template_id,)
    ).fetchall()
    rules = conn.execute(
        "SELECT * FROM rules WHERE template_id = ? ORDER BY sort, id", (template_id,)
    ).fetchall()
    return {
        "id": str(template["id"]),
        "shop": template["shop"],
        "name": template["name"],
        **{key: template[key] for key in BUTTON_STYLE_KEYS if template[key]},
        "fields": [field_payload(row) for row in fields],
        "rules": [rule_payload(row) for row in rules],
    }


def load_template_snapshot(conn: sqlite3.Connection, product_gid: str) -> dict[str, Any] | None:
    link = conn.execute(
        "SELECT template_id FROM product_template_links WHERE product_gid = ?", (product_gid,)
    ).fetchone()
    if link is None:
        return None
    template = template_payload(conn, int(link["template_id"]))
    if template is None:
        return None
    return {"template": template, "product_gid": product_gid}


def delete_template(conn: sqlite3.Connection, template_id: int) -> None:
    conn.execute("DELETE FROM rules WHERE template_id = ?", (template_id,))
    conn.execute("DELETE FROM fields WHERE template_id = ?", (template_id,))
    conn.execute("DELETE FROM product_template_links WHERE template_id = ?", (template_id,))
    conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))


def delete_field(conn: sqlite3.Connection, field_id: int) -> None:
    conn.execute(
        """
        DELETE FROM rules
        WHERE parent_field_id = ? OR child_field_id = ? OR target_field_id = ?
        """,
        (field_id, field_id, field_id),
    )
    conn.execute("DELETE FROM fields WHERE id = ?", (field_id,))


def json_dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)
