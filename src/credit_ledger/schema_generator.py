from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.account import CreditAccount
from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.reservation import Reservation
from .models.transaction import CreditTransaction


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    CreditAccount,
    CreditTransaction,
    Reservation,
    NotificationEvent,
    LedgerEntry,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    This is the single source of truth; SQL/NoSQL specific renderers convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Small SQL DDL renderer: one CREATE TABLE per model followed by its indexes.

    A unique sparse index becomes a partial index on Postgres
    (`WHERE col IS NOT NULL`); other dialects get a plain unique index,
    which already ignores NULLs there.
    """
    lines: List[str] = []
    for table_name, table in schema.items():
        props = table["properties"]
        pk = table.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in table.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        for index in table.get("indexes", []):
            ddl += _render_index(table_name, index, dialect) + "\n"
        lines.append(ddl)
    return "\n".join(lines)


def _render_index(table_name: str, index: Dict[str, Any], dialect: str) -> str:
    fields = index["fields"]
    name = "ix_" + table_name + "_" + "_".join(field for field, _ in fields)
    cols = ", ".join(f'"{field}"' + (" DESC" if direction < 0 else "") for field, direction in fields)
    unique = "UNIQUE " if index.get("unique") else ""
    stmt = f'CREATE {unique}INDEX IF NOT EXISTS "{name}" ON "{table_name}" ({cols})'
    if index.get("sparse") and dialect == "postgres":
        stmt += " WHERE " + " AND ".join(f'"{field}" IS NOT NULL' for field, _ in fields)
    return stmt + ";"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a JSON representation that can be used to configure validators
    and indexes for document databases like MongoDB.
    """
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        # Credit sums can outgrow 32 bits on long-lived accounts.
        return "BIGINT"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMP"
    if logical_type in {"object", "array"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the credit ledger."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
