from __future__ import annotations

import json

from credit_ledger.schema_generator import (
    generate_logical_schema,
    main,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_ledger_collections():
    schema = generate_logical_schema()
    assert set(schema) == {
        "credit_accounts",
        "credit_transactions",
        "credit_reservations",
        "credit_notifications",
        "credit_ledger_events",
    }

    transactions = schema["credit_transactions"]
    assert transactions["properties"]["amount"]["type"] == "integer"
    assert transactions["properties"]["kind"]["type"] == "string"
    assert transactions["properties"]["created_at"]["type"] == "datetime"
    assert "account_id" in transactions["required"]
    assert {"fields": [("idempotency_key", 1)], "unique": True, "sparse": True} in transactions[
        "indexes"
    ]


def test_sql_ddl_includes_tables_and_indexes():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "credit_accounts"' in ddl
    assert '"balance" BIGINT NULL' in ddl
    assert '"details" JSONB NULL' in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "ix_credit_transactions_idempotency_key" '
        'ON "credit_transactions" ("idempotency_key") WHERE "idempotency_key" IS NOT NULL;'
    ) in ddl
    assert '("account_id", "notification_type", "status", "created_at" DESC)' in ddl


def test_sql_ddl_for_other_dialects_skips_partial_indexes():
    ddl = render_sql_ddl(generate_logical_schema(), dialect="mysql")
    assert "WHERE" not in ddl
    assert '"details" JSON NULL' in ddl


def test_nosql_schema_is_json():
    rendered = json.loads(render_nosql_schema(generate_logical_schema()))
    assert rendered["credit_reservations"]["primary_key"] == "id"
    assert rendered["credit_reservations"]["properties"]["status"]["type"] == "string"


def test_cli(capsys):
    main(["--backend", "sql"])
    assert "CREATE TABLE" in capsys.readouterr().out

    main(["--backend", "nosql"])
    assert json.loads(capsys.readouterr().out)["credit_accounts"]["primary_key"] == "id"
