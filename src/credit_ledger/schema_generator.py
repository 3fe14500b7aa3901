"""
Render storage schemas for the credit ledger collections.

  credit-ledger-schema --backend sql [--dialect postgres|mysql]
  credit-ledger-schema --backend nosql

The SQL output keys ledger rows by (user_id, id), because entry ids double
as per-user idempotency keys. The NoSQL output is one MongoDB
`$jsonSchema` validator per collection.
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Sequence, Tuple, Type

from .models.audit import AuditEvent
from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.plan import Plan
from .models.user import UserAccount


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Plan,
    UserAccount,
    LedgerEntry,
    AuditEvent,
]

COMPOSITE_KEYS: Dict[str, Tuple[str, ...]] = {
    LedgerEntry.collection_name: ("user_id", "id"),
}

# Secondary indexes: history listing and audit lookups
INDEXES: Dict[str, List[Tuple[str, ...]]] = {
    LedgerEntry.collection_name: [("user_id", "created_at")],
    AuditEvent.collection_name: [("user_id", "created_at")],
}

_SQL_TYPES = {
    "integer": "BIGINT",
    "number": "DOUBLE PRECISION",
    "boolean": "BOOLEAN",
    "string": "TEXT",
}

_BSON_TYPES = {
    "integer": ["int", "long"],
    "number": ["double", "int", "long"],
    "boolean": "bool",
    "string": "string",
    "datetime": "date",
    "object": "object",
    "array": "array",
}


def generate_logical_schema() -> Dict[str, Any]:
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def _sql_type(logical_type: str, dialect: str) -> str:
    if logical_type in {"object", "array"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    if logical_type == "datetime":
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    return _SQL_TYPES.get(logical_type, "TEXT")


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    statements: List[str] = []
    for table, table_spec in schema.items():
        required = set(table_spec.get("required", []))
        columns = [
            f'    "{name}" {_sql_type(meta["type"], dialect)} '
            f'{"NOT NULL" if name in required else "NULL"}'
            for name, meta in table_spec["properties"].items()
        ]
        key = COMPOSITE_KEYS.get(table) or (table_spec.get("primary_key") or "id",)
        columns.append("    PRIMARY KEY (" + ", ".join(f'"{k}"' for k in key) + ")")
        statements.append(f'CREATE TABLE IF NOT EXISTS "{table}" (\n' + ",\n".join(columns) + "\n);")

        for cols in INDEXES.get(table, []):
            index_name = f"ix_{table}_{'_'.join(cols)}"
            col_list = ", ".join(f'"{c}"' for c in cols)
            statements.append(f'CREATE INDEX IF NOT EXISTS "{index_name}" ON "{table}" ({col_list});')
    return "\n\n".join(statements) + "\n"


def mongo_validator(table_spec: Dict[str, Any]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    for name, meta in table_spec["properties"].items():
        bson_type = _BSON_TYPES.get(meta["type"], "string")
        if meta.get("nullable"):
            types = bson_type if isinstance(bson_type, list) else [bson_type]
            bson_type = [*types, "null"]
        prop: Dict[str, Any] = {"bsonType": bson_type}
        if meta.get("description"):
            prop["description"] = meta["description"]
        properties[name] = prop
    # The document key lives in `_id`, so the primary key field may be absent
    required = [r for r in table_spec.get("required", []) if r != table_spec.get("primary_key")]
    return {"$jsonSchema": {"bsonType": "object", "required": required, "properties": properties}}


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    validators = {name: mongo_validator(table_spec) for name, table_spec in schema.items()}
    return json.dumps(validators, indent=2, default=str)


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Generate DB schemas for the credit ledger.")
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument("--dialect", default="postgres", help="SQL dialect hint (postgres, mysql).")
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
