#!/usr/bin/env python3
"""Read the live schema of a PostgreSQL, MySQL or MariaDB database and dump it as YAML.

Usage:
    python dump_schemas.py [--database-url URL] [--schema NAME] [--out FILE]
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from config import Config, add_config_arguments, load_config

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schema_migrations"


@dataclasses.dataclass
class DBColumn:
    name: str
    data_type: str
    udt_name: str = ""
    is_nullable: bool = True
    is_primary_key: bool = False
    is_unique: bool = False
    column_default: str | None = None
    is_auto_increment: bool = False


@dataclasses.dataclass
class DBTable:
    name: str
    columns: list[DBColumn] = dataclasses.field(default_factory=list)
    comment: str = ""

    def column(self, name: str) -> DBColumn | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None


@dataclasses.dataclass
class DBIndex:
    name: str
    table_name: str
    columns: list[str] = dataclasses.field(default_factory=list)
    is_primary: bool = False
    is_unique: bool = False
    is_constraint: bool = False


@dataclasses.dataclass
class DBEnum:
    name: str
    values: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class DBSchema:
    dialect: str
    tables: list[DBTable] = dataclasses.field(default_factory=list)
    enums: list[DBEnum] = dataclasses.field(default_factory=list)
    indexes: list[DBIndex] = dataclasses.field(default_factory=list)
    dependencies: dict[str, list[str]] = dataclasses.field(default_factory=dict)

    def table(self, name: str) -> DBTable | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def connection_dialect(connection: Connection) -> str:
    dialect = connection.dialect
    if dialect.name == "postgresql":
        return "postgres"
    if dialect.name == "mariadb" or getattr(dialect, "is_mariadb", False):
        return "mariadb"
    if dialect.name == "mysql":
        return "mysql"
    raise ValueError(f"Unsupported database dialect for introspection: {dialect.name}")


def read_schema(connection: Connection, schema: str | None = None, timeout: float | None = None) -> DBSchema:
    """Snapshot tables, columns, indexes, enums and FK dependencies. Read-only."""
    dialect = connection_dialect(connection)
    if dialect == "postgres":
        snapshot = read_postgres(connection, schema or "public", timeout)
    else:
        snapshot = read_mysql(connection, dialect, schema, timeout)
    logger.info(
        "introspected %d tables, %d enums, %d indexes (%s)",
        len(snapshot.tables),
        len(snapshot.enums),
        len(snapshot.indexes),
        dialect,
    )
    return snapshot


def rows(connection: Connection, sql: str, **params) -> list[dict]:
    result = connection.execute(text(sql), params)
    return [dict(row) for row in result.mappings()]


PG_TABLES = """
SELECT c.relname AS table_name, COALESCE(obj_description(c.oid, 'pg_class'), '') AS comment
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = :schema AND c.relkind IN ('r', 'p')
ORDER BY c.relname
"""

PG_COLUMNS = """
SELECT table_name, column_name, data_type, udt_name, is_nullable, column_default, is_identity
FROM information_schema.columns
WHERE table_schema = :schema
ORDER BY table_name, ordinal_position
"""

PG_KEYS = """
SELECT tc.table_name, tc.constraint_name, tc.constraint_type, kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
 AND tc.table_name = kcu.table_name
WHERE tc.table_schema = :schema AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE')
ORDER BY tc.table_name, tc.constraint_name, kcu.ordinal_position
"""

PG_FOREIGN_KEYS = """
SELECT DISTINCT tc.table_name, ccu.table_name AS foreign_table_name
FROM information_schema.table_constraints tc
JOIN information_schema.constraint_column_usage ccu
  ON tc.constraint_name = ccu.constraint_name
 AND tc.table_schema = ccu.table_schema
WHERE tc.table_schema = :schema AND tc.constraint_type = 'FOREIGN KEY'
ORDER BY tc.table_name, foreign_table_name
"""

PG_ENUMS = """
SELECT t.typname AS enum_name, e.enumlabel AS enum_value
FROM pg_type t
JOIN pg_enum e ON t.oid = e.enumtypid
JOIN pg_namespace n ON n.oid = t.typnamespace
WHERE n.nspname = :schema
ORDER BY t.typname, e.enumsortorder
"""

PG_INDEXES = """
SELECT i.relname AS index_name,
       t.relname AS table_name,
       ix.indisprimary AS is_primary,
       ix.indisunique AS is_unique,
       EXISTS (SELECT 1 FROM pg_constraint con WHERE con.conindid = ix.indexrelid) AS is_constraint,
       pg_get_indexdef(ix.indexrelid, k.n, true) AS column_name
FROM pg_index ix
JOIN pg_class i ON i.oid = ix.indexrelid
JOIN pg_class t ON t.oid = ix.indrelid
JOIN pg_namespace n ON n.oid = t.relnamespace
CROSS JOIN LATERAL generate_series(1, ix.indnatts) AS k(n)
WHERE n.nspname = :schema
ORDER BY i.relname, k.n
"""


def read_postgres(connection: Connection, schema: str, timeout: float | None) -> DBSchema:
    if timeout:
        connection.execute(text(f"SET LOCAL statement_timeout = {int(timeout * 1000)}"))

    snapshot = DBSchema(dialect="postgres")
    for row in rows(connection, PG_TABLES, schema=schema):
        if row["table_name"] == LEDGER_TABLE:
            continue
        snapshot.tables.append(DBTable(name=row["table_name"], comment=row["comment"] or ""))
    by_name = {t.name: t for t in snapshot.tables}

    for row in rows(connection, PG_COLUMNS, schema=schema):
        table = by_name.get(row["table_name"])
        if table is None:
            continue
        default = row["column_default"]
        table.columns.append(
            DBColumn(
                name=row["column_name"],
                data_type=row["data_type"],
                udt_name=row["udt_name"],
                is_nullable=row["is_nullable"] == "YES",
                column_default=default,
                is_auto_increment=bool(default and default.startswith("nextval(")) or row["is_identity"] == "YES",
            )
        )

    unique_members: dict[tuple[str, str], list[str]] = {}
    for row in rows(connection, PG_KEYS, schema=schema):
        table = by_name.get(row["table_name"])
        if table is None:
            continue
        if row["constraint_type"] == "PRIMARY KEY":
            column = table.column(row["column_name"])
            if column is not None:
                column.is_primary_key = True
        else:
            unique_members.setdefault((row["table_name"], row["constraint_name"]), []).append(row["column_name"])
    for (table_name, _), members in unique_members.items():
        if len(members) == 1:
            column = by_name[table_name].column(members[0])
            if column is not None:
                column.is_unique = True

    snapshot.dependencies = {t.name: [] for t in snapshot.tables}
    for row in rows(connection, PG_FOREIGN_KEYS, schema=schema):
        deps = snapshot.dependencies.get(row["table_name"])
        if deps is not None and row["foreign_table_name"] != row["table_name"]:
            deps.append(row["foreign_table_name"])

    enums: dict[str, DBEnum] = {}
    for row in rows(connection, PG_ENUMS, schema=schema):
        enums.setdefault(row["enum_name"], DBEnum(row["enum_name"])).values.append(row["enum_value"])
    snapshot.enums = list(enums.values())

    indexes: dict[str, DBIndex] = {}
    for row in rows(connection, PG_INDEXES, schema=schema):
        if row["table_name"] not in by_name:
            continue
        index = indexes.get(row["index_name"])
        if index is None:
            index = DBIndex(
                name=row["index_name"],
                table_name=row["table_name"],
                is_primary=bool(row["is_primary"]),
                is_unique=bool(row["is_unique"]),
                is_constraint=bool(row["is_constraint"]),
            )
            indexes[index.name] = index
        index.columns.append(row["column_name"])
    snapshot.indexes = list(indexes.values())
    return snapshot


MYSQL_TABLES = """
SELECT TABLE_NAME AS table_name, TABLE_COMMENT AS comment
FROM information_schema.TABLES
WHERE TABLE_SCHEMA = :schema AND TABLE_TYPE = 'BASE TABLE'
ORDER BY TABLE_NAME
"""

MYSQL_COLUMNS = """
SELECT TABLE_NAME AS table_name, COLUMN_NAME AS column_name, DATA_TYPE AS data_type,
       COLUMN_TYPE AS column_type, IS_NULLABLE AS is_nullable, COLUMN_DEFAULT AS column_default,
       COLUMN_KEY AS column_key, EXTRA AS extra
FROM information_schema.COLUMNS
WHERE TABLE_SCHEMA = :schema
ORDER BY TABLE_NAME, ORDINAL_POSITION
"""

MYSQL_INDEXES = """
SELECT TABLE_NAME AS table_name, INDEX_NAME AS index_name, NON_UNIQUE AS non_unique,
       COLUMN_NAME AS column_name, SEQ_IN_INDEX AS seq
FROM information_schema.STATISTICS
WHERE TABLE_SCHEMA = :schema
ORDER BY TABLE_NAME, INDEX_NAME, SEQ_IN_INDEX
"""

MYSQL_CONSTRAINTS = """
SELECT TABLE_NAME AS table_name, CONSTRAINT_NAME AS constraint_name
FROM information_schema.TABLE_CONSTRAINTS
WHERE TABLE_SCHEMA = :schema AND CONSTRAINT_TYPE IN ('PRIMARY KEY', 'UNIQUE', 'FOREIGN KEY')
"""

MYSQL_FOREIGN_KEYS = """
SELECT DISTINCT TABLE_NAME AS table_name, REFERENCED_TABLE_NAME AS foreign_table_name
FROM information_schema.KEY_COLUMN_USAGE
WHERE TABLE_SCHEMA = :schema AND REFERENCED_TABLE_NAME IS NOT NULL
ORDER BY TABLE_NAME, REFERENCED_TABLE_NAME
"""


def parse_mysql_enum(column_type: str) -> list[str]:
    """`enum('a','b')` -> ['a', 'b']."""
    inner = column_type[column_type.index("(") + 1 : column_type.rindex(")")]
    values: list[str] = []
    buf: list[str] = []
    in_quote = False
    idx = 0
    while idx < len(inner):
        ch = inner[idx]
        if ch == "'":
            if in_quote and idx + 1 < len(inner) and inner[idx + 1] == "'":
                buf.append("'")
                idx += 2
                continue
            in_quote = not in_quote
            if not in_quote:
                values.append("".join(buf))
                buf = []
        elif in_quote:
            buf.append(ch)
        idx += 1
    return values


def set_mysql_timeout(connection: Connection, dialect: str, timeout: float) -> None:
    """Session statement timeout in seconds; 0 turns it off."""
    if dialect == "mariadb":
        connection.execute(text(f"SET SESSION max_statement_time = {float(timeout)}"))
    else:
        connection.execute(text(f"SET SESSION MAX_EXECUTION_TIME = {int(timeout * 1000)}"))


def read_mysql(connection: Connection, dialect: str, schema: str | None, timeout: float | None) -> DBSchema:
    # session settings outlive the read on a pooled connection
    if not timeout:
        return read_mysql_catalog(connection, dialect, schema)
    set_mysql_timeout(connection, dialect, timeout)
    try:
        return read_mysql_catalog(connection, dialect, schema)
    finally:
        set_mysql_timeout(connection, dialect, 0)


def read_mysql_catalog(connection: Connection, dialect: str, schema: str | None) -> DBSchema:
    if not schema:
        schema = connection.execute(text("SELECT DATABASE()")).scalar()
    if not schema:
        raise ValueError("No database selected; pass a schema name or include it in the URL")

    snapshot = DBSchema(dialect=dialect)
    for row in rows(connection, MYSQL_TABLES, schema=schema):
        if row["table_name"] == LEDGER_TABLE:
            continue
        snapshot.tables.append(DBTable(name=row["table_name"], comment=row["comment"] or ""))
    by_name = {t.name: t for t in snapshot.tables}

    enums: list[DBEnum] = []
    for row in rows(connection, MYSQL_COLUMNS, schema=schema):
        table = by_name.get(row["table_name"])
        if table is None:
            continue
        column_type = row["column_type"]
        udt_name = column_type
        if row["data_type"].lower() == "enum":
            udt_name = f"enum_{table.name}_{row['column_name']}".lower()
            enums.append(DBEnum(udt_name, parse_mysql_enum(column_type)))
        table.columns.append(
            DBColumn(
                name=row["column_name"],
                data_type=row["data_type"],
                udt_name=udt_name,
                is_nullable=row["is_nullable"] == "YES",
                is_primary_key=row["column_key"] == "PRI",
                is_unique=row["column_key"] == "UNI",
                column_default=row["column_default"],
                is_auto_increment="auto_increment" in (row["extra"] or "").lower(),
            )
        )
    snapshot.enums = sorted(enums, key=lambda e: e.name)

    constraint_names = {(r["table_name"], r["constraint_name"]) for r in rows(connection, MYSQL_CONSTRAINTS, schema=schema)}
    indexes: dict[tuple[str, str], DBIndex] = {}
    for row in rows(connection, MYSQL_INDEXES, schema=schema):
        if row["table_name"] not in by_name:
            continue
        key = (row["table_name"], row["index_name"])
        index = indexes.get(key)
        if index is None:
            index = DBIndex(
                name=row["index_name"],
                table_name=row["table_name"],
                is_primary=row["index_name"] == "PRIMARY",
                is_unique=int(row["non_unique"]) == 0,
                is_constraint=key in constraint_names,
            )
            indexes[key] = index
        index.columns.append(row["column_name"] or "")
    snapshot.indexes = list(indexes.values())

    snapshot.dependencies = {t.name: [] for t in snapshot.tables}
    for row in rows(connection, MYSQL_FOREIGN_KEYS, schema=schema):
        deps = snapshot.dependencies.get(row["table_name"])
        if deps is not None and row["foreign_table_name"] != row["table_name"]:
            deps.append(row["foreign_table_name"])
    return snapshot


def dump_yaml(snapshot: DBSchema) -> str:
    return yaml.safe_dump(snapshot.to_dict(), sort_keys=False, default_flow_style=False)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dump the live database schema as YAML")
    add_config_arguments(parser)
    parser.add_argument("--out", default="-", help="Output YAML file (default: stdout)")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    cfg: Config = load_config(args)
    logging.basicConfig(level=cfg.log_level, format="%(levelname)s %(name)s: %(message)s")
    if not cfg.database_url:
        print("No database URL configured (use --database-url or PTAH_DATABASE_URL)", file=sys.stderr)
        return 2

    engine = create_engine(cfg.database_url)
    try:
        with engine.connect() as conn:
            snapshot = read_schema(conn, cfg.schema, cfg.timeout)
    finally:
        engine.dispose()

    output = dump_yaml(snapshot)
    if args.out == "-":
        sys.stdout.write(output)
        return 0

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(output, encoding="utf-8")
    print(f"Total: {len(snapshot.tables)} tables written to {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
