"""Compare the declared schema with an introspected snapshot."""

from __future__ import annotations

import dataclasses
import logging
import re
from decimal import Decimal, InvalidOperation

import ddl
from directives import Database, Enum, Field, Index, Table
from dump_schemas import DBColumn, DBSchema
from render import UnsupportedTypeError, declared_indexes, get_renderer

logger = logging.getLogger(__name__)

MYSQL_FAMILY = ("mysql", "mariadb")
INT_RE = re.compile(r"^(tiny|small|medium|big)?int(eger)?[248]?\b")
FLOAT_RE = re.compile(r"^(float[48]?|double( precision)?|real)\b")
CAST_RE = re.compile(r"::[\w\s\"\.\[\]]+$")
CURRENT_TIMESTAMP_FORMS = {"now()", "current_timestamp", "current_timestamp()", "localtimestamp", "localtimestamp()"}


@dataclasses.dataclass
class ColumnDiff:
    column_name: str
    changes: dict[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class TableDiff:
    table_name: str
    columns_added: list[str] = dataclasses.field(default_factory=list)
    columns_removed: list[str] = dataclasses.field(default_factory=list)
    columns_modified: list[ColumnDiff] = dataclasses.field(default_factory=list)

    def has_changes(self) -> bool:
        return bool(self.columns_added or self.columns_removed or self.columns_modified)


@dataclasses.dataclass
class EnumDiff:
    enum_name: str
    values_added: list[str] = dataclasses.field(default_factory=list)
    values_removed: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class SchemaDiff:
    tables_added: list[str] = dataclasses.field(default_factory=list)
    tables_removed: list[str] = dataclasses.field(default_factory=list)
    tables_modified: list[TableDiff] = dataclasses.field(default_factory=list)
    enums_added: list[str] = dataclasses.field(default_factory=list)
    enums_removed: list[str] = dataclasses.field(default_factory=list)
    enums_modified: list[EnumDiff] = dataclasses.field(default_factory=list)
    indexes_added: list[str] = dataclasses.field(default_factory=list)
    indexes_removed: list[str] = dataclasses.field(default_factory=list)

    def has_changes(self) -> bool:
        return any(
            (
                self.tables_added,
                self.tables_removed,
                self.tables_modified,
                self.enums_added,
                self.enums_removed,
                self.enums_modified,
                self.indexes_added,
                self.indexes_removed,
            )
        )

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def normalize_type(type_name: str, dialect: str | None = None) -> str:
    """Bucket dialect spellings of one logical type: `VARCHAR(255)` and `varchar` -> `varchar`."""
    t = " ".join((type_name or "").lower().split())
    if not t:
        return ""
    if dialect in MYSQL_FAMILY and re.match(r"^tinyint\s*\(\s*1\s*\)", t):
        return "boolean"
    if "varchar" in t or "character varying" in t:
        return "varchar"
    if "text" in t:
        return "text"
    if "bool" in t:
        return "boolean"
    if "timestamp" in t or t.startswith("datetime"):
        return "timestamp"
    if "decimal" in t or "numeric" in t:
        return "decimal"
    if "serial" in t or INT_RE.match(t):
        return "integer"
    if FLOAT_RE.match(t):
        return "float"
    if "json" in t:
        return "json"
    if t in ("bpchar", "character") or t.startswith(("char(", "character(", "bpchar(")):
        return "char"
    return t


def normalize_number(value: str) -> str | None:
    try:
        number = Decimal(value)
    except InvalidOperation:
        return None
    if number == number.to_integral_value():
        return str(int(number))
    return str(number.normalize())


def normalize_default(value: str | None, type_bucket: str = "") -> str:
    """Canonical default: NULL/absent/empty -> "", casts and quotes stripped, booleans folded."""
    if value is None:
        return ""
    v = str(value).strip()
    while CAST_RE.search(v):
        v = CAST_RE.sub("", v).strip()
    if v.startswith("(") and v.endswith(")") and v.count("(") == 1:
        v = v[1:-1].strip()
    if v.upper() == "NULL" or v == "":
        return ""
    if len(v) >= 2 and v[0] == v[-1] == "'":
        v = v[1:-1].replace("''", "'")

    lowered = v.lower()
    if lowered in CURRENT_TIMESTAMP_FORMS:
        return "current_timestamp"
    if type_bucket == "boolean":
        if lowered in ("true", "1", "b'1'", "t", "yes"):
            return "true"
        if lowered in ("false", "0", "b'0'", "f", "no"):
            return "false"
    if type_bucket in ("integer", "decimal", "float"):
        number = normalize_number(v)
        if number is not None:
            return number
    return v


def display_default(value: str) -> str:
    return value if value else "NULL"


def introspected_type(column: DBColumn) -> str:
    return column.udt_name or column.data_type


def declared_type(field: Field, dialect: str, enum_names: set[str]) -> str:
    """Declared type as the dialect would create it, before bucketing."""
    field_type = field.type_for(dialect)
    if field_type in enum_names or field_type != field.type:
        return field_type
    renderer = get_renderer(dialect)
    try:
        return renderer.map_type(ddl.ColumnNode(name=field.name, type=field_type))
    except UnsupportedTypeError:
        return field_type


def compare_columns(table: Table, field: Field, db_column: DBColumn, dialect: str, enum_names: set[str]) -> ColumnDiff:
    diff = ColumnDiff(column_name=field.name)

    decl_type = normalize_type(declared_type(field, dialect, enum_names), dialect)
    db_type = normalize_type(introspected_type(db_column), dialect)
    if decl_type != db_type:
        diff.changes["type"] = f"{db_type} -> {decl_type}"

    decl_primary = field.primary or field.name in table.primary_key
    decl_nullable = field.nullable and not decl_primary
    if decl_nullable != db_column.is_nullable:
        diff.changes["nullable"] = f"{str(db_column.is_nullable).lower()} -> {str(decl_nullable).lower()}"

    if decl_primary != db_column.is_primary_key:
        diff.changes["primary_key"] = f"{str(db_column.is_primary_key).lower()} -> {str(decl_primary).lower()}"

    # a primary key renders without UNIQUE, so its uniqueness is implied
    decl_unique = field.unique and not decl_primary
    db_unique = db_column.is_unique and not db_column.is_primary_key
    if decl_unique != db_unique:
        diff.changes["unique"] = f"{str(db_unique).lower()} -> {str(decl_unique).lower()}"

    auto_increment = field.auto_increment or db_column.is_auto_increment or "serial" in field.type.lower()
    if not auto_increment:
        db_default = normalize_default(db_column.column_default, decl_type)
        decl_default = normalize_default(field.default_expr or field.default, decl_type)
        if db_default != decl_default:
            diff.changes["default"] = f"{display_default(db_default)} -> {display_default(decl_default)}"
    return diff


def compare_tables(declared: Database, introspected: DBSchema, diff: SchemaDiff) -> None:
    declared_by_name = {t.name: t for t in declared.tables}
    db_by_name = {t.name: t for t in introspected.tables}
    enum_names = {e.name for e in declared.enums}

    diff.tables_added = sorted(set(declared_by_name) - set(db_by_name))
    diff.tables_removed = sorted(set(db_by_name) - set(declared_by_name))

    for name in sorted(set(declared_by_name) & set(db_by_name)):
        table = declared_by_name[name]
        db_table = db_by_name[name]
        fields = {f.name: f for f in declared.table_fields(table)}
        db_columns = {c.name: c for c in db_table.columns}

        table_diff = TableDiff(
            table_name=name,
            columns_added=sorted(set(fields) - set(db_columns)),
            columns_removed=sorted(set(db_columns) - set(fields)),
        )
        for column_name in sorted(set(fields) & set(db_columns)):
            column_diff = compare_columns(table, fields[column_name], db_columns[column_name], introspected.dialect, enum_names)
            if column_diff.changes:
                table_diff.columns_modified.append(column_diff)
        if table_diff.has_changes():
            diff.tables_modified.append(table_diff)


def compare_enums(declared: Database, introspected: DBSchema, diff: SchemaDiff) -> None:
    declared_by_name = {e.name: e for e in declared.enums}
    db_by_name = {e.name: e for e in introspected.enums}

    diff.enums_added = sorted(set(declared_by_name) - set(db_by_name))
    diff.enums_removed = sorted(set(db_by_name) - set(declared_by_name))
    for name in sorted(set(declared_by_name) & set(db_by_name)):
        wanted = declared_by_name[name].values
        current = db_by_name[name].values
        added = [v for v in wanted if v not in current]
        removed = [v for v in current if v not in wanted]
        if added or removed:
            diff.enums_modified.append(EnumDiff(name, values_added=added, values_removed=removed))


def compare_indexes(declared: Database, introspected: DBSchema, diff: SchemaDiff) -> None:
    declared_names = {i.name for i in declared_indexes(declared)}
    db_names = set()
    for index in introspected.indexes:
        if index.is_primary:
            continue
        if index.is_constraint and index.name not in declared_names:
            continue
        if index.table_name in diff.tables_removed:
            continue
        db_names.add(index.name)

    diff.indexes_added = sorted(declared_names - db_names)
    diff.indexes_removed = sorted(db_names - declared_names)


def compare_schemas(declared: Database, introspected: DBSchema) -> SchemaDiff:
    diff = SchemaDiff()
    compare_tables(declared, introspected, diff)
    compare_enums(declared, introspected, diff)
    compare_indexes(declared, introspected, diff)
    logger.info(
        "schema diff: +%d/-%d/~%d tables, +%d/-%d/~%d enums, +%d/-%d indexes",
        len(diff.tables_added),
        len(diff.tables_removed),
        len(diff.tables_modified),
        len(diff.enums_added),
        len(diff.enums_removed),
        len(diff.enums_modified),
        len(diff.indexes_added),
        len(diff.indexes_removed),
    )
    return diff


def reverse_change(change: str) -> str:
    old, sep, new = change.partition(" -> ")
    if not sep:
        return change
    return f"{new} -> {old}"


def reverse_diff(diff: SchemaDiff) -> SchemaDiff:
    """The diff that undoes `diff`: additions become removals and every change flips direction."""
    return SchemaDiff(
        tables_added=list(diff.tables_removed),
        tables_removed=list(diff.tables_added),
        tables_modified=[
            TableDiff(
                table_name=t.table_name,
                columns_added=list(t.columns_removed),
                columns_removed=list(t.columns_added),
                columns_modified=[
                    ColumnDiff(c.column_name, {k: reverse_change(v) for k, v in c.changes.items()})
                    for c in t.columns_modified
                ],
            )
            for t in diff.tables_modified
        ],
        enums_added=list(diff.enums_removed),
        enums_removed=list(diff.enums_added),
        enums_modified=[
            EnumDiff(e.enum_name, values_added=list(e.values_removed), values_removed=list(e.values_added))
            for e in diff.enums_modified
        ],
        indexes_added=list(diff.indexes_removed),
        indexes_removed=list(diff.indexes_added),
    )


def default_from_db(value: str | None, dialect: str) -> tuple[str, str]:
    """Split a catalog default into (literal default, default expression)."""
    if value is None:
        return "", ""
    v = value.strip()
    if not v or v.upper() == "NULL" or v.startswith("nextval("):
        return "", ""
    literal = CAST_RE.sub("", v).strip()
    if len(literal) >= 2 and literal[0] == literal[-1] == "'":
        return literal[1:-1].replace("''", "'"), ""
    if dialect in MYSQL_FAMILY and normalize_number(v) is None and v.lower() not in CURRENT_TIMESTAMP_FORMS:
        return v, ""
    return "", v


def database_from_snapshot(snapshot: DBSchema) -> Database:
    """Declared-model view of a live schema, used to plan the reverse of a migration."""
    dialect = snapshot.dialect
    db = Database()
    db.enums = [Enum(e.name, list(e.values)) for e in snapshot.enums]
    enum_names = {e.name for e in db.enums}

    for table in snapshot.tables:
        pk_columns = [c.name for c in table.columns if c.is_primary_key]
        composite = len(pk_columns) > 1
        db.tables.append(Table(type_name=table.name, name=table.name, comment=table.comment, primary_key=pk_columns if composite else []))
        for column in table.columns:
            column_type = introspected_type(column)
            overrides: dict[str, dict[str, str]] = {}
            if column.is_auto_increment and dialect == "postgres":
                column_type = "BIGSERIAL" if column_type in ("int8", "bigint") else "SERIAL"
            elif column_type not in enum_names:
                overrides[dialect] = {"type": column_type}
            default, default_expr = default_from_db(column.column_default, dialect)
            db.fields.append(
                Field(
                    type_name=table.name,
                    attr_name=column.name,
                    name=column.name,
                    type=column_type,
                    nullable=column.is_nullable,
                    primary=column.is_primary_key and not composite,
                    unique=column.is_unique,
                    auto_increment=column.is_auto_increment and dialect != "postgres",
                    default=default,
                    default_expr=default_expr,
                    overrides=overrides,
                )
            )

    for index in snapshot.indexes:
        if index.is_primary or index.is_constraint:
            continue
        db.indexes.append(Index(type_name=index.table_name, name=index.name, fields=list(index.columns), unique=index.is_unique))

    db.dependencies = {t.name: list(snapshot.dependencies.get(t.name, [])) for t in db.tables}
    return db
