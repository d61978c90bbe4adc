"""Render DDL node trees as PostgreSQL, MySQL or MariaDB SQL text."""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Iterable

import ddl
from directives import Database, Enum, Field, ref_column, ref_table

logger = logging.getLogger(__name__)

DIALECTS = ("postgres", "mysql", "mariadb")
DIALECT_ALIASES = {"postgresql": "postgres", "pg": "postgres", "psql": "postgres"}


class RenderError(ValueError):
    pass


class UnsupportedTypeError(ValueError):
    pass


POSTGRES_TYPES: dict[str, str] = {
    "TIMESTAMP WITH TIME ZONE": "TIMESTAMPTZ",
    "TIMESTAMP WITHOUT TIME ZONE": "TIMESTAMP",
    "MEDIUMTEXT": "TEXT",
    "LONGTEXT": "TEXT",
    "INT": "INTEGER",
    "INTEGER": "INTEGER",
    "INT4": "INTEGER",
    "BIGINT": "BIGINT",
    "INT8": "BIGINT",
    "SMALLINT": "SMALLINT",
    "INT2": "SMALLINT",
    "TINYINT": "SMALLINT",
    "SERIAL": "SERIAL",
    "BIGSERIAL": "BIGSERIAL",
    "SMALLSERIAL": "SMALLSERIAL",
    "VARCHAR": "VARCHAR",
    "CHARACTER VARYING": "VARCHAR",
    "CHAR": "CHAR",
    "TEXT": "TEXT",
    "BOOLEAN": "BOOLEAN",
    "BOOL": "BOOLEAN",
    "TIMESTAMP": "TIMESTAMP",
    "TIMESTAMPTZ": "TIMESTAMPTZ",
    "DATETIME": "TIMESTAMP",
    "DATE": "DATE",
    "TIME": "TIME",
    "DECIMAL": "DECIMAL",
    "NUMERIC": "NUMERIC",
    "REAL": "REAL",
    "FLOAT": "DOUBLE PRECISION",
    "DOUBLE": "DOUBLE PRECISION",
    "DOUBLE PRECISION": "DOUBLE PRECISION",
    "JSON": "JSON",
    "JSONB": "JSONB",
    "UUID": "UUID",
    "BYTEA": "BYTEA",
    "BLOB": "BYTEA",
    "FLOAT4": "REAL",
    "FLOAT8": "DOUBLE PRECISION",
    "BPCHAR": "CHAR",
    "TIMETZ": "TIMETZ",
    "INET": "INET",
}

MYSQL_TYPES: dict[str, str] = {
    "TIMESTAMP WITH TIME ZONE": "TIMESTAMP",
    "TIMESTAMP WITHOUT TIME ZONE": "TIMESTAMP",
    "MEDIUMTEXT": "MEDIUMTEXT",
    "LONGTEXT": "LONGTEXT",
    "INT": "INT",
    "INTEGER": "INT",
    "INT4": "INT",
    "BIGINT": "BIGINT",
    "INT8": "BIGINT",
    "SMALLINT": "SMALLINT",
    "INT2": "SMALLINT",
    "TINYINT": "TINYINT",
    "SERIAL": "INT AUTO_INCREMENT",
    "BIGSERIAL": "BIGINT AUTO_INCREMENT",
    "SMALLSERIAL": "SMALLINT AUTO_INCREMENT",
    "VARCHAR": "VARCHAR",
    "CHARACTER VARYING": "VARCHAR",
    "CHAR": "CHAR",
    "TEXT": "TEXT",
    "BOOLEAN": "BOOLEAN",
    "BOOL": "BOOLEAN",
    "TIMESTAMP": "TIMESTAMP",
    "TIMESTAMPTZ": "TIMESTAMP",
    "DATETIME": "DATETIME",
    "DATE": "DATE",
    "TIME": "TIME",
    "DECIMAL": "DECIMAL",
    "NUMERIC": "DECIMAL",
    "REAL": "DOUBLE",
    "FLOAT": "FLOAT",
    "DOUBLE": "DOUBLE",
    "DOUBLE PRECISION": "DOUBLE",
    "JSON": "JSON",
    "JSONB": "JSON",
    "UUID": "CHAR(36)",
    "BYTEA": "BLOB",
    "BLOB": "BLOB",
    "FLOAT4": "FLOAT",
    "FLOAT8": "DOUBLE",
    "BPCHAR": "CHAR",
    "TIMETZ": "TIME",
    "INET": "VARCHAR(45)",
}

MARIADB_TYPES: dict[str, str] = {**MYSQL_TYPES, "JSON": "LONGTEXT", "JSONB": "LONGTEXT"}

TYPE_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9_ ]*?)\s*(\(.*\))?\s*(\[\])?\s*$")


def canonical_dialect(name: str) -> str:
    key = (name or "").strip().lower()
    key = DIALECT_ALIASES.get(key, key)
    if key not in DIALECTS:
        raise ValueError(f"Unsupported dialect: {name!r} (expected one of {', '.join(DIALECTS)})")
    return key


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def is_numeric_literal(value: str) -> bool:
    return re.fullmatch(r"-?\d+(\.\d+)?", value.strip()) is not None


class Renderer:
    """Visitor base shared by the dialect renderers."""

    dialect = ""
    type_map: dict[str, str] = {}

    def __init__(self, enums: dict[str, Iterable[str]] | None = None) -> None:
        self.enums: dict[str, tuple[str, ...]] = {k: tuple(v) for k, v in (enums or {}).items()}

    def render(self, node: ddl.Node | ddl.StatementList) -> str:
        return node.accept(self)

    def visit_statement_list(self, statements: ddl.StatementList) -> str:
        for stmt in statements:
            if isinstance(stmt, ddl.EnumNode):
                self.enums.setdefault(stmt.name, stmt.values)
        self.check_enum_order(statements)
        return "".join(stmt.accept(self) for stmt in statements)

    def check_enum_order(self, statements: ddl.StatementList) -> None:
        pass

    # leaf statements

    def visit_comment(self, node: ddl.CommentNode) -> str:
        return f"-- {node.text} --\n"

    def visit_raw_sql(self, node: ddl.RawSQLNode) -> str:
        sql = node.sql.strip()
        if not sql:
            return ""
        return sql + "\n"

    def visit_enum(self, node: ddl.EnumNode) -> str:
        return ""

    def visit_alter_enum(self, node: ddl.AlterEnumNode) -> str:
        return ""

    def visit_drop_enum(self, node: ddl.DropEnumNode) -> str:
        return ""

    def visit_column(self, node: ddl.ColumnNode) -> str:
        return self.column_definition(node)

    def visit_constraint(self, node: ddl.ConstraintNode) -> str:
        return self.constraint_definition(node)

    # types

    def map_type(self, column: ddl.ColumnNode) -> str:
        override = column.override(self.dialect, "type")
        if override:
            return override

        m = TYPE_RE.match(column.type)
        if not m:
            raise UnsupportedTypeError(f"Unsupported type {column.type!r} for column {column.name} ({self.dialect})")
        base = " ".join(m.group(1).upper().split())
        params = m.group(2) or ""
        array = m.group(3) or ""
        mapped = self.type_map.get(base)
        if mapped is None:
            raise UnsupportedTypeError(f"Unsupported type {column.type!r} for column {column.name} ({self.dialect})")
        if array and self.dialect != "postgres":
            raise UnsupportedTypeError(f"Array type {column.type!r} for column {column.name} is PostgreSQL-only")
        if params and "(" in mapped:
            params = ""
        return f"{mapped}{params}{array}"

    def column_type(self, column: ddl.ColumnNode) -> str:
        return self.map_type(column)

    # defaults

    def default_clause(self, column: ddl.ColumnNode, column_type: str) -> str:
        if column.default_expr:
            return f"DEFAULT {self.default_expression(column.default_expr)}"
        if column.default:
            return f"DEFAULT {self.default_value(column.default, column_type)}"
        return ""

    def default_expression(self, expr: str) -> str:
        return expr

    def default_value(self, value: str, column_type: str) -> str:
        upper = column_type.upper()
        if value.startswith("'") and value.endswith("'") and len(value) >= 2:
            return value
        if value.upper() == "NULL":
            return "NULL"
        if "BOOL" in upper and value.lower() in ("true", "false", "1", "0"):
            return "TRUE" if value.lower() in ("true", "1") else "FALSE"
        if is_numeric_literal(value) and re.search(r"INT|SERIAL|DECIMAL|NUMERIC|REAL|FLOAT|DOUBLE", upper):
            return value
        return quote_literal(value)

    # columns and constraints

    def column_definition(self, column: ddl.ColumnNode, inline_keys: bool = True) -> str:
        column_type = self.column_type(column)
        parts = [column.name, column_type]
        if column.primary and inline_keys:
            parts.append("PRIMARY KEY")
        else:
            if not column.nullable or column.primary:
                parts.append("NOT NULL")
            if column.unique and inline_keys:
                parts.append("UNIQUE")
        auto = self.auto_increment_clause(column, column_type)
        if auto:
            parts.append(auto)
        default = self.default_clause(column, column_type)
        if default:
            parts.append(default)
        check = column.override(self.dialect, "check") or column.check
        if check:
            parts.append(f"CHECK ({check})")
        comment = self.inline_column_comment(column)
        if comment:
            parts.append(comment)
        return " ".join(parts)

    def auto_increment_clause(self, column: ddl.ColumnNode, column_type: str) -> str:
        return ""

    def inline_column_comment(self, column: ddl.ColumnNode) -> str:
        return ""

    def constraint_definition(self, constraint: ddl.ConstraintNode) -> str:
        columns = ", ".join(constraint.columns)
        prefix = f"CONSTRAINT {constraint.name} " if constraint.name else ""
        if constraint.type == "primary":
            return f"PRIMARY KEY ({columns})"
        if constraint.type == "unique":
            return f"{prefix}UNIQUE ({columns})"
        if constraint.type == "check":
            return f"{prefix}CHECK ({constraint.expression})"
        if constraint.type == "foreign":
            if constraint.reference is None:
                raise RenderError(f"Foreign key constraint {constraint.name or columns} has no reference")
            return prefix + self.references(constraint.columns, constraint.reference)
        raise RenderError(f"Unknown constraint type: {constraint.type}")

    def references(self, columns: Iterable[str], ref: ddl.ForeignKeyRef) -> str:
        text = f"FOREIGN KEY ({', '.join(columns)}) REFERENCES {ref.table}({ref.column})"
        if ref.on_delete:
            text += f" ON DELETE {ref.on_delete}"
        if ref.on_update:
            text += f" ON UPDATE {ref.on_update}"
        return text

    def column_foreign_keys(self, node: ddl.CreateTableNode) -> list[str]:
        lines = []
        for column in node.columns:
            fk = column.foreign_key
            if fk is None:
                continue
            name = fk.name or f"fk_{node.name}_{column.name}"
            lines.append(f"CONSTRAINT {name} " + self.references([column.name], fk))
        return lines

    # tables

    def table_marker(self, node: ddl.CreateTableNode) -> str:
        comment = node.override(self.dialect, "comment") or node.comment
        if comment:
            return f"-- {self.dialect.upper()} TABLE: {node.name} ({comment}) --"
        return f"-- {self.dialect.upper()} TABLE: {node.name} --"

    def visit_create_table(self, node: ddl.CreateTableNode) -> str:
        lines: list[str] = []
        for column in node.columns:
            try:
                lines.append(self.column_definition(column))
            except UnsupportedTypeError as exc:
                raise UnsupportedTypeError(f"{node.name}: {exc}") from exc
        for constraint in node.constraints:
            lines.append(self.constraint_definition(constraint))
        lines.extend(self.column_foreign_keys(node))

        out = [self.table_marker(node), f"CREATE TABLE {node.name} ("]
        out.append(",\n".join(f"  {line}" for line in lines))
        options = self.table_options(node)
        out.append(f"){' ' + options if options else ''};")
        out.extend(self.table_trailer(node))
        return "\n".join(out) + "\n\n"

    def table_options(self, node: ddl.CreateTableNode) -> str:
        return ""

    def table_trailer(self, node: ddl.CreateTableNode) -> list[str]:
        return []

    def visit_drop_table(self, node: ddl.DropTableNode) -> str:
        parts = ["DROP TABLE"]
        if node.if_exists:
            parts.append("IF EXISTS")
        parts.append(node.name)
        return " ".join(parts) + ";\n"

    # indexes

    def visit_index(self, node: ddl.IndexNode) -> str:
        unique = "UNIQUE " if node.unique else ""
        return f"CREATE {unique}INDEX {node.name} ON {node.table} ({', '.join(node.columns)});\n"

    def visit_drop_index(self, node: ddl.DropIndexNode) -> str:
        exists = "IF EXISTS " if node.if_exists else ""
        return f"DROP INDEX {exists}{node.name};\n"

    # alter table

    def visit_alter_table(self, node: ddl.AlterTableNode) -> str:
        out: list[str] = []
        for op in node.operations:
            if isinstance(op, ddl.AddColumn):
                out.extend(self.add_column(node.name, op.column))
            elif isinstance(op, ddl.ModifyColumn):
                out.extend(self.modify_column(node.name, op.column, op.changes))
            elif isinstance(op, ddl.DropColumn):
                out.append(f"ALTER TABLE {node.name} DROP COLUMN {op.name};")
            else:
                raise RenderError(f"Unknown alter table operation: {type(op).__name__}")
        return "".join(line + "\n" for line in out)

    def add_column(self, table: str, column: ddl.ColumnNode) -> list[str]:
        out = [f"ALTER TABLE {table} ADD COLUMN {self.column_definition(column)};"]
        fk = column.foreign_key
        if fk is not None:
            name = fk.name or f"fk_{table}_{column.name}"
            out.append(f"ALTER TABLE {table} ADD CONSTRAINT {name} " + self.references([column.name], fk) + ";")
        return out

    def modify_column(self, table: str, column: ddl.ColumnNode, changes: tuple[str, ...]) -> list[str]:
        raise NotImplementedError

    def unique_changes(self, table: str, column: ddl.ColumnNode) -> list[str]:
        raise NotImplementedError


class PostgresRenderer(Renderer):
    dialect = "postgres"
    type_map = POSTGRES_TYPES

    def check_enum_order(self, statements: ddl.StatementList) -> None:
        declared = {s.name for s in statements if isinstance(s, ddl.EnumNode)}
        seen: set[str] = set()
        for stmt in statements:
            if isinstance(stmt, ddl.EnumNode):
                seen.add(stmt.name)
                continue
            if not isinstance(stmt, ddl.CreateTableNode):
                continue
            for column in stmt.columns:
                if column.type in declared and column.type not in seen:
                    raise RenderError(
                        f"Enum {column.type} is referenced by {stmt.name}.{column.name} before it is defined"
                    )

    def column_type(self, column: ddl.ColumnNode) -> str:
        override = column.override(self.dialect, "type")
        if override:
            return override
        if column.enum_values or column.type in self.enums:
            return column.type
        mapped = self.map_type(column)
        if column.auto_increment:
            serial = {"INTEGER": "SERIAL", "BIGINT": "BIGSERIAL", "SMALLINT": "SMALLSERIAL"}.get(mapped)
            if serial:
                return serial
        return mapped

    def default_expression(self, expr: str) -> str:
        if expr.upper() == "CURRENT_TIMESTAMP()":
            return "CURRENT_TIMESTAMP"
        return expr

    def visit_enum(self, node: ddl.EnumNode) -> str:
        values = ", ".join(quote_literal(v) for v in node.values)
        return f"CREATE TYPE {node.name} AS ENUM ({values});\n"

    def visit_alter_enum(self, node: ddl.AlterEnumNode) -> str:
        return "".join(f"ALTER TYPE {node.name} ADD VALUE {quote_literal(v)};\n" for v in node.add_values)

    def visit_drop_enum(self, node: ddl.DropEnumNode) -> str:
        exists = "IF EXISTS " if node.if_exists else ""
        return f"DROP TYPE {exists}{node.name};\n"

    def visit_drop_table(self, node: ddl.DropTableNode) -> str:
        text = super().visit_drop_table(node)
        if node.cascade:
            text = text[:-2] + " CASCADE;\n"
        return text

    def table_trailer(self, node: ddl.CreateTableNode) -> list[str]:
        out = []
        comment = node.override(self.dialect, "comment") or node.comment
        if comment:
            out.append(f"COMMENT ON TABLE {node.name} IS {quote_literal(comment)};")
        for column in node.columns:
            if column.comment:
                out.append(f"COMMENT ON COLUMN {node.name}.{column.name} IS {quote_literal(column.comment)};")
        return out

    def visit_index(self, node: ddl.IndexNode) -> str:
        text = super().visit_index(node)
        if node.comment:
            text += f"COMMENT ON INDEX {node.name} IS {quote_literal(node.comment)};\n"
        return text

    def modify_column(self, table: str, column: ddl.ColumnNode, changes: tuple[str, ...]) -> list[str]:
        changes = changes or ("type", "nullable", "default")
        prefix = f"ALTER TABLE {table} ALTER COLUMN {column.name}"
        out: list[str] = []
        if "type" in changes:
            column_type = self.column_type(column)
            if column_type in ("SERIAL", "BIGSERIAL", "SMALLSERIAL"):
                column_type = {"SERIAL": "INTEGER", "BIGSERIAL": "BIGINT", "SMALLSERIAL": "SMALLINT"}[column_type]
            out.append(f"{prefix} TYPE {column_type} USING {column.name}::{column_type};")
        if "nullable" in changes:
            out.append(f"{prefix} {'DROP' if column.nullable else 'SET'} NOT NULL;")
        if "default" in changes:
            default = self.default_clause(column, self.column_type(column))
            if default:
                out.append(f"{prefix} SET {default};")
            elif not column.auto_increment:
                out.append(f"{prefix} DROP DEFAULT;")
        if "unique" in changes:
            out.extend(self.unique_changes(table, column))
        if "primary_key" in changes:
            out.append(f"-- primary key change on {table}.{column.name} needs a manual migration --")
        return out

    def unique_changes(self, table: str, column: ddl.ColumnNode) -> list[str]:
        name = f"{table}_{column.name}_key"
        if column.unique:
            return [f"ALTER TABLE {table} ADD CONSTRAINT {name} UNIQUE ({column.name});"]
        return [f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {name};"]


class MySQLRenderer(Renderer):
    dialect = "mysql"
    type_map = MYSQL_TYPES

    def column_type(self, column: ddl.ColumnNode) -> str:
        override = column.override(self.dialect, "type")
        if override:
            return override
        values = column.enum_values or self.enums.get(column.type)
        if values:
            return "ENUM(" + ", ".join(quote_literal(v) for v in values) + ")"
        return self.map_type(column)

    def auto_increment_clause(self, column: ddl.ColumnNode, column_type: str) -> str:
        if column.auto_increment and "AUTO_INCREMENT" not in column_type.upper():
            return "AUTO_INCREMENT"
        return ""

    def default_expression(self, expr: str) -> str:
        if expr.upper() == "NOW()":
            return "CURRENT_TIMESTAMP"
        return expr

    def inline_column_comment(self, column: ddl.ColumnNode) -> str:
        if column.comment:
            return f"COMMENT {quote_literal(column.comment)}"
        return ""

    def table_options(self, node: ddl.CreateTableNode) -> str:
        options = {k.lower(): v for k, v in node.dialect_options(self.dialect).items()}
        comment = options.pop("comment", "") or node.comment
        parts = []
        if "engine" in options:
            parts.append(f"ENGINE={options.pop('engine')}")
        if "charset" in options:
            parts.append(f"DEFAULT CHARSET={options.pop('charset')}")
        if "collate" in options:
            parts.append(f"COLLATE={options.pop('collate')}")
        if comment:
            parts.append(f"COMMENT={quote_literal(comment)}")
        options.pop("type", None)
        for key in sorted(options):
            parts.append(f"{key.upper()}={options[key]}")
        return " ".join(parts)

    def visit_index(self, node: ddl.IndexNode) -> str:
        unique = "UNIQUE " if node.unique else ""
        comment = f" COMMENT {quote_literal(node.comment)}" if node.comment else ""
        return f"CREATE {unique}INDEX {node.name} ON {node.table} ({', '.join(node.columns)}){comment};\n"

    def visit_drop_index(self, node: ddl.DropIndexNode) -> str:
        if not node.table:
            raise RenderError(f"DROP INDEX {node.name} needs the table name on {self.dialect}")
        return f"DROP INDEX {node.name} ON {node.table};\n"

    def modify_column(self, table: str, column: ddl.ColumnNode, changes: tuple[str, ...]) -> list[str]:
        out = [f"ALTER TABLE {table} MODIFY COLUMN {self.column_definition(column, inline_keys=False)};"]
        if "unique" in changes:
            out.extend(self.unique_changes(table, column))
        if "primary_key" in changes:
            out.append(f"-- primary key change on {table}.{column.name} needs a manual migration --")
        return out

    def unique_changes(self, table: str, column: ddl.ColumnNode) -> list[str]:
        if column.unique:
            return [f"ALTER TABLE {table} ADD UNIQUE KEY {column.name} ({column.name});"]
        return [f"ALTER TABLE {table} DROP INDEX {column.name};"]


class MariaDBRenderer(MySQLRenderer):
    dialect = "mariadb"
    type_map = MARIADB_TYPES

    def visit_drop_index(self, node: ddl.DropIndexNode) -> str:
        if not node.table:
            raise RenderError(f"DROP INDEX {node.name} needs the table name on {self.dialect}")
        exists = "IF EXISTS " if node.if_exists else ""
        return f"DROP INDEX {exists}{node.name} ON {node.table};\n"


RENDERERS: dict[str, type[Renderer]] = {
    "postgres": PostgresRenderer,
    "mysql": MySQLRenderer,
    "mariadb": MariaDBRenderer,
}


def get_renderer(dialect: str, enums: dict[str, Iterable[str]] | None = None) -> Renderer:
    return RENDERERS[canonical_dialect(dialect)](enums)


def render_sql(dialect: str, statements: ddl.StatementList, enums: dict[str, Iterable[str]] | None = None) -> str:
    return get_renderer(dialect, enums).render(statements)


@dataclasses.dataclass
class DeclaredIndex:
    name: str
    table: str
    columns: list[str]
    unique: bool = False
    comment: str = ""


def declared_indexes(database: Database) -> list[DeclaredIndex]:
    """Index directives plus indexes implied by `unique_expr` fields and indexed relations."""
    out: list[DeclaredIndex] = []
    for index in database.indexes:
        out.append(DeclaredIndex(index.name, database.index_table(index), list(index.fields), index.unique, index.comment))
    for table in database.tables:
        for field in database.table_fields(table):
            if field.unique_expr:
                out.append(DeclaredIndex(f"uidx_{table.name}_{field.name}", table.name, [field.unique_expr], True))
        for embedded in database.embedded_fields:
            if embedded.type_name == table.type_name and embedded.mode == "relation" and embedded.index and embedded.field:
                out.append(DeclaredIndex(f"idx_{table.name}_{embedded.field}", table.name, [embedded.field]))
    return out


def enum_map(enums: Iterable[Enum]) -> dict[str, list[str]]:
    return {e.name: list(e.values) for e in enums}


def column_from_field(field: Field, enums: dict[str, list[str]], table_name: str = "") -> ddl.ColumnNode:
    fk = None
    if field.foreign:
        owner = table_name or field.type_name.lower()
        fk = ddl.ForeignKeyRef(
            table=ref_table(field.foreign),
            column=ref_column(field.foreign),
            name=field.foreign_key_name or f"fk_{owner}_{field.name}",
            on_delete=field.on_delete,
            on_update=field.on_update,
        )
    return ddl.ColumnNode(
        name=field.name,
        type=field.type,
        nullable=field.nullable and not field.primary,
        primary=field.primary,
        unique=field.unique,
        auto_increment=field.auto_increment,
        default=field.default,
        default_expr=field.default_expr,
        check=field.check,
        comment=field.comment,
        foreign_key=fk,
        enum_values=tuple(enums.get(field.type, ())),
        overrides=ddl.freeze_overrides(field.overrides),
    )


def add_table(builder: ddl.SchemaBuilder, database: Database, table_name: str, enums: dict[str, list[str]]) -> None:
    table = database.table_by_name(table_name)
    if table is None:
        raise ValueError(f"Unknown table: {table_name}")
    fields = database.table_fields(table)
    tb = builder.table(table.name)
    if table.comment:
        tb.comment(table.comment)
    for dialect, attrs in table.overrides.items():
        for key, value in attrs.items():
            tb.override(dialect, key, value)
    for field in fields:
        column = column_from_field(field, enums, table.name)
        if table.primary_key and column.primary:
            column = dataclasses.replace(column, primary=False, nullable=False)
        tb.add_column(column)
    if table.primary_key:
        tb.primary_key(*table.primary_key)
    for idx, check in enumerate(table.checks, 1):
        tb.check(check, name=f"chk_{table.name}_{idx}")
    tb.end()
    if table.custom_sql:
        builder.raw(table.custom_sql if table.custom_sql.rstrip().endswith(";") else table.custom_sql + ";")


def schema_statements(database: Database, dialect: str) -> ddl.StatementList:
    dialect = canonical_dialect(dialect)
    enums = enum_map(database.enums)
    builder = ddl.new_schema()
    for enum in database.enums:
        builder.enum(enum.name, *enum.values)
    for table in database.tables:
        add_table(builder, database, table.name, enums)
    for index in declared_indexes(database):
        ib = builder.index(index.name, index.table, *index.columns)
        if index.unique:
            ib.unique()
        if index.comment:
            ib.comment(index.comment)
        ib.end()
    return builder.build()


def render_schema(database: Database, dialect: str) -> str:
    statements = schema_statements(database, dialect)
    logger.debug("rendering %d statements for %s", len(statements), dialect)
    return render_sql(dialect, statements, enum_map(database.enums))
