"""Dialect-neutral DDL node tree and the fluent builder that produces it."""

from __future__ import annotations

import dataclasses
from typing import Any


class BuilderError(RuntimeError):
    pass


def freeze_overrides(overrides: dict[str, dict[str, str]] | None) -> tuple[tuple[str, tuple[tuple[str, str], ...]], ...]:
    if not overrides:
        return ()
    return tuple((dialect, tuple(sorted(attrs.items()))) for dialect, attrs in sorted(overrides.items()))


class Node:
    kind = "node"

    def accept(self, visitor: Any) -> Any:
        return getattr(visitor, f"visit_{self.kind}")(self)


@dataclasses.dataclass(frozen=True)
class CommentNode(Node):
    text: str
    kind = "comment"


@dataclasses.dataclass(frozen=True)
class EnumNode(Node):
    name: str
    values: tuple[str, ...]
    kind = "enum"


@dataclasses.dataclass(frozen=True)
class AlterEnumNode(Node):
    name: str
    add_values: tuple[str, ...]
    kind = "alter_enum"


@dataclasses.dataclass(frozen=True)
class DropEnumNode(Node):
    name: str
    if_exists: bool = True
    kind = "drop_enum"


@dataclasses.dataclass(frozen=True)
class ForeignKeyRef:
    table: str
    column: str
    name: str = ""
    on_delete: str = ""
    on_update: str = ""


@dataclasses.dataclass(frozen=True)
class ColumnNode(Node):
    name: str
    type: str
    nullable: bool = True
    primary: bool = False
    unique: bool = False
    auto_increment: bool = False
    default: str = ""
    default_expr: str = ""
    check: str = ""
    comment: str = ""
    foreign_key: ForeignKeyRef | None = None
    enum_values: tuple[str, ...] = ()
    overrides: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = ()
    kind = "column"

    def override(self, dialect: str, key: str) -> str:
        return lookup_override(self.overrides, dialect, key)


@dataclasses.dataclass(frozen=True)
class ConstraintNode(Node):
    type: str  # primary | unique | foreign | check
    name: str = ""
    columns: tuple[str, ...] = ()
    expression: str = ""
    reference: ForeignKeyRef | None = None
    kind = "constraint"


@dataclasses.dataclass(frozen=True)
class CreateTableNode(Node):
    name: str
    columns: tuple[ColumnNode, ...] = ()
    constraints: tuple[ConstraintNode, ...] = ()
    comment: str = ""
    options: tuple[tuple[str, str], ...] = ()
    overrides: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = ()
    kind = "create_table"

    def override(self, dialect: str, key: str) -> str:
        return lookup_override(self.overrides, dialect, key)

    def dialect_options(self, dialect: str) -> dict[str, str]:
        options = dict(self.options)
        for name, attrs in self.overrides:
            if name == dialect:
                options.update(attrs)
                break
        else:
            if dialect == "mariadb":
                for name, attrs in self.overrides:
                    if name == "mysql":
                        options.update(attrs)
        return options


@dataclasses.dataclass(frozen=True)
class AddColumn:
    column: ColumnNode


@dataclasses.dataclass(frozen=True)
class ModifyColumn:
    column: ColumnNode
    changes: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class DropColumn:
    name: str


@dataclasses.dataclass(frozen=True)
class AlterTableNode(Node):
    name: str
    operations: tuple[AddColumn | ModifyColumn | DropColumn, ...]
    kind = "alter_table"


@dataclasses.dataclass(frozen=True)
class IndexNode(Node):
    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = False
    comment: str = ""
    kind = "index"


@dataclasses.dataclass(frozen=True)
class DropIndexNode(Node):
    name: str
    table: str = ""
    if_exists: bool = True
    kind = "drop_index"


@dataclasses.dataclass(frozen=True)
class DropTableNode(Node):
    name: str
    if_exists: bool = True
    cascade: bool = False
    kind = "drop_table"


@dataclasses.dataclass(frozen=True)
class RawSQLNode(Node):
    sql: str
    kind = "raw_sql"


@dataclasses.dataclass(frozen=True)
class StatementList:
    statements: tuple[Node, ...] = ()

    def __iter__(self):
        return iter(self.statements)

    def __len__(self) -> int:
        return len(self.statements)

    def accept(self, visitor: Any) -> Any:
        return visitor.visit_statement_list(self)


def lookup_override(overrides: tuple, dialect: str, key: str) -> str:
    """Override `key` for `dialect`; mariadb falls back to mysql."""
    by_dialect = {name: dict(attrs) for name, attrs in overrides}
    attrs = by_dialect.get(dialect)
    if attrs is None and dialect == "mariadb":
        attrs = by_dialect.get("mysql")
    if not attrs:
        return ""
    return attrs.get(key, "")


class _Builder:
    def __init__(self) -> None:
        self._closed = False
        self._open_child: _Builder | None = None

    def _check_open(self) -> None:
        if self._closed:
            raise BuilderError(f"{type(self).__name__} is already closed")
        if self._open_child is not None:
            raise BuilderError(f"{type(self._open_child).__name__} must be closed with end() first")

    def _close(self) -> None:
        self._check_open()
        self._closed = True


class SchemaBuilder(_Builder):
    def __init__(self) -> None:
        super().__init__()
        self._statements: list[Node] = []

    def comment(self, text: str) -> SchemaBuilder:
        self._check_open()
        self._statements.append(CommentNode(text))
        return self

    def enum(self, name: str, *values: str) -> SchemaBuilder:
        self._check_open()
        self._statements.append(EnumNode(name, tuple(values)))
        return self

    def raw(self, sql: str) -> SchemaBuilder:
        self._check_open()
        self._statements.append(RawSQLNode(sql))
        return self

    def add(self, node: Node) -> SchemaBuilder:
        self._check_open()
        self._statements.append(node)
        return self

    def table(self, name: str) -> TableBuilder:
        self._check_open()
        child = TableBuilder(self, name)
        self._open_child = child
        return child

    def index(self, name: str, table: str, *columns: str) -> IndexBuilder:
        self._check_open()
        child = IndexBuilder(self, name, table, columns)
        self._open_child = child
        return child

    def _commit(self, child: _Builder, node: Node) -> None:
        if self._open_child is not child:
            raise BuilderError("builder is not the open child of this schema")
        self._open_child = None
        self._statements.append(node)

    def build(self) -> StatementList:
        self._close()
        return StatementList(tuple(self._statements))


class TableBuilder(_Builder):
    def __init__(self, parent: SchemaBuilder, name: str) -> None:
        super().__init__()
        self._parent = parent
        self._name = name
        self._columns: list[ColumnNode] = []
        self._constraints: list[ConstraintNode] = []
        self._comment = ""
        self._options: dict[str, str] = {}
        self._overrides: dict[str, dict[str, str]] = {}

    def comment(self, text: str) -> TableBuilder:
        self._check_open()
        self._comment = text
        return self

    def option(self, key: str, value: str) -> TableBuilder:
        self._check_open()
        self._options[key] = value
        return self

    def engine(self, value: str) -> TableBuilder:
        return self.option("engine", value)

    def override(self, dialect: str, key: str, value: str) -> TableBuilder:
        self._check_open()
        self._overrides.setdefault(dialect, {})[key] = value
        return self

    def primary_key(self, *columns: str) -> TableBuilder:
        self._check_open()
        self._constraints.append(ConstraintNode("primary", columns=tuple(columns)))
        return self

    def unique(self, *columns: str, name: str | None = None) -> TableBuilder:
        self._check_open()
        self._constraints.append(ConstraintNode("unique", name=name or "", columns=tuple(columns)))
        return self

    def check(self, expression: str, name: str | None = None) -> TableBuilder:
        self._check_open()
        self._constraints.append(ConstraintNode("check", name=name or "", expression=expression))
        return self

    def foreign_key(self, columns: tuple[str, ...], ref: ForeignKeyRef) -> TableBuilder:
        self._check_open()
        self._constraints.append(ConstraintNode("foreign", name=ref.name, columns=tuple(columns), reference=ref))
        return self

    def column(self, name: str, type: str) -> ColumnBuilder:
        self._check_open()
        child = ColumnBuilder(self, name, type)
        self._open_child = child
        return child

    def add_column(self, column: ColumnNode) -> TableBuilder:
        self._check_open()
        self._columns.append(column)
        return self

    def _commit_column(self, child: ColumnBuilder, column: ColumnNode) -> None:
        if self._open_child is not child:
            raise BuilderError("column builder is not the open child of this table")
        self._open_child = None
        self._columns.append(column)

    def end(self) -> SchemaBuilder:
        self._close()
        node = CreateTableNode(
            name=self._name,
            columns=tuple(self._columns),
            constraints=tuple(self._constraints),
            comment=self._comment,
            options=tuple(self._options.items()),
            overrides=freeze_overrides(self._overrides),
        )
        self._parent._commit(self, node)
        return self._parent


class ColumnBuilder(_Builder):
    def __init__(self, parent: TableBuilder, name: str, type: str) -> None:
        super().__init__()
        self._parent = parent
        self._attrs: dict[str, Any] = {"name": name, "type": type}
        self._fk: dict[str, str] | None = None
        self._overrides: dict[str, dict[str, str]] = {}

    def _set(self, **attrs: Any) -> ColumnBuilder:
        self._check_open()
        self._attrs.update(attrs)
        return self

    def primary(self) -> ColumnBuilder:
        return self._set(primary=True, nullable=False)

    def not_null(self) -> ColumnBuilder:
        return self._set(nullable=False)

    def nullable(self) -> ColumnBuilder:
        return self._set(nullable=True)

    def unique(self) -> ColumnBuilder:
        return self._set(unique=True)

    def auto_increment(self) -> ColumnBuilder:
        return self._set(auto_increment=True)

    def default(self, value: str) -> ColumnBuilder:
        return self._set(default=value)

    def default_expression(self, expr: str) -> ColumnBuilder:
        return self._set(default_expr=expr)

    def check(self, expr: str) -> ColumnBuilder:
        return self._set(check=expr)

    def comment(self, text: str) -> ColumnBuilder:
        return self._set(comment=text)

    def enum_values(self, *values: str) -> ColumnBuilder:
        return self._set(enum_values=tuple(values))

    def foreign_key(self, table: str, column: str, name: str = "") -> ColumnBuilder:
        self._check_open()
        self._fk = {"table": table, "column": column, "name": name}
        return self

    def on_delete(self, action: str) -> ColumnBuilder:
        self._check_open()
        if self._fk is None:
            raise BuilderError("on_delete() requires foreign_key() first")
        self._fk["on_delete"] = action
        return self

    def on_update(self, action: str) -> ColumnBuilder:
        self._check_open()
        if self._fk is None:
            raise BuilderError("on_update() requires foreign_key() first")
        self._fk["on_update"] = action
        return self

    def override(self, dialect: str, key: str, value: str) -> ColumnBuilder:
        self._check_open()
        self._overrides.setdefault(dialect, {})[key] = value
        return self

    def end(self) -> TableBuilder:
        self._close()
        attrs = dict(self._attrs)
        if self._fk is not None:
            attrs["foreign_key"] = ForeignKeyRef(**self._fk)
        attrs["overrides"] = freeze_overrides(self._overrides)
        self._parent._commit_column(self, ColumnNode(**attrs))
        return self._parent


class IndexBuilder(_Builder):
    def __init__(self, parent: SchemaBuilder, name: str, table: str, columns: tuple[str, ...]) -> None:
        super().__init__()
        self._parent = parent
        self._name = name
        self._table = table
        self._columns = tuple(columns)
        self._unique = False
        self._comment = ""

    def unique(self) -> IndexBuilder:
        self._check_open()
        self._unique = True
        return self

    def comment(self, text: str) -> IndexBuilder:
        self._check_open()
        self._comment = text
        return self

    def end(self) -> SchemaBuilder:
        self._close()
        node = IndexNode(self._name, self._table, self._columns, unique=self._unique, comment=self._comment)
        self._parent._commit(self, node)
        return self._parent


def new_schema() -> SchemaBuilder:
    return SchemaBuilder()