"""Turn a SchemaDiff into ordered DDL operations."""

from __future__ import annotations

import dataclasses
import logging

import ddl
from directives import Database, topological_order
from dump_schemas import DBSchema
from render import add_table, canonical_dialect, column_from_field, declared_indexes, enum_map
from schema_diff import EnumDiff, SchemaDiff

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class PlannedOperation:
    node: ddl.Node
    destructive: bool = False
    warning: str = ""


def current_dependencies(current: DBSchema | Database | None) -> dict[str, list[str]]:
    if current is None:
        return {}
    return current.dependencies


def current_index_tables(current: DBSchema | Database | None) -> dict[str, str]:
    if current is None:
        return {}
    if isinstance(current, DBSchema):
        return {i.name: i.table_name for i in current.indexes}
    return {i.name: i.table for i in declared_indexes(current)}


def plan_migration(
    diff: SchemaDiff,
    declared: Database,
    dialect: str,
    introspected: DBSchema | Database | None = None,
) -> list[PlannedOperation]:
    """Order: enums, enum values, new tables, index drops, column changes, new indexes, table drops, enum drops."""
    dialect = canonical_dialect(dialect)
    enums = enum_map(declared.enums)
    ops: list[PlannedOperation] = []

    if dialect == "postgres":
        for name in diff.enums_added:
            ops.append(PlannedOperation(ddl.EnumNode(name, tuple(enums.get(name, ())))))

    for enum_diff in diff.enums_modified:
        ops.extend(plan_enum_change(enum_diff, declared, dialect, enums))

    builder = ddl.new_schema()
    for name in topological_order(list(diff.tables_added), declared.dependencies):
        add_table(builder, declared, name, enums)
    ops.extend(PlannedOperation(node) for node in builder.build())

    index_tables = current_index_tables(introspected)
    for name in diff.indexes_removed:
        ops.append(PlannedOperation(ddl.DropIndexNode(name, table=index_tables.get(name, ""))))

    for table_diff in diff.tables_modified:
        table = declared.table_by_name(table_diff.table_name)
        if table is None:
            logger.warning("modified table %s is not declared; skipped", table_diff.table_name)
            continue
        fields = {f.name: f for f in declared.table_fields(table)}

        changes: list[ddl.AddColumn | ddl.ModifyColumn] = []
        for column_name in table_diff.columns_added:
            changes.append(ddl.AddColumn(column_from_field(fields[column_name], enums, table.name)))
        for column_diff in table_diff.columns_modified:
            column = column_from_field(fields[column_diff.column_name], enums, table.name)
            changes.append(ddl.ModifyColumn(column, tuple(sorted(column_diff.changes))))
        if changes:
            ops.append(PlannedOperation(ddl.AlterTableNode(table.name, tuple(changes))))

        for column_name in table_diff.columns_removed:
            ops.append(
                PlannedOperation(
                    ddl.AlterTableNode(table.name, (ddl.DropColumn(column_name),)),
                    destructive=True,
                    warning=f"drops column {table.name}.{column_name} and its data",
                )
            )

    wanted = {i.name: i for i in declared_indexes(declared)}
    for name in diff.indexes_added:
        index = wanted.get(name)
        if index is None:
            logger.warning("index %s is not declared; skipped", name)
            continue
        ops.append(PlannedOperation(ddl.IndexNode(index.name, index.table, tuple(index.columns), index.unique, index.comment)))

    drop_order = topological_order(list(diff.tables_removed), current_dependencies(introspected))
    for name in reversed(drop_order):
        ops.append(
            PlannedOperation(
                ddl.DropTableNode(name, cascade=dialect == "postgres"),
                destructive=True,
                warning=f"drops table {name} and all of its rows",
            )
        )

    if dialect == "postgres":
        for name in diff.enums_removed:
            ops.append(PlannedOperation(ddl.DropEnumNode(name), destructive=True, warning=f"drops enum type {name}"))

    logger.info("planned %d operations (%d destructive)", len(ops), sum(1 for op in ops if op.destructive))
    return ops


def plan_enum_change(enum_diff: EnumDiff, declared: Database, dialect: str, enums: dict[str, list[str]]) -> list[PlannedOperation]:
    ops: list[PlannedOperation] = []
    if dialect == "postgres":
        if enum_diff.values_added:
            ops.append(PlannedOperation(ddl.AlterEnumNode(enum_diff.enum_name, tuple(enum_diff.values_added))))
        if enum_diff.values_removed:
            removed = ", ".join(enum_diff.values_removed)
            warning = (
                f"WARNING: enum {enum_diff.enum_name} no longer declares ({removed}); "
                "PostgreSQL cannot drop enum values, recreate the type manually"
            )
            ops.append(PlannedOperation(ddl.CommentNode(warning), warning=warning))
        return ops

    # MySQL and MariaDB keep enum values on the column itself.
    for table in declared.tables:
        for field in declared.table_fields(table):
            if field.type != enum_diff.enum_name:
                continue
            column = column_from_field(field, enums, table.name)
            alter = ddl.AlterTableNode(table.name, (ddl.ModifyColumn(column, ("type",)),))
            if enum_diff.values_removed:
                removed = ", ".join(enum_diff.values_removed)
                ops.append(PlannedOperation(alter, destructive=True, warning=f"removes enum values ({removed}) from {table.name}.{field.name}"))
            else:
                ops.append(PlannedOperation(alter))
    return ops
