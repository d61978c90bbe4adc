#!/usr/bin/env python3
"""Generate schema SQL or versioned up/down migrations from `# migrator:` directives."""

from __future__ import annotations

import argparse
import dataclasses
import difflib
import logging
import re
import sys
from pathlib import Path

from sqlalchemy import create_engine

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from config import Config, add_config_arguments, load_config
from directives import Database, parse_dir
from dump_schemas import DBSchema, read_schema
from planner import PlannedOperation, plan_migration
from render import canonical_dialect, enum_map, get_renderer, render_schema
from schema_diff import SchemaDiff, compare_schemas, database_from_snapshot, reverse_diff

logger = logging.getLogger(__name__)

MIGRATION_FILE_RE = re.compile(r"^(\d+)_(.+)\.(up|down)\.sql$")
DESTRUCTIVE_MARKER = "-- destructive: true"
VERSION_WIDTH = 10


@dataclasses.dataclass
class GeneratedMigration:
    description: str
    dialect: str
    up_sql: str
    down_sql: str
    diff: SchemaDiff
    destructive: bool = False
    version: int | None = None
    up_path: Path | None = None
    down_path: Path | None = None


def snake_case(text: str) -> str:
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", text.strip())
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_") or "migration"


def existing_versions(migrations_dir: Path) -> list[int]:
    if not migrations_dir.is_dir():
        return []
    versions = set()
    for path in migrations_dir.iterdir():
        m = MIGRATION_FILE_RE.match(path.name)
        if m:
            versions.add(int(m.group(1)))
    return sorted(versions)


def next_version(migrations_dir: Path) -> int:
    versions = existing_versions(migrations_dir)
    return versions[-1] + 1 if versions else 1


def migration_filenames(version: int, description: str) -> tuple[str, str]:
    stem = f"{version:0{VERSION_WIDTH}d}_{snake_case(description)}"
    return f"{stem}.up.sql", f"{stem}.down.sql"


def render_operations(ops: list[PlannedOperation], dialect: str, enums: dict[str, list[str]]) -> str:
    renderer = get_renderer(dialect, enums)
    chunks: list[str] = []
    for op in ops:
        sql = op.node.accept(renderer)
        if not sql:
            continue
        if op.destructive:
            chunks.append(f"-- WARNING [destructive]: {op.warning}\n{sql}")
        else:
            chunks.append(sql)
    return "".join(chunks)


def migration_header(description: str, dialect: str, direction: str, destructive: bool) -> str:
    lines = [f"-- Migration: {description} ({direction})", f"-- Dialect: {dialect}"]
    if destructive:
        lines.append(DESTRUCTIVE_MARKER)
    return "\n".join(lines) + "\n\n"


def generate_migration(
    declared: Database,
    introspected: DBSchema,
    description: str,
    dialect: str | None = None,
) -> GeneratedMigration | None:
    """Plan up and down SQL for the difference between `declared` and `introspected`; None when in sync."""
    dialect = canonical_dialect(dialect or introspected.dialect)
    diff = compare_schemas(declared, introspected)
    if not diff.has_changes():
        return None

    enums = {**enum_map(introspected.enums), **enum_map(declared.enums)}
    up_ops = plan_migration(diff, declared, dialect, introspected)

    current = database_from_snapshot(introspected)
    down_ops = plan_migration(reverse_diff(diff), current, dialect, declared)
    down_enums = {**enum_map(declared.enums), **enum_map(current.enums)}

    up_destructive = any(op.destructive for op in up_ops)
    down_destructive = any(op.destructive for op in down_ops)
    up_sql = migration_header(description, dialect, "up", up_destructive) + render_operations(up_ops, dialect, enums)
    down_sql = migration_header(description, dialect, "down", down_destructive) + render_operations(
        down_ops, dialect, down_enums
    )
    return GeneratedMigration(
        description=description,
        dialect=dialect,
        up_sql=up_sql,
        down_sql=down_sql,
        diff=diff,
        destructive=up_destructive,
    )


def write_migration_files(
    out_dir: Path,
    description: str,
    up_sql: str,
    down_sql: str,
    version: int | None = None,
) -> tuple[Path, Path, int]:
    out_dir = Path(out_dir)
    if version is None:
        version = next_version(out_dir)
    elif version in existing_versions(out_dir):
        raise ValueError(f"Migration version {version} already exists in {out_dir}")

    up_name, down_name = migration_filenames(version, description)
    up_path = out_dir / up_name
    down_path = out_dir / down_name
    write_text(up_path, up_sql)
    write_text(down_path, down_sql)
    logger.info("wrote migration %d to %s", version, out_dir)
    return up_path, down_path, version


def generate_schema_sql(source_dir: Path, dialect: str) -> tuple[str, Database]:
    dialect = canonical_dialect(dialect)
    database = parse_dir(source_dir)
    header = f"-- Schema generated from {source_dir.as_posix()} --\n-- Dialect: {dialect} --\n\n"
    return header + render_schema(database, dialect), database


def generate_schema_markdown(database: Database, dialect: str) -> str:
    lines: list[str] = []
    lines.append("# Schema")
    lines.append("")
    lines.append(
        f"- **{len(database.tables)} tables**, {len(database.enums)} enums, {len(database.indexes)} indexes ({dialect})"
    )
    lines.append("")
    lines.append("| Table | Columns | Depends on |")
    lines.append("|-------|---------|------------|")
    for table in database.tables:
        deps = ", ".join(f"`{d}`" for d in database.dependencies.get(table.name, [])) or "-"
        lines.append(f"| `{table.name}` | {len(database.table_fields(table))} | {deps} |")
    lines.append("")
    if database.enums:
        lines.append("## Enums")
        lines.append("")
        for enum in database.enums:
            lines.append(f"- `{enum.name}`: {', '.join(enum.values)}")
        lines.append("")
    return "\n".join(lines)


def generate_diff_markdown(diff: SchemaDiff, description: str = "") -> str:
    lines: list[str] = []
    lines.append(f"# Migration: {description}" if description else "# Schema diff")
    lines.append("")
    if not diff.has_changes():
        lines.append("No differences between declared and live schema.")
        lines.append("")
        return "\n".join(lines)

    lines.append(f"- Tables added: {len(diff.tables_added)}, removed: {len(diff.tables_removed)}, modified: {len(diff.tables_modified)}")
    lines.append(f"- Enums added: {len(diff.enums_added)}, removed: {len(diff.enums_removed)}, modified: {len(diff.enums_modified)}")
    lines.append(f"- Indexes added: {len(diff.indexes_added)}, removed: {len(diff.indexes_removed)}")
    lines.append("")

    for title, names in (
        ("Tables added", diff.tables_added),
        ("Tables removed", diff.tables_removed),
        ("Enums added", diff.enums_added),
        ("Enums removed", diff.enums_removed),
        ("Indexes added", diff.indexes_added),
        ("Indexes removed", diff.indexes_removed),
    ):
        if not names:
            continue
        lines.append(f"## {title}")
        lines.append("")
        for name in names:
            lines.append(f"- `{name}`")
        lines.append("")

    if diff.tables_modified:
        lines.append("## Column changes")
        lines.append("")
        lines.append("| Table | Column | Change | Database -> Declared |")
        lines.append("|-------|--------|--------|----------------------|")
        for table in diff.tables_modified:
            for name in table.columns_added:
                lines.append(f"| `{table.table_name}` | `{name}` | added | |")
            for column in table.columns_modified:
                for attr in sorted(column.changes):
                    lines.append(f"| `{table.table_name}` | `{column.column_name}` | {attr} | `{column.changes[attr]}` |")
            for name in table.columns_removed:
                lines.append(f"| `{table.table_name}` | `{name}` | **removed** | |")
        lines.append("")

    if diff.enums_modified:
        lines.append("## Enum value changes")
        lines.append("")
        for enum in diff.enums_modified:
            if enum.values_added:
                lines.append(f"- `{enum.enum_name}` adds: {', '.join(enum.values_added)}")
            if enum.values_removed:
                lines.append(f"- `{enum.enum_name}` drops: {', '.join(enum.values_removed)}")
        lines.append("")
    return "\n".join(lines)


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = path.read_text(encoding="utf-8")
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for idx, line in enumerate(diff):
        if idx > 200:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False


def introspect(cfg: Config) -> DBSchema:
    engine = create_engine(cfg.database_url)
    try:
        with engine.connect() as conn:
            return read_schema(conn, cfg.schema, cfg.timeout)
    finally:
        engine.dispose()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate schema SQL and migrations from source directives")
    add_config_arguments(parser)
    parser.add_argument("--source-dir", dest="source_dir", default=None, help="Directory of annotated model sources")
    sub = parser.add_subparsers(dest="command", required=True)

    schema = sub.add_parser("schema", help="Render the full declared schema")
    schema.add_argument("--out-sql", default="schema.sql", help="Output SQL file")
    schema.add_argument("--out-md", default=None, help="Optional markdown summary file")
    schema.add_argument("--check", action="store_true", help="Verify outputs are up-to-date without writing")

    diff = sub.add_parser("diff", help="Compare declared and live schema")
    diff.add_argument("--format", choices=("yaml", "markdown"), default="markdown")

    migration = sub.add_parser("migration", help="Write up/down migration files for the live schema drift")
    migration.add_argument("name", help="Human description, stored snake_cased in the file name")
    migration.add_argument("--migrations-dir", dest="migrations_dir", default=None, help="Output directory")
    migration.add_argument("--version", type=int, default=None, help="Explicit version number")
    migration.add_argument("--out-md", default=None, help="Optional markdown summary file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args)
    logging.basicConfig(level=cfg.log_level, format="%(levelname)s %(name)s: %(message)s")
    source_dir = Path(cfg.source_dir)
    dialect = cfg.resolved_dialect()

    if args.command == "schema":
        sql_output, database = generate_schema_sql(source_dir, dialect)
        md_output = generate_schema_markdown(database, dialect) if args.out_md else None
        out_sql = Path(args.out_sql)
        if args.check:
            sql_ok = check_equal(out_sql, sql_output)
            md_ok = check_equal(Path(args.out_md), md_output) if md_output is not None else True
            return 0 if sql_ok and md_ok else 1
        write_text(out_sql, sql_output)
        print(f"Generated {out_sql}")
        if md_output is not None:
            write_text(Path(args.out_md), md_output)
            print(f"Generated {args.out_md}")
        return 0

    if not cfg.database_url:
        print("No database URL configured (use --database-url or PTAH_DATABASE_URL)", file=sys.stderr)
        return 2

    declared = parse_dir(source_dir)
    snapshot = introspect(cfg)

    if args.command == "diff":
        diff = compare_schemas(declared, snapshot)
        if args.format == "yaml":
            sys.stdout.write(yaml.safe_dump(diff.to_dict(), sort_keys=False))
        else:
            sys.stdout.write(generate_diff_markdown(diff))
        return 1 if diff.has_changes() else 0

    generated = generate_migration(declared, snapshot, args.name, dialect)
    if generated is None:
        print("Schema is up to date; no migration written")
        return 0

    up_path, down_path, version = write_migration_files(
        Path(cfg.migrations_dir), args.name, generated.up_sql, generated.down_sql, args.version
    )
    print(f"Generated {up_path}")
    print(f"Generated {down_path}")
    if generated.destructive:
        print(f"[warn] migration {version} contains destructive operations", file=sys.stderr)
    if args.out_md:
        write_text(Path(args.out_md), generate_diff_markdown(generated.diff, args.name))
        print(f"Generated {args.out_md}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
