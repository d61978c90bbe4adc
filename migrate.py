#!/usr/bin/env python3
"""Apply, revert and inspect versioned SQL migrations against a database.

Usage:
    python migrate.py [--database-url URL] up [--dry-run] [--allow-destructive]
    python migrate.py down [--steps N]
    python migrate.py status
    python migrate.py drop-all --confirm
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import logging
import re
import sys
import threading
import time
from pathlib import Path

import sqlparse
from sqlalchemy import MetaData, create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from config import add_config_arguments, load_config

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schema_migrations"
MIGRATION_FILE_RE = re.compile(r"^(\d+)_(.+)\.(up|down)\.sql$")
DESTRUCTIVE_MARKER = re.compile(r"^--\s*destructive:\s*true\s*$", re.M | re.I)

LEDGER_DDL = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    version BIGINT PRIMARY KEY,
    description VARCHAR(255) NOT NULL,
    applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""


class MigrationError(RuntimeError):
    def __init__(self, message: str, version: int | None = None, filename: str | None = None) -> None:
        super().__init__(message)
        self.version = version
        self.filename = filename


class DestructiveMigrationError(MigrationError):
    pass


class MigrationCancelled(MigrationError):
    pass


class MigrationState(enum.Enum):
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


@dataclasses.dataclass
class Migration:
    version: int
    description: str
    up_path: Path
    down_path: Path
    state: MigrationState = MigrationState.PENDING

    def up_sql(self) -> str:
        return self.up_path.read_text(encoding="utf-8")

    def down_sql(self) -> str:
        return self.down_path.read_text(encoding="utf-8")

    def is_destructive(self, direction: str = "up") -> bool:
        sql = self.up_sql() if direction == "up" else self.down_sql()
        return DESTRUCTIVE_MARKER.search(sql) is not None


@dataclasses.dataclass
class MigrationStatus:
    current_version: int
    applied: list[int]
    pending: list[Migration]
    total: int

    @property
    def has_pending(self) -> bool:
        return bool(self.pending)


def load_migrations(migrations_dir: str | Path) -> list[Migration]:
    """Pair `<version>_<name>.up.sql` / `.down.sql` files, ordered by version."""
    migrations_dir = Path(migrations_dir)
    if not migrations_dir.is_dir():
        raise MigrationError(f"Migrations directory does not exist: {migrations_dir}")

    found: dict[int, dict[str, Path]] = {}
    names: dict[int, str] = {}
    for path in sorted(migrations_dir.iterdir()):
        m = MIGRATION_FILE_RE.match(path.name)
        if not m:
            continue
        version = int(m.group(1))
        if names.setdefault(version, m.group(2)) != m.group(2):
            raise MigrationError(f"Version {version} is used by more than one migration", version, path.name)
        found.setdefault(version, {})[m.group(3)] = path

    migrations: list[Migration] = []
    for version in sorted(found):
        files = found[version]
        for direction in ("up", "down"):
            if direction not in files:
                raise MigrationError(f"Migration {version} ({names[version]}) has no .{direction}.sql file", version)
        migrations.append(Migration(version, names[version], files["up"], files["down"]))
    return migrations


def split_sql_statements(sql: str) -> list[str]:
    """Executable statements of a migration file, without comments or trailing semicolons."""
    statements = []
    for raw in sqlparse.split(sql):
        stmt = sqlparse.format(raw, strip_comments=True).strip().rstrip(";").strip()
        if stmt:
            statements.append(stmt)
    return statements


class Migrator:
    def __init__(
        self,
        engine: Engine,
        migrations_dir: str | Path,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.engine = engine
        self.migrations_dir = Path(migrations_dir)
        self.timeout = timeout
        self.cancel_event = cancel_event

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def load_migrations(self) -> list[Migration]:
        return load_migrations(self.migrations_dir)

    def ensure_ledger(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(text(LEDGER_DDL))

    def ledger_exists(self, conn: Connection) -> bool:
        return inspect(conn).has_table(LEDGER_TABLE)

    def applied_versions(self) -> list[int]:
        """Applied versions, ascending. A missing ledger means nothing is applied."""
        with self.engine.connect() as conn:
            if not self.ledger_exists(conn):
                return []
            result = conn.execute(text(f"SELECT version FROM {LEDGER_TABLE} ORDER BY version"))
            return [int(row[0]) for row in result]

    def pending_migrations(self) -> list[Migration]:
        applied = set(self.applied_versions())
        pending = []
        for migration in self.load_migrations():
            if migration.version in applied:
                migration.state = MigrationState.APPLIED
            else:
                pending.append(migration)
        return pending

    def status(self) -> MigrationStatus:
        migrations = self.load_migrations()
        applied = self.applied_versions()
        applied_set = set(applied)
        pending = [m for m in migrations if m.version not in applied_set]
        return MigrationStatus(
            current_version=applied[-1] if applied else 0,
            applied=applied,
            pending=pending,
            total=len(migrations),
        )

    def check_cancelled(self, deadline: float | None, migration: Migration | None = None) -> None:
        version = migration.version if migration else None
        filename = migration.up_path.name if migration else None
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise MigrationCancelled("Migration run cancelled", version, filename)
        if deadline is not None and time.monotonic() > deadline:
            raise MigrationCancelled(f"Migration run exceeded timeout of {self.timeout}s", version, filename)

    def set_statement_timeout(self, conn: Connection, deadline: float | None) -> None:
        if deadline is None or self.dialect != "postgresql":
            return
        remaining_ms = max(1, int((deadline - time.monotonic()) * 1000))
        conn.exec_driver_sql(f"SET LOCAL statement_timeout = {remaining_ms}")

    def run_file(
        self,
        conn: Connection,
        migration: Migration,
        direction: str,
        deadline: float | None,
    ) -> None:
        path = migration.up_path if direction == "up" else migration.down_path
        statements = split_sql_statements(path.read_text(encoding="utf-8"))
        migration.state = MigrationState.APPLYING
        logger.info("%s migration %d: %s (%d statements)", direction, migration.version, path.name, len(statements))
        try:
            with conn.begin():
                self.set_statement_timeout(conn, deadline)
                for stmt in statements:
                    self.check_cancelled(deadline, migration)
                    conn.exec_driver_sql(stmt, execution_options={"no_parameters": True})
                if direction == "up":
                    conn.execute(
                        text(f"INSERT INTO {LEDGER_TABLE} (version, description) VALUES (:version, :description)"),
                        {"version": migration.version, "description": migration.description[:255]},
                    )
                else:
                    conn.execute(text(f"DELETE FROM {LEDGER_TABLE} WHERE version = :version"), {"version": migration.version})
        except MigrationCancelled:
            migration.state = MigrationState.FAILED
            raise
        except SQLAlchemyError as exc:
            migration.state = MigrationState.FAILED
            message = str(getattr(exc, "orig", None) or exc).strip()
            raise MigrationError(
                f"Migration {migration.version} ({path.name}) failed: {message}", migration.version, path.name
            ) from exc
        migration.state = MigrationState.APPLIED if direction == "up" else MigrationState.PENDING

    def refuse_destructive(self, migrations: list[Migration], direction: str) -> None:
        flagged = [m for m in migrations if m.is_destructive(direction)]
        if flagged:
            names = ", ".join((m.up_path if direction == "up" else m.down_path).name for m in flagged)
            raise DestructiveMigrationError(
                f"Destructive migrations need allow_destructive=True: {names}",
                flagged[0].version,
                (flagged[0].up_path if direction == "up" else flagged[0].down_path).name,
            )

    def log_plan(self, migrations: list[Migration], direction: str) -> None:
        verb = "apply" if direction == "up" else "revert"
        for migration in migrations:
            path = migration.up_path if direction == "up" else migration.down_path
            mark = " [destructive]" if migration.is_destructive(direction) else ""
            logger.info("[dry-run] would %s %s%s", verb, path.name, mark)

    def migrate_up(
        self,
        target: int | None = None,
        dry_run: bool = False,
        allow_destructive: bool = False,
    ) -> list[Migration]:
        """Apply pending migrations in version order, one transaction per file; stop at the first failure."""
        pending = [m for m in self.pending_migrations() if target is None or m.version <= target]
        if not pending:
            logger.info("no pending migrations")
            return []
        if dry_run:
            self.log_plan(pending, "up")
            return pending
        if not allow_destructive:
            self.refuse_destructive(pending, "up")

        deadline = time.monotonic() + self.timeout if self.timeout else None
        self.ensure_ledger()
        applied: list[Migration] = []
        with self.engine.connect() as conn:
            for migration in pending:
                self.check_cancelled(deadline, migration)
                self.run_file(conn, migration, "up", deadline)
                applied.append(migration)
        return applied

    def migrate_down(
        self,
        steps: int = 1,
        target: int | None = None,
        dry_run: bool = False,
        allow_destructive: bool = False,
    ) -> list[Migration]:
        """Revert the newest applied migrations; `target` keeps versions <= target applied."""
        by_version = {m.version: m for m in self.load_migrations()}
        applied = list(reversed(self.applied_versions()))
        if target is not None:
            versions = [v for v in applied if v > target]
        else:
            versions = applied[: max(steps, 0)]

        missing = [v for v in versions if v not in by_version]
        if missing:
            raise MigrationError(f"Applied migration {missing[0]} has no files in {self.migrations_dir}", missing[0])
        todo = [by_version[v] for v in versions]
        for migration in todo:
            migration.state = MigrationState.APPLIED
        if not todo:
            return []
        if dry_run:
            self.log_plan(todo, "down")
            return todo
        if not allow_destructive:
            self.refuse_destructive(todo, "down")

        deadline = time.monotonic() + self.timeout if self.timeout else None
        reverted: list[Migration] = []
        with self.engine.connect() as conn:
            for migration in todo:
                self.check_cancelled(deadline, migration)
                self.run_file(conn, migration, "down", deadline)
                reverted.append(migration)
        return reverted

    def drop_all_tables(self, confirm: bool = False, dry_run: bool = False) -> list[str]:
        """Drop every table (ledger included) and, on PostgreSQL, every enum type."""
        if not confirm and not dry_run:
            raise ValueError("drop_all_tables() needs confirm=True (or dry_run=True)")

        metadata = MetaData()
        with self.engine.connect() as conn:
            metadata.reflect(bind=conn)
            dropped = [t.name for t in reversed(metadata.sorted_tables)]
            enum_types: list[str] = []
            if self.dialect == "postgresql":
                rows = conn.execute(
                    text(
                        "SELECT t.typname FROM pg_type t JOIN pg_namespace n ON n.oid = t.typnamespace "
                        "WHERE t.typtype = 'e' AND n.nspname = current_schema() ORDER BY t.typname"
                    )
                )
                enum_types = [row[0] for row in rows]

        if dry_run:
            for name in dropped:
                logger.info("[dry-run] would drop table %s", name)
            for name in enum_types:
                logger.info("[dry-run] would drop type %s", name)
            return dropped + enum_types

        with self.engine.begin() as conn:
            metadata.drop_all(bind=conn)
            for name in enum_types:
                conn.exec_driver_sql(f'DROP TYPE IF EXISTS "{name}" CASCADE')
        logger.warning("dropped %d tables and %d enum types", len(dropped), len(enum_types))
        return dropped + enum_types

    def drop_database(self, confirm: bool = False, dry_run: bool = False) -> list[str]:
        """Terminate other sessions on the target database, then drop it."""
        if not confirm and not dry_run:
            raise ValueError("drop_database() needs confirm=True (or dry_run=True)")

        url = self.engine.url
        name = url.database
        if not name:
            raise ValueError("The database URL does not name a database")

        if self.dialect == "postgresql":
            admin_url = url.set(database="postgres")
            statements = [f'DROP DATABASE IF EXISTS "{name}"']
        elif self.dialect in ("mysql", "mariadb"):
            admin_url = url.set(database="")
            statements = [f"DROP DATABASE IF EXISTS `{name}`"]
        else:
            raise ValueError(f"drop_database() is not supported for {self.dialect}")

        if dry_run:
            logger.info("[dry-run] would terminate other sessions on %s", name)
            for stmt in statements:
                logger.info("[dry-run] %s", stmt)
            return statements

        self.engine.dispose()
        admin = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with admin.connect() as conn:
                if self.dialect == "postgresql":
                    conn.execute(
                        text(
                            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                            "WHERE datname = :db AND pid <> pg_backend_pid()"
                        ),
                        {"db": name},
                    )
                else:
                    rows = conn.execute(
                        text("SELECT ID FROM information_schema.PROCESSLIST WHERE DB = :db AND ID <> CONNECTION_ID()"),
                        {"db": name},
                    )
                    for (pid,) in rows.fetchall():
                        conn.exec_driver_sql(f"KILL {int(pid)}")
                for stmt in statements:
                    conn.exec_driver_sql(stmt)
        finally:
            admin.dispose()
        logger.warning("dropped database %s", name)
        return statements


def print_status(status: MigrationStatus) -> None:
    print(f"Current version: {status.current_version}")
    print(f"Applied: {len(status.applied)} / {status.total}")
    if status.pending:
        print("Pending:")
        for migration in status.pending:
            print(f"  {migration.version:010d} {migration.description}")
    else:
        print("No pending migrations")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply and inspect schema migrations")
    add_config_arguments(parser)
    parser.add_argument("--migrations-dir", dest="migrations_dir", default=None, help="Directory of migration files")
    sub = parser.add_subparsers(dest="command", required=True)

    up = sub.add_parser("up", help="Apply pending migrations")
    up.add_argument("--target", type=int, default=None, help="Stop after this version")
    up.add_argument("--dry-run", action="store_true", help="Show what would run")
    up.add_argument("--allow-destructive", action="store_true", help="Apply migrations marked destructive")

    down = sub.add_parser("down", help="Revert applied migrations")
    down.add_argument("--steps", type=int, default=1, help="Number of migrations to revert")
    down.add_argument("--target", type=int, default=None, help="Revert everything newer than this version")
    down.add_argument("--dry-run", action="store_true", help="Show what would run")
    down.add_argument("--allow-destructive", action="store_true", help="Revert migrations marked destructive")

    sub.add_parser("status", help="Show applied and pending migrations")

    for name, help_text in (("drop-all", "Drop all tables and enum types"), ("drop-database", "Drop the whole database")):
        reset = sub.add_parser(name, help=help_text)
        reset.add_argument("--confirm", action="store_true", help="Required unless --dry-run")
        reset.add_argument("--dry-run", action="store_true", help="Show what would be dropped")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args)
    logging.basicConfig(level=cfg.log_level, format="%(levelname)s %(name)s: %(message)s")
    if not cfg.database_url:
        print("No database URL configured (use --database-url or PTAH_DATABASE_URL)", file=sys.stderr)
        return 2

    engine = create_engine(cfg.database_url)
    migrator = Migrator(engine, cfg.migrations_dir, timeout=cfg.timeout)
    try:
        if args.command == "status":
            print_status(migrator.status())
        elif args.command == "up":
            done = migrator.migrate_up(args.target, args.dry_run, args.allow_destructive)
            verb = "Would apply" if args.dry_run else "Applied"
            print(f"{verb} {len(done)} migration(s)")
        elif args.command == "down":
            done = migrator.migrate_down(args.steps, args.target, args.dry_run, args.allow_destructive)
            verb = "Would revert" if args.dry_run else "Reverted"
            print(f"{verb} {len(done)} migration(s)")
        elif args.command == "drop-all":
            dropped = migrator.drop_all_tables(confirm=args.confirm, dry_run=args.dry_run)
            print(f"{'Would drop' if args.dry_run else 'Dropped'} {len(dropped)} object(s)")
        elif args.command == "drop-database":
            migrator.drop_database(confirm=args.confirm, dry_run=args.dry_run)
    except MigrationError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 2
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
