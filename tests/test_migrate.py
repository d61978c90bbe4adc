import tempfile
import threading
import unittest
from pathlib import Path

from sqlalchemy import create_engine, event, inspect, text

from migrate import (
    DestructiveMigrationError,
    MigrationCancelled,
    MigrationError,
    MigrationState,
    Migrator,
    load_migrations,
    split_sql_statements,
)


def sqlite_engine(path: Path):
    """SQLite engine whose transactions also cover DDL."""
    engine = create_engine(f"sqlite:///{path}")

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def write_migration(directory: Path, version: int, name: str, up: str, down: str) -> None:
    stem = f"{version:010d}_{name}"
    (directory / f"{stem}.up.sql").write_text(up, encoding="utf-8")
    (directory / f"{stem}.down.sql").write_text(down, encoding="utf-8")


class TestSplitStatements(unittest.TestCase):
    def test_plain_statements(self) -> None:
        sql = "CREATE TABLE a (x INT);\nINSERT INTO a VALUES (1);\n"
        self.assertEqual(split_sql_statements(sql), ["CREATE TABLE a (x INT)", "INSERT INTO a VALUES (1)"])

    def test_semicolons_in_literals_and_comments(self) -> None:
        sql = "INSERT INTO a VALUES ('x;y');\nSELECT 1; -- trailing; comment\nSELECT \"odd;name\" FROM b;"
        statements = split_sql_statements(sql)
        self.assertEqual(len(statements), 3)
        self.assertEqual(statements[0], "INSERT INTO a VALUES ('x;y')")
        self.assertTrue(statements[2].endswith('SELECT "odd;name" FROM b'))

    def test_comment_only_chunks_are_dropped(self) -> None:
        sql = "-- Migration: demo (up)\n-- Dialect: postgres\n\n/* nothing; here */\n"
        self.assertEqual(split_sql_statements(sql), [])

    def test_warning_comments_are_not_executed(self) -> None:
        sql = "-- WARNING [destructive]: drops table legacy and its data\nDROP TABLE legacy;\n"
        self.assertEqual(split_sql_statements(sql), ["DROP TABLE legacy"])

    def test_dollar_quoted_bodies(self) -> None:
        sql = (
            "CREATE FUNCTION touch() RETURNS trigger AS $body$\n"
            "BEGIN NEW.updated_at = now(); RETURN NEW; END;\n"
            "$body$ LANGUAGE plpgsql;\n"
            "SELECT $$a;b$$;\n"
        )
        statements = split_sql_statements(sql)
        self.assertEqual(len(statements), 2)
        self.assertTrue(statements[0].endswith("LANGUAGE plpgsql"))
        self.assertEqual(statements[1], "SELECT $$a;b$$")


class TestLoadMigrations(unittest.TestCase):
    def test_pairs_and_orders_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            d = Path(td)
            write_migration(d, 2, "second", "SELECT 2;", "SELECT 2;")
            write_migration(d, 1, "first", "SELECT 1;", "SELECT 1;")
            (d / "README.md").write_text("ignored", encoding="utf-8")
            migrations = load_migrations(d)
        self.assertEqual([(m.version, m.description) for m in migrations], [(1, "first"), (2, "second")])
        self.assertTrue(all(m.state is MigrationState.PENDING for m in migrations))

    def test_missing_down_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "0000000001_first.up.sql").write_text("SELECT 1;", encoding="utf-8")
            with self.assertRaisesRegex(MigrationError, "no .down.sql"):
                load_migrations(td)

    def test_duplicate_version(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            write_migration(Path(td), 1, "first", "SELECT 1;", "SELECT 1;")
            write_migration(Path(td), 1, "other", "SELECT 1;", "SELECT 1;")
            with self.assertRaises(MigrationError):
                load_migrations(td)

    def test_missing_directory(self) -> None:
        with self.assertRaises(MigrationError):
            load_migrations("/nonexistent/migrations")


class TestMigrator(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.migrations_dir = root / "migrations"
        self.migrations_dir.mkdir()
        self.engine = sqlite_engine(root / "test.db")
        self.migrator = Migrator(self.engine, self.migrations_dir)

    def tearDown(self) -> None:
        self.engine.dispose()
        self._tmp.cleanup()

    def table_names(self) -> list[str]:
        return sorted(inspect(self.engine).get_table_names())

    def add(self, version: int, name: str, up: str, down: str) -> None:
        write_migration(self.migrations_dir, version, name, up, down)

    def test_up_status_and_down(self) -> None:
        self.add(1, "widgets", "CREATE TABLE widgets (id INTEGER PRIMARY KEY, name TEXT);", "DROP TABLE widgets;")
        self.add(2, "gadgets", "CREATE TABLE gadgets (id INTEGER PRIMARY KEY);", "DROP TABLE gadgets;")

        self.assertEqual(self.migrator.applied_versions(), [])
        applied = self.migrator.migrate_up()
        self.assertEqual([m.version for m in applied], [1, 2])
        self.assertTrue(all(m.state is MigrationState.APPLIED for m in applied))
        self.assertEqual(self.table_names(), ["gadgets", "schema_migrations", "widgets"])

        status = self.migrator.status()
        self.assertEqual((status.current_version, status.applied, status.total), (2, [1, 2], 2))
        self.assertFalse(status.has_pending)
        self.assertEqual(self.migrator.migrate_up(), [])

        reverted = self.migrator.migrate_down()
        self.assertEqual([m.version for m in reverted], [2])
        self.assertEqual(self.migrator.applied_versions(), [1])
        self.assertNotIn("gadgets", self.table_names())

    def test_target_version(self) -> None:
        self.add(1, "a", "CREATE TABLE a (id INTEGER);", "DROP TABLE a;")
        self.add(2, "b", "CREATE TABLE b (id INTEGER);", "DROP TABLE b;")
        self.migrator.migrate_up(target=1)
        self.assertEqual(self.migrator.applied_versions(), [1])
        self.assertEqual([m.version for m in self.migrator.pending_migrations()], [2])

    def test_failed_file_rolls_back_and_halts(self) -> None:
        self.add(
            1,
            "broken",
            "CREATE TABLE widgets (id INTEGER PRIMARY KEY);\nINSERT INTO no_such_table VALUES (1);\n",
            "DROP TABLE widgets;",
        )
        self.add(2, "later", "CREATE TABLE later (id INTEGER);", "DROP TABLE later;")

        with self.assertRaises(MigrationError) as ctx:
            self.migrator.migrate_up()
        self.assertEqual(ctx.exception.version, 1)
        self.assertEqual(ctx.exception.filename, "0000000001_broken.up.sql")
        self.assertIn("no_such_table", str(ctx.exception))

        self.assertEqual(self.table_names(), ["schema_migrations"])
        self.assertEqual(self.migrator.applied_versions(), [])

    def test_dry_run_changes_nothing(self) -> None:
        self.add(1, "widgets", "CREATE TABLE widgets (id INTEGER);", "DROP TABLE widgets;")
        planned = self.migrator.migrate_up(dry_run=True)
        self.assertEqual([m.version for m in planned], [1])
        self.assertEqual(self.table_names(), [])

    def test_destructive_files_need_permission(self) -> None:
        self.add(1, "widgets", "CREATE TABLE widgets (id INTEGER);\nCREATE TABLE legacy (id INTEGER);", "DROP TABLE widgets;")
        self.add(
            2,
            "drop_legacy",
            "-- Migration: drop legacy (up)\n-- destructive: true\n\nDROP TABLE legacy;\n",
            "CREATE TABLE legacy (id INTEGER);",
        )
        with self.assertRaises(DestructiveMigrationError):
            self.migrator.migrate_up()
        self.assertEqual(self.table_names(), [])

        self.migrator.migrate_up(allow_destructive=True)
        self.assertEqual(self.migrator.applied_versions(), [1, 2])
        self.assertEqual(self.table_names(), ["schema_migrations", "widgets"])

    def test_dry_run_reports_destructive_files_without_permission(self) -> None:
        self.add(
            1,
            "drop_legacy",
            "-- Migration: drop legacy (up)\n-- destructive: true\n\nDROP TABLE IF EXISTS legacy;\n",
            "CREATE TABLE legacy (id INTEGER);",
        )
        with self.assertLogs("migrate", level="INFO") as logs:
            planned = self.migrator.migrate_up(dry_run=True)
        self.assertEqual([m.version for m in planned], [1])
        self.assertIn("would apply 0000000001_drop_legacy.up.sql [destructive]", "\n".join(logs.output))
        self.assertEqual(self.table_names(), [])

        with self.assertRaises(DestructiveMigrationError):
            self.migrator.migrate_up()

    def test_cancel_event_stops_before_next_file(self) -> None:
        self.add(1, "widgets", "CREATE TABLE widgets (id INTEGER);", "DROP TABLE widgets;")
        cancel = threading.Event()
        cancel.set()
        migrator = Migrator(self.engine, self.migrations_dir, cancel_event=cancel)
        with self.assertRaises(MigrationCancelled):
            migrator.migrate_up()
        self.assertNotIn("widgets", self.table_names())

    def test_down_to_target(self) -> None:
        for version in (1, 2, 3):
            self.add(version, f"t{version}", f"CREATE TABLE t{version} (id INTEGER);", f"DROP TABLE t{version};")
        self.migrator.migrate_up()
        reverted = self.migrator.migrate_down(target=1)
        self.assertEqual([m.version for m in reverted], [3, 2])
        self.assertEqual(self.migrator.applied_versions(), [1])

    def test_drop_all_tables(self) -> None:
        self.add(1, "widgets", "CREATE TABLE widgets (id INTEGER PRIMARY KEY);", "DROP TABLE widgets;")
        self.migrator.migrate_up()
        with self.assertRaises(ValueError):
            self.migrator.drop_all_tables()
        self.assertEqual(sorted(self.migrator.drop_all_tables(dry_run=True)), ["schema_migrations", "widgets"])
        self.assertEqual(len(self.table_names()), 2)
        self.migrator.drop_all_tables(confirm=True)
        self.assertEqual(self.table_names(), [])

    def test_drop_database_is_not_available_for_sqlite(self) -> None:
        with self.assertRaises(ValueError):
            self.migrator.drop_database()
        with self.assertRaises(ValueError):
            self.migrator.drop_database(confirm=True)

    def test_ledger_rows(self) -> None:
        self.add(1, "widgets", "CREATE TABLE widgets (id INTEGER);", "DROP TABLE widgets;")
        self.migrator.migrate_up()
        with self.engine.connect() as conn:
            row = conn.execute(text("SELECT version, description FROM schema_migrations")).one()
        self.assertEqual(tuple(row), (1, "widgets"))


if __name__ == "__main__":
    unittest.main()
