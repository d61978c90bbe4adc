import contextlib
import io
import tempfile
import unittest
from pathlib import Path

from directives import Database, Enum, Field, Table, parse_dir
from dump_schemas import DBColumn, DBSchema, DBTable
from generate_migration import (
    DESTRUCTIVE_MARKER,
    check_equal,
    generate_diff_markdown,
    generate_migration,
    generate_schema_markdown,
    generate_schema_sql,
    main,
    migration_filenames,
    next_version,
    snake_case,
    write_migration_files,
)
from schema_diff import compare_schemas


MODELS_DIR = Path(__file__).resolve().parent / "fixtures" / "models"


def accounts_snapshot(*extra: DBColumn) -> DBSchema:
    id_column = DBColumn(
        "id",
        "integer",
        "int4",
        is_nullable=False,
        is_primary_key=True,
        column_default="nextval('accounts_id_seq'::regclass)",
        is_auto_increment=True,
    )
    return DBSchema("postgres", tables=[DBTable("accounts", [id_column, *extra])], dependencies={"accounts": []})


def accounts_with_status() -> Database:
    return Database(
        tables=[Table("Account", "accounts")],
        fields=[
            Field("Account", "id", "id", "SERIAL", primary=True),
            Field("Account", "status", "status", "status"),
        ],
        enums=[Enum("status", ["active", "inactive"])],
        dependencies={"accounts": []},
    )


class TestGenerateMigration(unittest.TestCase):
    def test_enum_add_scenario(self) -> None:
        generated = generate_migration(accounts_with_status(), accounts_snapshot(), "add account status")
        self.assertIsNotNone(generated)
        self.assertEqual(generated.diff.enums_added, ["status"])
        body = generated.up_sql.split("\n\n", 1)[1]
        self.assertTrue(body.startswith("CREATE TYPE status AS ENUM ('active', 'inactive');\n"))
        self.assertIn("ALTER TABLE accounts ADD COLUMN status status;", generated.up_sql)
        self.assertFalse(generated.destructive)
        self.assertNotIn(DESTRUCTIVE_MARKER, generated.up_sql)

        self.assertIn("-- WARNING [destructive]: drops column accounts.status and its data", generated.down_sql)
        self.assertIn("ALTER TABLE accounts DROP COLUMN status;", generated.down_sql)
        self.assertIn("DROP TYPE IF EXISTS status;", generated.down_sql)
        self.assertIn(DESTRUCTIVE_MARKER, generated.down_sql)
        self.assertLess(generated.down_sql.index("DROP COLUMN"), generated.down_sql.index("DROP TYPE"))

    def test_removed_column_is_annotated(self) -> None:
        declared = Database(
            tables=[Table("Account", "accounts")],
            fields=[Field("Account", "id", "id", "SERIAL", primary=True)],
            dependencies={"accounts": []},
        )
        snapshot = accounts_snapshot(DBColumn("nickname", "character varying", "varchar", column_default="'x'::character varying"))
        generated = generate_migration(declared, snapshot, "drop nickname")
        self.assertTrue(generated.destructive)
        self.assertIn(DESTRUCTIVE_MARKER, generated.up_sql)
        self.assertIn(
            "-- WARNING [destructive]: drops column accounts.nickname and its data\n"
            "ALTER TABLE accounts DROP COLUMN nickname;\n",
            generated.up_sql,
        )
        self.assertIn("ALTER TABLE accounts ADD COLUMN nickname varchar DEFAULT 'x';", generated.down_sql)

    def test_in_sync_returns_none(self) -> None:
        declared = Database(
            tables=[Table("Account", "accounts")],
            fields=[Field("Account", "id", "id", "SERIAL", primary=True)],
        )
        self.assertIsNone(generate_migration(declared, accounts_snapshot(), "noop"))

    def test_new_table_down_drops_it(self) -> None:
        declared = parse_dir(MODELS_DIR)
        empty = DBSchema("postgres")
        generated = generate_migration(declared, empty, "initial")
        self.assertIn("CREATE TABLE users (", generated.up_sql)
        self.assertLess(generated.up_sql.index("CREATE TABLE users"), generated.up_sql.index("CREATE TABLE posts"))
        self.assertLess(generated.down_sql.index("DROP TABLE IF EXISTS posts"), generated.down_sql.index("DROP TABLE IF EXISTS users"))
        self.assertIn("DROP TYPE IF EXISTS enum_users_status;", generated.down_sql)
        self.assertIn("-- Dialect: postgres", generated.down_sql)

    def test_generation_is_deterministic(self) -> None:
        first = generate_migration(parse_dir(MODELS_DIR), DBSchema("mysql"), "initial")
        second = generate_migration(parse_dir(MODELS_DIR), DBSchema("mysql"), "initial")
        self.assertEqual(first.up_sql, second.up_sql)
        self.assertEqual(first.down_sql, second.down_sql)
        self.assertNotIn("CREATE TYPE", first.up_sql)


class TestMigrationFiles(unittest.TestCase):
    def test_snake_case(self) -> None:
        self.assertEqual(snake_case("AddUserStatus"), "add_user_status")
        self.assertEqual(snake_case("add  user-status!"), "add_user_status")
        self.assertEqual(snake_case("   "), "migration")

    def test_filenames(self) -> None:
        self.assertEqual(
            migration_filenames(7, "Add users"),
            ("0000000007_add_users.up.sql", "0000000007_add_users.down.sql"),
        )

    def test_versions_increase(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            out_dir = Path(td) / "migrations"
            self.assertEqual(next_version(out_dir), 1)
            up, down, version = write_migration_files(out_dir, "create users", "UP;\n", "DOWN;\n")
            self.assertEqual(version, 1)
            self.assertEqual(up.name, "0000000001_create_users.up.sql")
            self.assertEqual(down.read_text(encoding="utf-8"), "DOWN;\n")
            _, _, version = write_migration_files(out_dir, "add posts", "UP;\n", "DOWN;\n")
            self.assertEqual(version, 2)
            with self.assertRaises(ValueError):
                write_migration_files(out_dir, "again", "UP;\n", "DOWN;\n", version=2)
            _, _, version = write_migration_files(out_dir, "jump", "UP;\n", "DOWN;\n", version=10)
            self.assertEqual(next_version(out_dir), 11)


class TestSchemaOutputs(unittest.TestCase):
    def test_schema_sql_and_check(self) -> None:
        sql, database = generate_schema_sql(MODELS_DIR, "postgresql")
        self.assertTrue(sql.startswith("-- Schema generated from "))
        self.assertIn("-- Dialect: postgres --", sql)
        md = generate_schema_markdown(database, "postgres")
        self.assertIn("| `posts` | 6 | `users` |", md)
        self.assertIn("- `enum_users_status`: active, inactive", md)

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "schema.sql"
            stderr = io.StringIO()
            with contextlib.redirect_stderr(stderr):
                self.assertFalse(check_equal(path, sql))
                path.write_text(sql, encoding="utf-8")
                self.assertTrue(check_equal(path, sql))
                path.write_text(sql.replace("users", "people"), encoding="utf-8")
                self.assertFalse(check_equal(path, sql))
            self.assertIn("[check] missing file", stderr.getvalue())
            self.assertIn("[check] drift detected", stderr.getvalue())

    def test_schema_command_writes_and_checks(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            out_sql = Path(td) / "schema.sql"
            args = ["--config", str(Path(td) / "none.yaml"), "--source-dir", str(MODELS_DIR), "--dialect", "mysql"]
            with contextlib.redirect_stdout(io.StringIO()):
                self.assertEqual(main(args + ["schema", "--out-sql", str(out_sql)]), 0)
            self.assertIn("ENUM('active', 'inactive')", out_sql.read_text(encoding="utf-8"))
            self.assertEqual(main(args + ["schema", "--out-sql", str(out_sql), "--check"]), 0)

    def test_diff_markdown(self) -> None:
        diff = compare_schemas(accounts_with_status(), accounts_snapshot())
        md = generate_diff_markdown(diff, "add status")
        self.assertTrue(md.startswith("# Migration: add status"))
        self.assertIn("## Enums added\n\n- `status`", md)
        self.assertIn("| `accounts` | `status` | added | |", md)
        self.assertIn("No differences", generate_diff_markdown(compare_schemas(Database(), DBSchema("postgres"))))


if __name__ == "__main__":
    unittest.main()
