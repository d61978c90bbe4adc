import os
import unittest
from pathlib import Path
from types import SimpleNamespace

import dump_schemas
from directives import parse_dir
from dump_schemas import DBSchema, connection_dialect, dump_yaml, parse_mysql_enum, read_schema


MODELS_DIR = Path(__file__).resolve().parent / "fixtures" / "models"


class FakeResult:
    def __init__(self, rows: list[dict], scalar=None) -> None:
        self._rows = rows
        self._scalar = scalar

    def mappings(self) -> list[dict]:
        return self._rows

    def scalar(self):
        return self._scalar


class FakeConnection:
    """Answers catalog queries from canned rows keyed by the query text."""

    def __init__(self, name: str, answers: dict[str, list[dict]], is_mariadb: bool = False) -> None:
        self.dialect = SimpleNamespace(name=name, is_mariadb=is_mariadb)
        self.answers = answers
        self.executed: list[str] = []

    def execute(self, clause, params=None) -> FakeResult:
        sql = getattr(clause, "text", str(clause))
        self.executed.append(sql)
        if sql.strip() == "SELECT DATABASE()":
            return FakeResult([], scalar="shop")
        return FakeResult(self.answers.get(sql, []))


class TestHelpers(unittest.TestCase):
    def test_parse_mysql_enum(self) -> None:
        self.assertEqual(parse_mysql_enum("enum('a','b')"), ["a", "b"])
        self.assertEqual(parse_mysql_enum("enum('it''s','x,y')"), ["it's", "x,y"])

    def test_connection_dialect(self) -> None:
        self.assertEqual(connection_dialect(FakeConnection("postgresql", {})), "postgres")
        self.assertEqual(connection_dialect(FakeConnection("mysql", {})), "mysql")
        self.assertEqual(connection_dialect(FakeConnection("mysql", {}, is_mariadb=True)), "mariadb")
        with self.assertRaises(ValueError):
            connection_dialect(FakeConnection("sqlite", {}))


class TestReadMySQL(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = FakeConnection(
            "mysql",
            {
                dump_schemas.MYSQL_TABLES: [
                    {"table_name": "orders", "comment": "Orders"},
                    {"table_name": "customers", "comment": ""},
                    {"table_name": "schema_migrations", "comment": ""},
                ],
                dump_schemas.MYSQL_COLUMNS: [
                    {
                        "table_name": "customers",
                        "column_name": "id",
                        "data_type": "int",
                        "column_type": "int",
                        "is_nullable": "NO",
                        "column_default": None,
                        "column_key": "PRI",
                        "extra": "auto_increment",
                    },
                    {
                        "table_name": "orders",
                        "column_name": "id",
                        "data_type": "int",
                        "column_type": "int",
                        "is_nullable": "NO",
                        "column_default": None,
                        "column_key": "PRI",
                        "extra": "auto_increment",
                    },
                    {
                        "table_name": "orders",
                        "column_name": "state",
                        "data_type": "enum",
                        "column_type": "enum('new','paid')",
                        "is_nullable": "NO",
                        "column_default": "new",
                        "column_key": "",
                        "extra": "",
                    },
                    {
                        "table_name": "orders",
                        "column_name": "reference",
                        "data_type": "varchar",
                        "column_type": "varchar(32)",
                        "is_nullable": "YES",
                        "column_default": None,
                        "column_key": "UNI",
                        "extra": "",
                    },
                    {
                        "table_name": "schema_migrations",
                        "column_name": "version",
                        "data_type": "bigint",
                        "column_type": "bigint",
                        "is_nullable": "NO",
                        "column_default": None,
                        "column_key": "PRI",
                        "extra": "",
                    },
                ],
                dump_schemas.MYSQL_CONSTRAINTS: [
                    {"table_name": "orders", "constraint_name": "PRIMARY"},
                    {"table_name": "orders", "constraint_name": "reference"},
                ],
                dump_schemas.MYSQL_INDEXES: [
                    {"table_name": "orders", "index_name": "PRIMARY", "non_unique": 0, "column_name": "id", "seq": 1},
                    {"table_name": "orders", "index_name": "reference", "non_unique": 0, "column_name": "reference", "seq": 1},
                    {"table_name": "orders", "index_name": "idx_orders_state", "non_unique": 1, "column_name": "state", "seq": 1},
                    {"table_name": "orders", "index_name": "idx_orders_state", "non_unique": 1, "column_name": "id", "seq": 2},
                ],
                dump_schemas.MYSQL_FOREIGN_KEYS: [{"table_name": "orders", "foreign_table_name": "customers"}],
            },
        )

    def test_snapshot(self) -> None:
        snapshot = read_schema(self.conn)
        self.assertEqual(snapshot.dialect, "mysql")
        self.assertEqual([t.name for t in snapshot.tables], ["orders", "customers"])

        orders = snapshot.table("orders")
        self.assertEqual(orders.comment, "Orders")
        self.assertTrue(orders.column("id").is_primary_key)
        self.assertTrue(orders.column("id").is_auto_increment)
        self.assertEqual(orders.column("state").udt_name, "enum_orders_state")
        self.assertFalse(orders.column("state").is_nullable)
        self.assertTrue(orders.column("reference").is_unique)
        self.assertEqual(orders.column("reference").udt_name, "varchar(32)")

        self.assertEqual([(e.name, e.values) for e in snapshot.enums], [("enum_orders_state", ["new", "paid"])])
        indexes = {i.name: i for i in snapshot.indexes}
        self.assertTrue(indexes["PRIMARY"].is_primary)
        self.assertTrue(indexes["reference"].is_constraint)
        self.assertEqual(indexes["idx_orders_state"].columns, ["state", "id"])
        self.assertFalse(indexes["idx_orders_state"].is_unique)
        self.assertEqual(snapshot.dependencies, {"orders": ["customers"], "customers": []})

    def test_timeout_and_default_schema(self) -> None:
        read_schema(self.conn, timeout=2.5)
        self.assertEqual(self.conn.executed[0], "SET SESSION MAX_EXECUTION_TIME = 2500")
        self.assertIn("SELECT DATABASE()", self.conn.executed)
        self.assertEqual(self.conn.executed[-1], "SET SESSION MAX_EXECUTION_TIME = 0")

    def test_mariadb_timeout_is_reset(self) -> None:
        self.conn.dialect.is_mariadb = True
        snapshot = read_schema(self.conn, timeout=3)
        self.assertEqual(snapshot.dialect, "mariadb")
        self.assertEqual(self.conn.executed[0], "SET SESSION max_statement_time = 3.0")
        self.assertEqual(self.conn.executed[-1], "SET SESSION max_statement_time = 0.0")

    def test_yaml_dump(self) -> None:
        text = dump_yaml(read_schema(self.conn, schema="shop"))
        self.assertIn("dialect: mysql", text)
        self.assertIn("name: enum_orders_state", text)


class TestReadPostgres(unittest.TestCase):
    def test_snapshot(self) -> None:
        conn = FakeConnection(
            "postgresql",
            {
                dump_schemas.PG_TABLES: [{"table_name": "tags", "comment": None}],
                dump_schemas.PG_COLUMNS: [
                    {
                        "table_name": "tags",
                        "column_name": "id",
                        "data_type": "integer",
                        "udt_name": "int4",
                        "is_nullable": "NO",
                        "column_default": "nextval('tags_id_seq'::regclass)",
                        "is_identity": "NO",
                    },
                    {
                        "table_name": "tags",
                        "column_name": "label",
                        "data_type": "character varying",
                        "udt_name": "varchar",
                        "is_nullable": "NO",
                        "column_default": None,
                        "is_identity": "NO",
                    },
                ],
                dump_schemas.PG_KEYS: [
                    {"table_name": "tags", "constraint_name": "tags_pkey", "constraint_type": "PRIMARY KEY", "column_name": "id"},
                    {"table_name": "tags", "constraint_name": "tags_label_key", "constraint_type": "UNIQUE", "column_name": "label"},
                ],
                dump_schemas.PG_ENUMS: [
                    {"enum_name": "tone", "enum_value": "warm"},
                    {"enum_name": "tone", "enum_value": "cool"},
                ],
                dump_schemas.PG_INDEXES: [
                    {
                        "index_name": "tags_pkey",
                        "table_name": "tags",
                        "is_primary": True,
                        "is_unique": True,
                        "is_constraint": True,
                        "column_name": "id",
                    },
                ],
            },
        )
        snapshot = read_schema(conn, timeout=1)
        self.assertIn("SET LOCAL statement_timeout = 1000", conn.executed)
        tags = snapshot.table("tags")
        self.assertEqual(tags.comment, "")
        self.assertTrue(tags.column("id").is_auto_increment)
        self.assertTrue(tags.column("id").is_primary_key)
        self.assertTrue(tags.column("label").is_unique)
        self.assertEqual([(e.name, e.values) for e in snapshot.enums], [("tone", ["warm", "cool"])])
        self.assertEqual(snapshot.dependencies, {"tags": []})


@unittest.skipUnless(os.environ.get("PTAH_TEST_POSTGRES_URL"), "PTAH_TEST_POSTGRES_URL not set")
class TestLivePostgres(unittest.TestCase):
    """Applies the fixture schema to a scratch database and reads it back."""

    def test_declared_schema_round_trips(self) -> None:
        from sqlalchemy import create_engine

        from migrate import split_sql_statements
        from render import render_schema
        from schema_diff import compare_schemas

        declared = parse_dir(MODELS_DIR)
        engine = create_engine(os.environ["PTAH_TEST_POSTGRES_URL"])
        try:
            with engine.begin() as conn:
                conn.exec_driver_sql("DROP SCHEMA IF EXISTS ptah_test CASCADE")
                conn.exec_driver_sql("CREATE SCHEMA ptah_test")
                conn.exec_driver_sql("SET LOCAL search_path TO ptah_test")
                for stmt in split_sql_statements(render_schema(declared, "postgres")):
                    conn.exec_driver_sql(stmt)
                snapshot = read_schema(conn, schema="ptah_test")
                self.assertIsInstance(snapshot, DBSchema)
                self.assertFalse(compare_schemas(declared, snapshot).has_changes())
                conn.exec_driver_sql("DROP SCHEMA ptah_test CASCADE")
        finally:
            engine.dispose()


if __name__ == "__main__":
    unittest.main()
