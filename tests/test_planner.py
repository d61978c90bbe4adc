import unittest

import ddl
from directives import Database, Enum, Field, Index, Table, build_dependency_graph
from dump_schemas import DBColumn, DBIndex, DBSchema, DBTable
from planner import plan_migration
from schema_diff import ColumnDiff, EnumDiff, SchemaDiff, TableDiff, compare_schemas


def blog_database() -> Database:
    db = Database(
        tables=[Table("Post", "a_posts"), Table("User", "z_users")],
        fields=[
            Field("Post", "id", "id", "SERIAL", primary=True),
            Field("Post", "author_id", "author_id", "INTEGER", foreign="z_users(id)"),
            Field("User", "id", "id", "SERIAL", primary=True),
            Field("User", "mood", "mood", "mood"),
        ],
        indexes=[Index("Post", "idx_posts_author", ["author_id"])],
        enums=[Enum("mood", ["happy", "sad"])],
    )
    build_dependency_graph(db)
    return db


def kinds(ops) -> list[str]:
    return [op.node.kind for op in ops]


class TestPlanMigration(unittest.TestCase):
    def test_referenced_table_is_created_first(self) -> None:
        db = blog_database()
        diff = SchemaDiff(tables_added=["a_posts", "z_users"], enums_added=["mood"], indexes_added=["idx_posts_author"])
        ops = plan_migration(diff, db, "postgres")
        self.assertEqual(kinds(ops), ["enum", "create_table", "create_table", "index"])
        self.assertEqual([op.node.name for op in ops if op.node.kind == "create_table"], ["z_users", "a_posts"])
        self.assertEqual(ops[3].node, ddl.IndexNode("idx_posts_author", "a_posts", ("author_id",)))
        self.assertFalse(any(op.destructive for op in ops))

    def test_mysql_has_no_enum_statements(self) -> None:
        db = blog_database()
        diff = SchemaDiff(tables_added=["z_users"], enums_added=["mood"])
        ops = plan_migration(diff, db, "mysql")
        self.assertEqual(kinds(ops), ["create_table"])
        self.assertEqual(ops[0].node.columns[1].enum_values, ("happy", "sad"))

    def test_operation_order(self) -> None:
        db = blog_database()
        current = DBSchema(
            "postgres",
            indexes=[DBIndex("idx_old", "a_posts", ["author_id"])],
            dependencies={"legacy_child": ["legacy_parent"], "legacy_parent": []},
        )
        diff = SchemaDiff(
            tables_removed=["legacy_child", "legacy_parent"],
            tables_modified=[
                TableDiff(
                    "a_posts",
                    columns_added=["author_id"],
                    columns_removed=["summary"],
                    columns_modified=[ColumnDiff("id", {"type": "int4 -> integer"})],
                )
            ],
            enums_removed=["old_mood"],
            enums_modified=[EnumDiff("mood", values_added=["meh"])],
            indexes_added=["idx_posts_author"],
            indexes_removed=["idx_old"],
        )
        ops = plan_migration(diff, db, "postgres", current)
        self.assertEqual(
            kinds(ops),
            ["alter_enum", "drop_index", "alter_table", "alter_table", "index", "drop_table", "drop_table", "drop_enum"],
        )
        self.assertEqual(ops[1].node, ddl.DropIndexNode("idx_old", table="a_posts"))

        changes = ops[2].node.operations
        self.assertIsInstance(changes[0], ddl.AddColumn)
        self.assertIsInstance(changes[1], ddl.ModifyColumn)
        self.assertEqual(changes[1].changes, ("type",))
        self.assertEqual(ops[3].node.operations, (ddl.DropColumn("summary"),))

        self.assertEqual([op.node.name for op in ops[5:7]], ["legacy_child", "legacy_parent"])
        self.assertTrue(ops[5].node.cascade)
        self.assertEqual([op.destructive for op in ops], [False, False, False, True, False, True, True, True])
        self.assertEqual(ops[3].warning, "drops column a_posts.summary and its data")

    def test_removed_column_is_flagged_destructive(self) -> None:
        declared = Database(tables=[Table("T", "t")], fields=[Field("T", "id", "id", "SERIAL", primary=True)])
        introspected = DBSchema(
            "postgres",
            tables=[
                DBTable(
                    "t",
                    [
                        DBColumn("id", "integer", "int4", is_nullable=False, is_primary_key=True, is_auto_increment=True),
                        DBColumn("legacy", "text", "text"),
                    ],
                )
            ],
        )
        ops = plan_migration(compare_schemas(declared, introspected), declared, "postgres", introspected)
        self.assertEqual(len(ops), 1)
        self.assertTrue(ops[0].destructive)
        self.assertIn("legacy", ops[0].warning)

    def test_postgres_enum_value_removal_only_warns(self) -> None:
        diff = SchemaDiff(enums_modified=[EnumDiff("mood", values_added=["meh"], values_removed=["sad"])])
        ops = plan_migration(diff, blog_database(), "postgres")
        self.assertEqual(kinds(ops), ["alter_enum", "comment"])
        self.assertIn("PostgreSQL cannot drop enum values", ops[1].warning)
        self.assertFalse(ops[1].destructive)

    def test_mysql_enum_change_modifies_columns(self) -> None:
        diff = SchemaDiff(enums_modified=[EnumDiff("mood", values_removed=["angry"])])
        ops = plan_migration(diff, blog_database(), "mysql")
        self.assertEqual(len(ops), 1)
        alter = ops[0].node
        self.assertEqual(alter.name, "z_users")
        self.assertEqual(alter.operations[0].column.name, "mood")
        self.assertTrue(ops[0].destructive)

    def test_unknown_dialect(self) -> None:
        with self.assertRaises(ValueError):
            plan_migration(SchemaDiff(), blog_database(), "sqlite")


if __name__ == "__main__":
    unittest.main()
