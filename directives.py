"""Extract declared schema (tables, fields, indexes, enums) from `# migrator:` comment directives."""

from __future__ import annotations

import ast
import dataclasses
import io
import logging
import re
import tokenize
from pathlib import Path

logger = logging.getLogger(__name__)

TABLE_TAG = "migrator:schema:table"
FIELD_TAG = "migrator:schema:field"
INDEX_TAG = "migrator:schema:index"
EMBEDDED_TAG = "migrator:embedded"

BOOLEAN_ATTRIBUTES = {"not_null", "nullable", "primary", "unique", "auto_increment", "index"}
BOOLEAN_PREFIXES = ("is_", "has_")

KNOWN_DIALECTS = ("postgres", "mysql", "mariadb")
MYSQL_FAMILY = ("mysql", "mariadb")

KV_RE = re.compile(r'([A-Za-z_][\w.]*)=(?:"((?:[^"\\]|\\.)*)"|(\S+))')
BARE_WORD_RE = re.compile(r"(?<![\w.=\"])([A-Za-z_]\w*)(?![\w.=])")


@dataclasses.dataclass
class Table:
    type_name: str
    name: str
    comment: str = ""
    primary_key: list[str] = dataclasses.field(default_factory=list)
    checks: list[str] = dataclasses.field(default_factory=list)
    custom_sql: str = ""
    overrides: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class Field:
    type_name: str
    attr_name: str
    name: str
    type: str
    nullable: bool = True
    primary: bool = False
    unique: bool = False
    unique_expr: str = ""
    auto_increment: bool = False
    default: str = ""
    default_expr: str = ""
    foreign: str = ""
    foreign_key_name: str = ""
    on_delete: str = ""
    on_update: str = ""
    enum: list[str] = dataclasses.field(default_factory=list)
    check: str = ""
    comment: str = ""
    overrides: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)

    def type_for(self, dialect: str | None) -> str:
        """Declared type with the dialect's `type` override applied."""
        if dialect:
            attrs = self.overrides.get(dialect)
            if attrs is None and dialect == "mariadb":
                attrs = self.overrides.get("mysql")
            if attrs and attrs.get("type"):
                return attrs["type"]
        return self.type


@dataclasses.dataclass
class Index:
    type_name: str
    name: str
    fields: list[str]
    unique: bool = False
    comment: str = ""


@dataclasses.dataclass
class Enum:
    name: str
    values: list[str]


@dataclasses.dataclass
class EmbeddedField:
    type_name: str
    mode: str
    embedded_type_name: str
    prefix: str = ""
    name: str = ""
    type: str = ""
    nullable: bool = False
    index: bool = False
    field: str = ""
    ref: str = ""
    on_delete: str = ""
    on_update: str = ""
    comment: str = ""
    overrides: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class Database:
    tables: list[Table] = dataclasses.field(default_factory=list)
    fields: list[Field] = dataclasses.field(default_factory=list)
    indexes: list[Index] = dataclasses.field(default_factory=list)
    enums: list[Enum] = dataclasses.field(default_factory=list)
    embedded_fields: list[EmbeddedField] = dataclasses.field(default_factory=list)
    dependencies: dict[str, list[str]] = dataclasses.field(default_factory=dict)

    def table_by_name(self, name: str) -> Table | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def table_by_type(self, type_name: str) -> Table | None:
        for table in self.tables:
            if table.type_name == type_name:
                return table
        return None

    def enum_by_name(self, name: str) -> Enum | None:
        for enum in self.enums:
            if enum.name == name:
                return enum
        return None

    def table_fields(self, table: Table) -> list[Field]:
        """Own fields of a table followed by the fields its embedded directives produce."""
        own = [f for f in self.fields if f.type_name == table.type_name]
        embedded = process_embedded_fields(self.embedded_fields, self.fields, table.type_name, table.name)
        return own + embedded

    def index_table(self, index: Index) -> str:
        table = self.table_by_type(index.type_name)
        return table.name if table else index.type_name

    def validate(self) -> list[str]:
        """Log and return fields whose owner is neither a table nor an embedded type."""
        owners = {t.type_name for t in self.tables}
        owners.update(e.embedded_type_name for e in self.embedded_fields)
        orphans = []
        for field in self.fields:
            if field.type_name not in owners:
                orphans.append(f"{field.type_name}.{field.name}")
        for orphan in orphans:
            logger.warning("field %s belongs to a type without a table directive", orphan)
        return orphans


def parse_key_value_comment(text: str) -> dict[str, str]:
    """Parse `key=value` / `key="quoted"` pairs; bare boolean words become "true" unless set explicitly."""
    body = strip_tag(text)
    kv: dict[str, str] = {}
    for m in KV_RE.finditer(body):
        value = m.group(2) if m.group(2) is not None else m.group(3)
        kv[m.group(1)] = value.replace('\\"', '"')

    remainder = KV_RE.sub(" ", body)
    for m in BARE_WORD_RE.finditer(remainder):
        word = m.group(1)
        if word in kv:
            continue
        if word in BOOLEAN_ATTRIBUTES or word.startswith(BOOLEAN_PREFIXES):
            kv[word] = "true"
    return kv


def strip_tag(text: str) -> str:
    text = text.strip().lstrip("#").strip()
    for tag in (TABLE_TAG, FIELD_TAG, INDEX_TAG, EMBEDDED_TAG):
        if text.startswith(tag):
            return text[len(tag) :]
    return text


def parse_platform_specific(kv: dict[str, str]) -> dict[str, dict[str, str]]:
    overrides: dict[str, dict[str, str]] = {}
    for key, value in kv.items():
        if not key.startswith("platform."):
            continue
        parts = key.split(".", 2)
        if len(parts) != 3 or not parts[1] or not parts[2]:
            logger.warning("ignoring malformed platform key %r", key)
            continue
        overrides.setdefault(parts[1], {})[parts[2]] = value

    engine = kv.get("engine")
    if engine:
        for dialect in MYSQL_FAMILY:
            overrides.setdefault(dialect, {}).setdefault("engine", engine)
    return overrides


def split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def is_true(kv: dict[str, str], key: str) -> bool:
    return kv.get(key, "").lower() == "true"


def directive_tag(comment: str) -> str | None:
    text = comment.strip().lstrip("#").strip()
    for tag in (TABLE_TAG, FIELD_TAG, INDEX_TAG, EMBEDDED_TAG):
        if text == tag or text.startswith(tag + " "):
            return tag
    return None


def full_line_comments(source: str) -> dict[int, str]:
    """Map line number -> comment text for lines holding nothing but a comment."""
    comments: dict[int, str] = {}
    lines = source.splitlines()
    for tok in tokenize.generate_tokens(io.StringIO(source).readline):
        if tok.type != tokenize.COMMENT:
            continue
        row, col = tok.start
        if lines[row - 1][:col].strip():
            continue
        comments[row] = tok.string
    return comments


def leading_comments(comments: dict[int, str], first_line: int) -> list[str]:
    """Contiguous comment block ending right above `first_line`, top to bottom."""
    block: list[str] = []
    line = first_line - 1
    while line in comments:
        block.append(comments[line])
        line -= 1
    block.reverse()
    return block


def annotation_type_name(node: ast.expr | None) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value.strip()
    if isinstance(node, ast.Subscript):
        # Optional[X]
        return annotation_type_name(node.slice)
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        # X | None
        left = annotation_type_name(node.left)
        return left if left and left != "None" else annotation_type_name(node.right)
    return ""


def class_attributes(cls: ast.ClassDef) -> list[tuple[str, ast.expr | None, int]]:
    attrs: list[tuple[str, ast.expr | None, int]] = []
    for stmt in cls.body:
        if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            attrs.append((stmt.target.id, stmt.annotation, stmt.lineno))
        elif isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    attrs.append((target.id, None, stmt.lineno))
    return attrs


def parse_source(
    source: str, filename: str
) -> tuple[list[EmbeddedField], list[Field], list[Index], list[Table], list[Enum]]:
    try:
        tree = ast.parse(source, filename=filename)
        comments = full_line_comments(source)
    except (SyntaxError, tokenize.TokenError) as exc:
        raise ValueError(f"Failed to parse {filename}: {exc}") from exc

    embedded_fields: list[EmbeddedField] = []
    fields: list[Field] = []
    indexes: list[Index] = []
    tables: list[Table] = []
    enums: dict[str, Enum] = {}

    for node in tree.body:
        if not isinstance(node, ast.ClassDef):
            continue
        type_name = node.name
        first_line = min([node.lineno] + [d.lineno for d in node.decorator_list])

        table_name = ""
        for comment in leading_comments(comments, first_line):
            if directive_tag(comment) != TABLE_TAG:
                continue
            kv = parse_key_value_comment(comment)
            table_name = kv.get("name", "")
            tables.append(
                Table(
                    type_name=type_name,
                    name=table_name,
                    comment=kv.get("comment", ""),
                    primary_key=split_list(kv.get("primary_key")),
                    checks=split_list(kv.get("checks")),
                    custom_sql=kv.get("custom", ""),
                    overrides=parse_platform_specific(kv),
                )
            )

        owner_key = (table_name or type_name).lower()
        for attr_name, annotation, lineno in class_attributes(node):
            for comment in leading_comments(comments, lineno):
                tag = directive_tag(comment)
                if tag is None:
                    continue
                kv = parse_key_value_comment(comment)
                if tag == FIELD_TAG:
                    fields.append(field_from_directive(kv, type_name, attr_name, owner_key, enums, filename))
                elif tag == EMBEDDED_TAG:
                    embedded_fields.append(
                        EmbeddedField(
                            type_name=type_name,
                            mode=kv.get("mode", "inline"),
                            embedded_type_name=annotation_type_name(annotation),
                            prefix=kv.get("prefix", ""),
                            name=kv.get("name", ""),
                            type=kv.get("type", ""),
                            nullable=is_true(kv, "nullable"),
                            index=is_true(kv, "index"),
                            field=kv.get("field", ""),
                            ref=kv.get("ref", ""),
                            on_delete=kv.get("on_delete", ""),
                            on_update=kv.get("on_update", ""),
                            comment=kv.get("comment", ""),
                            overrides=parse_platform_specific(kv),
                        )
                    )
                elif tag == INDEX_TAG:
                    indexes.append(
                        Index(
                            type_name=type_name,
                            name=kv.get("name", ""),
                            fields=split_list(kv.get("fields")),
                            unique=is_true(kv, "unique"),
                            comment=kv.get("comment", ""),
                        )
                    )

    sorted_enums = [enums[key] for key in sorted(enums)]
    return embedded_fields, fields, indexes, tables, sorted_enums


def field_from_directive(
    kv: dict[str, str],
    type_name: str,
    attr_name: str,
    owner_key: str,
    enums: dict[str, Enum],
    filename: str,
) -> Field:
    name = kv.get("name", attr_name)
    values = split_list(kv.get("enum"))
    field_type = kv.get("type", "")

    if values and field_type.upper() == "ENUM":
        enum_name = f"enum_{owner_key}_{name.lower()}"
        register_enum(enums, Enum(name=enum_name, values=values), filename)
        field_type = enum_name

    return Field(
        type_name=type_name,
        attr_name=attr_name,
        name=name,
        type=field_type,
        nullable=not is_true(kv, "not_null"),
        primary=is_true(kv, "primary"),
        unique=is_true(kv, "unique"),
        unique_expr=kv.get("unique_expr", ""),
        auto_increment=is_true(kv, "auto_increment"),
        default=kv.get("default", ""),
        default_expr=kv.get("default_expr", kv.get("default_fn", "")),
        foreign=kv.get("foreign", ""),
        foreign_key_name=kv.get("foreign_key_name", ""),
        on_delete=kv.get("on_delete", ""),
        on_update=kv.get("on_update", ""),
        enum=values,
        check=kv.get("check", ""),
        comment=kv.get("comment", ""),
        overrides=parse_platform_specific(kv),
    )


def register_enum(enums: dict[str, Enum], enum: Enum, source: str) -> None:
    existing = enums.get(enum.name)
    if existing is None:
        enums[enum.name] = enum
        return
    if existing.values != enum.values:
        raise ValueError(
            f"Conflicting definitions for enum {enum.name} in {source}: {existing.values} vs {enum.values}"
        )


def parse_file(path: str | Path) -> tuple[list[EmbeddedField], list[Field], list[Index], list[Table], list[Enum]]:
    path = Path(path)
    return parse_source(path.read_text(encoding="utf-8"), str(path))


def parse_file_with_dependencies(
    path: str | Path,
) -> tuple[list[EmbeddedField], list[Field], list[Index], list[Table], list[Enum]]:
    """Parse a file and pull in fields of embedded types declared elsewhere in the same directory."""
    path = Path(path)
    embedded_fields, fields, indexes, tables, enums = parse_file(path)

    wanted = {e.embedded_type_name for e in embedded_fields if e.mode in ("inline", "relation")}
    wanted.discard("")
    if not wanted:
        return embedded_fields, fields, indexes, tables, enums

    known = {f.type_name for f in fields}
    for related in sorted(path.parent.glob("*.py")):
        if related.resolve() == path.resolve():
            continue
        _, related_fields, _, _, related_enums = parse_file(related)
        used_enum_names = set()
        for field in related_fields:
            if field.type_name in wanted:
                fields.append(field)
                known.add(field.type_name)
                used_enum_names.add(field.type)
        for enum in related_enums:
            if enum.name in used_enum_names and all(e.name != enum.name for e in enums):
                enums.append(enum)

    enums.sort(key=lambda e: e.name)
    for missing in sorted(wanted - known):
        logger.warning("embedded type %s referenced from %s not found in %s", missing, path.name, path.parent)
    return embedded_fields, fields, indexes, tables, enums


def iter_source_files(root: Path) -> list[Path]:
    files: list[Path] = []
    for path in sorted(root.rglob("*.py")):
        parts = path.relative_to(root).parts
        if any(p.startswith(".") or p == "__pycache__" for p in parts[:-1]):
            continue
        if path.name.startswith("test_"):
            continue
        files.append(path)
    return files


def parse_dir(root: str | Path) -> Database:
    root = Path(root)
    if not root.is_dir():
        raise ValueError(f"Source directory does not exist: {root}")

    db = Database()
    enums: dict[str, Enum] = {}
    for path in iter_source_files(root):
        embedded_fields, fields, indexes, tables, file_enums = parse_file(path)
        db.embedded_fields.extend(embedded_fields)
        db.fields.extend(fields)
        db.indexes.extend(indexes)
        db.tables.extend(tables)
        for enum in file_enums:
            register_enum(enums, enum, str(path))
    db.enums = [enums[key] for key in sorted(enums)]

    deduplicate(db)
    warn_unresolved_embedded(db)
    resolve_embedded_enums(db)
    build_dependency_graph(db)
    sort_tables_by_dependencies(db)
    logger.info("parsed %d tables, %d fields, %d enums from %s", len(db.tables), len(db.fields), len(db.enums), root)
    return db


def deduplicate(db: Database) -> None:
    db.tables = list({t.name: t for t in db.tables}.values())
    db.fields = list({(f.type_name, f.name): f for f in db.fields}.values())
    db.indexes = list({(i.type_name, i.name): i for i in db.indexes}.values())
    db.embedded_fields = list({(e.type_name, e.embedded_type_name, e.mode, e.field, e.name): e for e in db.embedded_fields}.values())


def warn_unresolved_embedded(db: Database) -> None:
    declared = {f.type_name for f in db.fields}
    for embedded in db.embedded_fields:
        if embedded.mode != "inline":
            continue
        if embedded.embedded_type_name not in declared:
            logger.warning(
                "embedded type %s referenced by %s has no field directives; no columns generated",
                embedded.embedded_type_name or "<unknown>",
                embedded.type_name,
            )


def ref_table(ref: str) -> str:
    """`users(id)` -> `users`."""
    return ref.split("(", 1)[0].strip()


def ref_column(ref: str) -> str:
    m = re.search(r"\(([^)]*)\)", ref)
    return m.group(1).strip() if m else "id"


def build_dependency_graph(db: Database) -> None:
    db.dependencies = {t.name: [] for t in db.tables}
    by_type = {t.type_name: t.name for t in db.tables}

    refs: list[tuple[str, str]] = []
    for field in db.fields:
        if field.foreign:
            refs.append((field.type_name, ref_table(field.foreign)))
    for embedded in db.embedded_fields:
        if embedded.mode == "relation" and embedded.ref:
            refs.append((embedded.type_name, ref_table(embedded.ref)))

    for type_name, target in refs:
        table = by_type.get(type_name)
        if table is None or target == table:
            continue
        if target not in db.dependencies[table]:
            db.dependencies[table].append(target)


def topological_order(names: list[str], dependencies: dict[str, list[str]]) -> list[str]:
    """Kahn's algorithm over `names`; dependencies outside `names` are ignored, cycles go last."""
    members = set(names)
    in_degree = {n: len([d for d in dependencies.get(n, []) if d in members]) for n in names}
    queue = [n for n in names if in_degree[n] == 0]
    ordered: list[str] = []
    while queue:
        current = queue.pop(0)
        ordered.append(current)
        for name in names:
            if current in dependencies.get(name, []) and name in in_degree:
                in_degree[name] -= 1
                if in_degree[name] == 0:
                    queue.append(name)

    if len(ordered) != len(names):
        remaining = [n for n in names if n not in ordered]
        logger.warning("circular foreign key dependency between tables: %s", ", ".join(remaining))
        ordered.extend(remaining)
    return ordered


def sort_tables_by_dependencies(db: Database) -> None:
    by_name = {t.name: t for t in db.tables}
    db.tables = [by_name[n] for n in topological_order(list(by_name), db.dependencies)]


def process_embedded_fields(
    embedded_fields: list[EmbeddedField],
    all_fields: list[Field],
    type_name: str,
    table_name: str = "",
) -> list[Field]:
    generated: list[Field] = []
    for embedded in embedded_fields:
        if embedded.type_name != type_name:
            continue

        if embedded.mode == "skip":
            continue

        if embedded.mode == "json":
            generated.append(
                Field(
                    type_name=type_name,
                    attr_name=embedded.embedded_type_name,
                    name=embedded.name or f"{embedded.embedded_type_name.lower()}_data",
                    type=embedded.type or "JSONB",
                    nullable=embedded.nullable,
                    comment=embedded.comment,
                    overrides=embedded.overrides,
                )
            )
        elif embedded.mode == "relation":
            if not embedded.field or not embedded.ref:
                logger.warning("relation embedded on %s needs both field and ref; skipped", type_name)
                continue
            ref_type = "VARCHAR(36)" if re.search(r"VARCHAR|TEXT|uuid", embedded.ref, flags=re.I) else "INTEGER"
            owner = (table_name or type_name).lower()
            generated.append(
                Field(
                    type_name=type_name,
                    attr_name=embedded.embedded_type_name,
                    name=embedded.field,
                    type=embedded.type or ref_type,
                    nullable=embedded.nullable,
                    foreign=embedded.ref,
                    foreign_key_name=f"fk_{owner}_{embedded.field.lower()}",
                    on_delete=embedded.on_delete,
                    on_update=embedded.on_update,
                    comment=embedded.comment,
                )
            )
        else:
            owner = (table_name or type_name).lower()
            for field in all_fields:
                if field.type_name != embedded.embedded_type_name:
                    continue
                name = f"{embedded.prefix}{field.name}"
                field_type = field.type
                # enums copied into a table are keyed by that table's column
                if field.enum and field.type == f"enum_{field.type_name.lower()}_{field.name.lower()}":
                    field_type = f"enum_{owner}_{name}".lower()
                generated.append(dataclasses.replace(field, type_name=type_name, name=name, type=field_type))
    return generated


def resolve_embedded_enums(db: Database) -> None:
    """Register the per-table enums of inline-embedded fields and drop the embedded types' own."""
    enums = {e.name: e for e in db.enums}
    for table in db.tables:
        for field in db.table_fields(table):
            if field.enum and field.type not in enums:
                enums[field.type] = Enum(name=field.type, values=list(field.enum))

    table_types = {t.type_name for t in db.tables}
    inlined = {e.embedded_type_name for e in db.embedded_fields if e.mode == "inline"}
    for field in db.fields:
        if field.enum and field.type_name in inlined and field.type_name not in table_types:
            enums.pop(field.type, None)
    db.enums = [enums[key] for key in sorted(enums)]
