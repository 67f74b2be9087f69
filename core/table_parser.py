"""
core/table_parser.py
--------------------
Parses ``CREATE TABLE`` definitions into column and constraint lists, and
extracts foreign-key targets from arbitrary DDL.

Two parsing paths:
    * Structural (primary): sqlglot's PostgreSQL dialect builds an AST that
      is walked for column definitions and constraints.
    * Regex (fallback): a tolerant text scanner used when sqlglot rejects
      the statement or yields no columns. Results carry ``parser="regex"``
      so callers and tests can tell which path produced them.

Both paths emit the same normalised forms (types via
:func:`core.type_converter.normalize_type`, defaults and constraint text via
the helpers below), so a definition parsed either way compares equal.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from core.sql_utils import (
    IDENTIFIER_PATTERN,
    QUALIFIED_PATTERN,
    fold_identifier,
    lower_outside_quotes,
    quote_identifier,
    split_qualified,
    split_sql_name,
    split_top_level,
    strip_comments,
)
from core.type_converter import normalize_type
from logger import get_logger
from models.schema import ObjectType, SchemaObject, make_key

log = get_logger(__name__)

PARSER_SQLGLOT = "sqlglot"
PARSER_REGEX = "regex"

_IDENT = IDENTIFIER_PATTERN
_QUALIFIED = QUALIFIED_PATTERN

_CREATE_TABLE_RE = re.compile(
    r"^\s*CREATE\s+(?:(?:GLOBAL|LOCAL)\s+)?(?:(?:TEMP|TEMPORARY|UNLOGGED)\s+)?TABLE\s+"
    rf"(?:IF\s+NOT\s+EXISTS\s+)?(?P<name>{_QUALIFIED})\s*\(",
    re.IGNORECASE,
)
_NAMED_CONSTRAINT_RE = re.compile(rf"^CONSTRAINT\s+(?P<name>{_IDENT})\s+(?P<body>.*)$", re.I | re.S)
_TABLE_CONSTRAINT_RE = re.compile(r"^(PRIMARY\s+KEY|FOREIGN\s+KEY|UNIQUE|CHECK|EXCLUDE)\b", re.I)
_COLUMN_RE = re.compile(rf"^(?P<name>{_IDENT})\s+(?P<rest>.+)$", re.S)
_COLUMN_KEYWORD_RE = re.compile(
    r"\s+(?=(?:NOT\s+NULL|NULL|DEFAULT|PRIMARY\s+KEY|UNIQUE|REFERENCES|CHECK|"
    r"CONSTRAINT|COLLATE|GENERATED)\b)",
    re.IGNORECASE,
)
_DEFAULT_END_RE = re.compile(
    r"\s+(?:NOT\s+NULL|NULL|PRIMARY\s+KEY|UNIQUE|REFERENCES|CHECK|CONSTRAINT|COLLATE|GENERATED)\b",
    re.IGNORECASE,
)
_INLINE_CONSTRAINT_RE = re.compile(
    rf"(?:\bCONSTRAINT\s+(?P<cname>{_IDENT})\s+)?\b(?P<kind>PRIMARY\s+KEY|UNIQUE|REFERENCES|CHECK)\b",
    re.IGNORECASE,
)
_REFERENCES_RE = re.compile(
    rf"\bREFERENCES\s+(?P<table>{_QUALIFIED})\s*(?:\((?P<cols>[^)]*)\))?", re.IGNORECASE
)
_PAREN_LIST_RE = re.compile(r"\(([^)]*)\)")
_QUOTED_RE = re.compile(r"'(?:[^']|'')*'")
_TRAILING_CAST_RE = re.compile(r"(?:::[a-z_][\w ]*(?:\([\d, ]*\))?(?:\[\])?)+$", re.IGNORECASE)
_PUNCT_SPACE_RE = re.compile(r"\s*([(),])\s*")

_OWNER_PATTERNS = {
    ObjectType.INDEX: re.compile(rf"\bON\s+(?:ONLY\s+)?(?P<table>{_QUALIFIED})", re.I),
    ObjectType.TRIGGER: re.compile(rf"\bON\s+(?P<table>{_QUALIFIED})", re.I),
    ObjectType.CONSTRAINT: re.compile(
        rf"\bALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?(?P<table>{_QUALIFIED})", re.I
    ),
}

_DEFAULT_ALIASES = {
    "now()": "current_timestamp",
    "transaction_timestamp()": "current_timestamp",
}


class TableParseError(Exception):
    """Raised when a table definition cannot be parsed by either path."""


@dataclass(frozen=True)
class ParsedColumn:
    name: str
    data_type: str
    nullable: bool = True
    default: str | None = None

    def definition(self) -> str:
        """Column clause usable in ``ADD COLUMN``."""
        parts = [quote_identifier(self.name), self.data_type]
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


@dataclass(frozen=True)
class ParsedConstraint:
    """
    Table constraint in normalised form.

    ``definition`` is the constraint body without the ``CONSTRAINT name``
    prefix, e.g. ``"foreign key(user_id) references public.users(id)"``.
    """
    kind: str
    definition: str
    name: str | None = None
    columns: tuple[str, ...] = ()
    ref_table: str | None = None
    ref_columns: tuple[str, ...] = ()

    @property
    def identity(self) -> str:
        return self.name or f"{self.kind}:{self.definition}"


@dataclass
class ParsedTable:
    schema: str
    name: str
    columns: list[ParsedColumn] = field(default_factory=list)
    constraints: list[ParsedConstraint] = field(default_factory=list)
    parser: str = PARSER_SQLGLOT

    @property
    def key(self) -> str:
        return make_key(self.schema, self.name)

    def get_column(self, name: str) -> ParsedColumn | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def primary_key_columns(self) -> tuple[str, ...]:
        for constraint in self.constraints:
            if constraint.kind == "primary key":
                return constraint.columns
        return ()

    @property
    def references(self) -> list[str]:
        refs: list[str] = []
        for constraint in self.constraints:
            if constraint.ref_table and constraint.ref_table not in refs:
                refs.append(constraint.ref_table)
        return refs


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------

def _squeeze_outside_quotes(text: str) -> str:
    parts = _QUOTED_RE.split(text)
    literals = _QUOTED_RE.findall(text)
    out = []
    for index, part in enumerate(parts):
        part = re.sub(r"\s+", " ", part)
        out.append(_PUNCT_SPACE_RE.sub(r"\1", part))
        if index < len(literals):
            out.append(literals[index])
    return "".join(out).strip()


def normalize_constraint(text: str) -> str:
    """
    Canonical constraint text: case folded, whitespace around punctuation removed.

    Example::

        normalize_constraint("FOREIGN KEY (user_id) REFERENCES public.users (id)")
        →  "foreign key(user_id) references public.users(id)"
    """
    return _squeeze_outside_quotes(lower_outside_quotes(text.strip().rstrip(",")))


def normalize_default(text: str | None) -> str | None:
    """
    Canonical column default, or ``None`` for no default / ``DEFAULT NULL``.

    Trailing ``::type`` casts are dropped and ``now()`` is spelled
    ``current_timestamp``.
    """
    if text is None:
        return None
    value = re.sub(r"\s+", " ", text.strip())
    while value.startswith("(") and value.endswith(")") and _balanced(value[1:-1]):
        value = value[1:-1].strip()
    value = _TRAILING_CAST_RE.sub("", value).strip()
    value = lower_outside_quotes(value)
    if not value or value == "null":
        return None
    return _DEFAULT_ALIASES.get(value, value)


def _balanced(text: str) -> bool:
    depth = 0
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def _column_list(text: str | None) -> tuple[str, ...]:
    if not text:
        return ()
    return tuple(fold_identifier(c) for c in split_top_level(text) if c)


def _mask_literals(text: str) -> str:
    """Replace quoted literal contents with underscores, preserving offsets."""
    return _QUOTED_RE.sub(lambda m: "'" + "_" * (len(m.group(0)) - 2) + "'", text)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_table(definition: str, default_schema: str = "public") -> ParsedTable:
    """
    Parse a ``CREATE TABLE`` statement, structurally first, regex second.

    Args:
        definition:      The DDL text.
        default_schema:  Schema assumed when the table name is unqualified.

    Returns:
        A :class:`ParsedTable`; ``parser`` names the path that produced it.

    Raises:
        TableParseError: If neither path can make sense of *definition*.

    Example::

        table = parse_table("CREATE TABLE public.users (id integer PRIMARY KEY)")
        table.get_column("id").nullable   # False
    """
    try:
        table = parse_table_structural(definition, default_schema)
        if table.columns:
            return table
        log.debug("sqlglot found no columns in %s; trying regex parser", table.key)
    except TableParseError as exc:
        log.debug("Structural parse failed, falling back to regex: %s", exc)
    return parse_table_regex(definition, default_schema)


def parse_table_structural(definition: str, default_schema: str = "public") -> ParsedTable:
    """
    Parse *definition* with sqlglot.

    Raises:
        TableParseError: If sqlglot rejects the text or it is not a
                         ``CREATE TABLE`` with a column list.
    """
    try:
        tree = sqlglot.parse_one(definition, read="postgres")
    except SqlglotError as exc:
        raise TableParseError(f"sqlglot could not parse table definition: {exc}") from exc

    if not isinstance(tree, exp.Create) or str(tree.args.get("kind", "")).upper() != "TABLE":
        raise TableParseError("Definition is not a CREATE TABLE statement")
    schema_node = tree.this
    if not isinstance(schema_node, exp.Schema) or not isinstance(schema_node.this, exp.Table):
        raise TableParseError("CREATE TABLE has no column list")

    table_node = schema_node.this
    table = ParsedTable(
        schema=_folded(table_node, "db") or default_schema,
        name=_folded(table_node),
        parser=PARSER_SQLGLOT,
    )

    for node in schema_node.expressions:
        if isinstance(node, exp.ColumnDef):
            _read_column_def(node, table)
        elif isinstance(node, exp.Constraint):
            inner = node.expressions[0] if node.expressions else None
            if inner is not None:
                table.constraints.append(_constraint_from_node(inner, table, name=_folded(node)))
        elif isinstance(node, (exp.PrimaryKey, exp.ForeignKey,
                               exp.UniqueColumnConstraint, exp.CheckColumnConstraint)):
            table.constraints.append(_constraint_from_node(node, table))
        else:
            log.debug("Ignoring unsupported table element in %s: %s", table.key, node.sql())

    _apply_primary_key_nullability(table)
    return table


def parse_table_regex(definition: str, default_schema: str = "public") -> ParsedTable:
    """
    Fallback text parser for ``CREATE TABLE`` statements.

    Raises:
        TableParseError: If the statement header or column list is not found.
    """
    text = strip_comments(definition)
    match = _CREATE_TABLE_RE.search(text)
    if not match:
        raise TableParseError("No CREATE TABLE header found")

    schema, name = split_sql_name(match.group("name"), default_schema)
    body = _parenthesized_body(text, match.end() - 1)
    table = ParsedTable(schema=schema, name=name, parser=PARSER_REGEX)

    for item in split_top_level(body):
        named = _NAMED_CONSTRAINT_RE.match(item)
        if named:
            table.constraints.append(
                _constraint_from_text(named.group("body"), table,
                                      name=fold_identifier(named.group("name")))
            )
        elif _TABLE_CONSTRAINT_RE.match(item):
            table.constraints.append(_constraint_from_text(item, table))
        elif re.match(r"^LIKE\b", item, re.I):
            log.debug("Ignoring LIKE clause in %s", table.key)
        else:
            _read_column_text(item, table)

    if not table.columns:
        raise TableParseError(f"No columns found in definition of {table.key}")
    _apply_primary_key_nullability(table)
    return table


def extract_references(sql: str | None, default_schema: str = "public") -> list[str]:
    """
    Return ``schema.table`` keys of every foreign-key target in *sql*.

    Uses sqlglot when every statement parses structurally and the regex
    scanner otherwise. Order of first appearance is preserved.

    Example::

        extract_references("ALTER TABLE o ADD FOREIGN KEY (u) REFERENCES users(id)")
        →  ["public.users"]
    """
    if not sql:
        return []
    text = strip_comments(sql)
    if not text.strip():
        return []
    try:
        return _references_structural(text, default_schema)
    except (SqlglotError, TableParseError):
        return _references_regex(text, default_schema)


def object_references(obj: SchemaObject) -> list[str]:
    """
    Explicit dependencies of *obj* plus implicit foreign-key targets.

    Self references are removed; unqualified names are resolved against the
    object's own schema.
    """
    refs: list[str] = []
    for dep in obj.dependencies:
        key = make_key(*split_qualified(dep, obj.schema))
        if key not in refs:
            refs.append(key)
    owner = owning_table(obj)
    if owner and owner not in refs:
        refs.append(owner)
    if obj.type in (ObjectType.TABLE, ObjectType.CONSTRAINT):
        for key in extract_references(obj.definition, obj.schema):
            if key not in refs:
                refs.append(key)
    return [key for key in refs if key != obj.key]


def owning_table(obj: SchemaObject) -> str | None:
    """
    Key of the table an index, trigger or constraint belongs to.

    Read from the definition (``ON <table>`` / ``ALTER TABLE <table>``),
    falling back to the first declared dependency.
    """
    pattern = _OWNER_PATTERNS.get(obj.type)
    if pattern is None:
        return None
    match = pattern.search(strip_comments(obj.definition or ""))
    if match:
        return make_key(*split_sql_name(match.group("table"), obj.schema))
    if obj.dependencies:
        return make_key(*split_qualified(obj.dependencies[0], obj.schema))
    return None


# ---------------------------------------------------------------------------
# Structural helpers
# ---------------------------------------------------------------------------

def _folded(node: exp.Expression | None, arg: str = "this") -> str:
    """Name held in ``node.args[arg]``, folded unless it was quoted."""
    if node is None:
        return ""
    ident = node if isinstance(node, exp.Identifier) else node.args.get(arg)
    if isinstance(ident, exp.Identifier):
        return ident.name if ident.args.get("quoted") else ident.name.lower()
    return str(ident or "").lower()


def _identifier_names(nodes: list[exp.Expression]) -> tuple[str, ...]:
    names = []
    for node in nodes:
        ident = node if isinstance(node, exp.Identifier) else node.find(exp.Identifier)
        names.append(_folded(ident) if ident is not None else node.sql(dialect="postgres"))
    return tuple(names)


def _reference_target(reference: exp.Expression, default_schema: str) -> tuple[str | None, tuple[str, ...]]:
    target = reference.this
    columns: tuple[str, ...] = ()
    if isinstance(target, exp.Schema):
        columns = _identifier_names(target.expressions)
        target = target.this
    if not isinstance(target, exp.Table):
        target = reference.find(exp.Table)
    if target is None:
        return None, columns
    return make_key(_folded(target, "db") or default_schema, _folded(target)), columns


def _read_column_def(node: exp.ColumnDef, table: ParsedTable) -> None:
    name = _folded(node)
    kind = node.args.get("kind")
    data_type = normalize_type(kind.sql(dialect="postgres")) if kind is not None else ""
    nullable = True
    default: str | None = None

    for constraint in node.args.get("constraints") or []:
        ckind = constraint.args.get("kind")
        cname = _folded(constraint) or None
        if isinstance(ckind, exp.NotNullColumnConstraint):
            nullable = bool(ckind.args.get("allow_null"))
        elif isinstance(ckind, exp.DefaultColumnConstraint):
            value = ckind.this
            if isinstance(value, exp.Cast):
                value = value.this
            default = normalize_default(value.sql(dialect="postgres")) if value is not None else None
        elif isinstance(ckind, exp.PrimaryKeyColumnConstraint):
            nullable = False
            table.constraints.append(ParsedConstraint(
                kind="primary key",
                definition=normalize_constraint(f"PRIMARY KEY ({quote_identifier(name)})"),
                name=cname,
                columns=(name,),
            ))
        elif isinstance(ckind, exp.UniqueColumnConstraint):
            table.constraints.append(ParsedConstraint(
                kind="unique",
                definition=normalize_constraint(f"UNIQUE ({quote_identifier(name)})"),
                name=cname,
                columns=(name,),
            ))
        elif isinstance(ckind, exp.Reference):
            ref_table, ref_columns = _reference_target(ckind, table.schema)
            table.constraints.append(ParsedConstraint(
                kind="foreign key",
                definition=normalize_constraint(
                    f"FOREIGN KEY ({quote_identifier(name)}) {ckind.sql(dialect='postgres')}"
                ),
                name=cname,
                columns=(name,),
                ref_table=ref_table,
                ref_columns=ref_columns,
            ))
        elif isinstance(ckind, exp.CheckColumnConstraint):
            table.constraints.append(ParsedConstraint(
                kind="check",
                definition=normalize_constraint(ckind.sql(dialect="postgres")),
                name=cname,
            ))

    table.columns.append(ParsedColumn(
        name=name, data_type=data_type, nullable=nullable, default=default,
    ))


def _constraint_from_node(
    node: exp.Expression, table: ParsedTable, name: str | None = None
) -> ParsedConstraint:
    definition = normalize_constraint(node.sql(dialect="postgres"))
    if isinstance(node, exp.PrimaryKey):
        return ParsedConstraint("primary key", definition, name or None,
                                _identifier_names(node.expressions))
    if isinstance(node, exp.ForeignKey):
        reference = node.args.get("reference")
        ref_table, ref_columns = (None, ())
        if reference is not None:
            ref_table, ref_columns = _reference_target(reference, table.schema)
        return ParsedConstraint("foreign key", definition, name or None,
                                _identifier_names(node.expressions), ref_table, ref_columns)
    if isinstance(node, exp.UniqueColumnConstraint):
        target = node.this
        columns = _identifier_names(target.expressions) if isinstance(target, exp.Schema) else ()
        return ParsedConstraint("unique", definition, name or None, columns)
    if isinstance(node, exp.CheckColumnConstraint):
        return ParsedConstraint("check", definition, name or None)
    return ParsedConstraint(definition.split("(")[0].strip(), definition, name or None)


def _references_structural(text: str, default_schema: str) -> list[str]:
    refs: list[str] = []
    for tree in sqlglot.parse(text, read="postgres"):
        if tree is None:
            continue
        if isinstance(tree, exp.Command):
            raise TableParseError("Statement not structurally parsed")
        for reference in tree.find_all(exp.Reference):
            key, _ = _reference_target(reference, default_schema)
            if key and key not in refs:
                refs.append(key)
    return refs


# ---------------------------------------------------------------------------
# Regex helpers
# ---------------------------------------------------------------------------

def _parenthesized_body(text: str, open_index: int) -> str:
    depth = 0
    quote: str | None = None
    for index in range(open_index, len(text)):
        ch = text[index]
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[open_index + 1:index]
    raise TableParseError("Unbalanced parentheses in table definition")


def _references_regex(text: str, default_schema: str) -> list[str]:
    refs: list[str] = []
    for match in _REFERENCES_RE.finditer(text):
        key = make_key(*split_sql_name(match.group("table"), default_schema))
        if key not in refs:
            refs.append(key)
    return refs


def _constraint_from_text(body: str, table: ParsedTable, name: str | None = None) -> ParsedConstraint:
    definition = normalize_constraint(body)
    upper = body.upper().lstrip()
    columns = ()
    ref_table = None
    ref_columns: tuple[str, ...] = ()
    if upper.startswith("PRIMARY"):
        kind = "primary key"
    elif upper.startswith("FOREIGN"):
        kind = "foreign key"
        ref = _REFERENCES_RE.search(body)
        if ref:
            ref_table = make_key(*split_sql_name(ref.group("table"), table.schema))
            ref_columns = _column_list(ref.group("cols"))
    elif upper.startswith("UNIQUE"):
        kind = "unique"
    elif upper.startswith("CHECK"):
        kind = "check"
    else:
        kind = upper.split()[0].lower() if upper else "unknown"
    if kind in ("primary key", "foreign key", "unique"):
        cols = _PAREN_LIST_RE.search(body)
        columns = _column_list(cols.group(1)) if cols else ()
    return ParsedConstraint(kind, definition, name, columns, ref_table, ref_columns)


def _read_column_text(item: str, table: ParsedTable) -> None:
    match = _COLUMN_RE.match(item)
    if not match:
        log.debug("Unrecognised column syntax in %s: %r", table.key, item)
        return
    name = fold_identifier(match.group("name"))
    rest = match.group("rest").strip()
    masked = _mask_literals(rest)

    type_end = _COLUMN_KEYWORD_RE.search(masked)
    type_text = rest[: type_end.start()] if type_end else rest
    clauses = rest[type_end.start():] if type_end else ""
    masked_clauses = masked[type_end.start():] if type_end else ""

    default: str | None = None
    default_match = re.search(r"(?<!SET )\bDEFAULT\s+", masked_clauses, re.IGNORECASE)
    if default_match:
        end = _DEFAULT_END_RE.search(masked_clauses, default_match.end())
        raw = clauses[default_match.end(): end.start() if end else len(clauses)]
        default = normalize_default(raw)

    nullable = not re.search(r"\bNOT\s+NULL\b", masked_clauses, re.IGNORECASE)

    inline = list(_INLINE_CONSTRAINT_RE.finditer(masked_clauses))
    for index, found in enumerate(inline):
        kind = re.sub(r"\s+", " ", found.group("kind").upper())
        segment_end = inline[index + 1].start() if index + 1 < len(inline) else len(clauses)
        segment = clauses[found.start("kind"): segment_end].strip()
        segment = re.split(r"(?<!SET)\s+(?:NOT\s+NULL|NULL|DEFAULT|COLLATE)\b", segment, flags=re.I)[0]
        cname = fold_identifier(found.group("cname")) if found.group("cname") else None
        if kind == "PRIMARY KEY":
            nullable = False
            table.constraints.append(ParsedConstraint(
                "primary key", normalize_constraint(f"PRIMARY KEY ({quote_identifier(name)})"), cname, (name,)))
        elif kind == "UNIQUE":
            table.constraints.append(ParsedConstraint(
                "unique", normalize_constraint(f"UNIQUE ({quote_identifier(name)})"), cname, (name,)))
        elif kind == "REFERENCES":
            ref = _REFERENCES_RE.search(segment)
            ref_table = make_key(*split_sql_name(ref.group("table"), table.schema)) if ref else None
            table.constraints.append(ParsedConstraint(
                "foreign key",
                normalize_constraint(f"FOREIGN KEY ({quote_identifier(name)}) {segment}"),
                cname,
                (name,),
                ref_table,
                _column_list(ref.group("cols")) if ref else (),
            ))
        elif kind == "CHECK":
            table.constraints.append(ParsedConstraint(
                "check", normalize_constraint(segment), cname))

    table.columns.append(ParsedColumn(
        name=name, data_type=normalize_type(type_text), nullable=nullable, default=default,
    ))


def _apply_primary_key_nullability(table: ParsedTable) -> None:
    pk_columns = set(table.primary_key_columns)
    if not pk_columns:
        return
    table.columns = [
        ParsedColumn(c.name, c.data_type, False, c.default) if c.name in pk_columns else c
        for c in table.columns
    ]
