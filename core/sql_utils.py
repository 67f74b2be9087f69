"""
core/sql_utils.py
-----------------
Text-level SQL helpers shared by the parser, comparator, generator and
executor: normalisation, statement splitting and identifier quoting.

All helpers are quote-aware: single-quoted literals and double-quoted
identifiers are never case-folded or split.
"""
from __future__ import annotations

import re

import sqlglot
from sqlglot.errors import SqlglotError

_QUOTED_RE = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")")
_WS_RE = re.compile(r"\s+")
_LINE_COMMENT_RE = re.compile(r"--[^\n]*")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_PLAIN_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_$]*$")


def lower_outside_quotes(text: str) -> str:
    """Lower-case *text* except inside quoted literals and identifiers."""
    parts = _QUOTED_RE.split(text)
    return "".join(
        part if index % 2 else part.lower() for index, part in enumerate(parts)
    )


def normalize_definition(text: str | None) -> str:
    """
    Canonical text form used for lenient definition comparison.

    Collapses whitespace, strips trailing semicolons and folds case outside
    quotes.

    Examples::

        normalize_definition("SELECT  id\\nFROM users;")  →  "select id from users"
    """
    if not text:
        return ""
    collapsed = _WS_RE.sub(" ", text).strip()
    collapsed = collapsed.rstrip(";").strip()
    return lower_outside_quotes(collapsed)


def canonical_sql(text: str | None) -> str:
    """
    Re-render *text* through sqlglot's PostgreSQL dialect, then normalise.

    Falls back to :func:`normalize_definition` when sqlglot cannot parse it.
    """
    if not text or not text.strip():
        return ""
    try:
        rendered = "; ".join(
            tree.sql(dialect="postgres")
            for tree in sqlglot.parse(text, read="postgres")
            if tree is not None
        )
    except SqlglotError:
        return normalize_definition(text)
    return normalize_definition(rendered) if rendered else normalize_definition(text)


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments outside quoted text."""
    parts = _QUOTED_RE.split(sql)
    cleaned = []
    for index, part in enumerate(parts):
        if index % 2:
            cleaned.append(part)
            continue
        part = _BLOCK_COMMENT_RE.sub(" ", part)
        cleaned.append(_LINE_COMMENT_RE.sub("", part))
    return "".join(cleaned)


def has_executable_sql(sql: str | None) -> bool:
    """True when *sql* contains anything besides comments and semicolons."""
    if not sql:
        return False
    return bool(strip_comments(sql).replace(";", "").strip())


def split_statements(sql: str) -> list[str]:
    """
    Split a script on top-level semicolons.

    Quoted text, parentheses and ``$$`` bodies are respected so function
    definitions survive intact. Empty statements are dropped.
    """
    statements: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    dollar: str | None = None
    i = 0
    while i < len(sql):
        ch = sql[i]
        if dollar:
            if sql.startswith(dollar, i):
                current.append(dollar)
                i += len(dollar)
                dollar = None
                continue
        elif quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "$":
            match = re.match(r"\$[A-Za-z_0-9]*\$", sql[i:])
            if match:
                dollar = match.group(0)
                current.append(dollar)
                i += len(dollar)
                continue
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        elif ch == ";" and depth == 0:
            statement = "".join(current).strip()
            if has_executable_sql(statement):
                statements.append(statement)
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    tail = "".join(current).strip()
    if has_executable_sql(tail):
        statements.append(tail)
    return statements


def split_top_level(text: str, separator: str = ",") -> list[str]:
    """Split *text* on *separator* at parenthesis depth 0, outside quotes."""
    items: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == separator and depth == 0:
            items.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail:
        items.append(tail)
    return [item for item in items if item]


def unquote_identifier(identifier: str) -> str:
    identifier = identifier.strip()
    if len(identifier) >= 2 and identifier[0] == identifier[-1] == '"':
        return identifier[1:-1].replace('""', '"')
    return identifier


def fold_identifier(identifier: str) -> str:
    """
    Resolve *identifier* the way PostgreSQL does.

    Quoted names keep their case; unquoted names are folded to lower case.

    Examples::

        fold_identifier("ID")     →  "id"
        fold_identifier('"ID"')   →  "ID"
    """
    identifier = identifier.strip()
    if len(identifier) >= 2 and identifier[0] == identifier[-1] == '"':
        return unquote_identifier(identifier)
    return identifier.lower()


def quote_identifier(identifier: str) -> str:
    """Double-quote *identifier* unless it is a plain lower-case name."""
    if _PLAIN_IDENT_RE.match(identifier):
        return identifier
    return '"' + identifier.replace('"', '""') + '"'


def qualified_name(schema: str, name: str) -> str:
    """
    Render ``schema.name`` with quoting applied per part.

    Examples::

        qualified_name("public", "users")     →  "public.users"
        qualified_name("Sales", "Orders")     →  '"Sales"."Orders"'
    """
    if not schema:
        return quote_identifier(name)
    return f"{quote_identifier(schema)}.{quote_identifier(name)}"


def split_qualified(reference: str, default_schema: str) -> tuple[str, str]:
    """Split ``[schema.]name`` (optionally quoted) into its two parts."""
    parts = [unquote_identifier(p) for p in split_top_level(reference, ".")]
    if len(parts) >= 2:
        return parts[-2], parts[-1]
    return default_schema, parts[0] if parts else ""


def split_sql_name(reference: str, default_schema: str) -> tuple[str, str]:
    """Like :func:`split_qualified` for names written in SQL text: unquoted parts are folded."""
    parts = [fold_identifier(p) for p in split_top_level(reference, ".")]
    if len(parts) >= 2:
        return parts[-2], parts[-1]
    return default_schema, parts[0] if parts else ""


IDENTIFIER_PATTERN = r'(?:"(?:[^"]|"")+"|[\w$]+)'
QUALIFIED_PATTERN = rf"{IDENTIFIER_PATTERN}(?:\s*\.\s*{IDENTIFIER_PATTERN})?"


def terminate(sql: str) -> str:
    """Ensure *sql* ends with a semicolon (unless its last line is a comment)."""
    text = sql.rstrip()
    if not text or text.endswith(";"):
        return text
    last_line = text.splitlines()[-1].lstrip()
    if last_line.startswith("--"):
        return text
    return text + ";"


def as_comment(text: str) -> str:
    """Prefix every line of *text* with ``-- ``."""
    return "\n".join(f"-- {line}".rstrip() for line in text.strip().splitlines())
