"""
core/type_converter.py
----------------------
Column type normalisation and conversion safety classification for
PostgreSQL ``ALTER COLUMN ... TYPE`` changes.

Classifies any old→new type pairing as:
    SAFE   – Will succeed without data loss (e.g. INTEGER → BIGINT).
    LOSSY  – Will succeed but may truncate or lose precision
             (e.g. NUMERIC → INTEGER, VARCHAR(255) → VARCHAR(50)).
    UNSAFE – Needs an explicit cast and may fail on existing data
             (e.g. TEXT → INTEGER, TIMESTAMP → BYTEA).

Design Decision:
    Pure functions with no side effects. The classification table encodes
    domain knowledge as data (sets + a simple priority model) rather than a
    deeply nested if/else tree.
"""
from __future__ import annotations

import re
from enum import Enum


class ConversionSafety(str, Enum):
    SAFE = "safe"
    LOSSY = "lossy"
    UNSAFE = "unsafe"


# ---------------------------------------------------------------------------
# Type aliases and category sets
# ---------------------------------------------------------------------------
_TYPE_ALIASES: dict[str, str] = {
    "int": "integer",
    "int4": "integer",
    "int2": "smallint",
    "int8": "bigint",
    "serial4": "serial",
    "serial8": "bigserial",
    "bool": "boolean",
    "character varying": "varchar",
    "character": "char",
    "bpchar": "char",
    "decimal": "numeric",
    "float4": "real",
    "float8": "double precision",
    "double": "double precision",
    "float": "double precision",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "time without time zone": "time",
    "time with time zone": "timetz",
}

_INTEGER_TYPES = frozenset(
    {"smallint", "integer", "bigint", "smallserial", "serial", "bigserial"}
)
_APPROX_NUMERIC = frozenset({"real", "double precision"})
_EXACT_NUMERIC = frozenset({"numeric", "money"})
_STRING_TYPES = frozenset({"char", "varchar", "text", "citext", "name"})
_DATETIME_TYPES = frozenset({"date", "timestamp", "timestamptz", "time", "timetz", "interval"})
_BINARY_TYPES = frozenset({"bytea", "bit", "varbit", "bit varying"})
_JSON_TYPES = frozenset({"json", "jsonb"})
_BOOLEAN_TYPES = frozenset({"boolean"})

_INTEGER_WIDTH = {
    "smallint": 2, "smallserial": 2,
    "integer": 4, "serial": 4,
    "bigint": 8, "bigserial": 8,
}

_CAT_MAP = (
    ("int",    _INTEGER_TYPES),
    ("approx", _APPROX_NUMERIC),
    ("exact",  _EXACT_NUMERIC),
    ("str",    _STRING_TYPES),
    ("dt",     _DATETIME_TYPES),
    ("bin",    _BINARY_TYPES),
    ("json",   _JSON_TYPES),
    ("bool",   _BOOLEAN_TYPES),
)

_PARAMS_RE = re.compile(r"\(([^)]*)\)")


def normalize_type(type_string: str) -> str:
    """
    Canonical spelling of a PostgreSQL column type.

    Lower-cases, collapses whitespace, resolves aliases and removes spaces
    inside the parameter list. Array suffixes are preserved.

    Examples::

        normalize_type("INT")                          →  "integer"
        normalize_type("character varying(255)")       →  "varchar(255)"
        normalize_type("DECIMAL(10, 2)")               →  "numeric(10,2)"
        normalize_type("timestamp with time zone")     →  "timestamptz"
    """
    if not type_string:
        return ""
    text = re.sub(r"\s+", " ", type_string.strip().lower())
    array_suffix = ""
    while text.endswith("[]"):
        array_suffix += "[]"
        text = text[:-2].rstrip()

    params = ""
    match = _PARAMS_RE.search(text)
    if match:
        params = "(" + match.group(1).replace(" ", "") + ")"
        text = (text[: match.start()] + text[match.end():]).strip()
        text = re.sub(r"\s+", " ", text)

    base = _TYPE_ALIASES.get(text, text)
    return f"{base}{params}{array_suffix}"


def get_base_type(dtype_string: str) -> str:
    """
    Extract the normalised base type from a type definition string.

    Examples::

        get_base_type("VARCHAR(255)")                 →  "varchar"
        get_base_type("double precision")             →  "double precision"
        get_base_type("")                             →  ""
    """
    normalized = normalize_type(dtype_string)
    return _PARAMS_RE.sub("", normalized).replace("[]", "").strip()


def _type_params(dtype_string: str) -> list[int]:
    match = _PARAMS_RE.search(normalize_type(dtype_string))
    if not match:
        return []
    values = []
    for part in match.group(1).split(","):
        if part.strip().isdigit():
            values.append(int(part))
    return values


def _category(base_type: str) -> str:
    for cat, types in _CAT_MAP:
        if base_type in types:
            return cat
    return "other"


def _string_narrowing(old_type: str, new_type: str) -> bool:
    """True if a bounded string type gets a smaller bound."""
    old_params = _type_params(old_type)
    new_params = _type_params(new_type)
    if not new_params:
        return False
    if get_base_type(old_type) == "text" or not old_params:
        return True
    return new_params[0] < old_params[0]


def classify_conversion(old_type: str, new_type: str) -> ConversionSafety:
    """
    Classify the safety of converting *old_type* data into *new_type*.

    Args:
        old_type: Existing column type.
        new_type: Desired column type.

    Returns:
        :class:`ConversionSafety` enum value.

    Examples::

        classify_conversion("integer", "bigint")        → SAFE
        classify_conversion("numeric(10,2)", "integer") → LOSSY
        classify_conversion("text", "integer")          → UNSAFE
        classify_conversion("varchar(255)", "text")     → SAFE
    """
    if normalize_type(old_type) == normalize_type(new_type):
        return ConversionSafety.SAFE

    old_base = get_base_type(old_type)
    new_base = get_base_type(new_type)
    old_cat = _category(old_base)
    new_cat = _category(new_base)

    # --- String → String ---
    if old_cat == "str" and new_cat == "str":
        if _string_narrowing(old_type, new_type):
            return ConversionSafety.LOSSY
        return ConversionSafety.SAFE

    # --- Anything → String ---
    if new_cat == "str":
        if _type_params(new_type):
            return ConversionSafety.LOSSY
        return ConversionSafety.LOSSY if old_cat == "bin" else ConversionSafety.SAFE

    # --- Numeric → Numeric ---
    if old_cat in ("int", "approx", "exact") and new_cat in ("int", "approx", "exact"):
        if new_cat == "int":
            if old_cat != "int":
                return ConversionSafety.LOSSY
            narrower = _INTEGER_WIDTH.get(new_base, 8) < _INTEGER_WIDTH.get(old_base, 8)
            return ConversionSafety.LOSSY if narrower else ConversionSafety.SAFE
        if new_cat == "approx":
            if old_base == "real" and new_base == "double precision":
                return ConversionSafety.SAFE
            return ConversionSafety.LOSSY
        if new_cat == "exact":
            if old_cat == "approx" or _type_params(new_type):
                return ConversionSafety.LOSSY
            return ConversionSafety.SAFE

    # --- DateTime → DateTime ---
    if old_cat == "dt" and new_cat == "dt":
        if old_base == "date" and new_base in ("timestamp", "timestamptz"):
            return ConversionSafety.SAFE
        if {old_base, new_base} == {"timestamp", "timestamptz"}:
            return ConversionSafety.SAFE
        return ConversionSafety.LOSSY

    # --- JSON ↔ JSON ---
    if old_cat == "json" and new_cat == "json":
        return ConversionSafety.SAFE

    # --- Binary → Binary ---
    if old_cat == "bin" and new_cat == "bin":
        return ConversionSafety.LOSSY

    return ConversionSafety.UNSAFE


def get_cast_expression(column_expr: str, target_type: str) -> str:
    """
    Wrap *column_expr* in a PostgreSQL cast to *target_type*.

    Used as the ``USING`` expression of ``ALTER COLUMN ... TYPE``.

    Example::

        get_cast_expression("price", "NUMERIC(10, 2)")  →  "price::numeric(10,2)"
    """
    return f"{column_expr}::{normalize_type(target_type)}"


def needs_using_clause(old_type: str, new_type: str) -> bool:
    """Return True if PostgreSQL needs an explicit ``USING`` cast for the change."""
    return classify_conversion(old_type, new_type) is ConversionSafety.UNSAFE
