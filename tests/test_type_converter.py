"""
tests/test_type_converter.py
-----------------------------
Unit tests for core/type_converter.py.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import pytest

from core.type_converter import (
    ConversionSafety,
    classify_conversion,
    get_base_type,
    get_cast_expression,
    needs_using_clause,
    normalize_type,
)


class TestNormalizeType:
    @pytest.mark.parametrize("raw, expected", [
        ("INT", "integer"),
        ("int4", "integer"),
        ("character varying(255)", "varchar(255)"),
        ("DECIMAL(10, 2)", "numeric(10,2)"),
        ("timestamp with time zone", "timestamptz"),
        ("timestamp without time zone", "timestamp"),
        ("BOOL", "boolean"),
        ("text[]", "text[]"),
        ("", ""),
    ])
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_type(raw) == expected

    def test_base_type_drops_params(self) -> None:
        assert get_base_type("VARCHAR(255)") == "varchar"
        assert get_base_type("double precision") == "double precision"


class TestClassifyConversion:
    # --- Identical types (always SAFE) ---
    @pytest.mark.parametrize("type_", ["integer", "varchar(100)", "text", "timestamptz"])
    def test_identical_is_safe(self, type_: str) -> None:
        assert classify_conversion(type_, type_) == ConversionSafety.SAFE

    def test_alias_spelling_is_safe(self) -> None:
        assert classify_conversion("int4", "INTEGER") == ConversionSafety.SAFE

    # --- Integer widenings / narrowings ---
    def test_integer_to_bigint_safe(self) -> None:
        assert classify_conversion("integer", "bigint") == ConversionSafety.SAFE

    def test_smallint_to_integer_safe(self) -> None:
        assert classify_conversion("smallint", "integer") == ConversionSafety.SAFE

    def test_bigint_to_integer_lossy(self) -> None:
        assert classify_conversion("bigint", "integer") == ConversionSafety.LOSSY

    # --- Numeric ---
    def test_numeric_to_integer_lossy(self) -> None:
        assert classify_conversion("numeric(10,2)", "integer") == ConversionSafety.LOSSY

    def test_real_to_double_safe(self) -> None:
        assert classify_conversion("real", "double precision") == ConversionSafety.SAFE

    def test_double_to_numeric_lossy(self) -> None:
        assert classify_conversion("double precision", "numeric(10,2)") == ConversionSafety.LOSSY

    # --- Strings ---
    def test_varchar_to_text_safe(self) -> None:
        assert classify_conversion("varchar(255)", "text") == ConversionSafety.SAFE

    def test_varchar_widening_safe(self) -> None:
        assert classify_conversion("varchar(50)", "varchar(100)") == ConversionSafety.SAFE

    def test_varchar_narrowing_lossy(self) -> None:
        assert classify_conversion("varchar(255)", "varchar(50)") == ConversionSafety.LOSSY

    def test_text_to_varchar_lossy(self) -> None:
        assert classify_conversion("text", "varchar(100)") == ConversionSafety.LOSSY

    def test_integer_to_text_safe(self) -> None:
        assert classify_conversion("integer", "text") == ConversionSafety.SAFE

    # --- Cross-category ---
    def test_text_to_integer_unsafe(self) -> None:
        assert classify_conversion("text", "integer") == ConversionSafety.UNSAFE

    def test_timestamp_to_bytea_unsafe(self) -> None:
        assert classify_conversion("timestamp", "bytea") == ConversionSafety.UNSAFE

    # --- Date/time ---
    def test_date_to_timestamp_safe(self) -> None:
        assert classify_conversion("date", "timestamp") == ConversionSafety.SAFE

    def test_timestamp_to_timestamptz_safe(self) -> None:
        assert classify_conversion("timestamp", "timestamp with time zone") == ConversionSafety.SAFE

    def test_timestamp_to_date_lossy(self) -> None:
        assert classify_conversion("timestamp", "date") == ConversionSafety.LOSSY

    def test_json_to_jsonb_safe(self) -> None:
        assert classify_conversion("json", "jsonb") == ConversionSafety.SAFE


class TestCastHelpers:
    def test_cast_expression(self) -> None:
        assert get_cast_expression("price", "NUMERIC(10, 2)") == "price::numeric(10,2)"

    def test_using_needed_only_for_unsafe(self) -> None:
        assert needs_using_clause("text", "integer")
        assert not needs_using_clause("integer", "bigint")
        assert not needs_using_clause("varchar(255)", "varchar(10)")
