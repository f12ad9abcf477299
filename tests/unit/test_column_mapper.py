"""Unit tests for column_mapper module - header resolution into a SchemaMap.

Tests cover:
- Required key column detection (case-insensitive, trimmed)
- Optional field aliases in priority order
- rapidfuzz fallback for renamed headers, and its threshold
- Safe cell access for absent columns and short rows

Real-world significance:
- Staff rename and reorder sheet columns without warning
- A missing optional column must never break lookups
- A missing FormID column must fail loudly with the headers seen
"""

from __future__ import annotations

import pytest

from fulfillment import column_mapper
from fulfillment.errors import SchemaError


@pytest.mark.unit
class TestBuildSchemaMap:
    """Unit tests for build_schema_map function."""

    def test_resolves_all_default_fields(self) -> None:
        headers = [
            "Timestamp",
            "FormID",
            "First Name",
            "Last Name",
            "Pickup Window",
            "Additional Services",
            "CountPuppies",
            "CountKittens",
        ]

        schema = column_mapper.build_schema_map(headers)

        assert schema.key_index == 1
        assert schema.index_of("first_name") == 2
        assert schema.index_of("count_kittens") == 7

    def test_key_column_matching_ignores_case_and_whitespace(self) -> None:
        """Verify ' formid ' still identifies the key column.

        Real-world significance:
        - Hand-typed headers pick up stray spaces
        """
        schema = column_mapper.build_schema_map(["Name", " formid "])

        assert schema.key_index == 1

    def test_missing_key_column_lists_headers(self) -> None:
        """Verify a missing FormID column raises SchemaError naming what was seen.

        Real-world significance:
        - Operators need the observed headers to fix the sheet
        """
        with pytest.raises(SchemaError, match="FormID column not found. Headers seen: First Name, Last Name") as exc_info:
            column_mapper.build_schema_map(["First Name", "Last Name"])
        assert exc_info.value.status_code == 500

    def test_missing_optional_columns_resolve_to_none(self) -> None:
        schema = column_mapper.build_schema_map(["FormID"])

        assert schema.index_of("pickup_window") is None
        assert schema.value(["123456789012"], "pickup_window") == ""
        assert schema.value(["123456789012"], "count_puppies", 0) == 0

    def test_historical_alias_used_when_primary_absent(self) -> None:
        """Verify 'Pick-up Window' is accepted for the pickup window.

        Real-world significance:
        - Older form versions used different wording for the same question
        """
        schema = column_mapper.build_schema_map(["FormID", "Pick-up Window"])

        assert schema.index_of("pickup_window") == 1

    def test_first_alias_wins(self) -> None:
        schema = column_mapper.build_schema_map(
            ["FormID", "Preferred Pickup Window", "Pickup Window"]
        )

        assert schema.index_of("pickup_window") == 2

    def test_fuzzy_fallback_matches_renamed_header(self) -> None:
        """Verify a near-identical header is claimed when fuzzy matching is on.

        Real-world significance:
        - 'Last  name ' or 'Last_Name' should not blank every label's name
        """
        headers = ["FormID", "Last_Names"]

        assert column_mapper.build_schema_map(headers).index_of("last_name") is None

        schema = column_mapper.build_schema_map(headers, fuzzy_threshold=90)
        assert schema.index_of("last_name") == 1

    def test_fuzzy_fallback_respects_threshold(self) -> None:
        schema = column_mapper.build_schema_map(["FormID", "Surname"], fuzzy_threshold=90)

        assert schema.index_of("last_name") is None

    def test_fuzzy_fallback_never_claims_taken_columns(self) -> None:
        """Verify the key column cannot be claimed by a fuzzy match."""
        schema = column_mapper.build_schema_map(
            ["FormID"], field_aliases={"form": ["FormIDs"]}, fuzzy_threshold=50
        )

        assert schema.index_of("form") is None

    def test_custom_key_column(self) -> None:
        schema = column_mapper.build_schema_map(["Order", "Client"], key_column="order")

        assert schema.key_index == 0


@pytest.mark.unit
class TestSchemaMapAccess:
    """Unit tests for SchemaMap cell access."""

    def test_short_rows_return_defaults(self) -> None:
        """Verify trimmed rows from the Sheets API do not raise IndexError.

        Real-world significance:
        - The API omits trailing blank cells, so rows are often short
        """
        schema = column_mapper.build_schema_map(["FormID", "First Name", "CountPuppies"])

        assert schema.value(["123456789012"], "first_name") == ""
        assert schema.value(["123456789012"], "count_puppies", 0) == 0
        assert schema.key_value([]) == ""

    def test_key_value_is_trimmed_text(self) -> None:
        schema = column_mapper.build_schema_map(["FormID"])

        assert schema.key_value([123456789012]) == "123456789012"
        assert schema.key_value([" 123456789012 "]) == "123456789012"


@pytest.mark.unit
class TestNormalize:
    """Unit tests for normalize function."""

    def test_normalize(self) -> None:
        assert column_mapper.normalize("  Pick-up_Window  ") == "pick up window"
        assert column_mapper.normalize("Last   Name") == "last name"
