"""
Tests for encoding library state into the URL and reading it back.
"""

import pytest

from api.enums import FilterMode
from api.filters import FilterSelection
from api.url_state import LibraryQuery, build_query_string, parse_filters, parse_mode, parse_page, parse_query


class TestParseFilters:
    def test_json_array(self):
        """Test the normal encoded form."""
        assert parse_filters('["cat-kata","curriculum:cur-white"]') == ["cat-kata", "curriculum:cur-white"]

    @pytest.mark.parametrize("raw", [None, "", "not json", '{"a": 1}', '"cat-kata"', '["ok", 3]'])
    def test_malformed_gives_empty(self, raw):
        """Test that anything but a list of strings is ignored."""
        assert parse_filters(raw) == []

    def test_dedup_and_strip(self):
        """Test that empties and duplicates are dropped."""
        assert parse_filters('[" cat-kata ", "", "cat-kata", "views:10"]') == ["cat-kata", "views:10"]


class TestParseScalars:
    def test_mode(self):
        """Test mode parsing."""
        assert parse_mode("or") == FilterMode.OR
        assert parse_mode("AND") == FilterMode.AND
        assert parse_mode("xor") == FilterMode.AND
        assert parse_mode(None) == FilterMode.AND

    @pytest.mark.parametrize("raw,expected", [("3", 3), (4, 4), ("0", 1), ("-2", 1), ("abc", 1), ("", 1), (None, 1)])
    def test_page(self, raw, expected):
        """Test page parsing with fallback to 1."""
        assert parse_page(raw) == expected


class TestParseQuery:
    def test_query_string(self):
        """Test decoding a full query string."""
        query = parse_query("?filters=%5B%22cat-kata%22%5D&search=front%20kick&mode=OR&page=2")
        assert query.filters == ["cat-kata"]
        assert query.search == "front kick"
        assert query.mode == FilterMode.OR
        assert query.page == 2

    def test_mapping(self):
        """Test decoding an already parsed mapping."""
        query = parse_query({"filters": '["views:10"]', "page": ["5"]})
        assert query.filters == ["views:10"]
        assert query.page == 5
        assert query.mode == FilterMode.AND

    def test_empty(self):
        """Test that nothing gives the defaults."""
        assert parse_query(None).is_default
        assert parse_query("").is_default


class TestBuildQueryString:
    def test_defaults_are_omitted(self):
        """Test that the default state encodes to an empty string."""
        assert build_query_string(LibraryQuery()) == ""

    def test_parameter_order_and_encoding(self):
        """Test the full encoding."""
        query = LibraryQuery(
            filters=["cat-kata", "curriculum:cur-green"],
            search="front kick",
            mode=FilterMode.OR,
            page=3,
        )
        assert build_query_string(query) == (
            "filters=%5B%22cat-kata%22%2C%22curriculum%3Acur-green%22%5D&search=front%20kick&mode=OR&page=3"
        )

    def test_only_page(self):
        """Test that only non-default fields appear."""
        assert build_query_string(LibraryQuery(page=2)) == "page=2"

    def test_round_trip(self):
        """Test that parse_query reverses build_query_string."""
        query = LibraryQuery(filters=["recorded:Spring 2023", "performer:perf-ito"], search="ito & mia", page=4)
        assert parse_query(build_query_string(query)) == query


class TestLibraryQuerySelection:
    def test_selection_conversion(self):
        """Test conversion to and from a filter selection."""
        selection = FilterSelection.from_wire(["cat-kata", "performer:perf-ito"], FilterMode.OR)
        query = LibraryQuery.from_selection(selection, search="kick", page=2)
        assert query.filters == ["cat-kata", "performer:perf-ito"]
        assert query.mode == FilterMode.OR
        assert query.selection() == selection
