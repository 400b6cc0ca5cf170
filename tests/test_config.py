"""Tests for config.py environment variable parsing helpers."""

import logging
import os
from unittest import mock


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        """Should return default value when environment variable is not set."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("NONEXISTENT_VAR", 42) == 42

    def test_parses_valid_integer(self):
        """Should parse valid integer from environment variable."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "123"}):
            assert get_int_env("TEST_INT", 0) == 123

    def test_returns_default_on_invalid_value(self, caplog):
        """Should return default and log warning when value is not a valid integer."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "abc"}):
            with caplog.at_level(logging.WARNING):
                result = get_int_env("TEST_INT", 42)
                assert result == 42
                assert "Invalid TEST_INT='abc'" in caplog.text
                assert "using default 42" in caplog.text

    def test_min_validation_enforced(self, caplog):
        """Should return default when value is below minimum."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 10, min_val=1) == 10
                assert "below minimum" in caplog.text

    def test_max_validation_enforced(self, caplog):
        """Should return default when value is above maximum."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "70000"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 9000, max_val=65535) == 9000
                assert "above maximum" in caplog.text


class TestGetFloatEnv:
    """Tests for get_float_env helper function."""

    def test_parses_valid_float(self):
        """Should parse a float."""
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "2.5"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 2.5

    def test_rejects_special_values(self, caplog):
        """Should reject inf and nan."""
        from config import get_float_env

        for value in ("inf", "nan"):
            with mock.patch.dict(os.environ, {"TEST_FLOAT": value}):
                with caplog.at_level(logging.WARNING):
                    assert get_float_env("TEST_FLOAT", 30.0) == 30.0
        assert "special float" in caplog.text


class TestGetBoolEnv:
    """Tests for get_bool_env helper function."""

    def test_false_values(self):
        """Should treat false/0/no/off as false."""
        from config import get_bool_env

        for value in ("false", "0", "no", "OFF", ""):
            with mock.patch.dict(os.environ, {"TEST_BOOL": value}):
                assert get_bool_env("TEST_BOOL", True) is False

    def test_true_values_and_default(self):
        """Should treat other values as true, and fall back to default."""
        from config import get_bool_env

        with mock.patch.dict(os.environ, {"TEST_BOOL": "yes"}):
            assert get_bool_env("TEST_BOOL", False) is True
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_bool_env("TEST_BOOL", True) is True


class TestGetIntListEnv:
    """Tests for get_int_list_env helper function."""

    def test_parses_sorted_unique(self):
        """Should parse, de-duplicate and sort."""
        from config import get_int_list_env

        with mock.patch.dict(os.environ, {"TEST_LIST": "48, 12,24,12"}):
            assert get_int_list_env("TEST_LIST", [1]) == [12, 24, 48]

    def test_invalid_falls_back(self, caplog):
        """Should return the default for junk or non-positive entries."""
        from config import get_int_list_env

        with caplog.at_level(logging.WARNING):
            with mock.patch.dict(os.environ, {"TEST_LIST": "12,abc"}):
                assert get_int_list_env("TEST_LIST", [24]) == [24]
            with mock.patch.dict(os.environ, {"TEST_LIST": "0,12"}):
                assert get_int_list_env("TEST_LIST", [24]) == [24]
        assert "Invalid TEST_LIST" in caplog.text


class TestDefaults:
    """Tests for configuration values the library depends on."""

    def test_items_per_page_default_is_a_choice(self):
        """The default page size must be one of the offered choices."""
        from config import DEFAULT_ITEMS_PER_PAGE, ITEMS_PER_PAGE_CHOICES

        assert DEFAULT_ITEMS_PER_PAGE in ITEMS_PER_PAGE_CHOICES

    def test_test_mode_disables_rate_limiting(self):
        """Rate limiting is off by default in test mode."""
        from config import RATE_LIMIT_ENABLED, TEST_MODE

        assert TEST_MODE is True
        assert RATE_LIMIT_ENABLED is False
