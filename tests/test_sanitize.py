"""Tests for schemata.sanitize — the identifier gate."""

import pytest

from schemata.errors import SchemataError, ValidationError
from schemata.sanitize import (
    json_path, quote, validate_alias, validate_field_name, validate_model_name,
    validate_table_prefix,
)

pytestmark = pytest.mark.unit


class TestIdentifierGate:

    @pytest.mark.parametrize("name", ["User", "user_profile", "_private", "A1", "x" * 64])
    def test_accepts_and_returns_unchanged(self, name):
        assert validate_model_name(name) == name
        assert validate_field_name(name) == name
        assert validate_alias(name) == name

    @pytest.mark.parametrize("name", [
        "", "1user", "user-name", "user name", 'us"er', "x; DROP TABLE t",
        "x" * 65, "sqlite_master", "SQLITE_stat1", None, 42,
    ])
    def test_rejects(self, name):
        with pytest.raises(ValidationError):
            validate_model_name(name)
        with pytest.raises(ValidationError):
            validate_field_name(name)

    def test_validation_error_is_value_error(self):
        """Callers catching ValueError keep working."""
        with pytest.raises(ValueError):
            validate_field_name("bad name")
        assert issubclass(ValidationError, SchemataError)

    def test_empty_prefix_allowed(self):
        assert validate_table_prefix("") == ""
        assert validate_table_prefix("records_") == "records_"
        with pytest.raises(ValidationError):
            validate_table_prefix("re-cords")


class TestQuote:

    def test_quotes_safe_identifier(self):
        assert quote("records_User") == '"records_User"'

    def test_refuses_unsafe(self):
        with pytest.raises(ValidationError):
            quote('a"b')
        with pytest.raises(ValidationError):
            quote("a b")

    def test_long_composite_names_still_quoted(self):
        """Index names are table + field, so may exceed the model-name limit."""
        name = "idx_records_" + "x" * 64 + "_field"
        assert quote(name) == f'"{name}"'

    def test_json_path(self):
        assert json_path("age") == "'$.age'"
        with pytest.raises(ValidationError):
            json_path("a'b")
