"""Unit tests for src/errors/registry.py and the domain exceptions."""

import pytest

from src.errors import (
    ERROR_REGISTRY,
    AuthorizationError,
    ConflictError,
    ErrorCategory,
    NotFoundError,
    ValidationError,
    get_error,
    get_errors_by_category,
    render_error,
)


@pytest.mark.parametrize(
    "code,category",
    [
        ("E-1001", ErrorCategory.TRADE_STATE),
        ("E-1003", ErrorCategory.TRADE_STATE),
        ("E-2001", ErrorCategory.VALIDATION),
        ("E-3001", ErrorCategory.MESSAGING),
        ("E-4001", ErrorCategory.SYSTEM),
        ("E-5002", ErrorCategory.AUTH),
    ],
)
def test_codes_registered_in_their_category(code, category):
    error = get_error(code)
    assert error is not None, f"{code} not found in registry"
    assert error.category == category
    assert error.remediation


def test_codes_match_category_prefix():
    prefixes = {
        ErrorCategory.TRADE_STATE: "E-1",
        ErrorCategory.VALIDATION: "E-2",
        ErrorCategory.MESSAGING: "E-3",
        ErrorCategory.SYSTEM: "E-4",
        ErrorCategory.AUTH: "E-5",
    }
    for code, error in ERROR_REGISTRY.items():
        assert error.code == code
        assert code.startswith(prefixes[error.category])


def test_store_errors_are_retryable():
    assert get_error("E-4001").is_retryable
    assert not get_error("E-1001").is_retryable


def test_get_errors_by_category():
    codes = {e.code for e in get_errors_by_category(ErrorCategory.AUTH)}
    assert codes == {"E-5001", "E-5002", "E-5003"}


def test_render_error_formats_context():
    message = render_error("E-1003", trade_id="t1", hours=24)
    assert "24" in message


def test_render_error_tolerates_missing_context():
    assert render_error("E-1003") == get_error("E-1003").message_template


def test_render_unknown_code():
    assert render_error("E-9999") == "Unknown error: E-9999"


class TestDomainErrors:
    def test_default_codes(self):
        assert NotFoundError("Trade", "t1").code == "E-4004"
        assert ConflictError("x").code == "E-1001"
        assert ValidationError("x").code == "E-2002"
        assert AuthorizationError("x").code == "E-5001"

    def test_not_found_message(self):
        err = NotFoundError("Trade", "t1")
        assert str(err) == "Trade 't1' not found"
        assert err.resource_type == "Trade"

    def test_from_code_renders_template(self):
        err = ConflictError.from_code("E-1002", item_name="Raymond")
        assert err.code == "E-1002"
        assert "Raymond" in str(err)
