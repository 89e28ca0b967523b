"""Tests for the ordered category -> pattern error classification."""

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from src.clients.woocommerce import RemoteAPIError, RemoteAuthError, RemoteTimeoutError
from src.errors.classification import (
    classify_error,
    classify_message,
    is_connection_error,
    is_constraint_violation,
)
from src.errors.registry import ErrorCategory


class TestClassifyMessage:
    """Message text falls through the ordered pattern table."""

    @pytest.mark.parametrize(
        "message,category",
        [
            ("Request timed out after 30s", ErrorCategory.timeout),
            ("ECONNRESET by peer", ErrorCategory.timeout),
            ("Too Many Requests", ErrorCategory.rate_limit),
            ("401 Unauthorized", ErrorCategory.auth),
            ("Validation failed: missing required field email", ErrorCategory.validation),
            ("getaddrinfo ENOTFOUND shop.example.com", ErrorCategory.network),
            ("UNIQUE constraint failed: customers.email", ErrorCategory.database),
            ("merge could not combine values", ErrorCategory.conflict),
            ("webhook payload malformed", ErrorCategory.webhook),
            ("something odd happened", ErrorCategory.unknown),
        ],
    )
    def test_patterns(self, message, category):
        assert classify_message(message) == category

    def test_first_matching_category_wins(self):
        """Timeout is listed before database, so a connection timeout is a timeout."""
        assert classify_message("database connection timeout") == ErrorCategory.timeout


class TestClassifyError:
    """Typed exceptions are classified before message inspection."""

    def test_string_input(self):
        assert classify_error("rate limit hit") == ErrorCategory.rate_limit

    def test_builtin_timeout(self):
        assert classify_error(TimeoutError()) == ErrorCategory.timeout

    def test_httpx_timeout(self):
        assert classify_error(httpx.ReadTimeout("slow")) == ErrorCategory.timeout

    def test_httpx_network_error(self):
        assert classify_error(httpx.ConnectError("refused")) == ErrorCategory.network

    @pytest.mark.parametrize(
        "status,category",
        [
            (429, ErrorCategory.rate_limit),
            (401, ErrorCategory.auth),
            (403, ErrorCategory.auth),
            (400, ErrorCategory.validation),
            (422, ErrorCategory.validation),
            (504, ErrorCategory.timeout),
        ],
    )
    def test_status_codes(self, status, category):
        assert classify_error(RemoteAPIError("boom", status_code=status)) == category

    def test_remote_auth_error(self):
        assert classify_error(RemoteAuthError("nope", status_code=401)) == ErrorCategory.auth

    def test_remote_timeout_error_by_message(self):
        error = RemoteTimeoutError("Request timed out: GET customers")
        assert classify_error(error) == ErrorCategory.timeout

    def test_server_error_falls_back_to_message(self):
        """A 500 has no status category; its text decides."""
        error = RemoteAPIError("500 Internal Server Error for GET orders", status_code=500)
        assert classify_error(error) == ErrorCategory.unknown

    def test_sqlalchemy_errors(self):
        integrity = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        operational = OperationalError("SELECT", {}, Exception("database is locked"))
        assert classify_error(integrity) == ErrorCategory.database
        assert classify_error(operational) == ErrorCategory.database


class TestDatabaseSubclassification:

    def test_constraint_violation(self):
        assert is_constraint_violation("UNIQUE constraint failed: products.sku")
        assert not is_constraint_violation("database is locked")

    def test_connection_error(self):
        assert is_connection_error("database is locked")
        assert is_connection_error("connection pool exhausted")
        assert not is_connection_error("UNIQUE constraint failed")
