"""Tests for credential redaction utility."""


class TestRedactForLogging:

    def test_redacts_sensitive_keys(self):
        from src.utils.redaction import redact_for_logging

        data = {"consumer_key": "ck_123", "site": "shop", "consumer_secret": "cs_456"}
        result = redact_for_logging(data)
        assert result["consumer_key"] == "***REDACTED***"
        assert result["consumer_secret"] == "***REDACTED***"
        assert result["site"] == "shop"

    def test_preserves_non_sensitive(self):
        from src.utils.redaction import redact_for_logging

        data = {"entity_type": "customer", "remote_id": "42", "status": "pending"}
        assert redact_for_logging(data) == data

    def test_does_not_mutate_input(self):
        from src.utils.redaction import redact_for_logging

        data = {"webhook_secret": "whsec"}
        redact_for_logging(data)
        assert data == {"webhook_secret": "whsec"}

    def test_handles_nested_dict(self):
        from src.utils.redaction import redact_for_logging

        data = {"headers": {"Authorization": "Basic abc", "Accept": "json"}}
        result = redact_for_logging(data)
        assert result["headers"]["Authorization"] == "***REDACTED***"
        assert result["headers"]["Accept"] == "json"

    def test_handles_list_of_dicts(self):
        from src.utils.redaction import redact_for_logging

        data = {"deliveries": [{"signature": "sig", "topic": "order.updated"}]}
        result = redact_for_logging(data)
        assert result["deliveries"][0]["signature"] == "***REDACTED***"
        assert result["deliveries"][0]["topic"] == "order.updated"

    def test_case_insensitive_matching(self):
        from src.utils.redaction import redact_for_logging

        data = {"ConsumerSecret": "s1", "ACCESS_TOKEN": "t1", "Name": "shop"}
        result = redact_for_logging(data)
        assert result["ConsumerSecret"] == "***REDACTED***"
        assert result["ACCESS_TOKEN"] == "***REDACTED***"
        assert result["Name"] == "shop"


class TestSanitizeErrorMessage:

    def test_none_passes_through(self):
        from src.utils.redaction import sanitize_error_message

        assert sanitize_error_message(None) is None

    def test_redacts_query_string_credentials(self):
        from src.utils.redaction import sanitize_error_message

        msg = "GET /wp-json/wc/v3/orders?consumer_key=ck_live&consumer_secret=cs_live failed"
        result = sanitize_error_message(msg)
        assert "ck_live" not in result
        assert "cs_live" not in result
        assert "failed" in result

    def test_redacts_authorization_header(self):
        from src.utils.redaction import sanitize_error_message

        result = sanitize_error_message("Authorization: Basic Y2s6Y3M= rejected")
        assert "Y2s6Y3M=" not in result
        assert "rejected" in result

    def test_redacts_json_values(self):
        from src.utils.redaction import sanitize_error_message

        result = sanitize_error_message('{"signature": "abc123", "id": 7}')
        assert "abc123" not in result
        assert '"id": 7' in result

    def test_truncates_long_messages(self):
        from src.utils.redaction import sanitize_error_message

        result = sanitize_error_message("x" * 5000, max_length=100)
        assert len(result) == 100
        assert result.endswith("...")

    def test_plain_message_unchanged(self):
        from src.utils.redaction import sanitize_error_message

        assert sanitize_error_message("404 Not Found") == "404 Not Found"
