"""
Tests for the Gmail message parser.
Tests header lookup, address extraction, body selection and dates.
"""

from datetime import datetime

from conftest import b64url, gmail_message
from engine.parser import (
    decode_body,
    extract_body,
    extract_email,
    extract_name,
    get_header,
    parse_date_header,
    parse_email_list,
    parse_message,
)


# ============================================================================
# Header Tests
# ============================================================================


class TestHeaders:
    """Tests for header lookup and address parsing."""

    def test_get_header_is_case_sensitive(self):
        headers = [{"name": "Subject", "value": "Hi"}]
        assert get_header(headers, "Subject") == "Hi"
        assert get_header(headers, "subject") is None

    def test_from_with_quoted_name(self):
        value = "\"Jane Doe\" <jane@example.com>"
        assert extract_name(value) == "Jane Doe"
        assert extract_email(value) == "jane@example.com"

    def test_from_without_angle_brackets(self):
        assert extract_email("jane@example.com") == "jane@example.com"
        assert extract_name("jane@example.com") is None

    def test_bare_address_is_kept_verbatim(self):
        assert extract_email("  jane@example.com ") == "  jane@example.com "

    def test_parse_email_list(self):
        value = "A <a@example.com>, b@example.com,  c@example.com "
        assert parse_email_list(value) == ["a@example.com", "b@example.com", "c@example.com"]
        assert parse_email_list(None) == []


# ============================================================================
# Body Tests
# ============================================================================


class TestBody:
    """Tests for body decoding and part selection."""

    def test_decode_unpadded_url_safe_base64(self):
        assert decode_body(b64url("subjects?>>")) == "subjects?>>"

    def test_decode_invalid_data_returns_none(self):
        assert decode_body("not base64 !!!") is None

    def test_prefers_plain_text_part(self):
        assert extract_body(gmail_message("m1", body="plain")) == "plain"

    def test_nested_multipart_html_fallback(self):
        message = {
            "payload": {
                "mimeType": "multipart/mixed",
                "parts": [
                    {
                        "mimeType": "multipart/alternative",
                        "parts": [{"mimeType": "text/html", "body": {"data": b64url("<b>hi</b>")}}],
                    }
                ],
            }
        }
        assert extract_body(message) == "<b>hi</b>"

    def test_top_level_body(self):
        message = {"payload": {"mimeType": "text/plain", "body": {"data": b64url("only body")}}}
        assert extract_body(message) == "only body"


# ============================================================================
# Message Tests
# ============================================================================


class TestParseMessage:
    """Tests for full message parsing."""

    def test_parse_message_attributes(self):
        attrs = parse_message(gmail_message("m1", body="Hello there"), account_id=7, user_id="u")

        assert attrs["account_id"] == 7
        assert attrs["user_id"] == "u"
        assert attrs["gmail_message_id"] == "m1"
        assert attrs["gmail_thread_id"] == "thread-m1"
        assert attrs["from_email"] == "news@shop.example"
        assert attrs["from_name"] == "News Team"
        assert attrs["to_emails"] == ["owner@example.com"]
        assert attrs["cc_emails"] == []
        assert attrs["body"] == "Hello there"
        assert attrs["internal_date"] == 1704110400000

    def test_received_at_prefers_internal_date(self):
        message = gmail_message("m1", internal_date="1704067200000")  # 2024-01-01 00:00 UTC
        attrs = parse_message(message, 1, "u")
        assert attrs["received_at"] == datetime(2024, 1, 1, 0, 0, 0)

    def test_received_at_falls_back_to_date_header(self):
        message = gmail_message("m1")
        del message["internalDate"]
        attrs = parse_message(message, 1, "u")
        assert attrs["received_at"] == datetime(2024, 1, 1, 12, 0, 0)

    def test_unparseable_date_header(self):
        assert parse_date_header("yesterday-ish") is None
