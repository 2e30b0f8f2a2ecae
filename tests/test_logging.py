"""Tests for log processors and response sanitizers."""

from flowbridge.logging import (
    _redact_credentials,
    get_correlation_id,
    mask_chat_id,
    preview,
    sanitize_error_message,
    sanitize_response_data,
    set_correlation_id,
)


def test_mask_chat_id_keeps_suffix():
    assert mask_chat_id("15551234567@c.us") == "1555*****67@c.us"
    assert mask_chat_id("120363012345678@g.us") == "1203*********78@g.us"
    assert mask_chat_id("bot1") == "bot1"


def test_processor_masks_chat_fields_and_credentials():
    event = _redact_credentials(
        None,
        "info",
        {"event": "message_sent", "to": "15551234567@c.us", "api_key": "abcdef", "count": 3},
    )
    assert event["to"] == "1555*****67@c.us"
    assert event["api_key"] == "ab***"
    assert event["count"] == 3
    assert event["event"] == "message_sent"


def test_preview_truncates():
    assert preview(None) == ""
    assert preview("short") == "short"
    assert preview("x" * 30) == "x" * 20 + "..."


def test_correlation_id_round_trip():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    assert set_correlation_id() != "req-1"


def test_sanitize_error_message():
    message = sanitize_error_message("failed reading /var/lib/flowbridge/x.json token=abc")
    assert "/var/lib" not in message
    assert "abc" not in message
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("e" * 600)) == 500


def test_sanitize_response_data_nested():
    data = {"baseUrl": "https://n8n.example.com", "apiKey": "k", "nested": [{"token": None}]}
    assert sanitize_response_data(data) == {
        "baseUrl": "https://n8n.example.com",
        "apiKey": "[REDACTED]",
        "nested": [{"token": None}],
    }
