from __future__ import annotations

from canvasflow.logging import (
    _add_correlation_id,
    _scrub_credentials,
    clear_correlation_id,
    redact_secrets,
    set_correlation_id,
)


def test_credential_fields_are_masked_and_error_text_scrubbed():
    event = _scrub_credentials(
        None,
        "info",
        {
            "event": "provider_call_failed",
            "api_key": "sk-live-1234567890",
            "error": "Incorrect API key provided: sk-abcdefghijkl",
            "tokens": 42,
        },
    )

    assert event["api_key"] == "***90"
    assert "sk-abcdefghijkl" not in event["error"]
    assert "[redacted]" in event["error"]
    assert event["tokens"] == 42
    assert event["event"] == "provider_call_failed"


def test_short_credentials_are_fully_masked():
    event = _scrub_credentials(None, "info", {"token": "abc"})
    assert event["token"] == "***"


def test_correlation_id_bound_while_task_in_flight():
    set_correlation_id("exec-1")
    try:
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "exec-1"
        explicit = _add_correlation_id(None, "info", {"event": "x", "correlation_id": "other"})
        assert explicit["correlation_id"] == "other"
    finally:
        clear_correlation_id()
    assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})


def test_redact_secrets_handles_gemini_keys():
    text = "GET https://example.googleapis.com/v1/files?key=AIzaSyA1234567890abcdefghijk&alt=media"
    redacted = redact_secrets(text)
    assert "AIzaSyA1234567890abcdefghijk" not in redacted
    assert "alt=media" in redacted
    assert redact_secrets("") == ""
