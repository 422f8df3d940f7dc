from arenaauth.logging import (
    _add_correlation_id,
    _redact_pii,
    sanitize_error_message,
    set_correlation_id,
)


def test_session_tokens_and_contacts_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "session_created",
            "session_token": "abcdef0123456789",
            "email": "player@example.com",
            "user_id": "u1",
        },
    )

    assert event["session_token"] == "ab***89"
    assert event["email"] == "pl***om"
    assert event["user_id"] == "u1"


def test_correlation_id_added():
    set_correlation_id("req-9")

    event = _add_correlation_id(None, "info", {"event": "x"})

    assert event["correlation_id"] == "req-9"


def test_error_message_sanitized():
    message = sanitize_error_message("password=hunter2 at /srv/arenaauth/state")

    assert "hunter2" not in message
    assert "/srv/arenaauth" not in message


def test_empty_error_message():
    assert sanitize_error_message("") == "An error occurred"


def test_short_and_non_string_values_kept():
    event = _redact_pii(None, "info", {"token_count": 3, "email": "a@b"})

    assert event == {"token_count": 3, "email": "a@b"}
