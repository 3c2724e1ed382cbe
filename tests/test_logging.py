from tenantauth.logging import (
    _scrub_credentials,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_secrets_are_fully_redacted():
    event = _scrub_credentials(
        None,
        "info",
        {"event": "login_failed", "password": "hunter22", "refresh_token": "eyJabc.def.ghi"},
    )
    assert event["password"] == "[redacted]"
    assert event["refresh_token"] == "[redacted]"
    assert event["event"] == "login_failed"


def test_contact_fields_keep_domain():
    event = _scrub_credentials(None, "info", {"email": "alice@example.com", "user_id": 7})
    assert event["email"] == "a***@example.com"
    assert event["user_id"] == 7


def test_sanitize_strips_tokens_and_hashes():
    message = sanitize_error_message(
        "bad token eyJhbGciOiJIUzI1NiJ9.eyJzdWIiOiIxIn0.sig for $argon2id$v=19$m=8192$abc"
    )
    assert "eyJ" not in message
    assert "$argon2id$" not in message


def test_sanitize_truncates_long_messages():
    assert len(sanitize_error_message("x" * 2000)) == 500


def test_sanitize_empty_message():
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_round_trip():
    cid = set_correlation_id("req-1")
    assert cid == "req-1"
    assert get_correlation_id() == "req-1"
    assert set_correlation_id() != "req-1"
