from identity_core.logging import _redact_secrets, sanitize_error_message


def test_sanitize_masks_dsn_userinfo():
    message = 'connection to "postgresql://identity:hunter2@db:5432/identity" failed'
    cleaned = sanitize_error_message(message)
    assert "hunter2" not in cleaned
    assert "postgresql://[redacted]@db:5432/identity" in cleaned


def test_sanitize_masks_conninfo_password():
    cleaned = sanitize_error_message("invalid dsn: host=db password=hunter2 user=identity")
    assert cleaned == "invalid dsn: host=db password=[redacted] user=identity"


def test_sanitize_handles_empty_and_long_messages():
    assert sanitize_error_message("") == "an error occurred"
    assert len(sanitize_error_message("x" * 2000)) == 500


def test_redaction_masks_codes_and_keeps_safe_keys():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "token_issued",
            "code_verifier": "abcdefghijklmnop",
            "refresh_token": "r-123456789",
            "grant_type": "refresh_token",
            "status_code": 200,
        },
    )
    assert event["code_verifier"] == "ab***op"
    assert event["refresh_token"] == "r-***89"
    assert event["grant_type"] == "refresh_token"
    assert event["status_code"] == 200
