from sessionguard.logging import (
    _add_correlation_id,
    _redact_secrets,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_credential_keys_but_not_event_name():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "refresh_token_rotated",
            "refresh_token": "abcdefghijkl",
            "Authorization": "Bearer xyz123",
            "owner_id": "user-1",
        },
    )
    assert event["event"] == "refresh_token_rotated"
    assert event["refresh_token"] == "ab***kl"
    assert event["Authorization"] == "Be***23"
    assert event["owner_id"] == "user-1"


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-abc")
    assert cid == "req-abc"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-abc"


def test_generated_correlation_id_when_missing():
    cid = set_correlation_id()
    assert len(cid) == 36


def test_sanitize_error_message_strips_sql_and_paths():
    assert "SET revoked" not in sanitize_error_message("UPDATE refresh_token SET revoked = TRUE")
    assert "/srv/" not in sanitize_error_message("cannot open /srv/sessionguard/state")
    assert sanitize_error_message("") == "An error occurred"
