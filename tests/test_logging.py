from warden.logging import (
    _add_correlation_id,
    _redact_credentials,
    get_correlation_id,
    set_correlation_id,
)


def test_credentials_are_masked():
    event = _redact_credentials(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "Secret123",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9",
            "user_email": "alice@example.com",
            "phone": "1234",
            "user_id": 7,
        },
    )

    assert event["password"] == "Se***23"
    assert event["refresh_token"] == "ey***J9"
    assert event["user_email"] == "al***om"
    assert event["phone"] == "1234"
    assert event["user_id"] == 7
    assert event["event"] == "login_failed"


def test_correlation_id_bound_into_events():
    cid = set_correlation_id("req-42")
    assert cid == "req-42"
    assert get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"


def test_correlation_id_generated():
    cid = set_correlation_id()
    assert cid
    assert get_correlation_id() == cid
