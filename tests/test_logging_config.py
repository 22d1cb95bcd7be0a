from core.logging_config import REDACTED, redact_sensitive


def test_credentials_are_masked():
    event = redact_sensitive(
        None,
        "info",
        {
            "event": "payment_intent_created",
            "intent_id": "pi_1",
            "client_secret": "secret_1",
            "details": {"Authorization": "Bearer sk", "status_code": 401},
        },
    )
    assert event["intent_id"] == "pi_1"
    assert event["client_secret"] == REDACTED
    assert event["details"] == {"Authorization": REDACTED, "status_code": 401}


def test_missing_values_are_left_alone():
    event = redact_sensitive(None, "info", {"event": "x", "api_key": None})
    assert event["api_key"] is None
