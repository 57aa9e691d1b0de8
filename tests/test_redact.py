from __future__ import annotations

from pygp51._redact import mask_token, redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "status": 0,
        "token": "tok123",
        "password": "5ebe2294ecd0e0f08eab7690d2a6ee69",
        "nested": {"p_gp51_token": "tok123", "Authorization": "Bearer jwt"},
        "records": [{"deviceid": "d1", "apikey": "anon"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["status"] == 0
    assert redacted["token"] == "<redacted>"
    assert redacted["password"] == "<redacted>"
    assert redacted["nested"]["p_gp51_token"] == "<redacted>"
    assert redacted["nested"]["Authorization"] == "<redacted>"
    assert redacted["records"][0] == {"deviceid": "d1", "apikey": "<redacted>"}


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_mask_token() -> None:
    assert mask_token("abcdef123") == "abcd…"
    assert mask_token(None) == "<none>"
