"""
Tests for log context and redaction processors.
"""

from unittest.mock import patch

from dialer.config import settings
from dialer.utils.logging import (
    add_context_processor,
    call_context,
    call_id_var,
    censor_sensitive_data,
)


def test_call_context_tags_and_resets():
    with call_context("ref_1"):
        assert add_context_processor(None, "info", {})["call_id"] == "ref_1"

    assert call_id_var.get() is None
    assert "call_id" not in add_context_processor(None, "info", {})


def test_explicit_call_id_wins_over_context():
    with call_context("ref_1"):
        event = add_context_processor(None, "info", {"call_id": "99"})

    assert event["call_id"] == "99"


def test_tokens_are_masked_and_payloads_redacted():
    with patch.object(settings, "log_call_payloads", False):
        event = censor_sensitive_data(None, "info", {
            "token": "abcdefghijkl",
            "password": "pw",
            "payload": {"bpartyno": "+15550001"},
        })

    assert event["token"] == "abcd...ijkl"
    assert event["password"] == "****"
    assert event["payload"] == "[REDACTED]"
