"""
tests/test_tokens_notifier.py -- Password hashing, JWT helpers, and code senders.

The webhook sender is exercised with a MagicMock requests.Session; no
network traffic leaves the test process.
"""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
import requests

from auth.notifier import DeliveryError, LoggingCodeSender, WebhookCodeSender, build_code_sender
from auth.tokens import create_access_token, decode_access_token, hash_password, verify_password
from conftest import make_settings

SECRET = "s" * 40


class TestPasswords:
    def test_hash_roundtrip(self):
        hashed = hash_password("correct-horse-battery")
        assert hashed != "correct-horse-battery"
        assert verify_password("correct-horse-battery", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_malformed_hash_is_a_mismatch(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAccessTokens:
    def test_claims_survive_roundtrip(self):
        token = create_access_token("acct-1", "sess-1", secret_key=SECRET, expire_seconds=60)
        payload = decode_access_token(token, secret_key=SECRET)
        assert payload["sub"] == "acct-1"
        assert payload["sid"] == "sess-1"

    def test_wrong_key_rejected(self):
        token = create_access_token("acct-1", "sess-1", secret_key=SECRET, expire_seconds=60)
        assert decode_access_token(token, secret_key="x" * 40) is None

    def test_garbage_rejected(self):
        assert decode_access_token("not.a.token", secret_key=SECRET) is None


class TestWebhookSender:
    def test_posts_destination_and_body(self):
        session = MagicMock(spec=requests.Session)
        sender = WebhookCodeSender("https://sms.example.com/send", timeout=5.0, session=session)
        sender.send_sms("+15555551212", "123456")

        session.post.assert_called_once()
        _args, kwargs = session.post.call_args
        assert kwargs["json"]["to"] == "+15555551212"
        assert "123456" in kwargs["json"]["body"]
        assert kwargs["timeout"] == 5.0

    def test_http_error_becomes_delivery_error(self):
        session = MagicMock(spec=requests.Session)
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
        sender = WebhookCodeSender("https://sms.example.com/send", session=session)
        with pytest.raises(DeliveryError):
            sender.send_sms("+15555551212", "123456")

    def test_connection_error_becomes_delivery_error(self):
        session = MagicMock(spec=requests.Session)
        session.post.side_effect = requests.ConnectionError("refused")
        sender = WebhookCodeSender("https://sms.example.com/send", session=session)
        with pytest.raises(DeliveryError):
            sender.send_sms("+15555551212", "123456")


class TestLoggingSender:
    def test_code_logged_with_masked_destination(self, caplog):
        with caplog.at_level(logging.INFO, logger="ideabridge.notify"):
            LoggingCodeSender(log_codes=True).send_sms("+15555551212", "654321")
        assert "654321" in caplog.text
        assert "+15555551212" not in caplog.text

    def test_code_omitted_when_disabled(self, caplog):
        with caplog.at_level(logging.INFO, logger="ideabridge.notify"):
            LoggingCodeSender(log_codes=False).send_sms("+15555551212", "654321")
        assert "654321" not in caplog.text


def test_build_code_sender_picks_webhook_when_configured():
    assert isinstance(build_code_sender(make_settings()), LoggingCodeSender)
    sender = build_code_sender(make_settings(sms_webhook_url="https://sms.example.com/send"))
    assert isinstance(sender, WebhookCodeSender)
