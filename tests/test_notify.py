"""Tests for the notification gateway.

Tests cover:
- Message formatting
- Telegram delivery through an injected httpx client
- notify() never raising
- Retry with backoff
- Notifier selection
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest
from tierhunt.notify import (
    LogNotifier,
    NotificationError,
    Notifier,
    Severity,
    TelegramNotifier,
    build_notifier,
    format_message,
    notify_with_retry,
)


def client_factory(body=None, error=None):
    """Factory returning a context-managed mock client."""
    response = MagicMock()
    response.json.return_value = body if body is not None else {"ok": True}
    client = MagicMock()
    if error is not None:
        client.post.side_effect = error
    else:
        client.post.return_value = response
    factory = MagicMock()
    factory.return_value.__enter__.return_value = client
    factory.client = client
    return factory


class FlakyNotifier(Notifier):
    """Fails a fixed number of times before delivering."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def send(self, severity, message):
        self.calls += 1
        if self.calls <= self.failures:
            raise NotificationError("boom")


class TestFormatMessage:
    """Tests for format_message()."""

    def test_layout(self):
        now = datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)
        text = format_message(Severity.CRITICAL, "Authentication failed", now=now)
        assert text.startswith("🚨 **CRITICAL**: Authentication failed")
        assert "*Time*: 2025-01-06 12:00:00 UTC" in text
        assert "*Workflow*: tierhunt" in text

    def test_accepts_string_severity(self):
        assert "**SUCCESS**" in format_message("success", "Created")


class TestTelegramNotifier:
    """Tests for TelegramNotifier."""

    def test_sends_payload(self):
        factory = client_factory()
        notifier = TelegramNotifier("123:abc", "42", timeout=5, client_factory=factory)

        assert notifier.notify(Severity.SUCCESS, "Created a1-flex-sg")

        factory.assert_called_once_with(timeout=5)
        url, = factory.client.post.call_args.args
        payload = factory.client.post.call_args.kwargs["data"]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        assert payload["chat_id"] == "42"
        assert payload["parse_mode"] == "Markdown"
        assert "Created a1-flex-sg" in payload["text"]

    def test_api_error(self):
        factory = client_factory(body={"ok": False, "description": "chat not found"})
        notifier = TelegramNotifier("123:abc", "42", client_factory=factory)
        with pytest.raises(NotificationError, match="chat not found"):
            notifier.send(Severity.INFO, "x")
        assert not notifier.notify(Severity.INFO, "x")

    def test_http_error_hides_token(self):
        error = httpx.ConnectError("connection refused to https://api.telegram.org/bot123:abc/sendMessage")
        notifier = TelegramNotifier("123:abc", "42", client_factory=client_factory(error=error))
        with pytest.raises(NotificationError) as excinfo:
            notifier.send(Severity.INFO, "x")
        assert "123:abc" not in str(excinfo.value)

    def test_invalid_url_wrapped(self):
        error = httpx.InvalidURL("Invalid non-printable ASCII character in URL")
        notifier = TelegramNotifier("123:\nabc", "42", client_factory=client_factory(error=error))
        with pytest.raises(NotificationError):
            notifier.send(Severity.INFO, "x")

    def test_non_object_body(self):
        notifier = TelegramNotifier("123:abc", "42", client_factory=client_factory(body=["ok"]))
        with pytest.raises(NotificationError, match="unexpected response"):
            notifier.send(Severity.INFO, "x")
        assert notifier.notify(Severity.INFO, "x") is False

    def test_notify_never_raises(self):
        error = httpx.ReadTimeout("timed out")
        notifier = TelegramNotifier("123:abc", "42", client_factory=client_factory(error=error))
        assert notifier.notify(Severity.WARNING, "x") is False


class TestNotifyWithRetry:
    """Tests for notify_with_retry()."""

    def test_retries_until_delivered(self):
        notifier = FlakyNotifier(failures=2)
        sleeps = []
        assert notify_with_retry(notifier, "success", "x", backoff_seconds=5, sleep=sleeps.append)
        assert notifier.calls == 3
        assert sleeps == [5, 10]

    def test_gives_up(self):
        notifier = FlakyNotifier(failures=5)
        assert not notify_with_retry(notifier, Severity.ERROR, "x", sleep=lambda s: None)
        assert notifier.calls == 3

    def test_info_and_warning_sent_once(self):
        for severity in (Severity.INFO, Severity.WARNING):
            notifier = FlakyNotifier(failures=5)
            sleeps = []
            assert not notify_with_retry(notifier, severity, "x", sleep=sleeps.append)
            assert notifier.calls == 1
            assert sleeps == []

    def test_no_retry_past_deadline(self):
        notifier = FlakyNotifier(failures=5)
        sleeps = []
        assert not notify_with_retry(
            notifier, Severity.CRITICAL, "x", sleep=sleeps.append, deadline=104.0, clock=lambda: 100.0
        )
        assert notifier.calls == 1
        assert sleeps == []

    def test_unexpected_error_not_raised(self):
        notifier = MagicMock(spec=Notifier)
        notifier.send.side_effect = RuntimeError("channel exploded")
        assert notify_with_retry(notifier, Severity.ERROR, "x", sleep=lambda s: None) is False
        assert notifier.send.call_count == 3


class TestBuildNotifier:
    """Tests for build_notifier()."""

    def test_telegram_with_credentials(self):
        notifier = build_notifier("123:abc", "42", timeout=3)
        assert isinstance(notifier, TelegramNotifier)
        assert notifier.timeout == 3

    @pytest.mark.parametrize("token,chat_id,enabled", [
        (None, "42", True),
        ("123:abc", None, True),
        ("123:abc", "42", False),
    ])
    def test_falls_back_to_log(self, token, chat_id, enabled):
        assert isinstance(build_notifier(token, chat_id, enabled=enabled), LogNotifier)

    def test_log_notifier_records(self):
        notifier = LogNotifier()
        assert notifier.notify("critical", "Authentication failed")
        assert notifier.sent == [(Severity.CRITICAL, "Authentication failed")]
