"""
Notification gateway.

notify(severity, message) is the whole contract. Delivery failures are logged
and reported through the return value, never raised: a lost notification must
not change the outcome of a provisioning run.

Severities:
    critical  authentication failures needing immediate attention
    error     configuration and unclassified failures
    warning   exhausted transient errors, budget timeouts
    info      expected capacity exhaustion
    success   an instance was created
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import httpx

from tierhunt.retry import retry_with_backoff
from tierhunt.utils import utcnow

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_TIMEOUT = 10.0
DEFAULT_WORKFLOW_NAME = "tierhunt"


class Severity(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


SEVERITY_EMOJI = {
    Severity.SUCCESS: "✅",
    Severity.INFO: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.ERROR: "❌",
    Severity.CRITICAL: "🚨",
}


# Routine severities get a single delivery try.
SINGLE_TRY_SEVERITIES = frozenset({Severity.INFO, Severity.WARNING})


class NotificationError(Exception):
    """Raised by a single delivery try; caught by notify()."""
    pass


def format_message(
    severity: Severity,
    message: str,
    now: Optional[datetime] = None,
    workflow: str = DEFAULT_WORKFLOW_NAME,
) -> str:
    """Markdown message with severity prefix and timestamp footer."""
    now = now or utcnow()
    severity = Severity(severity)
    return (
        f"{SEVERITY_EMOJI[severity]} **{severity.value.upper()}**: {message}\n\n"
        f"*Time*: {now.strftime('%Y-%m-%d %H:%M:%S')} UTC\n"
        f"*Workflow*: {workflow}"
    )


class Notifier(ABC):
    """Abstract notification channel."""

    @abstractmethod
    def send(self, severity: Severity, message: str) -> None:
        """
        Deliver one message.

        Raises:
            NotificationError: If delivery failed
        """
        pass

    def notify(self, severity: Severity | str, message: str) -> bool:
        """
        Deliver a message, logging instead of raising on failure.

        Returns:
            True if the message was delivered
        """
        try:
            self.send(Severity(severity), message)
            return True
        except Exception as e:
            logger.warning(
                f"Failed to send {severity} notification: {e}",
                extra={"event": "notification_failed"},
            )
            return False


class LogNotifier(Notifier):
    """Writes notifications to the log. Used when no channel is configured."""

    LEVELS = {
        Severity.SUCCESS: logging.INFO,
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.ERROR: logging.ERROR,
        Severity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self):
        self.sent: list[tuple[Severity, str]] = []

    def send(self, severity: Severity, message: str) -> None:
        self.sent.append((severity, message))
        logger.log(
            self.LEVELS[severity],
            f"[{severity.value}] {message}",
            extra={"event": "notification", "metadata": {"severity": severity.value}},
        )


class TelegramNotifier(Notifier):
    """
    Sends notifications through the Telegram Bot API.

    Args:
        token: Bot token
        chat_id: Recipient chat / user id
        timeout: HTTP timeout in seconds
        workflow: Name shown in the message footer
        client_factory: Builds the httpx.Client (injectable for tests)
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        timeout: float = DEFAULT_TIMEOUT,
        workflow: str = DEFAULT_WORKFLOW_NAME,
        api_base: str = TELEGRAM_API_BASE,
        client_factory: Callable[..., httpx.Client] = httpx.Client,
    ):
        self.token = token
        self.chat_id = chat_id
        self.timeout = timeout
        self.workflow = workflow
        self.api_base = api_base.rstrip("/")
        self.client_factory = client_factory

    @property
    def url(self) -> str:
        return f"{self.api_base}/bot{self.token}/sendMessage"

    def send(self, severity: Severity, message: str) -> None:
        payload = {
            "chat_id": self.chat_id,
            "parse_mode": "Markdown",
            "text": format_message(severity, message, workflow=self.workflow),
        }
        try:
            with self.client_factory(timeout=self.timeout) as client:
                resp = client.post(self.url, data=payload)
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # Never echo the URL: it embeds the bot token.
            raise NotificationError(f"{type(e).__name__} from Telegram API") from e
        except ValueError as e:
            raise NotificationError("Telegram API returned a non-JSON response") from e

        if not isinstance(body, dict):
            raise NotificationError("Telegram API returned an unexpected response")
        if not body.get("ok"):
            raise NotificationError(f"Telegram API error: {body.get('description', 'unknown')}")

        logger.debug(f"Telegram {severity.value} notification sent")


def notify_with_retry(
    notifier: Notifier,
    severity: Severity | str,
    message: str,
    max_attempts: Optional[int] = None,
    backoff_seconds: float = 5,
    sleep: Optional[Callable[[float], None]] = None,
    deadline: Optional[float] = None,
    clock: Optional[Callable[[], float]] = None,
) -> bool:
    """
    Deliver a notification, retrying failed tries with backoff.

    Info and warning messages get one try unless max_attempts says otherwise;
    other severities get three. No retry starts past `deadline`.

    Returns:
        True if the message was delivered
    """
    severity = Severity(severity)
    if max_attempts is None:
        max_attempts = 1 if severity in SINGLE_TRY_SEVERITIES else 3
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    if clock is not None:
        kwargs["clock"] = clock
    try:
        retry_with_backoff(
            lambda: notifier.send(severity, message),
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            logger=logger,
            deadline=deadline,
            **kwargs,
        )
        return True
    except Exception as e:
        logger.error(
            f"Failed to send {severity.value} notification: {e}",
            extra={"event": "notification_failed"},
        )
        return False


def build_notifier(
    token: Optional[str],
    chat_id: Optional[str],
    enabled: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
) -> Notifier:
    """Telegram notifier when credentials are present, otherwise a LogNotifier."""
    if enabled and token and chat_id:
        return TelegramNotifier(token, chat_id, timeout=timeout)
    if enabled:
        logger.info("Telegram credentials not configured, notifications go to the log")
    return LogNotifier()
