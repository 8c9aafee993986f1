"""Outbound notifications (verification links, reset links, OTP codes).

The workflow engine only ever calls ``NotificationDispatcher.enqueue`` with a
recipient, a template kind and a payload. Rendering and delivery belong to the
sink. Delivery runs after the workflow commits and never decides the outcome
of the workflow; failures are logged at ERROR for operators.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from authgate.config import get_settings

logger = logging.getLogger("authgate")

VERIFY_EMAIL = "verify-email"
RESET_PASSWORD = "reset-password"
CHANGE_EMAIL = "change-email"
DELETE_ACCOUNT = "delete-account"
TWO_FACTOR_OTP = "two-factor-otp"

SUBJECTS = {
    VERIFY_EMAIL: "Verify your email address",
    RESET_PASSWORD: "Reset your password",
    CHANGE_EMAIL: "Confirm your new email address",
    DELETE_ACCOUNT: "Confirm account deletion",
    TWO_FACTOR_OTP: "Your 2FA verification code",
}

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"


class NotificationSink(Protocol):
    """Anything that can deliver a templated message."""

    def send(self, recipient: str, template: str, payload: dict[str, Any]) -> bool: ...


@dataclass
class EmailMessage:
    recipient: str
    subject: str
    html: str


class EmailRenderer:
    """Renders email subjects and bodies from Jinja2 templates."""

    def __init__(self, template_dir: Path = TEMPLATE_DIR) -> None:
        self.env = Environment(loader=FileSystemLoader(str(template_dir)), autoescape=select_autoescape(["html"]))

    def render(self, recipient: str, template: str, payload: dict[str, Any]) -> EmailMessage:
        settings = get_settings()
        html = self.env.get_template(f"{template}.html").render(app_name=settings.APP_NAME, **payload)
        return EmailMessage(recipient=recipient, subject=SUBJECTS.get(template, settings.APP_NAME), html=html)


class LoggingNotificationSink:
    """Writes notifications to the service log. Development default."""

    def send(self, recipient: str, template: str, payload: dict[str, Any]) -> bool:
        detail = payload.get("url") or payload.get("otp") or ""
        logger.info("NOTIFICATION %s -> %s: %s", template, recipient, detail)
        return True


class ResendNotificationSink:
    """Delivers rendered emails through the Resend HTTP API."""

    API_URL = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: str,
        sender: str,
        renderer: EmailRenderer | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.renderer = renderer or EmailRenderer()
        self.client = client or httpx.Client(timeout=10.0)

    def send(self, recipient: str, template: str, payload: dict[str, Any]) -> bool:
        message = self.renderer.render(recipient, template, payload)
        response = self.client.post(
            self.API_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"from": self.sender, "to": [message.recipient], "subject": message.subject, "html": message.html},
        )
        if response.status_code >= 400:
            logger.error(
                "Resend rejected %s email to %s: %d %s", template, recipient, response.status_code, response.text
            )
            return False
        return True


@dataclass
class NotificationDispatcher:
    """Sends through a sink, inline or on a worker pool, and reports failures."""

    sink: NotificationSink
    run_async: bool = False
    _executor: ThreadPoolExecutor | None = field(default=None, init=False, repr=False)

    def enqueue(self, recipient: str, template: str, payload: dict[str, Any]) -> None:
        if self.run_async:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")
            self._executor.submit(self.deliver, recipient, template, payload)
        else:
            self.deliver(recipient, template, payload)

    def deliver(self, recipient: str, template: str, payload: dict[str, Any]) -> bool:
        try:
            delivered = self.sink.send(recipient, template, payload)
        except Exception:
            logger.exception("Notification %s to %s failed", template, recipient)
            return False
        if not delivered:
            logger.error("Notification %s to %s was not delivered", template, recipient)
        return delivered

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def build_notification_sink() -> NotificationSink:
    """Create the sink selected by NOTIFICATION_BACKEND."""
    settings = get_settings()
    if settings.NOTIFICATION_BACKEND == "resend":
        return ResendNotificationSink(api_key=settings.RESEND_API_KEY, sender=settings.MAILER_SENDER)
    return LoggingNotificationSink()
