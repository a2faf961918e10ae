"""Outcome notifications (email, webhooks). Delivery failures never change the run outcome."""

from __future__ import annotations

import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Callable, List, Optional

import requests
from requests import Session
from requests.exceptions import RequestException

from ci_release.schemas import EmailNotification, NotificationSpec, WebhookNotification

from .errors import NotifyError
from .models import RunReport

logger = logging.getLogger(__name__)

SmtpFactory = Callable[[str], smtplib.SMTP]


def should_notify(when: str) -> bool:
    """Apply an ``on_success``/``on_failure`` setting to an outcome.

    ``change`` behaves like ``always``: no build history is kept between runs.
    """

    return when != "never"


class Notifier:
    def __init__(
        self,
        spec: NotificationSpec,
        *,
        smtp_host: Optional[str] = None,
        sender: Optional[str] = None,
        smtp_factory: SmtpFactory = smtplib.SMTP,
        session: Optional[Session] = None,
        timeout: int = 20,
    ) -> None:
        self.spec = spec
        self.smtp_host = smtp_host if smtp_host is not None else os.getenv("CI_RELEASE_SMTP_HOST")
        self.sender = sender or os.getenv("CI_RELEASE_SMTP_SENDER", "ci-release@localhost")
        self._smtp_factory = smtp_factory
        self._session = session
        self.timeout = timeout

    def notify(self, report: RunReport) -> List[str]:
        """Deliver ``report`` to every configured channel; returns the channels that succeeded."""

        delivered: List[str] = []
        outcome = report.outcome
        channels = (
            ("email", self.spec.email, self._send_email),
            ("webhooks", self.spec.webhooks, self._post_webhooks),
        )
        for name, settings, deliver in channels:
            if settings is None:
                continue
            when = settings.on_success if outcome.is_success else settings.on_failure
            if not should_notify(when):
                logger.debug("Notification channel %s suppressed for %s", name, outcome.kind.value)
                continue
            try:
                if deliver(settings, report):
                    delivered.append(name)
            except NotifyError as exc:
                logger.warning("Notification via %s failed: %s", name, exc)
        return delivered

    def _send_email(self, settings: EmailNotification, report: RunReport) -> bool:
        if not settings.recipients:
            return False
        if not self.smtp_host:
            logger.info("No SMTP host configured; skipping email to %s", ", ".join(settings.recipients))
            return False

        message = EmailMessage()
        message["Subject"] = f"[{report.outcome.kind.value}] {report.event.ref}"
        message["From"] = self.sender
        message["To"] = ", ".join(settings.recipients)
        message.set_content(_render_summary(report))
        try:
            with self._smtp_factory(self.smtp_host) as client:
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotifyError(f"SMTP delivery to {self.smtp_host} failed: {exc}") from exc
        return True

    def _post_webhooks(self, settings: WebhookNotification, report: RunReport) -> bool:
        if not settings.urls:
            return False
        session = self._session or requests.Session()
        payload = report.to_dict()
        failures: List[str] = []
        for url in settings.urls:
            try:
                response = session.post(url, json=payload, timeout=self.timeout)
            except RequestException as exc:
                failures.append(f"{url}: {exc}")
                continue
            if response.status_code >= 400:
                failures.append(f"{url}: HTTP {response.status_code}")
        if failures:
            raise NotifyError("; ".join(failures))
        return True


def _render_summary(report: RunReport) -> str:
    lines = [f"Ref: {report.event.ref} (tag={report.event.is_tag})", f"Outcome: {report.outcome.describe()}", ""]
    for env_report in report.environments:
        lines.append(f"- {env_report.environment.name}: {env_report.outcome.describe()}")
    return "\n".join(lines) + "\n"
