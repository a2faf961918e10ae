from __future__ import annotations

import smtplib
from typing import Any, Dict, List
from unittest import mock

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError

from ci_release.schemas import EmailNotification, NotificationSpec, WebhookNotification
from ci_release_pipeline.models import BuildEnvironment, EnvironmentReport, PipelineOutcome, RunEvent, RunReport
from ci_release_pipeline.notify import Notifier, should_notify


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class FakeSession:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.posts: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.posts.append({"url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _report(outcome: PipelineOutcome) -> RunReport:
    environment = BuildEnvironment(
        index=0,
        os="linux",
        arch="x86_64",
        toolchain="stable",
        target="x86_64-unknown-linux-gnu",
        variables={},
    )
    return RunReport(
        event=RunEvent(ref="v1.2.3", is_tag=True),
        environments=[EnvironmentReport(environment=environment, outcome=outcome)],
    )


def _smtp_factory():
    client = mock.MagicMock()
    factory = mock.Mock(return_value=client)
    client.__enter__.return_value = client
    return factory, client


@pytest.mark.parametrize("when, expected", [("always", True), ("change", True), ("never", False)])
def test_should_notify(when: str, expected: bool) -> None:
    assert should_notify(when) is expected


def test_email_sent_on_failure() -> None:
    factory, client = _smtp_factory()
    spec = NotificationSpec(email=EmailNotification(recipients=["dev@example.com"], on_success="never"))
    notifier = Notifier(spec, smtp_host="smtp.example.com", smtp_factory=factory)

    delivered = notifier.notify(_report(PipelineOutcome.failed("install", 1)))

    assert delivered == ["email"]
    factory.assert_called_once_with("smtp.example.com")
    message = client.send_message.call_args.args[0]
    assert message["Subject"] == "[failed] v1.2.3"
    assert message["To"] == "dev@example.com"
    assert "failed in stage 'install' (exit 1)" in message.get_content()


def test_email_suppressed_on_success_when_never() -> None:
    factory, client = _smtp_factory()
    spec = NotificationSpec(email=EmailNotification(recipients=["dev@example.com"], on_success="never"))
    notifier = Notifier(spec, smtp_host="smtp.example.com", smtp_factory=factory)

    assert notifier.notify(_report(PipelineOutcome.success())) == []
    factory.assert_not_called()


def test_email_without_host_is_skipped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CI_RELEASE_SMTP_HOST", raising=False)
    factory, _ = _smtp_factory()
    spec = NotificationSpec(email=EmailNotification(recipients=["dev@example.com"]))

    assert Notifier(spec, smtp_factory=factory).notify(_report(PipelineOutcome.failed("script", 2))) == []
    factory.assert_not_called()


def test_smtp_failure_is_not_fatal() -> None:
    factory = mock.Mock(side_effect=smtplib.SMTPConnectError(421, "unavailable"))
    spec = NotificationSpec(email=EmailNotification(recipients=["dev@example.com"]))
    notifier = Notifier(spec, smtp_host="smtp.example.com", smtp_factory=factory)

    assert notifier.notify(_report(PipelineOutcome.failed("script", 2))) == []


def test_webhook_posts_report_payload() -> None:
    session = FakeSession([FakeResponse(204)])
    spec = NotificationSpec(webhooks=WebhookNotification(urls=["https://hooks.example.com/ci"]))

    delivered = Notifier(spec, session=session).notify(_report(PipelineOutcome.deploy_skipped("not a tag")))

    assert delivered == ["webhooks"]
    payload = session.posts[0]["json"]
    assert payload["outcome"]["kind"] == "deploy_skipped"
    assert payload["event"]["ref"] == "v1.2.3"


def test_webhook_failures_do_not_block_other_urls() -> None:
    session = FakeSession([RequestsConnectionError("down"), FakeResponse(500), FakeResponse(200)])
    spec = NotificationSpec(
        webhooks=WebhookNotification(urls=["https://a.example.com", "https://b.example.com", "https://c.example.com"])
    )

    delivered = Notifier(spec, session=session).notify(_report(PipelineOutcome.failed("script", 1)))

    assert delivered == []
    assert [post["url"] for post in session.posts] == [
        "https://a.example.com",
        "https://b.example.com",
        "https://c.example.com",
    ]


def test_no_channels_configured() -> None:
    assert Notifier(NotificationSpec()).notify(_report(PipelineOutcome.success())) == []
