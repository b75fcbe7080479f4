"""Tests for notification rendering and delivery."""
from __future__ import annotations

import logging
import smtplib
from datetime import datetime
from pathlib import Path

import pytest

from bedrockctl.config import EmailConfig
from bedrockctl.models import OutcomeKind, Phase, ReleaseVersion, RollbackStatus, RunOutcome
from bedrockctl.notifications import (
    EmailNotifier,
    LogNotifier,
    NotificationKind,
    build_notification,
    build_notifier,
    send_test,
)

NOW = datetime(2026, 6, 1, 4, 0, 0)
OLD = ReleaseVersion.parse("1.21.100.1")
NEW = ReleaseVersion.parse("1.21.131.1")


class FakeSMTP:
    """Record the SMTP conversation instead of talking to a server."""

    instances: list[FakeSMTP] = []

    def __init__(self, host: str, port: int, timeout: float | None = None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls: list[str] = []
        self.messages: list[object] = []
        FakeSMTP.instances.append(self)

    def __enter__(self) -> FakeSMTP:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.calls.append("quit")

    def starttls(self) -> None:
        self.calls.append("starttls")

    def login(self, username: str, password: str) -> None:
        self.calls.append(f"login:{username}")

    def send_message(self, message: object) -> None:
        self.calls.append("send")
        self.messages.append(message)


@pytest.fixture(autouse=True)
def _reset_fake_smtp() -> None:
    FakeSMTP.instances = []


def _email_config(**overrides: object) -> EmailConfig:
    values: dict[str, object] = {
        "enabled": True,
        "host": "smtp.example.com",
        "port": 587,
        "username": "ops",
        "password": "pw",
        "sender": "bedrockctl@example.com",
        "recipients": ("admin@example.com", "oncall@example.com"),
    }
    values.update(overrides)
    return EmailConfig(**values)  # type: ignore[arg-type]


def test_success_notification_content() -> None:
    """Success notifications name both versions and every server."""
    outcome = RunOutcome(
        kind=OutcomeKind.SUCCESS,
        old_version=OLD,
        new_version=NEW,
        instances=("alpha", "beta"),
    )

    note = build_notification(outcome, hostname="mc01", now=NOW, log_path=Path("/var/log/x.jsonl"))

    assert note.kind is NotificationKind.SUCCESS
    assert note.subject == "[bedrockctl] Update to 1.21.131.1 succeeded"
    assert "from 1.21.100.1 to 1.21.131.1" in note.body
    assert "  - alpha\n  - beta\n" in note.body
    assert "Hostname: mc01" in note.body
    assert "Log file: /var/log/x.jsonl" in note.body
    assert note.instances == ("alpha", "beta")


@pytest.mark.parametrize(
    ("outcome", "kind", "subject_fragment"),
    [
        (RunOutcome(kind=OutcomeKind.NO_UPDATE_NEEDED, old_version=OLD), NotificationKind.NO_UPDATE, "No update"),
        (
            RunOutcome(kind=OutcomeKind.DRY_RUN_STOPPED_BEFORE_CHANGE, old_version=OLD, new_version=NEW),
            NotificationKind.WARNING,
            "Dry run",
        ),
        (
            RunOutcome(
                kind=OutcomeKind.ROLLED_BACK,
                phase=Phase.APPLYING,
                reason="disk full",
                rollback=RollbackStatus.COMPLETED,
            ),
            NotificationKind.ROLLBACK,
            "rolled back",
        ),
        (RunOutcome.failed(Phase.BACKING_UP, "no space"), NotificationKind.FAILURE, "Update failed"),
        (
            RunOutcome.failed(Phase.APPLYING, "x", rollback=RollbackStatus.INTEGRITY_ERROR),
            NotificationKind.FAILURE,
            "CRITICAL: snapshot integrity",
        ),
        (
            RunOutcome.failed(Phase.STARTING_INSTANCES, "x", rollback=RollbackStatus.FAILED),
            NotificationKind.FAILURE,
            "CRITICAL: update and rollback failed",
        ),
    ],
)
def test_notification_kind_and_subject(outcome: RunOutcome, kind: NotificationKind, subject_fragment: str) -> None:
    """Each outcome maps to one kind and a distinctive subject."""
    note = build_notification(outcome, hostname="mc01", now=NOW)

    assert note.kind is kind
    assert subject_fragment in note.subject
    assert note.subject.startswith("[bedrockctl] ")
    assert f"Phase: {outcome.phase.value}" in note.body


def test_failure_body_includes_reason_and_rollback() -> None:
    """Failures explain why and how the fleet was left."""
    outcome = RunOutcome.failed(Phase.DOWNLOADING, "HTTP 500", instances=["alpha"])

    body = build_notification(outcome, hostname="mc01", now=NOW).body

    assert "Reason: HTTP 500" in body
    assert "Rollback: not-needed" in body


def test_unavailable_rollback_says_files_were_changed() -> None:
    """A late failure without snapshots must not claim the servers are untouched."""
    outcome = RunOutcome.failed(Phase.APPLYING, "copy failed", rollback=RollbackStatus.UNAVAILABLE)

    note = build_notification(outcome, hostname="mc01", now=NOW)

    assert note.kind is NotificationKind.FAILURE
    assert "rollback unavailable" in note.subject
    assert note.body.startswith("The update failed after server files were changed.")
    assert "before any server files were changed" not in note.body
    assert "Rollback: unavailable" in note.body


def test_email_notifier_sends_with_starttls_and_login() -> None:
    """SMTP delivery upgrades to TLS and authenticates when configured."""
    notifier = EmailNotifier(_email_config(), smtp_factory=FakeSMTP)
    note = build_notification(RunOutcome(kind=OutcomeKind.SUCCESS, new_version=NEW), hostname="mc01", now=NOW)

    assert notifier.send(note) is True

    (smtp,) = FakeSMTP.instances
    assert (smtp.host, smtp.port, smtp.timeout) == ("smtp.example.com", 587, 30.0)
    assert smtp.calls == ["starttls", "login:ops", "send", "quit"]
    message = smtp.messages[0]
    assert message["To"] == "admin@example.com, oncall@example.com"  # type: ignore[index]
    assert message["Subject"] == note.subject  # type: ignore[index]


def test_email_notifier_without_tls_or_credentials() -> None:
    """Plain SMTP relays skip STARTTLS and login."""
    notifier = EmailNotifier(
        _email_config(use_tls=False, username=None, password=None, port=25),
        smtp_factory=FakeSMTP,
    )

    assert send_test(notifier, hostname="mc01") is True
    assert FakeSMTP.instances[0].calls == ["send", "quit"]


def test_email_failure_returns_false(caplog: pytest.LogCaptureFixture) -> None:
    """SMTP errors are logged and reported, never raised."""

    def broken_factory(*args: object, **kwargs: object) -> smtplib.SMTP:
        raise smtplib.SMTPConnectError(421, b"busy")

    notifier = EmailNotifier(_email_config(), smtp_factory=broken_factory)

    with caplog.at_level(logging.ERROR, logger="bedrockctl.notifications"):
        assert send_test(notifier) is False
    assert "Failed to send" in caplog.text


def test_build_notifier_selects_channel(caplog: pytest.LogCaptureFixture) -> None:
    """Disabled email falls back to logging the notification."""
    assert isinstance(build_notifier(_email_config()), EmailNotifier)
    notifier = build_notifier(EmailConfig())
    assert isinstance(notifier, LogNotifier)

    outcome = RunOutcome.failed(Phase.APPLYING, "boom")
    with caplog.at_level(logging.INFO, logger="bedrockctl.notifications"):
        assert notifier.send(build_notification(outcome, hostname="mc01", now=NOW)) is True

    assert caplog.records[-1].levelno == logging.ERROR
    assert "Update failed" in caplog.text
