"""Operator notifications for terminal run outcomes.

Exactly one :class:`Notification` is built per run. Delivery goes through SMTP
when email is enabled and to the log otherwise; delivery failures are logged
and reported as ``False`` but never raised, so they cannot change the outcome
of the run that produced them.
"""
from __future__ import annotations

import logging
import smtplib
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from enum import Enum
from pathlib import Path
from typing import Protocol

from .config import EmailConfig
from .models import OutcomeKind, RollbackStatus, RunOutcome

LOGGER = logging.getLogger(__name__)

SUBJECT_PREFIX = "[bedrockctl]"


class NotificationKind(Enum):
    """Category of a notification."""

    SUCCESS = "success"
    FAILURE = "failure"
    ROLLBACK = "rollback"
    WARNING = "warning"
    NO_UPDATE = "no-update"


_KIND_FOR_OUTCOME = {
    OutcomeKind.SUCCESS: NotificationKind.SUCCESS,
    OutcomeKind.NO_UPDATE_NEEDED: NotificationKind.NO_UPDATE,
    OutcomeKind.DRY_RUN_STOPPED_BEFORE_CHANGE: NotificationKind.WARNING,
    OutcomeKind.ROLLED_BACK: NotificationKind.ROLLBACK,
    OutcomeKind.FAILED: NotificationKind.FAILURE,
}


@dataclass(frozen=True)
class Notification:
    """A rendered message about one run."""

    kind: NotificationKind
    subject: str
    body: str
    phase: str
    timestamp: datetime
    hostname: str
    instances: tuple[str, ...] = field(default_factory=tuple)


class Notifier(Protocol):
    """Anything that can deliver a :class:`Notification`."""

    def send(self, notification: Notification) -> bool:
        """Deliver *notification*; return False when delivery failed."""
        ...


def build_notification(
    outcome: RunOutcome,
    *,
    hostname: str | None = None,
    now: datetime | None = None,
    log_path: Path | None = None,
) -> Notification:
    """Render the single notification describing *outcome*."""
    kind = _KIND_FOR_OUTCOME[outcome.kind]
    host = hostname or socket.gethostname()
    stamp = now or datetime.now()
    old = str(outcome.old_version) if outcome.old_version else "unknown"
    new = str(outcome.new_version) if outcome.new_version else "unknown"

    if kind is NotificationKind.SUCCESS:
        subject = f"Update to {new} succeeded"
        headline = f"All servers were updated from {old} to {new} and are running."
    elif kind is NotificationKind.NO_UPDATE:
        subject = "No update available"
        headline = f"Servers already run the latest version ({old})."
    elif kind is NotificationKind.WARNING:
        subject = "Dry run: update available"
        headline = f"Dry run: an update from {old} to {new} is available. Nothing was changed."
    elif kind is NotificationKind.ROLLBACK:
        subject = "Update rolled back"
        headline = "The update failed and all servers were restored to their previous state."
    elif outcome.rollback is RollbackStatus.INTEGRITY_ERROR:
        subject = "CRITICAL: snapshot integrity failure, manual intervention required"
        headline = "A snapshot failed its integrity check. Nothing was restored and the servers are stopped."
    elif outcome.rollback is RollbackStatus.FAILED:
        subject = "CRITICAL: update and rollback failed"
        headline = "The update failed and the rollback did not complete. Check the servers manually."
    elif outcome.rollback is RollbackStatus.UNAVAILABLE:
        subject = "Update failed, rollback unavailable"
        headline = (
            "The update failed after server files were changed. Backups were skipped, "
            "so nothing could be restored. Check the servers manually."
        )
    else:
        subject = "Update failed"
        headline = "The update failed before any server files were changed."

    lines = [
        headline,
        "",
        f"Phase: {outcome.phase.value}",
        f"Date: {stamp:%Y-%m-%d %H:%M:%S}",
        f"Hostname: {host}",
        f"Current version: {old}",
        f"Target version: {new}",
    ]
    if outcome.reason:
        lines.append(f"Reason: {outcome.reason}")
    if outcome.kind in {OutcomeKind.FAILED, OutcomeKind.ROLLED_BACK}:
        lines.append(f"Rollback: {outcome.rollback.value}")
    lines.append("")
    lines.append("Affected servers:")
    lines.extend(f"  - {name}" for name in outcome.instances or ("none",))
    if outcome.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in outcome.warnings)
    if log_path is not None:
        lines.append("")
        lines.append(f"Log file: {log_path}")

    return Notification(
        kind=kind,
        subject=f"{SUBJECT_PREFIX} {subject}",
        body="\n".join(lines) + "\n",
        phase=outcome.phase.value,
        timestamp=stamp,
        hostname=host,
        instances=outcome.instances,
    )


class EmailNotifier:
    """Send notifications over SMTP (optionally upgraded with STARTTLS)."""

    def __init__(
        self,
        config: EmailConfig,
        *,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.config = config
        self._smtp_factory = smtp_factory

    def build_message(self, notification: Notification) -> EmailMessage:
        """Return the MIME message for *notification*."""
        message = EmailMessage()
        message["Subject"] = notification.subject
        message["From"] = self.config.sender or ""
        message["To"] = ", ".join(self.config.recipients)
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid(domain=notification.hostname or None)
        message.set_content(notification.body)
        return message

    def send(self, notification: Notification) -> bool:
        """Deliver *notification* to every configured recipient."""
        if not self.config.host or not self.config.recipients:
            LOGGER.error("SMTP configuration incomplete; notification not sent")
            return False
        message = self.build_message(notification)
        try:
            with self._smtp_factory(
                self.config.host, self.config.port, timeout=self.config.timeout
            ) as smtp:
                if self.config.use_tls:
                    smtp.starttls()
                if self.config.username and self.config.password:
                    smtp.login(self.config.username, self.config.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            LOGGER.error("Failed to send %s notification: %s", notification.kind.value, exc)
            return False
        LOGGER.info("Email sent to %s", ", ".join(self.config.recipients))
        return True


class LogNotifier:
    """Write notifications to the log when email delivery is disabled."""

    def send(self, notification: Notification) -> bool:
        """Log *notification* at a level matching its kind."""
        level = logging.INFO
        if notification.kind in {NotificationKind.FAILURE, NotificationKind.ROLLBACK}:
            level = logging.ERROR
        elif notification.kind is NotificationKind.WARNING:
            level = logging.WARNING
        LOGGER.log(level, "%s\n%s", notification.subject, notification.body)
        return True


def build_notifier(config: EmailConfig) -> Notifier:
    """Return the notifier selected by *config*."""
    if config.enabled:
        return EmailNotifier(config)
    return LogNotifier()


def send_test(notifier: Notifier, *, hostname: str | None = None) -> bool:
    """Send a test message through *notifier*."""
    host = hostname or socket.gethostname()
    notification = Notification(
        kind=NotificationKind.WARNING,
        subject=f"{SUBJECT_PREFIX} Test notification",
        body=(
            "This is a test notification from bedrockctl.\n\n"
            f"Hostname: {host}\n"
            "If you received this message, notification delivery works.\n"
        ),
        phase="Test",
        timestamp=datetime.now(),
        hostname=host,
    )
    return notifier.send(notification)


__all__ = [
    "EmailNotifier",
    "LogNotifier",
    "Notification",
    "NotificationKind",
    "Notifier",
    "build_notification",
    "build_notifier",
    "send_test",
]
