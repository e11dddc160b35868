"""
Delivery of run outcome events.

Every terminal backup or restore run produces exactly one ``RunEvent`` which
is handed to the configured notifier. Delivery is best effort: a failing
channel is logged and never affects the run it reports on, and nothing is
retried.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Sequence

from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

import requests

from .conf import NotificationSettings, get_backup_settings

logger = logging.getLogger(__name__)


@dataclass
class RunEvent:
    operation: str  # "backup" or "restore"
    tier: str
    run_id: str
    status: str
    duration_ms: Optional[int] = None
    artifact_id: Optional[str] = None
    size_bytes: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    degraded: bool = False
    replication_errors: List[dict] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: timezone.now().isoformat())

    @property
    def succeeded(self) -> bool:
        return self.status == "COMPLETED"

    @property
    def event_name(self) -> str:
        outcome = "completed" if self.succeeded else "failed"
        return f"{self.operation}_{outcome}"

    def to_dict(self) -> dict:
        return asdict(self)

    def summary(self) -> str:
        if self.succeeded:
            text = f"{self.tier} {self.operation} {self.artifact_id} completed ({self.size_bytes} bytes)"
            if self.degraded:
                text += f" with {len(self.replication_errors)} replication error(s)"
            return text
        return f"{self.tier} {self.operation} failed: {self.error}"


class Notifier:
    """Base class for notification channels."""

    def notify(self, event: RunEvent) -> bool:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def notify(self, event):
        if event.succeeded and not event.degraded:
            logger.info(f"Run {event.run_id}: {event.summary()}")
        elif event.succeeded:
            logger.warning(f"Run {event.run_id}: {event.summary()}")
        else:
            logger.error(f"Run {event.run_id}: {event.summary()}")
        return True


class EmailNotifier(Notifier):
    """Emails operators; by default only failures are sent."""

    def __init__(self, recipients: Sequence[str], on_success: bool = False, on_failure: bool = True):
        self.recipients = list(recipients)
        self.on_success = on_success
        self.on_failure = on_failure

    def should_send(self, event: RunEvent) -> bool:
        if event.succeeded and not event.degraded:
            return self.on_success
        return self.on_failure

    def notify(self, event):
        if not self.should_send(event):
            return False

        subject = f"[Backups] {event.event_name.replace('_', ' ')}: {event.tier}"
        lines = [
            f"Operation: {event.operation}",
            f"Tier: {event.tier}",
            f"Run: {event.run_id}",
            f"Status: {event.status}",
            f"Time: {event.timestamp}",
        ]
        if event.artifact_id:
            lines.append(f"Artifact: {event.artifact_id} ({event.size_bytes} bytes)")
        if event.duration_ms is not None:
            lines.append(f"Duration: {event.duration_ms / 1000:.1f}s")
        if event.error:
            lines.append(f"Error ({event.error_type}): {event.error}")
        for failure in event.replication_errors:
            lines.append(f"Replication to {failure.get('destination')} failed: {failure.get('error')}")

        send_mail(
            subject=subject,
            message="\n".join(lines),
            from_email=getattr(settings, "DEFAULT_FROM_EMAIL", "backups@localhost"),
            recipient_list=self.recipients,
            fail_silently=False,
        )
        logger.info(f"Email notification sent for run {event.run_id} to {len(self.recipients)} recipient(s)")
        return True


class WebhookNotifier(Notifier):
    """POSTs ``{"event", "timestamp", "data"}`` to a webhook URL."""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def notify(self, event):
        payload = {
            "event": event.event_name,
            "timestamp": event.timestamp,
            "data": event.to_dict(),
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )

        if response.status_code in [200, 201, 202, 204]:
            logger.info(f"Webhook notification sent successfully for run {event.run_id}")
            return True

        logger.warning(
            f"Webhook notification failed for run {event.run_id}: status={response.status_code}"
        )
        return False


class CompositeNotifier(Notifier):
    """Fans an event out to several channels, isolating their failures."""

    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers = list(notifiers)

    def notify(self, event):
        delivered = False
        for notifier in self.notifiers:
            try:
                delivered = notifier.notify(event) or delivered
            except Exception as e:
                logger.error(
                    f"{type(notifier).__name__} failed to deliver event for run {event.run_id}: {e}"
                )
        return delivered


def get_notifier(notifications: Optional[NotificationSettings] = None) -> Notifier:
    """Build the notifier chain from settings; logging is always included."""
    notifications = notifications or get_backup_settings().notifications
    notifiers: List[Notifier] = [LoggingNotifier()]

    if notifications.email_enabled:
        notifiers.append(
            EmailNotifier(
                notifications.email_recipients,
                on_success=notifications.email_on_success,
                on_failure=notifications.email_on_failure,
            )
        )
    if notifications.webhook_enabled:
        notifiers.append(WebhookNotifier(notifications.webhook_url, timeout=notifications.webhook_timeout))

    return CompositeNotifier(notifiers)
