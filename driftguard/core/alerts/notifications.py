"""
Notification Router
-------------------
Dispatches alerts to every enabled channel whose severity, category and
active-hours filters match. Each delivery is time-bounded and its failure
is logged and counted without affecting other channels.

Transports:
- log: writes the alert to the application log
- webhook: POSTs the alert as JSON with httpx
- email: sends a plain-text message over SMTP in a worker thread
"""

import asyncio
import logging
import smtplib
from datetime import datetime
from email.mime.text import MIMEText
from typing import Callable, Dict, List, Optional, Protocol
from zoneinfo import ZoneInfo

import httpx

from driftguard.core.alerts.types import (
    Alert,
    ChannelType,
    NotificationChannel,
    TimeWindow,
)
from driftguard.core.config import Settings
from driftguard.core.drift.types import Severity
from driftguard.core.observability import NOTIFICATION_COUNTER, NOTIFICATION_DURATION, timed_execution
from driftguard.core.scheduler import utc_now

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, alert: Alert, channel: NotificationChannel) -> None:
        ...


def format_alert_text(alert: Alert) -> str:
    lines = [
        f"[{alert.severity.value.upper()}] {alert.title}",
        f"Category: {alert.category.value}",
        f"Environment: {alert.environment}",
        f"Status: {alert.status.value}",
        f"Escalation level: {alert.escalation_level}",
        "",
        alert.description,
    ]
    if alert.affected_resources:
        lines.append("")
        lines.append("Affected resources:")
        lines.extend(f"  - {r}" for r in alert.affected_resources[:20])
    return "\n".join(lines)


class LogTransport:
    async def send(self, alert: Alert, channel: NotificationChannel) -> None:
        level = logging.WARNING if alert.severity in (Severity.HIGH, Severity.CRITICAL) else logging.INFO
        logger.log(
            level,
            f"Alert {alert.id} ({alert.severity.value}) via {channel.id}: {alert.title}",
        )


class WebhookTransport:
    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def send(self, alert: Alert, channel: NotificationChannel) -> None:
        url = channel.config.get("webhook_url")
        if not url:
            raise ValueError(f"Channel {channel.id} has no webhook_url configured")

        payload = {
            "event": "security_alert",
            "alert": alert.model_dump(mode="json", exclude={"timeline"}),
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, json=payload, headers=channel.config.get("headers", {}))
            response.raise_for_status()
        logger.info(f"Webhook notification sent for alert {alert.id}")


class EmailTransport:
    def __init__(self, settings: Settings):
        self.host = settings.SMTP_HOST
        self.port = settings.SMTP_PORT
        self.sender = settings.SMTP_SENDER
        self.username = settings.SMTP_USERNAME
        self.password = settings.SMTP_PASSWORD

    def _send_blocking(self, recipients: List[str], subject: str, body: str) -> None:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(recipients)

        with smtplib.SMTP(self.host, self.port) as server:
            if self.username and self.password:
                server.starttls()
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, alert: Alert, channel: NotificationChannel) -> None:
        recipients = channel.config.get("recipients") or []
        if not recipients:
            raise ValueError(f"Channel {channel.id} has no recipients configured")

        subject = f"[DriftGuard] {alert.severity.value.upper()}: {alert.title}"
        await asyncio.to_thread(self._send_blocking, recipients, subject, format_alert_text(alert))
        logger.info(f"Email notification sent for alert {alert.id} to {', '.join(recipients)}")


def default_channels(settings: Settings) -> Dict[str, NotificationChannel]:
    channels = [
        NotificationChannel(
            id="default",
            type=ChannelType.LOG,
            severity_filter=[Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL],
        ),
        NotificationChannel(
            id="critical",
            type=ChannelType.LOG,
            severity_filter=[Severity.CRITICAL],
        ),
    ]
    if settings.WEBHOOK_URL:
        channels.append(
            NotificationChannel(
                id="webhook",
                type=ChannelType.WEBHOOK,
                config={"webhook_url": settings.WEBHOOK_URL},
                severity_filter=[Severity.HIGH, Severity.CRITICAL],
            )
        )
    if settings.ALERT_EMAIL and settings.SMTP_HOST:
        channels.append(
            NotificationChannel(
                id="email",
                type=ChannelType.EMAIL,
                config={"recipients": [settings.ALERT_EMAIL]},
                severity_filter=[Severity.HIGH, Severity.CRITICAL],
            )
        )
    return {channel.id: channel for channel in channels}


def is_within_active_hours(window: TimeWindow, now: datetime) -> bool:
    """
    Check whether ``now`` falls inside the window.

    Days use 0 for Sunday. A window whose end is before its start spans
    midnight.
    """
    local = now.astimezone(ZoneInfo(window.timezone))
    day = (local.weekday() + 1) % 7
    if day not in window.days:
        return False

    current = local.strftime("%H:%M")
    if window.start <= window.end:
        return window.start <= current <= window.end
    return current >= window.start or current <= window.end


class NotificationRouter:
    """Routes alerts to notification channels"""

    def __init__(
        self,
        settings: Settings,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        transports: Optional[Dict[ChannelType, Transport]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.timeout = settings.NOTIFICATION_TIMEOUT
        self.channels = channels if channels is not None else default_channels(settings)
        if transports is None:
            transports = {
                ChannelType.LOG: LogTransport(),
                ChannelType.WEBHOOK: WebhookTransport(timeout=settings.NOTIFICATION_TIMEOUT),
            }
            if settings.SMTP_HOST:
                transports[ChannelType.EMAIL] = EmailTransport(settings)
        self.transports: Dict[ChannelType, Transport] = transports
        self.clock = clock

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels[channel.id] = channel

    def should_deliver(self, alert: Alert, channel: NotificationChannel) -> bool:
        if not channel.enabled:
            return False
        if alert.severity not in channel.severity_filter:
            return False
        if channel.category_filter and alert.category not in channel.category_filter:
            return False
        if channel.active_hours and not is_within_active_hours(channel.active_hours, self.clock()):
            return False
        return True

    async def dispatch(self, alert: Alert) -> Dict[str, bool]:
        """
        Deliver an alert to all matching channels.

        Returns:
            Mapping of channel id to delivery success
        """
        targets = [c for c in self.channels.values() if self.should_deliver(alert, c)]
        return await self._deliver_all(alert, targets)

    async def dispatch_emergency(self, alert: Alert) -> Dict[str, bool]:
        """Deliver to every enabled channel that accepts critical alerts, ignoring other filters"""
        targets = [
            c for c in self.channels.values()
            if c.enabled and Severity.CRITICAL in c.severity_filter
        ]
        return await self._deliver_all(alert, targets)

    async def notify_target(self, alert: Alert, target: str) -> Dict[str, bool]:
        """Deliver to a named channel, or route normally when no such channel exists"""
        channel = self.channels.get(target)
        if channel is None:
            return await self.dispatch(alert)
        if not channel.enabled:
            return {}
        return await self._deliver_all(alert, [channel])

    async def _deliver_all(self, alert: Alert, channels: List[NotificationChannel]) -> Dict[str, bool]:
        if not channels:
            return {}
        results = await asyncio.gather(*(self._deliver(alert, c) for c in channels))
        return {channel.id: ok for channel, ok in zip(channels, results)}

    async def _deliver(self, alert: Alert, channel: NotificationChannel) -> bool:
        transport = self.transports.get(channel.type)
        try:
            if transport is None:
                raise LookupError(f"No transport registered for channel type {channel.type.value}")
            with timed_execution(NOTIFICATION_DURATION, {"channel_type": channel.type.value}):
                await asyncio.wait_for(transport.send(alert, channel), timeout=self.timeout)
            NOTIFICATION_COUNTER.labels(channel=channel.id, outcome="sent").inc()
            return True
        except asyncio.TimeoutError:
            logger.error(f"Notification via {channel.id} timed out after {self.timeout}s for alert {alert.id}")
        except Exception as e:
            logger.error(f"Failed to send notification via {channel.id} for alert {alert.id}: {str(e)}")
        NOTIFICATION_COUNTER.labels(channel=channel.id, outcome="failed").inc()
        return False
