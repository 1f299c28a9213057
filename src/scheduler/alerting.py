"""
Alert manager for the job queue.

Implements the alert sink the queue notifies on terminal job failures, plus
queue health checks (backlog, failure rate, stuck jobs).

Channels:
- console: logs through this module's logger
- webhook: JSON POST, HMAC-SHA256 signed (X-Webhook-Signature) when a secret is set
- slack: incoming-webhook attachment
- discord: webhook embed

Each channel has a minimum severity; delivery errors are logged and never
propagate to the caller.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Optional

import httpx

from .clock import Clock, SystemClock
from .entities import Job, JobStatus, QueueStats


logger = logging.getLogger(__name__)

ALERT_TIMEOUT_SECONDS = 10
MAX_RECENT_ALERTS = 100
USER_AGENT = "AutoWebsitesPipeline/1.0"


class AlertType(str, Enum):
    JOB_FAILED = "job_failed"
    JOB_STUCK = "job_stuck"
    QUEUE_BACKLOG = "queue_backlog"
    HIGH_FAILURE_RATE = "high_failure_rate"
    DLQ_THRESHOLD = "dlq_threshold"
    WORKER_UNHEALTHY = "worker_unhealthy"


class AlertSeverity(str, Enum):
    """Alert severity, ordered info < warning < critical."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def meets(self, minimum: "AlertSeverity") -> bool:
        return self.rank >= minimum.rank


_SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.CRITICAL]

_SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "#dc2626",
    AlertSeverity.WARNING: "#f59e0b",
    AlertSeverity.INFO: "#3b82f6",
}

_SEVERITY_LOG_LEVELS = {
    AlertSeverity.CRITICAL: logging.ERROR,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.INFO: logging.INFO,
}


@dataclass
class Alert:
    id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    created_at: datetime
    data: Optional[dict] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass
class AlertChannel:
    """
    Delivery channel configuration.

    config keys:
    - webhook: url, secret (optional)
    - slack / discord: webhook_url
    """

    type: str
    enabled: bool = True
    config: dict = field(default_factory=dict)
    min_severity: AlertSeverity = AlertSeverity.INFO


@dataclass(frozen=True)
class AlertThresholds:
    queue_backlog_warning: int = 100
    queue_backlog_critical: int = 500
    job_stuck_threshold: timedelta = timedelta(minutes=30)
    failure_rate_warning: float = 10.0
    failure_rate_critical: float = 25.0


class AlertManager:
    """
    Records alerts and fans them out to configured channels.

    Usage:
        alerts = AlertManager.from_settings(settings)
        queue = JobQueue(alert_sink=alerts)
    """

    def __init__(
        self,
        channels: Optional[Iterable[AlertChannel]] = None,
        thresholds: Optional[AlertThresholds] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize AlertManager.

        Args:
            channels: Delivery channels (a console channel at warning if omitted)
            thresholds: Health-check thresholds
            clock: Time source for alert timestamps
        """
        if channels is None:
            channels = [AlertChannel(type="console", min_severity=AlertSeverity.WARNING)]
        self.channels: list[AlertChannel] = list(channels)
        self.thresholds = thresholds or AlertThresholds()
        self.clock = clock or SystemClock()

        self._alerts: dict[str, Alert] = {}
        self._recent: list[Alert] = []

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None) -> "AlertManager":
        """Build channels from ALERT_* / SLACK_* / DISCORD_* settings."""
        min_severity = AlertSeverity(settings.alert_min_severity)
        channels = [AlertChannel(type="console", min_severity=min_severity)]

        if settings.alert_webhook_url:
            channels.append(AlertChannel(
                type="webhook",
                config={
                    "url": settings.alert_webhook_url,
                    "secret": settings.alert_webhook_secret,
                },
                min_severity=min_severity,
            ))
        if settings.slack_webhook_url:
            channels.append(AlertChannel(
                type="slack",
                config={"webhook_url": settings.slack_webhook_url},
                min_severity=min_severity,
            ))
        if settings.discord_webhook_url:
            channels.append(AlertChannel(
                type="discord",
                config={"webhook_url": settings.discord_webhook_url},
                min_severity=min_severity,
            ))

        return cls(channels=channels, clock=clock)

    def add_channel(self, channel: AlertChannel) -> None:
        self.channels.append(channel)

    def update_thresholds(self, **updates) -> None:
        self.thresholds = replace(self.thresholds, **updates)

    # =========================================================================
    # Sending
    # =========================================================================

    async def notify(
        self,
        kind: str,
        severity: str,
        title: str,
        detail: Any = None,
    ) -> Alert:
        """
        Alert sink entry point used by the job queue.

        Args:
            kind: AlertType value (e.g. "job_failed")
            severity: AlertSeverity value
            title: Short summary
            detail: Message string or dict of structured fields
        """
        if isinstance(detail, dict):
            message = detail.get("message") or detail.get("error") or title
            data = detail
        else:
            message = str(detail) if detail is not None else title
            data = None

        return await self.send_alert(
            AlertType(kind), AlertSeverity(severity), title, str(message), data
        )

    async def send_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Alert:
        """Record an alert and deliver it to every eligible channel."""
        alert = Alert(
            id=f"alert-{uuid.uuid4().hex[:12]}",
            type=alert_type,
            severity=severity,
            title=title,
            message=message,
            data=data,
            created_at=self.clock.now(),
        )

        self._alerts[alert.id] = alert
        self._recent.insert(0, alert)
        del self._recent[MAX_RECENT_ALERTS:]

        targets = [
            channel for channel in self.channels
            if channel.enabled and severity.meets(channel.min_severity)
        ]
        await asyncio.gather(*(self._send_to_channel(c, alert) for c in targets))
        return alert

    async def _send_to_channel(self, channel: AlertChannel, alert: Alert) -> None:
        try:
            if channel.type == "console":
                self._send_to_console(alert)
            elif channel.type == "webhook":
                await self._send_to_webhook(channel, alert)
            elif channel.type == "slack":
                await self._send_to_slack(channel, alert)
            elif channel.type == "discord":
                await self._send_to_discord(channel, alert)
            else:
                logger.warning(f"Unknown alert channel type: {channel.type}")
        except Exception as e:
            logger.error(
                f"Failed to send alert {alert.id} to {channel.type}: {e}"
            )

    def _send_to_console(self, alert: Alert) -> None:
        logger.log(
            _SEVERITY_LOG_LEVELS[alert.severity],
            f"[ALERT] {alert.title}: {alert.message} "
            f"(id={alert.id}, type={alert.type.value})",
        )

    async def _send_to_webhook(self, channel: AlertChannel, alert: Alert) -> None:
        url = channel.config.get("url")
        if not url:
            return

        body = json.dumps(alert.to_dict(), default=str)
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        secret = channel.config.get("secret")
        if secret:
            headers["X-Webhook-Signature"] = sign_payload(body, secret)

        await self._post(url, body, headers, alert)

    async def _send_to_slack(self, channel: AlertChannel, alert: Alert) -> None:
        url = channel.config.get("webhook_url")
        if not url:
            return

        payload = {
            "attachments": [{
                "color": _SEVERITY_COLORS[alert.severity],
                "title": alert.title,
                "text": alert.message,
                "fields": [
                    {"title": key, "value": str(value), "short": True}
                    for key, value in (alert.data or {}).items()
                ],
                "footer": f"AutoWebsites Pipeline | {alert.type.value}",
                "ts": int(alert.created_at.timestamp()),
            }],
        }
        await self._post(url, json.dumps(payload, default=str), None, alert)

    async def _send_to_discord(self, channel: AlertChannel, alert: Alert) -> None:
        url = channel.config.get("webhook_url")
        if not url:
            return

        payload = {
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": int(_SEVERITY_COLORS[alert.severity].lstrip("#"), 16),
                "fields": [
                    {"name": key, "value": str(value), "inline": True}
                    for key, value in (alert.data or {}).items()
                ],
                "footer": {"text": f"AutoWebsites Pipeline | {alert.type.value}"},
                "timestamp": alert.created_at.isoformat(),
            }],
        }
        await self._post(url, json.dumps(payload, default=str), None, alert)

    async def _post(
        self,
        url: str,
        body: str,
        headers: Optional[dict],
        alert: Alert,
    ) -> bool:
        headers = headers or {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        try:
            async with httpx.AsyncClient(timeout=ALERT_TIMEOUT_SECONDS) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"Alert {alert.id} delivery timed out after {ALERT_TIMEOUT_SECONDS}s")
            return False
        except httpx.RequestError as e:
            logger.warning(f"Alert {alert.id} delivery request error: {e}")
            return False

        if 200 <= response.status_code < 300:
            logger.debug(f"Alert {alert.id} delivered to {url} (status={response.status_code})")
            return True

        logger.warning(
            f"Alert {alert.id} delivery failed: "
            f"HTTP {response.status_code}: {response.text[:200]}"
        )
        return False

    # =========================================================================
    # Typed Alerts
    # =========================================================================

    async def alert_job_failed(
        self,
        job_id: str,
        job_type: str,
        error: str,
        attempts: int,
    ) -> Alert:
        return await self.send_alert(
            AlertType.JOB_FAILED,
            AlertSeverity.WARNING,
            f"Job Failed: {job_type}",
            f"Job {job_id} failed after {attempts} attempts: {error}",
            {"job_id": job_id, "job_type": job_type, "error": error, "attempts": attempts},
        )

    async def alert_job_stuck(self, job: Job, running_for: timedelta) -> Alert:
        minutes = round(running_for.total_seconds() / 60)
        return await self.send_alert(
            AlertType.JOB_STUCK,
            AlertSeverity.WARNING,
            f"Job Stuck: {job.type.value}",
            f"Job {job.id} has been running for {minutes} minutes",
            {"job_id": job.id, "job_type": job.type.value, "running_for_minutes": minutes},
        )

    async def alert_queue_backlog(self, pending_count: int, by_type: dict) -> Alert:
        severity = (
            AlertSeverity.CRITICAL
            if pending_count >= self.thresholds.queue_backlog_critical
            else AlertSeverity.WARNING
        )
        return await self.send_alert(
            AlertType.QUEUE_BACKLOG,
            severity,
            "Queue Backlog High",
            f"{pending_count} jobs pending in queue",
            {"pending_count": pending_count, "by_type": by_type},
        )

    async def alert_high_failure_rate(
        self,
        failure_rate: float,
        failed_count: int,
        finished_count: int,
    ) -> Alert:
        severity = (
            AlertSeverity.CRITICAL
            if failure_rate >= self.thresholds.failure_rate_critical
            else AlertSeverity.WARNING
        )
        return await self.send_alert(
            AlertType.HIGH_FAILURE_RATE,
            severity,
            "High Job Failure Rate",
            f"{failure_rate:.1f}% of jobs failing ({failed_count}/{finished_count})",
            {
                "failure_rate": failure_rate,
                "failed_count": failed_count,
                "finished_count": finished_count,
            },
        )

    # =========================================================================
    # Health Checks
    # =========================================================================

    async def check_queue_health(self, stats: QueueStats) -> list[Alert]:
        """
        Raise backlog and failure-rate alerts from a stats snapshot.

        Failure rate is failed / (completed + failed), in percent.
        """
        raised = []

        pending = stats.by_status.get(JobStatus.PENDING.value, 0)
        if pending >= self.thresholds.queue_backlog_warning:
            raised.append(await self.alert_queue_backlog(pending, stats.by_type))

        failed = stats.by_status.get(JobStatus.FAILED.value, 0)
        finished = failed + stats.by_status.get(JobStatus.COMPLETED.value, 0)
        if finished:
            rate = failed / finished * 100
            if rate >= self.thresholds.failure_rate_warning:
                raised.append(await self.alert_high_failure_rate(rate, failed, finished))

        return raised

    async def check_stuck_jobs(self, running_jobs: Iterable[Job]) -> list[Alert]:
        """Alert on running jobs started longer ago than the stuck threshold."""
        now = self.clock.now()
        raised = []
        for job in running_jobs:
            if job.status != JobStatus.RUNNING or job.started_at is None:
                continue
            running_for = now - job.started_at
            if running_for >= self.thresholds.job_stuck_threshold:
                raised.append(await self.alert_job_stuck(job, running_for))
        return raised

    # =========================================================================
    # Alert State
    # =========================================================================

    def acknowledge_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.acknowledged_at is not None:
            return False
        alert.acknowledged_at = self.clock.now()
        return True

    def resolve_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None or alert.resolved_at is not None:
            return False
        alert.resolved_at = self.clock.now()
        return True

    def get_recent_alerts(self, limit: int = 20) -> list[Alert]:
        """Newest first, at most MAX_RECENT_ALERTS kept."""
        return self._recent[:limit]

    def get_unresolved_alerts(self) -> list[Alert]:
        unresolved = [a for a in self._alerts.values() if a.resolved_at is None]
        return sorted(unresolved, key=lambda a: a.created_at, reverse=True)


def sign_payload(body: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the request body."""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
