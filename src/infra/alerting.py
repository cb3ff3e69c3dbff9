"""
Operational signals and alert delivery.

Sweeps emit Signals (high recovery rate, high failure rate, storage cleanup
requests, post count increments, job monitoring). An AlertManager fans each
signal out to its sinks:
- LoggingSignalSink: always on, logs at a level matching the severity
- WebhookSignalSink: POSTs a Discord/Slack-compatible embed with httpx,
  fire-and-forget in a background thread with bounded retries

A failing sink never propagates into the sweep that emitted the signal.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from src.infra.config import Settings

logger = logging.getLogger(__name__)

# Webhook configuration
WEBHOOK_TIMEOUT_SECONDS = 10
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_RETRY_BASE_DELAY = 1.0  # seconds
WEBHOOK_RETRY_MAX_DELAY = 10.0  # seconds


class AlertSeverity(str, Enum):
    """Signal severity."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class SignalKind(str, Enum):
    """What a signal reports."""

    HIGH_RECOVERY_RATE = "high_recovery_rate"
    HIGH_FAILURE_RATE = "high_failure_rate"
    STORAGE_CLEANUP_REQUESTED = "storage_cleanup_requested"
    POST_COUNT_INCREMENTED = "post_count_incremented"
    JOB_MONITORING = "job_monitoring"


SEVERITY_LOG_LEVELS = {
    AlertSeverity.CRITICAL: logging.CRITICAL,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.INFO: logging.INFO,
}

SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: 0xFF0000,  # Red
    AlertSeverity.WARNING: 0xFFA500,   # Orange
    AlertSeverity.INFO: 0x0099FF,      # Blue
}

SEVERITY_EMOJI = {
    AlertSeverity.CRITICAL: "🚨",
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.INFO: "ℹ️",
}


@dataclass
class Signal:
    """One operational event."""

    kind: SignalKind
    severity: AlertSeverity
    title: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SignalSink(Protocol):
    """Destination for signals."""

    def emit(self, signal: Signal) -> None:
        ...


class LoggingSignalSink:
    """Writes signals to the log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(self, signal: Signal) -> None:
        level = SEVERITY_LOG_LEVELS.get(signal.severity, logging.INFO)
        context = f" {signal.context}" if signal.context else ""
        self.log.log(
            level,
            f"[Alert] {signal.severity.value.upper()} {signal.kind.value}: "
            f"{signal.title} - {signal.message}{context}",
        )


def build_alert_payload(signal: Signal) -> Dict[str, Any]:
    """
    Build a webhook payload with one embed.

    Compatible with Discord and Slack-style incoming webhooks.
    """
    emoji = SEVERITY_EMOJI.get(signal.severity, "📢")
    fields = [
        {"name": key, "value": str(value), "inline": True}
        for key, value in signal.context.items()
    ]
    fields.append({"name": "Kind", "value": signal.kind.value, "inline": True})

    return {
        "username": "Automation Alerts",
        "embeds": [
            {
                "title": f"{emoji} {signal.title}",
                "description": signal.message,
                "color": SEVERITY_COLORS.get(signal.severity, 0x808080),
                "fields": fields,
                "timestamp": signal.timestamp.isoformat(),
            }
        ],
    }


def send_alert_sync(
    url: str,
    payload: Dict[str, Any],
    timeout: float = WEBHOOK_TIMEOUT_SECONDS,
    max_retries: int = WEBHOOK_MAX_RETRIES,
) -> tuple[bool, Optional[str]]:
    """
    POST an alert payload with retry logic.

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    last_error: Optional[str] = None

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    url,
                    json=payload,
                    headers={
                        "Content-Type": "application/json",
                        "User-Agent": "PublishAutomation/1.0",
                    },
                )

                if 200 <= response.status_code < 300:
                    logger.debug(
                        f"Alert sent to {url} "
                        f"(attempt {attempt + 1}/{max_retries}, status={response.status_code})"
                    )
                    return True, None

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(
                    f"Alert webhook failed (attempt {attempt + 1}/{max_retries}): {last_error}"
                )

        except httpx.TimeoutException:
            last_error = f"Timeout after {timeout}s"
            logger.warning(f"Alert webhook timeout (attempt {attempt + 1}/{max_retries})")

        except httpx.RequestError as e:
            last_error = f"Request error: {str(e)}"
            logger.warning(
                f"Alert webhook request error (attempt {attempt + 1}/{max_retries}): {e}"
            )

        # Exponential backoff before retry
        if attempt < max_retries - 1:
            delay = min(
                WEBHOOK_RETRY_BASE_DELAY * (2 ** attempt),
                WEBHOOK_RETRY_MAX_DELAY
            )
            time.sleep(delay)

    logger.error(f"Alert webhook failed after {max_retries} attempts: {last_error}")
    return False, last_error


class WebhookSignalSink:
    """
    Delivers signals to a webhook.

    Only signals at or above `min_severity` are sent. Delivery runs in a
    daemon thread unless `blocking` is set.
    """

    def __init__(
        self,
        url: str,
        min_severity: AlertSeverity = AlertSeverity.WARNING,
        blocking: bool = False,
        max_retries: int = WEBHOOK_MAX_RETRIES,
    ):
        self.url = url
        self.min_severity = min_severity
        self.blocking = blocking
        self.max_retries = max_retries

    def _wants(self, signal: Signal) -> bool:
        order = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.CRITICAL]
        return order.index(signal.severity) >= order.index(self.min_severity)

    def emit(self, signal: Signal) -> None:
        if not self._wants(signal):
            return

        payload = build_alert_payload(signal)
        if self.blocking:
            send_alert_sync(self.url, payload, max_retries=self.max_retries)
            return

        thread = threading.Thread(
            target=send_alert_sync,
            args=(self.url, payload),
            kwargs={"max_retries": self.max_retries},
            daemon=True,  # Daemon thread won't prevent process exit
        )
        thread.start()


class AlertManager:
    """Fans signals out to every configured sink."""

    def __init__(self, sinks: Optional[list[SignalSink]] = None):
        self.sinks: list[SignalSink] = list(sinks) if sinks is not None else [LoggingSignalSink()]

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertManager":
        """Logging sink always; webhook sink when alerts are enabled."""
        sinks: list[SignalSink] = [LoggingSignalSink()]
        if settings.enable_alerts:
            if settings.alert_webhook_url:
                sinks.append(WebhookSignalSink(settings.alert_webhook_url))
            else:
                logger.error("[Alert] ENABLE_ALERTS is set but ALERT_WEBHOOK_URL is empty")
        return cls(sinks)

    def emit(self, signal: Signal) -> None:
        for sink in self.sinks:
            try:
                sink.emit(signal)
            except Exception as e:
                logger.error(f"[Alert] Sink {type(sink).__name__} failed: {e}")

    def signal(
        self,
        kind: SignalKind,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Signal:
        """Build and emit a signal."""
        signal = Signal(
            kind=SignalKind(kind),
            severity=AlertSeverity(severity),
            title=title,
            message=message,
            context=context or {},
        )
        self.emit(signal)
        return signal

    def warning(self, kind: SignalKind, title: str, message: str, **context: Any) -> Signal:
        return self.signal(kind, AlertSeverity.WARNING, title, message, context)

    def info(self, kind: SignalKind, title: str, message: str, **context: Any) -> Signal:
        return self.signal(kind, AlertSeverity.INFO, title, message, context)
