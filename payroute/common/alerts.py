"""Alert dispatch injected into the selector and payment service."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from payroute.common.logging import logger


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


@dataclass
class Alert:
    """One operational alert."""

    level: AlertLevel
    title: str
    message: str
    source: str
    alert_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)


class AlertChannel(Protocol):
    def send(self, alert: Alert) -> None: ...


class LogAlertChannel:
    """Write alerts to the structured log; the default channel."""

    def send(self, alert: Alert) -> None:
        level = {
            AlertLevel.INFO: "info",
            AlertLevel.WARNING: "warning",
            AlertLevel.CRITICAL: "critical",
            AlertLevel.EMERGENCY: "critical",
        }[alert.level]
        getattr(logger, level)(
            "alert level=%s title=%s source=%s message=%s",
            alert.level.value,
            alert.title,
            alert.source,
            alert.message,
        )


class AlertManager:
    """Fan an alert out to every configured channel.

    A channel failure is logged and does not stop delivery to the others.
    """

    def __init__(self, channels: list[AlertChannel] | None = None, history_size: int = 200) -> None:
        self.channels = channels if channels is not None else [LogAlertChannel()]
        self.history: deque[Alert] = deque(maxlen=history_size)

    def trigger(self, alert: Alert) -> None:
        self.history.append(alert)
        for channel in self.channels:
            try:
                channel.send(alert)
            except Exception as exc:
                logger.exception("alert_channel_failed title=%s error=%s", alert.title, exc)

    def critical(self, title: str, message: str, source: str, **metadata: Any) -> Alert:
        alert = Alert(level=AlertLevel.CRITICAL, title=title, message=message, source=source, metadata=metadata)
        self.trigger(alert)
        return alert

    def warning(self, title: str, message: str, source: str, **metadata: Any) -> Alert:
        alert = Alert(level=AlertLevel.WARNING, title=title, message=message, source=source, metadata=metadata)
        self.trigger(alert)
        return alert
