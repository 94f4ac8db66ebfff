"""
Notification Engine - Human Escalation

This module provides the notification path used whenever the autopilot
stops acting on its own:
1. Typed notifications built from templates
2. Delivery through registered channels (log, webhook)
3. Per-recipient rate limiting
4. Append-only audit log of every notification

IMPORTANT:
- All notifications are logged for audit, delivered or not
- A failing channel never raises into the caller
- No credentials or full error dumps in notification text
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import NotificationConfig

logger = logging.getLogger("notification_engine")

NOTIFICATION_LOG_FILE = "notifications.jsonl"


class NotificationType(str, Enum):
    ESCALATION = "escalation"
    LOOP_DETECTED = "loop_detected"
    PROJECT_QUARANTINED = "project_quarantined"
    PHASE_COMPLETED = "phase_completed"
    PROJECT_COMPLETED = "project_completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ACTION_FAILED = "action_failed"
    VCS_FAILURE = "vcs_failure"
    SYSTEM_ALERT = "system_alert"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Notification:
    """Represents a notification to be sent."""
    notification_type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    project_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utc_now)
    delivered_at: Optional[datetime] = None
    delivery_channel: Optional[str] = None
    delivery_error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "type": self.notification_type.value,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "project_name": self.project_name,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "delivery_channel": self.delivery_channel,
            "delivery_error": self.delivery_error,
        }


class NotificationTemplates:
    """Pre-defined notification templates."""

    @staticmethod
    def escalation(project_name: str, state: str, reasoning: str) -> Notification:
        return Notification(
            notification_type=NotificationType.ESCALATION,
            title="Attention Needed",
            message=(
                f"*Attention needed*\n\n"
                f"*Project:* {project_name}\n"
                f"*Session state:* {state}\n"
                f"*Reason:* {reasoning}"
            ),
            priority=NotificationPriority.HIGH,
            project_name=project_name,
            metadata={"state": state},
        )

    @staticmethod
    def loop_detected(project_name: str, state: str, reasoning: str, repeats: int) -> Notification:
        return Notification(
            notification_type=NotificationType.LOOP_DETECTED,
            title="Session Appears Stuck",
            message=(
                f"*Session appears stuck*\n\n"
                f"*Project:* {project_name}\n"
                f"*Session state:* {state}\n"
                f"{reasoning}\n\n"
                f"Automated input is paused until the state changes."
            ),
            priority=NotificationPriority.HIGH,
            project_name=project_name,
            metadata={"state": state, "repeats": repeats},
        )

    @staticmethod
    def project_quarantined(project_name: str, failures: int, last_error: Optional[str]) -> Notification:
        return Notification(
            notification_type=NotificationType.PROJECT_QUARANTINED,
            title="Project Quarantined",
            message=(
                f"*Project quarantined*\n\n"
                f"*Project:* {project_name}\n"
                f"*Consecutive failures:* {failures}\n"
                f"*Last error:* {(last_error or 'unknown')[:300]}\n\n"
                f"Run `autopilot reset {project_name}` to resume."
            ),
            priority=NotificationPriority.URGENT,
            project_name=project_name,
            metadata={"failures": failures},
        )

    @staticmethod
    def phase_completed(project_name: str, phase: str, next_phase: str) -> Notification:
        return Notification(
            notification_type=NotificationType.PHASE_COMPLETED,
            title="Phase Completed",
            message=(
                f"*Phase completed*\n\n"
                f"*Project:* {project_name}\n"
                f"*Completed:* {phase}\n"
                f"*Next:* {next_phase}"
            ),
            priority=NotificationPriority.NORMAL,
            project_name=project_name,
            metadata={"phase": phase, "next_phase": next_phase},
        )

    @staticmethod
    def project_completed(project_name: str, final_phase: str) -> Notification:
        return Notification(
            notification_type=NotificationType.PROJECT_COMPLETED,
            title="Project Completed",
            message=(
                f"*Project completed*\n\n"
                f"*Project:* {project_name}\n"
                f"*Final phase:* {final_phase}"
            ),
            priority=NotificationPriority.NORMAL,
            project_name=project_name,
            metadata={"phase": final_phase},
        )

    @staticmethod
    def budget_exhausted(project_name: str, reason: str) -> Notification:
        return Notification(
            notification_type=NotificationType.BUDGET_EXHAUSTED,
            title="Reasoning Budget Exhausted",
            message=(
                f"*Reasoning budget exhausted*\n\n"
                f"{reason}\n\n"
                f"Decisions continue with built-in rules until the budget resets."
            ),
            priority=NotificationPriority.NORMAL,
            project_name=project_name,
            metadata={"reason": reason},
        )

    @staticmethod
    def action_failed(project_name: str, action: str, message: str, attempts: int) -> Notification:
        return Notification(
            notification_type=NotificationType.ACTION_FAILED,
            title="Action Failed",
            message=(
                f"*Action failed*\n\n"
                f"*Project:* {project_name}\n"
                f"*Action:* {action}\n"
                f"*Attempts:* {attempts}\n"
                f"*Error:* {message[:300]}"
            ),
            priority=NotificationPriority.HIGH,
            project_name=project_name,
            metadata={"action": action, "attempts": attempts},
        )

    @staticmethod
    def vcs_failure(project_name: str, operation: str, error: str) -> Notification:
        return Notification(
            notification_type=NotificationType.VCS_FAILURE,
            title="Version Control Failure",
            message=(
                f"*Version control failure*\n\n"
                f"*Project:* {project_name}\n"
                f"*Operation:* {operation}\n"
                f"*Error:* {error[:300]}"
            ),
            priority=NotificationPriority.HIGH,
            project_name=project_name,
            metadata={"operation": operation},
        )

    @staticmethod
    def system_alert(title: str, error: str) -> Notification:
        return Notification(
            notification_type=NotificationType.SYSTEM_ALERT,
            title=title,
            message=(
                f"*{title}*\n\n"
                f"*Error:* {error[:300]}\n\n"
                f"The orchestrator keeps running and retries every cycle."
            ),
            priority=NotificationPriority.URGENT,
            metadata={"error": error},
        )


ChannelHandler = Callable[[Notification], Awaitable[bool]]


class NotificationEngine:
    """
    Central notification engine.

    Features:
    - Multiple delivery channels
    - Rate limiting per recipient
    - Delivery tracking and logging
    """

    def __init__(
        self,
        log_dir: Path,
        rate_limit_window: int = 60,
        rate_limit_max: int = 10,
    ):
        self._log_file = Path(log_dir) / NOTIFICATION_LOG_FILE
        self._rate_limit_window = rate_limit_window
        self._rate_limit_max = rate_limit_max
        self._channels: Dict[str, ChannelHandler] = {}
        self._rate_limits: Dict[str, List[datetime]] = {}

    @property
    def channels(self) -> List[str]:
        return list(self._channels.keys())

    def register_channel(self, name: str, handler: ChannelHandler) -> None:
        """Register a notification delivery channel."""
        self._channels[name] = handler
        logger.info(f"Registered notification channel: {name}")

    def _check_rate_limit(self, recipient: str) -> bool:
        """Check if recipient is within rate limit."""
        now = _utc_now()
        window_start = now - timedelta(seconds=self._rate_limit_window)

        recent = [t for t in self._rate_limits.get(recipient, []) if t > window_start]
        if len(recent) >= self._rate_limit_max:
            self._rate_limits[recipient] = recent
            return False

        recent.append(now)
        self._rate_limits[recipient] = recent
        return True

    def _log_notification(self, notification: Notification) -> None:
        """Log notification for audit."""
        try:
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a") as f:
                f.write(json.dumps(notification.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to log notification: {e}")

    async def send(
        self,
        notification: Notification,
        channel: Optional[str] = None,
        recipient: Optional[str] = None,
    ) -> bool:
        """
        Send a notification through the given channel, or every channel.

        Returns:
            True if at least one channel delivered it
        """
        recipient = recipient or notification.project_name or "default"
        if not self._check_rate_limit(recipient):
            logger.warning(f"Notification rate limit exceeded for {recipient}: {notification.title}")
            notification.delivery_error = "Rate limit exceeded"
            self._log_notification(notification)
            return False

        channels = [channel] if channel else list(self._channels.keys())
        delivered = False
        for ch_name in channels:
            handler = self._channels.get(ch_name)
            if handler is None:
                logger.warning(f"Unknown notification channel: {ch_name}")
                continue
            try:
                if await handler(notification):
                    notification.delivered_at = _utc_now()
                    notification.delivery_channel = ch_name
                    delivered = True
            except Exception as e:
                logger.error(f"Channel {ch_name} delivery failed: {e}")
                notification.delivery_error = str(e)

        self._log_notification(notification)
        return delivered

    def get_recent_notifications(self, project_name: Optional[str] = None, limit: int = 50) -> List[Dict]:
        """Get recent notifications from the audit log."""
        notifications: List[Dict] = []
        if not self._log_file.exists():
            return notifications

        try:
            with open(self._log_file) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    entry = json.loads(line)
                    if project_name is None or entry.get("project_name") == project_name:
                        notifications.append(entry)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read notifications: {e}")

        return notifications[-limit:]


# -----------------------------------------------------------------------------
# Channels
# -----------------------------------------------------------------------------
async def log_channel(notification: Notification) -> bool:
    """Write the notification to the application log."""
    project = f"[{notification.project_name}] " if notification.project_name else ""
    logger.warning(f"NOTIFY {project}{notification.title}: {notification.message}")
    return True


def webhook_channel(
    url: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ChannelHandler:
    """Channel that POSTs the notification as JSON to a webhook."""

    async def send(notification: Notification) -> bool:
        payload = notification.to_dict()
        payload["text"] = f"{notification.title}\n{notification.message}"
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            try:
                response = await client.post(url, json=payload)
            except httpx.HTTPError as e:
                logger.error(f"Webhook send error: {e}")
                return False
        if response.status_code >= 400:
            logger.error(f"Webhook returned HTTP {response.status_code}")
            return False
        return True

    return send


def create_notification_engine(config: NotificationConfig, log_dir: Path) -> NotificationEngine:
    engine = NotificationEngine(
        log_dir=log_dir,
        rate_limit_window=config.rate_limit_window_seconds,
        rate_limit_max=config.rate_limit_max,
    )
    engine.register_channel("log", log_channel)
    if config.webhook_url:
        engine.register_channel("webhook", webhook_channel(config.webhook_url, config.timeout_seconds))
    return engine
