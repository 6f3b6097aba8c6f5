"""Slack webhook notifier for monitoring events."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from kidguard.models import MonitoringEvent, RuleAction, Severity

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    Severity.LOW: "#2196F3",       # blue
    Severity.MEDIUM: "#FF9800",    # orange
    Severity.HIGH: "#F44336",      # red
    Severity.CRITICAL: "#9C27B0",  # purple
}

ACTION_TITLES = {
    RuleAction.BLOCK: "Blocked",
    RuleAction.ALERT: "Alert",
}


@dataclass
class SlackConfig:
    """Configuration for Slack notifier."""

    webhook_url: str
    min_severity: Severity = Severity.MEDIUM
    enabled: bool = True


class SlackNotifier:
    """Async Slack webhook notifier.

    Only block and alert events are sent; log-only events stay local.
    """

    def __init__(self, config: SlackConfig) -> None:
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def should_notify(self, event: MonitoringEvent) -> bool:
        if event.action not in ACTION_TITLES:
            return False
        return event.severity.rank >= self.config.min_severity.rank

    def format_message(self, event: MonitoringEvent, rule_description: Optional[str] = None) -> dict:
        """Format an event as a Slack message with one attachment."""
        fields = [
            {"title": "Severity", "value": event.severity.value.upper(), "short": True},
            {"title": "Type", "value": event.type.value, "short": True},
        ]
        if event.url:
            fields.append({"title": "URL", "value": f"`{event.url}`", "short": False})
        if rule_description:
            fields.append({"title": "Rule", "value": rule_description, "short": False})

        attachment = {
            "color": SEVERITY_COLORS.get(event.severity, "#808080"),
            "title": f"{ACTION_TITLES.get(event.action, event.action.value)}: {event.content or event.url or 'activity'}",
            "fields": fields,
            "footer": "kidguard",
            "ts": int(event.timestamp.timestamp()),
        }
        return {"attachments": [attachment]}

    async def send_event(self, event: MonitoringEvent, rule_description: Optional[str] = None) -> bool:
        """Send an event to Slack. Returns True if sent successfully."""
        if not self.config.enabled:
            return False

        if not self.should_notify(event):
            logger.debug(f"Skipping Slack notification for {event.action.value}/{event.severity.value}")
            return False

        try:
            client = await self._get_client()
            resp = await client.post(self.config.webhook_url, json=self.format_message(event, rule_description))
        except httpx.TimeoutException:
            logger.warning("Slack webhook timeout")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Slack webhook error: {e}")
            return False

        if resp.status_code == 200:
            logger.debug(f"Slack notification sent for event {event.id}")
            return True
        logger.warning(f"Slack webhook failed: {resp.status_code} - {resp.text}")
        return False
