"""Observation models: live flows and the monitoring events they produce."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from kidguard.models.rules import RuleAction, Severity


class EventType(Enum):
    """Kind of activity a monitoring event describes."""

    WEB_REQUEST = "web_request"
    SCREENSHOT = "screenshot"
    MESSAGING = "messaging"
    APP_USAGE = "app_usage"


@dataclass(frozen=True)
class Flow:
    """A single observed network flow awaiting a verdict.

    Attributes:
        hostname: Destination hostname (may include a port)
        client: Client address or resolved device name
        url: Full URL when the interceptor sees one (HTTP proxying)
        categories: Category tags supplied by the interceptor, if any
        event_type: Activity kind, used when the flow becomes an event
        source_app: Originating application, when known
        timestamp: When the flow was observed
    """

    hostname: str
    client: str = ""
    url: Optional[str] = None
    categories: tuple[str, ...] = ()
    event_type: EventType = EventType.WEB_REQUEST
    source_app: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Flow":
        """Build a Flow from a JSON object (enforcement stdin, tests)."""
        event_type = data.get("event_type", EventType.WEB_REQUEST.value)
        try:
            parsed_type = EventType(event_type)
        except ValueError:
            parsed_type = EventType.WEB_REQUEST
        return cls(
            hostname=str(data.get("hostname", "")),
            client=str(data.get("client", "")),
            url=data.get("url"),
            categories=tuple(str(c) for c in data.get("categories", [])),
            event_type=parsed_type,
            source_app=str(data.get("source_app", "")),
        )


@dataclass
class MonitoringEvent:
    """Record of a flow that an active rule caused to be blocked or alerted.

    Only ``processed`` is ever changed after creation, once reporting has
    consumed the event.
    """

    type: EventType
    action: RuleAction
    severity: Severity
    url: Optional[str] = None
    content: Optional[str] = None
    screenshot_path: Optional[str] = None
    rule_violated: Optional[str] = None  # Rule.id that matched, daemon side only
    processed: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "url": self.url,
            "content": self.content,
            "screenshot_path": self.screenshot_path,
            "rule_violated": self.rule_violated,
            "action": self.action.value,
            "severity": self.severity.value,
            "processed": self.processed,
        }
