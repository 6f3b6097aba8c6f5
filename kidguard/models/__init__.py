"""Data models for kidguard rules, snapshots and events."""

from kidguard.models.events import EventType, Flow, MonitoringEvent
from kidguard.models.rules import (
    ALLOW,
    CompiledRule,
    Decision,
    Rule,
    RuleAction,
    Severity,
    Verdict,
    parse_actions,
)

__all__ = [
    "ALLOW",
    "CompiledRule",
    "Decision",
    "EventType",
    "Flow",
    "MonitoringEvent",
    "Rule",
    "RuleAction",
    "Severity",
    "Verdict",
    "parse_actions",
]
