"""Notifiers for delivering monitoring events to people."""

from kidguard.notifiers.slack import SlackConfig, SlackNotifier

__all__ = ["SlackConfig", "SlackNotifier"]
