"""Persistent storage for rules and monitoring events."""

from kidguard.storage.db import RuleStore, StorageUnavailable

__all__ = ["RuleStore", "StorageUnavailable"]
