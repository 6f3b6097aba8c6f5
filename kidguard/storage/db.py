"""DuckDB storage for kidguard rules and monitoring events.

The rule table is the source of truth for rule authoring. Every mutation
bumps a store version so the daemon can notice rule changes cheaply on its
periodic tick. Monitoring events are appended here and only ever have their
``processed`` flag flipped.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import duckdb

from kidguard.models import EventType, MonitoringEvent, Rule, RuleAction, Severity

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1


class StorageUnavailable(Exception):
    """The backing rule store cannot be read."""


def _to_naive_utc(value: datetime) -> datetime:
    # Stored as plain TIMESTAMP in UTC; tz-aware values are normalized first
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RuleStore:
    """DuckDB-backed store for parental control rules and monitoring events."""

    def __init__(self, db_path: Path, read_only: bool = False) -> None:
        """Initialize the rule store.

        Args:
            db_path: Path to the DuckDB database file. Use ":memory:" for in-memory.
            read_only: If True, open in read-only mode.
        """
        self.db_path = Path(db_path)
        self.read_only = read_only
        self._conn: Optional[duckdb.DuckDBPyConnection] = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        if self.db_path == Path(":memory:"):
            db_str = ":memory:"
        else:
            db_str = str(self.db_path)
            if not self.read_only:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = duckdb.connect(db_str, read_only=self.read_only)
        except duckdb.Error as e:
            raise StorageUnavailable(f"Cannot open rule store {self.db_path}: {e}") from e

        if not self.read_only:
            self._ensure_schema()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "RuleStore":
        if self._conn is None:
            self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get the database connection, raising if not connected."""
        if self._conn is None:
            raise StorageUnavailable("RuleStore not connected. Call connect() first.")
        return self._conn

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        result = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current_version = result[0] if result and result[0] else 0

        if current_version < SCHEMA_VERSION:
            self._apply_schema()
            self.conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                [SCHEMA_VERSION]
            )

    def _apply_schema(self) -> None:
        """Apply the database schema."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS rules (
                id VARCHAR PRIMARY KEY,
                description VARCHAR NOT NULL,
                categories VARCHAR[] NOT NULL,
                actions VARCHAR[] NOT NULL,
                severity VARCHAR NOT NULL,
                is_active BOOLEAN NOT NULL,
                created_at TIMESTAMP NOT NULL,
                position BIGINT NOT NULL
            )
        """)

        # Single-row counter bumped on every rule mutation
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS rule_store_meta (
                id INTEGER PRIMARY KEY,
                version BIGINT NOT NULL
            )
        """)
        self.conn.execute("""
            INSERT INTO rule_store_meta (id, version) VALUES (1, 0)
            ON CONFLICT (id) DO NOTHING
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS monitoring_events (
                id VARCHAR PRIMARY KEY,
                timestamp TIMESTAMP NOT NULL,
                type VARCHAR NOT NULL,
                url VARCHAR,
                content VARCHAR,
                screenshot_path VARCHAR,
                rule_violated VARCHAR,
                action VARCHAR NOT NULL,
                severity VARCHAR NOT NULL,
                processed BOOLEAN DEFAULT FALSE,

                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_timestamp
            ON monitoring_events (timestamp)
        """)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _bump_version(self) -> None:
        self.conn.execute("UPDATE rule_store_meta SET version = version + 1 WHERE id = 1")

    def version(self) -> int:
        """Return the rule set version; changes after every successful mutation."""
        try:
            row = self.conn.execute(
                "SELECT version FROM rule_store_meta WHERE id = 1"
            ).fetchone()
        except duckdb.Error as e:
            raise StorageUnavailable(f"Cannot read rule store version: {e}") from e
        return int(row[0]) if row else 0

    def _row_to_rule(self, row: tuple) -> Rule:
        rule_id, description, categories, actions, severity, is_active, created_at = row
        return Rule(
            id=rule_id,
            description=description,
            categories=list(categories or []),
            actions=list(actions or []),
            severity=Severity.parse(severity),
            is_active=bool(is_active),
            created_at=_from_naive_utc(created_at),
        )

    def _select_rules(self, where: str = "", params: Optional[list[Any]] = None) -> list[Rule]:
        try:
            rows = self.conn.execute(f"""
                SELECT id, description, categories, actions, severity, is_active, created_at
                FROM rules
                {where}
                ORDER BY position
            """, params or []).fetchall()
        except duckdb.Error as e:
            raise StorageUnavailable(f"Cannot read rules: {e}") from e
        return [self._row_to_rule(row) for row in rows]

    def list_rules(self) -> list[Rule]:
        """Return all rules, active or not, in authoring order."""
        return self._select_rules()

    def list_active_rules(self) -> list[Rule]:
        """Return active rules in authoring order.

        Raises:
            StorageUnavailable: if the backing database cannot be read
        """
        return self._select_rules("WHERE is_active = TRUE")

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        """Look up a single rule by id."""
        rules = self._select_rules("WHERE id = ?", [rule_id])
        return rules[0] if rules else None

    def add_rule(self, rule: Rule) -> str:
        """Insert a new rule and return its id.

        Raises:
            ValueError: if a rule with the same id already exists
        """
        if self.get_rule(rule.id) is not None:
            raise ValueError(f"Rule {rule.id} already exists")

        row = self.conn.execute("SELECT COALESCE(MAX(position), 0) + 1 FROM rules").fetchone()
        position = row[0] if row else 1

        self.conn.execute("""
            INSERT INTO rules (
                id, description, categories, actions, severity, is_active, created_at, position
            ) VALUES (?, ?, CAST(? AS VARCHAR[]), CAST(? AS VARCHAR[]), ?, ?, ?, ?)
        """, [
            rule.id,
            rule.description,
            list(rule.categories),
            [a.value for a in rule.actions],
            rule.severity.value,
            rule.is_active,
            _to_naive_utc(rule.created_at),
            position,
        ])
        self._bump_version()
        logger.debug(f"Added rule {rule.id}: {rule.description}")
        return rule.id

    def update_rule(self, rule: Rule) -> None:
        """Replace an existing rule's editable fields.

        The id and creation time are immutable; the stored created_at is kept.

        Raises:
            KeyError: if the rule does not exist
        """
        if self.get_rule(rule.id) is None:
            raise KeyError(rule.id)

        self.conn.execute("""
            UPDATE rules SET
                description = ?,
                categories = CAST(? AS VARCHAR[]),
                actions = CAST(? AS VARCHAR[]),
                severity = ?,
                is_active = ?
            WHERE id = ?
        """, [
            rule.description,
            list(rule.categories),
            [a.value for a in rule.actions],
            rule.severity.value,
            rule.is_active,
            rule.id,
        ])
        self._bump_version()

    def set_rule_active(self, rule_id: str, active: bool) -> None:
        """Activate or deactivate a rule.

        Raises:
            KeyError: if the rule does not exist
        """
        if self.get_rule(rule_id) is None:
            raise KeyError(rule_id)
        self.conn.execute("UPDATE rules SET is_active = ? WHERE id = ?", [active, rule_id])
        self._bump_version()

    def remove_rule(self, rule_id: str) -> bool:
        """Delete a rule. Returns False if it did not exist."""
        if self.get_rule(rule_id) is None:
            return False
        self.conn.execute("DELETE FROM rules WHERE id = ?", [rule_id])
        self._bump_version()
        logger.debug(f"Removed rule {rule_id}")
        return True

    # ------------------------------------------------------------------
    # Monitoring events
    # ------------------------------------------------------------------

    def insert_event(self, event: MonitoringEvent) -> str:
        """Insert a monitoring event and return its ID."""
        self.conn.execute("""
            INSERT INTO monitoring_events (
                id, timestamp, type, url, content, screenshot_path,
                rule_violated, action, severity, processed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            event.id,
            _to_naive_utc(event.timestamp),
            event.type.value,
            event.url,
            event.content,
            event.screenshot_path,
            event.rule_violated,
            event.action.value,
            event.severity.value,
            event.processed,
        ])
        return event.id

    def mark_event_processed(self, event_id: str) -> bool:
        """Flip an event's processed flag. Returns False if it does not exist."""
        row = self.conn.execute(
            "SELECT processed FROM monitoring_events WHERE id = ?", [event_id]
        ).fetchone()
        if row is None:
            return False
        self.conn.execute(
            "UPDATE monitoring_events SET processed = TRUE WHERE id = ?", [event_id]
        )
        return True

    def get_events(self, limit: int = 100, unprocessed_only: bool = False) -> list[MonitoringEvent]:
        """Return the most recent monitoring events, newest first."""
        where = "WHERE processed = FALSE" if unprocessed_only else ""
        rows = self.conn.execute(f"""
            SELECT id, timestamp, type, url, content, screenshot_path,
                   rule_violated, action, severity, processed
            FROM monitoring_events
            {where}
            ORDER BY timestamp DESC
            LIMIT ?
        """, [limit]).fetchall()

        events = []
        for row in rows:
            (event_id, timestamp, event_type, url, content, screenshot_path,
             rule_violated, action, severity, processed) = row
            events.append(MonitoringEvent(
                id=event_id,
                timestamp=_from_naive_utc(timestamp),
                type=EventType(event_type),
                url=url,
                content=content,
                screenshot_path=screenshot_path,
                rule_violated=rule_violated,
                action=RuleAction(action),
                severity=Severity.parse(severity),
                processed=bool(processed),
            ))
        return events

    def get_event_stats(self, hours: int = 24) -> list[dict]:
        """Get event counts per action and severity for the last N hours."""
        cutoff = _to_naive_utc(datetime.now(timezone.utc) - timedelta(hours=hours))
        result = self.conn.execute("""
            SELECT
                action,
                severity,
                COUNT(*) as total,
                SUM(CASE WHEN processed THEN 0 ELSE 1 END) as unprocessed
            FROM monitoring_events
            WHERE timestamp > ?
            GROUP BY action, severity
            ORDER BY total DESC
        """, [cutoff]).fetchall()

        columns = ["action", "severity", "total", "unprocessed"]
        return [dict(zip(columns, row)) for row in result]
