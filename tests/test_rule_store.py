"""Tests for the DuckDB rule store."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from kidguard.models import EventType, MonitoringEvent, Rule, RuleAction, Severity
from kidguard.storage import RuleStore, StorageUnavailable


def make_event(action: RuleAction = RuleAction.BLOCK, **kwargs) -> MonitoringEvent:
    return MonitoringEvent(
        type=EventType.WEB_REQUEST,
        action=action,
        severity=kwargs.pop("severity", Severity.HIGH),
        url=kwargs.pop("url", "tiktok.com"),
        **kwargs,
    )


class TestRules:
    def test_add_and_list_preserves_order(self, rule_store: RuleStore) -> None:
        first = Rule("No social media", categories=["social_media"], actions=[RuleAction.BLOCK])
        second = Rule("Alert on games", categories=["games"], actions=[RuleAction.ALERT])
        rule_store.add_rule(first)
        rule_store.add_rule(second)

        rules = rule_store.list_rules()
        assert [r.id for r in rules] == [first.id, second.id]
        assert rules[0].categories == ["social_media"]
        assert rules[0].actions == [RuleAction.BLOCK]
        assert rules[1].should_block is False

    def test_active_filter(self, rule_store: RuleStore) -> None:
        active = Rule("a", actions=[RuleAction.BLOCK])
        inactive = Rule("b", actions=[RuleAction.BLOCK], is_active=False)
        rule_store.add_rule(active)
        rule_store.add_rule(inactive)

        assert [r.id for r in rule_store.list_active_rules()] == [active.id]

    def test_read_after_write(self, rule_store: RuleStore) -> None:
        rule = Rule("No games", categories=["games"], severity=Severity.CRITICAL)
        rule_store.add_rule(rule)

        loaded = rule_store.get_rule(rule.id)
        assert loaded is not None
        assert loaded.description == "No games"
        assert loaded.severity == Severity.CRITICAL
        assert loaded.created_at.tzinfo is not None

    def test_duplicate_id_rejected(self, rule_store: RuleStore) -> None:
        rule = Rule("a")
        rule_store.add_rule(rule)
        with pytest.raises(ValueError):
            rule_store.add_rule(rule)

    def test_version_bumps_on_every_mutation(self, rule_store: RuleStore) -> None:
        start = rule_store.version()
        rule = Rule("a")
        rule_store.add_rule(rule)
        after_add = rule_store.version()
        rule_store.set_rule_active(rule.id, False)
        after_toggle = rule_store.version()
        rule_store.remove_rule(rule.id)

        assert start < after_add < after_toggle < rule_store.version()

    def test_update_rule(self, rule_store: RuleStore) -> None:
        rule = Rule("old", categories=["games"])
        rule_store.add_rule(rule)
        rule_store.update_rule(Rule("new", categories=["video"], id=rule.id))

        loaded = rule_store.get_rule(rule.id)
        assert loaded is not None
        assert loaded.description == "new"
        assert loaded.categories == ["video"]

    def test_update_missing_raises(self, rule_store: RuleStore) -> None:
        with pytest.raises(KeyError):
            rule_store.update_rule(Rule("ghost"))
        with pytest.raises(KeyError):
            rule_store.set_rule_active("ghost", True)

    def test_remove(self, rule_store: RuleStore) -> None:
        rule = Rule("a")
        rule_store.add_rule(rule)
        version = rule_store.version()

        assert rule_store.remove_rule(rule.id) is True
        assert rule_store.remove_rule(rule.id) is False
        assert rule_store.get_rule(rule.id) is None
        # A failed removal is not a mutation
        assert rule_store.version() == version + 1

    def test_not_connected_is_unavailable(self, tmp_path: Path) -> None:
        store = RuleStore(tmp_path / "never.db")
        with pytest.raises(StorageUnavailable):
            store.list_active_rules()

    def test_in_memory(self) -> None:
        with RuleStore(Path(":memory:")) as store:
            store.add_rule(Rule("a"))
            assert len(store.list_rules()) == 1

    def test_persists_across_connections(self, tmp_db_path: Path) -> None:
        rule = Rule("persistent", categories=["news"])
        with RuleStore(tmp_db_path) as store:
            store.add_rule(rule)
        with RuleStore(tmp_db_path, read_only=True) as store:
            assert [r.id for r in store.list_active_rules()] == [rule.id]


class TestEvents:
    def test_insert_and_get(self, rule_store: RuleStore) -> None:
        event = make_event(rule_violated="rule-1", content="10.0.0.5 -> tiktok.com")
        rule_store.insert_event(event)

        events = rule_store.get_events()
        assert len(events) == 1
        assert events[0].id == event.id
        assert events[0].action == RuleAction.BLOCK
        assert events[0].rule_violated == "rule-1"
        assert events[0].processed is False

    def test_newest_first(self, rule_store: RuleStore) -> None:
        now = datetime.now(timezone.utc)
        older = make_event(timestamp=now - timedelta(minutes=5))
        newer = make_event(timestamp=now)
        rule_store.insert_event(older)
        rule_store.insert_event(newer)

        assert [e.id for e in rule_store.get_events()] == [newer.id, older.id]

    def test_mark_processed(self, rule_store: RuleStore) -> None:
        event = make_event()
        rule_store.insert_event(event)

        assert rule_store.mark_event_processed(event.id) is True
        assert rule_store.mark_event_processed("missing") is False
        assert rule_store.get_events(unprocessed_only=True) == []
        assert rule_store.get_events()[0].processed is True

    def test_stats(self, rule_store: RuleStore) -> None:
        rule_store.insert_event(make_event(RuleAction.BLOCK))
        rule_store.insert_event(make_event(RuleAction.BLOCK))
        rule_store.insert_event(make_event(RuleAction.ALERT, severity=Severity.LOW))
        rule_store.insert_event(
            make_event(timestamp=datetime.now(timezone.utc) - timedelta(hours=48))
        )

        stats = {(row["action"], row["severity"]): row["total"] for row in rule_store.get_event_stats(24)}
        assert stats == {("block", "high"): 2, ("alert", "low"): 1}
