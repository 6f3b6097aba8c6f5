"""Tests for snapshot publication and the two-tier sync cycle."""

import json
import threading
from pathlib import Path

import pytest

from kidguard.models import CompiledRule, Rule, RuleAction
from kidguard.sync import (
    EncodingFailure,
    NoSharedStorage,
    RuleCompiler,
    RuleSyncChannel,
    SyncCycle,
    WriteFailure,
    read_snapshot,
)
from kidguard.sync import channel as channel_module
from kidguard.sync import snapshot as snapshot_module


def compiled(n: int, block: bool = True) -> list[CompiledRule]:
    return [
        CompiledRule(description=f"rule {i}", categories=[f"cat{i}"], should_block=block)
        for i in range(n)
    ]


def leftover_temp_files(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.endswith(".tmp")]


class TestPublish:
    def test_publish_and_read_back(self, shared_dir: Path) -> None:
        channel = RuleSyncChannel(shared_dir)
        result = channel.publish(compiled(3), tier="simple")

        assert result.ok
        assert result.count == 3
        snapshot = read_snapshot(channel.snapshot_path)
        assert snapshot is not None
        assert snapshot.tier == "simple"
        assert snapshot.rules == compiled(3)
        assert snapshot.published_at is not None

    def test_wire_format(self, shared_dir: Path) -> None:
        channel = RuleSyncChannel(shared_dir, snapshot_name="current.json")
        channel.publish(compiled(1), tier="enhanced")

        data = json.loads((shared_dir / "current.json").read_text())
        assert data["format"] == "kidguard.rules"
        assert data["version"] == 1
        assert data["tier"] == "enhanced"
        assert data["rules"] == [{
            "description": "rule 0",
            "categories": ["cat0"],
            "should_block": True,
            "is_active": True,
            "domain_patterns": [],
        }]

    def test_idempotent(self, shared_dir: Path) -> None:
        channel = RuleSyncChannel(shared_dir)
        channel.publish(compiled(2))
        first = read_snapshot(channel.snapshot_path)
        channel.publish(compiled(2))
        second = read_snapshot(channel.snapshot_path)

        assert first is not None and second is not None
        assert first.rules == second.rules
        assert first.tier == second.tier

    def test_empty_rule_set(self, shared_dir: Path) -> None:
        channel = RuleSyncChannel(shared_dir)
        assert channel.publish([]).count == 0
        snapshot = read_snapshot(channel.snapshot_path)
        assert snapshot is not None
        assert snapshot.rules == []

    def test_missing_shared_dir(self, tmp_path: Path) -> None:
        result = RuleSyncChannel(tmp_path / "nope").publish(compiled(1))
        assert not result.ok
        assert isinstance(result.error, NoSharedStorage)

    def test_write_failure_keeps_previous_snapshot(
        self, shared_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        channel = RuleSyncChannel(shared_dir)
        channel.publish(compiled(2))
        before = channel.snapshot_path.read_text()

        def fail_replace(src: str, dst: str) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(snapshot_module.os, "replace", fail_replace)
        result = channel.publish(compiled(5))

        assert isinstance(result.error, WriteFailure)
        assert channel.snapshot_path.read_text() == before
        assert leftover_temp_files(shared_dir) == []

    def test_snapshot_path_is_directory(self, shared_dir: Path) -> None:
        (shared_dir / "rules.json").mkdir()
        result = RuleSyncChannel(shared_dir).publish(compiled(1))

        assert isinstance(result.error, WriteFailure)
        assert leftover_temp_files(shared_dir) == []

    def test_encoding_failure(self, shared_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        def bad_encode(snapshot: object) -> str:
            raise TypeError("not serializable")

        monkeypatch.setattr(channel_module, "encode_snapshot", bad_encode)
        result = RuleSyncChannel(shared_dir).publish(compiled(1))

        assert isinstance(result.error, EncodingFailure)
        assert not (shared_dir / "rules.json").exists()

    def test_readers_never_see_partial_snapshot(self, shared_dir: Path) -> None:
        channel = RuleSyncChannel(shared_dir)
        small, large = compiled(3), compiled(40, block=False)
        channel.publish(small)

        stop = threading.Event()
        bad_reads: list[str] = []
        reads = 0

        def reader() -> None:
            nonlocal reads
            while not stop.is_set():
                snapshot = read_snapshot(channel.snapshot_path)
                reads += 1
                if snapshot is None:
                    bad_reads.append("unreadable")
                elif snapshot.rules not in (small, large):
                    bad_reads.append(f"{len(snapshot.rules)} rules")

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for i in range(200):
                assert channel.publish(large if i % 2 else small).ok
        finally:
            stop.set()
            thread.join()

        assert reads > 0
        assert bad_reads == []
        assert leftover_temp_files(shared_dir) == []


class TestReadSnapshot:
    def test_missing(self, tmp_path: Path) -> None:
        assert read_snapshot(tmp_path / "absent.json") is None

    def test_malformed_json(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text("{not json")
        assert read_snapshot(path) is None

    def test_unknown_version(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"format": "kidguard.rules", "version": 99, "rules": []}))
        assert read_snapshot(path) is None

    def test_wrong_format_tag(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"format": "something.else", "version": 1, "rules": []}))
        assert read_snapshot(path) is None

    def test_bad_rule_record(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "format": "kidguard.rules",
            "version": 1,
            "rules": [{"description": "x", "categories": [], "should_block": "maybe"}],
        }))
        assert read_snapshot(path) is None


def authored_rules() -> list[Rule]:
    return [
        Rule("No social media", categories=["social_media"], actions=[RuleAction.BLOCK]),
        Rule("Block tiktok.com", actions=[RuleAction.BLOCK]),
    ]


class TestSyncCycle:
    @pytest.mark.asyncio
    async def test_simple_only_without_classifier(self, shared_dir: Path) -> None:
        channel = RuleSyncChannel(shared_dir)
        report = await SyncCycle(RuleCompiler(), channel).run(authored_rules(), reason="test")

        assert report.ok
        assert report.tier == "simple"
        assert report.simple.count == 2
        assert report.enhanced is None
        snapshot = read_snapshot(channel.snapshot_path)
        assert snapshot is not None and snapshot.tier == "simple"

    @pytest.mark.asyncio
    async def test_enhanced_published_last(self, shared_dir: Path, fake_classifier) -> None:
        classifier = fake_classifier(labels={"tiktok.com": ["social_media"]}, default=["other"])
        channel = RuleSyncChannel(shared_dir)
        report = await SyncCycle(RuleCompiler(classifier), channel).run(authored_rules())

        assert report.tier == "enhanced"
        assert report.simple.ok
        assert report.enhanced is not None and report.enhanced.count == 2
        snapshot = read_snapshot(channel.snapshot_path)
        assert snapshot is not None
        assert snapshot.tier == "enhanced"
        assert snapshot.rules[1].domain_patterns == ["tiktok.com"]

    @pytest.mark.asyncio
    async def test_enhanced_timeout_falls_back_to_simple(self, shared_dir: Path, fake_classifier) -> None:
        classifier = fake_classifier(default=["social_media"], delay=0.5)
        channel = RuleSyncChannel(shared_dir)
        cycle = SyncCycle(RuleCompiler(classifier), channel, enhanced_timeout=0.05)
        report = await cycle.run(authored_rules())

        assert report.ok
        assert report.tier == "simple"
        assert "timed out" in (report.enhanced_error or "")
        snapshot = read_snapshot(channel.snapshot_path)
        assert snapshot is not None
        assert snapshot.tier == "simple"
        assert len(snapshot.rules) == 2

    @pytest.mark.asyncio
    async def test_enhanced_failure_falls_back_to_simple(self, shared_dir: Path, fake_classifier) -> None:
        classifier = fake_classifier(available=False)
        channel = RuleSyncChannel(shared_dir)
        report = await SyncCycle(RuleCompiler(classifier), channel).run(authored_rules())

        assert report.tier == "simple"
        assert report.enhanced is None
        assert report.enhanced_error

    @pytest.mark.asyncio
    async def test_publish_failure_reported(self, tmp_path: Path) -> None:
        channel = RuleSyncChannel(tmp_path / "missing")
        report = await SyncCycle(RuleCompiler(), channel).run(authored_rules())

        assert not report.ok
        assert report.tier is None
        assert report.error
        assert report.to_dict()["simple_error"]
