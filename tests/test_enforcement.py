"""Tests for the enforcement point and flow matching."""

import json
from pathlib import Path

from kidguard.enforcement import EnforcementPoint, evaluate
from kidguard.models import CompiledRule, Flow, Rule, RuleAction, Verdict
from kidguard.sync import RuleCompiler, RuleSyncChannel

BLOCK_PAGE = "http://blocked.kidguard.local/"


def publish(shared_dir: Path, rules: list[Rule], tier: str = "simple") -> Path:
    channel = RuleSyncChannel(shared_dir)
    assert channel.publish(RuleCompiler().compile(rules), tier=tier).ok
    return channel.snapshot_path


def no_social_media() -> Rule:
    return Rule("No social media", categories=["social_media"], actions=[RuleAction.BLOCK])


class TestFailOpen:
    def test_missing_snapshot_allows(self, tmp_path: Path) -> None:
        point = EnforcementPoint(tmp_path / "rules.json")

        assert point.snapshot is None
        assert point.decide(Flow(hostname="tiktok.com")).verdict == Verdict.ALLOW
        assert point.is_stale(3600) is True
        assert point.snapshot_age() is None

    def test_unknown_version_allows(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "format": "kidguard.rules",
            "version": 2,
            "rules": [{"description": "x", "categories": ["social_media"], "should_block": True}],
        }))
        point = EnforcementPoint(path)
        assert point.decide(Flow(hostname="instagram.com")).verdict == Verdict.ALLOW

    def test_corrupt_snapshot_allows(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text("\x00\x01garbage")
        point = EnforcementPoint(path)
        assert point.decide(Flow(hostname="instagram.com")).verdict == Verdict.ALLOW


class TestDecide:
    def test_block_by_category(self, shared_dir: Path) -> None:
        point = EnforcementPoint(publish(shared_dir, [no_social_media()]))

        decision = point.decide(Flow(hostname="www.instagram.com:443"))
        assert decision.verdict == Verdict.BLOCK
        assert decision.rule is not None
        assert decision.rule.description == "No social media"

        assert point.decide(Flow(hostname="khanacademy.org")).verdict == Verdict.ALLOW

    def test_interceptor_tags(self, shared_dir: Path) -> None:
        point = EnforcementPoint(publish(shared_dir, [no_social_media()]))
        flow = Flow(hostname="cdn.example.net", categories=("Social Media",))
        assert point.decide(flow).verdict == Verdict.BLOCK

    def test_redirect_needs_url(self, shared_dir: Path) -> None:
        point = EnforcementPoint(publish(shared_dir, [no_social_media()]), redirect_url=BLOCK_PAGE)

        with_url = point.decide(Flow(hostname="reddit.com", url="http://reddit.com/r/all"))
        assert with_url.verdict == Verdict.REDIRECT
        assert with_url.redirect_url == BLOCK_PAGE

        assert point.decide(Flow(hostname="reddit.com")).verdict == Verdict.BLOCK

    def test_alert_rule_allows_with_match(self, shared_dir: Path) -> None:
        rule = Rule("Watch games", categories=["games"], actions=[RuleAction.ALERT])
        point = EnforcementPoint(publish(shared_dir, [rule]))

        decision = point.decide(Flow(hostname="roblox.com"))
        assert decision.verdict == Verdict.ALLOW
        assert decision.matched

    def test_snapshot_age(self, shared_dir: Path) -> None:
        point = EnforcementPoint(publish(shared_dir, [no_social_media()]))
        age = point.snapshot_age()
        assert age is not None and age < 60
        assert point.is_stale(3600) is False
        assert point.rule_count == 1


class TestReload:
    def test_explicit_reload(self, shared_dir: Path) -> None:
        path = publish(shared_dir, [])
        point = EnforcementPoint(path)
        assert point.decide(Flow(hostname="tiktok.com")).verdict == Verdict.ALLOW

        publish(shared_dir, [no_social_media()])
        # Cached decision until reload
        assert point.decide(Flow(hostname="tiktok.com")).verdict == Verdict.ALLOW
        assert point.reload() is True
        assert point.decide(Flow(hostname="tiktok.com")).verdict == Verdict.BLOCK

    def test_poll_detects_change(self, shared_dir: Path) -> None:
        path = publish(shared_dir, [])
        point = EnforcementPoint(path, poll_interval=0)
        assert point.decide(Flow(hostname="tiktok.com")).verdict == Verdict.ALLOW

        publish(shared_dir, [no_social_media()])
        assert point.decide(Flow(hostname="tiktok.com")).verdict == Verdict.BLOCK

    def test_snapshot_removed_fails_open_on_reload(self, shared_dir: Path) -> None:
        path = publish(shared_dir, [no_social_media()])
        point = EnforcementPoint(path)
        path.unlink()

        assert point.reload() is False
        assert point.decide(Flow(hostname="tiktok.com")).verdict == Verdict.ALLOW


class TestEvaluate:
    def test_blocking_rule_wins_over_earlier_alert(self) -> None:
        rules = [
            CompiledRule("alert on video", ["video"], should_block=False),
            CompiledRule("block youtube", ["youtube"], should_block=True),
        ]
        decision = evaluate(rules, Flow(hostname="m.youtube.com"))
        assert decision.verdict == Verdict.BLOCK
        assert decision.rule is rules[1]

    def test_inactive_rule_ignored(self) -> None:
        rules = [CompiledRule("x", ["social_media"], should_block=True, is_active=False)]
        assert not evaluate(rules, Flow(hostname="tiktok.com")).matched

    def test_domain_patterns(self) -> None:
        rules = [CompiledRule("no minecraft servers", [], should_block=True, domain_patterns=["hypixel.net"])]
        assert evaluate(rules, Flow(hostname="mc.hypixel.net")).verdict == Verdict.BLOCK
        assert evaluate(rules, Flow(hostname="example.net")).verdict == Verdict.ALLOW

    def test_hostname_named_in_description(self) -> None:
        rules = [CompiledRule("Block coolmathgames.com please", [], should_block=True)]
        assert evaluate(rules, Flow(hostname="www.coolmathgames.com")).verdict == Verdict.BLOCK

    def test_description_domain_matches_by_label(self) -> None:
        rules = [
            CompiledRule("Block reddit.com", [], should_block=True),
            CompiledRule("Block netflix.com", [], should_block=True),
        ]
        assert evaluate(rules, Flow(hostname="old.reddit.com")).verdict == Verdict.BLOCK
        assert evaluate(rules, Flow(hostname="netflix.com")).verdict == Verdict.BLOCK
        assert evaluate(rules, Flow(hostname="t.co")).verdict == Verdict.ALLOW
        assert evaluate(rules, Flow(hostname="x.com")).verdict == Verdict.ALLOW
        assert evaluate(rules, Flow(hostname="notreddit.com")).verdict == Verdict.ALLOW

    def test_service_name_pattern(self) -> None:
        rules = [CompiledRule("no tiktok", [], should_block=True, domain_patterns=["tiktok", "*.roblox.com"])]
        assert evaluate(rules, Flow(hostname="vm.tiktokcdn.com")).verdict == Verdict.BLOCK
        assert evaluate(rules, Flow(hostname="web.roblox.com")).verdict == Verdict.BLOCK
        assert evaluate(rules, Flow(hostname="roblox.com.evil.example")).verdict == Verdict.ALLOW

    def test_extra_categories(self) -> None:
        rules = [CompiledRule("no gambling", ["gambling"], should_block=True)]
        flow = Flow(hostname="spin-palace.example")
        assert evaluate(rules, flow).verdict == Verdict.ALLOW
        assert evaluate(rules, flow, extra_categories=["Gambling"]).verdict == Verdict.BLOCK
