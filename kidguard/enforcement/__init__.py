"""Flow enforcement against published rule snapshots."""

from kidguard.enforcement.matching import evaluate, flow_categories, rule_matches
from kidguard.enforcement.point import EnforcementPoint

__all__ = ["EnforcementPoint", "evaluate", "flow_categories", "rule_matches"]
