"""Rule compilation into the enforcement-ready form.

Two tiers:
- simple: a pure projection of every active rule. Total, never fails.
- enhanced: the simple projection enriched with domains pulled out of the
  rule description and categories from the classifier. All or nothing; any
  classifier problem fails the whole tier.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from kidguard.llm.classifier import ContentClassifier
from kidguard.models import CompiledRule, Rule
from kidguard.policies.category_classifier import normalize_category

logger = logging.getLogger(__name__)

DOMAIN_PATTERN = re.compile(r"\b[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*\.(?:com|org|net|edu|gov|io|tv|app|ai)\b")

# Services users name without a TLD ("no tiktok after 9")
COMMON_SERVICES = [
    "tiktok",
    "facebook",
    "instagram",
    "twitter",
    "youtube",
    "snapchat",
    "netflix",
    "reddit",
    "pinterest",
    "linkedin",
    "discord",
    "roblox",
    "twitch",
]


def extract_domain_patterns(description: str) -> list[str]:
    """Pull explicit domains and well-known service names out of rule text.

    Args:
        description: Free-form rule description

    Returns:
        Ordered, de-duplicated lowercase hostname substrings
    """
    text = description.lower()
    patterns: list[str] = []
    for match in DOMAIN_PATTERN.finditer(text):
        domain = match.group(0)
        if domain.startswith("www."):
            domain = domain[4:]
        if domain not in patterns:
            patterns.append(domain)
    for service in COMMON_SERVICES:
        if re.search(rf"\b{service}\b", text) and not any(service in p for p in patterns):
            patterns.append(service)
    return patterns


@dataclass(frozen=True)
class EnhancedResult:
    """Outcome of the enhanced tier: rules on success, an error otherwise."""

    rules: Optional[list[CompiledRule]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.rules is not None


class RuleCompiler:
    """Compiles canonical rules into CompiledRules."""

    def __init__(self, classifier: Optional[ContentClassifier] = None) -> None:
        self.classifier = classifier

    def compile(self, rules: Iterable[Rule]) -> list[CompiledRule]:
        """Simple tier: one CompiledRule per active rule, order preserved."""
        return [CompiledRule.from_rule(rule) for rule in rules if rule.is_active]

    def compile_enhanced(self, rules: Iterable[Rule]) -> EnhancedResult:
        """Enhanced tier. Blocking; the caller bounds it with a timeout."""
        if self.classifier is None:
            return EnhancedResult(error="no classifier configured")
        if not self.classifier.available:
            return EnhancedResult(error="classifier unavailable")

        compiled: list[CompiledRule] = []
        try:
            for rule in rules:
                if not rule.is_active:
                    continue
                compiled.append(self._enhance(rule))
        except Exception as e:
            logger.warning(f"Enhanced compile failed: {e}")
            return EnhancedResult(error=str(e) or type(e).__name__)

        logger.debug(f"Enhanced compile produced {len(compiled)} rules")
        return EnhancedResult(rules=compiled)

    def _enhance(self, rule: Rule) -> CompiledRule:
        base = CompiledRule.from_rule(rule)
        patterns = extract_domain_patterns(rule.description)
        categories = list(base.categories)

        subjects = []
        if patterns:
            subjects.append(patterns[0])
        if not categories:
            subjects.append(rule.description)

        for subject in subjects:
            label = self.classifier.classify(subject)
            if label is None:
                raise RuntimeError(f"classifier gave no label for {subject!r}")
            for category in label.categories:
                category = normalize_category(category)
                if category and category != "other" and category not in categories:
                    categories.append(category)

        return replace(base, categories=categories, domain_patterns=patterns)
