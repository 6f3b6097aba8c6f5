"""Rule models: canonical rules and their enforcement-ready form."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional


class Severity(Enum):
    """Rule and event severity, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any, default: Optional["Severity"] = None) -> "Severity":
        """Parse a severity string, falling back to ``default`` (MEDIUM)."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.MEDIUM


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class RuleAction(Enum):
    """What a rule asks for when it matches."""

    BLOCK = "block"
    ALERT = "alert"
    LOG = "log"
    REDIRECT = "redirect"


def parse_actions(values: Iterable[Any]) -> list[RuleAction]:
    """Parse action strings into an ordered, de-duplicated action list.

    Unrecognized values are dropped, so a rule whose actions are all unknown
    ends up with an empty action set.
    """
    actions: list[RuleAction] = []
    for value in values or []:
        if isinstance(value, RuleAction):
            action = value
        else:
            try:
                action = RuleAction(str(value).strip().lower())
            except ValueError:
                continue
        if action not in actions:
            actions.append(action)
    return actions


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Rule:
    """A user-authored parental control rule.

    Attributes:
        id: Unique, immutable identifier (uuid4 string)
        description: Human-readable rule text, e.g. "block social media"
        categories: Category tags the rule applies to
        actions: Ordered set of actions; duplicates are collapsed
        severity: How serious a violation of this rule is
        is_active: Inactive rules are never compiled into a snapshot
        created_at: Creation time (UTC)
    """

    description: str
    categories: list[str] = field(default_factory=list)
    actions: list[RuleAction] = field(default_factory=list)
    severity: Severity = Severity.MEDIUM
    is_active: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "actions", parse_actions(self.actions))
        object.__setattr__(self, "categories", [c for c in self.categories if c])

    @property
    def should_block(self) -> bool:
        return RuleAction.BLOCK in self.actions

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "categories": list(self.categories),
            "actions": [a.value for a in self.actions],
            "severity": self.severity.value,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        """Build a Rule from a plain dict (command channel, JSON files)."""
        kwargs: dict[str, Any] = {
            "description": str(data.get("description", "")),
            "categories": [str(c) for c in data.get("categories", [])],
            "actions": parse_actions(data.get("actions", [])),
            "severity": Severity.parse(data.get("severity", "medium")),
            "is_active": bool(data.get("is_active", True)),
        }
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        created_at = data.get("created_at")
        if isinstance(created_at, datetime):
            kwargs["created_at"] = created_at
        elif created_at:
            kwargs["created_at"] = datetime.fromisoformat(str(created_at))
        return cls(**kwargs)


@dataclass(frozen=True)
class CompiledRule:
    """Enforcement-ready projection of one Rule.

    Deliberately carries no reference back to the source rule's id, so the
    sandboxed enforcement point never learns rule identities.
    """

    description: str
    categories: list[str]
    should_block: bool
    is_active: bool = True
    domain_patterns: list[str] = field(default_factory=list)

    @classmethod
    def from_rule(cls, rule: Rule) -> "CompiledRule":
        return cls(
            description=rule.description,
            categories=list(rule.categories),
            should_block=rule.should_block,
            is_active=rule.is_active,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "categories": list(self.categories),
            "should_block": self.should_block,
            "is_active": self.is_active,
            "domain_patterns": list(self.domain_patterns),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompiledRule":
        """Parse a snapshot record. Raises TypeError/KeyError on bad shape."""
        categories = data["categories"]
        if not isinstance(categories, list):
            raise TypeError("categories must be a list")
        should_block = data["should_block"]
        if not isinstance(should_block, bool):
            raise TypeError("should_block must be a boolean")
        return cls(
            description=str(data["description"]),
            categories=[str(c) for c in categories],
            should_block=should_block,
            is_active=bool(data.get("is_active", True)),
            domain_patterns=[str(p) for p in data.get("domain_patterns", [])],
        )


class Verdict(Enum):
    """Enforcement verdict for a single flow."""

    ALLOW = "allow"
    BLOCK = "block"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class Decision:
    """Result of evaluating a flow against a rule snapshot."""

    verdict: Verdict
    rule: Optional[CompiledRule] = None
    redirect_url: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.rule is not None


ALLOW = Decision(Verdict.ALLOW)
