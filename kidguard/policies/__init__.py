"""Category heuristics shared by the daemon and the enforcement point."""

from kidguard.policies.category_classifier import (
    CATEGORY_ALIASES,
    CATEGORY_PATTERNS,
    classify_hostname,
    clean_hostname,
    normalize_category,
)

__all__ = [
    "CATEGORY_ALIASES",
    "CATEGORY_PATTERNS",
    "classify_hostname",
    "clean_hostname",
    "normalize_category",
]
