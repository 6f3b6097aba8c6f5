"""Matching of flows against compiled rules.

Pure functions with no I/O, shared by the sandboxed enforcement point and the
daemon's in-process evaluation so both sides reach the same verdict for the
same snapshot.
"""

import re
from typing import Iterable, Optional, Sequence

from kidguard.models import ALLOW, CompiledRule, Decision, Flow, Verdict
from kidguard.policies.category_classifier import (
    classify_hostname,
    clean_hostname,
    normalize_category,
)

# Raw category tags shorter than this are not used as hostname substrings
MIN_HOSTNAME_TOKEN = 4

# Dotted names in a rule description ("block coolmathgames.com")
DESCRIPTION_DOMAIN = re.compile(r"[a-z0-9-]+(?:\.[a-z0-9-]+)+")


def flow_categories(flow: Flow, extra: Iterable[str] = ()) -> set[str]:
    """Canonical categories for a flow.

    Combines tags supplied by the interceptor, any extra labels (e.g. from the
    daemon's classifier) and the heuristic hostname categories.
    """
    categories = {normalize_category(c) for c in flow.categories}
    categories.update(normalize_category(c) for c in extra)
    categories.update(classify_hostname(flow.hostname))
    categories.discard("")
    return categories


def rule_matches(rule: CompiledRule, host: str, categories: set[str]) -> bool:
    """Check whether a compiled rule applies to a cleaned hostname.

    A rule matches when:
    1. One of its categories equals one of the flow's categories
    2. A raw category tag appears verbatim in the hostname ("youtube")
    3. The hostname is one of its domain patterns or a subdomain of one;
       a bare service name pattern ("tiktok") may appear anywhere in it
    4. Its description names the hostname or a parent domain
       ("block tiktok.com")
    """
    if not rule.is_active:
        return False

    for tag in rule.categories:
        if normalize_category(tag) in categories:
            return True
        token = tag.strip().lower().replace(" ", "")
        if host and len(token) >= MIN_HOSTNAME_TOKEN and token in host:
            return True

    if host and any(_pattern_matches(pattern, host) for pattern in rule.domain_patterns):
        return True

    return bool(host) and any(
        _host_in_domain(host, domain) for domain in DESCRIPTION_DOMAIN.findall(rule.description.lower())
    )


def _host_in_domain(host: str, domain: str) -> bool:
    """True when ``host`` is ``domain`` or one of its subdomains."""
    domain = domain.strip(".")
    if domain.startswith("www."):
        domain = domain[4:]
    return bool(domain) and (host == domain or host.endswith("." + domain))


def _pattern_matches(pattern: str, host: str) -> bool:
    pattern = pattern.strip().lower().lstrip("*")
    if not pattern:
        return False
    if "." in pattern:
        return _host_in_domain(host, pattern)
    # Bare service names ("tiktok") match anywhere in the hostname
    return pattern in host


def evaluate(
    rules: Sequence[CompiledRule],
    flow: Flow,
    redirect_url: Optional[str] = None,
    extra_categories: Iterable[str] = (),
) -> Decision:
    """Decide a flow against an ordered rule list.

    Blocking rules win over non-blocking ones regardless of order; among rules
    of the same kind the first match wins. A non-blocking match yields ALLOW
    with the matched rule attached so callers can alert on it.
    """
    host = clean_hostname(flow.hostname)
    categories = flow_categories(flow, extra_categories)

    first_nonblocking: Optional[CompiledRule] = None
    for rule in rules:
        if not rule_matches(rule, host, categories):
            continue
        if rule.should_block:
            if redirect_url and flow.url:
                return Decision(Verdict.REDIRECT, rule=rule, redirect_url=redirect_url)
            return Decision(Verdict.BLOCK, rule=rule)
        if first_nonblocking is None:
            first_nonblocking = rule

    if first_nonblocking is not None:
        return Decision(Verdict.ALLOW, rule=first_nonblocking)
    return ALLOW
