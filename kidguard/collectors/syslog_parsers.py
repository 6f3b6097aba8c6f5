"""Parsers turning forwarded log lines into flows.

Two sources are understood:
- dnsmasq / Pi-hole query logs: hostname-only flows
- Squid-style proxy access logs: flows with a full URL when the proxy sees
  one (plain HTTP), hostname-only for CONNECT tunnels
"""

import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

from kidguard.collectors.syslog_receiver import SyslogMessage
from kidguard.models import Flow

DNSMASQ_QUERY_PATTERN = re.compile(
    r"^query\[(\w+)\]\s+"  # "query[A]"
    r"(\S+)\s+"             # Domain
    r"from\s+(\S+)"         # Client IP
)

# Only address lookups describe a client wanting to reach a host
FLOW_QUERY_TYPES = {"A", "AAAA", "HTTPS"}

# Squid native format:
# time elapsed client code/status bytes method URL user hierarchy/peer type
PROXY_ACCESS_PATTERN = re.compile(
    r"^(\d+(?:\.\d+)?)\s+"  # Unix timestamp
    r"\d+\s+"               # Elapsed ms
    r"(\S+)\s+"             # Client
    r"\S+/\d+\s+"           # Result code/status
    r"\d+\s+"               # Bytes
    r"([A-Z]+)\s+"          # Method
    r"(\S+)"                # URL or host:port
)


class DnsmasqParser:
    """Parser for Pi-hole/dnsmasq query lines."""

    TAGS = {"dnsmasq", "pihole-ftl", "pihole"}

    @classmethod
    def can_parse(cls, msg: SyslogMessage) -> bool:
        tag = msg.tag.lower()
        return tag in cls.TAGS or tag.startswith("dnsmasq") or "dnsmasq[" in msg.message

    @classmethod
    def parse(cls, msg: SyslogMessage) -> Optional[Flow]:
        """Parse a dnsmasq query line into a Flow.

        Handles lines relayed through ``tail | logger`` where the original
        "dnsmasq[pid]:" prefix is embedded in the message.
        """
        content = msg.message.strip()
        marker = content.find("dnsmasq[")
        if marker != -1:
            colon = content.find(":", marker)
            if colon != -1:
                content = content[colon + 1:].strip()

        match = DNSMASQ_QUERY_PATTERN.match(content)
        if not match:
            return None

        query_type, domain, client = match.groups()
        if query_type.upper() not in FLOW_QUERY_TYPES:
            return None

        return Flow(
            hostname=domain.rstrip(".").lower(),
            client=client,
            source_app="dns",
            timestamp=msg.timestamp,
        )


class ProxyAccessParser:
    """Parser for Squid-style proxy access log lines."""

    TAGS = {"squid", "proxy", "kidguard-proxy"}

    @classmethod
    def can_parse(cls, msg: SyslogMessage) -> bool:
        return msg.tag.lower() in cls.TAGS or PROXY_ACCESS_PATTERN.match(msg.message.strip()) is not None

    @classmethod
    def parse(cls, msg: SyslogMessage) -> Optional[Flow]:
        match = PROXY_ACCESS_PATTERN.match(msg.message.strip())
        if not match:
            return None

        epoch, client, method, target = match.groups()
        timestamp = datetime.fromtimestamp(float(epoch), tz=timezone.utc)

        if method == "CONNECT":
            return Flow(
                hostname=target.rsplit(":", 1)[0].lower(),
                client=client,
                source_app="proxy",
                timestamp=timestamp,
            )

        parts = urlsplit(target)
        if not parts.hostname:
            return None
        return Flow(
            hostname=parts.hostname.lower(),
            client=client,
            url=target,
            source_app="proxy",
            timestamp=timestamp,
        )


def route_message(msg: SyslogMessage) -> Optional[Flow]:
    """Route a syslog message to the parser that understands it.

    Returns:
        A Flow, or None for lines that describe no client traffic
    """
    if DnsmasqParser.can_parse(msg):
        return DnsmasqParser.parse(msg)
    if ProxyAccessParser.can_parse(msg):
        return ProxyAccessParser.parse(msg)
    return None
