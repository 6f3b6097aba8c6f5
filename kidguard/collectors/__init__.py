"""Traffic collectors feeding flows into the daemon."""

from kidguard.collectors.syslog_parsers import DnsmasqParser, ProxyAccessParser, route_message
from kidguard.collectors.syslog_receiver import SyslogConfig, SyslogMessage, SyslogReceiver

__all__ = [
    "DnsmasqParser",
    "ProxyAccessParser",
    "SyslogConfig",
    "SyslogMessage",
    "SyslogReceiver",
    "route_message",
]
