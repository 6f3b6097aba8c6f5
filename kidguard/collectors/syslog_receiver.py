"""Syslog receiver feeding live traffic into the daemon.

The resolver (Pi-hole/dnsmasq) and the filtering proxy push their logs here
over UDP or TCP; the daemon turns parsed lines into flows. The receiver holds
no credentials to the devices it listens to.

Supports:
- RFC 3164 (BSD syslog) format
- RFC 5424 (modern syslog) format
- UDP and TCP protocols
- Optional source IP allowlist
"""

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# <PRI>TIMESTAMP HOSTNAME TAG: MESSAGE
RFC3164_PATTERN = re.compile(
    r"^<(\d{1,3})>"
    r"(\w{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s+"  # "Jan 26 14:32:15"
    r"(\S+)\s+"
    r"(\S+?)(?:\[\d+\])?:\s*"  # Tag, optional PID
    r"(.*)$"
)

# <PRI>VERSION TIMESTAMP HOSTNAME APP-NAME PROCID MSGID STRUCTURED-DATA MSG
RFC5424_PATTERN = re.compile(
    r"^<(\d{1,3})>(\d)\s+"
    r"(\S+)\s+"
    r"(\S+)\s+"
    r"(\S+)\s+"
    r"\S+\s+"  # Procid
    r"\S+\s+"  # Msgid
    r"(?:\[.*?\]|-)\s*"
    r"(.*)$"
)

MAX_TCP_BUFFER = 1024 * 1024
STOP_TIMEOUT = 5.0


@dataclass
class SyslogMessage:
    """Parsed syslog message."""

    timestamp: datetime
    hostname: str
    tag: str  # Program name, e.g. "dnsmasq", "squid"
    message: str
    severity: int = 6
    source_ip: str | None = None


@dataclass
class SyslogConfig:
    """Configuration for the syslog receiver."""

    port: int = 1514
    protocol: str = "udp"  # "udp", "tcp", or "both"
    bind_address: str = "127.0.0.1"
    allowed_ips: list[str] = field(default_factory=list)  # Empty = allow all


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_syslog_message(data: bytes, source_ip: str) -> SyslogMessage | None:
    """Parse a raw syslog line.

    Lines matching neither RFC are kept whole with tag "unknown" so that
    plain ``logger``-style forwarding still reaches the parsers.

    Args:
        data: Raw syslog message bytes
        source_ip: IP address of the sender

    Returns:
        Parsed SyslogMessage, or None for an empty line
    """
    text = data.decode("utf-8", errors="replace").strip()
    if not text:
        return None

    match = RFC5424_PATTERN.match(text)
    if match:
        pri, _version, timestamp_str, hostname, app_name, message = match.groups()
        try:
            timestamp = datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
        except ValueError:
            timestamp = _utcnow()
        return SyslogMessage(
            timestamp=timestamp,
            hostname=hostname,
            tag=app_name,
            message=message,
            severity=int(pri) & 0x07,
            source_ip=source_ip,
        )

    match = RFC3164_PATTERN.match(text)
    if match:
        pri, timestamp_str, hostname, tag, message = match.groups()
        now = _utcnow()
        try:
            # BSD timestamps carry no year or zone; assume the current UTC year
            timestamp = datetime.strptime(timestamp_str, "%b %d %H:%M:%S").replace(
                year=now.year, tzinfo=timezone.utc
            )
        except ValueError:
            timestamp = now
        return SyslogMessage(
            timestamp=timestamp,
            hostname=hostname,
            tag=tag,
            message=message,
            severity=int(pri) & 0x07,
            source_ip=source_ip,
        )

    return SyslogMessage(
        timestamp=_utcnow(),
        hostname=source_ip,
        tag="unknown",
        message=text,
        source_ip=source_ip,
    )


MessageHandler = Callable[[SyslogMessage], None]


def _dispatch(handler: MessageHandler, data: bytes, source_ip: str) -> None:
    msg = parse_syslog_message(data, source_ip)
    if msg is None:
        return
    try:
        handler(msg)
    except Exception as e:
        logger.error(f"Error handling syslog message from {source_ip}: {e}")


class UDPSyslogProtocol(asyncio.DatagramProtocol):
    """One datagram per syslog message."""

    def __init__(self, handler: MessageHandler, config: SyslogConfig) -> None:
        self.handler = handler
        self.config = config

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        source_ip = addr[0]
        if self.config.allowed_ips and source_ip not in self.config.allowed_ips:
            logger.debug(f"Rejected syslog from {source_ip} (not in allowlist)")
            return
        for line in data.splitlines():
            _dispatch(self.handler, line, source_ip)


class TCPSyslogProtocol(asyncio.Protocol):
    """Newline-delimited syslog over a TCP stream."""

    def __init__(
        self,
        handler: MessageHandler,
        config: SyslogConfig,
        connections: set[asyncio.Transport] | None = None,
    ) -> None:
        self.handler = handler
        self.config = config
        self.connections = connections if connections is not None else set()
        self.transport: asyncio.Transport | None = None
        self.buffer = b""
        self.source_ip = "unknown"

    def connection_made(self, transport: asyncio.Transport) -> None:  # type: ignore[override]
        self.transport = transport
        peer = transport.get_extra_info("peername")
        if peer:
            self.source_ip = peer[0]
        if self.config.allowed_ips and self.source_ip not in self.config.allowed_ips:
            logger.debug(f"Rejected TCP connection from {self.source_ip} (not in allowlist)")
            transport.close()
            return
        self.connections.add(transport)

    def data_received(self, data: bytes) -> None:
        self.buffer += data
        while b"\n" in self.buffer:
            line, self.buffer = self.buffer.split(b"\n", 1)
            _dispatch(self.handler, line, self.source_ip)
        if len(self.buffer) > MAX_TCP_BUFFER:
            logger.warning(f"Dropping oversized syslog line from {self.source_ip}")
            self.buffer = b""

    def connection_lost(self, exc: Exception | None) -> None:
        if self.transport is not None:
            self.connections.discard(self.transport)
        if self.buffer:
            _dispatch(self.handler, self.buffer, self.source_ip)
            self.buffer = b""


class SyslogReceiver:
    """Async syslog receiver supporting UDP and TCP."""

    def __init__(self, config: SyslogConfig, handler: MessageHandler) -> None:
        self.config = config
        self.handler = handler
        self._udp_transport: asyncio.DatagramTransport | None = None
        self._tcp_server: asyncio.Server | None = None
        self._tcp_connections: set[asyncio.Transport] = set()

    @property
    def is_running(self) -> bool:
        return self._udp_transport is not None or self._tcp_server is not None

    async def start(self) -> None:
        """Bind the configured listeners. Raises OSError if a port is taken."""
        loop = asyncio.get_running_loop()
        address = (self.config.bind_address, self.config.port)

        try:
            if self.config.protocol in ("udp", "both"):
                transport, _protocol = await loop.create_datagram_endpoint(
                    lambda: UDPSyslogProtocol(self.handler, self.config),
                    local_addr=address,
                )
                self._udp_transport = transport
                logger.info(f"Syslog UDP listening on {address[0]}:{address[1]}")

            if self.config.protocol in ("tcp", "both"):
                self._tcp_server = await loop.create_server(
                    lambda: TCPSyslogProtocol(self.handler, self.config, self._tcp_connections),
                    *address,
                )
                logger.info(f"Syslog TCP listening on {address[0]}:{address[1]}")
        except OSError:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Close all listeners. Safe to call repeatedly."""
        if self._udp_transport:
            self._udp_transport.close()
            self._udp_transport = None
            logger.info("Syslog UDP stopped")

        if self._tcp_server:
            self._tcp_server.close()
            # Persistent shippers would otherwise hold wait_closed() open
            for transport in list(self._tcp_connections):
                transport.close()
            try:
                await asyncio.wait_for(self._tcp_server.wait_closed(), timeout=STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Syslog TCP connections still open after {STOP_TIMEOUT}s")
            self._tcp_server = None
            logger.info("Syslog TCP stopped")
