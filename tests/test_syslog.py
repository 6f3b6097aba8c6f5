"""Tests for syslog receiver and parsers."""

import asyncio
import socket
from datetime import datetime, timezone

import pytest

from kidguard.collectors.syslog_parsers import (
    DnsmasqParser,
    ProxyAccessParser,
    route_message,
)
from kidguard.collectors.syslog_receiver import (
    SyslogConfig,
    SyslogMessage,
    SyslogReceiver,
    parse_syslog_message,
)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_msg(tag: str, message: str) -> SyslogMessage:
    return SyslogMessage(
        timestamp=datetime(2024, 1, 26, 14, 32, 15, tzinfo=timezone.utc),
        hostname="pihole",
        tag=tag,
        message=message,
        source_ip="192.168.1.2",
    )


class TestSyslogMessageParsing:
    """Tests for syslog message parsing."""

    def test_rfc3164_basic(self) -> None:
        data = b"<30>Jan 26 14:32:15 myhost myapp[1234]: test message"
        msg = parse_syslog_message(data, "192.168.1.1")

        assert msg is not None
        assert msg.hostname == "myhost"
        assert msg.tag == "myapp"
        assert msg.message == "test message"
        assert msg.severity == 6  # info
        assert msg.source_ip == "192.168.1.1"
        assert msg.timestamp.tzinfo is not None

    def test_rfc3164_no_pid(self) -> None:
        msg = parse_syslog_message(b"<30>Jan 26 14:32:15 myhost myapp: test message", "192.168.1.1")

        assert msg is not None
        assert msg.tag == "myapp"
        assert msg.message == "test message"

    def test_rfc5424_basic(self) -> None:
        data = b"<34>1 2024-01-26T14:32:15.000Z myhost myapp 1234 - - test message"
        msg = parse_syslog_message(data, "192.168.1.1")

        assert msg is not None
        assert msg.hostname == "myhost"
        assert msg.tag == "myapp"
        assert msg.message == "test message"
        assert msg.timestamp == datetime(2024, 1, 26, 14, 32, 15, tzinfo=timezone.utc)

    def test_empty_message(self) -> None:
        assert parse_syslog_message(b"", "192.168.1.1") is None
        assert parse_syslog_message(b"   \n", "192.168.1.1") is None

    def test_fallback_parsing(self) -> None:
        msg = parse_syslog_message(b"just a random message", "192.168.1.1")

        assert msg is not None
        assert msg.tag == "unknown"
        assert "random message" in msg.message


class TestDnsmasqParser:
    def test_can_parse(self) -> None:
        assert DnsmasqParser.can_parse(make_msg("dnsmasq", "query[A] x.org from 1.2.3.4"))
        assert DnsmasqParser.can_parse(make_msg("pihole-FTL", "query[A] x.org from 1.2.3.4"))
        assert not DnsmasqParser.can_parse(make_msg("sshd", "Accepted publickey"))

    def test_parse_query(self) -> None:
        flow = DnsmasqParser.parse(make_msg("dnsmasq", "query[A] WWW.Instagram.com. from 192.168.1.50"))

        assert flow is not None
        assert flow.hostname == "www.instagram.com"
        assert flow.client == "192.168.1.50"
        assert flow.url is None
        assert flow.source_app == "dns"
        assert flow.timestamp == datetime(2024, 1, 26, 14, 32, 15, tzinfo=timezone.utc)

    def test_parse_aaaa_and_https(self) -> None:
        assert DnsmasqParser.parse(make_msg("dnsmasq", "query[AAAA] tiktok.com from 10.0.0.3")) is not None
        assert DnsmasqParser.parse(make_msg("dnsmasq", "query[HTTPS] tiktok.com from 10.0.0.3")) is not None

    def test_non_address_queries_ignored(self) -> None:
        assert DnsmasqParser.parse(make_msg("dnsmasq", "query[PTR] 1.0.168.192.in-addr.arpa from 10.0.0.3")) is None
        assert DnsmasqParser.parse(make_msg("dnsmasq", "query[TXT] example.com from 10.0.0.3")) is None

    def test_reply_and_forward_ignored(self) -> None:
        assert DnsmasqParser.parse(make_msg("dnsmasq", "reply example.com is 93.184.216.34")) is None
        assert DnsmasqParser.parse(make_msg("dnsmasq", "forwarded example.com to 1.1.1.1")) is None

    def test_embedded_prefix(self) -> None:
        """Lines relayed through ``tail | logger`` keep the original prefix."""
        msg = make_msg("unknown", "Jan 26 14:32:15 dnsmasq[812]: query[A] roblox.com from 10.0.0.7")
        assert DnsmasqParser.can_parse(msg)
        flow = DnsmasqParser.parse(msg)

        assert flow is not None
        assert flow.hostname == "roblox.com"
        assert flow.client == "10.0.0.7"


class TestProxyAccessParser:
    def test_parse_http_request(self) -> None:
        line = "1706279535.123    245 192.168.1.50 TCP_MISS/200 5120 GET http://example.com/games/play - HIER_DIRECT/93.184.216.34 text/html"
        flow = ProxyAccessParser.parse(make_msg("squid", line))

        assert flow is not None
        assert flow.hostname == "example.com"
        assert flow.url == "http://example.com/games/play"
        assert flow.client == "192.168.1.50"
        assert flow.source_app == "proxy"
        assert flow.timestamp == datetime.fromtimestamp(1706279535.123, tz=timezone.utc)

    def test_parse_connect_tunnel(self) -> None:
        line = "1706279535.123     12 192.168.1.50 TCP_TUNNEL/200 3900 CONNECT www.reddit.com:443 - HIER_DIRECT/151.101.1.140 -"
        flow = ProxyAccessParser.parse(make_msg("squid", line))

        assert flow is not None
        assert flow.hostname == "www.reddit.com"
        assert flow.url is None

    def test_detects_format_without_tag(self) -> None:
        line = "1706279535.123 5 10.0.0.2 TCP_MISS/200 100 GET http://a.example/ - HIER_DIRECT/1.2.3.4 text/html"
        assert ProxyAccessParser.can_parse(make_msg("unknown", line))

    def test_garbage_ignored(self) -> None:
        assert ProxyAccessParser.parse(make_msg("squid", "cache.log rotated")) is None


class TestRouteMessage:
    def test_route_dns_query(self) -> None:
        flow = route_message(make_msg("dnsmasq", "query[A] discord.com from 192.168.1.60"))
        assert flow is not None
        assert flow.source_app == "dns"

    def test_route_proxy(self) -> None:
        line = "1706279535.123 5 10.0.0.2 TCP_MISS/200 100 GET http://a.example/x - HIER_DIRECT/1.2.3.4 text/html"
        flow = route_message(make_msg("squid", line))
        assert flow is not None
        assert flow.url == "http://a.example/x"

    def test_route_unrelated_message(self) -> None:
        assert route_message(make_msg("kernel", "eth0: link up")) is None


class TestSyslogConfig:
    def test_default_config(self) -> None:
        config = SyslogConfig()
        assert config.port == 1514
        assert config.protocol == "udp"
        assert config.bind_address == "127.0.0.1"
        assert config.allowed_ips == []


class TestSyslogReceiver:
    @pytest.mark.asyncio
    async def test_udp_receive(self) -> None:
        received: list[SyslogMessage] = []
        port = _free_port()
        receiver = SyslogReceiver(SyslogConfig(port=port, protocol="udp"), received.append)
        await receiver.start()
        try:
            assert receiver.is_running
            loop = asyncio.get_running_loop()
            transport, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol, remote_addr=("127.0.0.1", port)
            )
            transport.sendto(b"<30>Jan 26 14:32:15 pihole dnsmasq[1]: query[A] a.com from 10.0.0.1")
            transport.close()

            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.02)
        finally:
            await receiver.stop()

        assert not receiver.is_running
        assert len(received) == 1
        assert received[0].tag == "dnsmasq"

    @pytest.mark.asyncio
    async def test_tcp_allowlist_rejects(self) -> None:
        received: list[SyslogMessage] = []
        port = _free_port()
        config = SyslogConfig(port=port, protocol="tcp", allowed_ips=["10.9.9.9"])
        receiver = SyslogReceiver(config, received.append)
        await receiver.start()
        try:
            _reader, writer = await asyncio.open_connection("127.0.0.1", port)
            try:
                writer.write(b"<30>Jan 26 14:32:15 host app: hello\n")
                await writer.drain()
                writer.close()
                await writer.wait_closed()
            except ConnectionError:
                pass
            await asyncio.sleep(0.1)
        finally:
            await receiver.stop()

        assert received == []

    @pytest.mark.asyncio
    async def test_stop_closes_open_tcp_connections(self) -> None:
        received: list[SyslogMessage] = []
        port = _free_port()
        receiver = SyslogReceiver(SyslogConfig(port=port, protocol="tcp"), received.append)
        await receiver.start()
        _reader, writer = await asyncio.open_connection("127.0.0.1", port)
        try:
            writer.write(b"<30>Jan 26 14:32:15 pihole dnsmasq[1]: query[A] a.com from 10.0.0.1\n")
            writer.write(b"<30>Jan 26 14:32:16 pihole dnsmasq[1]: query[A] b.com from 10.0.0.1")
            await writer.drain()
            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.02)

            # The shipper keeps its connection open across the shutdown
            await asyncio.wait_for(receiver.stop(), timeout=3)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

        assert not receiver.is_running
        assert [m.message for m in received] == [
            "query[A] a.com from 10.0.0.1",
            "query[A] b.com from 10.0.0.1",
        ]

    @pytest.mark.asyncio
    async def test_port_in_use(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen()
            port = blocker.getsockname()[1]

            receiver = SyslogReceiver(SyslogConfig(port=port, protocol="tcp"), lambda msg: None)
            with pytest.raises(OSError):
                await receiver.start()
            assert not receiver.is_running
