"""Local command channel for the daemon.

Newline-delimited JSON over a localhost TCP socket: each request line is an
object with a ``command`` key, each response line is ``{"ok": true,
"result": ...}`` or ``{"ok": false, "error": "..."}``.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MAX_REQUEST_BYTES = 64 * 1024
STOP_TIMEOUT = 5.0

CommandHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass
class CommandConfig:
    """Configuration for the command channel."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 7767


class CommandServer:
    """asyncio server dispatching command lines to a handler coroutine."""

    def __init__(self, config: CommandConfig, handler: CommandHandler) -> None:
        self.config = config
        self.handler = handler
        self._server: asyncio.Server | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Bound port, useful when configured with port 0."""
        if self._server is None or not self._server.sockets:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_client,
            self.config.host,
            self.config.port,
            limit=MAX_REQUEST_BYTES,
        )
        logger.info(f"Command channel listening on {self.config.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        # Idle clients keep wait_closed() pending until their connections close
        for writer in list(self._writers):
            writer.close()
        try:
            await asyncio.wait_for(self._server.wait_closed(), timeout=STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Command channel clients still open after {STOP_TIMEOUT}s")
        self._server = None
        logger.info("Command channel stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        self._writers.add(writer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    await self._write(writer, {"ok": False, "error": "request too large"})
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                response = await self._dispatch(line)
                await self._write(writer, response)
        except ConnectionError as e:
            logger.debug(f"Command client {peer} disconnected: {e}")
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _dispatch(self, line: bytes) -> dict[str, Any]:
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            return {"ok": False, "error": f"invalid JSON: {e}"}
        if not isinstance(request, dict) or "command" not in request:
            return {"ok": False, "error": "request must be an object with a 'command' key"}

        try:
            return await self.handler(request)
        except Exception as e:
            logger.exception(f"Command {request.get('command')!r} failed")
            return {"ok": False, "error": str(e)}

    async def _write(self, writer: asyncio.StreamWriter, response: dict[str, Any]) -> None:
        writer.write(json.dumps(response, default=str).encode() + b"\n")
        await writer.drain()


async def send_command(
    command: str,
    host: str = "127.0.0.1",
    port: int = 7767,
    timeout: float = 30.0,
    **params: Any,
) -> dict[str, Any]:
    """Send one command to a running daemon and return its response.

    Raises:
        ConnectionError: If the daemon is not listening
        asyncio.TimeoutError: If no response arrives in time
    """
    reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    try:
        request = {"command": command, **params}
        writer.write(json.dumps(request).encode() + b"\n")
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass

    if not line:
        raise ConnectionError("daemon closed the connection without responding")
    return json.loads(line)
