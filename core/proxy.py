"""
Selective CONNECT Proxy

Local HTTP CONNECT listener that browsers are pointed at. Destinations on the
tunnel allowlist go through a secondary proxy (the tunnel endpoint); all other
traffic connects directly, falling back to the tunnel when DNS fails.
"""

import asyncio
import errno
import logging
import socket
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

logger = logging.getLogger(__name__)

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\nConnection: close\r\n\r\n"
USE_CONNECT = (
    b"HTTP/1.1 400 Bad Request\r\n"
    b"Content-Type: text/plain\r\n"
    b"Content-Length: 21\r\n"
    b"Connection: close\r\n\r\n"
    b"Use CONNECT for HTTPS"
)

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


@dataclass
class RouteTable:
    """Which destinations need the tunnel, and where the tunnel is."""
    tunnel_domains: List[str] = field(default_factory=list)
    tunnel_host: str = "127.0.0.1"
    tunnel_port: int = 9999
    enabled: bool = True

    def matches(self, hostname: str) -> bool:
        """Substring match against the allowlist."""
        return any(domain and domain in hostname for domain in self.tunnel_domains)

    def update(
        self,
        tunnel_domains: Optional[List[str]] = None,
        tunnel_host: Optional[str] = None,
        tunnel_port: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        """Apply only the fields that were provided."""
        if tunnel_domains is not None:
            self.tunnel_domains = [str(d).strip() for d in tunnel_domains if str(d).strip()]
        if tunnel_host:
            self.tunnel_host = tunnel_host
        if tunnel_port is not None:
            port = int(tunnel_port)
            if not 0 < port < 65536:
                raise ValueError(f"Invalid tunnel port: {tunnel_port}")
            self.tunnel_port = port
        if isinstance(enabled, bool):
            self.enabled = enabled

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _split_target(target: str) -> Tuple[str, int]:
    host, _, port = target.rpartition(":")
    if not host:
        return target, 443
    try:
        return host.strip("[]"), int(port)
    except ValueError:
        return host.strip("[]"), 443


def _is_success(status_line: str) -> bool:
    parts = status_line.split()
    return len(parts) >= 2 and parts[1].isdigit() and 200 <= int(parts[1]) < 300


def _close_writer(writer: asyncio.StreamWriter):
    if not writer.is_closing():
        writer.close()


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        _close_writer(writer)


class SelectiveProxy:
    """
    CONNECT proxy with per-destination routing.

    The route table is read once per connection, so updates apply to new
    connections only.
    """

    def __init__(
        self,
        route_table: RouteTable,
        host: str = "127.0.0.1",
        port: int = 8888,
        handshake_timeout: float = 10.0,
        connect_timeout: float = 10.0,
        connector: Optional[Connector] = None,
    ):
        self.route_table = route_table
        self.host = host
        self.port = port
        self.handshake_timeout = handshake_timeout
        self.connect_timeout = connect_timeout
        self._connect = connector or asyncio.open_connection
        self.server: Optional[asyncio.AbstractServer] = None
        self.existing = False
        self._start_lock = asyncio.Lock()
        self.stats = {"direct": 0, "tunneled": 0, "fallbacks": 0, "failures": 0}

    @property
    def is_running(self) -> bool:
        return self.server is not None or self.existing

    @property
    def proxy_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> "SelectiveProxy":
        """Bind the listener. An address already in use counts as success."""
        async with self._start_lock:
            if self.is_running:
                return self
            try:
                self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise
                logger.warning(f"[PROXY] Port {self.port} already in use, assuming existing proxy is working")
                self.existing = True
                return self

            if self.port == 0:
                self.port = self.server.sockets[0].getsockname()[1]
            logger.info(f"[PROXY] Selective proxy running on {self.host}:{self.port}")
            logger.info(
                f"[PROXY] Tunnel domains -> {self.route_table.tunnel_host}:{self.route_table.tunnel_port}, "
                f"other traffic -> direct"
            )
            return self

    async def stop(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        self.existing = False

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            await self._serve(reader, writer)
        except Exception as e:
            logger.warning(f"[PROXY] Connection error: {e}")
        finally:
            _close_writer(writer)

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=self.handshake_timeout)
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, asyncio.TimeoutError):
            return

        parts = head.split(b"\r\n", 1)[0].decode("latin-1").split()
        if len(parts) < 2 or parts[0].upper() != "CONNECT":
            writer.write(USE_CONNECT)
            await writer.drain()
            return

        hostname, port = _split_target(parts[1])
        table = self.route_table

        if table.matches(hostname):
            logger.info(f"[TUNNEL] {hostname}:{port}")
            await self._via_tunnel(table, hostname, port, reader, writer)
            return

        logger.info(f"[DIRECT] {hostname}:{port}")
        try:
            upstream_reader, upstream_writer = await asyncio.wait_for(
                self._connect(hostname, port), timeout=self.connect_timeout
            )
        except socket.gaierror:
            logger.info(f"[FALLBACK] {hostname}:{port} -> tunnel (DNS failed)")
            self.stats["fallbacks"] += 1
            await self._via_tunnel(table, hostname, port, reader, writer)
            return
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"[DIRECT] Error {hostname}: {e}")
            self.stats["failures"] += 1
            await self._reject(writer)
            return

        self.stats["direct"] += 1
        writer.write(CONNECTION_ESTABLISHED)
        await writer.drain()
        await self._splice(reader, writer, upstream_reader, upstream_writer)

    async def _via_tunnel(
        self,
        table: RouteTable,
        hostname: str,
        port: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        try:
            tunnel_reader, tunnel_writer = await asyncio.wait_for(
                self._connect(table.tunnel_host, table.tunnel_port), timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"[TUNNEL ERR] {hostname} - {e}")
            self.stats["failures"] += 1
            await self._reject(writer)
            return

        try:
            tunnel_writer.write(
                f"CONNECT {hostname}:{port} HTTP/1.1\r\nHost: {hostname}:{port}\r\n\r\n".encode("latin-1")
            )
            await tunnel_writer.drain()
            response = await asyncio.wait_for(
                tunnel_reader.readuntil(b"\r\n\r\n"), timeout=self.handshake_timeout
            )
        except (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, asyncio.TimeoutError) as e:
            logger.warning(f"[TUNNEL ERR] {hostname} - handshake failed: {e}")
            self.stats["failures"] += 1
            _close_writer(tunnel_writer)
            await self._reject(writer)
            return

        status_line = response.split(b"\r\n", 1)[0].decode("latin-1")
        if not _is_success(status_line):
            logger.warning(f"[TUNNEL FAIL] {hostname}: {status_line}")
            self.stats["failures"] += 1
            _close_writer(tunnel_writer)
            await self._reject(writer)
            return

        self.stats["tunneled"] += 1
        writer.write(CONNECTION_ESTABLISHED)
        await writer.drain()
        await self._splice(reader, writer, tunnel_reader, tunnel_writer)

    @staticmethod
    async def _reject(writer: asyncio.StreamWriter):
        try:
            writer.write(BAD_GATEWAY)
            await writer.drain()
        except (OSError, RuntimeError):
            pass

    @staticmethod
    async def _splice(
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
    ):
        # Either direction ending or failing closes both sockets
        results = await asyncio.gather(
            _pipe(client_reader, upstream_writer),
            _pipe(upstream_reader, client_writer),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.debug(f"[PROXY] Stream closed with error: {result}")
        _close_writer(client_writer)
        _close_writer(upstream_writer)


async def check_tunnel(host: str, port: int, timeout: float = 3.0) -> Dict[str, Any]:
    """TCP reachability check of the tunnel endpoint."""
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except asyncio.TimeoutError:
        return {"connected": False, "port": port, "error": "Connection timeout"}
    except OSError as e:
        return {"connected": False, "port": port, "error": str(e)}
    _close_writer(writer)
    return {"connected": True, "port": port}


async def probe_url(url: str, proxy_url: str, timeout: float = 10.0) -> Dict[str, Any]:
    """Fetch an https URL through the local proxy to check a route end to end."""
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url, proxy=proxy_url) as resp:
                return {"ok": resp.status < 400, "status": resp.status, "url": url}
    except Exception as e:
        return {"ok": False, "url": url, "error": str(e)}
