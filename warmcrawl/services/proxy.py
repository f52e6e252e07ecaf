"""Local forward proxy that the browser is pinned to.

The browser is launched once with ``--proxy-server`` pointing at this proxy,
and the proxy itself is replaced on every crawl request. Swapping the proxy is
how the upstream (the caller's proxy, or a direct connection) changes without
relaunching the browser. Replacing it with ``force=True`` aborts every open
tunnel, so no keep-alive connection survives into a request that uses a
different upstream.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable
from urllib.parse import unquote, urlparse, urlsplit, urlunparse

from warmcrawl.config import settings
from warmcrawl.core.exceptions import InvalidProxyError, UnsupportedProxyError
from warmcrawl.core.metrics import proxy_active_connections, proxy_restarts_total

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_HOP_BY_HOP = frozenset(
    {"connection", "keep-alive", "proxy-connection", "proxy-authorization", "te", "upgrade"}
)
_BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
_BAD_REQUEST = b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"


@dataclass
class Proxy:
    protocol: str  # only http upstreams can be chained
    host: str
    port: int
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_url(cls, url: str) -> "Proxy":
        """Parse a proxy URL into a Proxy object."""
        if "://" not in url:
            url = f"http://{url}"
        parsed = urlparse(url)
        return cls(
            protocol=parsed.scheme or "http",
            host=parsed.hostname or "",
            port=parsed.port or 8080,
            username=unquote(parsed.username) if parsed.username else None,
            password=unquote(parsed.password) if parsed.password else None,
        )

    @property
    def authorization(self) -> str | None:
        """Value for a Proxy-Authorization header, if credentials are set."""
        if not self.username:
            return None
        token = base64.b64encode(f"{self.username}:{self.password or ''}".encode()).decode()
        return f"Basic {token}"


def mask_url(url: str) -> str:
    """Mask credentials in a proxy URL for display."""
    parsed = urlparse(url)
    if parsed.username:
        masked_user = parsed.username[:2] + "***"
        masked_pass = "***" if parsed.password else ""
        netloc = f"{masked_user}:{masked_pass}@{parsed.hostname}"
        if parsed.port:
            netloc += f":{parsed.port}"
        return urlunparse((parsed.scheme, netloc, parsed.path, "", "", ""))
    return url


def _split_host_port(target: str, default_port: int) -> tuple[str, int]:
    host, sep, port = target.rpartition(":")
    if not sep or not port.isdigit():
        return target.strip("[]"), default_port
    return host.strip("[]"), int(port)


class _Connection:
    """One client connection and, once opened, its outbound leg."""

    def __init__(self, client_writer: asyncio.StreamWriter):
        self.client_writer = client_writer
        self.remote_writer: asyncio.StreamWriter | None = None

    def close(self, abort: bool = False) -> None:
        for writer in (self.client_writer, self.remote_writer):
            if writer is None:
                continue
            if abort:
                writer.transport.abort()
            else:
                writer.close()


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    while True:
        data = await reader.read(_READ_CHUNK)
        if not data:
            return
        writer.write(data)
        await writer.drain()


class ForwardProxyServer:
    """HTTP forward proxy supporting CONNECT tunnels and plain HTTP.

    With an upstream set, every connection is chained through it; otherwise
    connections go straight to the target host.
    """

    def __init__(self, upstream: Proxy | None, host: str, port: int):
        self.upstream = upstream
        self.host = host
        self.port = port
        self.handlers: set[_Connection] = set()
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> "ForwardProxyServer":
        self._server = await asyncio.start_server(
            self._handle_client, self.host, self.port, reuse_address=True
        )
        # port=0 binds an ephemeral port
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    def close_connections(self) -> int:
        """Abort every open connection; the listener keeps accepting."""
        handlers = list(self.handlers)
        for conn in handlers:
            conn.close(abort=True)
        return len(handlers)

    async def close(self, force: bool = False) -> None:
        if self._server is None:
            return
        self._server.close()
        if force:
            count = self.close_connections()
            logger.debug("Aborted %d proxy connections", count)
        await self._server.wait_closed()
        self._server = None

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        conn = _Connection(writer)
        self.handlers.add(conn)
        proxy_active_connections.inc()
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            request_line, _, header_block = head.partition(b"\r\n")
            method, target, version = request_line.decode("latin-1").split(" ", 2)
            if method.upper() == "CONNECT":
                await self._tunnel(conn, reader, target)
            else:
                await self._forward(conn, reader, method, target, version, header_block)
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as e:
            logger.debug("Malformed proxy request: %s", e)
            if not writer.is_closing():
                writer.write(_BAD_REQUEST)
        except (ConnectionError, OSError) as e:
            logger.debug("Proxy connection ended: %s", e)
        finally:
            self.handlers.discard(conn)
            proxy_active_connections.dec()
            conn.close()

    async def _open(
        self, conn: _Connection, host: str, port: int
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter] | None:
        """Open the outbound leg (to the upstream proxy, or to host:port)."""
        if self.upstream is not None:
            host, port = self.upstream.host, self.upstream.port
        try:
            remote_reader, remote_writer = await asyncio.open_connection(host, port)
        except OSError as e:
            logger.info("Proxy could not reach %s:%d: %s", host, port, e)
            conn.client_writer.write(_BAD_GATEWAY)
            await conn.client_writer.drain()
            return None
        conn.remote_writer = remote_writer
        return remote_reader, remote_writer

    async def _tunnel(self, conn: _Connection, reader: asyncio.StreamReader, target: str) -> None:
        host, port = _split_host_port(target, 443)
        opened = await self._open(conn, host, port)
        if opened is None:
            return
        remote_reader, remote_writer = opened
        client_writer = conn.client_writer

        if self.upstream is not None:
            lines = [f"CONNECT {host}:{port} HTTP/1.1", f"Host: {host}:{port}"]
            if self.upstream.authorization:
                lines.append(f"Proxy-Authorization: {self.upstream.authorization}")
            remote_writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
            await remote_writer.drain()
            reply = await remote_reader.readuntil(b"\r\n\r\n")
            client_writer.write(reply)
            await client_writer.drain()
            status = reply.split(b" ", 2)
            if len(status) < 2 or status[1] != b"200":
                logger.info("Upstream refused tunnel to %s:%d", host, port)
                return
        else:
            client_writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            await client_writer.drain()

        await self._relay(reader, client_writer, remote_reader, remote_writer)

    async def _forward(
        self,
        conn: _Connection,
        reader: asyncio.StreamReader,
        method: str,
        target: str,
        version: str,
        header_block: bytes,
    ) -> None:
        parsed = urlsplit(target)
        if not parsed.hostname:
            conn.client_writer.write(_BAD_REQUEST)
            return
        opened = await self._open(conn, parsed.hostname, parsed.port or 80)
        if opened is None:
            return
        remote_reader, remote_writer = opened

        if self.upstream is not None:
            request_target = target
        else:
            request_target = parsed.path or "/"
            if parsed.query:
                request_target += f"?{parsed.query}"

        lines = [f"{method} {request_target} {version.strip()}"]
        for raw in header_block.decode("latin-1").split("\r\n"):
            name, sep, _ = raw.partition(":")
            if not sep or name.strip().lower() in _HOP_BY_HOP:
                continue
            lines.append(raw)
        # One request per connection keeps every request on the current upstream
        lines.append("Connection: close")
        if self.upstream is not None and self.upstream.authorization:
            lines.append(f"Proxy-Authorization: {self.upstream.authorization}")
        remote_writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
        await remote_writer.drain()

        await self._relay(reader, conn.client_writer, remote_reader, remote_writer)

    async def _relay(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        remote_reader: asyncio.StreamReader,
        remote_writer: asyncio.StreamWriter,
    ) -> None:
        """Copy bytes both ways until either side closes."""
        tasks = [
            asyncio.create_task(_pipe(client_reader, remote_writer)),
            asyncio.create_task(_pipe(remote_reader, client_writer)),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


def parse_upstream(upstream_url: str | None) -> Proxy | None:
    """Parse an upstream proxy URL.

    Raises InvalidProxyError when the URL does not parse and
    UnsupportedProxyError for schemes other than http.
    """
    if not upstream_url:
        return None
    try:
        upstream = Proxy.from_url(upstream_url)
    except ValueError as e:
        raise InvalidProxyError(_mask_unparsed(upstream_url), str(e)) from e
    if not upstream.host:
        raise InvalidProxyError(mask_url(upstream_url), "missing host")
    if upstream.protocol != "http":
        raise UnsupportedProxyError(mask_url(upstream_url), upstream.protocol)
    return upstream


def _mask_unparsed(url: str) -> str:
    """Hide credentials of a URL that urlparse rejects."""
    scheme, sep, rest = url.rpartition("://")
    _, at, hostport = rest.rpartition("@")
    masked = f"***@{hostport}" if at else hostport
    return f"{scheme}{sep}{masked}"


async def start_proxy_server(
    upstream_url: str | None, host: str, port: int
) -> ForwardProxyServer:
    """Start a forward proxy bound to ``upstream_url`` (None = direct)."""
    server = ForwardProxyServer(parse_upstream(upstream_url), host, port)
    return await server.start()


ProxyServerFactory = Callable[[str | None, str, int], Awaitable[ForwardProxyServer]]


class ProxySession:
    """Owns the single live forward proxy."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        server_factory: ProxyServerFactory = start_proxy_server,
    ):
        self._host = settings.PROXY_HOST if host is None else host
        self._port = settings.PROXY_PORT if port is None else port
        self._factory = server_factory
        self._server: ForwardProxyServer | None = None
        self._upstream: str | None = None

    @property
    def server(self) -> ForwardProxyServer | None:
        return self._server

    @property
    def upstream(self) -> str | None:
        """Masked URL of the current upstream, None when direct."""
        return mask_url(self._upstream) if self._upstream else None

    async def restart(self, upstream: str | None) -> None:
        """Force-close the current proxy, then start one bound to ``upstream``.

        Runs on every request, including requests without an upstream, so a
        connection opened through an earlier upstream is never reused.
        """
        t0 = time.monotonic()
        if self._server is not None:
            server, self._server = self._server, None
            await server.close(force=True)
        self._upstream = None
        self._server = await self._factory(upstream, self._host, self._port)
        self._upstream = upstream
        elapsed_ms = (time.monotonic() - t0) * 1000
        proxy_restarts_total.labels(upstream="upstream" if upstream else "direct").inc()
        logger.info(
            "Restarted proxy server in %.0fms (upstream=%s)",
            elapsed_ms,
            self.upstream or "direct",
        )

    def close_connections(self) -> int:
        """Abort open connections without replacing the proxy."""
        if self._server is None:
            return 0
        t0 = time.monotonic()
        count = self._server.close_connections()
        logger.info(
            "Closed %d proxy handlers in %.0fms", count, (time.monotonic() - t0) * 1000
        )
        return count

    async def shutdown(self) -> None:
        if self._server is not None:
            server, self._server = self._server, None
            await server.close(force=True)
            logger.info("Proxy server shut down")
        self._upstream = None
