"""
p12relay.core
~~~~~~~~~~~~~
Non-blocking HTTP front end: one task per inbound connection, one proxied
request per connection, handed to the :class:`ForwardingEngine`.
"""

from __future__ import annotations

import asyncio
import ssl
from typing import AsyncIterator, List, Optional, Tuple
from urllib.parse import urlsplit

from .config import Config
from .engine import ForwardingEngine, Header, InboundRequest, ProxyError, send_error
from .logger import AccessLog
from .upstream import HTTPXUpstream, UpstreamError, build_client

CRLF = b"\r\n"
BUFFER = 65_536
MAX_HEAD = 65_536

_NO_BODY_STATUS = {204, 304}


def run_proxy(config: Config, ssl_context: ssl.SSLContext, access: AccessLog) -> None:
    client = build_client(ssl_context)
    engine = ForwardingEngine(
        HTTPXUpstream(client, timeout=config.timeout),
        access,
        scheme=config.scheme,
        debug=config.debug,
    )
    proxy = ProxyServer(config, engine)
    try:
        asyncio.run(proxy.serve_forever(client))
    except KeyboardInterrupt:
        access.info("Proxy shut down.")


class ProxyServer:
    def __init__(self, cfg: Config, engine: ForwardingEngine) -> None:
        self.cfg = cfg
        self.engine = engine
        self.access = engine.access
        self.log = engine.access.log

    async def start(self) -> asyncio.AbstractServer:
        return await asyncio.start_server(
            self._handle_client,
            host=self.cfg.listen_host,
            port=self.cfg.listen_port,
            limit=MAX_HEAD,
        )

    async def serve_forever(self, client=None) -> None:
        server = await self.start()
        self.access.info(f"p12relay listening on http://localhost:{self.cfg.listen_port}")
        try:
            async with server:
                await server.serve_forever()
        finally:
            if client is not None:
                await client.aclose()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        responder = ClientResponder(writer)
        try:
            req_line, headers = await _read_request_head(reader)
            method, target = _parse_request_line(req_line)
            responder.method = method

            path, query = _split_target(target)
            body_done = asyncio.Event()
            body = _request_body(reader, headers, body_done)
            if body is None:
                body_done.set()

            request = InboundRequest(method, path, query, headers, body)
            await self._relay(request, responder, reader, body_done)

        except ProxyError as e:
            if not responder.started:
                try:
                    await send_error(responder, e.status, e.msg)
                except ConnectionError:
                    pass
        except UpstreamError:
            pass  # already logged; the origin broke off mid-body
        except ConnectionError as e:
            self.log.debug(f"client connection lost: {e}")
        except Exception:
            self.log.exception("unhandled error while proxying")
            if not responder.started:
                try:
                    await send_error(responder, 500, "Internal Server Error")
                except ConnectionError:
                    pass
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError):
                pass

    async def _relay(
        self,
        request: InboundRequest,
        responder: ClientResponder,
        reader: asyncio.StreamReader,
        body_done: asyncio.Event,
    ) -> None:
        forward = asyncio.ensure_future(self.engine.handle(request, responder))
        watcher = asyncio.ensure_future(_wait_for_disconnect(reader, body_done))
        try:
            await asyncio.wait({forward, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if not forward.done():
                self.log.info(
                    f"{request.method} {request.uri} -> client disconnected, request abandoned"
                )
                forward.cancel()
            try:
                await forward
            except asyncio.CancelledError:
                if not watcher.done() or watcher.cancelled():
                    raise
        finally:
            watcher.cancel()
            if not forward.done():
                forward.cancel()


class ClientResponder:
    """Writes the origin's status line and headers verbatim and frames the
    body to match them: re-chunked when the origin declared chunked
    transfer coding, raw otherwise.  The connection is closed afterwards,
    so the origin's own ``Connection`` header is swapped for ``close``."""

    def __init__(self, writer: asyncio.StreamWriter, method: str = "GET") -> None:
        self.writer = writer
        self.method = method
        self.started = False
        self._chunked = False
        self._bodyless = False

    async def start(self, status: int, reason: str, headers: List[Header]) -> None:
        head = bytearray(f"HTTP/1.1 {status} {reason}".encode("latin-1") + CRLF)
        for name, value in headers:
            if name.lower() == "connection":
                continue
            head.extend(f"{name}: {value}".encode("latin-1") + CRLF)
        head.extend(b"Connection: close" + CRLF + CRLF)

        self._bodyless = (
            self.method.upper() == "HEAD" or status < 200 or status in _NO_BODY_STATUS
        )
        self._chunked = not self._bodyless and _is_chunked(headers)
        self.started = True

        self.writer.write(bytes(head))
        await self.writer.drain()

    async def write(self, chunk: bytes) -> None:
        if self._bodyless or not chunk:
            return
        if self._chunked:
            self.writer.write(f"{len(chunk):x}".encode() + CRLF + chunk + CRLF)
        else:
            self.writer.write(chunk)
        await self.writer.drain()

    async def finish(self) -> None:
        if self._chunked:
            self.writer.write(b"0" + CRLF + CRLF)
        await self.writer.drain()


# ---------------------------------------------------------------------- #
# request parsing
# ---------------------------------------------------------------------- #


async def _read_request_head(reader: asyncio.StreamReader) -> Tuple[bytes, List[Header]]:
    lines: List[bytes] = []
    size = 0
    while True:
        try:
            line = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            raise ProxyError(400, "Bad Request: EOF before headers complete") from e
        except asyncio.LimitOverrunError as e:
            raise ProxyError(400, "Bad Request: header line too long") from e
        size += len(line)
        if size > MAX_HEAD:
            raise ProxyError(400, "Bad Request: request head too large")
        line = line.rstrip(CRLF)
        if not line:
            if not lines:
                continue  # tolerate leading blank lines
            break
        lines.append(line)

    req_line = lines[0]
    hdrs: List[Header] = []
    for raw in lines[1:]:
        if b":" not in raw:
            raise ProxyError(400, "Bad Request: malformed header line")
        k, v = raw.split(b":", 1)
        hdrs.append((k.decode("latin-1").strip(), v.decode("latin-1").strip()))
    return req_line, hdrs


def _parse_request_line(line: bytes) -> Tuple[str, str]:
    parts = line.decode("latin-1").strip().split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ProxyError(400, "Bad Request: malformed request-line")
    method, target, _ = parts
    return method, target


def _split_target(target: str) -> Tuple[str, str]:
    """Return (path, raw query) of a request-target.  The query is kept
    byte-for-byte; an absolute-form target is reduced to its path."""
    if not target.startswith("/") and "://" in target:
        parts = urlsplit(target)
        return parts.path or "/", parts.query
    path, _, query = target.partition("?")
    return path, query


def _header(headers: List[Header], name: str) -> Optional[str]:
    values = [v for k, v in headers if k.lower() == name]
    return ", ".join(values) if values else None


def _is_chunked(headers: List[Header]) -> bool:
    te = _header(headers, "transfer-encoding")
    return te is not None and te.split(",")[-1].strip().lower() == "chunked"


def _request_body(
    reader: asyncio.StreamReader,
    headers: List[Header],
    done: asyncio.Event,
) -> Optional[AsyncIterator[bytes]]:
    if _is_chunked(headers):
        return _read_chunked(reader, done)

    length = _header(headers, "content-length")
    if length is None:
        return None
    try:
        n = int(length.split(",")[0].strip())
    except ValueError:
        raise ProxyError(400, "Bad Request: invalid Content-Length") from None
    if n < 0:
        raise ProxyError(400, "Bad Request: invalid Content-Length")
    return _read_fixed(reader, n, done)


async def _read_fixed(
    reader: asyncio.StreamReader, remaining: int, done: asyncio.Event
) -> AsyncIterator[bytes]:
    while remaining > 0:
        chunk = await reader.read(min(BUFFER, remaining))
        if not chunk:
            raise ProxyError(400, "Bad Request: body shorter than Content-Length")
        remaining -= len(chunk)
        yield chunk
    done.set()


async def _read_chunked(reader: asyncio.StreamReader, done: asyncio.Event) -> AsyncIterator[bytes]:
    try:
        while True:
            size_line = await reader.readuntil(b"\n")
            try:
                size = int(size_line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                raise ProxyError(400, "Bad Request: malformed chunk size") from None
            if size == 0:
                # trailers are dropped up to the terminating blank line
                while (await reader.readuntil(b"\n")).strip():
                    pass
                break
            while size > 0:
                chunk = await reader.read(min(BUFFER, size))
                if not chunk:
                    raise ProxyError(400, "Bad Request: truncated chunked body")
                size -= len(chunk)
                yield chunk
            await reader.readexactly(2)
    except (asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
        raise ProxyError(400, "Bad Request: truncated chunked body") from e
    done.set()


async def _wait_for_disconnect(reader: asyncio.StreamReader, body_done: asyncio.Event) -> None:
    """Return once the client has gone away.  Only watches after the request
    body has been consumed, any bytes past it are discarded."""
    await body_done.wait()
    try:
        while await reader.read(BUFFER):
            pass
    except ConnectionError:
        pass
