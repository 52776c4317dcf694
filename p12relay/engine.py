"""
p12relay.engine
~~~~~~~~~~~~~~~
Maps ``/{host}/{path}?{query}`` onto ``{scheme}://{host}/{path}?{query}``,
replays method, headers and body through an :class:`Upstream` and streams
the origin's answer back to the caller.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import AsyncIterator, List, Optional, Protocol, Tuple

from .logger import AccessLog
from .upstream import OutboundRequest, RequestBuildError, Upstream, UpstreamError

Header = Tuple[str, str]

BAD_FORMAT = "Invalid request format. Expected /{host}/{path}"

_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class ProxyError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


@dataclass
class InboundRequest:
    method: str
    path: str
    query: str = ""
    headers: List[Header] = field(default_factory=list)
    body: Optional[AsyncIterator[bytes]] = None

    @property
    def uri(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path


@dataclass(frozen=True)
class Target:
    scheme: str
    host: str
    path: str = "/"
    query: str = ""

    @property
    def request_target(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}{self.request_target}"


class Responder(Protocol):
    started: bool

    async def start(self, status: int, reason: str, headers: List[Header]) -> None: ...

    async def write(self, chunk: bytes) -> None: ...

    async def finish(self) -> None: ...


def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


async def send_error(responder: Responder, status: int, msg: str) -> None:
    body = f"{msg}\n".encode()
    await responder.start(
        status,
        reason_phrase(status),
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ],
    )
    await responder.write(body)
    await responder.finish()


def resolve_target(scheme: str, path: str, query: str = "") -> Target:
    """Split ``/{host}/{rest}`` into the origin target.

    >>> resolve_target("https", "/api.example.com:8443/v1/users", "active=true").url
    'https://api.example.com:8443/v1/users?active=true'
    """
    host, _, rest = path.removeprefix("/").partition("/")
    if not host:
        raise ProxyError(400, BAD_FORMAT)
    return Target(scheme=scheme, host=host, path=f"/{rest}", query=query)


class ForwardingEngine:
    """Stateless per-request relay, shared by every connection handler."""

    def __init__(
        self,
        upstream: Upstream,
        access: AccessLog,
        scheme: str = "https",
        debug: bool = False,
    ) -> None:
        self.upstream = upstream
        self.access = access
        self.scheme = scheme
        self.debug = debug

    async def handle(self, request: InboundRequest, responder: Responder) -> None:
        try:
            await self._forward(request, responder)
        except ProxyError as e:
            if responder.started:
                raise
            await send_error(responder, e.status, e.msg)

    async def _forward(self, request: InboundRequest, responder: Responder) -> None:
        try:
            target = resolve_target(self.scheme, request.path, request.query)
        except ProxyError as e:
            self.access.rejected(request.method, request.uri, e.status, "malformed proxy path")
            raise

        url = target.url
        self.access.forwarding(request.method, request.uri, url)
        if self.debug:
            self.access.headers("Request Headers:", request.headers)

        outbound = self._outbound(request, target)
        start_ts = time.monotonic()

        try:
            async with self.upstream.open(outbound) as response:
                self.access.completed(request.method, url, response.status_code, response.reason)
                if self.debug:
                    self.access.headers("Response Headers:", response.headers)

                await responder.start(response.status_code, response.reason, response.headers)
                total = 0
                async for chunk in response.body:
                    total += len(chunk)
                    await responder.write(chunk)
                await responder.finish()

        except RequestBuildError as e:
            self.access.failed(request.method, url, 500, f"Failed to create request: {e}")
            raise ProxyError(500, "Failed to create request") from e
        except UpstreamError as e:
            msg = f"Failed to forward request: {e}"
            self.access.failed(request.method, url, 502, msg)
            if responder.started:
                raise  # too late for a 502, the head is already out
            raise ProxyError(502, msg) from e

        self.access.finished(
            request.method,
            url,
            response.status_code,
            total,
            int((time.monotonic() - start_ts) * 1000),
        )

    def _outbound(self, request: InboundRequest, target: Target) -> OutboundRequest:
        url = target.url
        if not _TOKEN.match(request.method):
            self.access.failed(
                request.method, url, 500, f"Failed to create request: invalid method {request.method!r}"
            )
            raise ProxyError(500, "Failed to create request")

        # Host follows the target URL; everything else is relayed as-is.
        headers = [(k, v) for k, v in request.headers if k.lower() != "host"]
        return OutboundRequest(request.method, url, headers, request.body, target.request_target)
