"""
p12relay.upstream
~~~~~~~~~~~~~~~~~
The outbound half of the relay.  The forwarding engine only sees the
:class:`Upstream` protocol; :class:`HTTPXUpstream` implements it on top of
an ``httpx.AsyncClient`` bound to the client TLS identity.
"""

from __future__ import annotations

import ipaddress
import ssl
import urllib.request
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol, Tuple

import httpx

CHUNK = 65_536

# Unbounded pool; only idle keep-alive connections are capped.
LIMITS = httpx.Limits(max_connections=None, max_keepalive_connections=100)

Header = Tuple[str, str]


class UpstreamError(Exception):
    """Transport-level failure talking to the origin."""


class RequestBuildError(Exception):
    """The outbound request could not be constructed."""


@dataclass
class OutboundRequest:
    method: str
    url: str
    headers: List[Header] = field(default_factory=list)
    body: Optional[AsyncIterator[bytes]] = None
    target: str = ""  # raw origin-form request-target, sent as-is


@dataclass
class UpstreamResponse:
    status_code: int
    reason: str
    headers: List[Header]
    body: AsyncIterator[bytes]


class Upstream(Protocol):
    def open(self, request: OutboundRequest) -> AsyncContextManager[UpstreamResponse]:
        """Send *request*; the response body is released when the context exits."""
        ...


class HTTPXUpstream:
    def __init__(self, client: httpx.AsyncClient, timeout: Optional[float] = None):
        self.client = client
        self.timeout = httpx.Timeout(timeout)

    @asynccontextmanager
    async def open(self, request: OutboundRequest) -> AsyncIterator[UpstreamResponse]:
        # Built directly rather than through client.build_request() so the
        # client's default User-Agent/Accept headers are never added.
        try:
            req = httpx.Request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
                extensions=self._extensions(request),
            )
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            raise RequestBuildError(str(e)) from e

        try:
            response = await self.client.send(req, stream=True)
        except httpx.TransportError as e:
            raise UpstreamError(_describe(e)) from e

        try:
            yield UpstreamResponse(
                status_code=response.status_code,
                reason=response.reason_phrase,
                headers=[
                    (k.decode("latin-1"), v.decode("latin-1"))
                    for k, v in response.headers.raw
                ],
                body=_relay(response),
            )
        finally:
            await response.aclose()

    def _extensions(self, request: OutboundRequest) -> Dict[str, Any]:
        ext: Dict[str, Any] = {"timeout": self.timeout.as_dict()}
        if request.target:
            # httpx re-quotes the URL; the wire target bypasses that.
            ext["target"] = request.target.encode("latin-1")
        return ext


async def _relay(response: httpx.Response) -> AsyncIterator[bytes]:
    # Raw bytes: Content-Encoding is relayed untouched along with its header.
    try:
        async for chunk in response.aiter_raw(CHUNK):
            yield chunk
    except httpx.TransportError as e:
        raise UpstreamError(_describe(e)) from e


def _describe(e: Exception) -> str:
    return str(e) or type(e).__name__


# ---------------------------------------------------------------------- #
# client construction
# ---------------------------------------------------------------------- #


def strip_credentials(proxy_url: str) -> str:
    """Drop any ``user:pass@`` from a network proxy URL."""
    if "://" not in proxy_url:
        proxy_url = f"http://{proxy_url}"
    scheme, _, rest = proxy_url.partition("://")
    authority, slash, path = rest.partition("/")
    authority = authority.rpartition("@")[2]
    return f"{scheme}://{authority}{slash}{path}"


def _no_proxy_pattern(host: str) -> Optional[str]:
    host = host.strip()
    if not host:
        return None
    if "://" in host:
        return host
    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        pass
    else:
        return f"all://[{ip}]" if ip.version == 6 else f"all://{ip}"
    if host.lower() == "localhost":
        return "all://localhost"
    return f"all://*{host}"


def environment_mounts(
    verify: ssl.SSLContext,
    env: Optional[Dict[str, str]] = None,
) -> Dict[str, Optional[httpx.AsyncBaseTransport]]:
    """Network proxy routing from HTTP(S)_PROXY / ALL_PROXY / NO_PROXY.

    Credentials in the proxy URLs are discarded, so no Proxy-Authorization
    header is ever sent upstream.
    """
    proxies = env if env is not None else urllib.request.getproxies()
    mounts: Dict[str, Optional[httpx.AsyncBaseTransport]] = {}

    for scheme in ("http", "https", "all"):
        url = proxies.get(scheme)
        if url:
            mounts[f"{scheme}://"] = httpx.AsyncHTTPTransport(
                verify=verify, proxy=strip_credentials(url), limits=LIMITS
            )

    for host in (proxies.get("no") or "").split(","):
        if host.strip() == "*":
            return {}
        pattern = _no_proxy_pattern(host)
        if pattern:
            mounts[pattern] = None

    return mounts


def build_client(
    ssl_context: ssl.SSLContext,
    env: Optional[Dict[str, str]] = None,
) -> httpx.AsyncClient:
    """HTTP/1.1-only client that never follows redirects or stores cookies."""
    return httpx.AsyncClient(
        verify=ssl_context,
        http1=True,
        http2=False,
        trust_env=False,
        follow_redirects=False,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        limits=LIMITS,
        mounts=environment_mounts(ssl_context, env),
        timeout=None,
    )
