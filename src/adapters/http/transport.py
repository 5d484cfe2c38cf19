"""
HTTP transport — the only place the engine touches the network.

``HttpTransport`` is a small protocol so services can be exercised
against in-memory fakes. ``UrllibTransport`` implements it on the
standard library: HTTP error statuses come back as ordinary responses
(callers decide what a 404 means), while connection-level failures are
raised as ``NetworkError`` tagged transient or not.
"""

from __future__ import annotations

import errno
import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from typing import Any, Mapping, Protocol

from src.core.errors import NetworkError

logger = logging.getLogger(__name__)

# Substrings of low-level error text that indicate a retryable failure
_TRANSIENT_MARKERS = (
    "connection reset",
    "broken pipe",
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection aborted",
    "unexpected eof",
)

_TRANSIENT_ERRNOS = {
    errno.ECONNRESET,
    errno.EPIPE,
    errno.ETIMEDOUT,
    errno.ECONNABORTED,
    errno.EAGAIN,
}


class HttpResponse(Protocol):
    """Minimal response surface used by the engine."""

    status: int
    headers: Mapping[str, str]

    def read(self, amt: int | None = None) -> bytes: ...

    def close(self) -> None: ...


class HttpTransport(Protocol):
    """Issue one HTTP request and return the (unread) response."""

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
        timeout: float | None = None,
        follow_redirects: bool = True,
    ) -> HttpResponse: ...


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        return None


class _UrllibResponse:
    """Adapt ``http.client.HTTPResponse`` / ``HTTPError`` to ``HttpResponse``."""

    def __init__(self, raw: Any, status: int):
        self._raw = raw
        self.status = status
        self.headers = raw.headers if raw.headers is not None else {}

    def read(self, amt: int | None = None) -> bytes:
        try:
            return self._raw.read(amt) if amt is not None else self._raw.read()
        except (http.client.IncompleteRead, OSError) as e:
            raise classify_transport_error(e) from e

    def close(self) -> None:
        self._raw.close()


class UrllibTransport:
    """``HttpTransport`` on top of ``urllib.request``."""

    def __init__(self, user_agent: str = "patch-deploy/1.0"):
        self._user_agent = user_agent
        self._opener = urllib.request.build_opener()
        self._no_redirect_opener = urllib.request.build_opener(_NoRedirect)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
        timeout: float | None = None,
        follow_redirects: bool = True,
    ) -> HttpResponse:
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("User-Agent", self._user_agent)
        for key, value in (headers or {}).items():
            req.add_header(key, value)

        opener = self._opener if follow_redirects else self._no_redirect_opener
        try:
            raw = opener.open(req, timeout=timeout)  # nosec - HTTPS origins from config
        except urllib.error.HTTPError as e:
            # Error statuses are answers, not transport failures
            return _UrllibResponse(e, e.code)
        except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
            raise classify_transport_error(e, url=url) from e
        return _UrllibResponse(raw, raw.status)


def is_transient_exception(exc: BaseException) -> bool:
    """Whether a low-level error is worth retrying."""
    if isinstance(exc, NetworkError):
        return exc.transient
    if isinstance(exc, urllib.error.URLError) and isinstance(exc.reason, BaseException):
        return is_transient_exception(exc.reason)
    if isinstance(exc, (socket.timeout, TimeoutError, ConnectionResetError, BrokenPipeError,
                        ConnectionAbortedError, http.client.IncompleteRead,
                        http.client.RemoteDisconnected)):
        return True
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def classify_transport_error(exc: BaseException, *, url: str = "") -> NetworkError:
    """Wrap a connection-level failure as ``NetworkError``."""
    if isinstance(exc, NetworkError):
        return exc
    reason = exc.reason if isinstance(exc, urllib.error.URLError) else exc
    return NetworkError(
        f"network failure{f' for {url}' if url else ''}: {reason}",
        transient=is_transient_exception(exc),
        details={"url": url} if url else None,
    )


def is_transient_status(status: int) -> bool:
    """5xx, 408 and 429 are retryable; other 4xx are not."""
    return status >= 500 or status in (408, 429)


def head_ok(transport: HttpTransport, url: str, *, timeout: float | None = None) -> bool:
    """Existence probe: True on HTTP 200, False on any other status.

    Raises:
        NetworkError: When the origin cannot be reached at all.
    """
    response = transport.request("HEAD", url, timeout=timeout, follow_redirects=False)
    try:
        return response.status == 200
    finally:
        response.close()


def get_json(
    transport: HttpTransport,
    url: str,
    *,
    payload: Mapping[str, Any] | None = None,
    method: str = "GET",
    timeout: float | None = None,
) -> Any:
    """Fetch and decode a JSON document.

    ``payload`` is sent as a JSON body (the patch metadata endpoint
    takes its query as a JSON body even on GET).

    Raises:
        NetworkError: Transport failure, non-200 status, or invalid JSON.
    """
    headers = {"Accept": "application/json"}
    data = None
    if payload is not None:
        data = json.dumps(dict(payload)).encode("utf-8")
        headers["Content-Type"] = "application/json"

    response = transport.request(method, url, headers=headers, data=data, timeout=timeout)
    try:
        if response.status != 200:
            raise NetworkError(
                f"{url} returned HTTP {response.status}",
                status=response.status,
                transient=is_transient_status(response.status),
                details={"url": url},
            )
        body = response.read()
    finally:
        response.close()

    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise NetworkError(f"invalid JSON from {url}: {e}", details={"url": url}) from e
