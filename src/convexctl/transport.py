"""Minimal HTTP helpers built on :mod:`urllib.request`.

Non-2xx responses are returned as :class:`HttpResponse` values rather than
raised so callers decide how a status maps onto their own error types.
Connection level failures (refused, reset, DNS, socket timeouts) propagate as
:class:`TransportError`.
"""
from __future__ import annotations

import http.client
import json
import os
import shutil
import ssl
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import IO, Any

import certifi

CHUNK_SIZE = 1024 * 256


class TransportError(RuntimeError):
    """Raised when an HTTP request could not be completed."""


@dataclass(frozen=True, slots=True)
class HttpResponse:
    """Status, headers and body of a completed HTTP exchange."""

    status: int
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return True for any 2xx status."""
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        """Return the body decoded as UTF-8 (lossy)."""
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON."""
        return json.loads(self.body.decode("utf-8"))


@lru_cache(maxsize=1)
def ssl_context() -> ssl.SSLContext:
    """Return an SSL context honouring ``SSL_CERT_FILE`` then certifi's bundle."""
    candidates: list[str] = []

    env_override = os.environ.get("SSL_CERT_FILE")
    if env_override:
        candidates.append(env_override)

    candidates.append(certifi.where())

    for candidate in candidates:
        path = Path(candidate)
        if path.is_file():
            return ssl.create_default_context(cafile=str(path))

    return ssl.create_default_context()


def _build_request(
    method: str,
    url: str,
    *,
    headers: Mapping[str, str] | None,
    payload: object | None,
) -> urllib.request.Request:
    data: bytes | None = None
    merged_headers = dict(headers or {})
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        merged_headers.setdefault("Content-Type", "application/json")
    return urllib.request.Request(url, data=data, headers=merged_headers, method=method)


_LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})


@lru_cache(maxsize=1)
def _direct_opener() -> urllib.request.OpenerDirector:
    return urllib.request.build_opener(urllib.request.ProxyHandler({}))


def _open(req: urllib.request.Request, timeout: float) -> Any:
    # Loopback traffic bypasses any proxy configured in the environment.
    if urllib.parse.urlsplit(req.full_url).hostname in _LOOPBACK_HOSTS:
        return _direct_opener().open(req, timeout=timeout)
    context = ssl_context() if req.full_url.lower().startswith("https://") else None
    return urllib.request.urlopen(req, timeout=timeout, context=context)


def request(
    method: str,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    payload: object | None = None,
    timeout: float = 30.0,
) -> HttpResponse:
    """Perform an HTTP request and return the response, whatever its status."""
    req = _build_request(method, url, headers=headers, payload=payload)
    try:
        with _open(req, timeout) as resp:
            return HttpResponse(
                status=int(resp.status),
                body=resp.read(),
                headers=dict(resp.headers.items()),
            )
    except urllib.error.HTTPError as exc:
        try:
            body = exc.read() or b""
        except (OSError, http.client.HTTPException):
            body = b""
        headers_map = dict(exc.headers.items()) if exc.headers is not None else {}
        return HttpResponse(status=int(exc.code), body=body, headers=headers_map)
    except (urllib.error.URLError, OSError, http.client.HTTPException) as exc:
        reason = getattr(exc, "reason", exc)
        raise TransportError(f"{method} {url} failed: {reason}") from exc


def download(
    url: str,
    destination: IO[bytes],
    *,
    headers: Mapping[str, str] | None = None,
    timeout: float = 300.0,
) -> int:
    """Stream *url* into *destination*; return the number of bytes written.

    Non-2xx statuses raise :class:`TransportError`.
    """
    req = _build_request("GET", url, headers=headers, payload=None)
    try:
        with _open(req, timeout) as resp:
            before = destination.tell()
            shutil.copyfileobj(resp, destination, CHUNK_SIZE)
            return destination.tell() - before
    except urllib.error.HTTPError as exc:
        raise TransportError(f"GET {url} returned HTTP {exc.code}") from exc
    except (urllib.error.URLError, OSError, http.client.HTTPException) as exc:
        reason = getattr(exc, "reason", exc)
        raise TransportError(f"GET {url} failed: {reason}") from exc


__all__ = ["HttpResponse", "TransportError", "download", "request", "ssl_context"]
