"""Shared fixtures: a threaded stub HTTP server and fake backend executables."""

from __future__ import annotations

import json
import socket
import sys
import threading
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

StubResponse = tuple[int, object]

FAKE_BACKEND_SOURCE = """
import json
import os
import sys
import time

record = os.environ.get("FAKE_BACKEND_RECORD")
if record:
    tmp = record + ".tmp"
    with open(tmp, "w", encoding="utf-8") as handle:
        json.dump({"argv": sys.argv[1:], "cwd": os.getcwd(), "pid": os.getpid()}, handle)
    os.replace(tmp, record)
print("fake backend started", flush=True)
while True:
    time.sleep(0.2)
"""


@dataclass
class RecordedRequest:
    """One request received by :class:`StubServer` (header names lowercased)."""

    method: str
    path: str
    headers: dict[str, str]
    body: bytes

    def json(self) -> object:
        """Decode the request body as JSON."""
        return json.loads(self.body.decode("utf-8"))


@dataclass
class _Route:
    responses: list[StubResponse]
    served: int = 0

    def next(self) -> StubResponse:
        index = min(self.served, len(self.responses) - 1)
        self.served += 1
        return self.responses[index]


@dataclass
class StubServer:
    """Minimal HTTP server answering canned responses per route.

    Responses for a route are served in order; the last one repeats.
    """

    host: str = "127.0.0.1"
    port: int = 0
    requests: list[RecordedRequest] = field(default_factory=list)
    _routes: dict[tuple[str, str], _Route] = field(default_factory=dict)
    _server: ThreadingHTTPServer | None = None
    _thread: threading.Thread | None = None
    _guard: threading.Lock = field(default_factory=threading.Lock)

    @property
    def url(self) -> str:
        """Return the base URL of the running server."""
        return f"http://{self.host}:{self.port}"

    def route(self, method: str, path: str, *responses: StubResponse) -> None:
        """Register canned *responses* for ``method path``."""
        self._routes[(method.upper(), path)] = _Route(list(responses) or [(200, {})])

    def requests_for(self, method: str, path: str) -> list[RecordedRequest]:
        """Return recorded requests matching ``method path``."""
        return [item for item in self.requests if item.method == method.upper() and item.path == path]

    def start(self) -> StubServer:
        """Bind and serve in a background thread."""
        stub = self

        class Handler(BaseHTTPRequestHandler):
            def _dispatch(self) -> None:
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length) if length else b""
                path = self.path.split("?", 1)[0]
                headers = {key.lower(): value for key, value in self.headers.items()}
                request = RecordedRequest(self.command, path, headers, body)
                with stub._guard:
                    stub.requests.append(request)
                    route = stub._routes.get((self.command, path))
                    status, payload = route.next() if route else (404, {"error": "not found"})
                if isinstance(payload, bytes):
                    data = payload
                elif isinstance(payload, str):
                    data = payload.encode("utf-8")
                else:
                    data = json.dumps(payload).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            do_GET = _dispatch
            do_POST = _dispatch

            def log_message(self, format: str, *args: object) -> None:  # noqa: A002
                return

        self._server = ThreadingHTTPServer((self.host, self.port), Handler)
        self._server.daemon_threads = True
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        """Shut the server down."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)


@pytest.fixture
def stub_server() -> Iterator[StubServer]:
    """Yield a started stub server on an ephemeral port."""
    server = StubServer().start()
    try:
        yield server
    finally:
        server.stop()


def make_executable(path: Path, source: str) -> Path:
    """Write a Python script runnable as an executable at *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n{source.lstrip()}", encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_backend(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Return a fake backend executable that records its argv and idles."""
    monkeypatch.setenv("FAKE_BACKEND_RECORD", str(tmp_path / "fake-backend.json"))
    return make_executable(tmp_path / "bin" / "convex-local-backend", FAKE_BACKEND_SOURCE)


def read_record(path: Path, timeout: float = 5.0) -> dict[str, object]:
    """Wait for the fake backend's record file and return it."""
    deadline = time.monotonic() + timeout
    while not path.exists():
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} was never written")
        time.sleep(0.02)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert isinstance(data, dict)
    return data


def free_port(exclude: Sequence[int] = ()) -> int:
    """Return a TCP port nothing is listening on."""
    while True:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        if port not in exclude:
            return port
