"""Tests for the runtime API client."""
from __future__ import annotations

import pytest
from conftest import StubServer, free_port

from convexctl.providers.runtime_api import BackendCallError, RuntimeApiClient

ADMIN_KEY = "convex-local|0123abcd"
ENV_PATH = "/api/v1/update_environment_variables"


def test_set_env_posts_changes_with_admin_auth(stub_server: StubServer) -> None:
    """Environment updates carry the admin key and the change list."""
    stub_server.route("POST", ENV_PATH, (200, {}))
    client = RuntimeApiClient(stub_server.url, ADMIN_KEY)

    client.set_envs({"API_URL": "http://localhost:5173", "DEBUG": "1"})

    (request,) = stub_server.requests_for("POST", ENV_PATH)
    assert request.headers["authorization"] == f"Convex {ADMIN_KEY}"
    assert request.json() == {
        "changes": [
            {"name": "API_URL", "value": "http://localhost:5173"},
            {"name": "DEBUG", "value": "1"},
        ]
    }


def test_set_env_failure_reports_status_and_body(stub_server: StubServer) -> None:
    """A non-2xx response surfaces both the status and the body text."""
    stub_server.route("POST", ENV_PATH, (400, "Invalid environment variable name: 1BAD"))
    client = RuntimeApiClient(stub_server.url, ADMIN_KEY)

    with pytest.raises(BackendCallError) as excinfo:
        client.set_env("1BAD", "x")

    assert excinfo.value.status == 400
    assert "400" in str(excinfo.value)
    assert "Invalid environment variable name: 1BAD" in str(excinfo.value)
    assert len(stub_server.requests) == 1


def test_empty_update_sends_nothing(stub_server: StubServer) -> None:
    """No request is made when there is nothing to change."""
    RuntimeApiClient(stub_server.url, ADMIN_KEY).set_envs({})
    assert stub_server.requests == []


def test_run_function_returns_value(stub_server: StubServer) -> None:
    """Function calls send path, format and args and return ``value``."""
    stub_server.route("POST", "/api/function", (200, {"status": "success", "value": [1, 2, 3]}))
    client = RuntimeApiClient(stub_server.url, ADMIN_KEY, client_id="tests-1.0")

    value = client.run_function("messages:list", {"channel": "general"})

    assert value == [1, 2, 3]
    (request,) = stub_server.requests_for("POST", "/api/function")
    assert request.headers["convex-client"] == "tests-1.0"
    assert request.headers["authorization"] == f"Convex {ADMIN_KEY}"
    assert request.json() == {"path": "messages:list", "format": "json", "args": {"channel": "general"}}


def test_run_function_error_status_in_body(stub_server: StubServer) -> None:
    """A 200 whose body reports an error is still a failed call."""
    stub_server.route(
        "POST",
        "/api/function",
        (200, {"status": "error", "errorMessage": "Uncaught Error: nope"}),
    )

    with pytest.raises(BackendCallError, match="Uncaught Error: nope"):
        RuntimeApiClient(stub_server.url, ADMIN_KEY).run_function("messages:send")


def test_run_function_http_error(stub_server: StubServer) -> None:
    """HTTP failures of function calls carry status and body."""
    stub_server.route("POST", "/api/function", (401, "bad admin key"))

    with pytest.raises(BackendCallError) as excinfo:
        RuntimeApiClient(stub_server.url, ADMIN_KEY).run_function("messages:list")

    assert excinfo.value.status == 401
    assert excinfo.value.body == "bad admin key"


def test_connection_failure_is_not_retried() -> None:
    """An unreachable backend fails once without a status."""
    client = RuntimeApiClient(f"http://127.0.0.1:{free_port()}", ADMIN_KEY, timeout=1.0)

    with pytest.raises(BackendCallError) as excinfo:
        client.set_env("A", "b")

    assert excinfo.value.status is None
