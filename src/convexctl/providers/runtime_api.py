"""Authenticated HTTP calls against a running backend."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .. import __version__, transport

LOGGER = logging.getLogger(__name__)

UPDATE_ENV_PATH = "/api/v1/update_environment_variables"
FUNCTION_PATH = "/api/function"
DEFAULT_TIMEOUT = 30.0


class BackendCallError(RuntimeError):
    """Raised when an authenticated backend call does not succeed."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        """Record the HTTP *status* and response *body* with the message."""
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass(slots=True)
class RuntimeApiClient:
    """Client for the backend's admin endpoints."""

    base_url: str
    admin_key: str
    timeout: float = DEFAULT_TIMEOUT
    client_id: str = f"convexctl-{__version__}"

    def set_env(self, name: str, value: str) -> None:
        """Create or replace one environment variable."""
        self.set_envs({name: value})

    def set_envs(self, values: Mapping[str, str]) -> None:
        """Create or replace several environment variables in one request."""
        if not values:
            return
        changes = [{"name": name, "value": value} for name, value in values.items()]
        names = ", ".join(values)
        self._post(UPDATE_ENV_PATH, {"changes": changes}, action=f"set {names} env")
        LOGGER.debug("Updated environment variables: %s", names)

    def run_function(self, path: str, args: Mapping[str, Any] | None = None) -> Any:
        """Invoke the function at *path* and return its decoded ``value``."""
        payload = {"path": path, "format": "json", "args": dict(args or {})}
        response = self._post(
            FUNCTION_PATH,
            payload,
            action=f"run {path}",
            headers={"Convex-Client": self.client_id},
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendCallError(
                f"Failed to run {path}: response is not JSON",
                status=response.status,
                body=response.text,
            ) from exc
        if not isinstance(data, Mapping):
            raise BackendCallError(
                f"Failed to run {path}: unexpected response shape",
                status=response.status,
                body=response.text,
            )
        if data.get("status") == "error":
            message = data.get("errorMessage") or "function reported an error"
            raise BackendCallError(
                f"Failed to run {path} ({response.status}): {message}",
                status=response.status,
                body=response.text,
            )
        return data.get("value")

    def _post(
        self,
        path: str,
        payload: object,
        *,
        action: str,
        headers: Mapping[str, str] | None = None,
    ) -> transport.HttpResponse:
        merged = {"Authorization": f"Convex {self.admin_key}"}
        merged.update(headers or {})
        url = f"{self.base_url.rstrip('/')}{path}"
        try:
            response = transport.request("POST", url, headers=merged, payload=payload, timeout=self.timeout)
        except transport.TransportError as exc:
            raise BackendCallError(f"Failed to {action} via API: {exc}") from exc
        if not response.ok:
            raise BackendCallError(
                f"Failed to {action} via API ({response.status}): {response.text}",
                status=response.status,
                body=response.text,
            )
        return response


__all__ = ["BackendCallError", "RuntimeApiClient"]
