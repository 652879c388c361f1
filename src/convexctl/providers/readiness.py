"""Poll a backend until it answers HTTP."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from .. import transport

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
HEALTH_PATH = "/version"


class ReadinessTimeoutError(TimeoutError):
    """Raised when the backend did not answer within the allotted time."""

    def __init__(self, url: str, elapsed: float, last_error: str | None) -> None:
        """Record the probed *url*, time spent and the last observed condition."""
        detail = f" (last: {last_error})" if last_error else ""
        super().__init__(f"{url} was not ready after {elapsed:.2f}s{detail}")
        self.url = url
        self.elapsed = elapsed
        self.last_error = last_error


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    """Result of a successful readiness wait."""

    status: int
    attempts: int
    elapsed: float


def wait_for_http_ok(url: str, timeout: float, *, interval: float = POLL_INTERVAL) -> ProbeOutcome:
    """GET *url* every *interval* seconds until it returns 2xx or *timeout* passes.

    Refused connections, non-2xx statuses and attempts that outlive the
    remaining time are expected while the process boots and are retried.
    """
    started = time.monotonic()
    deadline = started + max(0.0, timeout)
    attempts = 0
    last_error: str | None = None

    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        attempts += 1
        try:
            response = transport.request("GET", url, timeout=remaining)
        except transport.TransportError as exc:
            last_error = str(exc)
        else:
            if response.ok:
                elapsed = time.monotonic() - started
                LOGGER.debug("%s ready after %d attempt(s) in %.2fs", url, attempts, elapsed)
                return ProbeOutcome(status=response.status, attempts=attempts, elapsed=elapsed)
            last_error = f"HTTP {response.status}"

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        time.sleep(min(interval, remaining))

    raise ReadinessTimeoutError(url, time.monotonic() - started, last_error)


__all__ = ["HEALTH_PATH", "POLL_INTERVAL", "ProbeOutcome", "ReadinessTimeoutError", "wait_for_http_ok"]
