"""Port allocation helpers for convexctl."""
from __future__ import annotations

import socket

MAX_PORT = 65535


class PortAllocationError(RuntimeError):
    """Raised when free ports cannot be allocated."""


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Return True when nothing is bound to *port* on *host*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def allocate_ports(
    base: int,
    count: int = 2,
    *,
    host: str = "127.0.0.1",
    exclude: set[int] | None = None,
) -> list[int]:
    """Return *count* free ports using the sequential strategy from *base*."""
    if base < 1:
        raise PortAllocationError("Base port must be a positive integer.")
    if count < 1:
        raise PortAllocationError("At least one port must be requested.")

    used = set(exclude or ())
    allocated: list[int] = []
    candidate = base
    while len(allocated) < count:
        if candidate > MAX_PORT:
            raise PortAllocationError(
                f"Could not find {count} free ports starting at {base} (found {allocated})."
            )
        if candidate not in used and is_port_available(candidate, host):
            allocated.append(candidate)
            used.add(candidate)
        candidate += 1
    return allocated


__all__ = ["PortAllocationError", "allocate_ports", "is_port_available"]
