"""Structured operation logging for convexctl.

Two channels are used:

* Regular module loggers (``logging.getLogger(__name__)``) for human readable
  diagnostics. :func:`configure_logging` wires these up for the CLI.
* :class:`StructuredLogger`, which appends one JSON record per operation to
  ``operations.jsonl`` so lifecycle events (spawn, ready, deploy, stop) can be
  inspected after the fact.

Failures to create or write the log directory never abort an operation; the
structured logger disables itself and carries on.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Configure the root logger for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    logging.getLogger("convexctl").setLevel(level)


def _iso_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for a single logged operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope for operation *name*."""
        self.name = name
        self.op_id = secrets.token_hex(6)
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._started = time.monotonic()
        self.started_at = _iso_now()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _iso_now()}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited on locks."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self.result = {
            "status": "success",
            "message": message,
            "changed": changed,
            "context": dict(context or {}),
        }

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self.result = {
            "status": "warning",
            "message": message,
            "changed": changed,
            "warnings": list(warnings or [message]),
            "errors": list(errors or []),
            "context": dict(context or {}),
        }

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self.result = {
            "status": "error",
            "message": message,
            "errors": list(errors or [message]),
            "context": dict(context or {}),
        }
        if rc is not None:
            self.result["rc"] = rc

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        result = self.result or {"status": "success", "message": "completed", "changed": 0}
        record: dict[str, object] = {
            "op_id": self.op_id,
            "operation": self.name,
            "started_at": self.started_at,
            "finished_at": _iso_now(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "pid": os.getpid(),
            "args": self.args,
            "target": self.target,
            "steps": self.steps,
            "result": result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return _sanitize(record)  # type: ignore[return-value]


class StructuredLogger:
    """Append-only JSON lines logger for lifecycle operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled (%s): %s", self._log_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return True while records are being written."""
        return self._enabled

    @property
    def operations_log(self) -> Path:
        """Return the path of the JSON lines operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Scope an operation; the record is written when the block exits."""
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None or scope.result.get("status") != "error":
                scope.error(str(exc) or type(exc).__name__, context={"exception": type(exc).__name__})
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
