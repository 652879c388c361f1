"""Run the Convex CLI against a managed backend."""
from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_DEPLOY_TIMEOUT = 60.0


class DeployError(RuntimeError):
    """Raised when the deploy command fails to run or exits non-zero."""

    def __init__(self, message: str, *, result: CommandResult | None = None) -> None:
        """Store the captured *result* alongside the message, when there is one."""
        super().__init__(message)
        self.result = result


class DeployTimeoutError(DeployError):
    """Raised when the deploy command exceeds its timeout."""


class DeployRunner(str, Enum):
    """Command runners able to invoke the ``convex`` CLI."""

    BUN = "bun"
    BUNX = "bunx"
    NPX = "npx"
    PNPM = "pnpm"
    YARN = "yarn"
    DIRECT = "direct"

    @property
    def prefix(self) -> tuple[str, ...]:
        """Return the argv prefix placed before ``convex``."""
        return _RUNNER_PREFIXES[self]


_RUNNER_PREFIXES: dict[DeployRunner, tuple[str, ...]] = {
    DeployRunner.BUN: ("bun",),
    DeployRunner.BUNX: ("bunx",),
    DeployRunner.NPX: ("npx",),
    DeployRunner.PNPM: ("pnpm", "exec"),
    DeployRunner.YARN: ("yarn",),
    DeployRunner.DIRECT: (),
}


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and captured output of a finished command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    elapsed: float

    @property
    def output(self) -> str:
        """Return stdout followed by stderr."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass(slots=True)
class DeployOrchestrator:
    """Invoke ``convex`` CLI commands for one project directory.

    A non-empty ``command`` replaces the runner prefix, e.g.
    ``("node", "scripts/convex-shim.js")``.
    """

    project_dir: Path
    timeout: float = DEFAULT_DEPLOY_TIMEOUT
    runner: DeployRunner | str = DeployRunner.BUN
    command: Sequence[str] = ()
    extra_args: Sequence[str] = field(default_factory=tuple)

    def build_command(self, args: Sequence[str], *, url: str, admin_key: str) -> list[str]:
        """Return the full argv for ``convex <args>`` against *url*."""
        prefix = list(self.command) if self.command else list(DeployRunner(self.runner).prefix)
        return [*prefix, "convex", *args, "--admin-key", admin_key, "--url", url]

    def deploy(self, *, url: str, admin_key: str) -> CommandResult:
        """Push the project's functions to the backend at *url*."""
        return self.run(["deploy", *self.extra_args], url=url, admin_key=admin_key)

    def run(self, args: Sequence[str], *, url: str, admin_key: str) -> CommandResult:
        """Run ``convex <args>`` and return the captured result on success."""
        command = self.build_command(args, url=url, admin_key=admin_key)
        label = " ".join(["convex", *args])
        started = time.monotonic()
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=str(self.project_dir),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                args=_redact(command, admin_key),
                returncode=-1,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr),
                elapsed=time.monotonic() - started,
            )
            message = f"{label} timed out after {self.timeout:g}s"
            if result.output:
                message = f"{message}:\n{result.output}"
            raise DeployTimeoutError(message, result=result) from exc
        except OSError as exc:
            raise DeployError(f"Failed to spawn {label}: {exc}") from exc

        result = CommandResult(
            args=_redact(command, admin_key),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            elapsed=time.monotonic() - started,
        )
        if completed.returncode != 0:
            raise DeployError(
                f"{label} failed (exit code {completed.returncode}):\n{result.output or 'no output'}",
                result=result,
            )
        LOGGER.debug("%s finished in %.2fs", label, result.elapsed)
        return result


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _redact(command: Sequence[str], secret: str) -> tuple[str, ...]:
    return tuple("***" if item == secret else item for item in command)


__all__ = [
    "CommandResult",
    "DEFAULT_DEPLOY_TIMEOUT",
    "DeployError",
    "DeployOrchestrator",
    "DeployRunner",
    "DeployTimeoutError",
]
