"""Launch and kill backend processes."""
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO

LOGGER = logging.getLogger(__name__)

STORAGE_DIR_NAME = "convex_local_storage"
STATE_FILE_NAME = "convex_local_backend.sqlite3"
LOG_FILE_NAME = "backend.log"
REAP_TIMEOUT = 5.0


class SpawnError(RuntimeError):
    """Raised when the backend process could not be created."""


class BackendCleanupError(RuntimeError):
    """Raised when a backend working directory could not be removed."""


class StdioMode(str, Enum):
    """Where the backend's stdout and stderr go."""

    INHERIT = "inherit"
    IGNORE = "ignore"
    LOG = "log"


def build_backend_args(
    *,
    port: int,
    site_proxy_port: int,
    instance_name: str,
    instance_secret: str,
    backend_dir: Path,
) -> list[str]:
    """Return the command line arguments understood by the backend executable."""
    return [
        "--port",
        str(port),
        "--site-proxy-port",
        str(site_proxy_port),
        "--instance-name",
        instance_name,
        "--instance-secret",
        instance_secret,
        "--local-storage",
        str(backend_dir / STORAGE_DIR_NAME),
        str(backend_dir / STATE_FILE_NAME),
    ]


@dataclass(slots=True)
class ProcessSupervisor:
    """Create backend processes and end them unconditionally."""

    reap_timeout: float = REAP_TIMEOUT

    def spawn(
        self,
        executable: Path,
        args: Sequence[str],
        *,
        cwd: Path,
        stdio: StdioMode | str = StdioMode.INHERIT,
    ) -> subprocess.Popen[bytes]:
        """Start *executable* with *args* in *cwd* and return immediately."""
        mode = StdioMode(stdio)
        command = [str(executable), *args]
        log_handle: IO[bytes] | None = None
        stdout: int | IO[bytes] | None = None
        stderr: int | IO[bytes] | None = None
        try:
            cwd.mkdir(parents=True, exist_ok=True)
            (cwd / STORAGE_DIR_NAME).mkdir(exist_ok=True)
            if mode is StdioMode.IGNORE:
                stdout = stderr = subprocess.DEVNULL
            elif mode is StdioMode.LOG:
                log_handle = (cwd / LOG_FILE_NAME).open("ab")
                stdout = log_handle
                stderr = subprocess.STDOUT
            process = subprocess.Popen(  # noqa: S603
                command,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
            )
        except OSError as exc:
            raise SpawnError(f"Failed to start {executable}: {exc}") from exc
        finally:
            # The child holds its own descriptor once Popen returns.
            if log_handle is not None:
                log_handle.close()

        if not process.pid:
            raise SpawnError(f"Starting {executable} did not yield a process id.")
        LOGGER.debug("Started %s with pid %s in %s", executable, process.pid, cwd)
        return process

    def terminate(self, process: subprocess.Popen[bytes]) -> int | None:
        """Kill *process* without grace and reap it; return its exit status."""
        if process.poll() is not None:
            return process.returncode
        try:
            if os.name == "nt":
                process.kill()
            else:
                os.kill(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            LOGGER.debug("Process %s already exited", process.pid)
        try:
            return process.wait(timeout=self.reap_timeout)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Process %s did not exit after SIGKILL", process.pid)
            return None


def remove_backend_dir(path: Path) -> bool:
    """Delete *path* recursively; return False when it did not exist."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise BackendCleanupError(f"Failed to remove backend directory {path}: {exc}") from exc
    return True


__all__ = [
    "BackendCleanupError",
    "ProcessSupervisor",
    "SpawnError",
    "StdioMode",
    "build_backend_args",
    "remove_backend_dir",
]
