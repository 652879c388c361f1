"""Lifecycle of one ephemeral local backend instance.

A :class:`LocalBackend` owns a working directory, two ports, a credential pair
and, once spawned, an OS process. Its process state moves through::

    UNSTARTED -> SPAWNED -> (READY | FAILED) -> STOPPED

``STOPPED`` is reachable from every state and is terminal; a stopped instance
is discarded and a new one constructed rather than restarted.
"""
from __future__ import annotations

import logging
import secrets
import subprocess
from collections.abc import Mapping, Sequence
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any

from .config import DEFAULT_CACHE_TTL, AppConfig
from .keys import DEFAULT_INSTANCE_NAME, AdminKeyDeriver, CredentialPair, derive_admin_key, resolve_credentials
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers.binary_provider import BinaryProvisioner, BinaryProvisionError, ResolvedBinary
from .providers.deploy import DEFAULT_DEPLOY_TIMEOUT, CommandResult, DeployError, DeployOrchestrator
from .providers.process import (
    BackendCleanupError,
    ProcessSupervisor,
    SpawnError,
    StdioMode,
    build_backend_args,
    remove_backend_dir,
)
from .providers.readiness import HEALTH_PATH, ProbeOutcome, ReadinessTimeoutError, wait_for_http_ok
from .providers.runtime_api import BackendCallError, RuntimeApiClient

LOGGER = logging.getLogger(__name__)

BACKEND_DIR_PARENT = ".convex"
DEFAULT_PORT = 3210
DEFAULT_SITE_PROXY_PORT = 3211
DEFAULT_HEALTH_CHECK_TIMEOUT = 10.0


class BackendError(RuntimeError):
    """Base class for backend lifecycle errors."""


class BackendStateError(BackendError):
    """Raised when an operation is not allowed in the current state."""


class BackendNotRunningError(BackendStateError):
    """Raised when an operation needs a live process and there is none."""


class BackendState(str, Enum):
    """Process lifecycle states of a backend instance."""

    UNSTARTED = "unstarted"
    SPAWNED = "spawned"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class BackendOptions:
    """Caller supplied settings for a backend instance.

    Credentials left as ``None`` are generated; ``project_dir`` defaults to the
    current directory. ``binary_path`` skips provisioning entirely.
    """

    instance_name: str = DEFAULT_INSTANCE_NAME
    instance_secret: str | None = None
    admin_key: str | None = None
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    site_proxy_port: int = DEFAULT_SITE_PROXY_PORT
    project_dir: Path | None = None
    stdio: str = StdioMode.INHERIT.value
    deploy_timeout: float = DEFAULT_DEPLOY_TIMEOUT
    health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT
    binary_version: str | None = None
    binary_path: Path | None = None
    cache_dir: Path = Path("~/.convex-local-backend/releases").expanduser()
    cache_ttl: float = DEFAULT_CACHE_TTL
    deploy_runner: str = "bun"
    deploy_command: tuple[str, ...] = ()
    deploy_extra_args: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: AppConfig, **overrides: Any) -> BackendOptions:
        """Build options from resolved configuration, then apply *overrides*."""
        options = cls(
            instance_name=config.backend.instance_name,
            instance_secret=config.backend.instance_secret,
            admin_key=config.backend.admin_key,
            host=config.backend.host,
            port=config.backend.port,
            site_proxy_port=config.backend.site_proxy_port,
            project_dir=config.backend.project_dir,
            stdio=config.backend.stdio,
            deploy_timeout=config.deploy.timeout,
            health_check_timeout=config.backend.health_check_timeout,
            binary_version=config.binary.version,
            binary_path=config.binary.path,
            cache_dir=config.binary.cache_dir,
            cache_ttl=config.binary.cache_ttl,
            deploy_runner=config.deploy.runner,
            deploy_command=config.deploy.command,
            deploy_extra_args=config.deploy.extra_args,
        )
        return replace(options, **overrides) if overrides else options


class LocalBackend:
    """One managed local backend process plus its credentials and directory."""

    def __init__(
        self,
        options: BackendOptions | None = None,
        *,
        provisioner: BinaryProvisioner | None = None,
        supervisor: ProcessSupervisor | None = None,
        logger: StructuredLogger | None = None,
        derive: AdminKeyDeriver = derive_admin_key,
    ) -> None:
        """Prepare an instance; nothing is spawned and nothing touches disk."""
        self.options = options or BackendOptions()
        if self.options.port == self.options.site_proxy_port:
            raise BackendError("port and site_proxy_port must differ.")
        try:
            self._stdio = StdioMode(self.options.stdio)
        except ValueError as exc:
            raise BackendError(f"Unsupported stdio mode '{self.options.stdio}'.") from exc

        self.credentials: CredentialPair = resolve_credentials(
            self.options.instance_name,
            self.options.instance_secret,
            self.options.admin_key,
            derive=derive,
        )
        self.project_dir = Path(self.options.project_dir or Path.cwd()).expanduser().resolve()
        self.backend_dir = self.project_dir / BACKEND_DIR_PARENT / secrets.token_hex(16)
        self.backend_url = f"http://{self.options.host}:{self.options.port}"
        self.site_url = f"http://{self.options.host}:{self.options.site_proxy_port}"
        self.state = BackendState.UNSTARTED
        self.binary: ResolvedBinary | None = None

        self._process: subprocess.Popen[bytes] | None = None
        self._provisioner = provisioner
        self._supervisor = supervisor or ProcessSupervisor()
        self._logger = logger

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def instance_name(self) -> str:
        """Return the instance name."""
        return self.credentials.instance_name

    @property
    def admin_key(self) -> str:
        """Return the admin key used for authenticated calls."""
        return self.credentials.admin_key

    @property
    def pid(self) -> int | None:
        """Return the process id, or ``None`` when no process is tracked."""
        return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        """Return True while a tracked process has not exited."""
        return self._process is not None and self._process.poll() is None

    @property
    def api(self) -> RuntimeApiClient:
        """Return a client for the backend's admin endpoints."""
        return RuntimeApiClient(self.backend_url, self.admin_key)

    def __repr__(self) -> str:
        """Summarise the instance without credentials."""
        return (
            f"LocalBackend(instance_name={self.instance_name!r}, url={self.backend_url!r}, "
            f"state={self.state.value!r}, pid={self.pid!r})"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def spawn(self, backend_dir: Path | None = None) -> int:
        """Launch the backend process and return its pid without waiting."""
        if self.state is not BackendState.UNSTARTED:
            raise BackendStateError(
                f"Cannot spawn a backend in state '{self.state.value}'; create a new instance."
            )
        if backend_dir is not None:
            self.backend_dir = Path(backend_dir).expanduser().resolve()
        dir_existed = self.backend_dir.exists()

        with self._operation("backend.spawn") as op:
            try:
                binary = self._resolve_binary()
                op.set_lock_wait_ms(binary.lock_wait_ms)
                op.add_step("binary.resolve", detail={"version": binary.version, "source": binary.source})
                args = build_backend_args(
                    port=self.options.port,
                    site_proxy_port=self.options.site_proxy_port,
                    instance_name=self.credentials.instance_name,
                    instance_secret=self.credentials.instance_secret,
                    backend_dir=self.backend_dir,
                )
                process = self._supervisor.spawn(binary.path, args, cwd=self.backend_dir, stdio=self._stdio)
            except (BinaryProvisionError, SpawnError) as exc:
                self.state = BackendState.FAILED
                op.error(str(exc))
                if not dir_existed:
                    self._discard_backend_dir()
                raise
            self.binary = binary
            self._process = process
            self.state = BackendState.SPAWNED
            op.success("Backend spawned.", changed=1, context={"pid": process.pid})
        LOGGER.info("Spawned backend %s (pid %s) on %s", self.instance_name, process.pid, self.backend_url)
        return process.pid

    def wait_for_ready(self, timeout: float | None = None) -> ProbeOutcome:
        """Block until the backend answers its liveness endpoint."""
        self._require_process("wait for readiness")
        bound = self.options.health_check_timeout if timeout is None else timeout
        with self._operation("backend.wait_for_ready", timeout=bound) as op:
            try:
                outcome = wait_for_http_ok(f"{self.backend_url}{HEALTH_PATH}", bound)
            except ReadinessTimeoutError as exc:
                self.state = BackendState.FAILED
                op.error(str(exc), context={"elapsed": exc.elapsed})
                raise
            self.state = BackendState.READY
            op.success(
                "Backend ready.",
                context={"attempts": outcome.attempts, "elapsed": round(outcome.elapsed, 3)},
            )
        return outcome

    def start(self, backend_dir: Path | None = None) -> LocalBackend:
        """Spawn the backend and wait until it is ready."""
        self.spawn(backend_dir)
        self.wait_for_ready()
        return self

    def stop(self, cleanup: bool = True) -> None:
        """Kill the process and, with *cleanup*, delete the working directory.

        Without a tracked process this does nothing beyond marking the instance
        stopped, so repeated calls are safe. The process is always released
        before directory removal is attempted.
        """
        process = self._process
        if process is None:
            self.state = BackendState.STOPPED
            return

        with self._operation("backend.stop", cleanup=cleanup) as op:
            returncode = self._supervisor.terminate(process)
            self._process = None
            self.state = BackendState.STOPPED
            op.add_step("process.kill", detail={"pid": process.pid, "returncode": returncode})
            if cleanup:
                try:
                    removed = remove_backend_dir(self.backend_dir)
                except BackendCleanupError as exc:
                    op.error(str(exc))
                    raise
                op.add_step("backend_dir.remove", detail={"removed": removed})
            op.success("Backend stopped.", changed=1)
        LOGGER.info("Stopped backend %s", self.instance_name)

    def __enter__(self) -> LocalBackend:
        """Return the instance; the caller starts it explicitly."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Stop and clean up; cleanup errors never hide the body's exception."""
        try:
            self.stop(cleanup=True)
        except BackendCleanupError as cleanup_exc:
            if exc is None:
                raise
            LOGGER.warning("Cleanup failed while handling %r: %s", exc, cleanup_exc)

    # ------------------------------------------------------------------
    # Project operations
    # ------------------------------------------------------------------
    def deploy(self) -> CommandResult:
        """Push the project's functions to this backend."""
        self._require_ready("deploy")
        with self._operation("backend.deploy") as op:
            try:
                result = self._orchestrator().deploy(url=self.backend_url, admin_key=self.admin_key)
            except DeployError as exc:
                op.error(str(exc).splitlines()[0])
                raise
            op.success("Deploy finished.", context={"elapsed": round(result.elapsed, 3)})
        LOGGER.info("Deployed %s to %s in %.2fs", self.project_dir, self.backend_url, result.elapsed)
        return result

    def run_command(self, args: Sequence[str]) -> CommandResult:
        """Run an arbitrary ``convex`` CLI command against this backend."""
        self._require_ready("run a command")
        with self._operation("backend.command", command=list(args)):
            return self._orchestrator().run(args, url=self.backend_url, admin_key=self.admin_key)

    def set_env(self, name: str, value: str) -> None:
        """Set one environment variable on the backend."""
        self.set_envs({name: value})

    def set_envs(self, values: Mapping[str, str]) -> None:
        """Set several environment variables on the backend."""
        self._require_ready("set environment variables")
        with self._operation("backend.set_env", names=sorted(values)) as op:
            try:
                self.api.set_envs(values)
            except BackendCallError as exc:
                op.error(str(exc), context={"status": exc.status})
                raise
            op.success("Environment updated.", changed=len(values))

    def run_function(self, path: str, args: Mapping[str, Any] | None = None) -> Any:
        """Invoke the function at *path* and return its value."""
        self._require_ready("run a function")
        return self.api.run_function(path, args)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_process(self, action: str) -> None:
        if self._process is None:
            raise BackendNotRunningError(f"Cannot {action}: backend {self.instance_name} is not running.")

    def _require_ready(self, action: str) -> None:
        self._require_process(action)
        if self.state is not BackendState.READY:
            raise BackendStateError(
                f"Cannot {action}: backend {self.instance_name} is '{self.state.value}', not ready."
            )

    def _discard_backend_dir(self) -> None:
        """Remove a working directory left by a failed spawn."""
        try:
            remove_backend_dir(self.backend_dir)
        except BackendCleanupError as exc:
            LOGGER.warning("Could not remove %s after failed spawn: %s", self.backend_dir, exc)

    def _resolve_binary(self) -> ResolvedBinary:
        if self.options.binary_path is not None:
            path = Path(self.options.binary_path).expanduser()
            return ResolvedBinary(version="local", path=path, source="path", checked_at=datetime.now(tz=UTC))
        if self._provisioner is None:
            self._provisioner = BinaryProvisioner(
                self.options.cache_dir,
                cache_ttl=self.options.cache_ttl,
                locks=LockManager(self.options.cache_dir / ".locks"),
            )
        return self._provisioner.resolve(self.options.binary_version)

    def _orchestrator(self) -> DeployOrchestrator:
        return DeployOrchestrator(
            project_dir=self.project_dir,
            timeout=self.options.deploy_timeout,
            runner=self.options.deploy_runner,
            command=self.options.deploy_command,
            extra_args=self.options.deploy_extra_args,
        )

    def _operation(self, name: str, **args: object) -> AbstractContextManager[OperationScope]:
        target = {
            "instance": self.instance_name,
            "port": self.options.port,
            "backend_dir": self.backend_dir,
        }
        if self._logger is None:
            return nullcontext(OperationScope(name, args=args, target=target))
        return self._logger.operation(name, args=args, target=target)


__all__ = [
    "BackendError",
    "BackendNotRunningError",
    "BackendOptions",
    "BackendState",
    "BackendStateError",
    "LocalBackend",
]
