"""Tests for the backend instance lifecycle."""
from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from conftest import StubServer, free_port, read_record

from convexctl.backend import (
    BackendError,
    BackendNotRunningError,
    BackendOptions,
    BackendState,
    BackendStateError,
    LocalBackend,
)
from convexctl.config import load_config
from convexctl.keys import verify_admin_key
from convexctl.logging import StructuredLogger
from convexctl.ports import is_port_available
from convexctl.providers.process import BackendCleanupError, ProcessSupervisor, SpawnError
from convexctl.providers.readiness import ReadinessTimeoutError

ENV_PATH = "/api/v1/update_environment_variables"

BackendFactory = Callable[..., LocalBackend]


class RefusingSupervisor(ProcessSupervisor):
    """Supervisor that fails the test if anything is spawned."""

    def spawn(self, *args: object, **kwargs: object):  # type: ignore[override]
        raise AssertionError("construction must not spawn")


def _options(tmp_path: Path, binary: Path, **overrides: object) -> BackendOptions:
    port = free_port()
    values: dict[str, object] = {
        "project_dir": tmp_path / "project",
        "binary_path": binary,
        "stdio": "ignore",
        "port": port,
        "site_proxy_port": free_port(exclude=[port]),
        "health_check_timeout": 0.3,
    }
    values.update(overrides)
    return BackendOptions(**values)  # type: ignore[arg-type]


@pytest.fixture
def backend_factory(tmp_path: Path, fake_backend: Path) -> Iterator[BackendFactory]:
    """Build backends from the fake executable and stop them afterwards."""
    created: list[LocalBackend] = []

    def build(**overrides: object) -> LocalBackend:
        backend = LocalBackend(_options(tmp_path, fake_backend, **overrides))
        created.append(backend)
        return backend

    yield build
    for backend in created:
        backend.stop(cleanup=True)


def test_construction_never_spawns(tmp_path: Path) -> None:
    """A new instance has no process and creates no directory."""
    backend = LocalBackend(
        BackendOptions(project_dir=tmp_path),
        supervisor=RefusingSupervisor(),
    )

    assert backend.pid is None
    assert backend.state is BackendState.UNSTARTED
    assert backend.backend_url == "http://127.0.0.1:3210"
    assert backend.backend_dir.parent == tmp_path.resolve() / ".convex"
    assert re.fullmatch(r"[0-9a-f]{32}", backend.backend_dir.name)
    assert not backend.backend_dir.exists()
    assert verify_admin_key(backend.admin_key, "convex-local", backend.credentials.instance_secret)


def test_each_instance_gets_its_own_directory(tmp_path: Path) -> None:
    """Working directories are never shared between instances."""
    first = LocalBackend(BackendOptions(project_dir=tmp_path))
    second = LocalBackend(BackendOptions(project_dir=tmp_path))

    assert first.backend_dir != second.backend_dir
    assert first.credentials.instance_secret != second.credentials.instance_secret


def test_supplied_credentials_are_kept(tmp_path: Path) -> None:
    """Caller supplied secret and admin key are used verbatim."""
    options = BackendOptions(
        project_dir=tmp_path,
        instance_name="demo",
        instance_secret="ef" * 32,
        admin_key="demo|supplied",
    )

    backend = LocalBackend(options)

    assert backend.admin_key == "demo|supplied"
    assert backend.credentials.instance_secret == "ef" * 32


def test_port_collision_rejected(tmp_path: Path) -> None:
    """The service and proxy ports must differ."""
    with pytest.raises(BackendError, match="must differ"):
        LocalBackend(BackendOptions(project_dir=tmp_path, port=4000, site_proxy_port=4000))


def test_stop_is_idempotent_before_spawn(tmp_path: Path) -> None:
    """Stopping an unstarted instance twice never raises."""
    backend = LocalBackend(BackendOptions(project_dir=tmp_path))

    backend.stop()
    backend.stop(cleanup=False)

    assert backend.state is BackendState.STOPPED
    assert backend.pid is None


def test_live_operations_fail_fast_without_process(tmp_path: Path) -> None:
    """Deploys and runtime calls need a spawned process."""
    backend = LocalBackend(BackendOptions(project_dir=tmp_path))

    with pytest.raises(BackendNotRunningError):
        backend.deploy()
    with pytest.raises(BackendNotRunningError):
        backend.set_env("A", "b")
    with pytest.raises(BackendNotRunningError):
        backend.run_function("messages:list")
    with pytest.raises(BackendNotRunningError):
        backend.wait_for_ready()
    with pytest.raises(BackendNotRunningError):
        backend.run_command(["env", "list"])


def test_spawn_passes_argument_contract(tmp_path: Path, backend_factory: BackendFactory) -> None:
    """The executable receives ports, credentials and storage paths."""
    backend = backend_factory(instance_name="demo")

    pid = backend.spawn()

    record = read_record(tmp_path / "fake-backend.json")
    backend_dir = backend.backend_dir
    assert record["pid"] == pid
    assert record["argv"] == [
        "--port",
        str(backend.options.port),
        "--site-proxy-port",
        str(backend.options.site_proxy_port),
        "--instance-name",
        "demo",
        "--instance-secret",
        backend.credentials.instance_secret,
        "--local-storage",
        str(backend_dir / "convex_local_storage"),
        str(backend_dir / "convex_local_backend.sqlite3"),
    ]
    assert Path(str(record["cwd"])).resolve() == backend_dir
    assert backend.state is BackendState.SPAWNED
    assert backend.is_running


def test_spawn_twice_or_after_stop_is_rejected(backend_factory: BackendFactory) -> None:
    """A stopped instance is never restarted in place."""
    backend = backend_factory()
    backend.spawn()

    with pytest.raises(BackendStateError):
        backend.spawn()

    backend.stop()
    assert backend.state is BackendState.STOPPED
    with pytest.raises(BackendStateError):
        backend.spawn()


def test_stop_twice_after_spawn(backend_factory: BackendFactory) -> None:
    """The second stop is a no-op."""
    backend = backend_factory()
    backend.spawn()

    backend.stop()
    backend.stop()

    assert backend.pid is None
    assert not backend.backend_dir.exists()


def test_stop_without_cleanup_keeps_directory(backend_factory: BackendFactory) -> None:
    """``cleanup=False`` leaves the working directory behind."""
    backend = backend_factory()
    backend.spawn()

    backend.stop(cleanup=False)

    assert backend.backend_dir.is_dir()


def test_spawn_failure_marks_failed(tmp_path: Path) -> None:
    """A missing executable leaves the instance failed with no process."""
    backend = LocalBackend(_options(tmp_path, tmp_path / "missing-binary"))

    with pytest.raises(SpawnError):
        backend.spawn()

    assert backend.state is BackendState.FAILED
    assert backend.pid is None
    assert not backend.backend_dir.exists()
    backend.stop()
    assert not backend.backend_dir.exists()


def test_spawn_failure_keeps_existing_directory(tmp_path: Path) -> None:
    """A directory supplied by the caller survives a failed spawn."""
    existing = tmp_path / "existing"
    existing.mkdir()
    (existing / "keep.txt").write_text("data", encoding="utf-8")
    backend = LocalBackend(_options(tmp_path, tmp_path / "missing-binary"))

    with pytest.raises(SpawnError):
        backend.spawn(existing)

    assert (existing / "keep.txt").read_text(encoding="utf-8") == "data"


def test_unusable_working_directory_is_a_spawn_error(tmp_path: Path, fake_backend: Path) -> None:
    """A working directory that cannot be created fails the spawn cleanly."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    backend = LocalBackend(_options(tmp_path, fake_backend))

    with pytest.raises(SpawnError, match="Failed to start"):
        backend.spawn(blocker / "backend")

    assert backend.state is BackendState.FAILED
    assert backend.pid is None


def test_readiness_timeout_marks_failed(backend_factory: BackendFactory) -> None:
    """A backend that never answers ends up failed but still killable."""
    backend = backend_factory(health_check_timeout=0.2)
    backend.spawn()

    with pytest.raises(ReadinessTimeoutError):
        backend.wait_for_ready()

    assert backend.state is BackendState.FAILED
    assert backend.is_running
    with pytest.raises(BackendStateError, match="not ready"):
        backend.deploy()
    with pytest.raises(BackendStateError, match="not ready"):
        backend.set_env("FEATURE", "on")
    with pytest.raises(BackendStateError, match="not ready"):
        backend.run_function("messages:list")
    with pytest.raises(BackendStateError, match="not ready"):
        backend.run_command(["env", "list"])
    backend.stop()
    assert backend.state is BackendState.STOPPED


def test_cleanup_failure_reported_after_kill(
    backend_factory: BackendFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Directory removal errors surface but the process is already gone."""
    backend = backend_factory()
    backend.spawn()

    def deny(path: Path) -> None:
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr("convexctl.providers.process.shutil.rmtree", deny)
    with pytest.raises(BackendCleanupError):
        backend.stop(cleanup=True)

    assert backend.pid is None
    assert backend.state is BackendState.STOPPED
    monkeypatch.undo()


def test_lifecycle_is_logged(tmp_path: Path, fake_backend: Path) -> None:
    """Spawn and stop are recorded in the operations log."""
    logger = StructuredLogger(tmp_path / "logs")
    backend = LocalBackend(_options(tmp_path, fake_backend), logger=logger)

    backend.spawn()
    backend.stop()

    records = [json.loads(line) for line in logger.operations_log.read_text(encoding="utf-8").splitlines()]
    assert [record["operation"] for record in records] == ["backend.spawn", "backend.stop"]
    assert all(record["result"]["status"] == "success" for record in records)
    assert records[0]["lock_wait_ms"] == 0
    assert backend.credentials.instance_secret not in logger.operations_log.read_text(encoding="utf-8")


def test_options_from_config(tmp_path: Path) -> None:
    """Configuration sections map onto backend options."""
    cfg = tmp_path / "convexctl.yml"
    cfg.write_text(
        "backend:\n  port: 4210\n  site_proxy_port: 4211\n  stdio: log\n"
        "deploy:\n  timeout: 90\n  runner: npx\n"
        "binary:\n  version: precompiled-x\n",
        encoding="utf-8",
    )
    config = load_config(config_file=cfg, env={})

    options = BackendOptions.from_config(config, instance_name="override")

    assert options.port == 4210
    assert options.site_proxy_port == 4211
    assert options.stdio == "log"
    assert options.deploy_timeout == 90.0
    assert options.deploy_runner == "npx"
    assert options.binary_version == "precompiled-x"
    assert options.instance_name == "override"


def test_end_to_end_on_default_port(tmp_path: Path, fake_backend: Path) -> None:
    """Spawn on 3210, become ready after two polls, set env, stop and clean up."""
    if not is_port_available(3210):
        pytest.skip("port 3210 is in use")
    stub = StubServer(port=3210).start()
    try:
        stub.route("GET", "/version", (503, "starting"), (503, "starting"), (200, "ok"))
        stub.route("POST", ENV_PATH, (200, {}))
        backend = LocalBackend(
            BackendOptions(
                project_dir=tmp_path / "project",
                binary_path=fake_backend,
                stdio="ignore",
                port=3210,
                site_proxy_port=3211,
                health_check_timeout=5.0,
            )
        )

        backend.spawn()
        backend_dir = backend.backend_dir
        assert backend_dir.is_dir()

        outcome = backend.wait_for_ready()
        assert outcome.attempts == 3
        assert backend.state is BackendState.READY

        backend.set_env("SITE_URL", "http://localhost:5173")
        (request,) = stub.requests_for("POST", ENV_PATH)
        assert request.headers["authorization"] == f"Convex {backend.admin_key}"
        assert request.json() == {"changes": [{"name": "SITE_URL", "value": "http://localhost:5173"}]}

        backend.stop(cleanup=True)
        assert not backend_dir.exists()
        assert backend.pid is None
    finally:
        stub.stop()
