"""Typer-powered command line interface for ``convexctl``.

Commands operate on a throwaway local backend: provisioning its executable,
running it for a project, and talking to a running instance.
"""
from __future__ import annotations

import json
import textwrap
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backend import BackendError, BackendOptions, LocalBackend
from .config import ADMIN_KEY_ENV_VAR, AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .keys import DEFAULT_INSTANCE_NAME, CredentialError, generate_key_pair
from .locking import LockManager
from .logging import OperationScope, StructuredLogger, configure_logging
from .ports import PortAllocationError, allocate_ports
from .providers import (
    BackendCallError,
    BackendCleanupError,
    BinaryProvisioner,
    BinaryProvisionError,
    DeployError,
    ReadinessTimeoutError,
    RuntimeApiClient,
    SpawnError,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to convexctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")
URL_OPTION = typer.Option(
    None,
    "--url",
    help="Backend URL (defaults to the configured host and port).",
)
ADMIN_KEY_OPTION = typer.Option(
    None,
    "--admin-key",
    envvar=ADMIN_KEY_ENV_VAR,
    help="Admin key of the running backend.",
)

WAIT_INTERVAL = 0.5

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage ephemeral local Convex backends.

        Download the backend executable, run it with generated credentials,
        deploy a project into it and call it while it runs.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    provisioner: BinaryProvisioner


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    locks = LockManager(config.lock_dir, config.lock_timeout)
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=StructuredLogger(config.logs_dir),
        provisioner=BinaryProvisioner.from_config(config.binary, locks=locks),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the convexctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"convexctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    configure_logging(verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, (ConfigError, CredentialError, PortAllocationError, BackendError)):
        return ExitCode.VALIDATION
    if isinstance(exc, (BinaryProvisionError, SpawnError, BackendCleanupError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _parse_assignments(values: Sequence[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for raw in values:
        name, separator, value = raw.partition("=")
        name = name.strip()
        if not separator or not name:
            raise ValueError(f"Expected NAME=VALUE, got '{raw}'.")
        parsed[name] = value
    return parsed


def _default_url(config: AppConfig) -> str:
    return f"http://{config.backend.host}:{config.backend.port}"


def _flatten(data: Mapping[str, object], prefix: str = "") -> list[tuple[str, object]]:
    rows: list[tuple[str, object]] = []
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            rows.extend(_flatten(value, f"{dotted}."))
        else:
            rows.append((dotted, value))
    return rows


config_app = typer.Typer(help="Inspect resolved configuration.")
keys_app = typer.Typer(help="Generate instance credentials.")
binary_app = typer.Typer(help="Manage cached backend executables.")
env_app = typer.Typer(help="Manage environment variables of a running backend.")

app.add_typer(config_app, name="config")
app.add_typer(keys_app, name="keys")
app.add_typer(binary_app, name="binary")
app.add_typer(env_app, name="env")


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print the merged configuration (secrets masked)."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config", "path": runtime.config.config_file},
    ) as op:
        if json_output:
            console.print_json(data=data)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key, value in _flatten(data):
                table.add_row(key, "" if value is None else str(value))
            console.print(table)
        op.success("Reported configuration.", changed=0)


@keys_app.command("generate")
def keys_generate(
    ctx: typer.Context,
    instance_name: str = typer.Option(
        DEFAULT_INSTANCE_NAME,
        "--instance-name",
        help="Instance name the admin key is bound to.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Generate an instance secret and its admin key."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "keys generate",
        args={"instance_name": instance_name, "json": json_output},
        target={"kind": "credentials"},
    ) as op:
        try:
            pair = generate_key_pair(instance_name)
        except CredentialError as exc:
            _command_error(op, str(exc))
        payload = {
            "instance_name": pair.instance_name,
            "instance_secret": pair.instance_secret,
            "admin_key": pair.admin_key,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            for key, value in payload.items():
                console.print(f"[bold]{key}[/bold]: {value}", soft_wrap=True)
        op.success("Generated credentials.", changed=0)


@binary_app.command("resolve")
def binary_resolve(
    ctx: typer.Context,
    version: str | None = typer.Option(
        None,
        "--version",
        help="Pin an exact release tag (defaults to config, then latest).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Make sure a backend executable is cached and print its path."""
    runtime = _get_runtime(ctx)
    requested = version or runtime.config.binary.version
    with runtime.logger.operation(
        "binary resolve",
        args={"version": requested, "json": json_output},
        target={"kind": "binary", "cache_dir": runtime.provisioner.cache_dir},
    ) as op:
        try:
            resolved = runtime.provisioner.resolve(requested)
        except BinaryProvisionError as exc:
            _command_error(op, f"Could not obtain backend executable: {exc}", rc=ExitCode.ENVIRONMENT)
        op.set_lock_wait_ms(resolved.lock_wait_ms)
        payload = {
            "version": resolved.version,
            "path": str(resolved.path),
            "source": resolved.source,
            "checked_at": resolved.checked_at.isoformat(),
        }
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[green]{resolved.version}[/green] ({resolved.source}) {resolved.path}")
        context = dict(payload)
        if resolved.source == "stale":
            op.warning("Using a stale cached executable.", warnings=["stale"], context=context)
        else:
            op.success("Resolved backend executable.", changed=int(resolved.source == "download"), context=context)


@binary_app.command("list")
def binary_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List cached backend executables."""
    runtime = _get_runtime(ctx)
    entries = [entry.to_dict() for entry in runtime.provisioner.list_cached()]
    with runtime.logger.operation(
        "binary list",
        args={"json": json_output},
        target={"kind": "binary", "cache_dir": runtime.provisioner.cache_dir},
    ) as op:
        if json_output:
            console.print_json(data={"binaries": entries})
            op.success("Reported cached binaries as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Checked")
        table.add_column("Path")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(str(entry["version"]), str(entry["checked_at"]), str(entry["path"]))
        console.print(table)
        op.success("Reported cached binaries.", changed=0)


@binary_app.command("remove")
def binary_remove(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="Release tag to delete from the cache."),
) -> None:
    """Delete a cached backend executable."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "binary remove",
        args={"version": version},
        target={"kind": "binary", "version": version},
    ) as op:
        try:
            runtime.provisioner.remove(version)
        except BinaryProvisionError as exc:
            _command_error(op, str(exc))
        console.print(f"Removed cached backend [bold]{version}[/bold].")
        op.success("Removed cached binary.", changed=1)


@app.command("run")
def run(
    ctx: typer.Context,
    port: int | None = typer.Option(None, "--port", help="Backend port (default 3210)."),
    site_proxy_port: int | None = typer.Option(
        None, "--site-proxy-port", help="HTTP actions proxy port (default 3211)."
    ),
    auto_ports: bool = typer.Option(
        False, "--auto-ports", help="Pick the first two free ports from --port upwards."
    ),
    instance_name: str | None = typer.Option(None, "--instance-name", help="Instance name."),
    project_dir: Path | None = typer.Option(
        None,
        "--project-dir",
        file_okay=False,
        help="Project to deploy (defaults to the current directory).",
    ),
    binary_version: str | None = typer.Option(
        None, "--binary-version", help="Pin an exact backend release tag."
    ),
    no_deploy: bool = typer.Option(False, "--no-deploy", help="Start without deploying the project."),
    env: list[str] = typer.Option(
        [],
        "--env",
        "-e",
        help="Environment variable to set after deploy, as NAME=VALUE (repeatable).",
    ),
    keep_data: bool = typer.Option(
        False, "--keep-data", help="Keep the working directory after the backend stops."
    ),
) -> None:
    """Run a backend for a project until interrupted."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    overrides: dict[str, Any] = {}
    if instance_name:
        overrides["instance_name"] = instance_name
    if project_dir is not None:
        overrides["project_dir"] = project_dir
    if binary_version:
        overrides["binary_version"] = binary_version

    with runtime.logger.operation(
        "run",
        args={
            "port": port,
            "site_proxy_port": site_proxy_port,
            "auto_ports": auto_ports,
            "no_deploy": no_deploy,
            "env": sorted(item.partition("=")[0] for item in env),
            "keep_data": keep_data,
        },
        target={"kind": "backend"},
    ) as op:
        try:
            env_values = _parse_assignments(env)
        except ValueError as exc:
            _command_error(op, str(exc))

        base_port = port or config.backend.port
        if auto_ports:
            try:
                chosen = allocate_ports(base_port, 2, host=config.backend.host)
            except PortAllocationError as exc:
                _command_error(op, str(exc))
            overrides["port"], overrides["site_proxy_port"] = chosen
            op.add_step("ports.allocate", detail={"ports": chosen})
        else:
            if port is not None:
                overrides["port"] = port
            if site_proxy_port is not None:
                overrides["site_proxy_port"] = site_proxy_port

        try:
            backend = LocalBackend(
                BackendOptions.from_config(config, **overrides),
                provisioner=runtime.provisioner,
                logger=runtime.logger,
            )
        except (BackendError, CredentialError) as exc:
            _command_error(op, str(exc))

        try:
            backend.start()
            op.add_step("backend.start", detail={"pid": backend.pid})
            if not no_deploy:
                console.print(f"Deploying [bold]{backend.project_dir}[/bold] ...")
                backend.deploy()
                op.add_step("backend.deploy")
            if env_values:
                backend.set_envs(env_values)
                op.add_step("backend.set_env", detail={"names": sorted(env_values)})
        except (
            BinaryProvisionError,
            SpawnError,
            ReadinessTimeoutError,
            DeployError,
            BackendCallError,
        ) as exc:
            _stop_quietly(backend, keep_data)
            _command_error(op, str(exc), rc=_exit_code_for(exc))
        except KeyboardInterrupt:
            _stop_quietly(backend, keep_data)
            _command_error(op, "Interrupted before the backend was ready.", rc=ExitCode.INTERRUPTED)

        table = Table(show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("URL", backend.backend_url)
        table.add_row("Site URL", backend.site_url)
        table.add_row("Instance", backend.instance_name)
        table.add_row("Admin key", backend.admin_key)
        table.add_row("PID", str(backend.pid))
        table.add_row("Data", str(backend.backend_dir))
        console.print(table)
        console.print("Backend running. Press Ctrl+C to stop.")
        op.success(
            "Backend running.",
            changed=1,
            context={"url": backend.backend_url, "pid": backend.pid},
        )

    exited = False
    try:
        while backend.is_running:
            time.sleep(WAIT_INTERVAL)
        exited = True
    except KeyboardInterrupt:
        console.print("Stopping backend ...")
    finally:
        with runtime.logger.operation("run stop", target={"kind": "backend", "url": backend.backend_url}) as op:
            try:
                backend.stop(cleanup=not keep_data)
            except BackendCleanupError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
            if exited:
                _command_error(op, "Backend process exited unexpectedly.", rc=ExitCode.PROVIDER)
            op.success("Backend stopped.", changed=1)


def _stop_quietly(backend: LocalBackend, keep_data: bool) -> None:
    try:
        backend.stop(cleanup=not keep_data)
    except BackendCleanupError as exc:
        console.print(f"[yellow]{exc}[/yellow]")


@app.command("call")
def call(
    ctx: typer.Context,
    function: str = typer.Argument(..., help="Function path, e.g. messages:list."),
    args: str = typer.Option("{}", "--args", help="JSON object of function arguments."),
    url: str | None = URL_OPTION,
    admin_key: str | None = ADMIN_KEY_OPTION,
) -> None:
    """Invoke a function on a running backend and print its value."""
    runtime = _get_runtime(ctx)
    target_url = url or _default_url(runtime.config)
    with runtime.logger.operation(
        "call",
        args={"function": function},
        target={"kind": "backend", "url": target_url},
    ) as op:
        key = admin_key or runtime.config.backend.admin_key
        if not key:
            _command_error(op, "An admin key is required (--admin-key or backend.admin_key).")
        try:
            decoded = json.loads(args)
        except json.JSONDecodeError as exc:
            _command_error(op, f"--args is not valid JSON: {exc}")
        if not isinstance(decoded, dict):
            _command_error(op, "--args must be a JSON object.")
        try:
            value = RuntimeApiClient(target_url, key).run_function(function, decoded)
        except BackendCallError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        console.print_json(data=value)
        op.success("Function returned.", changed=0)


@env_app.command("set")
def env_set(
    ctx: typer.Context,
    assignments: list[str] = typer.Argument(..., help="NAME=VALUE pairs."),
    url: str | None = URL_OPTION,
    admin_key: str | None = ADMIN_KEY_OPTION,
) -> None:
    """Set environment variables on a running backend."""
    runtime = _get_runtime(ctx)
    target_url = url or _default_url(runtime.config)
    with runtime.logger.operation(
        "env set",
        args={"names": sorted(item.partition("=")[0] for item in assignments)},
        target={"kind": "backend", "url": target_url},
    ) as op:
        key = admin_key or runtime.config.backend.admin_key
        if not key:
            _command_error(op, "An admin key is required (--admin-key or backend.admin_key).")
        try:
            values = _parse_assignments(assignments)
        except ValueError as exc:
            _command_error(op, str(exc))
        try:
            RuntimeApiClient(target_url, key).set_envs(values)
        except BackendCallError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        console.print(f"Updated {len(values)} environment variable(s).")
        op.success("Environment updated.", changed=len(values))


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
