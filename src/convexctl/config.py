"""Configuration loader for convexctl.

Configuration values are merged from the following sources, later sources
winning:

1. Built-in defaults.
2. ``~/.config/convexctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CONVEXCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CONVEXCTL_BACKEND__PORT=4210
    export CONVEXCTL_BINARY__VERSION=precompiled-2025-01-31-0bd1f5b

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``. All timeouts and TTLs are expressed in seconds.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load convexctl configuration. Install with "
        "`pip install convexctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CONVEXCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
ADMIN_KEY_ENV_VAR = f"{ENV_PREFIX}ADMIN_KEY"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, ADMIN_KEY_ENV_VAR}

DEFAULT_CACHE_TTL = 7 * 24 * 60 * 60.0


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackendConfig:
    """Defaults for a managed backend instance."""

    instance_name: str = "convex-local"
    instance_secret: str | None = None
    admin_key: str | None = None
    host: str = "127.0.0.1"
    port: int = 3210
    site_proxy_port: int = 3211
    project_dir: Path | None = None
    stdio: str = "inherit"
    health_check_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secrets are masked)."""
        return {
            "instance_name": self.instance_name,
            "instance_secret": "***" if self.instance_secret else None,
            "admin_key": "***" if self.admin_key else None,
            "host": self.host,
            "port": self.port,
            "site_proxy_port": self.site_proxy_port,
            "project_dir": str(self.project_dir) if self.project_dir else None,
            "stdio": self.stdio,
            "health_check_timeout": self.health_check_timeout,
        }


@dataclass(frozen=True)
class BinaryConfig:
    """Binary provisioning and cache settings."""

    version: str | None = None
    path: Path | None = None
    cache_dir: Path = Path("~/.convex-local-backend/releases").expanduser()
    cache_ttl: float = DEFAULT_CACHE_TTL
    repository: str = "get-convex/convex-backend"
    api_base_url: str = "https://api.github.com"
    download_base_url: str = "https://github.com"
    download_timeout: float = 300.0
    offline_fallback: bool = True
    github_token: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "path": str(self.path) if self.path else None,
            "cache_dir": str(self.cache_dir),
            "cache_ttl": self.cache_ttl,
            "repository": self.repository,
            "api_base_url": self.api_base_url,
            "download_base_url": self.download_base_url,
            "download_timeout": self.download_timeout,
            "offline_fallback": self.offline_fallback,
            "github_token": "***" if self.github_token else None,
        }


@dataclass(frozen=True)
class DeployConfig:
    """Settings for the external deploy command."""

    runner: str = "bun"
    command: tuple[str, ...] = ()
    timeout: float = 60.0
    extra_args: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "runner": self.runner,
            "command": list(self.command),
            "timeout": self.timeout,
            "extra_args": list(self.extra_args),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for convexctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    lock_timeout: float
    backend: BackendConfig
    binary: BinaryConfig
    deploy: DeployConfig

    @property
    def lock_dir(self) -> Path:
        """Return the directory holding binary cache locks."""
        return self.binary.cache_dir / ".locks"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "backend": self.backend.to_dict(),
            "binary": self.binary.to_dict(),
            "deploy": self.deploy.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/convexctl/config.yml",
    "state_dir": "~/.convexctl",
    "logs_dir": None,  # derived from state_dir when absent
    "lock_timeout": 300.0,
    "backend": {
        "instance_name": "convex-local",
        "instance_secret": None,
        "admin_key": None,
        "host": "127.0.0.1",
        "port": 3210,
        "site_proxy_port": 3211,
        "project_dir": None,
        "stdio": "inherit",
        "health_check_timeout": 10.0,
    },
    "binary": {
        "version": None,
        "path": None,
        "cache_dir": "~/.convex-local-backend/releases",
        "cache_ttl": DEFAULT_CACHE_TTL,
        "repository": "get-convex/convex-backend",
        "api_base_url": "https://api.github.com",
        "download_base_url": "https://github.com",
        "download_timeout": 300.0,
        "offline_fallback": True,
        "github_token": None,
    },
    "deploy": {
        "runner": "bun",
        "command": [],
        "timeout": 60.0,
        "extra_args": [],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "backend": set(cast(Mapping[str, object], DEFAULTS["backend"]).keys()),
    "binary": set(cast(Mapping[str, object], DEFAULTS["binary"]).keys()),
    "deploy": set(cast(Mapping[str, object], DEFAULTS["deploy"]).keys()),
}
ALLOWED_STDIO_MODES = {"inherit", "ignore", "log"}
ALLOWED_DEPLOY_RUNNERS = {"bun", "bunx", "npx", "pnpm", "yarn", "direct"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _deep_copy(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backend = _as_dict(raw.get("backend"), "backend")
    stdio = backend.get("stdio")
    if stdio is not None and str(stdio) not in ALLOWED_STDIO_MODES:
        allowed_modes = ", ".join(sorted(ALLOWED_STDIO_MODES))
        raise ConfigError(f"Unsupported backend.stdio '{stdio}'. Allowed: {allowed_modes}.")

    deploy = _as_dict(raw.get("deploy"), "deploy")
    runner = deploy.get("runner")
    if runner is not None and str(runner) not in ALLOWED_DEPLOY_RUNNERS:
        allowed_runners = ", ".join(sorted(ALLOWED_DEPLOY_RUNNERS))
        raise ConfigError(f"Unsupported deploy.runner '{runner}'. Allowed: {allowed_runners}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else state_dir / "logs"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=300.0)

    backend_map = _as_dict(raw.get("backend"), "backend")
    port = _expect_port(backend_map.get("port"), "backend.port", default=3210)
    site_proxy_port = _expect_port(
        backend_map.get("site_proxy_port"), "backend.site_proxy_port", default=3211
    )
    if port == site_proxy_port:
        raise ConfigError("backend.port and backend.site_proxy_port must differ.")
    project_dir_value = backend_map.get("project_dir")
    backend = BackendConfig(
        instance_name=_expect_non_empty_str(
            backend_map.get("instance_name", "convex-local"), "backend.instance_name"
        ),
        instance_secret=_optional_str(backend_map.get("instance_secret"), "backend.instance_secret"),
        admin_key=_optional_str(backend_map.get("admin_key"), "backend.admin_key"),
        host=_expect_non_empty_str(backend_map.get("host", "127.0.0.1"), "backend.host"),
        port=port,
        site_proxy_port=site_proxy_port,
        project_dir=_to_path(project_dir_value) if project_dir_value else None,
        stdio=str(backend_map.get("stdio", "inherit")),
        health_check_timeout=_expect_positive_float(
            backend_map.get("health_check_timeout"), "backend.health_check_timeout", default=10.0
        ),
    )

    binary_map = _as_dict(raw.get("binary"), "binary")
    binary = BinaryConfig(
        version=_optional_str(binary_map.get("version"), "binary.version"),
        path=_to_path(binary_map["path"]) if binary_map.get("path") else None,
        cache_dir=_to_path(binary_map.get("cache_dir", "~/.convex-local-backend/releases")),
        cache_ttl=_expect_non_negative_float(
            binary_map.get("cache_ttl"), "binary.cache_ttl", default=DEFAULT_CACHE_TTL
        ),
        repository=_expect_non_empty_str(
            binary_map.get("repository", "get-convex/convex-backend"), "binary.repository"
        ),
        api_base_url=_expect_non_empty_str(
            binary_map.get("api_base_url", "https://api.github.com"), "binary.api_base_url"
        ).rstrip("/"),
        download_base_url=_expect_non_empty_str(
            binary_map.get("download_base_url", "https://github.com"), "binary.download_base_url"
        ).rstrip("/"),
        download_timeout=_expect_positive_float(
            binary_map.get("download_timeout"), "binary.download_timeout", default=300.0
        ),
        offline_fallback=_expect_bool(
            binary_map.get("offline_fallback"), "binary.offline_fallback", default=True
        ),
        github_token=_optional_str(binary_map.get("github_token"), "binary.github_token"),
    )

    deploy_map = _as_dict(raw.get("deploy"), "deploy")
    deploy = DeployConfig(
        runner=str(deploy_map.get("runner", "bun")),
        command=_as_str_tuple(deploy_map.get("command"), "deploy.command"),
        timeout=_expect_positive_float(deploy_map.get("timeout"), "deploy.timeout", default=60.0),
        extra_args=_as_str_tuple(deploy_map.get("extra_args"), "deploy.extra_args"),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        lock_timeout=lock_timeout,
        backend=backend,
        binary=binary,
        deploy=deploy,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if port < 1 or port > 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty_str(value: object, label: str) -> str:
    text = _expect_str(value, label).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _optional_str(value: object | None, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    text = _expect_str(value, label).strip()
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "1", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "0", "off"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _to_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _to_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _to_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_str_tuple(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    return tuple(str(item) for item in _as_sequence(value, label))


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackendConfig",
    "BinaryConfig",
    "ConfigError",
    "DeployConfig",
    "load_config",
]
