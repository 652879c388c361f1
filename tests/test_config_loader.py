"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from convexctl.config import DEFAULT_CACHE_TTL, AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.backend.instance_name == "convex-local"
    assert config.backend.port == 3210
    assert config.backend.site_proxy_port == 3211
    assert config.backend.health_check_timeout == 10.0
    assert config.deploy.timeout == 60.0
    assert config.deploy.runner == "bun"
    assert config.binary.cache_ttl == DEFAULT_CACHE_TTL
    assert config.binary.cache_dir == Path("~/.convex-local-backend/releases").expanduser()
    assert config.logs_dir == config.state_dir / "logs"
    assert config.lock_dir == config.binary.cache_dir / ".locks"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "convexctl.yml"
    cfg.write_text(
        "state_dir: {state}\n"
        "backend:\n"
        "  instance_name: demo\n"
        "  port: 4210\n"
        "  site_proxy_port: 4211\n"
        "  stdio: log\n"
        "binary:\n"
        "  version: precompiled-2025-01-31-0bd1f5b\n"
        "  cache_dir: {cache}\n"
        "deploy:\n"
        "  runner: pnpm\n"
        "  extra_args: [--typecheck, disable]\n".format(
            state=tmp_path / "state",
            cache=tmp_path / "cache",
        ),
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.state_dir == tmp_path / "state"
    assert config.backend.instance_name == "demo"
    assert config.backend.port == 4210
    assert config.backend.stdio == "log"
    assert config.binary.version == "precompiled-2025-01-31-0bd1f5b"
    assert config.binary.cache_dir == tmp_path / "cache"
    assert config.deploy.runner == "pnpm"
    assert config.deploy.extra_args == ("--typecheck", "disable")


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "convexctl.yml"
    cfg.write_text("backend:\n  port: 4210\n", encoding="utf-8")
    env = {
        "CONVEXCTL_BACKEND__PORT": "5210",
        "CONVEXCTL_BINARY__OFFLINE_FALLBACK": "false",
        "CONVEXCTL_BINARY__CACHE_TTL": "60",
        "CONVEXCTL_LOCK_TIMEOUT": "45",
        "UNRELATED": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.backend.port == 5210
    assert config.binary.offline_fallback is False
    assert config.binary.cache_ttl == 60.0
    assert config.lock_timeout == 45.0


def test_config_file_from_environment(tmp_path: Path) -> None:
    """CONVEXCTL_CONFIG_FILE selects the config file when no path is passed."""
    cfg = tmp_path / "custom.yml"
    cfg.write_text("backend:\n  instance_name: from-env-file\n", encoding="utf-8")

    config = load_config(env={"CONVEXCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.backend.instance_name == "from-env-file"


def test_admin_key_variable_is_not_a_config_key(tmp_path: Path) -> None:
    """The CLI's admin key variable is ignored by the loader."""
    env = {"CONVEXCTL_ADMIN_KEY": "convex-local|abc"}

    config = load_config(config_file=tmp_path / "missing.yml", env=env)

    assert config.backend.admin_key is None


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides win over environment variables."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"CONVEXCTL_BACKEND__PORT": "5210"},
        overrides={"backend": {"port": 6210}},
    )

    assert config.backend.port == 6210
    assert config.backend.site_proxy_port == 3211


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("bogus: 1\n", "Unknown configuration keys"),
        ("backend:\n  colour: blue\n", "Unknown backend configuration keys"),
        ("backend:\n  stdio: pipe\n", "backend.stdio"),
        ("deploy:\n  runner: make\n", "deploy.runner"),
        ("backend:\n  port: 3211\n", "must differ"),
        ("backend:\n  port: 70000\n", "between 1 and 65535"),
        ("deploy:\n  timeout: 0\n", "greater than zero"),
        ("binary:\n  cache_ttl: -1\n", "non-negative"),
        ("- just\n- a list\n", "mapping"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    """Invalid configuration is rejected with a descriptive error."""
    cfg = tmp_path / "convexctl.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_to_dict_masks_secrets(tmp_path: Path) -> None:
    """Serialised config never exposes credentials or tokens."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={
            "CONVEXCTL_BACKEND__INSTANCE_SECRET": "ab" * 32,
            "CONVEXCTL_BACKEND__ADMIN_KEY": "convex-local|secret",
            "CONVEXCTL_BINARY__GITHUB_TOKEN": "ghp_example",
        },
    )

    data = config.to_dict()
    backend = data["backend"]
    binary = data["binary"]
    assert isinstance(backend, dict) and isinstance(binary, dict)
    assert backend["instance_secret"] == "***"
    assert backend["admin_key"] == "***"
    assert binary["github_token"] == "***"
    assert config.backend.admin_key == "convex-local|secret"
