"""Download and cache Convex local backend executables.

Cache layout under ``cache_dir``::

    latest.yml                    last "latest release" lookup
    <version>/entry.yml           cache entry (path, sha256, checked_at)
    <version>/convex-local-backend
    .locks/versions/<version>.lock

An entry is reused while ``now - checked_at < cache_ttl``; after that the
release is fetched again. Executables and entry files are written to a temp
path in the same directory and promoted with :func:`os.replace`, so readers
only ever observe complete files. Downloads of one version are serialised by
a per-version file lock and the cache is re-checked once the lock is held.
"""
from __future__ import annotations

import hashlib
import logging
import os
import platform
import re
import shutil
import tempfile
import urllib.parse
import zipfile
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

import yaml

from .. import __version__, transport
from ..config import DEFAULT_CACHE_TTL, BinaryConfig
from ..locking import LockHandle, LockManager, LockTimeoutError

LOGGER = logging.getLogger(__name__)

BINARY_NAME = "convex-local-backend"
RELEASE_TAG_PREFIX = "precompiled-"
ENTRY_FILE = "entry.yml"
LATEST_FILE = "latest.yml"

_VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_TARGETS: dict[tuple[str, str], str] = {
    ("linux", "x86_64"): "x86_64-unknown-linux-gnu",
    ("linux", "aarch64"): "aarch64-unknown-linux-gnu",
    ("darwin", "x86_64"): "x86_64-apple-darwin",
    ("darwin", "aarch64"): "aarch64-apple-darwin",
    ("windows", "x86_64"): "x86_64-pc-windows-msvc",
}
_MACHINE_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}


class BinaryProvisionError(RuntimeError):
    """Raised when a backend executable could not be obtained."""


@dataclass(frozen=True, slots=True)
class ReleaseAsset:
    """Downloadable artifact of a release for one platform target."""

    version: str
    name: str
    url: str
    digest: str | None = None


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Cached executable for a resolved version."""

    version: str
    path: Path
    sha256: str
    checked_at: datetime
    asset: str | None = None

    def age_seconds(self, now: datetime) -> float:
        """Return the entry age in seconds relative to *now*."""
        return (now - self.checked_at).total_seconds()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "path": str(self.path),
            "sha256": self.sha256,
            "checked_at": _format_timestamp(self.checked_at),
            "asset": self.asset,
        }


@dataclass(frozen=True, slots=True)
class ResolvedBinary:
    """Outcome of :meth:`BinaryProvisioner.resolve`.

    ``source`` is ``cache`` (fresh entry reused), ``download`` (fetched now) or
    ``stale`` (fetch failed; an older cached executable was reused). Backends
    given an explicit executable report ``path``.
    ``lock_wait_ms`` is the time spent waiting on the version lock.
    """

    version: str
    path: Path
    source: str
    checked_at: datetime
    lock_wait_ms: int = 0


def platform_target(system: str | None = None, machine: str | None = None) -> str:
    """Return the release target triple for the host (or the given values)."""
    system_name = (system or platform.system()).strip().lower()
    machine_name = (machine or platform.machine()).strip().lower()
    machine_name = _MACHINE_ALIASES.get(machine_name, machine_name)
    target = _TARGETS.get((system_name, machine_name))
    if target is None:
        raise BinaryProvisionError(
            f"Unsupported platform for the Convex local backend: {system_name}/{machine_name}."
        )
    return target


def executable_name(target: str) -> str:
    """Return the executable file name for *target*."""
    return f"{BINARY_NAME}.exe" if "windows" in target else BINARY_NAME


def asset_name(target: str) -> str:
    """Return the release asset name for *target*."""
    return f"{BINARY_NAME}-{target}.zip"


def select_release(releases: object, target: str) -> ReleaseAsset:
    """Pick the newest published precompiled release shipping *target*.

    *releases* is the decoded GitHub releases listing (newest first).
    """
    if not isinstance(releases, Sequence) or isinstance(releases, (str, bytes)):
        raise BinaryProvisionError("Release listing must be a JSON array.")
    wanted = asset_name(target)
    for release in releases:
        if not isinstance(release, Mapping):
            continue
        tag = release.get("tag_name")
        if not isinstance(tag, str) or not tag.startswith(RELEASE_TAG_PREFIX):
            continue
        if release.get("draft") or release.get("prerelease"):
            continue
        assets = release.get("assets")
        if not isinstance(assets, Sequence):
            continue
        for asset in assets:
            if not isinstance(asset, Mapping) or asset.get("name") != wanted:
                continue
            url = asset.get("browser_download_url")
            if not isinstance(url, str) or not url:
                continue
            return ReleaseAsset(
                version=tag,
                name=wanted,
                url=url,
                digest=_parse_digest(asset.get("digest")),
            )
    raise BinaryProvisionError(f"No published release provides {wanted}.")


class BinaryProvisioner:
    """Resolve backend versions to executables in a shared local cache."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        locks: LockManager | None = None,
        repository: str = "get-convex/convex-backend",
        api_base_url: str = "https://api.github.com",
        download_base_url: str = "https://github.com",
        timeout: float = 300.0,
        offline_fallback: bool = True,
        github_token: str | None = None,
        target: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialise the provisioner; nothing touches disk or network yet."""
        self.cache_dir = Path(cache_dir).expanduser()
        self.cache_ttl = float(cache_ttl)
        self.locks = locks or LockManager(self.cache_dir / ".locks")
        self.repository = repository
        self.api_base_url = api_base_url.rstrip("/")
        self.download_base_url = download_base_url.rstrip("/")
        self.timeout = float(timeout)
        self.offline_fallback = offline_fallback
        self.github_token = github_token
        self._target = target
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    @classmethod
    def from_config(
        cls,
        config: BinaryConfig,
        *,
        locks: LockManager | None = None,
    ) -> BinaryProvisioner:
        """Build a provisioner from the ``binary`` configuration section."""
        return cls(
            config.cache_dir,
            cache_ttl=config.cache_ttl,
            locks=locks,
            repository=config.repository,
            api_base_url=config.api_base_url,
            download_base_url=config.download_base_url,
            timeout=config.download_timeout,
            offline_fallback=config.offline_fallback,
            github_token=config.github_token,
        )

    @property
    def target(self) -> str:
        """Return the release target triple used for downloads."""
        if self._target is None:
            self._target = platform_target()
        return self._target

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve(self, version: str | None = None) -> ResolvedBinary:
        """Return a usable executable for *version* (latest when omitted)."""
        if version is None:
            return self._resolve_latest()
        return self._ensure_version(_normalize_version(version), asset=None)

    def list_cached(self) -> list[CacheEntry]:
        """Return cache entries, most recently checked first."""
        if not self.cache_dir.is_dir():
            return []
        entries: list[CacheEntry] = []
        for child in self.cache_dir.iterdir():
            if not child.is_dir() or child.name.startswith("."):
                continue
            entry = self._read_entry(child.name)
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda item: item.checked_at, reverse=True)
        return entries

    def remove(self, version: str) -> None:
        """Delete the cached executable for *version*."""
        normalized = _normalize_version(version)
        version_dir = self._version_dir(normalized)
        if not version_dir.exists():
            raise BinaryProvisionError(f"Version '{normalized}' is not cached.")
        with self._version_lock(normalized):
            shutil.rmtree(version_dir)
            latest = self._read_latest()
            if latest is not None and latest[0] == normalized:
                (self.cache_dir / LATEST_FILE).unlink(missing_ok=True)
        LOGGER.info("Removed cached backend %s", normalized)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def _resolve_latest(self) -> ResolvedBinary:
        now = self._clock()
        latest = self._read_latest()
        if latest is not None and self._is_fresh(latest[1], now):
            entry = self._read_entry(latest[0])
            if entry is not None and self._is_usable(entry, now):
                LOGGER.debug("Using cached latest backend %s", entry.version)
                return ResolvedBinary(entry.version, entry.path, "cache", entry.checked_at)

        try:
            asset = self._fetch_latest_release()
        except BinaryProvisionError as exc:
            fallback = self._fallback(latest[0] if latest else None, exc)
            if fallback is not None:
                return fallback
            raise

        resolved = self._ensure_version(asset.version, asset=asset)
        if resolved.source != "stale":
            try:
                self._write_latest(asset.version, self._clock())
            except OSError as exc:
                LOGGER.warning("Could not record latest backend %s: %s", asset.version, exc)
        return resolved

    def _ensure_version(self, version: str, *, asset: ReleaseAsset | None) -> ResolvedBinary:
        entry = self._read_entry(version)
        if entry is not None and self._is_usable(entry, self._clock()):
            LOGGER.debug("Using cached backend %s (%s)", version, entry.path)
            return ResolvedBinary(entry.version, entry.path, "cache", entry.checked_at)

        try:
            with self._version_lock(version) as handle:
                # Another caller may have finished the download while we waited.
                entry = self._read_entry(version)
                if entry is not None and self._is_usable(entry, self._clock()):
                    return ResolvedBinary(
                        entry.version, entry.path, "cache", entry.checked_at, handle.wait_ms
                    )
                entry = self._download(version, asset)
                wait_ms = handle.wait_ms
        except BinaryProvisionError as exc:
            fallback = self._fallback(version, exc)
            if fallback is not None:
                return fallback
            raise
        return ResolvedBinary(entry.version, entry.path, "download", entry.checked_at, wait_ms)

    def _fallback(self, version: str | None, exc: BinaryProvisionError) -> ResolvedBinary | None:
        if not self.offline_fallback:
            return None
        candidates = self.list_cached()
        if version is not None:
            candidates = [entry for entry in candidates if entry.version == version]
        for entry in candidates:
            if _is_executable(entry.path):
                LOGGER.warning(
                    "Could not refresh backend binary (%s); using cached %s from %s.",
                    exc,
                    entry.version,
                    _format_timestamp(entry.checked_at),
                )
                return ResolvedBinary(entry.version, entry.path, "stale", entry.checked_at)
        return None

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------
    def _request_headers(self, accept: str) -> dict[str, str]:
        headers = {"Accept": accept, "User-Agent": f"convexctl/{__version__}"}
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers

    def _fetch_latest_release(self) -> ReleaseAsset:
        """Query the releases API for the newest usable release."""
        url = f"{self.api_base_url}/repos/{self.repository}/releases?per_page=50"
        try:
            response = transport.request(
                "GET",
                url,
                headers=self._request_headers("application/vnd.github+json"),
                timeout=self.timeout,
            )
        except transport.TransportError as exc:
            raise BinaryProvisionError(f"Could not query backend releases: {exc}") from exc
        if not response.ok:
            raise BinaryProvisionError(
                f"Release listing returned HTTP {response.status}: {response.text[:200]}"
            )
        try:
            releases = response.json()
        except ValueError as exc:
            raise BinaryProvisionError(f"Release listing is not valid JSON: {exc}") from exc
        return select_release(releases, self.target)

    def _download_archive(self, url: str, destination: IO[bytes]) -> int:
        """Stream the release archive at *url* into *destination*."""
        try:
            return transport.download(
                url,
                destination,
                headers=self._request_headers("application/octet-stream"),
                timeout=self.timeout,
            )
        except transport.TransportError as exc:
            raise BinaryProvisionError(f"Could not download backend archive: {exc}") from exc

    def _download(self, version: str, asset: ReleaseAsset | None) -> CacheEntry:
        """Fetch *version* into the cache; filesystem errors become provisioning errors."""
        try:
            return self._download_into_cache(version, asset)
        except OSError as exc:
            raise BinaryProvisionError(
                f"Could not write backend {version} to {self.cache_dir}: {exc}"
            ) from exc

    def _download_into_cache(self, version: str, asset: ReleaseAsset | None) -> CacheEntry:
        target = self.target
        name = asset_name(target)
        if asset is not None:
            url = asset.url
        else:
            quoted = urllib.parse.quote(version, safe="")
            url = f"{self.download_base_url}/{self.repository}/releases/download/{quoted}/{name}"

        version_dir = self._version_dir(version)
        version_dir.mkdir(parents=True, exist_ok=True)
        exe_name = executable_name(target)
        LOGGER.info("Downloading Convex backend %s for %s", version, target)

        fd, archive_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".download", dir=version_dir)
        archive_path = Path(archive_name)
        staged: Path | None = None
        try:
            with os.fdopen(fd, "w+b") as handle:
                size = self._download_archive(url, handle)
                handle.flush()
                handle.seek(0)
                if asset is not None and asset.digest:
                    actual = _sha256_stream(handle)
                    if actual != asset.digest:
                        raise BinaryProvisionError(
                            f"Checksum mismatch for {name}: expected {asset.digest}, got {actual}."
                        )
                    handle.seek(0)
                staged = _extract_executable(handle, version_dir, exe_name)
            digest = _sha256_file(staged)
            final_path = version_dir / exe_name
            os.replace(staged, final_path)
            staged = None
        finally:
            archive_path.unlink(missing_ok=True)
            if staged is not None:
                staged.unlink(missing_ok=True)

        entry = CacheEntry(
            version=version,
            path=final_path,
            sha256=digest,
            checked_at=self._clock(),
            asset=name,
        )
        self._write_entry(entry)
        LOGGER.info("Cached Convex backend %s (%d bytes archive) at %s", version, size, final_path)
        return entry

    # ------------------------------------------------------------------
    # Cache files
    # ------------------------------------------------------------------
    def _version_dir(self, version: str) -> Path:
        return self.cache_dir / version

    @contextmanager
    def _version_lock(self, version: str) -> Iterator[LockHandle]:
        try:
            with self.locks.version_lock(version) as handle:
                if handle.wait_ms:
                    LOGGER.debug("Waited %d ms for cache lock on %s", handle.wait_ms, version)
                yield handle
        except LockTimeoutError as exc:
            raise BinaryProvisionError(f"Cache for {version} is busy: {exc}") from exc
        except OSError as exc:
            raise BinaryProvisionError(f"Could not lock cache for {version}: {exc}") from exc

    def _is_fresh(self, checked_at: datetime, now: datetime) -> bool:
        return (now - checked_at).total_seconds() < self.cache_ttl

    def _is_usable(self, entry: CacheEntry, now: datetime) -> bool:
        return self._is_fresh(entry.checked_at, now) and _is_executable(entry.path)

    def _read_entry(self, version: str) -> CacheEntry | None:
        data = _read_yaml(self._version_dir(version) / ENTRY_FILE)
        if data is None:
            return None
        try:
            return CacheEntry(
                version=str(data["version"]),
                path=Path(str(data["path"])),
                sha256=str(data.get("sha256") or ""),
                checked_at=_parse_timestamp(str(data["checked_at"])),
                asset=str(data["asset"]) if data.get("asset") else None,
            )
        except (KeyError, ValueError):
            LOGGER.warning("Ignoring malformed cache entry for %s", version)
            return None

    def _write_entry(self, entry: CacheEntry) -> None:
        _write_yaml_atomic(self._version_dir(entry.version) / ENTRY_FILE, entry.to_dict())

    def _read_latest(self) -> tuple[str, datetime] | None:
        data = _read_yaml(self.cache_dir / LATEST_FILE)
        if data is None:
            return None
        try:
            return str(data["version"]), _parse_timestamp(str(data["checked_at"]))
        except (KeyError, ValueError):
            return None

    def _write_latest(self, version: str, checked_at: datetime) -> None:
        _write_yaml_atomic(
            self.cache_dir / LATEST_FILE,
            {"version": version, "checked_at": _format_timestamp(checked_at)},
        )


# ----------------------------------------------------------------------
# Module helpers
# ----------------------------------------------------------------------


def _normalize_version(version: str) -> str:
    normalized = version.strip()
    if not normalized:
        raise BinaryProvisionError("Version identifier must be a non-empty string.")
    if not _VERSION_PATTERN.match(normalized):
        raise BinaryProvisionError(f"Invalid version identifier '{normalized}'.")
    return normalized


def _parse_digest(value: object) -> str | None:
    if not isinstance(value, str) or ":" not in value:
        return None
    algorithm, digest = value.split(":", 1)
    if algorithm.strip().lower() != "sha256" or not digest.strip():
        return None
    return digest.strip().lower()


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _sha256_stream(handle: IO[bytes]) -> str:
    digest = hashlib.sha256()
    for chunk in iter(lambda: handle.read(transport.CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


def _sha256_file(path: Path) -> str:
    with path.open("rb") as handle:
        return _sha256_stream(handle)


def _extract_executable(archive_handle: IO[bytes], directory: Path, exe_name: str) -> Path:
    """Extract *exe_name* from the zip in *archive_handle* to a temp file."""
    try:
        with zipfile.ZipFile(archive_handle) as archive:
            member = next(
                (info for info in archive.infolist() if Path(info.filename).name == exe_name),
                None,
            )
            if member is None:
                raise BinaryProvisionError(f"Archive does not contain {exe_name}.")
            fd, staged_name = tempfile.mkstemp(prefix=f".{exe_name}.", dir=directory)
            staged = Path(staged_name)
            try:
                with os.fdopen(fd, "wb") as out, archive.open(member) as source:
                    shutil.copyfileobj(source, out, transport.CHUNK_SIZE)
                staged.chmod(0o755)
            except BaseException:
                staged.unlink(missing_ok=True)
                raise
    except zipfile.BadZipFile as exc:
        raise BinaryProvisionError(f"Downloaded archive is corrupt: {exc}") from exc
    return staged


def _read_yaml(path: Path) -> Mapping[str, Any] | None:
    if not path.exists():
        return None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return None
    return data if isinstance(data, Mapping) else None


def _write_yaml_atomic(path: Path, payload: Mapping[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=False)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "BINARY_NAME",
    "BinaryProvisionError",
    "BinaryProvisioner",
    "CacheEntry",
    "ReleaseAsset",
    "ResolvedBinary",
    "asset_name",
    "executable_name",
    "platform_target",
    "select_release",
]
