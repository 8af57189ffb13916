"""Bookkeeping that tells whether a decrypted cache still matches its source."""

from __future__ import annotations

import contextlib
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .discover import TargetDB
from .keystore import same_path

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    match = _TIME_RE.match(value)
    if match is None:
        raise ValueError(f"invalid timestamp {value!r}")
    base, frac, zone = match.groups()
    if base == "0001-01-01T00:00:00" and zone == "Z" and not (frac or "").strip("0"):
        return None
    micro = (frac or "").ljust(6, "0")[:6]
    offset = "+00:00" if zone == "Z" else zone
    return datetime.fromisoformat(f"{base}.{micro}{offset}").astimezone(timezone.utc)


def _format_time(value: datetime | None) -> str:
    if value is None:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    return text + "Z"


@dataclass(frozen=True)
class SourceSignature:
    """Size and modification time of a source database."""

    size: int
    mtime_ns: int


@dataclass
class CacheEntry:
    """What a cache file was built from."""

    source_path: str
    source_size: int
    source_mtime_ns: int
    source_salt: str
    cache_path: str
    refreshed_at: datetime | None = None

    def to_json(self) -> dict:
        return {
            "source_path": self.source_path,
            "source_size": self.source_size,
            "source_mtime_ns": self.source_mtime_ns,
            "source_salt": self.source_salt,
            "cache_path": self.cache_path,
            "refreshed_at": _format_time(self.refreshed_at),
        }

    @classmethod
    def from_json(cls, data: dict) -> CacheEntry:
        return cls(
            source_path=data.get("source_path") or "",
            source_size=int(data.get("source_size") or 0),
            source_mtime_ns=int(data.get("source_mtime_ns") or 0),
            source_salt=data.get("source_salt") or "",
            cache_path=data.get("cache_path") or "",
            refreshed_at=_parse_time(data.get("refreshed_at")),
        )


@dataclass
class CacheMetadata:
    """Cache entries keyed by the database's path relative to the data directory."""

    version: int = 1
    files: dict[str, CacheEntry] = field(default_factory=dict)


def stat_source_signature(path: str | os.PathLike[str]) -> SourceSignature:
    """Size and nanosecond modification time of a file."""
    info = os.stat(path)
    return SourceSignature(size=info.st_size, mtime_ns=info.st_mtime_ns)


def load_cache_metadata(path: str | os.PathLike[str]) -> CacheMetadata:
    """Read cache metadata; a missing or empty file gives empty metadata."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return CacheMetadata()
    if not raw:
        return CacheMetadata()
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("cache metadata must be a JSON object")
    files = {
        rel: CacheEntry.from_json(entry)
        for rel, entry in (data.get("files") or {}).items()
    }
    return CacheMetadata(version=int(data.get("version") or 1), files=files)


def save_cache_metadata(path: str | os.PathLike[str], meta: CacheMetadata) -> None:
    """Write cache metadata atomically with owner-only permissions."""
    meta.version = 1
    path = os.fspath(path)
    parent = os.path.dirname(path) or "."
    os.makedirs(parent, mode=0o700, exist_ok=True)
    payload = {
        "version": 1,
        "files": {rel: entry.to_json() for rel, entry in sorted(meta.files.items())},
    }
    text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    fd, tmp_path = tempfile.mkstemp(
        prefix=os.path.basename(path) + ".", suffix=".tmp", dir=parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(tmp_path)


def is_cache_fresh(
    target: TargetDB,
    cache_path: str | os.PathLike[str],
    source_salt: str,
    meta_path: str | os.PathLike[str],
) -> bool:
    """True if the cache exists and was built from the source as it is now."""
    cache_path = os.fspath(cache_path)
    try:
        os.stat(cache_path)
    except FileNotFoundError:
        return False
    current = stat_source_signature(target.db_path)
    entry = load_cache_metadata(meta_path).files.get(target.db_rel_path)
    if entry is None:
        return False
    if not same_path(entry.source_path, target.db_path) or not same_path(
        entry.cache_path, cache_path
    ):
        return False
    if entry.source_salt.lower() != source_salt.lower():
        return False
    return (
        entry.source_size == current.size and entry.source_mtime_ns == current.mtime_ns
    )


def update_cache_metadata(
    target: TargetDB,
    cache_path: str | os.PathLike[str],
    source_salt: str,
    signature: SourceSignature,
    meta_path: str | os.PathLike[str],
) -> CacheEntry:
    """Record that cache_path was built from the source with this signature."""
    meta = load_cache_metadata(meta_path)
    entry = CacheEntry(
        source_path=target.db_path,
        source_size=signature.size,
        source_mtime_ns=signature.mtime_ns,
        source_salt=source_salt.lower(),
        cache_path=os.fspath(cache_path),
        refreshed_at=datetime.now(timezone.utc),
    )
    meta.files[target.db_rel_path] = entry
    save_cache_metadata(meta_path, meta)
    return entry