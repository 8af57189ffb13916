"""Persistent store of per-database SQLCipher keys."""

from __future__ import annotations

import contextlib
import dataclasses
import hashlib
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone

_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


@dataclass
class Entry:
    """A key for one database file of one account."""

    account: str
    data_dir: str
    db_rel_path: str
    key: str
    salt: str
    fingerprint: str = ""
    updated_at: datetime | None = None


def same_path(a: str, b: str) -> bool:
    """True if both paths name the same location after normalisation."""
    return os.path.abspath(a) == os.path.abspath(b)


def fingerprint(key_hex: str, salt_hex: str, data_dir: str, rel_path: str) -> str:
    """Short, stable identifier of a key and the database it belongs to."""
    digest = hashlib.sha256(
        f"{key_hex}|{salt_hex}|{data_dir}|{rel_path}".encode("utf-8")
    ).digest()
    return digest[:8].hex()


def _matches(entry: Entry, data_dir: str, db_rel_path: str, salt: str) -> bool:
    return (
        same_path(entry.data_dir, data_dir)
        and entry.db_rel_path == db_rel_path
        and entry.salt.lower() == salt.lower()
    )


@dataclass
class Store:
    """All known keys."""

    version: int = 1
    keys: list[Entry] = field(default_factory=list)

    def find(self, data_dir: str, db_rel_path: str, salt: str) -> Entry | None:
        """Return the entry for a database and salt, or None."""
        return next(
            (e for e in self.keys if _matches(e, data_dir, db_rel_path, salt)), None
        )

    def upsert(self, entry: Entry) -> Entry:
        """Insert or replace an entry, stamping its fingerprint and update time."""
        stored = dataclasses.replace(
            entry,
            fingerprint=fingerprint(entry.key, entry.salt, entry.data_dir, entry.db_rel_path),
            updated_at=datetime.now(timezone.utc),
        )
        for index, existing in enumerate(self.keys):
            if _matches(existing, stored.data_dir, stored.db_rel_path, stored.salt):
                self.keys[index] = stored
                return stored
        self.keys.append(stored)
        return stored


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


def _flatten(data: dict) -> Store:
    account = data.get("account") or ""
    data_dir = data.get("data_dir") or ""
    store = Store()
    for rel_path, item in (data.get("keys") or {}).items():
        store.keys.append(
            Entry(
                account=account,
                data_dir=data_dir,
                db_rel_path=rel_path,
                key=(item.get("key") or "").lower(),
                salt=(item.get("salt") or "").lower(),
                fingerprint=item.get("fingerprint") or "",
                updated_at=_parse_time(item.get("updated_at")),
            )
        )
    return store


def _group(store: Store) -> dict:
    first = store.keys[0] if store.keys else None
    keys = {
        entry.db_rel_path: {
            "key": entry.key.lower(),
            "salt": entry.salt.lower(),
            "fingerprint": entry.fingerprint,
            "updated_at": _format_time(entry.updated_at),
        }
        for entry in store.keys
    }
    return {
        "version": 1,
        "account": first.account if first else "",
        "data_dir": first.data_dir if first else "",
        "keys": dict(sorted(keys.items())),
    }


def load_store(path: str | os.PathLike[str]) -> Store:
    """Read a key store; a missing or empty file gives an empty store."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return Store()
    if not raw:
        return Store()
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("key store must be a JSON object")
    return _flatten(data)


def save_store(path: str | os.PathLike[str], store: Store) -> None:
    """Write a key store atomically with owner-only permissions."""
    store.version = 1
    store.keys.sort(key=lambda e: (e.account, e.data_dir, e.db_rel_path))
    path = os.fspath(path)
    parent = os.path.dirname(path) or "."
    os.makedirs(parent, mode=0o700, exist_ok=True)
    text = json.dumps(_group(store), indent=2, ensure_ascii=False) + "\n"
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


def compact_store_file(path: str | os.PathLike[str]) -> Store:
    """Rewrite a key store in its canonical form and return it."""
    store = load_store(path)
    save_store(path, store)
    return store