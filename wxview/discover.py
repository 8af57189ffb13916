"""Location of the WeChat 4.x database files that belong to the active account."""

from __future__ import annotations

import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

CONTACT_REL_PATH = "contact/contact.db"
MESSAGE_REL_DIR = "message"
SESSION_REL_PATH = "session/session.db"
FAVORITE_REL_PATH = "favorite/favorite.db"
SNS_REL_PATH = "sns/sns.db"
HEAD_IMAGE_REL_PATH = "head_image/head_image.db"
MESSAGE_AUX_REL_PATHS = (
    "message/message_fts.db",
    "message/message_resource.db",
    "message/message_revoke.db",
)

_UNSUPPORTED = (
    "automatic WeChat discovery is only implemented for macOS WeChat 4.x in V1"
)
_SCORE_TIMEOUT = 2.0
_SHARD_NUMBER_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class TargetDB:
    """One encrypted database file of one account."""

    account: str
    data_dir: str
    db_rel_path: str
    db_path: str


class DiscoveryError(Exception):
    """Raised when the WeChat databases cannot be located."""


def default_root() -> str:
    """The directory under which WeChat keeps one folder per account."""
    return os.path.join(
        os.path.expanduser("~"),
        "Library",
        "Containers",
        "com.tencent.xinWeChat",
        "Data",
        "Documents",
        "xwechat_files",
    )


def numbered_shard_index(name: str, prefix: str) -> int | None:
    """The shard number in a name such as ``message_3.db``, or None."""
    if not name.startswith(prefix) or not name.endswith(".db"):
        return None
    text = name[len(prefix) : len(name) - len(".db")]
    if not _SHARD_NUMBER_RE.fullmatch(text):
        return None
    return int(text)


def _mtime_ns(path: str) -> int:
    try:
        return os.stat(path).st_mtime_ns
    except OSError:
        return 0


def choose_contact_candidate(
    candidates: Sequence[TargetDB], open_scores: Mapping[str, int] | None
) -> TargetDB:
    """Pick the account whose data WeChat has open, else the newest contact database."""
    if not candidates:
        raise ValueError("no contact database candidates")
    scores = {os.path.normpath(k): v for k, v in (open_scores or {}).items()}
    return min(
        candidates,
        key=lambda c: (
            -scores.get(os.path.normpath(c.data_dir), 0),
            -_mtime_ns(c.db_path),
        ),
    )


def account_data_dir_from_open_path(root: str, path: str) -> str | None:
    """Map a file WeChat has open to the ``db_storage`` directory it lies in."""
    if path.endswith(" (deleted)"):
        path = path[: -len(" (deleted)")]
    if os.path.isabs(root) != os.path.isabs(path):
        return None
    try:
        rel = os.path.relpath(path, root)
    except ValueError:
        return None
    if rel == "." or rel.startswith("..") or os.path.isabs(rel):
        return None
    parts = rel.replace(os.sep, "/").split("/")
    if len(parts) < 3 or parts[1] != "db_storage":
        return None
    return os.path.join(root, parts[0], "db_storage")


def _wechat_pids(timeout: float | None) -> list[int]:
    try:
        result = subprocess.run(
            ["pgrep", "-x", "WeChat"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise DiscoveryError(f"find WeChat process: {exc}") from exc
    if result.returncode == 1:
        return []
    if result.returncode != 0:
        raise DiscoveryError(f"find WeChat process: exit status {result.returncode}")
    return [
        int(field)
        for field in result.stdout.split()
        if field.isascii() and field.isdigit() and int(field) > 0
    ]


def wechat_pids() -> list[int]:
    """Process ids of running WeChat instances."""
    return _wechat_pids(None)


def wechat_open_data_dir_scores(root: str) -> dict[str, int]:
    """Count, per account data directory, the files running WeChat has open."""
    deadline = time.monotonic() + _SCORE_TIMEOUT
    try:
        pids = _wechat_pids(_SCORE_TIMEOUT)
    except DiscoveryError:
        return {}
    scores: dict[str, int] = {}
    for pid in pids:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        try:
            output = subprocess.run(
                ["lsof", "-Fn", "-p", str(pid)],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=remaining,
                check=True,
            ).stdout
        except (OSError, subprocess.SubprocessError):
            continue
        for line in output.split("\n"):
            if not line.startswith("n"):
                continue
            data_dir = account_data_dir_from_open_path(root, line[1:])
            if data_dir is not None:
                key = os.path.normpath(data_dir)
                scores[key] = scores.get(key, 0) + 1
    return scores


def _join_rel(data_dir: str, rel_path: str) -> str:
    return os.path.join(data_dir, *rel_path.split("/"))


class Discovery:
    """Finds the databases of the current WeChat account under a data root."""

    def __init__(
        self,
        root: str | os.PathLike[str] | None = None,
        scores: Callable[[str], Mapping[str, int] | None] = wechat_open_data_dir_scores,
    ) -> None:
        self._root = os.fspath(root) if root is not None else None
        self._scores = scores

    def _require_root(self) -> str:
        if self._root is not None:
            return self._root
        if sys.platform != "darwin":
            raise DiscoveryError(_UNSUPPORTED)
        return default_root()

    @staticmethod
    def _target(contact: TargetDB, rel_path: str) -> TargetDB:
        return TargetDB(
            account=contact.account,
            data_dir=contact.data_dir,
            db_rel_path=rel_path,
            db_path=_join_rel(contact.data_dir, rel_path),
        )

    def contact_db(self) -> TargetDB:
        """The contact database of the account in use."""
        root = self._require_root()
        try:
            with os.scandir(root) as entries:
                accounts = sorted(e.name for e in entries if e.is_dir())
        except OSError as exc:
            raise DiscoveryError(f"detect WeChat data root {root}: {exc}") from exc
        candidates = []
        for account in accounts:
            data_dir = os.path.join(root, account, "db_storage")
            db_path = _join_rel(data_dir, CONTACT_REL_PATH)
            if os.path.isfile(db_path):
                candidates.append(TargetDB(account, data_dir, CONTACT_REL_PATH, db_path))
        if not candidates:
            raise DiscoveryError(f"no WeChat contact database found under {root}")
        return choose_contact_candidate(candidates, self._scores(root))

    def _shards(self, prefix: str) -> list[TargetDB]:
        contact = self.contact_db()
        message_dir = os.path.join(contact.data_dir, MESSAGE_REL_DIR)
        try:
            with os.scandir(message_dir) as entries:
                names = sorted(e.name for e in entries if not e.is_dir())
        except OSError as exc:
            raise DiscoveryError(
                f"detect WeChat message database directory {message_dir}: {exc}"
            ) from exc
        found = []
        for name in names:
            index = numbered_shard_index(name, prefix)
            if index is None:
                continue
            target = self._target(contact, f"{MESSAGE_REL_DIR}/{name}")
            if os.path.isfile(target.db_path):
                found.append((index, target))
        if not found:
            raise DiscoveryError(
                f"no WeChat {prefix}database shard found under {message_dir}"
            )
        found.sort(key=lambda pair: pair[0])
        return [target for _, target in found]

    def message_dbs(self) -> list[TargetDB]:
        """The ``message_N.db`` shards, in shard order."""
        return self._shards("message_")

    def biz_message_dbs(self) -> list[TargetDB]:
        """The ``biz_message_N.db`` shards, in shard order."""
        return self._shards("biz_message_")

    def media_dbs(self) -> list[TargetDB]:
        """The ``media_N.db`` shards, in shard order."""
        return self._shards("media_")

    def message_aux_dbs(self) -> list[TargetDB]:
        """The auxiliary message databases that exist."""
        contact = self.contact_db()
        targets = [self._target(contact, rel) for rel in MESSAGE_AUX_REL_PATHS]
        return [t for t in targets if os.path.isfile(t.db_path)]

    def _optional_shards(self, prefix: str) -> list[TargetDB]:
        try:
            return self._shards(prefix)
        except DiscoveryError:
            return []

    def message_related_dbs(self) -> list[TargetDB]:
        """Message shards, then biz and media shards, then auxiliary databases."""
        targets = self.message_dbs()
        targets += self._optional_shards("biz_message_")
        targets += self._optional_shards("media_")
        targets += self.message_aux_dbs()
        return targets

    def required_dbs(self) -> list[TargetDB]:
        """The contact database followed by the message shards."""
        return [self.contact_db(), *self.message_dbs()]

    def supported_dbs(self) -> list[TargetDB]:
        """Every database that can be read, required ones first."""
        targets = self.required_dbs()
        targets += self._optional_shards("biz_message_")
        targets += self.message_aux_dbs()
        for optional in (
            self.session_db(),
            self.favorite_db(),
            self.sns_db(),
            self.head_image_db(),
        ):
            if optional is not None:
                targets.append(optional)
        return targets

    def _optional(self, rel_path: str) -> TargetDB | None:
        try:
            contact = self.contact_db()
        except DiscoveryError:
            return None
        target = self._target(contact, rel_path)
        return target if os.path.isfile(target.db_path) else None

    def session_db(self) -> TargetDB | None:
        """The session database, or None if it is absent."""
        return self._optional(SESSION_REL_PATH)

    def favorite_db(self) -> TargetDB | None:
        """The favorites database, or None if it is absent."""
        return self._optional(FAVORITE_REL_PATH)

    def sns_db(self) -> TargetDB | None:
        """The moments database, or None if it is absent."""
        return self._optional(SNS_REL_PATH)

    def head_image_db(self) -> TargetDB | None:
        """The avatar database, or None if it is absent."""
        return self._optional(HEAD_IMAGE_REL_PATH)