"""Queries over a decrypted WeChat contact database."""

from __future__ import annotations

import contextlib
import os
import sqlite3
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

_MISSING_CACHE = (
    "contact cache does not exist: run `wxview contacts --refresh` or `wxview init` first"
)

_LIST_SQL = """
SELECT
  COALESCE(id, 0) AS id,
  username,
  COALESCE(local_type, 0) AS local_type,
  COALESCE(alias, '') AS alias,
  COALESCE(remark, '') AS remark,
  COALESCE(nick_name, '') AS nick_name,
  COALESCE(big_head_url, '') AS head_url
FROM contact
ORDER BY COALESCE(NULLIF(remark, ''), NULLIF(nick_name, ''), username) COLLATE NOCASE;
"""

_DETAIL_SQL = """
SELECT
  COALESCE(id, 0) AS id,
  username,
  COALESCE(local_type, 0) AS local_type,
  COALESCE(alias, '') AS alias,
  COALESCE(remark, '') AS remark,
  COALESCE(nick_name, '') AS nick_name,
  COALESCE(small_head_url, '') AS small_head_url,
  COALESCE(big_head_url, '') AS big_head_url,
  COALESCE(description, '') AS description,
  COALESCE(verify_flag, 0) AS verify_flag
FROM contact
WHERE username = ?
LIMIT 1;
"""

_IDENTITY_SQL = """
SELECT
  COALESCE(id, 0) AS id,
  COALESCE(NULLIF(remark, ''), NULLIF(nick_name, ''), NULLIF(alias, ''), username) AS display_name
FROM contact
WHERE username = ?
LIMIT 1;
"""

_MEMBERS_SQL = """
SELECT
  COALESCE(c.username, '') AS username,
  COALESCE(c.alias, '') AS alias,
  COALESCE(c.remark, '') AS remark,
  COALESCE(c.nick_name, '') AS nick_name,
  COALESCE(c.local_type, 0) AS local_type,
  COALESCE(c.id, 0) AS contact_id
FROM chatroom_member cm
LEFT JOIN contact c ON c.id = cm.member_id
WHERE cm.room_id = ?
ORDER BY COALESCE(NULLIF(c.remark, ''), NULLIF(c.nick_name, ''), NULLIF(c.alias, ''), c.username) COLLATE NOCASE;
"""

_OWNER_COLUMNS = ("username", "chat_room_name", "name")


class Kind(str, Enum):
    """Category of a contact."""

    ALL = "all"
    FRIEND = "friend"
    CHATROOM = "chatroom"
    OTHER = "other"


class ContactError(Exception):
    """Raised when contacts cannot be read."""


@dataclass
class Contact:
    """A row of the contact list."""

    username: str
    alias: str = ""
    remark: str = ""
    nick_name: str = ""
    head_url: str = ""
    kind: str = Kind.OTHER

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = str(Kind(self.kind).value)
        return data


@dataclass
class Detail:
    """Everything the contact table knows about one contact."""

    username: str
    alias: str = ""
    remark: str = ""
    nick_name: str = ""
    head_url: str = ""
    small_head_url: str = ""
    big_head_url: str = ""
    description: str = ""
    verify_flag: int = 0
    local_type: int = 0
    kind: str = Kind.OTHER
    is_chatroom: bool = False
    is_official: bool = False
    avatar_status: str = ""
    avatar_path: str = ""
    avatar_reason: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = str(Kind(self.kind).value)
        for optional in ("avatar_status", "avatar_path", "avatar_reason"):
            if not data[optional]:
                del data[optional]
        return data


@dataclass
class Member:
    """One member of a group chat."""

    username: str
    display_name: str
    alias: str = ""
    remark: str = ""
    nick_name: str = ""
    kind: str = Kind.OTHER
    is_owner: bool = False


@dataclass
class GroupMembers:
    """A group chat with its owner and members, owner first."""

    username: str
    display_name: str
    owner: str = ""
    owner_display_name: str = ""
    count: int = 0
    members: list[Member] = field(default_factory=list)


@dataclass
class QueryOptions:
    """Filtering, ordering and paging of a contact list."""

    kind: str = ""
    query: str = ""
    username: str = ""
    sort: str = ""
    limit: int = 0
    offset: int = 0


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _int(value: object) -> int:
    return int(value) if value not in (None, "") else 0


def _first_non_empty(*values: str) -> str:
    return next((v for v in values if v.strip()), "")


def _display(alias: str, remark: str, nick_name: str, username: str) -> str:
    return _first_non_empty(remark, nick_name, alias) or username


def classify_kind(username: str, local_type: int) -> Kind:
    """Classify a contact by its username and local type."""
    if username.endswith("@chatroom"):
        return Kind.CHATROOM
    if local_type == 1 and not username.startswith("gh_"):
        return Kind.FRIEND
    return Kind.OTHER


def _is_self_contact(username: str, contact_id: int, owner_username: str) -> bool:
    if owner_username and username == owner_username:
        return True
    return contact_id == 2 and username.startswith("wxid_")


def classify_kind_for_account(
    username: str, local_type: int, contact_id: int, owner_username: str
) -> Kind:
    """Like classify_kind, but the account's own entry is always OTHER."""
    if _is_self_contact(username, contact_id, owner_username):
        return Kind.OTHER
    return classify_kind(username, local_type)


def owner_username_from_cache_path(cache_db: str | os.PathLike[str]) -> str:
    """The account's own username, taken from the cache directory layout."""
    account = os.path.basename(os.path.dirname(os.path.dirname(os.fspath(cache_db))))
    if not account.startswith("wxid_"):
        return account
    idx = account.rfind("_")
    if idx <= len("wxid_"):
        return account
    candidate = account[:idx]
    return candidate if candidate.startswith("wxid_") else account


def display_name(contact: Contact) -> str:
    """Remark, else nickname, else alias, else username."""
    return _display(contact.alias, contact.remark, contact.nick_name, contact.username)


def filter_by_kind(contacts: Iterable[Contact], kind: str) -> list[Contact]:
    """Contacts of the given kind; an empty kind or ALL keeps everything."""
    if not kind or kind == Kind.ALL:
        return list(contacts)
    return [c for c in contacts if c.kind == kind]


def _matches_query(contact: Contact, query: str) -> bool:
    return any(
        query in value.lower()
        for value in (contact.username, contact.alias, contact.remark, contact.nick_name)
    )


def _sort_contacts(contacts: list[Contact], sort_by: str) -> None:
    if sort_by in ("", "username"):
        contacts.sort(key=lambda c: c.username.lower())
    elif sort_by == "name":
        contacts.sort(key=lambda c: (display_name(c).lower(), c.username.lower()))


def _paginate(contacts: list[Contact], limit: int, offset: int) -> list[Contact]:
    offset = max(offset, 0)
    limit = max(limit, 0)
    if offset >= len(contacts):
        return []
    if limit == 0:
        return contacts[offset:]
    return contacts[offset : offset + limit]


def apply_query_options(contacts: Iterable[Contact], options: QueryOptions) -> list[Contact]:
    """Filter by kind, username and text, then sort and page."""
    query = options.query.strip().lower()
    username = options.username.strip()
    filtered = [
        c
        for c in contacts
        if (not options.kind or options.kind == Kind.ALL or c.kind == options.kind)
        and (not username or c.username == username)
        and (not query or _matches_query(c, query))
    ]
    _sort_contacts(filtered, options.sort)
    return _paginate(filtered, options.limit, options.offset)


def _immutable_uri(db_path: str) -> str:
    return Path(db_path).resolve().as_uri() + "?mode=ro&immutable=1"


class ContactService:
    """Reads contacts and group chats from a decrypted contact cache."""

    def __init__(self, cache_db: str | os.PathLike[str]) -> None:
        self.cache_db = os.fspath(cache_db)

    def _ensure_cache(self) -> None:
        if not self.cache_db:
            raise ContactError("contact cache path is empty")
        try:
            os.stat(self.cache_db)
        except FileNotFoundError as exc:
            raise ContactError(_MISSING_CACHE) from exc

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(_immutable_uri(self.cache_db), uri=True)
        except sqlite3.Error as exc:
            raise ContactError(f"open contact cache: {exc}") from exc
        conn.row_factory = sqlite3.Row
        with contextlib.closing(conn):
            yield conn

    @staticmethod
    def _query(
        conn: sqlite3.Connection, sql: str, params: tuple, label: str
    ) -> list[sqlite3.Row]:
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise ContactError(f"{label}: {exc}") from exc

    @property
    def _owner_username(self) -> str:
        return owner_username_from_cache_path(self.cache_db)

    def list_contacts(self) -> list[Contact]:
        """Every contact, ordered by display name."""
        self._ensure_cache()
        with self._connect() as conn:
            rows = self._query(conn, _LIST_SQL, (), "query contact cache")
        owner = self._owner_username
        return [
            Contact(
                username=_text(row["username"]),
                alias=_text(row["alias"]),
                remark=_text(row["remark"]),
                nick_name=_text(row["nick_name"]),
                head_url=_text(row["head_url"]),
                kind=classify_kind_for_account(
                    _text(row["username"]), _int(row["local_type"]), _int(row["id"]), owner
                ),
            )
            for row in rows
        ]

    def detail(self, username: str) -> Detail:
        """Full details of one contact."""
        username = username.strip()
        if not username:
            raise ContactError("username is required")
        self._ensure_cache()
        with self._connect() as conn:
            rows = self._query(conn, _DETAIL_SQL, (username,), "query contact detail")
        if not rows:
            raise ContactError(f"contact not found: {username}")
        row = rows[0]
        name = _text(row["username"])
        local_type = _int(row["local_type"])
        verify_flag = _int(row["verify_flag"])
        small = _text(row["small_head_url"])
        big = _text(row["big_head_url"])
        kind = classify_kind_for_account(name, local_type, _int(row["id"]), self._owner_username)
        return Detail(
            username=name,
            alias=_text(row["alias"]),
            remark=_text(row["remark"]),
            nick_name=_text(row["nick_name"]),
            head_url=_first_non_empty(big, small),
            small_head_url=small,
            big_head_url=big,
            description=_text(row["description"]),
            verify_flag=verify_flag,
            local_type=local_type,
            kind=kind,
            is_chatroom=kind == Kind.CHATROOM,
            is_official=verify_flag != 0 or name.startswith("gh_"),
        )

    def members(self, username: str) -> GroupMembers:
        """The members of a group chat, owner first."""
        username = username.strip()
        if not username:
            raise ContactError("username is required")
        if not username.endswith("@chatroom"):
            raise ContactError(f"{username} is not a chatroom username")
        self._ensure_cache()
        with self._connect() as conn:
            if not self._table_exists(conn, "chatroom_member"):
                return GroupMembers(username=username, display_name=username)
            rows = self._query(conn, _IDENTITY_SQL, (username,), "query chatroom identity")
            room_id = _int(rows[0]["id"]) if rows else 0
            room_name = _text(rows[0]["display_name"]) if rows else ""
            if room_id == 0:
                raise ContactError(f"chatroom not found: {username}")
            owner = self._chatroom_owner(conn, room_id, username)
            members = self._chatroom_members(conn, room_id, owner)
        owner_display = next(
            (m.display_name for m in members if m.username == owner), owner
        )
        return GroupMembers(
            username=username,
            display_name=room_name,
            owner=owner,
            owner_display_name=owner_display,
            count=len(members),
            members=members,
        )

    def _table_exists(self, conn: sqlite3.Connection, table: str) -> bool:
        rows = self._query(
            conn,
            "SELECT name FROM sqlite_master WHERE type='table' AND name=? LIMIT 1;",
            (table,),
            f"query table {table}",
        )
        return bool(rows)

    def _chatroom_owner(self, conn: sqlite3.Connection, room_id: int, username: str) -> str:
        if not self._table_exists(conn, "chat_room"):
            return ""
        attempts = [("id", room_id)] + [(column, username) for column in _OWNER_COLUMNS]
        for column, value in attempts:
            sql = f"SELECT COALESCE(owner, '') AS owner FROM chat_room WHERE {column} = ? LIMIT 1;"
            try:
                row = conn.execute(sql, (value,)).fetchone()
            except sqlite3.Error:
                continue
            if row is not None and _text(row["owner"]).strip():
                return _text(row["owner"])
        return ""

    def _chatroom_members(
        self, conn: sqlite3.Connection, room_id: int, owner: str
    ) -> list[Member]:
        rows = self._query(conn, _MEMBERS_SQL, (room_id,), "query chatroom members")
        account = self._owner_username
        members = []
        for row in rows:
            name = _text(row["username"])
            if not name.strip():
                continue
            alias, remark, nick = _text(row["alias"]), _text(row["remark"]), _text(row["nick_name"])
            members.append(
                Member(
                    username=name,
                    display_name=_display(alias, remark, nick, name),
                    alias=alias,
                    remark=remark,
                    nick_name=nick,
                    kind=classify_kind_for_account(
                        name, _int(row["local_type"]), _int(row["contact_id"]), account
                    ),
                    is_owner=bool(owner) and name == owner,
                )
            )
        members.sort(
            key=lambda m: (not m.is_owner, m.display_name.lower(), m.username.lower())
        )
        return members