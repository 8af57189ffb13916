"""Queries over a decrypted WeChat favorites database."""

from __future__ import annotations

import calendar
import contextlib
import os
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .favorite_content import (
    ContentItem,
    FavItem,
    content_items_from_favorite,
    favorite_detail,
    favorite_readable_content,
    format_unix,
    media_status,
    normalize_timestamp,
    parse_fav_xml,
    summarize_favorite,
    trim_summary,
    type_filter,
    type_label,
)

_MISSING_CACHE = "favorite cache does not exist: run `sudo wxview init` and retry"
_DEFAULT_SUMMARY = "[收藏]"
_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MAX = 2**63 - 1

_LIST_SQL = """
SELECT
  COALESCE(local_id, 0) AS local_id,
  COALESCE(type, 0) AS type,
  COALESCE(update_time, 0) AS update_time,
  COALESCE(content, '') AS content,
  COALESCE(fromusr, '') AS fromusr,
  COALESCE(realchatname, '') AS realchatname
FROM fav_db_item
{where}
ORDER BY update_time DESC
{limit};
"""


class FavoriteError(Exception):
    """Raised when favorites cannot be read."""


@dataclass
class QueryOptions:
    """Filtering and paging of the favorites list."""

    type: str = ""
    query: str = ""
    limit: int = 0
    offset: int = 0


@dataclass
class FavoriteItem:
    """One favorite, summarised for display."""

    id: int
    type: str
    type_code: int
    time: str
    timestamp: int
    summary: str
    content: str = ""
    url: str = ""
    content_detail: dict[str, str] | None = None
    content_items: list[ContentItem] = field(default_factory=list)
    from_username: str = ""
    source_chat_username: str = ""

    def to_dict(self) -> dict:
        """JSON-ready mapping; optional empty fields are left out."""
        data: dict = {
            "id": self.id,
            "type": self.type,
            "type_code": self.type_code,
            "time": self.time,
            "timestamp": self.timestamp,
            "summary": self.summary,
        }
        if self.content:
            data["content"] = self.content
        if self.url:
            data["url"] = self.url
        if self.content_detail:
            data["content_detail"] = dict(self.content_detail)
        if self.content_items:
            data["content_items"] = [c.to_dict() for c in self.content_items]
        if self.from_username:
            data["from_username"] = self.from_username
        if self.source_chat_username:
            data["source_chat_username"] = self.source_chat_username
        return data


def _first_non_empty(*values: str) -> str:
    for value in values:
        value = value.strip()
        if value:
            return value
    return ""


def _parse_positive(value: str) -> int | None:
    value = value.strip()
    if not value or not _INT_RE.fullmatch(value):
        return None
    number = int(value)
    if number > _INT64_MAX or number <= 0:
        return None
    return number


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _ext(name: str) -> str:
    base = name.rsplit("/", 1)[-1]
    idx = base.rfind(".")
    return base[idx:] if idx >= 0 else ""


def _month_after(year: int, month: int, day: int, delta: int) -> str:
    y, m0 = divmod(month - 1 + delta, 12)
    y += year
    m = m0 + 1
    days = calendar.monthrange(y, m)[1]
    if day > days:
        m += 1
        if m > 12:
            m, y = 1, y + 1
    return f"{y:04d}-{m:02d}"


def favorite_candidate_months(create_time: int) -> list[str]:
    """Month folders (``YYYY-MM``) to search: the month itself, then the one before and after."""
    if create_time <= 0:
        return []
    try:
        moment = datetime.fromtimestamp(normalize_timestamp(create_time))
    except (OverflowError, OSError, ValueError):
        return []
    months: list[str] = []
    for delta in (0, -1, 1):
        value = _month_after(moment.year, moment.month, moment.day, delta)
        if value not in months:
            months.append(value)
    return months


def _file_matches(path: str, size_text: str) -> bool:
    try:
        info = os.stat(path)
    except OSError:
        return False
    if os.path.isdir(path):
        return False
    size = _parse_positive(size_text)
    return size is None or size == info.st_size


def _sorted_entries(directory: str) -> list[os.DirEntry]:
    try:
        with os.scandir(directory) as entries:
            return sorted(entries, key=lambda e: e.name)
    except OSError:
        return []


def _scan_file_dir(directory: str, title: str, size_text: str) -> str | None:
    ext = _ext(title)
    base = title[: len(title) - len(ext)]
    ext_lower = ext.lower()
    for entry in _sorted_entries(directory):
        if entry.is_dir(follow_symlinks=False):
            continue
        name = entry.name
        same = name.casefold() == title.casefold()
        numbered = (
            bool(ext_lower)
            and name.startswith(base + "(")
            and _ext(name).casefold() == ext.casefold()
        )
        if same or numbered:
            path = os.path.join(directory, name)
            if _file_matches(path, size_text):
                return path
    return None


def _scan_media_dir(directory: str, content_item: ContentItem) -> str | None:
    for entry in _sorted_entries(directory):
        if entry.is_dir(follow_symlinks=False):
            continue
        path = os.path.join(directory, entry.name)
        if _file_matches(path, content_item.size):
            return path
    return None


def _scan_media_tree(root: str, month: str, content_item: ContentItem) -> str | None:
    for entry in _sorted_entries(root):
        if not entry.is_dir(follow_symlinks=False):
            continue
        directory = os.path.join(root, entry.name)
        found = _scan_media_dir(directory, content_item) or _scan_media_dir(
            os.path.join(directory, month), content_item
        )
        if found:
            return found
    return None


def _scan_image_tree(root: str, month: str, content_item: ContentItem) -> str | None:
    for entry in _sorted_entries(root):
        if not entry.is_dir(follow_symlinks=False):
            continue
        found = _scan_media_dir(os.path.join(root, entry.name, month, "Img"), content_item)
        if found:
            return found
    return None


def _account_base(data_dir: str) -> str | None:
    base = os.path.dirname(data_dir) or "."
    if base == "." or base == data_dir:
        return None
    return base


def resolve_local_favorite_file(
    data_dir: str, item: FavItem, content_item: ContentItem
) -> str | None:
    """Path of the received file a favorite refers to, or None."""
    base = _account_base(os.fspath(data_dir))
    if base is None:
        return None
    title = _first_non_empty(content_item.title, item.title)
    if not title:
        return None
    create_time = next(
        (t for t in (content_item.source_create_time, item.source.create_time) if t > 0), 0
    )
    months = favorite_candidate_months(create_time)
    for month in months:
        path = os.path.join(base, "msg", "file", month, title)
        if _file_matches(path, content_item.size):
            return path
    for month in months:
        found = _scan_file_dir(os.path.join(base, "msg", "file", month), title, content_item.size)
        if found:
            return found
    return None


def resolve_local_favorite_media(data_dir: str, content_item: ContentItem) -> str | None:
    """Path of a locally stored video or image matching by size, or None."""
    base = _account_base(os.fspath(data_dir))
    if base is None or content_item.source_create_time <= 0:
        return None
    if _parse_positive(content_item.size) is None:
        return None
    months = favorite_candidate_months(content_item.source_create_time)
    if content_item.type == "video":
        root = os.path.join(base, "msg", "video")
        for month in months:
            found = _scan_media_tree(root, month, content_item)
            if found:
                return found
    elif content_item.type == "image":
        root = os.path.join(base, "msg", "attach")
        for month in months:
            found = _scan_image_tree(root, month, content_item)
            if found:
                return found
    return None


def _immutable_uri(db_path: str) -> str:
    return Path(db_path).resolve().as_uri() + "?mode=ro&immutable=1"


class FavoriteService:
    """Reads favorites from a decrypted favorite cache."""

    def __init__(self, cache_db: str | os.PathLike[str], data_dir: str | os.PathLike[str] = "") -> None:
        self.cache_db = os.fspath(cache_db)
        self.data_dir = os.fspath(data_dir)

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(_immutable_uri(self.cache_db), uri=True)
        except sqlite3.Error as exc:
            raise FavoriteError(f"open favorite cache: {exc}") from exc
        conn.row_factory = sqlite3.Row
        with contextlib.closing(conn):
            yield conn

    def list_items(self, options: QueryOptions | None = None) -> list[FavoriteItem]:
        """Favorites, newest first, filtered and paged as asked."""
        options = options or QueryOptions()
        if not self.cache_db:
            raise FavoriteError("favorite cache path is empty")
        try:
            os.stat(self.cache_db)
        except FileNotFoundError as exc:
            raise FavoriteError(_MISSING_CACHE) from exc
        if options.limit < 0:
            raise FavoriteError("limit must be >= 0")
        if options.offset < 0:
            raise FavoriteError("offset must be >= 0")
        try:
            type_code = type_filter(options.type)
        except ValueError as exc:
            raise FavoriteError(str(exc)) from exc

        clauses: list[str] = []
        params: list[object] = []
        if type_code is not None:
            clauses.append("type = ?")
            params.append(type_code)
        text = options.query.strip()
        if text:
            clauses.append("content LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(text)}%")
        where = "WHERE " + " AND ".join(clauses) if clauses else ""
        limit = ""
        if options.limit > 0:
            limit = "LIMIT ? OFFSET ?"
            params += [options.limit, options.offset]
        elif options.offset > 0:
            limit = "LIMIT -1 OFFSET ?"
            params.append(options.offset)
        sql = _LIST_SQL.format(where=where, limit=limit)

        with self._connect() as conn:
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise FavoriteError(f"query favorites: {exc}") from exc

        items = []
        for row in rows:
            code = int(row["type"] or 0)
            ts = normalize_timestamp(int(row["update_time"] or 0))
            summary, content, url, detail, content_items = self.parse_content(
                _text(row["content"]), code
            )
            items.append(
                FavoriteItem(
                    id=int(row["local_id"] or 0),
                    type=type_label(code),
                    type_code=code,
                    time=format_unix(ts),
                    timestamp=ts,
                    summary=summary,
                    content=content,
                    url=url,
                    content_detail=detail,
                    content_items=content_items,
                    from_username=_text(row["fromusr"]),
                    source_chat_username=_text(row["realchatname"]),
                )
            )
        return items

    def parse_content(
        self, content: str, type_code: int
    ) -> tuple[str, str, str, dict[str, str] | None, list[ContentItem]]:
        """Summary, readable content, URL, detail and content items of favorite XML."""
        content = content.strip()
        if not content:
            return "", "", "", None, []
        try:
            item = parse_fav_xml(content)
        except ValueError:
            return trim_summary(content), content, "", None, []
        summary, url = summarize_favorite(item, type_code)
        summary = summary or _DEFAULT_SUMMARY
        content_items = content_items_from_favorite(type_code, item)
        self._resolve_local(type_code, item, content_items)
        readable = favorite_readable_content(type_code, item, content_items)
        detail = favorite_detail(type_code, item, readable, content_items)
        return summary, readable, url, detail, content_items

    def _resolve_local(
        self, type_code: int, item: FavItem, content_items: list[ContentItem]
    ) -> None:
        if not self.data_dir.strip() or not content_items:
            return
        for content_item in content_items:
            if not content_item.source_path:
                path = self._resolve_one(type_code, item, content_item)
                if path is None:
                    continue
                content_item.source_path = path
            content_item.media_status, content_item.media_reason = media_status(content_item)

    def _resolve_one(
        self, type_code: int, item: FavItem, content_item: ContentItem
    ) -> str | None:
        if type_code == 8:
            return resolve_local_favorite_file(self.data_dir, item, content_item)
        if type_code in (14, 18):
            if content_item.type == "file":
                return resolve_local_favorite_file(self.data_dir, item, content_item)
            if content_item.type in ("video", "image"):
                return resolve_local_favorite_media(self.data_dir, content_item)
        return None


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)