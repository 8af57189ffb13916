"""Parsing and summarising of the XML that describes one WeChat favorite."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import asdict, dataclass, field
from datetime import datetime

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)
_SUMMARY_LIMIT = 160
_DEFAULT_SUMMARY = "[收藏]"
_CDN_LOCATOR_KIND = "wechat_cdn_locator"

_TYPE_CODES = {
    "text": 1,
    "image": 2,
    "voice": 3,
    "video": 4,
    "article": 5,
    "location": 6,
    "file": 8,
    "chat_history": 14,
    "chat-history": 14,
    "note": 18,
    "card": 19,
    "video_channel": 20,
    "video-channel": 20,
    "channel": 20,
    "finder": 20,
}

_TYPE_LABELS = {
    1: "text",
    2: "image",
    3: "voice",
    4: "video",
    5: "article",
    6: "location",
    8: "file",
    14: "chat_history",
    18: "note",
    19: "card",
    20: "video_channel",
}

_COMPOUND_TYPES = {
    "1": "text",
    "2": "image",
    "3": "voice",
    "4": "video",
    "5": "article",
    "6": "location",
}

_SIMPLE_ITEM_TYPES = {
    2: "image",
    3: "voice",
    4: "video",
    5: "article",
    8: "file",
    20: "video_channel",
}


@dataclass
class FavPage:
    """A web page reference (``weburlitem``)."""

    title: str = ""
    desc: str = ""
    page_url: str = ""


@dataclass
class FavSource:
    """Where a favorite was saved from."""

    source_id: str = ""
    source_type: str = ""
    link: str = ""
    from_user: str = ""
    to_user: str = ""
    real_chat_name: str = ""
    msg_id: str = ""
    create_time: int = 0


@dataclass
class FavLocation:
    """A saved location."""

    label: str = ""
    lat: str = ""
    lng: str = ""
    poi_name: str = ""


@dataclass
class FavDataItem:
    """One ``dataitem`` of a favorite."""

    data_type: str = ""
    data_type_attr: str = ""
    data_id: str = ""
    data_id_attr: str = ""
    data_source_id: str = ""
    data_source_id_attr: str = ""
    html_id: str = ""
    html_id_attr: str = ""
    data_fmt: str = ""
    data_title: str = ""
    data_desc: str = ""
    source_name: str = ""
    stream_web_url: str = ""
    link: str = ""
    app_id: str = ""
    full_size: str = ""
    duration: str = ""
    cdn_data_url: str = ""
    cdn_thumb_url: str = ""
    source_data_path: str = ""
    source_thumb_path: str = ""
    msg_data_path: str = ""
    msg_thumb_path: str = ""
    full_md5: str = ""
    head256_md5: str = ""
    thumb_full_md5: str = ""
    message_uuid: str = ""
    src_msg_create_time: str = ""
    src_msg_create_time_attr: str = ""
    data_src_time: str = ""
    data_src_time_attr: str = ""
    page: FavPage = field(default_factory=FavPage)


@dataclass
class FavItem:
    """The parsed ``favitem`` document."""

    title: str = ""
    desc: str = ""
    page: FavPage = field(default_factory=FavPage)
    location: FavLocation = field(default_factory=FavLocation)
    source: FavSource = field(default_factory=FavSource)
    data_list: list[FavDataItem] = field(default_factory=list)
    data_item: FavDataItem = field(default_factory=FavDataItem)
    nickname: str = ""


@dataclass
class ContentItem:
    """A readable view of one data item of a favorite."""

    type: str = ""
    title: str = ""
    text: str = ""
    desc: str = ""
    data_type: str = ""
    data_id: str = ""
    data_source_id: str = ""
    html_id: str = ""
    format: str = ""
    size: str = ""
    duration: str = ""
    url: str = ""
    thumb_url: str = ""
    remote_locator: str = ""
    thumb_remote_locator: str = ""
    remote_locator_kind: str = ""
    source_path: str = ""
    thumb_source_path: str = ""
    md5: str = ""
    head256_md5: str = ""
    thumb_md5: str = ""
    message_uuid: str = ""
    source_name: str = ""
    source_create_time: int = 0
    source_time: str = ""
    media_status: str = ""
    media_reason: str = ""

    def to_dict(self) -> dict:
        """JSON-ready mapping without empty fields."""
        return {k: v for k, v in asdict(self).items() if v}


# --- XML decoding -----------------------------------------------------------

_PAGE_FIELDS = {"pagetitle": "title", "pagedesc": "desc", "url": "page_url"}
_LOCATION_FIELDS = {"label": "label", "lat": "lat", "lng": "lng", "poiname": "poi_name"}
_SOURCE_FIELDS = {
    "link": "link",
    "fromusr": "from_user",
    "tousr": "to_user",
    "realchatname": "real_chat_name",
    "msgid": "msg_id",
}
_SOURCE_ATTRS = {"sourceid": "source_id", "sourcetype": "source_type"}
_DATA_FIELDS = {
    "datatype": "data_type",
    "dataid": "data_id",
    "datasourceid": "data_source_id",
    "htmlid": "html_id",
    "datafmt": "data_fmt",
    "datatitle": "data_title",
    "datadesc": "data_desc",
    "datasrcname": "source_name",
    "stream_weburl": "stream_web_url",
    "link": "link",
    "appid": "app_id",
    "fullsize": "full_size",
    "duration": "duration",
    "cdn_dataurl": "cdn_data_url",
    "cdn_thumburl": "cdn_thumb_url",
    "sourcedatapath": "source_data_path",
    "sourcethumbpath": "source_thumb_path",
    "msgDataPath": "msg_data_path",
    "msgThumpPath": "msg_thumb_path",
    "fullmd5": "full_md5",
    "head256md5": "head256_md5",
    "thumbfullmd5": "thumb_full_md5",
    "messageuuid": "message_uuid",
    "srcmsgcreatetime": "src_msg_create_time",
    "datasrctime": "data_src_time",
}
_DATA_ATTRS = {
    "datatype": "data_type_attr",
    "dataid": "data_id_attr",
    "datasourceid": "data_source_id_attr",
    "htmlid": "html_id_attr",
    "srcmsgcreatetime": "src_msg_create_time_attr",
    "datasrctime": "data_src_time_attr",
}


def _local(name: object) -> str:
    return name.rsplit("}", 1)[-1] if isinstance(name, str) else ""


def _chardata(elem: ET.Element) -> str:
    return (elem.text or "") + "".join(child.tail or "" for child in elem)


def _fill_text(obj: object, elem: ET.Element, fields: dict[str, str]) -> None:
    for child in elem:
        attr = fields.get(_local(child.tag))
        if attr:
            setattr(obj, attr, _chardata(child))


def _fill_attrs(obj: object, elem: ET.Element, attrs: dict[str, str]) -> None:
    for name, value in elem.attrib.items():
        attr = attrs.get(_local(name))
        if attr:
            setattr(obj, attr, value)


def _parse_xml_int(text: str) -> int:
    if text == "":
        return 0
    stripped = text.strip()
    if not _INT_RE.fullmatch(stripped):
        raise ValueError(f"invalid integer {text!r}")
    value = int(stripped)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range {text!r}")
    return value


def _fill_source(source: FavSource, elem: ET.Element) -> None:
    _fill_attrs(source, elem, _SOURCE_ATTRS)
    _fill_text(source, elem, _SOURCE_FIELDS)
    for child in elem:
        if _local(child.tag) == "createtime":
            source.create_time = _parse_xml_int(_chardata(child))


def _fill_data_item(data: FavDataItem, elem: ET.Element) -> None:
    _fill_attrs(data, elem, _DATA_ATTRS)
    _fill_text(data, elem, _DATA_FIELDS)
    for child in elem:
        if _local(child.tag) == "weburlitem":
            _fill_text(data.page, child, _PAGE_FIELDS)


def _has_data_item(data: FavDataItem) -> bool:
    return (
        _first_non_empty(
            _data_type(data),
            _data_id(data),
            _data_source_id(data),
            _html_id(data),
            data.data_fmt,
            data.data_title,
            data.data_desc,
            data.source_name,
            data.stream_web_url,
            data.link,
            data.app_id,
            data.full_size,
            data.duration,
            data.cdn_data_url,
            data.cdn_thumb_url,
            data.source_data_path,
            data.source_thumb_path,
            data.msg_data_path,
            data.msg_thumb_path,
            data.page.title,
            data.page.desc,
        )
        != ""
    )


def parse_fav_xml(content: str) -> FavItem:
    """Decode favorite XML.

    A lone top-level ``dataitem`` becomes the single entry of ``data_list``
    when there is no ``datalist``. Raises ValueError on malformed XML.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ValueError(f"parse favorite xml: {exc}") from exc
    item = FavItem()
    for child in root:
        name = _local(child.tag)
        if name == "title":
            item.title = _chardata(child)
        elif name == "desc":
            item.desc = _chardata(child)
        elif name == "nickname":
            item.nickname = _chardata(child)
        elif name == "weburlitem":
            _fill_text(item.page, child, _PAGE_FIELDS)
        elif name == "locitem":
            _fill_text(item.location, child, _LOCATION_FIELDS)
        elif name == "source":
            _fill_source(item.source, child)
        elif name == "datalist":
            for sub in child:
                if _local(sub.tag) == "dataitem":
                    data = FavDataItem()
                    _fill_data_item(data, sub)
                    item.data_list.append(data)
        elif name == "dataitem":
            _fill_data_item(item.data_item, child)
    if not item.data_list and _has_data_item(item.data_item):
        item.data_list = [item.data_item]
    return item


# --- small text helpers -----------------------------------------------------


def _first_non_empty(*values: str) -> str:
    for value in values:
        value = value.strip()
        if value:
            return value
    return ""


def _compact(*values: str) -> list[str]:
    return [v.strip() for v in values if v.strip()]


def _http_only(value: str) -> str:
    value = value.strip()
    return value if value.startswith(("http://", "https://")) else ""


def _non_http(value: str) -> str:
    value = value.strip()
    if not value or value.startswith(("http://", "https://")):
        return ""
    return value


def _parse_int64(value: str) -> tuple[int, bool]:
    """Signed decimal parse clamped to int64; returns (number, number > 0)."""
    value = value.strip()
    if not value or not _INT_RE.fullmatch(value):
        return 0, False
    number = int(value)
    if number > _INT64_MAX:
        return _INT64_MAX, False
    if number < _INT64_MIN:
        return _INT64_MIN, False
    return number, number > 0


def _data_type(data: FavDataItem) -> str:
    return _first_non_empty(data.data_type, data.data_type_attr)


def _data_id(data: FavDataItem) -> str:
    return _first_non_empty(data.data_id, data.data_id_attr)


def _data_source_id(data: FavDataItem) -> str:
    return _first_non_empty(data.data_source_id, data.data_source_id_attr)


def _html_id(data: FavDataItem) -> str:
    return _first_non_empty(data.html_id, data.html_id_attr)


def trim_summary(value: str) -> str:
    """Collapse whitespace and cut to 160 characters, marking a cut with '...'."""
    value = " ".join(value.split())
    if len(value) > _SUMMARY_LIMIT:
        return value[:_SUMMARY_LIMIT] + "..."
    return value


def normalize_timestamp(ts: int) -> int:
    """Convert millisecond timestamps to seconds; seconds pass through."""
    if ts > 9_999_999_999:
        return int(ts / 1000)
    return ts


def format_unix(ts: int) -> str:
    """Local time as ``YYYY-MM-DD HH:MM:SS``, or '' for a non-positive time."""
    if ts <= 0:
        return ""
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def type_filter(value: str) -> int | None:
    """Type code for a type name, None for an empty name; ValueError if unknown."""
    name = value.strip()
    if not name:
        return None
    try:
        return _TYPE_CODES[name]
    except KeyError:
        raise ValueError(
            f"invalid favorite type {value!r}: use text, image, voice, video, article, "
            "location, file, chat_history, note, card, or video_channel"
        ) from None


def type_label(code: int) -> str:
    """Name of a favorite type code."""
    return _TYPE_LABELS.get(code, f"type_{code}")


def _labeled_summary(label: str, detail: str) -> str:
    detail = trim_summary(detail)
    return f"[{label}]" if not detail else f"[{label}] {detail}"


def _coordinate_summary(loc: FavLocation) -> str:
    lat, lng = loc.lat.strip(), loc.lng.strip()
    if not lat or not lng:
        return ""
    return f"{lat},{lng}"


def _data_summary(item: FavItem, limit: int) -> str:
    limit = max(limit, 1)
    values: list[str] = []
    for data in item.data_list:
        title = _first_non_empty(data.data_title, data.page.title)
        desc = _first_non_empty(data.data_desc, data.page.desc)
        value = " - ".join(_compact(title, desc))
        if not value and data.data_fmt:
            value = data.data_fmt
        if not value:
            continue
        values.append(trim_summary(value))
        if len(values) >= limit:
            break
    return " / ".join(values)


def _first_data_duration(item: FavItem) -> str:
    for data in item.data_list:
        if data.duration.strip():
            return data.duration.strip() + "s"
    return ""


def _first_open_url(item: FavItem) -> str:
    for data in item.data_list:
        url = _first_non_empty(
            _http_only(data.stream_web_url),
            _http_only(data.link),
            _http_only(data.page.page_url),
        )
        if url:
            return url
    return ""


def _first_remote_locator(item: FavItem) -> str:
    for data in item.data_list:
        locator = _first_non_empty(
            _non_http(data.cdn_data_url),
            _non_http(data.stream_web_url),
            _non_http(data.link),
            _non_http(data.page.page_url),
        )
        if locator:
            return locator
    return ""


def summarize_favorite(item: FavItem, type_code: int) -> tuple[str, str]:
    """One-line summary and the URL to open, according to the favorite type."""
    if type_code == 1:
        return _first_non_empty(trim_summary(item.desc), _data_summary(item, 1)), ""
    if type_code == 2:
        return _labeled_summary("图片", _data_summary(item, 1)), ""
    if type_code == 3:
        return _labeled_summary("语音", _first_data_duration(item)), ""
    if type_code == 4:
        return _labeled_summary("视频", _data_summary(item, 1)), _first_open_url(item)
    if type_code == 5:
        summary = " - ".join(
            _compact(item.page.title, item.page.desc, item.title, item.desc, _data_summary(item, 1))
        )
        url = _first_non_empty(_http_only(item.source.link), _first_open_url(item))
        return trim_summary(summary or "[文章]"), url
    if type_code == 6:
        loc = item.location
        location = " - ".join(_compact(loc.label, loc.poi_name, _coordinate_summary(loc)))
        return _labeled_summary("位置", location), ""
    if type_code == 8:
        return _labeled_summary("文件", _data_summary(item, 1)), _first_open_url(item)
    if type_code == 14:
        summary = _first_non_empty(item.title, item.desc, _data_summary(item, 3))
        return _labeled_summary("聊天记录", summary), _first_open_url(item)
    if type_code == 18:
        summary = _first_non_empty(item.title, item.desc, _data_summary(item, 3))
        return _labeled_summary("笔记", summary), _first_open_url(item)
    if type_code == 19:
        summary = _first_non_empty(
            trim_summary(item.desc),
            trim_summary(item.title),
            _labeled_summary("名片", _data_summary(item, 1)),
        )
        return summary, ""
    if type_code == 20:
        summary = " ".join(
            _compact(item.nickname, item.title, item.desc, _data_summary(item, 1))
        )
        return _labeled_summary("视频号", summary), _first_open_url(item)
    summary = _first_non_empty(
        trim_summary(item.title), trim_summary(item.desc), _data_summary(item, 2), _DEFAULT_SUMMARY
    )
    return summary, _first_open_url(item)


def _compound_content_item_type(fallback: str, data: FavDataItem) -> str:
    kind = _data_type(data)
    if kind in _COMPOUND_TYPES:
        return _COMPOUND_TYPES[kind]
    if kind == "8":
        fmt = data.data_fmt.strip().removeprefix(".").lower()
        return "html" if fmt in ("htm", "html") else "file"
    if data.data_desc.strip() and not _first_non_empty(
        data.data_fmt, data.cdn_data_url, data.cdn_thumb_url, data.data_title
    ):
        return "text"
    return fallback


def _content_item_type(type_code: int, data: FavDataItem) -> str:
    if type_code in _SIMPLE_ITEM_TYPES:
        return _SIMPLE_ITEM_TYPES[type_code]
    if type_code == 14:
        return _compound_content_item_type("chat_history_item", data)
    if type_code == 18:
        return _compound_content_item_type("note_item", data)
    return data.data_fmt.strip() or "item"


def media_status(item: ContentItem) -> tuple[str, str]:
    """Whether a content item's media is local, remote or only described."""
    if item.source_path or item.thumb_source_path:
        return "local_path", "favorite XML includes a local source path"
    if item.url or item.thumb_url:
        return "remote_only", "favorite XML includes remote URL metadata but no local source path"
    if item.remote_locator or item.thumb_remote_locator:
        return (
            "remote_only",
            "favorite XML includes WeChat CDN locator metadata but no local source path",
        )
    return "metadata_only", "favorite XML does not include a local source path or URL"


def content_items_from_favorite(type_code: int, item: FavItem) -> list[ContentItem]:
    """One ContentItem per data item, without CDN keys."""
    out: list[ContentItem] = []
    for data in item.data_list:
        text = _first_non_empty(data.data_desc, data.page.desc)
        source_create_time, _ = _parse_int64(
            _first_non_empty(data.src_msg_create_time, data.src_msg_create_time_attr)
        )
        content = ContentItem(
            type=_content_item_type(type_code, data),
            title=_first_non_empty(data.data_title, data.page.title),
            text=text,
            desc=text,
            data_type=_data_type(data),
            data_id=_data_id(data),
            data_source_id=_data_source_id(data),
            html_id=_html_id(data),
            format=data.data_fmt.strip(),
            size=data.full_size.strip(),
            duration=data.duration.strip(),
            url=_first_non_empty(
                _http_only(data.stream_web_url),
                _http_only(data.link),
                _http_only(data.page.page_url),
                _http_only(data.cdn_data_url),
            ),
            thumb_url=_http_only(data.cdn_thumb_url),
            remote_locator=_first_non_empty(
                _non_http(data.cdn_data_url),
                _non_http(data.stream_web_url),
                _non_http(data.link),
                _non_http(data.page.page_url),
            ),
            thumb_remote_locator=_non_http(data.cdn_thumb_url),
            source_path=_first_non_empty(data.source_data_path, data.msg_data_path),
            thumb_source_path=_first_non_empty(data.source_thumb_path, data.msg_thumb_path),
            md5=data.full_md5.strip(),
            head256_md5=data.head256_md5.strip(),
            thumb_md5=data.thumb_full_md5.strip(),
            message_uuid=data.message_uuid.strip(),
            source_name=data.source_name.strip(),
            source_create_time=normalize_timestamp(source_create_time),
            source_time=_first_non_empty(data.data_src_time, data.data_src_time_attr),
        )
        if content.remote_locator or content.thumb_remote_locator:
            content.remote_locator_kind = _CDN_LOCATOR_KIND
        content.media_status, content.media_reason = media_status(content)
        out.append(content)
    return out


def _readable_text(content_items: list[ContentItem]) -> str:
    parts = [_first_non_empty(c.text, c.desc) for c in content_items]
    return "\n\n".join(p for p in parts if p)


def favorite_readable_content(
    type_code: int, item: FavItem, content_items: list[ContentItem]
) -> str:
    """Full readable text of a favorite."""
    if type_code == 1:
        return _first_non_empty(item.desc, _readable_text(content_items))
    if type_code == 5:
        return "\n".join(
            _compact(item.page.title, item.page.desc, item.title, item.desc, _readable_text(content_items))
        )
    if type_code == 6:
        loc = item.location
        return "\n".join(_compact(loc.label, loc.poi_name, _coordinate_summary(loc)))
    if type_code == 8:
        if content_items:
            first = content_items[0]
            return _first_non_empty(first.title, first.text, first.desc)
        return _first_non_empty(item.title, item.desc)
    if type_code in (14, 18):
        return _readable_text(content_items)
    if type_code == 20:
        return "\n".join(
            _compact(item.nickname, item.title, item.desc, _readable_text(content_items))
        )
    return _first_non_empty(item.desc, item.title, _readable_text(content_items))


def favorite_detail(
    type_code: int,
    item: FavItem,
    readable_content: str,
    content_items: list[ContentItem],
) -> dict[str, str] | None:
    """Flat key/value details of a favorite, or None if there is nothing but its type."""
    detail = {"type": type_label(type_code)}

    def put(key: str, value: str) -> None:
        value = value.strip()
        if value:
            detail[key] = value

    put("title", item.title)
    put("desc", trim_summary(item.desc))
    put("text", readable_content)
    put("url", _first_non_empty(_http_only(item.source.link), _first_open_url(item)))
    put("remote_locator", _first_remote_locator(item))
    if content_items:
        detail["item_count"] = str(len(content_items))
        first = content_items[0]
        put("format", first.format)
        put("size", first.size)
        put("duration", first.duration)
        put("path", first.source_path)
        put("thumbnail_path", first.thumb_source_path)
        put("url", first.url)
        put("thumb_url", first.thumb_url)
        put("remote_locator", first.remote_locator)
        put("thumb_remote_locator", first.thumb_remote_locator)
        put("remote_locator_kind", first.remote_locator_kind)
        put("md5", first.md5)
        put("message_uuid", first.message_uuid)
        put("media_status", first.media_status)
        put("media_reason", first.media_reason)
    if len(detail) == 1:
        return None
    return detail