import os
import sqlite3
from datetime import datetime

import pytest

from wxview.favorite_content import ContentItem, FavItem
from wxview.favorites import (
    FavoriteError,
    FavoriteService,
    QueryOptions,
    favorite_candidate_months,
    resolve_local_favorite_file,
    resolve_local_favorite_media,
)

SCHEMA = """
CREATE TABLE fav_db_item (
  local_id INTEGER,
  type INTEGER,
  update_time INTEGER,
  content TEXT,
  fromusr TEXT,
  realchatname TEXT
);
"""


def create_db(path, rows):
    conn = sqlite3.connect(path)
    try:
        conn.executescript(SCHEMA)
        conn.executemany("INSERT INTO fav_db_item VALUES (?, ?, ?, ?, ?, ?)", rows)
        conn.commit()
    finally:
        conn.close()
    return str(path)


def write_file(path, data=b"pdf"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(data)


def test_list_extracts_article_favorite(tmp_path):
    content = (
        "<favitem><weburlitem><pagetitle>Readable Article</pagetitle>"
        "<pagedesc>Short summary</pagedesc></weburlitem>"
        "<source><link>https://example.com/article</link></source></favitem>"
    )
    db = create_db(tmp_path / "favorite.db", [(7, 5, 1710000000123, content, "wxid_from", "room@chatroom")])
    got = FavoriteService(db).list_items(QueryOptions(type="article", query="Readable", limit=10))
    assert len(got) == 1
    item = got[0]
    assert (item.id, item.type, item.type_code) == (7, "article", 5)
    assert item.timestamp == 1710000000
    assert item.summary == "Readable Article - Short summary"
    assert item.url == "https://example.com/article"
    assert item.content_detail["type"] == "article"
    assert item.content_detail["url"] == "https://example.com/article"
    assert item.from_username == "wxid_from"
    assert item.source_chat_username == "room@chatroom"


def test_list_labels_common_favorite_types(tmp_path):
    rows = [
        (1, 8, 1710000000, "<favitem><datalist><dataitem><datatitle>report.pdf</datatitle><datafmt>pdf</datafmt><fullsize>2048</fullsize></dataitem></datalist></favitem>", "", ""),
        (2, 14, 1710000001, "<favitem><title>Project room</title><datalist><dataitem><datadesc>Alice: first line</datadesc></dataitem><dataitem><datadesc>Bob: second line</datadesc></dataitem></datalist></favitem>", "", ""),
        (3, 18, 1710000002, "<favitem><datalist><dataitem><datatitle>Note title</datatitle><datadesc>Note body</datadesc></dataitem></datalist></favitem>", "", ""),
    ]
    db = create_db(tmp_path / "favorite.db", rows)
    got = FavoriteService(db).list_items(QueryOptions(limit=10))
    assert len(got) == 3
    assert got[0].type == "note" and got[0].summary == "[笔记] Note title - Note body"
    assert got[1].type == "chat_history" and got[1].summary == "[聊天记录] Project room"
    assert got[2].type == "file" and got[2].summary == "[文件] report.pdf"


def test_list_returns_content_items_without_cdn_keys(tmp_path):
    content = (
        "<favitem><datalist><dataitem><datafmt>png</datafmt><fullsize>145445</fullsize>"
        "<cdn_dataurl>https://cdn.example/full.png</cdn_dataurl><cdn_datakey>secret-data-key</cdn_datakey>"
        "<cdn_thumburl>https://cdn.example/thumb.png</cdn_thumburl><cdn_thumbkey>secret-thumb-key</cdn_thumbkey>"
        "<fullmd5>image-md5</fullmd5></dataitem></datalist></favitem>"
    )
    db = create_db(tmp_path / "favorite.db", [(1, 2, 1710000000, content, "", "")])
    got = FavoriteService(db).list_items(QueryOptions(limit=10))
    assert len(got) == 1
    item = got[0]
    assert item.content_detail["media_status"] == "remote_only"
    assert item.content_detail["url"] == "https://cdn.example/full.png"
    assert len(item.content_items) == 1
    ci = item.content_items[0]
    assert ci.format == "png"
    assert ci.size == "145445"
    assert ci.url == "https://cdn.example/full.png"
    assert ci.thumb_url == "https://cdn.example/thumb.png"
    blob = repr(item.content_detail) + repr(ci) + repr(item.to_dict())
    assert "secret" not in blob


def test_list_separates_wechat_cdn_locator_from_url(tmp_path):
    content = (
        "<favitem><datalist><dataitem><datafmt>pdf</datafmt><fullsize>937780</fullsize>"
        "<datatitle>report.pdf</datatitle><cdn_dataurl>305f02010204abcdef</cdn_dataurl>"
        "<fullmd5>file-md5</fullmd5></dataitem></datalist></favitem>"
    )
    db = create_db(tmp_path / "favorite.db", [(1, 8, 1710000000, content, "", "")])
    got = FavoriteService(db).list_items(QueryOptions(limit=10))
    assert len(got) == 1
    item = got[0]
    assert item.url == ""
    assert item.content_detail["remote_locator"] == "305f02010204abcdef"
    assert item.content_detail["remote_locator_kind"] == "wechat_cdn_locator"
    assert len(item.content_items) == 1
    assert item.content_items[0].remote_locator == "305f02010204abcdef"
    assert item.content_items[0].url == ""


def test_list_resolves_local_favorite_file(tmp_path):
    account_base = tmp_path / "wxid_owner_bcc2"
    data_dir = account_base / "db_storage"
    data_dir.mkdir(parents=True)
    create_time = int(datetime(2026, 2, 25, 12, 0, 0).timestamp())
    file_path = str(account_base / "msg" / "file" / "2026-02" / "report.pdf")
    write_file(file_path)
    content = (
        f"<favitem><source><createtime>{create_time}</createtime></source><datalist><dataitem>"
        "<datafmt>pdf</datafmt><fullsize>3</fullsize><datatitle>report.pdf</datatitle>"
        "<cdn_dataurl>305f02010204abcdef</cdn_dataurl><fullmd5>file-md5</fullmd5></dataitem></datalist></favitem>"
    )
    db = create_db(tmp_path / "favorite.db", [(1, 8, 1710000000, content, "", "")])
    got = FavoriteService(db, str(data_dir)).list_items(QueryOptions(limit=10))
    assert len(got) == 1 and len(got[0].content_items) == 1
    item = got[0]
    assert item.content_detail["path"] == file_path
    assert item.content_detail["media_status"] == "local_path"
    assert item.content_items[0].source_path == file_path


def test_list_parses_compound_note_content(tmp_path):
    account_base = tmp_path / "wxid_owner_bcc2"
    data_dir = account_base / "db_storage"
    data_dir.mkdir(parents=True)
    source_time = int(datetime(2026, 1, 16, 8, 48, 0).timestamp())
    file_path = str(account_base / "msg" / "file" / "2026-01" / "AI 原生组织形态与协作.pdf")
    write_file(file_path)
    content = (
        '<favitem><datalist><dataitem datatype="1"><datadesc>欧盛: 第一段完整文本，不应该被摘要截断。</datadesc></dataitem>'
        '<dataitem datatype="4" datasourceid="2361525316592321658$3" htmlid="WeNote_7"><datafmt>mp4</datafmt>'
        "<fullsize>3317276</fullsize><duration>34</duration><datasrcname>胥克谦</datasrcname>"
        "<srcmsgcreatetime>1768519482</srcmsgcreatetime><datasrctime>2026-1-16 07:24</datasrctime>"
        "<cdn_dataurl>305f02010204video</cdn_dataurl><messageuuid>uuid-video</messageuuid></dataitem>"
        '<dataitem datatype="8"><datafmt>pdf</datafmt><datatitle>AI 原生组织形态与协作.pdf</datatitle>'
        f"<fullsize>3</fullsize><srcmsgcreatetime>{source_time}</srcmsgcreatetime>"
        "<cdn_dataurl>305f02010204pdf</cdn_dataurl></dataitem></datalist></favitem>"
    )
    db = create_db(tmp_path / "favorite.db", [(1, 18, 1710000000, content, "wxid_from", "")])
    got = FavoriteService(db, str(data_dir)).list_items(QueryOptions(limit=10))
    assert len(got) == 1
    item = got[0]
    assert item.type == "note"
    assert item.content == "欧盛: 第一段完整文本，不应该被摘要截断。"
    assert item.content_detail["text"] == item.content
    assert len(item.content_items) == 3
    assert item.content_items[0].type == "text"
    assert item.content_items[0].text == item.content
    video = item.content_items[1]
    assert video.type == "video"
    assert video.duration == "34"
    assert video.source_name == "胥克谦"
    assert video.source_create_time == 1768519482
    pdf = item.content_items[2]
    assert pdf.type == "file"
    assert pdf.source_path == file_path
    assert pdf.media_status == "local_path"


def test_video_filter_uses_normal_video_type(tmp_path):
    rows = [
        (1, 4, 1710000000, "<favitem><datalist><dataitem><datatitle>clip.mp4</datatitle></dataitem></datalist></favitem>", "", ""),
        (2, 20, 1710000001, "<favitem><desc>finder post</desc></favitem>", "", ""),
    ]
    db = create_db(tmp_path / "favorite.db", rows)
    got = FavoriteService(db).list_items(QueryOptions(type="video", limit=10))
    assert [(i.id, i.type) for i in got] == [(1, "video")]


def test_list_rejects_unknown_favorite_type(tmp_path):
    with pytest.raises(FavoriteError):
        FavoriteService(str(tmp_path / "favorite.db")).list_items(QueryOptions(type="bad"))


def test_unknown_type_rejected_on_existing_cache(tmp_path):
    db = create_db(tmp_path / "favorite.db", [])
    with pytest.raises(FavoriteError, match="invalid favorite type"):
        FavoriteService(db).list_items(QueryOptions(type="bad"))


def test_missing_cache_message(tmp_path):
    with pytest.raises(FavoriteError, match="favorite cache does not exist"):
        FavoriteService(str(tmp_path / "absent.db")).list_items(QueryOptions())


@pytest.mark.parametrize("options", [QueryOptions(limit=-1), QueryOptions(offset=-1)])
def test_negative_paging_rejected(tmp_path, options):
    db = create_db(tmp_path / "favorite.db", [])
    with pytest.raises(FavoriteError, match="must be >= 0"):
        FavoriteService(db).list_items(options)


def test_offset_without_limit_and_ordering(tmp_path):
    rows = [(i, 1, 1710000000 + i, f"<favitem><desc>t{i}</desc></favitem>", "", "") for i in range(1, 5)]
    db = create_db(tmp_path / "favorite.db", rows)
    got = FavoriteService(db).list_items(QueryOptions(offset=1))
    assert [i.id for i in got] == [3, 2, 1]
    got = FavoriteService(db).list_items(QueryOptions(limit=2, offset=1))
    assert [i.id for i in got] == [3, 2]


def test_query_escapes_like_wildcards(tmp_path):
    rows = [
        (1, 1, 1710000000, "<favitem><desc>100% sure</desc></favitem>", "", ""),
        (2, 1, 1710000001, "<favitem><desc>100 sure</desc></favitem>", "", ""),
    ]
    db = create_db(tmp_path / "favorite.db", rows)
    got = FavoriteService(db).list_items(QueryOptions(query="100%"))
    assert [i.id for i in got] == [1]


def test_parse_content_plain_text_and_empty(tmp_path):
    service = FavoriteService(str(tmp_path / "favorite.db"))
    assert service.parse_content("plain   text", 1) == ("plain text", "plain   text", "", None, [])
    assert service.parse_content("   ", 1) == ("", "", "", None, [])


def test_favorite_candidate_months():
    mid = int(datetime(2026, 2, 15, 12, 0, 0).timestamp())
    assert favorite_candidate_months(mid) == ["2026-02", "2026-01", "2026-03"]
    assert favorite_candidate_months(mid * 1000) == ["2026-02", "2026-01", "2026-03"]
    end = int(datetime(2026, 3, 31, 12, 0, 0).timestamp())
    assert favorite_candidate_months(end) == ["2026-03", "2026-05"]
    assert favorite_candidate_months(0) == []


def test_resolve_local_favorite_file_numbered_copy(tmp_path):
    data_dir = tmp_path / "acct" / "db_storage"
    data_dir.mkdir(parents=True)
    path = str(tmp_path / "acct" / "msg" / "file" / "2026-02" / "report(1).PDF")
    write_file(path, b"abcd")
    create_time = int(datetime(2026, 2, 10, 12).timestamp())
    ci = ContentItem(title="report.pdf", size="4", source_create_time=create_time)
    assert resolve_local_favorite_file(str(data_dir), FavItem(), ci) == path
    wrong_size = ContentItem(title="report.pdf", size="5", source_create_time=create_time)
    assert resolve_local_favorite_file(str(data_dir), FavItem(), wrong_size) is None


def test_resolve_local_favorite_file_needs_account_base(tmp_path):
    ci = ContentItem(title="report.pdf", source_create_time=1768519482)
    assert resolve_local_favorite_file("db_storage", FavItem(), ci) is None


def test_resolve_local_favorite_media_image(tmp_path):
    data_dir = tmp_path / "acct" / "db_storage"
    data_dir.mkdir(parents=True)
    path = str(tmp_path / "acct" / "msg" / "attach" / "abc" / "2026-02" / "Img" / "one.dat")
    write_file(path, b"12345")
    create_time = int(datetime(2026, 2, 10, 12).timestamp())
    image = ContentItem(type="image", size="5", source_create_time=create_time)
    assert resolve_local_favorite_media(str(data_dir), image) == path
    no_size = ContentItem(type="image", size="", source_create_time=create_time)
    assert resolve_local_favorite_media(str(data_dir), no_size) is None


def test_resolve_local_favorite_media_video(tmp_path):
    data_dir = tmp_path / "acct" / "db_storage"
    data_dir.mkdir(parents=True)
    path = str(tmp_path / "acct" / "msg" / "video" / "2026-02" / "clip.mp4")
    write_file(path, b"123")
    create_time = int(datetime(2026, 2, 10, 12).timestamp())
    video = ContentItem(type="video", size="3", source_create_time=create_time)
    assert resolve_local_favorite_media(str(data_dir), video) == path


def test_to_dict_omits_empty_fields(tmp_path):
    db = create_db(tmp_path / "favorite.db", [(5, 1, 0, "", "", "")])
    item = FavoriteService(db).list_items(QueryOptions())[0]
    assert item.to_dict() == {
        "id": 5,
        "type": "text",
        "type_code": 1,
        "time": "",
        "timestamp": 0,
        "summary": "",
    }