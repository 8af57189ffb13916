import contextlib
import sqlite3

import pytest

from wxview.contacts import (
    Contact,
    ContactError,
    ContactService,
    Kind,
    QueryOptions,
    apply_query_options,
    classify_kind,
    classify_kind_for_account,
    display_name,
    filter_by_kind,
    owner_username_from_cache_path,
)


def make_db(path, script):
    with contextlib.closing(sqlite3.connect(str(path))) as conn:
        conn.executescript(script)
        conn.commit()
    return path


BASIC_TABLE = (
    "CREATE TABLE contact (id INTEGER, username TEXT, local_type INTEGER, alias TEXT, "
    "remark TEXT, nick_name TEXT, big_head_url TEXT);"
)


def test_list_returns_configured_contact_fields(tmp_path):
    db = make_db(
        tmp_path / "contact.db",
        BASIC_TABLE
        + """
INSERT INTO contact VALUES (1, 'u1', 1, 'alias1', 'Remark 1', 'Nick 1', 'https://example.com/1');
INSERT INTO contact VALUES (3, '10000@chatroom', 1, '', '', 'Group 1', '');
INSERT INTO contact VALUES (4, 'gh_x', 1, '', '', 'OA', '');
""",
    )
    got = ContactService(db).list_contacts()
    assert len(got) == 3
    by_user = {c.username: c for c in got}
    assert by_user["u1"].alias == "alias1"
    assert by_user["u1"].remark == "Remark 1"
    assert by_user["10000@chatroom"].nick_name == "Group 1"
    assert by_user["u1"].head_url == "https://example.com/1"
    assert by_user["u1"].kind == Kind.FRIEND
    assert by_user["10000@chatroom"].kind == Kind.CHATROOM
    assert by_user["gh_x"].kind == Kind.OTHER


def test_list_orders_by_display_name(tmp_path):
    db = make_db(
        tmp_path / "contact.db",
        BASIC_TABLE
        + """
INSERT INTO contact VALUES (1, 'u1', 1, '', 'zeta', '', '');
INSERT INTO contact VALUES (2, 'u2', 1, '', '', 'Alpha', '');
INSERT INTO contact VALUES (3, 'u3', 1, '', '', '', '');
""",
    )
    got = [c.username for c in ContactService(db).list_contacts()]
    assert got == ["u2", "u3", "u1"]


def test_list_classifies_current_account_as_other(tmp_path):
    directory = tmp_path / "cache" / "wxid_self_abcd" / "contact"
    directory.mkdir(parents=True)
    db = make_db(
        directory / "contact.db",
        BASIC_TABLE
        + """
INSERT INTO contact VALUES (2, 'wxid_self', 1, 'me_alias', '', 'Me', '');
INSERT INTO contact VALUES (3, 'wxid_friend', 1, '', '', 'Friend', '');
""",
    )
    by_user = {c.username: c for c in ContactService(db).list_contacts()}
    assert by_user["wxid_self"].kind == Kind.OTHER
    assert by_user["wxid_friend"].kind == Kind.FRIEND


def test_list_missing_cache_raises(tmp_path):
    with pytest.raises(ContactError, match="does not exist"):
        ContactService(tmp_path / "missing.db").list_contacts()


def test_list_empty_path_raises():
    with pytest.raises(ContactError, match="path is empty"):
        ContactService("").list_contacts()


DETAIL_TABLE = """
CREATE TABLE contact (
  id INTEGER, username TEXT, local_type INTEGER, alias TEXT, remark TEXT,
  nick_name TEXT, small_head_url TEXT, big_head_url TEXT, description TEXT,
  verify_flag INTEGER
);
"""


def test_detail_returns_rich_contact_fields(tmp_path):
    db = make_db(
        tmp_path / "contact.db",
        DETAIL_TABLE
        + "INSERT INTO contact VALUES (9, 'gh_news', 1, 'news_alias', 'News Remark', "
        "'News Nick', 'small', 'big', 'desc text', 8);",
    )
    got = ContactService(db).detail("gh_news")
    assert got.username == "gh_news"
    assert got.description == "desc text"
    assert got.big_head_url == "big"
    assert got.small_head_url == "small"
    assert got.head_url == "big"
    assert got.kind == Kind.OTHER
    assert got.is_official is True
    assert got.is_chatroom is False


def test_detail_head_url_falls_back_to_small(tmp_path):
    db = make_db(
        tmp_path / "contact.db",
        DETAIL_TABLE
        + "INSERT INTO contact VALUES (5, 'wxid_a', 1, '', '', 'A', 'small', '', '', 0);",
    )
    got = ContactService(db).detail("  wxid_a  ")
    assert got.head_url == "small"
    assert got.kind == Kind.FRIEND
    assert got.is_official is False


def test_detail_not_found(tmp_path):
    db = make_db(tmp_path / "contact.db", DETAIL_TABLE)
    with pytest.raises(ContactError, match="contact not found: nobody"):
        ContactService(db).detail("nobody")


def test_detail_requires_username(tmp_path):
    with pytest.raises(ContactError, match="username is required"):
        ContactService(tmp_path / "contact.db").detail("   ")


MEMBERS_SCRIPT = """
CREATE TABLE contact (
  id INTEGER, username TEXT, local_type INTEGER, alias TEXT, remark TEXT,
  nick_name TEXT, big_head_url TEXT
);
CREATE TABLE chat_room (id INTEGER, owner TEXT);
CREATE TABLE chatroom_member (room_id INTEGER, member_id INTEGER);
INSERT INTO contact VALUES (10, 'room@chatroom', 1, '', 'Room Remark', 'Room Nick', '');
INSERT INTO contact VALUES (11, 'wxid_owner', 1, 'owner_alias', '', 'Owner Nick', '');
INSERT INTO contact VALUES (12, 'wxid_member', 1, '', 'Member Remark', 'Member Nick', '');
INSERT INTO chat_room VALUES (10, 'wxid_owner');
INSERT INTO chatroom_member VALUES (10, 12);
INSERT INTO chatroom_member VALUES (10, 11);
"""


def test_members_returns_owner_first(tmp_path):
    db = make_db(tmp_path / "contact.db", MEMBERS_SCRIPT)
    got = ContactService(db).members("room@chatroom")
    assert got.username == "room@chatroom"
    assert got.display_name == "Room Remark"
    assert got.owner == "wxid_owner"
    assert got.owner_display_name == "Owner Nick"
    assert got.count == 2
    assert len(got.members) == 2
    assert got.members[0].username == "wxid_owner"
    assert got.members[0].is_owner is True
    assert got.members[1].display_name == "Member Remark"
    assert got.members[1].is_owner is False


def test_members_rejects_non_chatroom(tmp_path):
    with pytest.raises(ContactError, match="is not a chatroom username"):
        ContactService(tmp_path / "contact.db").members("wxid_a")


def test_members_without_member_table(tmp_path):
    db = make_db(tmp_path / "contact.db", BASIC_TABLE)
    got = ContactService(db).members("room@chatroom")
    assert got.display_name == "room@chatroom"
    assert got.members == []
    assert got.count == 0


def test_members_unknown_room(tmp_path):
    db = make_db(tmp_path / "contact.db", MEMBERS_SCRIPT)
    with pytest.raises(ContactError, match="chatroom not found"):
        ContactService(db).members("other@chatroom")


def test_filter_by_kind():
    contacts = [
        Contact(username="u1", kind=Kind.FRIEND),
        Contact(username="g1@chatroom", kind=Kind.CHATROOM),
        Contact(username="gh_x", kind=Kind.OTHER),
    ]
    got = filter_by_kind(contacts, Kind.CHATROOM)
    assert [c.username for c in got] == ["g1@chatroom"]
    assert len(filter_by_kind(contacts, Kind.ALL)) == 3
    assert len(filter_by_kind(contacts, "")) == 3


def test_apply_query_options_filters_sorts_and_paginates():
    contacts = [
        Contact(username="wxid_b", alias="bbb", remark="", nick_name="Beta", kind=Kind.FRIEND),
        Contact(username="wxid_a", alias="aaa", remark="Alice", nick_name="Zed", kind=Kind.FRIEND),
        Contact(username="200@chatroom", remark="Room", nick_name="Group", kind=Kind.CHATROOM),
        Contact(username="gh_x", nick_name="Official", kind=Kind.OTHER),
    ]
    got = apply_query_options(
        contacts, QueryOptions(kind=Kind.FRIEND, query="a", sort="name", limit=1)
    )
    assert len(got) == 1
    assert got[0].username == "wxid_a"

    got = apply_query_options(contacts, QueryOptions(username="200@chatroom"))
    assert len(got) == 1
    assert got[0].kind == Kind.CHATROOM

    got = apply_query_options(contacts, QueryOptions(sort="username", limit=2, offset=1))
    assert [c.username for c in got] == ["gh_x", "wxid_a"]


def test_apply_query_options_offset_beyond_end():
    contacts = [Contact(username="a"), Contact(username="b")]
    assert apply_query_options(contacts, QueryOptions(offset=5)) == []
    got = apply_query_options(contacts, QueryOptions(offset=-3, limit=-1))
    assert [c.username for c in got] == ["a", "b"]


@pytest.mark.parametrize(
    "username, local_type, expected",
    [
        ("wxid_a", 1, Kind.FRIEND),
        ("123@chatroom", 1, Kind.CHATROOM),
        ("123@chatroom", 2, Kind.CHATROOM),
        ("gh_x", 1, Kind.OTHER),
        ("wxid_room_member", 3, Kind.OTHER),
        ("corp_user", 5, Kind.OTHER),
    ],
)
def test_classify_kind(username, local_type, expected):
    assert classify_kind(username, local_type) == expected


def test_classify_kind_for_account_self():
    assert classify_kind_for_account("wxid_me", 1, 7, "wxid_me") == Kind.OTHER
    assert classify_kind_for_account("wxid_x", 1, 2, "") == Kind.OTHER
    assert classify_kind_for_account("wxid_x", 1, 3, "wxid_me") == Kind.FRIEND


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/c/wxid_self_abcd/contact/contact.db", "wxid_self"),
        ("/c/wxid_abcd/contact/contact.db", "wxid_abcd"),
        ("/c/someone/contact/contact.db", "someone"),
    ],
)
def test_owner_username_from_cache_path(path, expected):
    assert owner_username_from_cache_path(path) == expected


def test_display_name_order():
    assert display_name(Contact(username="u", alias="a", remark="r", nick_name="n")) == "r"
    assert display_name(Contact(username="u", alias="a", remark=" ", nick_name="n")) == "n"
    assert display_name(Contact(username="u", alias="a")) == "a"
    assert display_name(Contact(username="u")) == "u"