# wxview

`wxview` reads the local databases of a WeChat 4.x desktop installation
and leaves them unchanged. It decrypts SQLCipher-protected database files
into plain SQLite caches and keeps a store of page keys. On top of those
caches it offers query services for contacts, chat rooms and favorites.

## Modules

- **`wxview.sqlcipher`**
  - `validate_raw_key` and `validate_raw_hex_key` check a raw 32-byte page key against the HMAC of page 1.
  - `read_page1` returns the first page and its salt. `salt_hex` gives the salt as hex text.
  - `decrypt_file` decrypts a whole database page by page.
  - `decrypt_to_cache` decrypts into a temporary file and opens that file read-only with Python's `sqlite3` module (`validate_sqlite`). Only after that does it replace the target. A failed decryption leaves the previous cache as it was.
  - Errors all derive from `DecryptError`:
    - a bad key raises `IncorrectKeyError`;
    - an unencrypted file raises `AlreadyPlainDatabaseError`;
    - a file shorter than one page raises `InvalidDatabaseError`.
- **`wxview.keystore`**
  - A `keys.json` store of `Entry` records, grouped by the database's relative path. Use `load_store`, `save_store` and `compact_store_file`.
  - `Store.find` looks up an entry by data directory, relative path and salt. The salt comparison ignores case.
  - `Store.upsert` inserts or replaces an entry and stamps its `fingerprint` and update time.
  - Files are written atomically with mode `0600`.
- **`wxview.discover`**
  - `Discovery` finds an account's contact database, its `message_N` / `biz_message_N` / `media_N` shards, the auxiliary message databases, and the session, favorite, moments (`sns`) and head-image databases.
  - When several accounts exist, it prefers the one whose files a running WeChat process has open (found with `pgrep` and `lsof`). Otherwise it picks the newest contact database.
  - Without an explicit `root`, discovery uses the macOS WeChat container. On other systems it raises `DiscoveryError`.
- **`wxview.cachemeta`**
  - Records the size, nanosecond modification time and salt of each source database in a metadata file.
  - `is_cache_fresh` tells whether a decrypted cache still matches its source.
- **`wxview.contacts`**
  - `ContactService` reads a decrypted contact cache:
    - `list_contacts` returns every contact;
    - `detail` returns one contact;
    - `members` returns a chat room's members, owner first.
  - `classify_kind`, `filter_by_kind`, `apply_query_options` and `display_name` classify, filter, sort and page the results.
- **`wxview.favorite_content`** and **`wxview.favorites`**
  - Parse favorite XML into summaries, readable text, detail maps and `ContentItem` records.
  - `FavoriteService.list_items` queries a favorites cache by type, text, limit and offset.
  - When `FavoriteService` is given the account's `db_storage` directory, it also looks for the local files and media that favorites refer to.
- **`wxview.daemon`**
  - `DaemonClient` sends one-line JSON requests (`Action`) to a refresh daemon listening on a Unix socket.
  - A failure reported by the daemon raises `DaemonError`.
- **`wxview.watch`**
  - Polling watchers `watch_file` and `watch_files` run until a `threading.Event` is set.
  - Their callbacks go through a `Debouncer`.
- **`wxview.diagnose`**
  - `build_permission_hint` turns `codesign -dv` output into advice about process-memory permissions.
  - `wechat_permission_hint` runs `codesign` on macOS.

## Examples

Decrypt a database with a key kept in the key store:

```python
from wxview.keystore import load_store
from wxview.sqlcipher import decrypt_to_cache, read_page1, validate_raw_hex_key

page1, salt = read_page1("db_storage/contact/contact.db")
store = load_store("keys.json")
entry = store.find("db_storage", "contact/contact.db", salt.hex())
if entry is not None and validate_raw_hex_key(page1, entry.key):
    decrypt_to_cache("db_storage/contact/contact.db", "cache/contact/contact.db", entry.key)
```

Query contacts from a decrypted cache:

```python
from wxview.contacts import ContactService, QueryOptions, apply_query_options

service = ContactService("cache/wxid_example/contact/contact.db")
friends = apply_query_options(
    service.list_contacts(),
    QueryOptions(kind="friend", query="ali", sort="name", limit=20),
)
for contact in friends:
    print(contact.username, contact.remark or contact.nick_name)

group = service.members("12345@chatroom")
print(group.display_name, group.owner_display_name, group.count)
```

List favorites:

```python
from wxview.favorites import FavoriteService, QueryOptions

service = FavoriteService("cache/wxid_example/favorite/favorite.db")
for item in service.list_items(QueryOptions(type="article", limit=10)):
    print(item.time, item.summary, item.url)
```

## What it does not do

- It does not obtain keys. Nothing here reads WeChat's process memory. Keys must already be in the key store, or be supplied some other way.
- It has no daemon server. `DaemonClient` only talks to one that is already running.
- No single step ties discovery, keys, decryption and cache metadata together. You call these pieces yourself.
- It has no command-line program.

## Running the tests

Install the `test` extra and run `pytest` from the project root.