"""Decryption of SQLCipher 4 databases that are encrypted with a raw page key."""

from __future__ import annotations

import contextlib
import hashlib
import hmac
import os
import sqlite3
import struct
import tempfile
from pathlib import Path

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

PAGE_SIZE = 4096
KEY_SIZE = 32
SALT_SIZE = 16
IV_SIZE = 16
HMAC_SIZE = 64
RESERVE_SIZE = IV_SIZE + HMAC_SIZE
SQLITE_HEADER = b"SQLite format 3\x00"

_HMAC_DATA_END = PAGE_SIZE - RESERVE_SIZE + IV_SIZE
_ZERO_PAGE = bytes(PAGE_SIZE)


class DecryptError(Exception):
    """Raised when a database cannot be decrypted."""


class IncorrectKeyError(DecryptError):
    """The key does not match the database."""

    def __init__(self, message: str = "incorrect sqlcipher key") -> None:
        super().__init__(message)


class AlreadyPlainDatabaseError(DecryptError):
    """The file is already a plaintext SQLite database."""

    def __init__(self, message: str = "database is already plaintext sqlite") -> None:
        super().__init__(message)


class InvalidDatabaseError(DecryptError):
    """The file is not a usable encrypted database."""


def _is_plain(page: bytes) -> bool:
    return page[: len(SQLITE_HEADER)] == SQLITE_HEADER


def derive_raw_mac_key(enc_key: bytes, salt: bytes) -> bytes:
    """Derive the page HMAC key from the raw encryption key and the file salt."""
    mac_salt = bytes(b ^ 0x3A for b in salt)
    return hashlib.pbkdf2_hmac("sha512", bytes(enc_key), mac_salt, 2, KEY_SIZE)


def page_hmac(page: bytes, page_num: int, mac_key: bytes) -> bytes:
    """Compute the HMAC-SHA512 that authenticates one page."""
    offset = SALT_SIZE if page_num == 1 else 0
    mac = hmac.new(mac_key, page[offset:_HMAC_DATA_END], hashlib.sha512)
    mac.update(struct.pack("<I", page_num & 0xFFFFFFFF))
    return mac.digest()


def _page_hmac_valid(page: bytes, page_num: int, mac_key: bytes) -> bool:
    if len(page) < PAGE_SIZE:
        return False
    stored = page[_HMAC_DATA_END : _HMAC_DATA_END + HMAC_SIZE]
    return hmac.compare_digest(page_hmac(page, page_num, mac_key), stored)


def validate_raw_key(page1: bytes, key: bytes) -> bool:
    """Check a raw 32-byte key against the HMAC of page 1."""
    if len(page1) < PAGE_SIZE or len(key) != KEY_SIZE:
        return False
    if _is_plain(page1):
        return False
    mac_key = derive_raw_mac_key(key, page1[:SALT_SIZE])
    return _page_hmac_valid(page1, 1, mac_key)


def validate_raw_hex_key(page1: bytes, hex_key: str) -> bool:
    """Like validate_raw_key, with the key given as hex text."""
    try:
        key = bytes.fromhex(hex_key)
    except ValueError:
        return False
    return validate_raw_key(page1, key)


def read_page1(path: str | os.PathLike[str]) -> tuple[bytes, bytes]:
    """Return the first page of an encrypted database and its salt."""
    with open(path, "rb") as handle:
        page1 = handle.read(PAGE_SIZE)
    if len(page1) < PAGE_SIZE:
        raise InvalidDatabaseError("invalid database: file is smaller than one page")
    if _is_plain(page1):
        raise AlreadyPlainDatabaseError()
    return page1, page1[:SALT_SIZE]


def salt_hex(page1: bytes) -> str:
    """Hex text of the salt at the start of page 1, or '' if the page is too short."""
    if len(page1) < SALT_SIZE:
        return ""
    return page1[:SALT_SIZE].hex()


def _decode_key(hex_key: str) -> bytes:
    try:
        key = bytes.fromhex(hex_key)
    except ValueError as exc:
        raise DecryptError(f"decode key: {exc}") from exc
    if len(key) != KEY_SIZE:
        raise DecryptError(f"decode key: expected {KEY_SIZE} bytes, got {len(key)}")
    return key


def _decrypt_page(page: bytes, page_num: int, enc_key: bytes, mac_key: bytes) -> bytes:
    if not _page_hmac_valid(page, page_num, mac_key):
        raise DecryptError(f"page {page_num} hmac verification failed")
    offset = SALT_SIZE if page_num == 1 else 0
    iv = page[PAGE_SIZE - RESERVE_SIZE : PAGE_SIZE - RESERVE_SIZE + IV_SIZE]
    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
    plain = decryptor.update(page[offset : PAGE_SIZE - RESERVE_SIZE]) + decryptor.finalize()
    prefix = SQLITE_HEADER if page_num == 1 else b""
    return prefix + plain + bytes(RESERVE_SIZE)


def decrypt_file(
    src: str | os.PathLike[str], dst: str | os.PathLike[str], hex_key: str
) -> None:
    """Decrypt an encrypted database page by page into dst."""
    key = _decode_key(hex_key)
    if os.stat(src).st_size < PAGE_SIZE:
        raise InvalidDatabaseError("invalid database: file is smaller than one page")

    with open(src, "rb") as source:
        page1 = source.read(PAGE_SIZE)
        if _is_plain(page1):
            raise AlreadyPlainDatabaseError()
        if not validate_raw_key(page1, key):
            raise IncorrectKeyError()
        source.seek(0)

        parent = os.path.dirname(os.fspath(dst)) or "."
        os.makedirs(parent, mode=0o700, exist_ok=True)
        mac_key = derive_raw_mac_key(key, page1[:SALT_SIZE])
        with open(dst, "wb") as out:
            page_num = 0
            while chunk := source.read(PAGE_SIZE):
                page_num += 1
                page = chunk.ljust(PAGE_SIZE, b"\x00")
                if page == _ZERO_PAGE:
                    out.write(page)
                    continue
                out.write(_decrypt_page(page, page_num, key, mac_key))


def _immutable_uri(db_path: str | os.PathLike[str]) -> str:
    return Path(db_path).resolve().as_uri() + "?mode=ro&immutable=1"


def validate_sqlite(db_path: str | os.PathLike[str]) -> int:
    """Open a database read-only and return its schema version."""
    try:
        with contextlib.closing(sqlite3.connect(_immutable_uri(db_path), uri=True)) as conn:
            row = conn.execute("PRAGMA schema_version;").fetchone()
    except sqlite3.Error as exc:
        raise DecryptError(str(exc)) from exc
    return int(row[0]) if row else 0


def decrypt_to_cache(
    src: str | os.PathLike[str], dst: str | os.PathLike[str], hex_key: str
) -> None:
    """Decrypt into a temporary file, validate it, then atomically replace dst.

    A failed decryption never overwrites an existing cache file.
    """
    dst = os.fspath(dst)
    parent = os.path.dirname(dst) or "."
    os.makedirs(parent, mode=0o700, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix=os.path.basename(dst) + ".", suffix=".tmp", dir=parent
    )
    os.close(fd)
    try:
        decrypt_file(src, tmp_path, hex_key)
        try:
            validate_sqlite(tmp_path)
        except DecryptError as exc:
            raise DecryptError(f"validate decrypted sqlite: {exc}") from exc
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, dst)
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(tmp_path)