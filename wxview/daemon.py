"""Wire protocol of the cache daemon and a client for its Unix socket."""

from __future__ import annotations

import json
import socket
from dataclasses import dataclass
from enum import Enum

_DEFAULT_TIMEOUT = 2.0
_DEFAULT_FAILURE = "daemon request failed"


class Action(str, Enum):
    """Requests the daemon understands."""

    HEALTH = "health"
    REFRESH_CONTACTS = "refresh_contacts"
    REFRESH_SESSIONS = "refresh_sessions"
    REFRESH_MESSAGES = "refresh_messages"
    REFRESH_AVATARS = "refresh_avatars"
    REFRESH_FAVORITES = "refresh_favorites"
    REFRESH_SNS = "refresh_sns"
    STOP = "stop"


def _dump(data: dict) -> bytes:
    return (json.dumps(data, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


@dataclass(frozen=True)
class Request:
    """One request sent to the daemon."""

    action: str

    def to_json(self) -> dict:
        action = self.action.value if isinstance(self.action, Action) else self.action
        return {"action": action}

    def encode(self) -> bytes:
        """The request as one line of JSON."""
        return _dump(self.to_json())

    @classmethod
    def decode(cls, raw: bytes) -> Request:
        data = _load_object(raw)
        return cls(action=str(data.get("action") or ""))


@dataclass
class Response:
    """The daemon's answer to a request."""

    ok: bool
    message: str = ""

    def to_json(self) -> dict:
        data: dict = {"ok": self.ok}
        if self.message:
            data["message"] = self.message
        return data

    def encode(self) -> bytes:
        """The response as one line of JSON; an empty message is left out."""
        return _dump(self.to_json())

    @classmethod
    def decode(cls, raw: bytes) -> Response:
        data = _load_object(raw)
        return cls(ok=bool(data.get("ok", False)), message=str(data.get("message") or ""))


class DaemonError(Exception):
    """Raised when the daemon answers badly or reports a failure."""

    def __init__(self, message: str, response: Response | None = None) -> None:
        super().__init__(message)
        self.response = response


def _load_object(raw: bytes) -> dict:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DaemonError(f"decode daemon message: {exc}") from exc
    if not isinstance(data, dict):
        raise DaemonError("decode daemon message: expected a JSON object")
    return data


def _read_message(sock: socket.socket) -> bytes:
    data = b""
    while b"\n" not in data:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    line = data.split(b"\n", 1)[0]
    if not line.strip():
        raise DaemonError("daemon closed the connection without a response")
    return line


@dataclass
class DaemonClient:
    """Sends single requests to a daemon listening on a Unix socket."""

    socket_path: str
    timeout: float = 0.0

    def call(self, action: Action | str) -> Response:
        """Send one action and return the daemon's successful response."""
        timeout = self.timeout or _DEFAULT_TIMEOUT
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect(self.socket_path)
            sock.sendall(Request(action).encode())
            raw = _read_message(sock)
        response = Response.decode(raw)
        if not response.ok:
            if not response.message:
                response.message = _DEFAULT_FAILURE
            raise DaemonError(response.message, response)
        return response

    def healthy(self) -> bool:
        """True if a daemon answers a health check."""
        try:
            response = self.call(Action.HEALTH)
        except (DaemonError, OSError):
            return False
        return response.ok