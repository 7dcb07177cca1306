"""Wire protocol: JSON text frames ``{kind, payload, id?}``.

A request of kind K succeeds as ``K_result``; any correlated failure
is an ``error`` message carrying ``{message, originalKind}``. When the
request carried an ``id``, every reply echoes it.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from rdev.engine.errors import ProtocolError

# Client → server
AUTH = "auth"
CLONE_REPO = "clone_repo"
GET_COMMITS = "get_commits"
GET_DIFF = "get_diff"
EXECUTE_COMMAND = "execute_command"
COMMIT_CHANGES = "commit_changes"
ROLLBACK = "rollback"
CANCEL = "cancel"
START_SESSION = "start_session"

# Server → client
WELCOME = "welcome"
AUTH_SUCCESS = "auth_success"
AUTH_FAILED = "auth_failed"
PROGRESS = "progress"
ERROR = "error"

RESULT_SUFFIX = "_result"
WILDCARD = "*"


def result_kind(kind: str) -> str:
    return kind + RESULT_SUFFIX


@dataclass
class Message:
    """One protocol frame."""
    kind: str
    payload: Any = None
    id: str | int | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind, "payload": self.payload}
        if self.id is not None:
            d["id"] = self.id
        return d

    def encode(self) -> str:
        return json.dumps(self.to_dict())

    def reply(self, kind: str, payload: Any = None) -> Message:
        """Build a reply that carries this message's id."""
        return Message(kind=kind, payload=payload, id=self.id)

    def result(self, payload: Any) -> Message:
        return self.reply(result_kind(self.kind), payload)

    def error(self, message: str) -> Message:
        return self.reply(ERROR, error_payload(message, self.kind))


def error_payload(message: str, original_kind: str | None) -> dict[str, Any]:
    return {"message": message, "originalKind": original_kind}


def decode(raw: str | bytes) -> Message:
    """Parse one text frame into a Message.

    Raises ProtocolError for anything that is not a JSON object with a
    string ``kind`` and an object (or absent) ``payload``.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Invalid message format: not UTF-8 text") from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Invalid message format: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError("Invalid message format: expected a JSON object")

    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise ProtocolError("Invalid message format: 'kind' must be a non-empty string")

    payload = data.get("payload")
    if payload is None:
        payload = {}
    elif not isinstance(payload, dict):
        raise ProtocolError("Invalid message format: 'payload' must be an object")

    msg_id = data.get("id")
    if msg_id is not None and (isinstance(msg_id, bool) or not isinstance(msg_id, (str, int))):
        raise ProtocolError("Invalid message format: 'id' must be a string or integer")

    return Message(kind=kind, payload=payload, id=msg_id)


def decode_reply(raw: str | bytes) -> Message:
    """Parse a server frame on the client side.

    Server payloads may be any JSON value (a diff is a string, commit
    history a list), so only ``kind`` is checked.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Invalid message format: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("kind"), str):
        raise ProtocolError("Invalid message format: missing 'kind'")
    return Message(kind=data["kind"], payload=data.get("payload"), id=data.get("id"))
