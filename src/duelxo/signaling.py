"""Manual offer/answer exchange: session ids, copyable session codes and join links.

A session code is ``"<id>:<base64>"`` where the base64 payload is the
zlib-compressed JSON ``{"type": "offer"|"answer", "sdp": "..."}``. There is no
signaling server; users copy these strings between each other.
"""

from __future__ import annotations

import base64
import binascii
import json
import secrets
import zlib
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

# Unambiguous characters only (no 0/O, 1/I/L).
SESSION_ID_CHARS = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
SESSION_ID_LENGTH = 6

SESSION_CODE_SEPARATOR = ":"
URL_HASH_PREFIX = "join="
ROLES = ("offer", "answer")


@dataclass(frozen=True)
class SessionCode:
    """A decoded session code."""

    id: str
    sdp: str
    role: str  # "offer" or "answer"


def generate_session_id() -> str:
    return "".join(secrets.choice(SESSION_ID_CHARS) for _ in range(SESSION_ID_LENGTH))


def is_valid_session_id(value: str) -> bool:
    return len(value) == SESSION_ID_LENGTH and all(c in SESSION_ID_CHARS for c in value)


def encode_session_code(session_id: str, sdp: str, role: str) -> str:
    """Bind a session id to a connection description for copy-paste sharing."""
    if not is_valid_session_id(session_id):
        raise ValueError(f"Invalid session id {session_id!r}")
    if role not in ROLES:
        raise ValueError(f"Unknown description role {role!r}")
    payload = json.dumps({"type": role, "sdp": sdp}, separators=(",", ":"))
    blob = base64.b64encode(zlib.compress(payload.encode("utf-8"), 9))
    return f"{session_id}{SESSION_CODE_SEPARATOR}{blob.decode('ascii')}"


def decode_session_code(code: str) -> Optional[SessionCode]:
    """Decode a pasted session code, or return ``None`` if it is malformed."""
    if not isinstance(code, str):
        return None
    session_id, sep, blob = code.strip().partition(SESSION_CODE_SEPARATOR)
    if not sep or not is_valid_session_id(session_id):
        return None

    try:
        raw = base64.b64decode("".join(blob.split()), validate=True)
    except (binascii.Error, ValueError):
        return None
    if not raw:
        return None

    try:
        text = zlib.decompress(raw)
    except zlib.error:
        # Uncompressed payloads are accepted as-is.
        text = raw

    try:
        parsed = json.loads(text)
    except (UnicodeDecodeError, ValueError):
        return None

    if not isinstance(parsed, dict):
        return None
    role = parsed.get("type")
    sdp = parsed.get("sdp")
    if role not in ROLES or not isinstance(sdp, str):
        return None
    return SessionCode(id=session_id, sdp=sdp, role=role)


# ---------- Shareable links ----------


def get_session_from_url(url: str) -> Optional[str]:
    """Return the session code carried in a ``#join=<code>`` fragment, if any."""
    fragment = urlsplit(url).fragment
    if not fragment.startswith(URL_HASH_PREFIX):
        return None
    code = fragment[len(URL_HASH_PREFIX):]
    return code or None


def set_session_in_url(url: str, code: str) -> str:
    parts = urlsplit(url)
    return urlunsplit(parts._replace(fragment=f"{URL_HASH_PREFIX}{code}"))


def clear_session_from_url(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit(parts._replace(fragment=""))


def build_join_url(base_url: str, code: str) -> str:
    return set_session_in_url(f"{base_url.rstrip('/')}/", code)
