# Copyright (C) 2025 Fabian Valle-simmons
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Conversation continuity without a database: a small versioned JSON record,
base64url-encoded into an HTML comment at the end of the bot's own comment.
"""

import json
import base64
import binascii
import logging
from typing import Any, Dict, Optional

from comments import find_comment_by_marker, upsert_comment, UpsertResult

logger = logging.getLogger(__name__)

CONTINUITY_MARKER = "<!-- zai-continuity:"
CONTINUITY_MARKER_END = " -->"
STATE_VERSION = 1
MAX_STATE_SIZE = 2048


class StateTooLargeError(ValueError):
    """Serialized state exceeds MAX_STATE_SIZE; nothing was encoded."""


def encode_state(state: Dict[str, Any]) -> str:
    """
    Stamps the current schema version and returns a URL-safe, unpadded
    base64 token. Raises StateTooLargeError above MAX_STATE_SIZE bytes.
    """
    stamped = {"v": STATE_VERSION}
    stamped.update({k: v for k, v in (state or {}).items() if k != "v"})

    raw = json.dumps(stamped, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(raw) > MAX_STATE_SIZE:
        raise StateTooLargeError(f"State size {len(raw)} bytes exceeds limit of {MAX_STATE_SIZE} bytes")

    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    if "-" in token or "_" in token:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded, validate=True)


def decode_state(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Tolerant decode: anything missing, malformed or corrupted means "no state" (None)."""
    if not token or not isinstance(token, str):
        return None

    try:
        parsed = json.loads(_b64decode(token.strip()).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        logger.debug("🔍 Ignoring unreadable continuity state")
        return None

    if not isinstance(parsed, dict):
        return None

    version = parsed.get("v")
    if isinstance(version, int) and version > STATE_VERSION:
        logger.warning(f"⚠️ State version {version} is newer than supported {STATE_VERSION}, using what can be read")
    return parsed


def merge_state(current: Optional[Dict[str, Any]], updates: Dict[str, Any]) -> Dict[str, Any]:
    if not current:
        return updates
    merged = dict(current)
    merged.update(updates)
    return merged


def extract_state_from_comment(body: Optional[str]) -> Optional[Dict[str, Any]]:
    if not body or not isinstance(body, str):
        return None

    start = body.find(CONTINUITY_MARKER)
    if start == -1:
        return None
    content_start = start + len(CONTINUITY_MARKER)
    end = body.find(CONTINUITY_MARKER_END, content_start)
    if end == -1:
        return None
    return decode_state(body[content_start:end].strip())


def strip_state(body: str) -> str:
    """Removes an embedded state block, leaving the visible content."""
    start = body.find(CONTINUITY_MARKER)
    if start == -1:
        return body
    end = body.find(CONTINUITY_MARKER_END, start + len(CONTINUITY_MARKER))
    if end == -1:
        return body
    return (body[:start].rstrip() + "\n" + body[end + len(CONTINUITY_MARKER_END):].lstrip()).strip()


def create_comment_with_state(content: str, state: Optional[Dict[str, Any]]) -> str:
    """Appends the encoded state; an oversized state is dropped and the content posted without it."""
    if not state:
        return content
    try:
        token = encode_state(state)
    except StateTooLargeError as e:
        logger.warning(f"⚠️ Continuity state not attached: {e}")
        return content
    return f"{content}\n\n{CONTINUITY_MARKER} {token}{CONTINUITY_MARKER_END}"


def load_continuity_state(store, thread_id) -> Optional[Dict[str, Any]]:
    """Reads state from the most recent comment carrying the continuity marker. Failures mean no state."""
    try:
        comment = find_comment_by_marker(store, thread_id, CONTINUITY_MARKER)
    except Exception as e:
        logger.warning(f"⚠️ Failed to load continuity state: {e}")
        return None
    if not comment:
        return None
    return extract_state_from_comment(comment.get("body"))


def save_continuity_state(store, thread_id, state: Dict[str, Any], content: str = "",
                          reply_to=None) -> UpsertResult:
    """
    Rewrites the state-carrying comment in place, keeping its visible content
    unless new content is given. Creating a fresh comment requires content.
    """
    existing = find_comment_by_marker(store, thread_id, CONTINUITY_MARKER)
    if existing:
        visible = content or strip_state(existing.get("body") or "")
        body = create_comment_with_state(visible, state)
        updated = store.update_comment(existing["id"], body)
        return UpsertResult(action="updated", comment=updated)

    if not content:
        raise ValueError("Cannot create comment without content")
    return upsert_comment(store, thread_id, create_comment_with_state(content, state),
                          CONTINUITY_MARKER, reply_to=reply_to, update_existing=False)
