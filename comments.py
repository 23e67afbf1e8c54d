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
Marker-based comment upsert.

A store is anything with list_comments(thread_id), create_comment(thread_id,
body, reply_to=None) and update_comment(comment_id, body), each comment a dict
with at least "id" and "body".

Find-then-write is not transactional. Two runs racing on the same marker can
both miss the existing comment or both update it; the later write wins. The
comment API offers no lock, so this is accepted rather than papered over.
"""

import logging
from typing import Any, Dict, Optional
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Reactions:
    EYES = "eyes"
    ROCKET = "rocket"
    CONFUSED = "confused"


class UpsertResult(BaseModel):
    action: str
    comment: Dict[str, Any]


def is_bot_authored(comment: Dict[str, Any]) -> bool:
    author = (comment.get("author") or "").lower()
    return comment.get("author_type") == "Bot" or author.endswith("[bot]")


def find_comment_by_marker(store, thread_id, marker: str) -> Optional[Dict[str, Any]]:
    """
    Most recent comment in the thread whose body contains marker, or None.
    Comments written by bot accounts win over a marker a person pasted by hand;
    any author matches only when no bot-authored comment carries the marker.
    """
    matches = [c for c in store.list_comments(thread_id) or [] if marker in (c.get("body") or "")]
    if not matches:
        return None
    own = [c for c in matches if is_bot_authored(c)]
    return (own or matches)[-1]


def upsert_comment(store, thread_id, body: str, marker: str,
                   reply_to=None, update_existing: bool = True) -> UpsertResult:
    """
    Updates the comment carrying marker in place, or creates it (as a threaded
    reply when reply_to is given). With update_existing=False no lookup is made
    and a new comment is always created, so the caller owns uniqueness.
    """
    if marker not in body:
        body = f"{body}\n\n{marker}"

    existing = find_comment_by_marker(store, thread_id, marker) if update_existing else None

    if existing:
        try:
            updated = store.update_comment(existing["id"], body)
        except Exception as e:
            # Someone else's comment (403) or one deleted since the listing (404)
            if getattr(e, "status", None) not in (403, 404):
                raise
            logger.warning(f"⚠️ Cannot edit comment {existing['id']} ({e.status}), posting a new one for marker {marker}")
        else:
            logger.info(f"✏️ Updated comment {existing['id']} for marker {marker}")
            return UpsertResult(action="updated", comment=updated)

    created = store.create_comment(thread_id, body, reply_to=reply_to)
    logger.info(f"💬 Created comment {created.get('id')} for marker {marker}"
                + (f" (reply to {reply_to})" if reply_to else ""))
    return UpsertResult(action="created", comment=created)


def marker_for(name: str, scope: Any = None) -> str:
    """Builds an HTML-comment marker, optionally scoped (e.g. to the triggering comment id)."""
    if scope is None:
        return f"<!-- {name} -->"
    return f"<!-- {name}:{scope} -->"


def set_reaction(store, comment_id, reaction: str) -> bool:
    """Best-effort reaction; a missing comment or unsupported store is not an error."""
    if not comment_id or not hasattr(store, "add_reaction"):
        return False
    try:
        store.add_reaction(comment_id, reaction)
        return True
    except Exception as e:
        status = getattr(e, "status", None)
        if status == 404:
            logger.warning(f"⚠️ Cannot react to comment {comment_id}: not found")
            return False
        raise
