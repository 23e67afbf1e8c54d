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

from typing import Any, Dict, Optional
from pydantic import BaseModel

PULL_REQUEST = "pull_request"
ISSUE_COMMENT_PR = "issue_comment_pr"
ISSUE_COMMENT_NON_PR = "issue_comment_non_pr"
REVIEW_COMMENT = "pull_request_review_comment"
UNSUPPORTED = "unsupported"

REVIEWABLE_ACTIONS = {"opened", "synchronize", "reopened", "ready_for_review"}
COMMENT_ACTIONS = {"created"}


class EventInfo(BaseModel):
    event_type: str
    event_name: str
    should_process: bool
    reason: str
    pull_number: Optional[int] = None
    comment_id: Optional[int] = None
    comment_author: Optional[str] = None
    is_bot: bool = False


def get_event_type(event_name: str, payload: Dict[str, Any]) -> str:
    if event_name == "pull_request":
        return PULL_REQUEST
    if event_name == "issue_comment":
        issue = payload.get("issue") or {}
        return ISSUE_COMMENT_PR if issue.get("pull_request") else ISSUE_COMMENT_NON_PR
    if event_name == "pull_request_review_comment":
        return REVIEW_COMMENT
    return UNSUPPORTED


def is_bot_comment(comment: Optional[Dict[str, Any]]) -> bool:
    """Anti-loop check: GitHub App and Actions accounts are typed Bot or end in [bot]."""
    if not comment or not comment.get("user"):
        return False
    user = comment["user"]
    return user.get("type") == "Bot" or (user.get("login") or "").lower().endswith("[bot]")


def should_process_event(event_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    event_type = get_event_type(event_name, payload)
    action = payload.get("action")

    if event_type == PULL_REQUEST:
        if action and action not in REVIEWABLE_ACTIONS:
            return {"process": False, "reason": f"pull_request action '{action}' - not reviewed"}
        if (payload.get("pull_request") or {}).get("draft") and action != "ready_for_review":
            return {"process": False, "reason": "draft pull request - skipping"}
        return {"process": True, "reason": "pull_request event"}

    if event_type in (ISSUE_COMMENT_PR, REVIEW_COMMENT):
        if action and action not in COMMENT_ACTIONS:
            return {"process": False, "reason": f"comment action '{action}' - ignored"}
        if is_bot_comment(payload.get("comment")):
            return {"process": False, "reason": "bot comment - skipping to prevent loop"}
        return {"process": True, "reason": "comment on pull request"}

    if event_type == ISSUE_COMMENT_NON_PR:
        return {"process": False, "reason": "non-PR issue comment - not supported"}

    return {"process": False, "reason": f"unknown event type: {event_name}"}


def get_event_info(event_name: str, payload: Dict[str, Any]) -> EventInfo:
    decision = should_process_event(event_name, payload)
    info = EventInfo(
        event_type=get_event_type(event_name, payload),
        event_name=event_name,
        should_process=decision["process"],
        reason=decision["reason"],
    )

    pull_request = payload.get("pull_request") or {}
    issue = payload.get("issue") or {}
    info.pull_number = pull_request.get("number") or issue.get("number")

    comment = payload.get("comment")
    if comment:
        info.comment_id = comment.get("id")
        info.comment_author = (comment.get("user") or {}).get("login")
        info.is_bot = is_bot_comment(comment)
    return info
