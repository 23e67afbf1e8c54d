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
Collaborator-only access to /zai commands. On fork PRs the PR author and the
repository owner may also run commands; anyone else is blocked silently
(authorized=False with reason=None means "do not reply at all").
"""

import logging
from typing import Any, Dict, Optional
from pydantic import BaseModel

logger = logging.getLogger(__name__)

AUTHORIZED_PERMISSIONS = {"admin", "maintain", "write", "read"}
UNAUTHORIZED_MESSAGE = "You are not authorized to use this command."
AUTH_FAILED_MESSAGE = "Authorization check failed. Please try again later."


class AuthResult(BaseModel):
    authorized: bool
    reason: Optional[str] = None


def is_collaborator(fetcher, owner: str, repo: str, username: str) -> bool:
    permission = fetcher.get_collaborator_permission(owner, repo, username)
    return permission in AUTHORIZED_PERMISSIONS


def check_authorization(fetcher, owner: str, repo: str, commenter: Optional[str]) -> AuthResult:
    if not commenter:
        return AuthResult(authorized=False, reason="Unable to identify commenter")

    try:
        if is_collaborator(fetcher, owner, repo, commenter):
            return AuthResult(authorized=True)
    except Exception as e:
        # Deny on lookup failure; the details stay in the log
        logger.warning(f"⚠️ Permission lookup failed for {commenter}: {e}")
        return AuthResult(authorized=False, reason=AUTH_FAILED_MESSAGE)

    return AuthResult(authorized=False, reason=UNAUTHORIZED_MESSAGE)


def is_fork_pull_request(pull_request: Optional[Dict[str, Any]]) -> bool:
    repo = ((pull_request or {}).get("head") or {}).get("repo") or {}
    return repo.get("fork") is True


def get_pull_request_for_authorization(fetcher, owner: str, repo: str,
                                       payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if payload.get("pull_request"):
        return payload["pull_request"]
    issue = payload.get("issue") or {}
    if not issue.get("pull_request") or not issue.get("number"):
        return None
    # issue_comment payloads only carry a link to the PR, not its head repo
    return fetcher.get_pull_request(owner, repo, issue["number"])


def check_fork_authorization(fetcher, owner: str, repo: str, payload: Dict[str, Any],
                             commenter: Optional[str]) -> AuthResult:
    try:
        pull_request = get_pull_request_for_authorization(fetcher, owner, repo, payload)
    except Exception as e:
        logger.warning(f"⚠️ Could not load PR for fork check, using standard authorization: {e}")
        return check_authorization(fetcher, owner, repo, commenter)

    if not is_fork_pull_request(pull_request):
        return check_authorization(fetcher, owner, repo, commenter)

    if not commenter:
        return AuthResult(authorized=False, reason=None)

    pr_author = ((pull_request or {}).get("user") or {}).get("login")
    if pr_author and commenter == pr_author:
        return AuthResult(authorized=True, reason="pr_author")

    if commenter == owner:
        return AuthResult(authorized=True, reason="repo_owner")

    result = check_authorization(fetcher, owner, repo, commenter)
    if result.authorized:
        return AuthResult(authorized=True, reason="collaborator")

    logger.info(f"🔒 Silently blocking {commenter} on fork PR")
    return AuthResult(authorized=False, reason=None)
