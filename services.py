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

import base64
import binascii
import logging
import time
import requests
from typing import Optional, List, Dict, Any
from pydantic import BaseModel
from openai import AsyncOpenAI, AsyncAzureOpenAI

from api import ChatRequest, EmptyResponseError
from code_scope import scope_large_file, DEFAULT_MAX_FILE_LINES
from context import truncate_context

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_MAX_FILE_SIZE = 100000
DEFAULT_PER_PAGE = 100
DEFAULT_SYSTEM_PROMPT = (
    "You are an expert code reviewer. Review the provided code changes and give clear, actionable feedback."
)

FALLBACK_MESSAGES = {
    "NOT_FOUND": "Content not found",
    "RATE_LIMITED": "GitHub API rate limit exceeded. Please try again later.",
    "PERMISSION_DENIED": "Permission denied to access this resource.",
    "UNAVAILABLE": "Resource temporarily unavailable",
    "VALIDATION": "Invalid request parameters",
    "UNKNOWN": "Failed to retrieve content",
}


class GitHubError(Exception):
    def __init__(self, status: Optional[int], message: str):
        super().__init__(message)
        self.status = status


def is_rate_limit_error(error: Exception) -> bool:
    message = str(error).lower()
    return getattr(error, "status", None) == 429 or "rate limit" in message


def map_error_to_fallback(error: Exception, resource: str = "content") -> Dict[str, str]:
    """User-safe replacement text for a GitHub failure. The raw error stays in the logs."""
    status = getattr(error, "status", None)
    if status == 404:
        return {"fallback": f"{FALLBACK_MESSAGES['NOT_FOUND']}: {resource}", "category": "NOT_FOUND"}
    if is_rate_limit_error(error):
        return {"fallback": FALLBACK_MESSAGES["RATE_LIMITED"], "category": "RATE_LIMIT"}
    if status == 403:
        return {"fallback": FALLBACK_MESSAGES["PERMISSION_DENIED"], "category": "PERMISSION"}
    if status is not None and status >= 500:
        return {"fallback": FALLBACK_MESSAGES["UNAVAILABLE"], "category": "PROVIDER"}
    return {"fallback": FALLBACK_MESSAGES["UNKNOWN"], "category": "UNKNOWN"}


class FileFetchResult(BaseModel):
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None
    fallback: Optional[str] = None
    truncated: bool = False
    omitted: int = 0
    line_count: Optional[int] = None
    scoped: bool = False
    scope_strategy: Optional[str] = None
    scope_start_line: Optional[int] = None
    scope_end_line: Optional[int] = None
    scope_note: Optional[str] = None

    def to_window_relative(self, line: int) -> int:
        """Translates a file line number into the coordinates of the returned (single-window) content."""
        if not self.scoped or not self.scope_start_line:
            return line
        return line - self.scope_start_line + 1


class PrRefs(BaseModel):
    base_ref: str
    base_sha: str
    head_ref: str
    head_sha: str


class GitHubFetcher:
    def __init__(self, token: str, api_url: str = GITHUB_API_URL):
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.api_url = api_url.rstrip("/")

    def _request(self, method: str, path: str, params: Dict[str, Any] = None, json: Any = None,
                 max_retries: int = 3) -> requests.Response:
        """
        REST request with exponential backoff on gateway errors, rate limits
        and network failures. Raises GitHubError once retries are spent or on
        any other non-2xx status.
        """
        url = path if path.startswith("http") else f"{self.api_url}{path}"
        retryable_status_codes = [504, 502, 503, 429]  # Gateway timeout, bad gateway, service unavailable, rate limit

        for attempt in range(max_retries):
            try:
                response = requests.request(method, url, params=params, json=json, headers=self.headers, timeout=30)
            except requests.exceptions.Timeout:
                if attempt < max_retries - 1:
                    wait_time = (2 ** attempt) + (attempt * 0.5)
                    logger.warning(f"⚠️ GitHub request timeout (attempt {attempt + 1}/{max_retries}), retrying in {wait_time:.1f}s...")
                    time.sleep(wait_time)
                    continue
                raise GitHubError(None, f"GitHub request timed out after {max_retries} attempts: {method} {path}")
            except requests.exceptions.RequestException as e:
                if attempt < max_retries - 1:
                    wait_time = (2 ** attempt) + (attempt * 0.5)
                    logger.warning(f"⚠️ Network error (attempt {attempt + 1}/{max_retries}): {e}, retrying in {wait_time:.1f}s...")
                    time.sleep(wait_time)
                    continue
                raise GitHubError(None, f"Network error after {max_retries} attempts: {e}")

            if 200 <= response.status_code < 300:
                return response

            if response.status_code in retryable_status_codes and attempt < max_retries - 1:
                wait_time = (2 ** attempt) + (attempt * 0.5)  # Exponential backoff: 1s, 2.5s, 5s
                status_name = {
                    504: "Gateway Timeout",
                    502: "Bad Gateway",
                    503: "Service Unavailable",
                    429: "Rate Limit"
                }.get(response.status_code, f"HTTP {response.status_code}")
                logger.warning(f"⚠️ {status_name} (attempt {attempt + 1}/{max_retries}), retrying in {wait_time:.1f}s...")
                time.sleep(wait_time)
                continue

            error_msg = response.text[:200] if response.text else "No error message"
            raise GitHubError(response.status_code, f"GitHub API error {response.status_code} on {method} {path}: {error_msg}")

        raise GitHubError(None, f"GitHub request failed after {max_retries} attempts: {method} {path}")

    def _paginate(self, path: str, params: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        params = dict(params or {})
        params.setdefault("per_page", DEFAULT_PER_PAGE)
        items: List[Dict[str, Any]] = []
        url = path
        while url:
            response = self._request("GET", url, params=params)
            page = response.json()
            if isinstance(page, list):
                items.extend(page)
            url = response.links.get("next", {}).get("url")
            params = None  # the next link already carries the query
        return items

    # --- Pull requests ---

    def get_pull_request(self, owner: str, repo: str, pr_number: int) -> Dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}").json()

    def update_pull_request_body(self, owner: str, repo: str, pr_number: int, body: str) -> Dict[str, Any]:
        return self._request("PATCH", f"/repos/{owner}/{repo}/pulls/{pr_number}", json={"body": body}).json()

    def get_pr_diffs(self, owner: str, repo: str, pr_number: int) -> List[Dict[str, Any]]:
        """Changed files with their unified-diff patches"""
        logger.info(f"--- 🔍 Fetching Diffs for PR #{pr_number} ---")
        files = self._paginate(f"/repos/{owner}/{repo}/pulls/{pr_number}/files")
        result = []
        for file in files:
            result.append({
                "filename": file.get("filename", ""),
                "status": file.get("status", ""),  # added, removed, modified, renamed
                "additions": file.get("additions", 0),
                "deletions": file.get("deletions", 0),
                "changes": file.get("changes", 0),
                "patch": file.get("patch", ""),  # The actual diff content
                "previous_filename": file.get("previous_filename")
            })
        return result

    def get_pr_commits(self, owner: str, repo: str, pr_number: int, limit: int = 30) -> List[str]:
        response = self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}/commits",
                                 params={"per_page": limit})
        return [c.get("commit", {}).get("message", "") for c in response.json()]

    def resolve_pr_refs(self, owner: str, repo: str, pr_number: int) -> PrRefs:
        data = self.get_pull_request(owner, repo, pr_number)
        base = data.get("base") or {}
        head = data.get("head") or {}
        if not all([base.get("ref"), base.get("sha"), head.get("ref"), head.get("sha")]):
            raise GitHubError(None, "PR base/head refs not found in response")
        return PrRefs(base_ref=base["ref"], base_sha=base["sha"], head_ref=head["ref"], head_sha=head["sha"])

    def get_collaborator_permission(self, owner: str, repo: str, username: str) -> Optional[str]:
        """Permission string, or None when the user is not a collaborator (404)."""
        try:
            response = self._request("GET", f"/repos/{owner}/{repo}/collaborators/{username}/permission",
                                     max_retries=1)
        except GitHubError as e:
            if e.status == 404:
                return None
            raise
        return response.json().get("permission")

    # --- Comments ---

    def list_issue_comments(self, owner: str, repo: str, issue_number: int) -> List[Dict[str, Any]]:
        return self._paginate(f"/repos/{owner}/{repo}/issues/{issue_number}/comments")

    def create_issue_comment(self, owner: str, repo: str, issue_number: int, body: str) -> Dict[str, Any]:
        return self._request("POST", f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
                             json={"body": body}).json()

    def update_issue_comment(self, owner: str, repo: str, comment_id: int, body: str) -> Dict[str, Any]:
        return self._request("PATCH", f"/repos/{owner}/{repo}/issues/comments/{comment_id}",
                             json={"body": body}).json()

    def list_review_comments(self, owner: str, repo: str, pr_number: int) -> List[Dict[str, Any]]:
        return self._paginate(f"/repos/{owner}/{repo}/pulls/{pr_number}/comments")

    def create_review_comment_reply(self, owner: str, repo: str, pr_number: int, comment_id: int,
                                    body: str) -> Dict[str, Any]:
        return self._request("POST", f"/repos/{owner}/{repo}/pulls/{pr_number}/comments/{comment_id}/replies",
                             json={"body": body}).json()

    def update_review_comment(self, owner: str, repo: str, comment_id: int, body: str) -> Dict[str, Any]:
        return self._request("PATCH", f"/repos/{owner}/{repo}/pulls/comments/{comment_id}",
                             json={"body": body}).json()

    def add_reaction(self, owner: str, repo: str, comment_id: int, reaction: str,
                     review_comment: bool = False) -> Dict[str, Any]:
        kind = "pulls" if review_comment else "issues"
        return self._request("POST", f"/repos/{owner}/{repo}/{kind}/comments/{comment_id}/reactions",
                             json={"content": reaction}, max_retries=1).json()

    # --- File content ---

    def get_file_at(self, owner: str, repo: str, path: str, ref: str) -> Any:
        """Raw contents API response: a dict for files, a list for directories."""
        return self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref}).json()

    def fetch_file_at_ref(self, owner: str, repo: str, path: str, ref: str,
                          max_file_size: int = DEFAULT_MAX_FILE_SIZE,
                          max_file_lines: int = DEFAULT_MAX_FILE_LINES,
                          **scope_options) -> FileFetchResult:
        """
        Text of path at ref, scoped down when longer than max_file_lines and
        truncated to max_file_size characters. Directories, binaries and
        GitHub failures come back as success=False with a user-safe fallback.
        """
        if not path or not ref:
            return FileFetchResult(success=False, error="path and ref are required",
                                   fallback=FALLBACK_MESSAGES["VALIDATION"])

        try:
            data = self.get_file_at(owner, repo, path, ref)
        except GitHubError as e:
            mapped = map_error_to_fallback(e, path)
            logger.warning(f"⚠️ Failed to fetch file content ({e.status}) {path}@{ref[:8]}: {e}")
            return FileFetchResult(success=False, error=str(e), fallback=mapped["fallback"])

        if not data or isinstance(data, list):
            return FileFetchResult(success=False, error=f"Path {path} is a directory or not accessible",
                                   fallback=f"Content not available for {path}")

        if not data.get("content"):
            return FileFetchResult(success=False, error="File content not available (possibly binary)",
                                   fallback=f"Binary or non-text content for {path}")

        try:
            raw = base64.b64decode(data["content"])
            if b"\x00" in raw:
                raise UnicodeDecodeError("utf-8", raw, 0, 1, "NUL byte")
            decoded = raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return FileFetchResult(success=False, error="File content is not UTF-8 text",
                                   fallback=f"Binary or non-text content for {path}")

        scope = scope_large_file(decoded, max_file_lines=max_file_lines, **scope_options)
        truncated = truncate_context(scope.content, max_file_size)

        return FileFetchResult(
            success=True,
            data=truncated.content,
            truncated=truncated.truncated,
            omitted=truncated.omitted,
            line_count=scope.line_count,
            scoped=scope.scoped,
            scope_strategy=scope.scope_strategy,
            scope_start_line=scope.scope_start_line,
            scope_end_line=scope.scope_end_line,
            scope_note=scope.note,
        )

    def fetch_file_at_pr_head(self, owner: str, repo: str, path: str, pr_number: int,
                              head_sha: Optional[str] = None, **options) -> FileFetchResult:
        if not head_sha:
            if not pr_number:
                return FileFetchResult(success=False, error="pr_number is required",
                                       fallback="PR number is required")
            try:
                head_sha = self.resolve_pr_refs(owner, repo, pr_number).head_sha
            except GitHubError as e:
                mapped = map_error_to_fallback(e, f"PR #{pr_number} metadata")
                logger.warning(f"⚠️ Failed to resolve PR refs for #{pr_number}: {e}")
                return FileFetchResult(success=False, error=str(e), fallback=mapped["fallback"])
        return self.fetch_file_at_ref(owner, repo, path, head_sha, **options)


def _normalize_comment(comment: Dict[str, Any]) -> Dict[str, Any]:
    user = comment.get("user") or {}
    return {
        "id": comment.get("id"),
        "body": comment.get("body") or "",
        "author": user.get("login", ""),
        "author_type": user.get("type", ""),
        "created_at": comment.get("created_at", ""),
    }


class GitHubCommentStore:
    """
    Comment store over one repository. Issue comments by default; with
    review_comments=True it works on a PR's inline review comments, where
    replies are real threads.
    """

    def __init__(self, fetcher: GitHubFetcher, owner: str, repo: str, review_comments: bool = False):
        self.fetcher = fetcher
        self.owner = owner
        self.repo = repo
        self.review_comments = review_comments

    def list_comments(self, thread_id) -> List[Dict[str, Any]]:
        if self.review_comments:
            raw = self.fetcher.list_review_comments(self.owner, self.repo, thread_id)
        else:
            raw = self.fetcher.list_issue_comments(self.owner, self.repo, thread_id)
        return [_normalize_comment(c) for c in raw]

    def create_comment(self, thread_id, body: str, reply_to=None) -> Dict[str, Any]:
        if self.review_comments and reply_to:
            created = self.fetcher.create_review_comment_reply(self.owner, self.repo, thread_id, reply_to, body)
        else:
            # Issue comments have no threading; the reply lands at the end of the conversation
            created = self.fetcher.create_issue_comment(self.owner, self.repo, thread_id, body)
        return _normalize_comment(created)

    def update_comment(self, comment_id, body: str) -> Dict[str, Any]:
        if self.review_comments:
            updated = self.fetcher.update_review_comment(self.owner, self.repo, comment_id, body)
        else:
            updated = self.fetcher.update_issue_comment(self.owner, self.repo, comment_id, body)
        return _normalize_comment(updated)

    def add_reaction(self, comment_id, reaction: str) -> Dict[str, Any]:
        return self.fetcher.add_reaction(self.owner, self.repo, comment_id, reaction,
                                         review_comment=self.review_comments)


class AIReviewer:
    """Chat-completion backend. Retries are owned by api.ApiClient, so the SDK's own retries are off."""

    def __init__(self, api_key: str, base_url: str = None, api_version: str = None, is_azure: bool = False,
                 model: str = "glm-4.7", system_prompt: str = DEFAULT_SYSTEM_PROMPT, client=None):
        self.model_name = model
        self.system_prompt = system_prompt
        if client is not None:
            self.client = client
        elif is_azure:
            self.client = AsyncAzureOpenAI(
                api_key=api_key,
                azure_endpoint=base_url,
                api_version=api_version or "2024-08-01-preview",
                max_retries=0,
            )
        else:
            self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def complete(self, request: ChatRequest, timeout_ms: int) -> str:
        options: Dict[str, Any] = {"timeout": timeout_ms / 1000, "max_retries": 0}
        if request.api_key:
            options["api_key"] = request.api_key
        client = self.client.with_options(**options)

        completion = await client.chat.completions.create(
            model=request.model or self.model_name,
            messages=[
                {"role": "system", "content": request.system_prompt or self.system_prompt},
                {"role": "user", "content": request.prompt},
            ],
        )

        content = None
        if completion.choices:
            content = completion.choices[0].message.content
        if not content or not content.strip():
            raise EmptyResponseError("Chat completion endpoint returned an empty response")
        return content.strip()
