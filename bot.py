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
One webhook delivery, start to finish: classify the event, then either run the
automatic review (pull_request) or parse, authorize and dispatch a /zai
command (comments). Every run is independent; all state lives in comments.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from pydantic import BaseModel

from api import ApiClient, get_user_message, ErrorCategory
from auth import check_fork_authorization
from commands import parse_command, normalize_input, ParsedCommand, ErrorTypes, COMMAND_PREFIX
from comments import upsert_comment, set_reaction, marker_for, Reactions
from config import Settings
from continuity import load_continuity_state, merge_state, create_comment_with_state
from events import get_event_info, PULL_REQUEST, REVIEW_COMMENT
from handlers import HandlerContext, HandlerResult, get_handler, review_pull_request
from logs import generate_correlation_id, get_run_logger
from services import GitHubFetcher, GitHubCommentStore, GitHubError, AIReviewer, map_error_to_fallback

logger = logging.getLogger(__name__)

REVIEW_MARKER = "<!-- zai-code-review -->"
PROGRESS_MARKER = "<!-- zai-review-progress -->"
GUIDANCE_MARKER = "zai-guidance"

GUIDANCE_MESSAGES = {
    ErrorTypes.UNKNOWN_COMMAND: """## Z.ai Help

Unknown command. Available commands:
- `/zai ask <question>` - Ask a question about the code
- `/zai review [file]` - Request a code review
- `/zai explain <lines>` - Explain specific lines
- `/zai suggest <instruction>` - Get improvement suggestions
- `/zai compare` - Compare changes
- `/zai describe` - Generate the PR description
- `/zai help` - Show this help message

You can also use @zai-bot instead of /zai.""",

    ErrorTypes.MALFORMED_INPUT: """## Z.ai Help

I couldn't understand that command. Commands should start with `/zai` or `@zai-bot`.

Examples:
- `/zai ask what does this function do?`
- `/zai review`
- `/zai explain 10-20`""",

    ErrorTypes.EMPTY_INPUT: """## Z.ai Help

No command detected. Use `/zai help` to see available commands.""",
}


class RunResult(BaseModel):
    status: str  # processed, skipped, blocked, failed
    reason: Optional[str] = None
    command: Optional[str] = None
    success: bool = True


def repo_from_payload(payload: Dict[str, Any]):
    repository = payload.get("repository") or {}
    owner = (repository.get("owner") or {}).get("login")
    return owner, repository.get("name")


def is_addressed_to_bot(text: Optional[str]) -> bool:
    normalized = normalize_input(text or "").lower()
    return normalized.startswith(COMMAND_PREFIX) or normalized.startswith("@zai")


class ZaiBot:
    def __init__(self, fetcher, api_client: ApiClient, model: Optional[str] = None, api_key: Optional[str] = None,
                 max_file_lines: int = 10000, store_factory: Callable[..., Any] = None):
        self.fetcher = fetcher
        self.api_client = api_client
        self.model = model
        self.api_key = api_key
        self.max_file_lines = max_file_lines
        self.store_factory = store_factory or (
            lambda owner, repo, review_comments=False: GitHubCommentStore(fetcher, owner, repo, review_comments)
        )

    def _context(self, owner, repo, pull_number, payload, log, **extra) -> HandlerContext:
        return HandlerContext(
            fetcher=self.fetcher, api_client=self.api_client, owner=owner, repo=repo,
            pull_number=pull_number, payload=payload, model=self.model, api_key=self.api_key,
            max_file_lines=self.max_file_lines, log=log, **extra,
        )

    async def run_event(self, event_name: str, payload: Dict[str, Any], owner: str = None, repo: str = None,
                        correlation_id: str = None) -> RunResult:
        correlation_id = correlation_id or generate_correlation_id()
        info = get_event_info(event_name, payload)
        log = get_run_logger(correlation_id, event=event_name, pr=info.pull_number)

        if not info.should_process:
            log.info(f"⏭️ Skipping event: {info.reason}")
            return RunResult(status="skipped", reason=info.reason)

        payload_owner, payload_repo = repo_from_payload(payload)
        owner, repo = owner or payload_owner, repo or payload_repo
        if not info.pull_number or not owner or not repo:
            log.error("❌ Event carries no pull request number or repository")
            return RunResult(status="failed", reason="No pull request number or repository found.", success=False)

        log.info(f"📥 Processing {info.event_type} on {owner}/{repo}#{info.pull_number}")
        if info.event_type == PULL_REQUEST:
            return await self.handle_pull_request_event(owner, repo, info.pull_number, payload, log)
        return await self.handle_comment_event(owner, repo, info.pull_number, event_name, payload, log)

    # --- automatic review ---

    async def handle_pull_request_event(self, owner, repo, pull_number, payload, log) -> RunResult:
        store = self.store_factory(owner, repo)
        ctx = self._context(owner, repo, pull_number, payload, log)

        try:
            files = ctx.changed_files()
        except GitHubError as e:
            log.error(f"❌ Could not list changed files: {e}")
            return RunResult(status="failed", reason=map_error_to_fallback(e, "pull request files")["fallback"],
                             success=False)
        if not any(f.get("patch") for f in files):
            log.info("⏭️ No patchable changes found. Skipping review.")
            return RunResult(status="skipped", reason="no patchable changes")

        self._progress(store, pull_number, f"⏳ Reviewing {len(files)} changed file(s)...", log)

        def on_fallback(info):
            self._progress(store, pull_number,
                           "⚠️ The model is slow to respond. Retrying with a compact version of the diff...", log)
        ctx.on_fallback = on_fallback

        try:
            result = await review_pull_request(ctx)
        except GitHubError as e:
            log.error(f"❌ GitHub error during review: {e}")
            result = HandlerResult(success=False, error=map_error_to_fallback(e, "pull request files")["fallback"])

        if not result.success:
            self._progress(store, pull_number, f"❌ Review failed: {result.error}", log)
            return RunResult(status="processed", command="review", success=False, reason=result.error)

        try:
            upsert_comment(store, pull_number, result.body, REVIEW_MARKER)
        except GitHubError as e:
            log.error(f"❌ Could not post review comment: {e}")
            return RunResult(status="failed", command="review", success=False,
                             reason=map_error_to_fallback(e, "review comment")["fallback"])
        note = " (compact diff used)" if result.used_fallback else ""
        self._progress(store, pull_number, f"✅ Review complete{note}.", log)
        log.info("✅ Review comment posted")
        return RunResult(status="processed", command="review")

    # --- commands ---

    async def handle_comment_event(self, owner, repo, pull_number, event_name, payload, log) -> RunResult:
        comment = payload.get("comment") or {}
        is_review_comment = event_name == REVIEW_COMMENT
        store = self.store_factory(owner, repo, review_comments=is_review_comment)
        comment_id = comment.get("id")
        commenter = (comment.get("user") or {}).get("login")

        parsed = parse_command(comment.get("body") or "")
        if not parsed.is_valid:
            if parsed.error.type == ErrorTypes.MALFORMED_INPUT and not is_addressed_to_bot(parsed.raw):
                return RunResult(status="skipped", reason="not a command")
            log.info(f"💡 Posting guidance for {parsed.error.type}: {parsed.error.message}")
            guidance = GUIDANCE_MESSAGES.get(parsed.error.type, GUIDANCE_MESSAGES[ErrorTypes.MALFORMED_INPUT])
            upsert_comment(store, pull_number, guidance, marker_for(GUIDANCE_MARKER, comment_id), reply_to=comment_id)
            return RunResult(status="processed", reason=parsed.error.type, success=False)

        auth = check_fork_authorization(self.fetcher, owner, repo, payload, commenter)
        if not auth.authorized:
            if auth.reason is None:
                log.info(f"🔒 Silently blocking command from {commenter or 'unknown'} on fork PR")
                return RunResult(status="blocked", command=parsed.command, success=False)
            log.info(f"🔒 Unauthorized command attempt from {commenter or 'unknown'}")
            upsert_comment(store, pull_number, f"**Error:** {auth.reason}",
                           marker_for(GUIDANCE_MARKER, comment_id), reply_to=comment_id)
            return RunResult(status="blocked", command=parsed.command, reason=auth.reason, success=False)

        ctx = self._context(
            owner, repo, pull_number, payload, log.bind(command=parsed.command),
            commenter=commenter, comment_id=comment_id,
            comment_path=comment.get("path"),
            comment_line=comment.get("line") or comment.get("original_line"),
            diff_hunk=comment.get("diff_hunk"),
        )
        return await self.dispatch_command(ctx, parsed, store)

    async def dispatch_command(self, ctx: HandlerContext, parsed: ParsedCommand, store) -> RunResult:
        log = ctx.log
        state = load_continuity_state(store, ctx.pull_number)
        self._react(store, ctx.comment_id, Reactions.EYES, log)

        handler = get_handler(parsed.command)
        try:
            result = await handler(ctx, parsed.args)
        except GitHubError as e:
            log.error(f"❌ GitHub error in {parsed.command}: {e}")
            result = HandlerResult(success=False, error=map_error_to_fallback(e)["fallback"])
        except Exception as e:
            log.exception(f"❌ Unexpected error in {parsed.command}: {e}")
            result = HandlerResult(success=False, error=get_user_message(ErrorCategory.INTERNAL))

        marker = marker_for(f"zai-{parsed.command}", ctx.comment_id)
        if not result.success:
            upsert_comment(store, ctx.pull_number, f"**Error:** {result.error}", marker, reply_to=ctx.comment_id)
            self._react(store, ctx.comment_id, Reactions.CONFUSED, log)
            return RunResult(status="processed", command=parsed.command, reason=result.error, success=False)

        next_state = merge_state(state, {
            "lastCommand": parsed.command,
            "lastArgs": " ".join(parsed.args),
            "lastUser": ctx.commenter or "unknown",
            "turnCount": int((state or {}).get("turnCount") or 0) + 1,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        })
        upsert_comment(store, ctx.pull_number, create_comment_with_state(result.body, next_state), marker,
                       reply_to=ctx.comment_id)
        self._react(store, ctx.comment_id, Reactions.ROCKET, log)
        log.info(f"✅ {parsed.command} completed (turn {next_state['turnCount']})")
        return RunResult(status="processed", command=parsed.command)

    @staticmethod
    def _progress(store, pull_number, status: str, log):
        """Progress notes are informational; failing to write one never stops the review."""
        try:
            upsert_comment(store, pull_number, f"## Z.ai Code Review\n\n{status}", PROGRESS_MARKER)
        except GitHubError as e:
            log.warning(f"⚠️ Could not update progress comment: {e}")

    @staticmethod
    def _react(store, comment_id, reaction: str, log):
        try:
            set_reaction(store, comment_id, reaction)
        except GitHubError as e:
            log.warning(f"⚠️ Could not add {reaction} reaction to {comment_id}: {e}")


def build_bot(settings: Settings, sleep=asyncio.sleep) -> ZaiBot:
    """Wires the GitHub client and the chat backend from settings."""
    settings.require()
    fetcher = GitHubFetcher(settings.github_token)
    if settings.use_azure:
        logger.info(f"🔹 Using Azure OpenAI Service (Deployment: {settings.azure_deployment})")
        backend = AIReviewer(api_key=settings.azure_key, base_url=settings.azure_url, is_azure=True,
                             model=settings.azure_deployment, api_version=settings.azure_api_version)
        model, api_key = settings.azure_deployment, None
    else:
        logger.info(f"🔹 Using OpenAI-compatible endpoint {settings.base_url} (model {settings.model})")
        backend = AIReviewer(api_key=settings.api_key, base_url=settings.base_url, model=settings.model)
        model, api_key = settings.model, settings.api_key

    client = ApiClient(backend, timeout_ms=settings.timeout_ms, max_retries=settings.max_retries,
                       base_delay_ms=settings.base_delay_ms, sleep=sleep)
    return ZaiBot(fetcher, client, model=model, api_key=api_key, max_file_lines=settings.max_file_lines)
