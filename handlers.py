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
/zai command handlers.

Each handler builds a bounded prompt (and a compact fallback prompt for the
client to switch to after a timeout), calls the model through the shared
ApiClient and returns a HandlerResult. Posting, reactions and continuity are
done by bot.dispatch_command, so handlers stay free of comment bookkeeping.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from pydantic import BaseModel

from api import ApiClient, ChatRequest, RetryOutcome, get_user_message
from code_scope import extract_window, extract_enclosing_block, DEFAULT_MAX_FILE_LINES
from context import truncate_context, validate_range, DEFAULT_MAX_CHARS
from services import GitHubError, is_rate_limit_error

logger = logging.getLogger(__name__)

COMPACT_MAX_CHARS = 3000
MAX_TRANSCRIPT_COMMENTS = 20
MAX_COMMENT_BODY_CHARS = 1200
MAX_FILE_CONTEXT_CHARS = 10000
SMALL_DIFF_THRESHOLD_CHARS = 12000
MAX_DIFF_FILES = 8
MAX_RAW_FILE_CHARS = 4000

DESCRIPTION_START = "<!-- ZAI_DESCRIPTION_START -->"
DESCRIPTION_END = "<!-- ZAI_DESCRIPTION_END -->"
DESCRIPTION_HEADER = "\n\n---\n" + DESCRIPTION_START + "\n🤖 **Z.ai Auto-generated Description:**\n\n"

HELP_TEXT = """## Available Commands

| Command | Usage | Description |
|---------|-------|-------------|
| `/zai ask` | `/zai ask <question>` | Ask a question about the code |
| `/zai review` | `/zai review [file]` | Review the whole PR or one changed file |
| `/zai explain` | `/zai explain <start-end>` | Explain selected lines |
| `/zai suggest` | `/zai suggest <instruction>` | Suggest improvements, optionally at `path:line` |
| `/zai compare` | `/zai compare` | Compare old vs new version |
| `/zai describe` | `/zai describe` | Write the PR description from its commits |
| `/zai help` | `/zai help` | Show this help message |

You can also use `@zai-bot` instead of `/zai`.

**Note:** Only collaborators can use these commands."""


class HandlerResult(BaseModel):
    success: bool
    body: Optional[str] = None
    error: Optional[str] = None
    used_fallback: bool = False


@dataclass
class HandlerContext:
    """Everything a handler needs for one command on one pull request."""
    fetcher: Any
    api_client: ApiClient
    owner: str
    repo: str
    pull_number: int
    payload: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    api_key: Optional[str] = None
    commenter: Optional[str] = None
    comment_id: Optional[int] = None
    comment_path: Optional[str] = None
    comment_line: Optional[int] = None
    diff_hunk: Optional[str] = None
    max_file_lines: int = DEFAULT_MAX_FILE_LINES
    on_fallback: Optional[Callable[[Any], Any]] = None
    log: Any = None
    _changed_files: Optional[List[Dict[str, Any]]] = field(default=None, repr=False)

    def __post_init__(self):
        if self.log is None:
            self.log = logger

    def changed_files(self) -> List[Dict[str, Any]]:
        if self._changed_files is None:
            self._changed_files = self.fetcher.get_pr_diffs(self.owner, self.repo, self.pull_number)
        return self._changed_files

    @property
    def head_sha(self) -> Optional[str]:
        return ((self.payload.get("pull_request") or {}).get("head") or {}).get("sha")


async def complete(ctx: HandlerContext, prompt: str,
                   compact: Optional[Callable[[], str]] = None) -> RetryOutcome:
    """Runs one logical model call; compact() is only evaluated if the client escalates."""
    request = ChatRequest(prompt=prompt, model=ctx.model, api_key=ctx.api_key)
    fallback = None
    if compact is not None:
        def fallback():
            return ChatRequest(prompt=compact(), model=ctx.model, api_key=ctx.api_key)

    def on_fallback(info):
        ctx.log.warning(f"🔻 Model call degraded to compact prompt after attempt {info['attempt'] + 1}")
        if ctx.on_fallback is not None:
            return ctx.on_fallback(info)

    return await ctx.api_client.call(request, fallback=fallback, on_fallback=on_fallback)


def _failed(outcome: RetryOutcome, ctx: HandlerContext, command: str) -> HandlerResult:
    ctx.log.error(f"❌ {command} model call failed [{outcome.error.category.value}] "
                  f"after {outcome.error.attempts} attempt(s): {outcome.error.message}")
    return HandlerResult(success=False, error=get_user_message(outcome.error.category),
                         used_fallback=outcome.used_fallback)


def format_diffs(files: List[Dict[str, Any]]) -> str:
    return "\n\n".join(
        f"### {f['filename']} ({f['status']})\n```diff\n{f['patch']}\n```"
        for f in files if f.get("patch")
    )


def _compact(text: str) -> str:
    return truncate_context(text, COMPACT_MAX_CHARS).content


# --- ask ---

def _normalize_comment_body(body: str) -> str:
    compact = (body or "").replace("\r\n", "\n").strip()
    if not compact:
        return "[empty comment]"
    if len(compact) <= MAX_COMMENT_BODY_CHARS:
        return compact
    return compact[:MAX_COMMENT_BODY_CHARS] + "...[truncated]"


def _is_bot_author(comment: Dict[str, Any]) -> bool:
    user = comment.get("user") or {}
    login = (user.get("login") or "").lower()
    return user.get("type") == "Bot" or login.endswith("[bot]") or "zai-code-bot" in login


def get_thread_transcript(ctx: HandlerContext, limit: int = MAX_TRANSCRIPT_COMMENTS) -> str:
    try:
        comments = ctx.fetcher.list_issue_comments(ctx.owner, ctx.repo, ctx.pull_number)
    except GitHubError as e:
        ctx.log.warning(f"⚠️ Failed to fetch PR comments: {e}")
        if is_rate_limit_error(e):
            return "Conversation history is temporarily unavailable due to GitHub API rate limits."
        return "Conversation history is currently unavailable."

    if not comments:
        return "No previous conversation found for this PR."

    ordered = sorted(comments, key=lambda c: c.get("created_at") or "")[-limit:]
    lines = []
    for c in ordered:
        role = "Bot" if _is_bot_author(c) else "User"
        login = (c.get("user") or {}).get("login") or "unknown"
        lines.append(f"[{c.get('created_at') or 'unknown-time'}] {role} ({login}):\n"
                     f"{_normalize_comment_body(c.get('body'))}")
    return "\n\n".join(lines)


def get_relevant_file_content(ctx: HandlerContext, max_chars: int = MAX_FILE_CONTEXT_CHARS) -> str:
    try:
        files = ctx.changed_files()
    except GitHubError as e:
        ctx.log.warning(f"⚠️ Failed to fetch PR files: {e}")
        if is_rate_limit_error(e):
            return "File context is temporarily unavailable due to GitHub API rate limits."
        return "File context is currently unavailable."

    if not files:
        return "No changed files were found in this pull request."

    total_patch = sum(len(f.get("patch") or "") for f in files)
    include_all = len(files) <= MAX_DIFF_FILES and total_patch <= SMALL_DIFF_THRESHOLD_CHARS
    sections = []

    if ctx.comment_path:
        match = next((f for f in files if f["filename"] == ctx.comment_path), None)
        if match:
            sections.append(f"Focused file from thread: {match['filename']}\nStatus: {match['status']}\n\n"
                            f"Diff:\n{match.get('patch') or '[No diff patch available for this file]'}")
        else:
            sections.append(f"Thread references file path `{ctx.comment_path}`, but it was not found in changed files.")
        if ctx.diff_hunk:
            sections.append(f"Referenced diff hunk:\n{ctx.diff_hunk}")

        raw = ctx.fetcher.fetch_file_at_pr_head(ctx.owner, ctx.repo, ctx.comment_path, ctx.pull_number,
                                                head_sha=ctx.head_sha, max_file_size=MAX_RAW_FILE_CHARS,
                                                max_file_lines=ctx.max_file_lines,
                                                anchor_line=ctx.comment_line)
        if raw.success:
            sections.append(f"Raw file snapshot for {ctx.comment_path}:\n{raw.data}")
        else:
            sections.append(f"[Raw file content unavailable: {raw.fallback}]")

    targets = files if include_all else files[:MAX_DIFF_FILES]
    if include_all:
        sections.append("PR diff context (all changed files):")
    else:
        sections.append(f"PR diff context (first {len(targets)} of {len(files)} files):")
    for f in targets:
        patch = f"Patch:\n{f['patch']}" if f.get("patch") else "Patch: [No patch available; file may be binary or too large]"
        sections.append(f"File: {f['filename']}\nStatus: {f['status']}\n{patch}")

    return truncate_context("\n\n---\n\n".join(sections), max_chars).content


def build_ask_context(ctx: HandlerContext, max_chars: int = DEFAULT_MAX_CHARS) -> Dict[str, str]:
    pr = ctx.payload.get("pull_request") or ctx.payload.get("issue") or {}
    pr_context = "\n".join([
        f"PR #{ctx.pull_number}",
        f"Title: {pr.get('title') or ''}",
        f"Description: {pr.get('body') or ''}",
    ])
    return {
        "pr_context": truncate_context(pr_context, max(200, int(max_chars * 0.2))).content,
        "conversation_history": truncate_context(get_thread_transcript(ctx), max(800, int(max_chars * 0.35))).content,
        "file_context": truncate_context(get_relevant_file_content(ctx), max(1200, int(max_chars * 0.45))).content,
    }


def build_ask_prompt(question: str, sections: Dict[str, str]) -> str:
    return "\n\n".join([
        "You are Zai Code Bot, an expert pull request assistant.",
        "Answer using the available PR diff and conversation context. If context is missing, explicitly state assumptions.",
        f"<pr_context>\n{sections.get('pr_context') or 'PR context unavailable.'}\n</pr_context>",
        f"<file_context>\n{sections.get('file_context') or 'File context unavailable.'}\n</file_context>",
        f"<conversation_history>\n{sections.get('conversation_history') or 'Conversation history unavailable.'}\n</conversation_history>",
        f"<user_query>\n{question}\n</user_query>",
    ])


async def handle_ask(ctx: HandlerContext, args: List[str]) -> HandlerResult:
    question = " ".join(args or []).strip()
    if not question:
        return HandlerResult(success=False, error="Please provide a question. Usage: /zai ask <question>")

    sections = build_ask_context(ctx)
    prompt = build_ask_prompt(question, sections)

    def compact():
        return _compact(build_ask_prompt(question, {
            "pr_context": sections["pr_context"],
            "file_context": truncate_context(sections["file_context"], 1500).content,
            "conversation_history": "Omitted to fit the model's limits.",
        }))

    outcome = await complete(ctx, prompt, compact)
    if not outcome.success:
        return _failed(outcome, ctx, "ask")

    body = f'## Answer to: "{question}"\n\n{outcome.data}\n\n---\n*Response from Z.ai*'
    return HandlerResult(success=True, body=body, used_fallback=outcome.used_fallback)


# --- review ---

def build_review_prompt(files: List[Dict[str, Any]]) -> str:
    return ("Please review the following pull request changes and provide concise, constructive feedback. "
            "Focus on bugs, logic errors, security issues, and meaningful improvements. "
            f"Skip trivial style comments.\n\n{format_diffs(files)}")


def build_file_review_prompt(file: Dict[str, Any], max_chars: int = DEFAULT_MAX_CHARS):
    content = f"Please review the following code change in file: {file['filename']}\n"
    content += f"Change type: {file['status']}\n\n"
    if file.get("patch"):
        content += f"--- DIFF ---\n{file['patch']}\n--- END DIFF ---"
    else:
        content += "(No diff available - file may be binary or too large)"
    result = truncate_context(content, max_chars)
    return result.content, result.truncated


def parse_file_path(args: List[str]):
    """Returns (path, error). Absolute paths and traversal are rejected."""
    path = " ".join(args or []).strip()
    if not path:
        return None, "No file path provided. Usage: /zai review <filepath>"
    if ".." in path or path.startswith("/"):
        return None, "Invalid file path. Path traversal is not allowed."
    return path, None


def validate_file_in_pr(path: str, changed_files: List[Dict[str, Any]]):
    """Returns (file, error). Matches the full path or a trailing path suffix, case-insensitively."""
    wanted = path.lstrip("/").lower()
    for f in changed_files or []:
        name = (f.get("filename") or "").lower()
        if name == wanted or name.endswith("/" + wanted):
            return f, None
    available = ", ".join(f.get("filename", "") for f in changed_files or [])
    return None, f'File "{path}" not found in PR changed files. Available files: {available}'


async def review_pull_request(ctx: HandlerContext) -> HandlerResult:
    """Whole-PR review; shared by `/zai review` and the automatic review on push."""
    files = ctx.changed_files()
    if not any(f.get("patch") for f in files):
        return HandlerResult(success=True, body="## Z.ai Code Review\n\nNo patchable changes found.")

    prompt = build_review_prompt(files)
    truncated = truncate_context(prompt, DEFAULT_MAX_CHARS)
    if truncated.truncated:
        ctx.log.info(f"✂️ Review prompt truncated ({truncated.omitted} chars omitted)")

    ctx.log.info(f"🤖 Sending {len(files)} file(s) for review...")
    outcome = await complete(ctx, truncated.content, lambda: _compact(prompt))
    if not outcome.success:
        return _failed(outcome, ctx, "review")

    return HandlerResult(success=True, body=f"## Z.ai Code Review\n\n{outcome.data}",
                         used_fallback=outcome.used_fallback)


async def handle_review(ctx: HandlerContext, args: List[str]) -> HandlerResult:
    if not args:
        return await review_pull_request(ctx)

    path, error = parse_file_path(args)
    if error:
        return HandlerResult(success=False, error=error)

    target, error = validate_file_in_pr(path, ctx.changed_files())
    if error:
        return HandlerResult(success=False, error=error)

    ctx.log.info(f"🔍 Reviewing {target['filename']} ({target['status']})")
    prompt, truncated = build_file_review_prompt(target)
    outcome = await complete(ctx, prompt, lambda: build_file_review_prompt(target, COMPACT_MAX_CHARS)[0])
    if not outcome.success:
        return _failed(outcome, ctx, "review")

    response = outcome.data
    if truncated or outcome.used_fallback:
        response += "\n\n_(Note: Context was truncated due to size limits)_"
    return HandlerResult(success=True, body=f"## 📝 Code Review: {target['filename']}\n\n{response}",
                         used_fallback=outcome.used_fallback)


# --- explain ---

LINE_RANGE_PATTERN = re.compile(r"^(\d+)(?:-|:|\.\.)(\d+)$")


def parse_line_range(arg: Optional[str]):
    """Parses "10-15", "10:15" or "10..15". Returns (start, end, error)."""
    if not arg or not isinstance(arg, str):
        return None, None, "No line range provided. Usage: /zai explain <start-end>"

    match = LINE_RANGE_PATTERN.match(arg.strip())
    if not match:
        return None, None, f'Invalid line range format: "{arg}". Use format: /zai explain 10-15'

    start, end = int(match.group(1)), int(match.group(2))
    if start < 1:
        return None, None, f"Start line must be >= 1, got {start}"
    if start > end:
        return None, None, f"Start line {start} cannot exceed end line {end}"
    return start, end, None


def build_explain_prompt(filename: str, target: List[str], surrounding: List[str], start: int, end: int,
                         max_chars: int = DEFAULT_MAX_CHARS):
    prompt = f"Explain the following code block from file: {filename}\n"
    prompt += "Context (Surrounding Code):\n"
    prompt += "<surrounding_scope>\n" + "\n".join(surrounding) + "\n</surrounding_scope>\n\n"
    prompt += "Target block to explain:\n"
    prompt += f"<target_lines>{start}-{end}</target_lines>\n"
    prompt += "<code>\n" + "\n".join(target) + "\n</code>\n\n"
    prompt += ("Task: Explain what this specific block does, why it's written this way, "
               "and identify any dependencies it uses from the surrounding scope.")
    result = truncate_context(prompt, max_chars)
    return result.content, result.truncated


async def handle_explain(ctx: HandlerContext, args: List[str]) -> HandlerResult:
    start, end, error = parse_line_range(args[0] if args else None)
    if error:
        return HandlerResult(success=False, error=error)

    path = ctx.comment_path
    if not path:
        files = ctx.changed_files()
        path = files[0]["filename"] if files else None
    if not path:
        return HandlerResult(success=False, error="No target file specified. Usage: /zai explain 10-15")

    ctx.log.info(f"📖 Explaining {path}:{start}-{end}")
    fetched = ctx.fetcher.fetch_file_at_pr_head(
        ctx.owner, ctx.repo, path, ctx.pull_number, head_sha=ctx.head_sha,
        max_file_lines=ctx.max_file_lines,
        changed_ranges=[{"start": start, "end": end}], window_size=20, max_windows=1,
    )
    if not fetched.success:
        return HandlerResult(success=False, error=fetched.fallback or f"Failed to fetch {path}")

    max_lines = fetched.line_count or len(fetched.data.split("\n"))
    check = validate_range(start, end, max_lines)
    if not check.valid:
        return HandlerResult(success=False, error=f"{check.error}. File has {max_lines} lines.")

    local_start, local_end = fetched.to_window_relative(start), fetched.to_window_relative(end)

    scope = extract_window(fetched.data, local_start, local_end)
    if scope.fallback:
        ctx.log.warning(f"⚠️ Scope extraction fell back: {scope.note}")

    prompt, truncated = build_explain_prompt(path, scope.target, scope.surrounding or scope.target, start, end)
    outcome = await complete(
        ctx, prompt,
        lambda: build_explain_prompt(path, scope.target, scope.target, start, end, COMPACT_MAX_CHARS)[0],
    )
    if not outcome.success:
        return _failed(outcome, ctx, "explain")

    response = outcome.data
    if outcome.used_fallback:
        response += "\n\n_(Note: Compact context was used due to model limits)_"
    elif truncated:
        response += "\n\n_(Note: Context was truncated due to size limits)_"
    return HandlerResult(success=True, body=f"## 📖 Explanation: {path}:{start}-{end}\n\n{response}",
                         used_fallback=outcome.used_fallback)


# --- suggest ---

FILE_LINE_PATTERN = re.compile(r"([\w\-./\\]+):(\d+)")


def parse_file_line_anchor(instruction: Optional[str]):
    """Finds the first path:line token, e.g. "src/app.py:42". Returns (path, line)."""
    if not instruction or not isinstance(instruction, str):
        return None, None
    match = FILE_LINE_PATTERN.search(instruction)
    if not match:
        return None, None
    line = int(match.group(2))
    if line < 1:
        return None, None
    return match.group(1), line


def resolve_anchor(ctx: HandlerContext, instruction: str) -> Dict[str, Any]:
    """Review-comment metadata first, then a path:line token in the instruction."""
    if ctx.comment_path and ctx.comment_line:
        return {"path": ctx.comment_path, "line": ctx.comment_line, "source": "comment_metadata"}
    path, line = parse_file_line_anchor(instruction)
    if path and line:
        return {"path": path, "line": line, "source": "instruction_parse"}
    return {"path": None, "line": None, "source": "none"}


def build_suggest_prompt(path: str, block, instruction: str, max_chars: int = DEFAULT_MAX_CHARS):
    note = ""
    if block.fallback:
        note = f"\n\n_(Note: {block.note or 'Could not determine precise function/class block, using context window'})_"
    prompt = "You are an expert programmer. The user wants to improve or change a specific part of the code.\n"
    prompt += "Current code context:\n"
    prompt += f"<file>{path}</file>\n"
    prompt += "<code>\n" + "\n".join(block.target) + "\n</code>\n\n"
    prompt += f"User Instruction: {instruction}{note}\n\n"
    prompt += ("Task: Provide a code suggestion that fulfills the instruction. Output ONLY the code diff "
               "or the new code block in a format that can be easily applied.")
    result = truncate_context(prompt, max_chars)
    return result.content, result.truncated


def build_diff_suggest_prompt(files: List[Dict[str, Any]], instruction: str, anchored: bool) -> str:
    note = "" if anchored else "\n\n_(Note: No specific anchor detected. Providing suggestions based on all changed files.)_"
    return (f"You are an expert code reviewer. Based on the following code changes, {instruction}{note}\n\n"
            "Provide specific, actionable suggestions with code examples where appropriate.\n\n"
            f"## Changed Files:\n\n{format_diffs(files)}")


async def handle_suggest(ctx: HandlerContext, args: List[str]) -> HandlerResult:
    instruction = " ".join(args or []).strip()
    if not instruction:
        return HandlerResult(success=False,
                             error="Please provide a suggestion prompt. Usage: /zai suggest <your suggestion>")

    files = ctx.changed_files()
    if not files:
        return HandlerResult(success=False, error="No changed files found in this pull request.")

    anchor = resolve_anchor(ctx, instruction)
    ctx.log.info(f"⚓ Suggest anchor: {anchor['path']}:{anchor['line']} ({anchor['source']})")

    prompt = compact = None
    if anchor["path"] and anchor["line"]:
        fetched = ctx.fetcher.fetch_file_at_pr_head(
            ctx.owner, ctx.repo, anchor["path"], ctx.pull_number, head_sha=ctx.head_sha,
            max_file_size=200000, max_file_lines=ctx.max_file_lines,
            anchor_line=anchor["line"], prefer_enclosing_block=True,
        )
        if fetched.success and fetched.data:
            block = extract_enclosing_block(fetched.data, fetched.to_window_relative(anchor["line"]))
            ctx.log.info(f"🧱 Enclosing block {block.bounds.start}-{block.bounds.end} (fallback={block.fallback})")
            prompt, _ = build_suggest_prompt(anchor["path"], block, instruction)
            compact = lambda: build_suggest_prompt(anchor["path"], block, instruction, COMPACT_MAX_CHARS)[0]  # noqa: E731
        else:
            ctx.log.warning(f"⚠️ Failed to fetch anchor file {anchor['path']}, using changed files: {fetched.error}")
            anchor["source"] = "fallback"

    if prompt is None:
        patched = [f for f in files if f.get("patch")]
        if not patched:
            return HandlerResult(success=False, error="No patchable changes found in this pull request.")
        full = build_diff_suggest_prompt(patched, instruction, anchored=anchor["source"] != "none")
        prompt = truncate_context(full, DEFAULT_MAX_CHARS).content
        compact = lambda: _compact(full)  # noqa: E731

    outcome = await complete(ctx, prompt, compact)
    if not outcome.success:
        return _failed(outcome, ctx, "suggest")

    return HandlerResult(success=True, body=f"## Suggested Improvements\n\n{outcome.data}",
                         used_fallback=outcome.used_fallback)


# --- compare ---

def build_compare_prompt(files: List[Dict[str, Any]]) -> str:
    return ("You are an expert code reviewer. Compare the OLD version with the NEW version in the following "
            "pull request changes.\n\nAnalyze the differences and provide:\n"
            "1. What changed between old and new versions\n"
            "2. Key differences in approach or implementation\n"
            "3. Potential implications of these changes\n"
            "4. Any concerns or things to watch out for\n\n"
            f"## Changed Files:\n\n{format_diffs(files)}")


async def handle_compare(ctx: HandlerContext, args: List[str]) -> HandlerResult:
    files = ctx.changed_files()
    if not files:
        return HandlerResult(success=False, error="No changed files found in this pull request.")
    if not any(f.get("patch") for f in files):
        return HandlerResult(success=False, error="No patchable changes found in this pull request.")

    prompt = build_compare_prompt(files)
    truncated = truncate_context(prompt, DEFAULT_MAX_CHARS)
    if truncated.truncated:
        ctx.log.info(f"✂️ Compare prompt truncated from {len(prompt)} chars")

    outcome = await complete(ctx, truncated.content, lambda: _compact(prompt))
    if not outcome.success:
        return _failed(outcome, ctx, "compare")
    return HandlerResult(success=True, body=f"## Old vs New Comparison\n\n{outcome.data}",
                         used_fallback=outcome.used_fallback)


# --- describe ---

def build_describe_prompt(commit_messages: str) -> str:
    return ("You are an expert technical writer and developer. Your task is to write a clear, structured "
            "Pull Request description based on the provided commit messages.\n\n"
            "Group the changes logically (e.g., Features, Fixes, Refactoring). Use Markdown formatting "
            "(bullet points, bold text). Do not write introductory conversational phrases, output only "
            "the PR description itself.\n\n"
            f"<commit_messages>\n{commit_messages}\n</commit_messages>")


def replace_description_section(body: Optional[str], description: str) -> str:
    """Swaps the generated section of a PR body, leaving the author's text untouched."""
    body = body or ""
    start = body.find(DESCRIPTION_START)
    if start != -1:
        # the header's "---" separator sits just before the start marker
        cut = body.rfind("\n\n---\n", 0, start)
        head = body[:cut] if cut != -1 and cut + len("\n\n---\n") == start else body[:start]
        end = body.find(DESCRIPTION_END, start)
        tail = body[end + len(DESCRIPTION_END):] if end != -1 else ""
        body = head + tail
    return body.rstrip() + DESCRIPTION_HEADER + description + "\n" + DESCRIPTION_END


async def handle_describe(ctx: HandlerContext, args: List[str]) -> HandlerResult:
    messages = [m for m in ctx.fetcher.get_pr_commits(ctx.owner, ctx.repo, ctx.pull_number, limit=30) if m]
    if not messages:
        return HandlerResult(success=True, body="## Z.ai Describe\n\nNo commits found in this PR.")

    joined = "\n\n".join(messages)
    prompt = build_describe_prompt(truncate_context(joined, DEFAULT_MAX_CHARS).content)
    outcome = await complete(ctx, prompt, lambda: build_describe_prompt(_compact(joined)))
    if not outcome.success:
        return _failed(outcome, ctx, "describe")

    current = ctx.fetcher.get_pull_request(ctx.owner, ctx.repo, ctx.pull_number).get("body")
    ctx.fetcher.update_pull_request_body(ctx.owner, ctx.repo, ctx.pull_number,
                                         replace_description_section(current, outcome.data))
    ctx.log.info(f"📝 Updated description of PR #{ctx.pull_number} from {len(messages)} commit(s)")
    return HandlerResult(success=True,
                         body="✅ I have successfully updated the PR description based on your commits!",
                         used_fallback=outcome.used_fallback)


# --- help ---

async def handle_help(ctx: HandlerContext, args: List[str]) -> HandlerResult:
    return HandlerResult(success=True, body=HELP_TEXT)


HANDLERS: Dict[str, Callable[[HandlerContext, List[str]], Awaitable[HandlerResult]]] = {
    "ask": handle_ask,
    "review": handle_review,
    "explain": handle_explain,
    "suggest": handle_suggest,
    "compare": handle_compare,
    "describe": handle_describe,
    "help": handle_help,
}


def get_handler(command: str):
    return HANDLERS.get(command)
