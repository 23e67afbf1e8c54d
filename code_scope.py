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
Code scope extraction.

Every operation here takes file text plus 1-indexed line numbers and returns a
ScopeResult (or FileScope for large files). Nothing in this module raises on bad
ranges: the result carries fallback=True and a note instead.

Block detection is a brace/keyword heuristic, not a parser. It can misfire on
braces inside strings, template literals or multi-line signatures.
"""

import re
import logging
from typing import Iterable, List, Literal, Optional, Union, Dict, Any
from pydantic import BaseModel, Field

from context import split_lines, validate_range, extract_lines

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 15
DEFAULT_MAX_SEARCH_LINES = 100
DEFAULT_MAX_FILE_LINES = 10000
DEFAULT_SCOPE_WINDOW = 20
DEFAULT_MAX_WINDOWS = 3

# Extra lines a detected block must reach past the anchor to be accepted.
# 0 means the block only has to end after the anchor line.
ENCLOSING_BLOCK_MARGIN = 0

# Lines to fall back on when no block start or end can be found
BLOCK_START_FALLBACK_LINES = 10
BLOCK_END_FALLBACK_LINES = 20
ARROW_SEARCH_LINES = 20

# Checked in order on each line while scanning backward from the anchor
BLOCK_START_PATTERNS = [
    # named function (JS) / def (Python)
    re.compile(r"^(\s*)(function\s+\w+|async\s+function|export\s+(default\s+)?function|(async\s+)?def\s+\w+)"),
    # class
    re.compile(r"^(\s*)(export\s+(default\s+)?)?class\s+\w+"),
    # function assigned to a variable
    re.compile(r"^(\s*)((export\s+)?(const|let|var)\s+)?(\w+)\s*=\s*(async\s*)?(\(|function\b)"),
    # object method arrow function
    re.compile(r"^(\s*)(\w+)\s*:\s*.*=>"),
]
ARROW_TAIL = re.compile(r"^\)\s*=>")
BLOCK_TERMINATOR = re.compile(r"^(return|throw|break|continue)\b")
HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")

ScopeStrategy = Literal["enclosing_block", "sliding_window", "top_window", "full_file"]


class ScopeBounds(BaseModel):
    start: int
    end: int
    max_lines: int


class ScopeResult(BaseModel):
    """Unit returned by every extraction. fallback=True is informational, never an error."""
    target: List[str] = Field(default_factory=list)
    surrounding: Optional[List[str]] = None
    bounds: ScopeBounds
    fallback: bool = False
    note: Optional[str] = None


class LineRange(BaseModel):
    start: int
    end: int


class FileScope(BaseModel):
    content: str
    line_count: int
    scoped: bool = False
    scope_strategy: ScopeStrategy = "full_file"
    scope_start_line: int = 1
    scope_end_line: int = 0
    windows: List[LineRange] = Field(default_factory=list)
    note: Optional[str] = None


def _clamp(line: int, max_lines: int) -> int:
    return max(1, min(line, max_lines))


def _invalid_content() -> ScopeResult:
    return ScopeResult(
        target=[],
        bounds=ScopeBounds(start=1, end=0, max_lines=0),
        fallback=True,
        note="Invalid content provided",
    )


def extract_window(content: str, start_line: int, end_line: int,
                   window_size: int = DEFAULT_WINDOW_SIZE) -> ScopeResult:
    """
    Target lines plus window_size lines of surrounding context on each side.
    An invalid range returns the whole file as the target so a bad anchor
    never produces an empty prompt.
    """
    if not isinstance(content, str) or not content:
        return _invalid_content()

    lines = split_lines(content)
    max_lines = len(lines)

    check = validate_range(start_line, end_line, max_lines)
    if not check.valid:
        return ScopeResult(
            target=lines,
            surrounding=None,
            bounds=ScopeBounds(start=1, end=max_lines, max_lines=max_lines),
            fallback=True,
            note=f"Invalid target range: {check.error}. Returning full file.",
        )

    window_start = _clamp(start_line - window_size, max_lines)
    window_end = _clamp(end_line + window_size, max_lines)

    return ScopeResult(
        target=lines[start_line - 1:end_line],
        surrounding=lines[window_start - 1:window_end],
        bounds=ScopeBounds(start=window_start, end=window_end, max_lines=max_lines),
        fallback=False,
    )


def extract_target_block(content: str, start_line: int, end_line: int) -> ScopeResult:
    """Exactly the requested lines, or an empty fallback result with a diagnostic note."""
    if not isinstance(content, str) or not content:
        return _invalid_content()

    max_lines = len(split_lines(content))
    extracted = extract_lines(content, start_line, end_line)
    if not extracted.valid:
        return ScopeResult(
            target=[],
            bounds=ScopeBounds(start=1, end=max_lines, max_lines=max_lines),
            fallback=True,
            note=f"Invalid range: {extracted.error}",
        )

    return ScopeResult(
        target=extracted.lines,
        bounds=ScopeBounds(start=start_line, end=end_line, max_lines=max_lines),
    )


def extract_enclosing_block(content: str, anchor_line: int,
                            max_search_lines: int = DEFAULT_MAX_SEARCH_LINES,
                            window_size: int = DEFAULT_WINDOW_SIZE) -> ScopeResult:
    """
    Heuristically finds the smallest function/class/arrow-function block
    around anchor_line. Falls back to a plain +/- window_size window
    (fallback=True) when no block clearly encloses the anchor.
    """
    if not isinstance(content, str) or not content:
        return _invalid_content()

    lines = split_lines(content)
    max_lines = len(lines)

    if isinstance(anchor_line, bool) or not isinstance(anchor_line, int):
        return extract_window(content, 0, 0, window_size)

    if anchor_line < 1 or anchor_line > max_lines:
        result = extract_window(content, max(1, anchor_line - window_size),
                                min(max_lines, anchor_line + window_size), window_size)
        result.fallback = True
        result.note = result.note or f"Anchor line {anchor_line} is outside the file (1-{max_lines})"
        return result

    block_start = find_block_start(lines, anchor_line, max_search_lines)
    block_end = find_block_end(lines, block_start, anchor_line)

    extracted = extract_lines(content, block_start, block_end)
    encloses = (block_end - block_start) > (anchor_line - block_start) + ENCLOSING_BLOCK_MARGIN

    if not extracted.valid or not encloses:
        window_start = _clamp(anchor_line - window_size, max_lines)
        window_end = _clamp(anchor_line + window_size, max_lines)
        note = ("Could not determine block boundaries precisely, using window fallback"
                if not extracted.valid else
                "No function/class block detected around anchor line, returning local context window")
        logger.debug(f"🔍 Enclosing block rejected for anchor {anchor_line} ({block_start}-{block_end})")
        return ScopeResult(
            target=lines[window_start - 1:window_end],
            bounds=ScopeBounds(start=window_start, end=window_end, max_lines=max_lines),
            fallback=True,
            note=note,
        )

    return ScopeResult(
        target=extracted.lines,
        bounds=ScopeBounds(start=block_start, end=block_end, max_lines=max_lines),
    )


def find_block_start(lines: List[str], anchor_line: int, max_search: int) -> int:
    search_floor = max(1, anchor_line - max_search)

    # 1. Declarations, nearest first
    for i in range(anchor_line, search_floor - 1, -1):
        line = lines[i - 1]
        if any(pattern.search(line) for pattern in BLOCK_START_PATTERNS):
            return i

        if "=>" in line:
            trimmed = line.strip()
            if trimmed.startswith("=>") or ARROW_TAIL.match(trimmed):
                arrow_start = find_arrow_function_start(lines, i)
                if arrow_start > 0:
                    return arrow_start

    # 2. Nearest unmatched opening brace
    for i in range(anchor_line, search_floor - 1, -1):
        line = lines[i - 1]
        if line.count("{") > line.count("}"):
            return i

    return max(1, anchor_line - BLOCK_START_FALLBACK_LINES)


def find_arrow_function_start(lines: List[str], arrow_line: int) -> int:
    """Walks back from an arrow tail until the parameter list's opening paren balances out."""
    depth = 0
    search_floor = max(1, arrow_line - ARROW_SEARCH_LINES)

    for i in range(arrow_line, search_floor - 1, -1):
        line = lines[i - 1]
        depth += line.count(")") - line.count("(")
        if depth <= 0 and "(" in line:
            return i

    return max(1, arrow_line - 1)


def find_block_end(lines: List[str], block_start: int, anchor_line: int) -> int:
    max_lines = len(lines)
    depth = 0
    seen_open = False

    for i in range(block_start, max_lines + 1):
        line = lines[i - 1]
        opens = line.count("{")
        closes = line.count("}")
        if opens > 0:
            seen_open = True
        if seen_open:
            depth += opens - closes
            if depth <= 0:
                return i

    # Never balanced: settle for the first thing that looks like a block ending
    for i in range(anchor_line, max_lines + 1):
        trimmed = lines[i - 1].strip()
        if trimmed.startswith("}") or BLOCK_TERMINATOR.match(trimmed):
            return i

    return min(max_lines, anchor_line + BLOCK_END_FALLBACK_LINES)


# --- Large files ---

def parse_patch_line_ranges(patch: str, side: str = "new") -> List[LineRange]:
    """
    Reads every "@@ -a,b +c,d @@" hunk header in a unified diff and returns the
    pre-image (side="old") or post-image (side="new") line ranges.
    """
    if not patch or not isinstance(patch, str):
        return []

    ranges = []
    for raw in patch.split("\n"):
        match = HUNK_HEADER.match(raw)
        if not match:
            continue
        if side == "old":
            start, count = match.group(1), match.group(2)
        else:
            start, count = match.group(3), match.group(4)
        start = int(start)
        count = 1 if count is None else int(count)
        # Pure deletions/insertions report a zero-length side anchored at the previous line
        start = max(1, start)
        end = start + max(count, 1) - 1
        ranges.append(LineRange(start=start, end=end))
    return ranges


def _coerce_ranges(ranges: Optional[Iterable[Union[LineRange, Dict[str, Any]]]]) -> List[LineRange]:
    coerced = []
    for item in ranges or []:
        try:
            coerced.append(item if isinstance(item, LineRange) else LineRange.model_validate(item))
        except ValueError:
            logger.warning(f"⚠️ Ignoring malformed changed range: {item!r}")
    return coerced


def merge_windows(ranges: Iterable[Union[LineRange, Dict[str, Any]]], window_size: int,
                  max_lines: int) -> List[LineRange]:
    """
    Expands each range by window_size, clamps to [1, max_lines], sorts by start
    and merges windows that overlap or touch (next.start <= current.end + 1).
    """
    expanded = []
    for r in _coerce_ranges(ranges):
        lo, hi = min(r.start, r.end), max(r.start, r.end)
        start = max(1, lo - window_size)
        end = min(max_lines, hi + window_size)
        if start <= end:
            expanded.append(LineRange(start=start, end=end))

    expanded.sort(key=lambda w: (w.start, w.end))

    merged: List[LineRange] = []
    for window in expanded:
        if merged and window.start <= merged[-1].end + 1:
            merged[-1].end = max(merged[-1].end, window.end)
        else:
            merged.append(window)
    return merged


def scope_large_file(content: str,
                     max_file_lines: int = DEFAULT_MAX_FILE_LINES,
                     changed_ranges: Optional[Iterable[Union[LineRange, Dict[str, Any]]]] = None,
                     patch: Optional[str] = None,
                     patch_side: str = "new",
                     anchor_line: Optional[int] = None,
                     prefer_enclosing_block: bool = False,
                     window_size: int = DEFAULT_SCOPE_WINDOW,
                     max_windows: int = DEFAULT_MAX_WINDOWS) -> FileScope:
    """
    Reduces a file that exceeds max_file_lines to bounded windows.

    Strategy order: enclosing block around anchor_line (when requested), then
    sliding windows over changed ranges (given directly, parsed from patch, or
    the anchor line itself), then a top-of-file window of window_size * 2 lines.
    Files within the ceiling come back whole with strategy "full_file".
    """
    lines = split_lines(content)
    line_count = len(lines)

    if line_count <= max_file_lines:
        return FileScope(
            content=content,
            line_count=line_count,
            scope_strategy="full_file",
            scope_start_line=1,
            scope_end_line=line_count,
        )

    if anchor_line and prefer_enclosing_block:
        block = extract_enclosing_block(content, anchor_line, window_size=window_size)
        logger.info(f"✂️ Scoped {line_count}-line file to enclosing block {block.bounds.start}-{block.bounds.end}")
        return FileScope(
            content="\n".join(block.target),
            line_count=line_count,
            scoped=True,
            scope_strategy="enclosing_block",
            scope_start_line=block.bounds.start,
            scope_end_line=block.bounds.end,
            windows=[LineRange(start=block.bounds.start, end=block.bounds.end)],
            note=block.note,
        )

    ranges = _coerce_ranges(changed_ranges)
    if not ranges and patch:
        ranges = parse_patch_line_ranges(patch, patch_side)
    if not ranges and anchor_line:
        ranges = [LineRange(start=anchor_line, end=anchor_line)]

    windows = merge_windows(ranges, window_size, line_count)
    if windows:
        dropped = len(windows) - max_windows
        windows = windows[:max(1, max_windows)]
        if len(windows) == 1:
            w = windows[0]
            scoped_content = "\n".join(lines[w.start - 1:w.end])
        else:
            sections = []
            for i, w in enumerate(windows, 1):
                sections.append(f"# Window {i} (lines {w.start}-{w.end})\n" + "\n".join(lines[w.start - 1:w.end]))
            scoped_content = "\n\n".join(sections)

        logger.info(f"✂️ Scoped {line_count}-line file to {len(windows)} window(s) "
                    f"{windows[0].start}-{windows[-1].end}")
        return FileScope(
            content=scoped_content,
            line_count=line_count,
            scoped=True,
            scope_strategy="sliding_window",
            scope_start_line=windows[0].start,
            scope_end_line=windows[-1].end,
            windows=windows,
            note=f"{dropped} window(s) dropped" if dropped > 0 else None,
        )

    top_end = min(line_count, window_size * 2)
    logger.info(f"✂️ No changed ranges for {line_count}-line file, using top window 1-{top_end}")
    return FileScope(
        content="\n".join(lines[:top_end]),
        line_count=line_count,
        scoped=True,
        scope_strategy="top_window",
        scope_start_line=1,
        scope_end_line=top_end,
        windows=[LineRange(start=1, end=top_end)],
        note="No changed ranges available, using top of file",
    )
