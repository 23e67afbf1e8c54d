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

from typing import List, Optional
from pydantic import BaseModel

DEFAULT_MAX_CHARS = 8000
TRUNCATION_MARKER = "...[truncated, N chars omitted]"


class TruncationResult(BaseModel):
    content: str
    truncated: bool = False
    omitted: int = 0


class RangeCheck(BaseModel):
    valid: bool
    error: Optional[str] = None


class LineSlice(BaseModel):
    lines: List[str] = []
    valid: bool
    error: Optional[str] = None


def _marker(omitted: int) -> str:
    return TRUNCATION_MARKER.replace("N", str(omitted))


def truncate_context(content: str, max_chars: int = DEFAULT_MAX_CHARS) -> TruncationResult:
    """
    Bounds content to max_chars, replacing the tail with a deterministic
    "...[truncated, N chars omitted]" marker. The result never exceeds max_chars
    unless max_chars is smaller than the marker itself.
    """
    if not isinstance(content, str):
        raise TypeError("content must be a string")
    if isinstance(max_chars, bool) or not isinstance(max_chars, int) or max_chars < 1:
        raise TypeError("max_chars must be a positive integer")

    if len(content) <= max_chars:
        return TruncationResult(content=content)

    available = max_chars - len(TRUNCATION_MARKER)
    if available <= 0:
        return TruncationResult(content=_marker(len(content)), truncated=True, omitted=len(content))

    omitted = len(content) - available
    # N can gain a digit each time the kept text shrinks, so trim until the marker fits
    while available > 0 and available + len(_marker(omitted)) > max_chars:
        available -= 1
        omitted += 1

    return TruncationResult(
        content=content[:available] + _marker(omitted),
        truncated=True,
        omitted=omitted,
    )


def split_lines(content: str) -> List[str]:
    """Splits text into lines the way every public operation counts them (1-indexed, '\\n' separated)."""
    return content.split("\n")


def validate_range(start_line, end_line, max_lines) -> RangeCheck:
    for value in (start_line, end_line, max_lines):
        if isinstance(value, bool) or not isinstance(value, int):
            return RangeCheck(valid=False, error="All parameters must be integers")

    if start_line < 1:
        return RangeCheck(valid=False, error=f"Start line must be >= 1, got {start_line}")
    if end_line > max_lines:
        return RangeCheck(valid=False, error=f"End line {end_line} exceeds content max lines {max_lines}")
    if start_line > end_line:
        return RangeCheck(valid=False, error=f"Start line {start_line} cannot exceed end line {end_line}")
    return RangeCheck(valid=True)


def extract_lines(content: str, start_line: int, end_line: int) -> LineSlice:
    """Returns the exact 1-indexed, inclusive [start_line, end_line] slice, or an invalid LineSlice."""
    if not isinstance(content, str):
        raise TypeError("content must be a string")

    lines = split_lines(content)
    check = validate_range(start_line, end_line, len(lines))
    if not check.valid:
        return LineSlice(valid=False, error=check.error)
    return LineSlice(lines=lines[start_line - 1:end_line], valid=True)
