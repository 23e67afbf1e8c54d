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

import re
from typing import List, Optional
from pydantic import BaseModel, Field

COMMAND_PREFIX = "/zai"
ALLOWED_COMMANDS = ["ask", "review", "explain", "suggest", "compare", "describe", "help"]


class ErrorTypes:
    UNKNOWN_COMMAND = "unknown_command"
    MALFORMED_INPUT = "malformed_input"
    EMPTY_INPUT = "empty_input"


class CommandError(BaseModel):
    type: str
    message: str


class ParsedCommand(BaseModel):
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    raw: Optional[str] = None
    error: Optional[CommandError] = None

    @property
    def is_valid(self) -> bool:
        return self.error is None


MENTION_PATTERNS = [
    re.compile(r"^@zai[-_]?bot\s+", re.IGNORECASE),
    re.compile(r"^@zai\s+", re.IGNORECASE),
]


def normalize_input(text) -> str:
    """Trims and rewrites a leading @zai-bot / @zai mention into the /zai form."""
    if not isinstance(text, str):
        return ""
    normalized = text.strip()
    for pattern in MENTION_PATTERNS:
        normalized = pattern.sub(f"{COMMAND_PREFIX} ", normalized)
    return normalized


def _failure(raw, error_type: str, message: str) -> ParsedCommand:
    return ParsedCommand(raw=raw, error=CommandError(type=error_type, message=message))


def parse_command(text) -> ParsedCommand:
    if text is None or text == "":
        return _failure(text, ErrorTypes.EMPTY_INPUT, "Input is empty")

    normalized = normalize_input(text)
    if not normalized.lower().startswith(COMMAND_PREFIX):
        if not normalized:
            return _failure(text, ErrorTypes.EMPTY_INPUT, "Input is empty")
        return _failure(text, ErrorTypes.MALFORMED_INPUT, f"Input must start with {COMMAND_PREFIX}")

    rest = normalized[len(COMMAND_PREFIX):].strip()
    if not rest:
        return _failure(text, ErrorTypes.MALFORMED_INPUT, f"Missing command after {COMMAND_PREFIX}")

    parts = rest.split()
    command = parts[0].lower()
    if command not in ALLOWED_COMMANDS:
        return _failure(text, ErrorTypes.UNKNOWN_COMMAND, f"Unknown command: {command}")

    return ParsedCommand(command=command, args=parts[1:], raw=text)
