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
Resilient chat-completion calls: progressive per-attempt timeouts, exponential
backoff with jitter, an error taxonomy that decides retryability, and a
one-shot escalation to a compact fallback prompt after a timeout.
"""

import re
import json
import time
import random
import asyncio
import logging
from enum import Enum
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 2000
MIN_ATTEMPT_TIMEOUT_MS = 10000
MAX_JITTER_MS = 1000
# Later attempts get shorter budgets so total latency stays bounded
TIMEOUT_MULTIPLIERS = (1.0, 0.67, 0.5, 0.33)
MAX_ERROR_MESSAGE_CHARS = 500


class ErrorCategory(str, Enum):
    AUTH = "auth"
    VALIDATION = "validation"
    PROVIDER = "provider"
    RATE_LIMIT = "rate-limit"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


USER_MESSAGES = {
    ErrorCategory.AUTH: "Authentication failed. Please verify your API credentials.",
    ErrorCategory.VALIDATION: "Invalid input provided. Please check your request and configuration.",
    ErrorCategory.PROVIDER: "External service request failed. Please try again later.",
    ErrorCategory.RATE_LIMIT: "Rate limit exceeded. Please wait before retrying.",
    ErrorCategory.TIMEOUT: "Request timed out. Please try again.",
    ErrorCategory.INTERNAL: "An unexpected error occurred. Please try again.",
}


class Categorized(BaseModel):
    category: ErrorCategory
    retryable: bool


class ApiError(BaseModel):
    category: ErrorCategory
    message: str
    retryable: bool
    attempts: int
    total_duration_ms: int


class RetryOutcome(BaseModel):
    """One per logical call, however many physical attempts it took."""
    success: bool
    data: Optional[Any] = None
    used_fallback: bool = False
    error: Optional[ApiError] = None


class ChatRequest(BaseModel):
    prompt: str
    model: Optional[str] = None
    api_key: Optional[str] = None
    system_prompt: Optional[str] = None


class AttemptTimeoutError(Exception):
    """Raised when a single attempt exceeds its per-attempt budget."""


class EmptyResponseError(Exception):
    """The endpoint answered 2xx without any message content."""


TIMEOUT_PATTERN = re.compile(r"timeout|timed out|etimedout", re.IGNORECASE)
NETWORK_PATTERN = re.compile(
    r"econnrefused|enetunreach|connection refused|network is unreachable|connection error|failed to establish",
    re.IGNORECASE,
)
EMPTY_RESPONSE_PATTERN = re.compile(r"empty response", re.IGNORECASE)
STATUS_PATTERN = re.compile(r"\b([45]\d{2})\b")

REDACTIONS = [
    (re.compile(r"(Bearer\s+)[^\s'\",}]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(api[_-]?key['\"]?\s*[=:]\s*['\"]?)[^\s,}'\"]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(Authorization['\"]?\s*:\s*['\"]?)(?!Bearer\s)[^\s,}'\"]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"https?://[^\s/@:]+:[^\s@]+@[^\s]*", re.IGNORECASE), "[URL_REDACTED]"),
]
RAW_BODY_PATTERN = re.compile(r"\{[^{}]*[\"'][a-zA-Z_]*[\"']\s*:\s*[\"'][^\"']*[\"'][^{}]*\}")


def _error_text(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        text = str(error)
        if not text:
            # asyncio.TimeoutError and friends stringify to ""
            text = type(error).__name__
        return text
    return str(error)


def extract_status_code(message: str) -> Optional[int]:
    match = STATUS_PATTERN.search(message or "")
    return int(match.group(1)) if match else None


def categorize_error(error: Any) -> Categorized:
    """
    Message-pattern classification, checked in order: timeout, network,
    429, 401/403, 400, 5xx, empty response, everything else internal.
    """
    message = _error_text(error)
    status = getattr(error, "status_code", None)
    if not isinstance(status, int):
        status = extract_status_code(message)

    if TIMEOUT_PATTERN.search(message) or isinstance(error, (asyncio.TimeoutError, AttemptTimeoutError)):
        return Categorized(category=ErrorCategory.TIMEOUT, retryable=True)
    if NETWORK_PATTERN.search(message):
        return Categorized(category=ErrorCategory.PROVIDER, retryable=True)
    if status == 429:
        return Categorized(category=ErrorCategory.RATE_LIMIT, retryable=True)
    if status in (401, 403):
        return Categorized(category=ErrorCategory.AUTH, retryable=False)
    if status == 400:
        return Categorized(category=ErrorCategory.VALIDATION, retryable=False)
    if status is not None and 500 <= status < 600:
        return Categorized(category=ErrorCategory.PROVIDER, retryable=True)
    if EMPTY_RESPONSE_PATTERN.search(message) or isinstance(error, EmptyResponseError):
        return Categorized(category=ErrorCategory.PROVIDER, retryable=True)
    return Categorized(category=ErrorCategory.INTERNAL, retryable=False)


def _nested_provider_message(error: Any) -> Optional[str]:
    """Pulls error.message out of a structured provider body, if the error carries one."""
    body = getattr(error, "body", None)
    if body is None:
        text = _error_text(error)
        start = text.find("{")
        if start == -1:
            return None
        try:
            body = json.loads(text[start:])
        except ValueError:
            return None

    if isinstance(body, Mapping):
        nested = body.get("error", body)
        if isinstance(nested, Mapping) and isinstance(nested.get("message"), str):
            return nested["message"]
        if isinstance(nested, str):
            return nested
        if isinstance(body.get("message"), str):
            return body["message"]
    return None


def redact_secrets(text: str) -> str:
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_error_message(error: Any) -> str:
    """
    Produces a message safe to log or show: secrets redacted, raw provider
    bodies reduced to their nested human message, length capped.
    """
    text = _error_text(error)
    if not text:
        return "An unknown error occurred"

    nested = _nested_provider_message(error)
    if nested:
        status = getattr(error, "status_code", None)
        if not isinstance(status, int):
            status = extract_status_code(text)
        text = f"Provider error {status}: {nested}" if status else f"Provider error: {nested}"
    else:
        text = RAW_BODY_PATTERN.sub("[DATA_REDACTED]", text)

    text = redact_secrets(text)

    if len(text) > MAX_ERROR_MESSAGE_CHARS:
        text = text[:MAX_ERROR_MESSAGE_CHARS] + "..."
    return text


def get_user_message(category: Any) -> str:
    try:
        return USER_MESSAGES[ErrorCategory(category)]
    except ValueError:
        return USER_MESSAGES[ErrorCategory.INTERNAL]


def attempt_timeout_ms(base_timeout_ms: int, attempt: int) -> int:
    multiplier = TIMEOUT_MULTIPLIERS[min(attempt, len(TIMEOUT_MULTIPLIERS) - 1)]
    return max(MIN_ATTEMPT_TIMEOUT_MS, int(base_timeout_ms * multiplier))


def backoff_delay_ms(base_delay_ms: int, attempt: int) -> int:
    return base_delay_ms * (2 ** attempt) + random.randint(0, MAX_JITTER_MS - 1)


async def call_with_retry(
    fn: Callable[[Any, int], Awaitable[Any]],
    payload: Any,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    base_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    fallback: Optional[Callable[[], Any]] = None,
    on_fallback: Optional[Callable[[Any], Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome:
    """
    Runs fn(payload, timeout_ms) until it succeeds or the budget is spent.

    After a timeout on attempt >= 1, if fallback is given and unused, the
    payload is swapped once for fallback() and on_fallback is notified; every
    later attempt sends the fallback payload.
    """
    started = time.monotonic()
    current_payload = payload
    used_fallback = False
    attempt = 0

    while True:
        timeout_ms = attempt_timeout_ms(base_timeout_ms, attempt)
        try:
            data = await asyncio.wait_for(fn(current_payload, timeout_ms), timeout=timeout_ms / 1000)
            if attempt > 0:
                logger.info(f"✅ Chat completion succeeded on attempt {attempt + 1}")
            return RetryOutcome(success=True, data=data, used_fallback=used_fallback)
        except asyncio.TimeoutError:
            error: BaseException = AttemptTimeoutError(f"Request timed out after {timeout_ms}ms")
        except Exception as e:
            error = e

        categorized = categorize_error(error)
        logger.warning(f"⚠️ Attempt {attempt + 1}/{max_retries + 1} failed "
                       f"[{categorized.category.value}]: {sanitize_error_message(error)}")

        if (categorized.category == ErrorCategory.TIMEOUT and attempt >= 1
                and fallback is not None and not used_fallback):
            used_fallback = True
            try:
                replacement = fallback()
            except Exception as e:
                logger.warning(f"⚠️ Could not build fallback prompt, keeping the original: {sanitize_error_message(e)}")
                replacement = None
            if replacement is not None:
                current_payload = replacement
                logger.info("🔻 Switching to compact fallback prompt after timeout")
            if on_fallback is not None:
                try:
                    notified = on_fallback({"attempt": attempt, "timeout_ms": timeout_ms})
                    if asyncio.iscoroutine(notified):
                        await notified
                except Exception as e:
                    # The observer only reports progress; the call itself carries on
                    logger.warning(f"⚠️ Fallback observer failed: {sanitize_error_message(e)}")

        if not categorized.retryable or attempt >= max_retries:
            return RetryOutcome(
                success=False,
                used_fallback=used_fallback,
                error=ApiError(
                    category=categorized.category,
                    message=sanitize_error_message(error),
                    retryable=categorized.retryable,
                    attempts=attempt + 1,
                    total_duration_ms=int((time.monotonic() - started) * 1000),
                ),
            )

        delay_ms = backoff_delay_ms(base_delay_ms, attempt)
        logger.info(f"⏳ Retrying in {delay_ms / 1000:.1f}s...")
        await sleep(delay_ms / 1000)
        attempt += 1


class ApiClient:
    """Binds a chat backend to the retry policy. The backend needs an async complete(request, timeout_ms)."""

    def __init__(self, backend, timeout_ms: int = DEFAULT_TIMEOUT_MS, max_retries: int = DEFAULT_MAX_RETRIES,
                 base_delay_ms: int = DEFAULT_BASE_DELAY_MS, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.backend = backend
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep

    async def call(self, request: ChatRequest,
                   fallback: Optional[Callable[[], Optional[ChatRequest]]] = None,
                   on_fallback: Optional[Callable[[Any], Any]] = None) -> RetryOutcome:
        return await call_with_retry(
            self.backend.complete,
            request,
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            base_timeout_ms=self.timeout_ms,
            fallback=fallback,
            on_fallback=on_fallback,
            sleep=self._sleep,
        )
