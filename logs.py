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

import sys
import time
import string
import secrets
import logging
from typing import Any, Dict

from api import redact_secrets

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_BASE36 = string.digits + string.ascii_lowercase


class RedactingFilter(logging.Filter):
    """Scrubs tokens, API keys and credentialed URLs from every record before it is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in root.handlers:
        if getattr(handler, "_zai_handler", False):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RedactingFilter())
    handler._zai_handler = True
    root.addHandler(handler)


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_correlation_id() -> str:
    """"<base36 millis>-<8 random base36 chars>", e.g. "lx2k9p0a-4f8zq1mc"."""
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"{_base36(int(time.time() * 1000))}-{random_part}"


class RunLogger(logging.LoggerAdapter):
    """Prefixes each message with the run's key=value context."""

    def process(self, msg, kwargs):
        fields = " ".join(f"{k}={v}" for k, v in self.extra.items() if v is not None)
        return f"{fields} {msg}" if fields else msg, kwargs

    def bind(self, **fields) -> "RunLogger":
        merged: Dict[str, Any] = dict(self.extra)
        merged.update(fields)
        return RunLogger(self.logger, merged)


def get_run_logger(correlation_id: str, name: str = "zai", **fields) -> RunLogger:
    extra = {"correlation_id": correlation_id}
    extra.update(fields)
    return RunLogger(logging.getLogger(name), extra)
