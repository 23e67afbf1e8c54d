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
One-shot runner for GitHub Actions: reads the triggering event from
GITHUB_EVENT_NAME / GITHUB_EVENT_PATH and runs it through the bot.
"""

import os
import sys
import json
import asyncio
import logging
from typing import Mapping, Optional

from bot import build_bot
from config import ConfigError, load_settings
from logs import configure_logging, generate_correlation_id

logger = logging.getLogger(__name__)


def read_event(env: Mapping[str, str]):
    event_name = env.get("GITHUB_EVENT_NAME")
    event_path = env.get("GITHUB_EVENT_PATH")
    if not event_name or not event_path:
        raise ConfigError("❌ GITHUB_EVENT_NAME and GITHUB_EVENT_PATH must be set")
    with open(event_path, "r", encoding="utf-8") as f:
        payload = json.load(f)

    owner = repo = None
    repository = env.get("GITHUB_REPOSITORY") or ""
    if "/" in repository:
        owner, repo = repository.split("/", 1)
    return event_name, payload, owner, repo


def main(env: Optional[Mapping[str, str]] = None, bot=None) -> int:
    if env is None:
        settings = load_settings()
        env = os.environ
    else:
        settings = load_settings(env)
    configure_logging(settings.log_level)

    try:
        event_name, payload, owner, repo = read_event(env)
        bot = bot or build_bot(settings)
    except (ConfigError, OSError, ValueError) as e:
        logger.error(f"❌ {e}")
        return 1

    correlation_id = generate_correlation_id()
    print(f"--- 🚀 Z.ai Code Bot ({event_name}, run {correlation_id}) ---")
    result = asyncio.run(bot.run_event(event_name, payload, owner=owner, repo=repo,
                                       correlation_id=correlation_id))
    print(f"--- {'✅' if result.success else '⚠️'} {result.status}: {result.reason or result.command or ''} ---")
    return 1 if result.status == "failed" else 0


if __name__ == "__main__":
    sys.exit(main())
