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

import os
import logging
from typing import List, Mapping, Optional
from dotenv import load_dotenv
from pydantic import BaseModel

from api import DEFAULT_TIMEOUT_MS, DEFAULT_MAX_RETRIES, DEFAULT_BASE_DELAY_MS
from code_scope import DEFAULT_MAX_FILE_LINES

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "glm-4.7"
# OpenAI-compatible root; the SDK appends /chat/completions
DEFAULT_BASE_URL = "https://api.z.ai/api/coding/paas/v4"


class ConfigError(Exception):
    """Required configuration is missing or unusable. Fatal to the run."""


class Settings(BaseModel):
    github_token: Optional[str] = None
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    azure_key: Optional[str] = None
    azure_url: Optional[str] = None
    azure_deployment: str = "gpt-4o"
    azure_api_version: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_file_lines: int = DEFAULT_MAX_FILE_LINES
    webhook_secret: Optional[str] = None
    log_level: str = "INFO"

    @property
    def use_azure(self) -> bool:
        return bool(self.azure_key and self.azure_url)

    def validate_required(self) -> List[str]:
        problems = []
        if not self.github_token:
            problems.append("GITHUB_TOKEN is not set")
        if not self.api_key and not self.use_azure:
            problems.append("ZAI_API_KEY (or OPENAI_API_KEY / AZURE_OPENAI_KEY + AZURE_OPENAI_URL) is not set")
        for name in ("timeout_ms", "max_retries", "base_delay_ms", "max_file_lines"):
            if getattr(self, name) < 0:
                problems.append(f"{name} must not be negative")
        return problems

    def require(self) -> "Settings":
        problems = self.validate_required()
        if problems:
            raise ConfigError("❌ Missing or invalid configuration: " + "; ".join(problems))
        return self


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"❌ {name} must be an integer, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> Settings:
    """Reads settings from the environment, loading a .env file first unless an explicit env is given."""
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    return Settings(
        github_token=env.get("GITHUB_TOKEN"),
        api_key=env.get("ZAI_API_KEY") or env.get("OPENAI_API_KEY"),
        model=env.get("ZAI_MODEL") or DEFAULT_MODEL,
        base_url=env.get("ZAI_BASE_URL") or DEFAULT_BASE_URL,
        azure_key=env.get("AZURE_OPENAI_KEY") or env.get("AZURE_OPENAI_API_KEY"),
        azure_url=env.get("AZURE_OPENAI_URL"),
        azure_deployment=env.get("AZURE_DEPLOYMENT_NAME") or "gpt-4o",
        azure_api_version=env.get("AZURE_OPENAI_API_VERSION"),
        timeout_ms=_int(env, "ZAI_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
        max_retries=_int(env, "ZAI_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        base_delay_ms=_int(env, "ZAI_BASE_DELAY_MS", DEFAULT_BASE_DELAY_MS),
        max_file_lines=_int(env, "ZAI_MAX_FILE_LINES", DEFAULT_MAX_FILE_LINES),
        webhook_secret=env.get("GITHUB_WEBHOOK_SECRET") or None,
        log_level=env.get("LOG_LEVEL") or "INFO",
    )
