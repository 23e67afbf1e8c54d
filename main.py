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
import hmac
import asyncio
import json
import hashlib
import logging
from typing import Optional
from fastapi import FastAPI, Request, HTTPException, Depends
from dotenv import load_dotenv

from bot import ZaiBot, build_bot
from config import Settings, ConfigError, load_settings
from logs import configure_logging

load_dotenv()
configure_logging(os.getenv("LOG_LEVEL", "INFO"))

logger = logging.getLogger(__name__)

app = FastAPI(title="Z.ai Code Bot")


def get_settings() -> Settings:
    return load_settings(dotenv=False)


def get_bot(settings: Settings = Depends(get_settings)) -> ZaiBot:
    try:
        return build_bot(settings)
    except ConfigError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="Bot is not configured")


def run_event_blocking(bot: ZaiBot, event_name: str, payload: dict, delivery: Optional[str]):
    """Runs one delivery on its own event loop; meant for a worker thread."""
    return asyncio.run(bot.run_event(event_name, payload, correlation_id=delivery))


def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Checks GitHub's X-Hub-Signature-256 header ("sha256=<hex hmac>") in constant time."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256="):])


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/webhook")
async def webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    bot: ZaiBot = Depends(get_bot)
):
    """GitHub webhook receiver: runs the delivery to completion and reports what happened"""
    body = await request.body()

    if settings.webhook_secret and not verify_signature(
            settings.webhook_secret, body, request.headers.get("X-Hub-Signature-256")):
        logger.warning("⚠️ Rejected webhook delivery with an invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_name = request.headers.get("X-GitHub-Event")
    if not event_name:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")
    if event_name == "ping":
        return {"status": "pong"}

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    delivery = request.headers.get("X-GitHub-Delivery")
    try:
        # GitHub calls are blocking requests with sleep-based backoff, so keep them off the server loop
        result = await asyncio.to_thread(run_event_blocking, bot, event_name, payload, delivery)
    except Exception as e:
        logger.exception(f"❌ Webhook run failed: {e}")
        raise HTTPException(status_code=500, detail="Event processing failed")

    return result.model_dump()
