from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.config import load_config
from line_messaging.webhook_handler import LineWebhookHandler
from survey.sweeper import Sweeper

DEFAULT_CONFIG_PATH = "config.yaml"

CONFIG_PATH = os.getenv("LINEBOT_CONFIG_PATH", DEFAULT_CONFIG_PATH)
CONFIG = load_config(CONFIG_PATH)

logging.basicConfig(
    level=str(CONFIG.get("logging", {}).get("level", "INFO")).upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

HANDLER = LineWebhookHandler(CONFIG)
SWEEPER = Sweeper(
    stores=HANDLER.stores.sweepables(),
    interval_sec=float(CONFIG.get("sweeper", {}).get("interval_sec", 300)),
)
WEBHOOK_PATH = str(CONFIG.get("line_messaging", {}).get("webhook_path", "/webhook/line"))


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    sweeper_enabled = bool(CONFIG.get("sweeper", {}).get("enabled", True))
    if sweeper_enabled:
        SWEEPER.start()
    try:
        yield
    finally:
        if sweeper_enabled:
            SWEEPER.stop()


app = FastAPI(title="LINE Survey Webhook", version="0.1.0", lifespan=lifespan)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {"ok": True}


@app.post(WEBHOOK_PATH)
async def line_webhook(
    request: Request,
    x_line_signature: str | None = Header(default=None),
) -> JSONResponse:
    body = await request.body()
    status_code, payload = await run_in_threadpool(HANDLER.handle, body, x_line_signature)
    return JSONResponse(status_code=status_code, content=payload)
