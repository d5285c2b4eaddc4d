"""Telegram webhook routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/telegram", tags=["telegram"])


@router.post("")
async def inbound(request: Request) -> JSONResponse:
    """Handle Telegram Bot API webhook updates; dispatch runs in the background."""
    runtime = request.app.state.runtime
    adapter = runtime.channels.get("telegram")
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="telegram_not_configured",
        )

    payload: dict[str, Any] = await request.json()
    messages = adapter.parse_inbound(payload)
    if not messages:
        return JSONResponse(status_code=200, content={"accepted": True, "ignored": True})

    for msg in messages:
        runtime.spawn(runtime.dispatcher.dispatch(msg), name=f"dispatch-{msg.external_msg_id}")
    logger.info("Accepted %d telegram message(s)", len(messages))
    return JSONResponse(status_code=200, content={"accepted": True, "count": len(messages)})
