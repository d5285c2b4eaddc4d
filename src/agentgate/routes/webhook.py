"""Generic shared-secret webhook: the reply is returned in the response."""

import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agentgate.channels.webhook import SECRET_HEADER
from agentgate.orchestrator.dispatch import DENIED_MESSAGE, FAILURE_MESSAGE, DispatchState
from agentgate.routes.limits import limiter, webhook_limit

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


class WebhookBody(BaseModel):
    message: str
    sender: str | None = None


@router.post("/webhook")
@limiter.limit(webhook_limit)
async def webhook(
    request: Request,
    body: WebhookBody,
    x_webhook_secret: str | None = Header(default=None, alias=SECRET_HEADER),
) -> JSONResponse:
    runtime = request.app.state.runtime
    adapter = runtime.channels.get("webhook")
    messages = adapter.parse_inbound(body.model_dump(), credentials=x_webhook_secret)
    if not messages:
        return JSONResponse(status_code=422, content={"error": "message is required"})
    outcome = await runtime.dispatcher.dispatch(messages[0])

    if outcome.state is DispatchState.REPLIED:
        return JSONResponse(
            status_code=200,
            content={"reply": outcome.reply, "trace_id": outcome.trace_id},
        )
    if outcome.state is DispatchState.DENIED:
        return JSONResponse(status_code=401, content={"error": DENIED_MESSAGE})
    if outcome.state is DispatchState.THROTTLED:
        retry_after = outcome.retry_after.total_seconds() if outcome.retry_after else 60
        return JSONResponse(
            status_code=429,
            content={"error": outcome.reply},
            headers={"Retry-After": str(max(1, int(retry_after + 0.999)))},
        )
    if outcome.state is DispatchState.REJECTED:
        return JSONResponse(status_code=422, content={"error": "message must not be empty"})
    logger.warning("Webhook dispatch %s failed: %s", outcome.trace_id, outcome.reason)
    return JSONResponse(
        status_code=503 if outcome.recoverable else 500,
        content={"error": FAILURE_MESSAGE, "trace_id": outcome.trace_id},
    )
