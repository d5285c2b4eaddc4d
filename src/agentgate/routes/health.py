"""Health and readiness routes."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, bool]:
    return {"ok": True}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    runtime = request.app.state.runtime
    model_ok = await runtime.model.health_check()
    heartbeat = runtime.heartbeat
    payload = {
        "ok": model_ok,
        "model": model_ok,
        "channels": sorted(runtime.channels.all()),
        "open_channels": runtime.dispatcher.authenticator.open_channels(),
        "heartbeat": {
            "enabled": heartbeat is not None,
            "running": heartbeat.running if heartbeat else False,
            "fired": heartbeat.fired if heartbeat else 0,
            "skipped": heartbeat.skipped if heartbeat else 0,
        },
        "in_flight": runtime.in_flight,
    }
    return JSONResponse(status_code=200 if model_ok else 503, content=payload)
