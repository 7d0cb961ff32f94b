import asyncio
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.models_sqlalchemy import engine
from app.routers import cron, dropship_lots, webhooks
from app.utils.logger import logger


app = FastAPI(title="Drop-ship Fulfillment Pipeline", version="1.0.0")


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logger.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(webhooks.router)
app.include_router(cron.router)
app.include_router(dropship_lots.router)


@app.on_event("startup")
async def startup_event():
    if settings.RECOVERY_LOOP_ENABLED:
        from app.workers.recovery_loop import run_recovery_loop

        logger.info("Starting recovery loop (interval=%s seconds)...", settings.RECOVERY_INTERVAL_SECONDS)
        asyncio.create_task(run_recovery_loop(settings.RECOVERY_INTERVAL_SECONDS))
    else:
        logger.info("Recovery loop disabled; expecting /api/cron/process to be called externally")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
def health_db():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        return JSONResponse({"status": "error", "database": "unavailable"}, status_code=503)
