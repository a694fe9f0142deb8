import asyncio
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketsync.config import settings
from marketsync.errors import SyncError
from marketsync.routers import ebay_oauth, marketplaces
from marketsync.utils.logger import logger

app = FastAPI(
    title="Marketplace Sync API",
    description="Order ingestion, stock push and listings for the eBay marketplace",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception:
        logging.exception("Unhandled error rid=%s", rid)
        error_resp = JSONResponse({"error": "internal_error", "request_id": rid}, status_code=500)
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.http_status)


app.include_router(marketplaces.router)
app.include_router(ebay_oauth.router)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.on_event("startup")
async def start_background_loops():
    if not settings.SYNC_LOOP_ENABLED:
        logger.info("Marketplace sync loop disabled (SYNC_LOOP_ENABLED=false)")
        return
    from marketsync.workers.sync_loop import run_sync_loop

    asyncio.create_task(run_sync_loop(settings.SYNC_LOOP_INTERVAL_SECONDS))
    logger.info("Marketplace sync loop started (interval=%ss)", settings.SYNC_LOOP_INTERVAL_SECONDS)
