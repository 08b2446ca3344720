import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import settings
from src.observability import incr_metric, log_event
from src.routers import orders, shopify, webhooks

app = FastAPI(title="Marketplace Order Sync", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    log_event(
        "http_request",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None)
    incr_metric("http.unhandled_exception", path=request.url.path)
    log_event(
        "unhandled_exception",
        level=logging.ERROR,
        request_id=request_id,
        path=request.url.path,
        error=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": {"error": "Internal server error", "request_id": request_id}},
    )


app.include_router(webhooks.router)
app.include_router(orders.router)
app.include_router(shopify.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "marketplace-order-sync"}


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "webhook_signatures": "enforced" if settings.shopify_webhook_secret else "skipped_no_secret",
        "fulfillment_lookup": bool(settings.shopify_store and settings.shopify_admin_api_token),
        "order_status_guard_mode": settings.order_status_guard_mode,
    }
