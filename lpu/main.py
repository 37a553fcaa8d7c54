# lpu/main.py
import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lpu import models  # noqa: F401  (registreert SQLAlchemy modellen)
from lpu.core.errors import ConfigurationError, PriceListBusyError, PriceListNotFoundError
from lpu.core.logging_config import logger, setup_logging
from lpu.core.settings import settings
from lpu.db import Base, engine
from lpu.observability.metrics import router as metrics_router
from lpu.routers import catalog, price_lists, pricing_rules

# ----------------------------------------------------
# App init
# ----------------------------------------------------
app = FastAPI(title="LPU Pricing", version="0.1.0")

setup_logging()
logger.info("startup", service=settings.APP_NAME)


# ----------------------------------------------------
# Health
# ----------------------------------------------------
@app.get("/health", include_in_schema=True)
def health() -> dict:
    return {"status": "ok"}


# ----------------------------------------------------
# Logging middleware
# ----------------------------------------------------
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    start = time.time()

    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    tenant_id = request.headers.get("X-Tenant-Id", "unknown")
    client_ip = request.client.host if request.client else "unknown"

    # engine logs inside this request carry the same ids
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, tenant_id=tenant_id)

    bound_logger = logger.bind(
        ip=client_ip,
        endpoint=str(request.url.path),
        method=request.method,
    )

    bound_logger.info("request_started")
    response = await call_next(request)
    latency_ms = round((time.time() - start) * 1000, 2)

    bound_logger.bind(status_code=response.status_code, latency_ms=latency_ms).info(
        "request_finished"
    )
    response.headers["X-Request-ID"] = request_id
    return response


# ----------------------------------------------------
# Middleware
# ----------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------------------------------
# Error mapping
# ----------------------------------------------------
@app.exception_handler(PriceListNotFoundError)
def price_list_not_found_handler(request: Request, exc: PriceListNotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.to_dict()})


@app.exception_handler(PriceListBusyError)
def price_list_busy_handler(request: Request, exc: PriceListBusyError):
    return JSONResponse(status_code=409, content={"detail": exc.to_dict()})


@app.exception_handler(ConfigurationError)
def invalid_rule_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=422, content={"detail": exc.to_dict()})


# ----------------------------------------------------
# Routers
# ----------------------------------------------------
app.include_router(price_lists.router)
app.include_router(pricing_rules.router)
app.include_router(catalog.router)
app.include_router(metrics_router)  # /metrics


# ----------------------------------------------------
# Startup
# ----------------------------------------------------
@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
