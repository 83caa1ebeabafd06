"""
VMCluster Intent API

Submits VMCluster documents for the operator's reconcile loop and reads
back what it reports. The API never creates workloads itself; it only
writes the cluster object and lets the operator converge it.

Store failures map onto HTTP the same way the reconcile loop classifies
them:
  NotFoundError         → 404
  ConflictError         → 409
  TransientStoreError   → 503 with Retry-After
  anything else         → 500
"""

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import redis
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from vmcluster_operator import __version__
from vmcluster_operator.api.routers.clusters import get_store, limiter, router as clusters_router, update_gauges
from vmcluster_operator.config import Settings, settings as default_settings
from vmcluster_operator.errors import ConflictError, NotFoundError, TransientStoreError
from vmcluster_operator.services.redis_service import get_redis

logger = logging.getLogger("intent-api")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _redis_status() -> str:
    r = get_redis()
    if r is None:
        return "disabled"
    try:
        r.ping()
        return "connected"
    except redis.RedisError:
        return "disconnected"


def _register_error_handlers(app: FastAPI, conf: Settings) -> None:
    retry_after = str(max(1, math.ceil(conf.RETRY_BASE_DELAY)))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TransientStoreError)
    async def store_unavailable_handler(request: Request, exc: TransientStoreError):
        logger.warning(f"{request.method} {request.url.path}: store unavailable: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": f"Kubernetes API unavailable: {exc}"},
            headers={"Retry-After": retry_after},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(conf: Settings = default_settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"VMCluster Intent API serving {conf.api_version}/{conf.CRD_PLURAL}")
        yield
        logger.info("VMCluster Intent API shutting down")

    app = FastAPI(
        title="VMCluster Operator API",
        description="Intent API for VictoriaMetrics clusters managed by the VMCluster operator",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in conf.CORS_ORIGINS.split(",")],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    _register_error_handlers(app, conf)
    app.include_router(clusters_router, prefix="/api")

    @app.get("/health")
    async def health(store=Depends(get_store)):
        """Liveness plus reachability of the Kubernetes API and Redis."""
        body = {"status": "healthy", "kubernetes": "reachable", "redis": _redis_status(),
                "timestamp": _now(), "version": __version__}
        try:
            store.list_clusters()
        except TransientStoreError as e:
            logger.warning(f"Health check: Kubernetes API unreachable: {e}")
            body.update(status="degraded", kubernetes="unreachable")
            return JSONResponse(status_code=503, content=body)
        return body

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics(store=Depends(get_store)):
        try:
            update_gauges(store)
        except TransientStoreError as e:
            # gauges stay stale; counters still render
            logger.warning(f"Could not refresh cluster gauges: {e}")
        return PlainTextResponse(content=generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


def run():
    logging.basicConfig(
        level=default_settings.LOG_LEVEL.upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(
        "vmcluster_operator.api.main:app",
        host=default_settings.API_HOST,
        port=default_settings.API_PORT,
        log_level=default_settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
