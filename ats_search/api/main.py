"""Search service main application."""

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..capability import DegradationController
from ..common.config import ServiceConfig
from ..common.events import create_event_subscriber
from ..common.logging import configure_logging
from ..common.metrics import get_metrics_collector
from ..embeddings.client import EmbeddingClient
from ..indexer.listener import EntityChangeListener
from ..indexer.reindexer import Reindexer
from ..indexer.sources import PostgresEntitySource
from ..search.engine import FusionWeights, HybridQueryEngine
from ..search_store.factory import create_search_store
from .routes import router as api_router

logger = structlog.get_logger("search_service")

SERVICE_NAME = "ats-search"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire every component on startup and release them on shutdown."""
    config = ServiceConfig()
    configure_logging(SERVICE_NAME, config.ats_log_level, config.ats_log_format, env=config.ats_env)
    logger.info("Starting search service")

    metrics = get_metrics_collector(SERVICE_NAME)
    controller = DegradationController(metrics=metrics)

    embedding_client = EmbeddingClient.from_config(config, metrics=metrics)
    controller.probe(embedding_client)

    store = create_search_store(config, controller, metrics=metrics)
    if config.ats_provision_on_startup:
        await store.provision()

    source = PostgresEntitySource(
        config.source_dsn,
        config.ats_source_tables,
        pool_size=config.ats_db_pool_size,
        command_timeout=config.ats_db_command_timeout,
    )

    reindexer = Reindexer(
        store,
        source,
        embedding_client,
        controller,
        workers=config.ats_reindex_workers,
        queue_size=config.ats_reindex_queue_size,
        batch_delay=config.ats_reindex_batch_delay,
        metrics=metrics,
    )
    reindexer.start()

    listener: Optional[EntityChangeListener] = None
    if config.ats_events_enabled:
        subscriber = create_event_subscriber(config.ats_redis_url, config.ats_event_channel_prefix)
        listener = EntityChangeListener(reindexer, subscriber)
        listener.start()
    else:
        logger.info("Entity change events disabled via configuration")

    engine = HybridQueryEngine(
        store,
        embedding_client,
        controller,
        default_weights=FusionWeights(
            vector=config.ats_search_vector_weight,
            lexical=config.ats_search_lexical_weight,
        ),
        max_limit=config.ats_search_max_limit,
        overfetch_factor=config.ats_search_overfetch_factor,
        metrics=metrics,
    )

    app.state.config = config
    app.state.metrics_collector = metrics
    app.state.controller = controller
    app.state.store = store
    app.state.reindexer = reindexer
    app.state.engine = engine

    logger.info(
        "Search service started successfully",
        vector_available=controller.vector_enabled,
        events_enabled=config.ats_events_enabled
    )

    yield

    logger.info("Shutting down search service")
    if listener is not None:
        await listener.stop()
    await reindexer.stop()
    await embedding_client.close()
    await source.close()
    await store.close()
    logger.info("Search service shutdown complete")


def create_app(lifespan_handler: Any = lifespan) -> FastAPI:
    """Build the FastAPI application.

    ``lifespan_handler=None`` skips component wiring so tests can populate
    ``app.state`` themselves.
    """
    app = FastAPI(
        title="ATS Search Service",
        description="Hybrid semantic and lexical search over ATS entities",
        version="0.1.0",
        lifespan=lifespan_handler
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        response.headers["X-Process-Time"] = str(duration)
        metrics_collector = getattr(request.app.state, "metrics_collector", None)
        if metrics_collector is not None:
            route = request.scope.get("route")
            metrics_collector.record_http_request(
                method=request.method,
                endpoint=getattr(route, "path", request.url.path),
                status=response.status_code,
                duration=duration
            )
        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        store = getattr(request.app.state, "store", None)
        controller = getattr(request.app.state, "controller", None)
        healthy = store is not None and await store.health_check()
        content = {
            "status": "healthy" if healthy else "unhealthy",
            "service": SERVICE_NAME,
            "vector_available": controller.vector_enabled if controller is not None else False,
        }
        if healthy:
            return content
        return JSONResponse(status_code=503, content=content)

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        metrics_collector = getattr(request.app.state, "metrics_collector", None)
        if metrics_collector is None:
            return Response(content="# No metrics available\n", media_type="text/plain")
        return Response(content=metrics_collector.get_metrics(), media_type="text/plain")

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "ats_search.api.main:app",
        host="0.0.0.0",
        port=ServiceConfig().ats_search_port,
        log_level="info"
    )
