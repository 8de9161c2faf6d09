"""
Prometheus Metrics

ReaperMetrics owns a CollectorRegistry and the counters the reconciler
increments. One instance is created in main and handed to the reconciler;
tests build their own so counts never leak between them.

The registry is exposed by a small FastAPI app served with uvicorn.
"""

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest
from starlette.responses import Response

logger = logging.getLogger(__name__)

SIDECAR_LABELS = ("container", "job_name", "namespace")


class ReaperMetrics:
    """Counters for sidecar shutdown outcomes."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.sidecar_shutdowns = Counter(
            "sidecar_shutdowns",
            "Number of sidecar shutdowns",
            SIDECAR_LABELS,
            registry=self.registry,
        )
        self.failed_sidecar_shutdowns = Counter(
            "failed_sidecar_shutdowns",
            "Number of failed sidecar shutdowns",
            SIDECAR_LABELS,
            registry=self.registry,
        )
        self.unsupported_sidecars = Counter(
            "unsupported_sidecars",
            "Number of running sidecars without a defined shutdown action",
            SIDECAR_LABELS,
            registry=self.registry,
        )
        self.total_unsuccessful_event_posts = Counter(
            "total_unsuccessful_event_posts",
            "Total number of unsuccessful Kubernetes Event posts",
            registry=self.registry,
        )

    def render(self) -> bytes:
        """Encode every metric in the registry in the Prometheus text format."""
        return generate_latest(self.registry)


def create_metrics_app(metrics: ReaperMetrics) -> FastAPI:
    app = FastAPI(title="Sidecar Reaper Metrics")

    @app.get("/livez")
    async def liveness():
        """Liveness probe: the controller process is up"""
        return JSONResponse(content={"status": "ok"})

    @app.get("/")
    @app.get("/metrics")
    async def scrape():
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app


def create_metrics_server(metrics: ReaperMetrics, host: str, port: int) -> uvicorn.Server:
    """
    Build the uvicorn server for the metrics app.

    Await server.serve() to run it; set server.should_exit to stop accepting
    connections and drain the ones in flight.
    """
    config = uvicorn.Config(
        create_metrics_app(metrics),
        host=host,
        port=port,
        log_level="warning",
        lifespan="off",
    )
    server = uvicorn.Server(config)
    logger.info(f"Serving prometheus metrics on http://{host}:{port}")
    return server
