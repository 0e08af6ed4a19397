"""
Fleet status endpoint: Prometheus scrape plus a JSON health summary.

Only started when the run is configured with a metrics port. The exporter
is pull-based: the fleet never pushes values, so each scrape asks the
caller to refresh the registry from the supervisor first. /healthz mirrors
the supervisor's health dict and turns its status into an HTTP code.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

HealthFn = Callable[[], dict[str, Any]]
RefreshFn = Callable[[], None]

# Text exposition format 0.0.4, which every Prometheus server accepts
EXPOSITION_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

# A fleet in these states has nothing left to soak-test against
UNHEALTHY_STATUSES = frozenset({"failed", "stopped"})


def create_metrics_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    refresh_fn: RefreshFn | None = None,
) -> web.Application:
    """Build the app serving GET /metrics and GET /healthz.

    Without ``health_fn`` the health route answers ``{"status": "ok"}``.
    """

    async def scrape(request: web.Request) -> web.Response:
        if refresh_fn is not None:
            refresh_fn()
        return web.Response(
            body=generate_latest(registry),
            headers={"Content-Type": EXPOSITION_CONTENT_TYPE},
        )

    async def health(request: web.Request) -> web.Response:
        info = health_fn() if health_fn is not None else {"status": "ok"}
        return web.Response(
            body=orjson.dumps(info),
            status=503 if info.get("status") in UNHEALTHY_STATUSES else 200,
            content_type="application/json",
        )

    app = web.Application()
    app.router.add_get("/metrics", scrape)
    app.router.add_get("/healthz", health)
    return app


async def start_metrics_server(
    registry: CollectorRegistry,
    host: str = "127.0.0.1",
    port: int = 9090,
    *,
    health_fn: HealthFn | None = None,
    refresh_fn: RefreshFn | None = None,
) -> web.AppRunner:
    """
    Serve fleet metrics until stop_metrics_server() is called.

    Binds loopback by default; the endpoint exposes fleet size and health,
    so listening more widely is an explicit choice of ``host``.
    """
    runner = web.AppRunner(
        create_metrics_app(registry, health_fn=health_fn, refresh_fn=refresh_fn),
        access_log=None,
    )
    await runner.setup()
    await web.TCPSite(runner, host, port).start()
    logger.info("Fleet metrics on http://%s:%d/metrics", host, port)
    return runner


async def stop_metrics_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("Fleet metrics endpoint closed")
