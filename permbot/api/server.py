"""
Read-only HTTP surface for the agent: identity, health and Prometheus metrics.

Runs beside the watch loop on a daemon thread. Handlers only read the metrics registry and
static identity, so no locking with the reconcile loop is needed.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST

from permbot.agent.metrics import AgentMetrics
from permbot.version import version

logger = logging.getLogger(__name__)


def create_app(*, owner: str, metrics: AgentMetrics) -> FastAPI:
    app = FastAPI(title="Permbot agent")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests."""
        start_time = time.time()
        client = request.client.host if request.client else "-"
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, e)
            raise
        logger.info(
            "%s %s - %d (%.3fs) remote-host=%s",
            request.method,
            request.url.path,
            response.status_code,
            time.time() - start_time,
            client,
        )
        return response

    @app.get("/")
    def index() -> Dict[str, Any]:
        return {"name": "permbot", "owner": owner, "version": version()}

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/metrics")
    def prometheus_metrics() -> Response:
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app


def parse_listen_address(listen: str) -> Tuple[str, int]:
    """`host:port`, `:port` or `port` -> (host, port); host defaults to 0.0.0.0."""
    raw = (listen or "").strip()
    host, sep, port = raw.rpartition(":")
    if not sep:
        host, port = "", raw
    try:
        port_i = int(port)
    except ValueError as e:
        raise ValueError(f"invalid listen address {listen!r}") from e
    return (host or "0.0.0.0"), port_i


def serve_in_background(app: FastAPI, listen: str) -> Optional[threading.Thread]:
    """Start uvicorn on a daemon thread. Returns the thread, or None if `listen` is empty."""
    if not (listen or "").strip():
        return None
    import uvicorn

    host, port = parse_listen_address(listen)
    log_level = os.getenv("LOG_LEVEL", "info").lower()
    if log_level not in ("critical", "error", "warning", "info", "debug", "trace"):
        log_level = "info"
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level=log_level))

    t = threading.Thread(target=server.run, name="permbot-http", daemon=True)
    t.start()
    logger.info("HTTP server listening on %s:%d", host, port)
    return t
