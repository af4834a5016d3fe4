# chaoscanvas/middleware.py
from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .logging import bind, unbind


# --------------------------------
# Shared helpers
# --------------------------------


def _default_path_normalizer(path: str) -> str:
    """
    Best-effort path normalizer to keep label cardinality under control.
    """
    # Collapse UUID-like segments.
    p = re.sub(
        r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}",
        ":id",
        path,
    )
    # Collapse long numeric IDs.
    p = re.sub(r"/\d{4,}", "/:id", p)
    return p


# --------------------------------
# Request context middleware
# --------------------------------


@dataclass
class RequestContextConfig:
    request_id_header: str = "X-Request-Id"
    # Upstream ids outside this shape are replaced with a fresh one.
    id_format_regex: str = r"^[0-9A-Za-z\-]{8,64}$"
    accept_upstream_request_id: bool = True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id (accepting a well-formed upstream one), binds it
    into the log context, exposes it on ``request.state`` and echoes it in
    the response headers.
    """

    def __init__(self, app, *, config: Optional[RequestContextConfig] = None):
        super().__init__(app)
        self._cfg = config or RequestContextConfig()
        self._id_pattern = re.compile(self._cfg.id_format_regex)

    def _request_id(self, request: Request) -> str:
        if self._cfg.accept_upstream_request_id:
            upstream = (request.headers.get(self._cfg.request_id_header) or "").strip()
            if upstream and self._id_pattern.match(upstream):
                return upstream
        return uuid.uuid4().hex

    async def dispatch(self, request: Request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        bind(req_id=rid)
        try:
            response = await call_next(request)
        finally:
            unbind("req_id")
        response.headers.setdefault(self._cfg.request_id_header, rid)
        return response


# --------------------------------
# Metrics middleware
# --------------------------------


@dataclass
class MetricsConfig:
    counter: Counter
    histogram: Histogram
    # Optional path normalizer for label cardinality.
    path_normalizer: Callable[[str], str] = _default_path_normalizer
    # Paths that are never recorded.
    skip_paths: Dict[str, bool] = field(default_factory=lambda: {"/metrics": True})


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Prometheus counter + histogram per route template.

    Metrics:
      - Counter:   chaos_requests_total{route, status}
      - Histogram: chaos_request_latency_seconds{route}
    """

    def __init__(
        self,
        app,
        counter: Counter,
        histogram: Histogram,
        *,
        config: Optional[MetricsConfig] = None,
    ):
        super().__init__(app)
        self._cfg = config or MetricsConfig(counter=counter, histogram=histogram)
        self.counter = counter
        self.hist = histogram

    def _route_label(self, request: Request) -> str:
        route = request.scope.get("route")
        template = getattr(route, "path", None)
        if template:
            return template
        return self._cfg.path_normalizer(request.url.path)

    async def dispatch(self, request: Request, call_next):
        if self._cfg.skip_paths.get(request.url.path):
            return await call_next(request)
        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = int(response.status_code)
            return response
        finally:
            dt = time.perf_counter() - t0
            route_label = self._route_label(request)
            self.counter.labels(route=route_label, status=str(status_code)).inc()
            self.hist.labels(route=route_label).observe(dt)
