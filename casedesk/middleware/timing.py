"""
Per-request id and timing.

Every response carries X-Request-ID (echoed from the caller when sent) and
X-Request-Duration-Ms. Server errors and slow calls are logged at WARNING
or above with the calling actor attached; everything else goes to DEBUG.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health"})

SLOW_THRESHOLD_MS = 1000
# Spreadsheet imports run for minutes by design
SLOW_THRESHOLD_OVERRIDES_MS = {"/api/v1/dtrs/bulk-import": 60_000}


def _request_context(response, duration_ms: float) -> dict:
    actor = getattr(g, "actor", None)
    return {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "remote_addr": request.remote_addr,
        "request_id": getattr(g, "request_id", ""),
        "actor": actor.user_id if actor else None,
        "role": actor.role if actor else None,
    }


def init_request_timing(app: Flask):
    """Attach the timing hooks to *app*."""

    @app.before_request
    def _tag_request():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_response(response):
        started = getattr(g, "request_start", None)
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        if request.path in _QUIET_PATHS:
            return response

        extra = _request_context(response, duration_ms)
        summary = (request.method, request.path, response.status_code, duration_ms)
        if response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)", *summary, extra=extra)
        elif duration_ms > SLOW_THRESHOLD_OVERRIDES_MS.get(request.path, SLOW_THRESHOLD_MS):
            logger.warning("Slow request: %s %s %d (%.0fms)", *summary, extra=extra)
        else:
            logger.debug("%s %s %d (%.0fms)", *summary, extra=extra)
        return response
