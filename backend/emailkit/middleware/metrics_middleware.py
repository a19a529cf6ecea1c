"""
ASGI middleware for tracking HTTP request metrics.
Records request count, duration, and errors.
"""
import re
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from emailkit.utils.metrics import http_requests_total, http_request_duration_seconds, errors_total

_UUID_RE = re.compile(r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', re.IGNORECASE)
_NUMERIC_SEGMENT_RE = re.compile(r'/\d+(?=/|$)')


def normalize_path(path: str) -> str:
    """Replace UUIDs and numeric ids with placeholders to keep label cardinality low."""
    path = _UUID_RE.sub('{id}', path)
    return _NUMERIC_SEGMENT_RE.sub('/{id}', path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next):
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        method = request.method
        path = normalize_path(request.url.path)

        try:
            response = await call_next(request)
        except Exception:
            errors_total.labels(error_type="exception").inc()
            raise

        status_code = response.status_code
        http_requests_total.labels(method=method, path=path, status=status_code).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(time.perf_counter() - start_time)

        # Track errors (4xx and 5xx); 402 shows up here for denied credit checks
        if status_code >= 400:
            errors_total.labels(error_type=f"{status_code // 100}xx").inc()

        return response
