import re
import time

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.requests import Request
from starlette.responses import Response

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

db_pool_checked_out = Gauge(
    "db_pool_checked_out",
    "Number of database connections currently checked out"
)

db_pool_size = Gauge(
    "db_pool_size",
    "Total database connection pool size"
)

votes_total = Counter(
    "votes_total",
    "Vote requests by kind and outcome",
    ["kind", "outcome"]
)

tokens_awarded_total = Counter(
    "tokens_awarded_total",
    "Tokens credited to internal balances for accepted votes",
    ["kind"]
)

token_distributions_total = Counter(
    "token_distributions_total",
    "Attempted wallet distributions by resulting status",
    ["status"]
)

_USER_PATH = re.compile(r"^/users/[^/]+/")


def get_metrics_response() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


class MetricsMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        path = request.url.path

        if path == "/metrics":
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            endpoint = self._normalize_path(path)
            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=str(status_code)
            ).inc()
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(duration)

    def _normalize_path(self, path: str) -> str:
        # Collapse user ids so label cardinality stays bounded
        if _USER_PATH.match(path):
            return _USER_PATH.sub("/users/{user_id}/", path)
        return path
