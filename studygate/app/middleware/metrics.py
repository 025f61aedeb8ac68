"""Request metrics middleware."""

import time

from studygate.app.core.metrics import get_metrics_collector


class MetricsMiddleware:
    """ASGI middleware recording count, latency and status per path.

    For streaming responses the duration covers the whole stream.

    Example:
        app.add_middleware(MetricsMiddleware)
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        status_code = 500

        async def wrapped_send(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 200)
            await send(message)

        try:
            await self.app(scope, receive, wrapped_send)
        finally:
            duration = time.time() - start_time
            collector = get_metrics_collector()
            endpoint = scope.get("path", "unknown")
            await collector.record_request(endpoint, duration, status_code)
