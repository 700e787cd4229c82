# students_api/instrumentation.py
import time
from contextlib import contextmanager

from fastapi import FastAPI

from .instruments import LabelSet


def status_label(status_code):
    return f"{status_code // 100}xx"


def resolve_route(scope):
    # matched route template when the router found one, else the raw path
    path = getattr(scope.get("route"), "path", None)
    return path if path else scope.get("path", "")


class RequestInstrumentation:
    def __init__(self, metrics):
        self.metrics = metrics

    def install(self, app: FastAPI):
        app.add_middleware(_InstrumentedApp, instrumentation=self)

    def record(self, scope, status, elapsed):
        labels = LabelSet.of(
            method=scope.get("method", ""),
            route=resolve_route(scope),
            status=status_label(status),
        )
        self.metrics.http_request_duration.observe(labels, elapsed)
        self.metrics.http_requests_total.increment(labels)
        if status >= 500:
            self.metrics.http_requests_errors_total.increment(labels)


class _InstrumentedApp:
    """Times each HTTP request until its last body chunk has been sent."""

    def __init__(self, app, instrumentation: RequestInstrumentation):
        self.app = app
        self.instrumentation = instrumentation

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        active = self.instrumentation.metrics.active_requests
        start = time.perf_counter()
        state = {"status": 500, "done": False}

        def finish():
            if not state["done"]:
                state["done"] = True
                self.instrumentation.record(scope, state["status"], time.perf_counter() - start)

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                state["status"] = message["status"]
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                finish()

        active.increment()
        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            if not state["done"]:
                state["status"] = 500
            raise
        finally:
            try:
                finish()
            finally:
                active.decrement()


class QueryInstrumentation:
    def __init__(self, metrics):
        self.metrics = metrics

    @contextmanager
    def track(self, operation, table):
        labels = LabelSet.of(operation=operation, table=table)
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.metrics.db_query_duration.observe(labels, time.perf_counter() - start)
            self.metrics.db_query_errors_total.increment(labels)
            raise
        self.metrics.db_query_duration.observe(labels, time.perf_counter() - start)
        self.metrics.db_queries_total.increment(labels)

    def execute(self, operation, table, fn, *args, **kwargs):
        with self.track(operation, table):
            return fn(*args, **kwargs)
