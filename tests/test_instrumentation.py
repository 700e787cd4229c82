"""Request and query instrumentation tests."""
import time

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.testclient import TestClient

from students_api.instrumentation import (
    QueryInstrumentation,
    RequestInstrumentation,
    status_label,
)
from students_api.metrics import ServiceMetrics
from students_api.registry import MetricRegistry


def _labels(method, route, status):
    return {"method": method, "route": route, "status": status}


@pytest.fixture
def service_metrics():
    return ServiceMetrics(MetricRegistry())


@pytest.fixture
def instrumented(service_metrics):
    app = FastAPI()
    RequestInstrumentation(service_metrics).install(app)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/items/{item_id}")
    def item(item_id: int):
        return {"id": item_id}

    @app.get("/teapot")
    def teapot():
        return JSONResponse(status_code=418, content={})

    @app.get("/fail")
    def fail():
        return JSONResponse(status_code=503, content={})

    @app.get("/boom")
    def boom():
        raise RuntimeError("boom")

    @app.get("/stream")
    def stream():
        def body():
            yield b"first"
            time.sleep(0.3)
            yield b"second"
        return StreamingResponse(body())

    @app.get("/stream-fail")
    def stream_fail():
        def body():
            yield b"first"
            raise RuntimeError("broken stream")
        return StreamingResponse(body())

    @app.get("/in-flight")
    def in_flight(request: Request):
        return {"active": service_metrics.active_requests.value()}

    return TestClient(app, raise_server_exceptions=False)


class TestStatusLabel:
    @pytest.mark.parametrize("code,label", [(200, "2xx"), (201, "2xx"), (304, "3xx"), (404, "4xx"), (500, "5xx"), (503, "5xx")])
    def test_status_class(self, code, label):
        assert status_label(code) == label


class TestRequestInstrumentation:
    def test_success_recorded(self, instrumented, service_metrics):
        assert instrumented.get("/ok").status_code == 200
        labels = _labels("GET", "/ok", "2xx")
        assert service_metrics.http_requests_total.value(labels) == 1
        assert service_metrics.http_request_duration.snapshot(labels).count == 1
        assert service_metrics.http_requests_errors_total.value(labels) == 0

    def test_route_template_used_for_path_params(self, instrumented, service_metrics):
        instrumented.get("/items/1")
        instrumented.get("/items/2")
        labels = _labels("GET", "/items/{item_id}", "2xx")
        assert service_metrics.http_requests_total.value(labels) == 2
        assert service_metrics.http_requests_total.value(_labels("GET", "/items/1", "2xx")) == 0

    def test_unmatched_path_uses_raw_path(self, instrumented, service_metrics):
        assert instrumented.get("/missing/7").status_code == 404
        assert service_metrics.http_requests_total.value(_labels("GET", "/missing/7", "4xx")) == 1

    def test_client_error_not_counted_as_error(self, instrumented, service_metrics):
        instrumented.get("/teapot")
        labels = _labels("GET", "/teapot", "4xx")
        assert service_metrics.http_requests_total.value(labels) == 1
        assert service_metrics.http_requests_errors_total.value(labels) == 0

    def test_server_error_counted_twice(self, instrumented, service_metrics):
        instrumented.get("/fail")
        labels = _labels("GET", "/fail", "5xx")
        assert service_metrics.http_requests_total.value(labels) == 1
        assert service_metrics.http_requests_errors_total.value(labels) == 1

    def test_raising_handler_recorded_as_500(self, instrumented, service_metrics):
        assert instrumented.get("/boom").status_code == 500
        labels = _labels("GET", "/boom", "5xx")
        assert service_metrics.http_requests_total.value(labels) == 1
        assert service_metrics.http_requests_errors_total.value(labels) == 1
        assert service_metrics.http_request_duration.snapshot(labels).count == 1

    def test_streaming_body_timed_to_completion(self, instrumented, service_metrics):
        resp = instrumented.get("/stream")
        assert resp.content == b"firstsecond"
        snap = service_metrics.http_request_duration.snapshot(_labels("GET", "/stream", "2xx"))
        assert snap.count == 1
        assert snap.sum >= 0.3

    def test_failure_mid_body_recorded_as_500(self, instrumented, service_metrics):
        instrumented.get("/stream-fail")
        assert service_metrics.http_requests_total.value(_labels("GET", "/stream-fail", "2xx")) == 0
        labels = _labels("GET", "/stream-fail", "5xx")
        assert service_metrics.http_requests_total.value(labels) == 1
        assert service_metrics.http_requests_errors_total.value(labels) == 1
        assert service_metrics.active_requests.value() == 0

    def test_active_requests_returns_to_zero(self, instrumented, service_metrics):
        for path in ("/ok", "/teapot", "/fail", "/boom", "/missing", "/stream-fail"):
            instrumented.get(path)
            assert service_metrics.active_requests.value() == 0

    def test_active_requests_counts_current_request(self, instrumented):
        assert instrumented.get("/in-flight").json() == {"active": 1}


class TestQueryInstrumentation:
    LABELS = {"operation": "select", "table": "students"}

    def test_success(self, service_metrics):
        queries = QueryInstrumentation(service_metrics)
        assert queries.execute("select", "students", lambda x: x * 2, 21) == 42
        assert service_metrics.db_queries_total.value(self.LABELS) == 1
        assert service_metrics.db_query_duration.snapshot(self.LABELS).count == 1
        assert service_metrics.db_query_errors_total.value(self.LABELS) == 0

    def test_failure_counted_timed_and_reraised(self, service_metrics):
        queries = QueryInstrumentation(service_metrics)
        err = ConnectionError("lost connection")

        def failing():
            raise err

        with pytest.raises(ConnectionError) as info:
            queries.execute("select", "students", failing)
        assert info.value is err
        assert service_metrics.db_query_errors_total.value(self.LABELS) == 1
        assert service_metrics.db_query_duration.snapshot(self.LABELS).count == 1
        assert service_metrics.db_queries_total.value(self.LABELS) == 0

    def test_retry_after_failure_counted_independently(self, service_metrics):
        queries = QueryInstrumentation(service_metrics)
        with pytest.raises(ValueError):
            with queries.track("select", "students"):
                raise ValueError("bad")
        with queries.track("select", "students"):
            pass
        assert service_metrics.db_queries_total.value(self.LABELS) == 1
        assert service_metrics.db_query_errors_total.value(self.LABELS) == 1
        assert service_metrics.db_query_duration.snapshot(self.LABELS).count == 2
