"""Shared fakes for the rate limiter API."""

import httpx
import pytest

BASE_URL = "http://limiter.test"


def metrics_body(allowed, blocked):
    total = allowed + blocked
    return {"total": total, "allowed": allowed, "blocked": blocked,
            "allow_rate": (allowed / total * 100.0) if total else 0.0}


def run_body(results, duration_ms=1.25, requests_per_sec=4000.0):
    return {"allowed": sum(1 for r in results if r), "blocked": sum(1 for r in results if not r),
            "duration_ms": duration_ms, "requests_per_sec": requests_per_sec, "results": list(results)}



class FakeLimiterServer:
    """MockTransport handler. Metrics responses are served in order; the last one repeats."""

    def __init__(self):
        self.metrics_responses = [(200, metrics_body(0, 0))]
        self.test_response = (200, run_body([True, True, False]))
        self.requests = []

    def queue_metrics(self, *responses):
        self.metrics_responses = list(responses)

    def _respond(self, request, spec):
        status, body = spec
        if isinstance(body, Exception):
            raise body
        if isinstance(body, bytes):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path == "/api/metrics":
            spec = self.metrics_responses.pop(0) if len(self.metrics_responses) > 1 else self.metrics_responses[0]
            return self._respond(request, spec)
        if request.method == "POST" and request.url.path == "/api/test":
            return self._respond(request, self.test_response)
        return httpx.Response(404, json={"error": "not found"})

    def count(self, method, path):
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def server():
    return FakeLimiterServer()


def drain(output_queue):
    """Returns every queued message, in order."""
    messages = []
    while not output_queue.empty():
        messages.append(output_queue.get_nowait())
    return messages
