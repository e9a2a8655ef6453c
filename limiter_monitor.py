#!/usr/bin/env python3
"""
limiter_monitor.py - Live telemetry and test-run engine for the Rate Limiter service.

Everything in this module runs on a single asyncio event loop, hosted by
MonitorWorker in a background thread. The view never touches the engine
state directly: it receives {"type", "payload"} messages through a
queue.Queue and asks the worker to start tests or stop.

Components:
- MetricsPoller: polls /api/metrics every 2s and feeds the history buffer.
- TimeSeriesBuffer: bounded FIFO history (20 points) for the live chart.
- TestRunOrchestrator: single-flight IDLE -> RUNNING -> IDLE test runs.
"""

import asyncio
import math
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import httpx

# --- Constants ---
APP_VERSION = "Rate Limiter Monitor v1.0"
DEFAULT_BASE_URL = "http://localhost:3001"
METRICS_PATH = "/api/metrics"
TEST_PATH = "/api/test"
HISTORY_CAPACITY = 20
POLL_INTERVAL_S = 2.0
ALGORITHMS = ("token_bucket", "leaky_bucket", "fixed_window", "sliding_window")


# ─────────────────── ERRORS ───────────────────
class MonitorError(Exception):
    """Base class for failures talking to the rate limiter API."""


class TransportError(MonitorError):
    """The request could not be sent or no response was received."""


class ResponseError(MonitorError):
    """Non-success status, or a body that does not have the expected shape."""


# ─────────────────── DATA MODEL ───────────────────
def _count(data: Dict, key: str) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ResponseError(f"'{key}' must be a non-negative integer, got {value!r}")
    return value


def _number(data: Dict, key: str, null_as: Optional[float] = None,
            minimum: float = 0.0, maximum: float = math.inf) -> float:
    value = data[key]
    if value is None and null_as is not None:
        return null_as
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ResponseError(f"'{key}' must be a number, got {value!r}")
    if not math.isfinite(value) or not minimum <= value <= maximum:
        raise ResponseError(f"'{key}' must be a finite number in [{minimum:g}, {maximum:g}], got {value!r}")
    return float(value)


@dataclass(frozen=True)
class MetricsSnapshot:
    total: int
    allowed: int
    blocked: int
    allow_rate: float

    @classmethod
    def from_json(cls, data) -> "MetricsSnapshot":
        if not isinstance(data, dict):
            raise ResponseError(f"Metrics body must be an object, got {type(data).__name__}")
        try:
            return cls(total=_count(data, "total"), allowed=_count(data, "allowed"),
                       blocked=_count(data, "blocked"), allow_rate=_number(data, "allow_rate", maximum=100.0))
        except KeyError as e:
            raise ResponseError(f"Metrics body is missing {e}") from e


@dataclass(frozen=True)
class HistoryPoint:
    label: str
    allowed: int
    blocked: int


@dataclass(frozen=True)
class TestRunConfig:
    algorithm: str
    max_requests: int
    window_seconds: int
    num_requests: int

    __test__ = False  # not a pytest test class

    @classmethod
    def from_values(cls, algorithm, max_requests, window_seconds, num_requests) -> "TestRunConfig":
        """Builds a config from raw control values (slider floats, strings), validating them."""
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown algorithm '{algorithm}'. Expected one of: {', '.join(ALGORITHMS)}")
        config = cls(algorithm, int(float(max_requests)), int(float(window_seconds)), int(float(num_requests)))
        if config.max_requests <= 0: raise ValueError("max_requests must be greater than 0.")
        if config.window_seconds <= 0: raise ValueError("window_seconds must be greater than 0.")
        if config.num_requests < 0: raise ValueError("num_requests cannot be negative.")
        return config

    def to_json(self) -> Dict:
        return {"algorithm": self.algorithm, "max_requests": self.max_requests,
                "window_seconds": self.window_seconds, "num_requests": self.num_requests}


@dataclass(frozen=True)
class TestRunResult:
    allowed: int
    blocked: int
    duration_ms: float
    requests_per_sec: float
    results: Tuple[bool, ...]

    __test__ = False  # not a pytest test class

    @classmethod
    def from_json(cls, data) -> "TestRunResult":
        if not isinstance(data, dict):
            raise ResponseError(f"Test body must be an object, got {type(data).__name__}")
        try:
            results = data["results"]
            if not isinstance(results, list) or not all(isinstance(r, bool) for r in results):
                raise ResponseError("'results' must be a list of booleans")
            # the server reports NaN throughput (serialized as null) for instantaneous runs
            result = cls(allowed=_count(data, "allowed"), blocked=_count(data, "blocked"),
                         duration_ms=_number(data, "duration_ms"),
                         requests_per_sec=_number(data, "requests_per_sec", null_as=0.0),
                         results=tuple(results))
        except KeyError as e:
            raise ResponseError(f"Test body is missing {e}") from e
        if len(result.results) != result.allowed + result.blocked:
            raise ResponseError(f"Got {len(result.results)} results for {result.allowed} allowed + {result.blocked} blocked")
        return result


@dataclass(frozen=True)
class ResultIndicator:
    position: int
    allowed: bool

    @property
    def title(self) -> str:
        return f"Request {self.position}: {'Allowed' if self.allowed else 'Blocked'}"


class RunState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class PollOutcome(str, Enum):
    APPENDED = "APPENDED"
    SUPPRESSED = "SUPPRESSED"
    FAILED = "FAILED"


# ─────────────────── FORMATTING ───────────────────
def format_metrics(snapshot: MetricsSnapshot) -> Dict[str, str]:
    return {"total": f"{snapshot.total:,}", "allowed": f"{snapshot.allowed:,}",
            "blocked": f"{snapshot.blocked:,}", "allow_rate": f"{snapshot.allow_rate:.1f}%"}


def format_throughput(requests_per_sec: float) -> str:
    if not math.isfinite(requests_per_sec): return "0/s"
    return f"{round(requests_per_sec):,}/s"


def format_result(result: TestRunResult) -> Dict[str, str]:
    return {"allowed": str(result.allowed), "blocked": str(result.blocked),
            "duration": f"{result.duration_ms:.2f}ms", "throughput": format_throughput(result.requests_per_sec)}


def build_indicators(results) -> List[ResultIndicator]:
    """One indicator per request outcome, in the order the server evaluated them."""
    return [ResultIndicator(position=i + 1, allowed=bool(allowed)) for i, allowed in enumerate(results)]


# ─────────────────── SESSION STATE ───────────────────
class SessionCounters:
    """Allowed/blocked counts of the previous successful snapshot, used for deltas."""

    def __init__(self):
        self.allowed = 0; self.blocked = 0

    def update(self, snapshot: MetricsSnapshot):
        self.allowed = snapshot.allowed; self.blocked = snapshot.blocked


class TimeSeriesBuffer:
    """Fixed-capacity FIFO of HistoryPoints. append() is the only mutation."""

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        if capacity <= 0: raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._points = deque()

    def append(self, point: HistoryPoint) -> Optional[HistoryPoint]:
        """Adds point at the tail; returns the head point it evicted, if any."""
        self._points.append(point)
        if len(self._points) > self.capacity:
            return self._points.popleft()
        return None

    def points(self) -> Tuple[HistoryPoint, ...]:
        return tuple(self._points)

    def labels(self) -> List[str]:
        return [p.label for p in self._points]

    def allowed_series(self) -> List[int]:
        return [p.allowed for p in self._points]

    def blocked_series(self) -> List[int]:
        return [p.blocked for p in self._points]

    def __len__(self):
        return len(self._points)


class MonitorSession:
    """State shared by one poller and one orchestrator, plus the channel to the view."""

    def __init__(self, output_queue: Optional[queue.Queue] = None, capacity: int = HISTORY_CAPACITY):
        self.output_queue = output_queue if output_queue is not None else queue.Queue()
        self.counters = SessionCounters()
        self.history = TimeSeriesBuffer(capacity)
        self.run_state = RunState.IDLE
        self.last_snapshot: Optional[MetricsSnapshot] = None

    def notify(self, msg_type: str, payload=None):
        self.output_queue.put({"type": msg_type, "payload": payload})

    def log(self, message: str):
        self.notify("log", message)


# ─────────────────── HTTP ───────────────────
async def request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs):
    """Sends one request and returns the decoded JSON body, mapping failures to MonitorError."""
    try:
        resp = await client.request(method, path, **kwargs)
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPStatusError as e:
        raise ResponseError(f"HTTP {e.response.status_code} from {path}") from e
    except httpx.RequestError as e:
        raise TransportError(f"{type(e).__name__} on {path}") from e
    except ValueError as e:
        raise ResponseError(f"Invalid JSON from {path}: {e}") from e


# ─────────────────── METRICS POLLER ───────────────────
class MetricsPoller:
    """Fetches cumulative counters and appends a history point when traffic moved."""

    def __init__(self, session: MonitorSession, client: httpx.AsyncClient,
                 interval: float = POLL_INTERVAL_S, label_fn: Optional[Callable[[], str]] = None):
        self.session = session
        self.client = client
        self.interval = interval
        self.label_fn = label_fn or (lambda: time.strftime('%H:%M:%S'))

    async def poll(self) -> PollOutcome:
        try:
            snapshot = MetricsSnapshot.from_json(await request_json(self.client, "GET", METRICS_PATH))
        except MonitorError as e:
            self.session.log(f"[WARNING] Failed to fetch metrics: {e}")
            return PollOutcome.FAILED

        # No await below: the delta decision and the counter update cannot interleave with another poll.
        counters = self.session.counters
        allowed_delta = snapshot.allowed - counters.allowed
        blocked_delta = snapshot.blocked - counters.blocked
        outcome = PollOutcome.SUPPRESSED
        if allowed_delta > 0 or blocked_delta > 0:
            point = HistoryPoint(self.label_fn(), snapshot.allowed, snapshot.blocked)
            evicted = self.session.history.append(point)
            self.session.notify("history_append", {"point": point, "evicted": evicted, "animate": False})
            outcome = PollOutcome.APPENDED
        counters.update(snapshot)
        self.session.last_snapshot = snapshot
        self.session.notify("metrics", snapshot)
        return outcome

    async def run(self, shutdown_event: asyncio.Event):
        """Polls now, then every `interval` seconds from the start, until shutdown_event is set."""
        loop = asyncio.get_running_loop()
        pending = set()
        next_tick = loop.time()
        while not shutdown_event.is_set():
            task = asyncio.create_task(self.poll())
            pending.add(task); task.add_done_callback(pending.discard)
            next_tick += self.interval
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=max(0.0, next_tick - loop.time()))
            except asyncio.TimeoutError:
                pass
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# ─────────────────── TEST RUN ORCHESTRATOR ───────────────────
def _consume_exception(task: asyncio.Task):
    # already logged and reported by _execute; marks it retrieved for fire-and-forget triggers
    if not task.cancelled():
        task.exception()


class TestRunOrchestrator:
    """Runs one load test at a time against /api/test. Triggers while RUNNING are dropped."""

    __test__ = False  # not a pytest test class

    def __init__(self, session: MonitorSession, client: httpx.AsyncClient, poller: MetricsPoller):
        self.session = session
        self.client = client
        self.poller = poller
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RunState:
        return self.session.run_state

    def _set_state(self, state: RunState):
        self.session.run_state = state
        self.session.notify("run_state", state)

    def trigger(self, config: TestRunConfig) -> Optional[asyncio.Task]:
        """Must be called on the event loop. Returns the run task, or None if a run is in flight."""
        if self.session.run_state is RunState.RUNNING:
            self.session.log("A test is already running. Start request ignored.")
            return None
        self._set_state(RunState.RUNNING)
        self._task = asyncio.create_task(self._execute(config))
        self._task.add_done_callback(_consume_exception)
        return self._task

    async def run(self, config: TestRunConfig) -> Optional[TestRunResult]:
        task = self.trigger(config)
        if task is None: return None
        return await task

    async def wait_idle(self):
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def failure_message(self) -> str:
        base_url = str(self.client.base_url).rstrip("/") or "the configured URL"
        return f"Test failed! Make sure the server is running at {base_url}"

    async def _execute(self, config: TestRunConfig) -> Optional[TestRunResult]:
        self.session.log(f"Running test: {config.num_requests} requests, {config.algorithm}, "
                         f"{config.max_requests} per {config.window_seconds}s")
        try:
            try:
                body = await request_json(self.client, "POST", TEST_PATH, json=config.to_json())
                result = TestRunResult.from_json(body)
            except MonitorError as e:
                self.session.log(f"[ERROR] Test failed: {e}")
                self.session.notify("test_failed", {"error": str(e), "message": self.failure_message()})
                return None
            self.render(result)
            await self.poller.poll()
            self.session.log(f"--- TEST FINISHED: {result.allowed} allowed, {result.blocked} blocked ---")
            return result
        except Exception as e:
            self.session.log(f"[ERROR] Test run crashed: {type(e).__name__}: {e}")
            self.session.notify("test_failed", {"error": f"{type(e).__name__}: {e}",
                                                "message": "Test failed! The dashboard hit an unexpected error, see the Output Log."})
            raise
        finally:
            self._set_state(RunState.IDLE)

    def render(self, result: TestRunResult):
        self.session.notify("test_result", {"result": result, "summary": format_result(result),
                                            "indicators": build_indicators(result.results)})


# ─────────────────── WORKER (The Engine) ───────────────────
class MonitorWorker:
    """Hosts the event loop, the HTTP client and the session, running in a separate thread."""

    def __init__(self, config: Dict, output_queue: queue.Queue, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.output_queue = output_queue
        self.transport = transport
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.session: Optional[MonitorSession] = None
        self.poller: Optional[MetricsPoller] = None
        self.orchestrator: Optional[TestRunOrchestrator] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._ready = threading.Event()
        self._finished = False

    def run(self):
        """Thread entry point. Sets up and runs the asyncio event loop."""
        try:
            asyncio.run(self._main())
        except Exception as e:
            self.log_to_gui(f"[FATAL ERROR] Worker thread crashed: {e}")
        finally:
            self._finished = True
            self._ready.set()
            self.output_queue.put({"type": "worker_finished", "payload": None})

    def log_to_gui(self, message: str):
        self.output_queue.put({"type": "log", "payload": message})

    async def _main(self):
        self.loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()
        base_url = self.config.get('base_url', DEFAULT_BASE_URL)
        async with httpx.AsyncClient(base_url=base_url, transport=self.transport) as client:
            self.session = MonitorSession(self.output_queue)
            self.poller = MetricsPoller(self.session, client, interval=self.config.get('poll_interval_s', POLL_INTERVAL_S))
            self.orchestrator = TestRunOrchestrator(self.session, client, self.poller)
            self._ready.set()
            self.log_to_gui(f"Monitoring {base_url} every {self.poller.interval:g}s.")
            await self.poller.run(self._shutdown)
            # a started run always completes before the client closes
            await self.orchestrator.wait_idle()
        self.log_to_gui("Worker thread finished.")

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout) and self.is_running()

    def is_running(self) -> bool:
        """True while the event loop is up and accepting start_test() calls."""
        return self._ready.is_set() and self.orchestrator is not None and not self._finished

    def start_test(self, config: TestRunConfig):
        """Thread-safe. Hands the config to the orchestrator on the event loop."""
        self.loop.call_soon_threadsafe(self.orchestrator.trigger, config)

    def stop(self):
        if self.loop is not None and self._shutdown is not None and not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self._shutdown.set)
