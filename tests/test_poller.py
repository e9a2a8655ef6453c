"""MetricsPoller: delta suppression, failure handling and cadence."""

import asyncio

import httpx

from conftest import drain, metrics_body
from limiter_monitor import MetricsPoller, MetricsSnapshot, MonitorSession, PollOutcome


def _labels():
    counter = {"n": 0}

    def _next():
        counter["n"] += 1
        return f"t{counter['n']}"

    return _next


async def _poll_times(server, session, times):
    async with server.client() as client:
        poller = MetricsPoller(session, client, label_fn=_labels())
        return [await poller.poll() for _ in range(times)]


def test_identical_snapshot_is_suppressed(server) -> None:
    server.queue_metrics((200, metrics_body(5, 1)), (200, metrics_body(5, 1)), (200, metrics_body(8, 2)))
    session = MonitorSession()

    outcomes = asyncio.run(_poll_times(server, session, 3))

    assert outcomes == [PollOutcome.APPENDED, PollOutcome.SUPPRESSED, PollOutcome.APPENDED]
    assert [(p.label, p.allowed, p.blocked) for p in session.history.points()] == [("t1", 5, 1), ("t2", 8, 2)]
    assert (session.counters.allowed, session.counters.blocked) == (8, 2)


def test_summary_is_published_on_every_successful_poll(server) -> None:
    server.queue_metrics((200, metrics_body(5, 1)), (200, metrics_body(5, 1)))
    session = MonitorSession()

    asyncio.run(_poll_times(server, session, 2))

    messages = drain(session.output_queue)
    assert [m["type"] for m in messages] == ["history_append", "metrics", "metrics"]
    assert messages[2]["payload"] == MetricsSnapshot(total=6, allowed=5, blocked=1, allow_rate=5 / 6 * 100.0)


def test_append_notification_requests_a_non_animated_redraw(server) -> None:
    server.queue_metrics((200, metrics_body(3, 0)))
    session = MonitorSession()

    asyncio.run(_poll_times(server, session, 1))

    append = drain(session.output_queue)[0]
    assert append["type"] == "history_append"
    assert append["payload"]["animate"] is False
    assert append["payload"]["evicted"] is None
    assert append["payload"]["point"].allowed == 3


def test_blocked_increase_alone_appends_cumulative_values(server) -> None:
    server.queue_metrics((200, metrics_body(4, 0)), (200, metrics_body(4, 7)))
    session = MonitorSession()

    asyncio.run(_poll_times(server, session, 2))

    assert [(p.allowed, p.blocked) for p in session.history.points()] == [(4, 0), (4, 7)]


def test_counter_reset_appends_nothing_but_rebases_deltas(server) -> None:
    server.queue_metrics((200, metrics_body(10, 4)), (200, metrics_body(0, 0)), (200, metrics_body(2, 0)))
    session = MonitorSession()

    outcomes = asyncio.run(_poll_times(server, session, 3))

    assert outcomes == [PollOutcome.APPENDED, PollOutcome.SUPPRESSED, PollOutcome.APPENDED]
    assert [(p.allowed, p.blocked) for p in session.history.points()] == [(10, 4), (2, 0)]


def test_all_zero_first_snapshot_is_suppressed(server) -> None:
    session = MonitorSession()

    outcomes = asyncio.run(_poll_times(server, session, 1))

    assert outcomes == [PollOutcome.SUPPRESSED]
    assert len(session.history) == 0
    assert session.last_snapshot.total == 0


def test_history_never_exceeds_twenty_points(server) -> None:
    server.queue_metrics(*[(200, metrics_body(i, 0)) for i in range(1, 31)])
    session = MonitorSession()

    asyncio.run(_poll_times(server, session, 30))

    assert len(session.history) == 20
    assert session.history.allowed_series() == list(range(11, 31))


def test_server_error_leaves_state_untouched(server) -> None:
    server.queue_metrics((200, metrics_body(5, 1)), (500, {"error": "boom"}), (200, metrics_body(6, 1)))
    session = MonitorSession()

    async def _scenario():
        async with server.client() as client:
            poller = MetricsPoller(session, client, label_fn=_labels())
            await poller.poll()
            drain(session.output_queue)
            failed = await poller.poll()
            after_failure = (len(session.history), session.counters.allowed, session.last_snapshot.allowed,
                             drain(session.output_queue))
            recovered = await poller.poll()
            return failed, after_failure, recovered

    failed, (length, counter, last_allowed, messages), recovered = asyncio.run(_scenario())

    assert failed is PollOutcome.FAILED
    assert (length, counter, last_allowed) == (1, 5, 5)
    assert [m["type"] for m in messages] == ["log"]
    assert "HTTP 500" in messages[0]["payload"]
    assert recovered is PollOutcome.APPENDED


def test_malformed_body_and_transport_errors_are_logged(server) -> None:
    server.queue_metrics((200, b"<html>oops</html>"), (200, {"total": 3}), (0, httpx.ConnectError("refused")))
    session = MonitorSession()

    outcomes = asyncio.run(_poll_times(server, session, 3))

    assert outcomes == [PollOutcome.FAILED] * 3
    logs = [m["payload"] for m in drain(session.output_queue)]
    assert len(logs) == 3 and all(line.startswith("[WARNING]") for line in logs)
    assert "ConnectError" in logs[2]
    assert session.last_snapshot is None


def test_run_polls_immediately_then_on_cadence_despite_failures(server) -> None:
    server.queue_metrics((500, {"error": "down"}), (200, metrics_body(1, 0)), (200, metrics_body(2, 0)))
    session = MonitorSession()

    async def _scenario():
        shutdown = asyncio.Event()
        async with server.client() as client:
            poller = MetricsPoller(session, client, interval=0.02, label_fn=_labels())

            async def _stop_after_three():
                while server.count("GET", "/api/metrics") < 3:
                    await asyncio.sleep(0.005)
                shutdown.set()

            await asyncio.gather(poller.run(shutdown), _stop_after_three())

    asyncio.run(asyncio.wait_for(_scenario(), timeout=5))

    assert server.count("GET", "/api/metrics") >= 3
    assert session.history.allowed_series()[:2] == [1, 2]


def test_run_stops_promptly_when_shutdown_is_set(server) -> None:
    session = MonitorSession()

    async def _scenario():
        shutdown = asyncio.Event()
        async with server.client() as client:
            poller = MetricsPoller(session, client, interval=60)
            task = asyncio.create_task(poller.run(shutdown))
            await asyncio.sleep(0.01)
            shutdown.set()
            await asyncio.wait_for(task, timeout=1)

    asyncio.run(_scenario())

    assert server.count("GET", "/api/metrics") == 1
