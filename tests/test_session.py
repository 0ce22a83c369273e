"""Tests for sessions, cancellation and the engine"""

import asyncio
import threading

import pytest

from netlens.errors import ProbeCancelled
from netlens.models import (
    Done, Error, ErrorKind, HttpCheckRequest, Info, PingRequest, ProbeKind,
    SessionState, StateChanged,
)
from netlens.session import CancelToken, ProbeEngine, ProbeSession, QueueSink

from conftest import assert_done_last, run_probe


class QuickProbe:
    async def run(self, session):
        session.emit(Info("hello"))
        return session.complete("done")


class CrashingProbe:
    async def run(self, session):
        raise RuntimeError("kaboom")


class SleepingProbe:
    """Waits on a long cancellable sleep, flagging when it got there"""

    def __init__(self, seconds=30.0):
        self.seconds = seconds
        self.started = threading.Event()

    async def run(self, session):
        self.started.set()
        try:
            await session.sleep(self.seconds)
        except ProbeCancelled:
            return session.mark_cancelled("stopped")
        return session.complete()


class RacingProbe:
    def __init__(self):
        self.outcome = None

    async def run(self, session):
        try:
            await session.race(asyncio.sleep(10), timeout=0.05)
        except asyncio.TimeoutError:
            self.outcome = "timeout"
        return session.complete()


class StubbornProbe:
    """Races work that ignores cancellation and still hands back a resource"""

    def __init__(self):
        self.discarded = []

    async def run(self, session):
        async def stubborn():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                return "resource"

        try:
            await session.race(stubborn(), timeout=0.01, discard=self.discarded.append)
        except asyncio.TimeoutError:
            await session.sleep(0.1)
        return session.complete()


class TestCancelToken:
    def test_monotonic(self):
        token = CancelToken()
        assert not token.cancelled
        assert token.cancel() is True
        assert token.cancel() is False
        assert token.cancelled

    def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(ProbeCancelled):
            token.raise_if_cancelled()


class TestProbeSession:
    def test_completes_with_done_last(self, collector):
        session = run_probe(QuickProbe(), ProbeKind.PING, collector)

        assert session.state is SessionState.COMPLETED
        assert_done_last(collector.events)
        assert collector.events[-1] == Done(SessionState.COMPLETED, "done")
        states = [e.state for e in collector.of(StateChanged)]
        assert states == [SessionState.RUNNING, SessionState.COMPLETED]
        assert session.events == tuple(collector.events)

    def test_unexpected_exception_fails(self, collector):
        session = run_probe(CrashingProbe(), ProbeKind.PING, collector)

        assert session.state is SessionState.FAILED
        errors = collector.of(Error)
        assert len(errors) == 1
        assert errors[0].kind is ErrorKind.UNEXPECTED
        assert errors[0].message == "An error occurred: kaboom"
        assert_done_last(collector.events)

    def test_race_timeout(self, collector):
        probe = RacingProbe()
        run_probe(probe, ProbeKind.PING, collector)
        assert probe.outcome == "timeout"

    def test_lost_race_result_is_discarded(self, collector):
        probe = StubbornProbe()
        run_probe(probe, ProbeKind.PING, collector)
        assert probe.discarded == ["resource"]

    def test_cancel_wakes_sleep(self, collector):
        probe = SleepingProbe()
        session = ProbeSession(ProbeKind.PING, probe, collector).start()
        assert probe.started.wait(5)

        assert session.cancel() is True
        assert session.wait(5)

        assert session.state is SessionState.CANCELLED
        assert collector.events[-1] == Done(SessionState.CANCELLED, "stopped")
        states = [e.state for e in collector.of(StateChanged)]
        assert states == [SessionState.RUNNING, SessionState.CANCELLING, SessionState.CANCELLED]

    def test_cancel_after_finish_is_noop(self, collector):
        session = run_probe(QuickProbe(), ProbeKind.PING, collector)
        before = len(collector.events)
        assert session.cancel() is False
        assert session.state is SessionState.COMPLETED
        assert len(collector.events) == before

    def test_repeated_cancel(self, collector):
        probe = SleepingProbe()
        session = ProbeSession(ProbeKind.PING, probe, collector).start()
        assert probe.started.wait(5)
        assert session.cancel() is True
        assert session.cancel() is False
        assert session.wait(5)
        assert len(collector.of(Done)) == 1

    def test_no_events_after_done(self, collector):
        session = run_probe(QuickProbe(), ProbeKind.PING, collector)
        session.emit(Info("late"))
        assert Info("late") not in collector.events
        assert_done_last(collector.events)

    def test_sink_failure_does_not_stop_session(self):
        seen = []

        def sink(event):
            seen.append(event)
            if isinstance(event, Info):
                raise ValueError("bad sink")

        session = run_probe(QuickProbe(), ProbeKind.PING, sink)
        assert session.state is SessionState.COMPLETED
        assert isinstance(seen[-1], Done)

    def test_start_twice(self, collector):
        session = run_probe(QuickProbe(), ProbeKind.PING, collector)
        with pytest.raises(RuntimeError):
            session.start()

    def test_unhandled_cancellation_still_cancels(self, collector):
        class Unhandled:
            def __init__(self):
                self.started = threading.Event()

            async def run(self, session):
                self.started.set()
                await session.sleep(30)
                return session.complete()

        probe = Unhandled()
        session = ProbeSession(ProbeKind.DNS, probe, collector).start()
        assert probe.started.wait(5)
        session.cancel()
        assert session.wait(5)
        assert collector.events[-1] == Done(SessionState.CANCELLED, "Operation cancelled.")


class TestQueueSink:
    def test_iterates_until_done(self):
        sink = QueueSink()
        session = ProbeSession(ProbeKind.HTTP, QuickProbe(), sink).start()
        events = list(sink)
        assert isinstance(events[-1], Done)
        assert Info("hello") in events
        assert session.wait(5)


class TestProbeEngine:
    def test_new_session_supersedes_old(self):
        probes = []

        def factory(request):
            probe = SleepingProbe()
            probes.append(probe)
            return probe

        engine = ProbeEngine(probe_factory=factory)
        first_events, second_events = [], []

        first = engine.start(PingRequest("127.0.0.1"), first_events.append)
        assert probes[0].started.wait(5)
        second = engine.start(PingRequest("127.0.0.1"), second_events.append)

        assert first.wait(5)
        assert first.state is SessionState.CANCELLED
        assert first_events[-1].state is SessionState.CANCELLED
        assert engine.active(ProbeKind.PING) is second

        assert engine.cancel(second.id) is True
        assert second.wait(5)
        assert engine.active(ProbeKind.PING) is None

    def test_different_kinds_run_side_by_side(self):
        engine = ProbeEngine(probe_factory=lambda request: SleepingProbe(seconds=0.2))

        ping = engine.start(PingRequest("127.0.0.1"))
        http = engine.start(HttpCheckRequest("http://127.0.0.1/"))
        assert ping.wait(5) and http.wait(5)
        assert ping.state is SessionState.COMPLETED
        assert http.state is SessionState.COMPLETED

    def test_cancel_unknown_session(self):
        engine = ProbeEngine(probe_factory=lambda request: QuickProbe())
        assert engine.cancel(987654) is False

    def test_shutdown_cancels_everything(self):
        engine = ProbeEngine(probe_factory=lambda request: SleepingProbe())
        session = engine.start(PingRequest("127.0.0.1"))
        engine.shutdown(timeout=5)
        assert session.state is SessionState.CANCELLED
