"""Test configuration and fixtures for NetLens."""

import threading
import time
from typing import Optional

import pytest

from netlens.config import Settings, set_settings
from netlens.models import Done, EchoReply, EchoStatus, ProbeKind
from netlens.probe.base import EchoTransport
from netlens.session import ProbeSession


@pytest.fixture(autouse=True)
def fast_settings():
    """Short delays so sessions finish quickly."""
    settings = Settings(ping_interval=0.01, dns_timeout=2.0, ptr_timeout=0.5)
    set_settings(settings)
    yield settings
    set_settings(None)


class Collector:
    """List sink that can also signal when a given event type shows up."""

    def __init__(self):
        self.events = []
        self._cond = threading.Condition()

    def __call__(self, event):
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def of(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]

    def wait_for(self, event_type, timeout: float = 5.0):
        deadline = time.monotonic() + timeout
        with self._cond:
            while not self.of(event_type):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AssertionError(f"no {event_type.__name__} event within {timeout}s")
                self._cond.wait(remaining)
            return self.of(event_type)[0]


@pytest.fixture
def collector() -> Collector:
    return Collector()


class FakeEchoTransport(EchoTransport):
    """
    Scripted echo transport.

    Each call consumes the next script entry: an EchoReply is returned,
    an exception instance is raised. When the script runs out the last
    entry repeats.
    """

    def __init__(self, script, delay: float = 0.0):
        super().__init__(timeout=1.0)
        self.script = list(script)
        self.delay = delay
        self.calls = []
        self.closed = False

    def echo(self, host: str, ttl: Optional[int] = None,
             timeout: Optional[float] = None,
             dont_fragment: bool = False) -> EchoReply:
        self.calls.append({"host": host, "ttl": ttl, "timeout": timeout, "df": dont_fragment})
        if self.delay:
            time.sleep(self.delay)
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self):
        self.closed = True


def reply(status=EchoStatus.SUCCESS, address="127.0.0.1", rtt_ms=1.5, ttl=64, size=32):
    if status is not EchoStatus.SUCCESS:
        ttl = size = None
    if status is EchoStatus.TIMED_OUT:
        return EchoReply(status)
    return EchoReply(status, address, rtt_ms, ttl, size)


def run_probe(probe, kind: ProbeKind, sink, timeout: float = 10.0) -> ProbeSession:
    session = ProbeSession(kind, probe, sink).start()
    assert session.wait(timeout), "session did not finish in time"
    return session


def assert_done_last(events):
    """Exactly one Done and nothing after it."""
    dones = [i for i, e in enumerate(events) if isinstance(e, Done)]
    assert len(dones) == 1
    assert dones[0] == len(events) - 1
