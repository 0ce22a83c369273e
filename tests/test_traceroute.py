"""Tests for the traceroute probe"""

import time

from netlens.errors import ResolutionError
from netlens.models import (
    Done, EchoStatus, Error, ErrorKind, HopResult, Info, ProbeKind,
    SessionState, TracerouteRequest,
)
from netlens.probe import tracer as tracer_module
from netlens.probe.tracer import TracerouteProbe
from netlens.session import ProbeSession

from conftest import FakeEchoTransport, assert_done_last, reply, run_probe


TARGET = "203.0.113.9"


class FakePTR:
    """Stands in for PTRResolver with a fixed name table"""

    def __init__(self, names=None, error=None):
        self.names = names or {}
        self.error = error
        self.timeout = 0.5
        self.closed = False

    async def resolve(self, ip):
        if self.error:
            raise self.error
        return self.names.get(ip)

    def close(self):
        self.closed = True


def test_path_to_destination(collector):
    transport = FakeEchoTransport([
        reply(EchoStatus.TTL_EXPIRED, address="10.0.0.1", rtt_ms=1.0),
        reply(EchoStatus.TIMED_OUT),
        reply(EchoStatus.TTL_EXPIRED, address="198.51.100.1", rtt_ms=8.0),
        reply(address=TARGET, rtt_ms=12.0),
    ])
    ptr = FakePTR({"10.0.0.1": "gw.local", TARGET: "dest.example"})
    probe = TracerouteProbe(TracerouteRequest(TARGET, max_hops=30), transport=transport, ptr_resolver=ptr)

    session = run_probe(probe, ProbeKind.TRACEROUTE, collector)

    assert session.state is SessionState.COMPLETED
    hops = collector.of(HopResult)
    assert [h.ttl for h in hops] == [1, 2, 3, 4]
    assert hops[0].hostname == "gw.local"
    assert hops[1].timed_out and hops[1].detail == "Request timed out."
    assert hops[2].address == "198.51.100.1" and hops[2].hostname is None
    assert hops[3].status is EchoStatus.SUCCESS and hops[3].hostname == "dest.example"

    assert Info("Trace complete.") in collector.events
    assert [c["ttl"] for c in transport.calls] == [1, 2, 3, 4]
    assert all(c["df"] for c in transport.calls)
    assert not ptr.closed
    assert_done_last(collector.events)


def test_header(collector):
    transport = FakeEchoTransport([reply(address=TARGET)])
    probe = TracerouteProbe(TracerouteRequest(TARGET, max_hops=5), transport=transport, ptr_resolver=FakePTR())
    run_probe(probe, ProbeKind.TRACEROUTE, collector)

    assert collector.events[1] == Info(f"Tracing route to {TARGET} [{TARGET}] over a maximum of 5 hops:")


def test_max_hops_reached(collector):
    transport = FakeEchoTransport([reply(EchoStatus.TIMED_OUT)])
    probe = TracerouteProbe(TracerouteRequest(TARGET, max_hops=3), transport=transport, ptr_resolver=FakePTR())

    session = run_probe(probe, ProbeKind.TRACEROUTE, collector)

    assert session.state is SessionState.COMPLETED
    assert len(collector.of(HopResult)) == 3
    assert Info("Trace incomplete (max hops reached).") in collector.events


def test_other_failures_continue(collector):
    transport = FakeEchoTransport([
        reply(EchoStatus.DESTINATION_HOST_UNREACHABLE, address="10.0.0.1"),
        OSError("sendto failed"),
        RuntimeError("odd"),
        reply(address=TARGET),
    ])
    probe = TracerouteProbe(TracerouteRequest(TARGET), transport=transport, ptr_resolver=FakePTR())
    session = run_probe(probe, ProbeKind.TRACEROUTE, collector)

    assert session.state is SessionState.COMPLETED
    hops = collector.of(HopResult)
    assert hops[0].detail == "Failed: DestinationHostUnreachable"
    assert hops[1].detail.startswith("Ping Error")
    assert hops[2].detail == "Error: odd"
    assert hops[3].status is EchoStatus.SUCCESS


def test_reverse_lookup_failure_ignored(collector):
    transport = FakeEchoTransport([reply(EchoStatus.TTL_EXPIRED, address="10.0.0.1"), reply(address=TARGET)])
    probe = TracerouteProbe(
        TracerouteRequest(TARGET), transport=transport, ptr_resolver=FakePTR(error=OSError("no ptr"))
    )
    session = run_probe(probe, ProbeKind.TRACEROUTE, collector)

    assert session.state is SessionState.COMPLETED
    assert [h.hostname for h in collector.of(HopResult)] == [None, None]
    assert not collector.of(Error)


def test_unresolvable_target(collector, monkeypatch):
    def fail(host, prefer_ipv4=True):
        raise ResolutionError(host)

    monkeypatch.setattr(tracer_module, "resolve_host", fail)
    transport = FakeEchoTransport([reply()])
    probe = TracerouteProbe(TracerouteRequest("nowhere.invalid"), transport=transport, ptr_resolver=FakePTR())

    session = run_probe(probe, ProbeKind.TRACEROUTE, collector)

    assert session.state is SessionState.FAILED
    assert collector.of(Error) == [Error(ErrorKind.RESOLUTION, "Could not resolve hostname: nowhere.invalid")]
    assert not collector.of(HopResult)
    assert not transport.calls


def test_cancel(collector):
    transport = FakeEchoTransport([reply(EchoStatus.TIMED_OUT)], delay=0.05)
    probe = TracerouteProbe(TracerouteRequest(TARGET, max_hops=128), transport=transport, ptr_resolver=FakePTR())
    session = ProbeSession(ProbeKind.TRACEROUTE, probe, collector).start()

    collector.wait_for(HopResult)
    session.cancel()
    assert session.wait(5)

    assert session.state is SessionState.CANCELLED
    assert collector.events[-1] == Done(SessionState.CANCELLED, "Traceroute cancelled by user.")
    assert len(collector.of(HopResult)) < 128
    hops_at_end = len(collector.of(HopResult))
    time.sleep(0.2)
    assert len(collector.of(HopResult)) == hops_at_end
