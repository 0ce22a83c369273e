"""
Data models for NetLens

Requests are immutable and validated on construction. Result events are
frozen so nothing downstream can alter what a probe has already reported.
"""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

import dns.rdatatype
import httpx

from .errors import EmptyInputError, InputValidationError
from .portspec import parse_ports


class ProbeKind(Enum):
    """Probe types. One session per kind may be active at a time."""
    PING = "ping"
    TRACEROUTE = "traceroute"
    PORT_SCAN = "portscan"
    DNS = "dns"
    HTTP = "http"


class SessionState(Enum):
    """Lifecycle of a probe session"""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED)


class EchoStatus(Enum):
    """Outcome of a single ICMP echo request"""
    SUCCESS = "Success"
    TIMED_OUT = "TimedOut"
    TTL_EXPIRED = "TtlExpired"
    DESTINATION_NET_UNREACHABLE = "DestinationNetworkUnreachable"
    DESTINATION_HOST_UNREACHABLE = "DestinationHostUnreachable"
    DESTINATION_PROTOCOL_UNREACHABLE = "DestinationProtocolUnreachable"
    DESTINATION_PORT_UNREACHABLE = "DestinationPortUnreachable"
    DESTINATION_UNREACHABLE = "DestinationUnreachable"
    PACKET_TOO_BIG = "PacketTooBig"
    PARAMETER_PROBLEM = "ParameterProblem"
    UNKNOWN = "Unknown"


class PortStatus(Enum):
    """Classification of a TCP connect attempt"""
    OPEN = "Open"
    CLOSED = "Closed"
    FILTERED = "Filtered/Timeout"
    ERROR = "Error"


class ErrorKind(Enum):
    INPUT = "input"
    RESOLUTION = "resolution"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    CANCELLED = "cancelled"
    HTTP_TRANSPORT = "http_transport"
    TIMED_OUT_OR_CANCELLED = "timed_out_or_cancelled"
    UNEXPECTED = "unexpected"


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

def _clean_target(target: Optional[str]) -> str:
    if target is None or not str(target).strip():
        raise EmptyInputError("Please enter a hostname or IP address.")
    return str(target).strip()


def _check_timeout(timeout_ms: int) -> None:
    if not isinstance(timeout_ms, int) or isinstance(timeout_ms, bool) or timeout_ms <= 0:
        raise InputValidationError("Please enter a valid timeout in milliseconds (> 0).")


@dataclass(frozen=True)
class PingRequest:
    target: str
    count: int = 4
    timeout_ms: int = 1000

    kind = ProbeKind.PING

    def __post_init__(self):
        object.__setattr__(self, 'target', _clean_target(self.target))
        if not isinstance(self.count, int) or isinstance(self.count, bool) or self.count <= 0:
            raise InputValidationError("Please enter a valid number of pings (> 0).")
        _check_timeout(self.timeout_ms)


@dataclass(frozen=True)
class TracerouteRequest:
    target: str
    max_hops: int = 30
    timeout_ms: int = 1000

    kind = ProbeKind.TRACEROUTE

    MAX_HOPS_LIMIT = 128

    def __post_init__(self):
        object.__setattr__(self, 'target', _clean_target(self.target))
        if (not isinstance(self.max_hops, int) or isinstance(self.max_hops, bool)
                or not 1 <= self.max_hops <= self.MAX_HOPS_LIMIT):
            raise InputValidationError(
                f"Please enter a valid max hops value (1-{self.MAX_HOPS_LIMIT})."
            )
        _check_timeout(self.timeout_ms)


@dataclass(frozen=True)
class PortScanRequest:
    target: str
    ports: str
    timeout_ms: int = 500
    workers: int = 1
    port_list: tuple[int, ...] = field(init=False, repr=False)

    kind = ProbeKind.PORT_SCAN

    def __post_init__(self):
        object.__setattr__(self, 'target', _clean_target(self.target))
        object.__setattr__(self, 'port_list', tuple(parse_ports(self.ports)))
        _check_timeout(self.timeout_ms)
        if not isinstance(self.workers, int) or self.workers < 1:
            raise InputValidationError("Worker count must be at least 1.")


@dataclass(frozen=True)
class DnsQueryRequest:
    name: str
    record_type: str = "A"
    server: Optional[str] = None

    kind = ProbeKind.DNS

    def __post_init__(self):
        object.__setattr__(self, 'name', _clean_target(self.name))
        rtype = str(self.record_type or "").strip().upper()
        try:
            dns.rdatatype.from_text(rtype)
        except (dns.rdatatype.UnknownRdatatype, ValueError):
            raise InputValidationError(
                f"Please select a valid DNS record type (got '{self.record_type}')."
            ) from None
        object.__setattr__(self, 'record_type', rtype)
        server = (self.server or "").strip() or None
        object.__setattr__(self, 'server', server)

    @property
    def server_address(self) -> Optional[str]:
        """The server if it is a literal IP address, else None"""
        if not self.server:
            return None
        try:
            return str(ipaddress.ip_address(self.server))
        except ValueError:
            return None


@dataclass(frozen=True)
class HttpCheckRequest:
    url: str

    kind = ProbeKind.HTTP

    def __post_init__(self):
        raw = (self.url or "").strip()
        try:
            parsed = httpx.URL(raw)
        except (httpx.InvalidURL, TypeError):
            parsed = None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.host:
            raise InputValidationError(
                "Please enter a valid, full URL (e.g., https://example.com)."
            )
        object.__setattr__(self, 'url', raw)


ProbeRequest = Union[PingRequest, TracerouteRequest, PortScanRequest, DnsQueryRequest, HttpCheckRequest]


# ---------------------------------------------------------------------------
# Result events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Info:
    text: str


@dataclass(frozen=True)
class EchoResult:
    """One echo reply (or failure) in a ping run"""
    sequence: int
    status: EchoStatus
    address: Optional[str] = None
    rtt_ms: Optional[float] = None
    ttl: Optional[int] = None
    size: Optional[int] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is EchoStatus.SUCCESS


@dataclass(frozen=True)
class HopResult:
    """One traceroute hop. ``address`` is None when the hop did not answer."""
    ttl: int
    rtt_ms: Optional[float] = None
    address: Optional[str] = None
    hostname: Optional[str] = None
    status: EchoStatus = EchoStatus.TIMED_OUT
    detail: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return self.address is None


@dataclass(frozen=True)
class PortResult:
    port: int
    status: PortStatus
    elapsed_ms: float
    detail: Optional[str] = None

    @property
    def label(self) -> str:
        if self.status is PortStatus.ERROR and self.detail:
            return f"Error ({self.detail})"
        return self.status.value


@dataclass(frozen=True)
class DnsRecordResult:
    kind: str
    fields: Mapping[str, Any]
    ttl: int
    text: str

    def __post_init__(self):
        # read-only view over a private copy
        object.__setattr__(self, 'fields', MappingProxyType(dict(self.fields)))


@dataclass(frozen=True)
class Summary:
    """Ping statistics"""
    sent: int
    received: int
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    avg_ms: Optional[float] = None

    @property
    def lost(self) -> int:
        return self.sent - self.received

    @property
    def loss_percent(self) -> float:
        if self.sent <= 0:
            return 0.0
        return (self.sent - self.received) / self.sent * 100


@dataclass(frozen=True)
class Error:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class StateChanged:
    state: SessionState


@dataclass(frozen=True)
class Done:
    """Always the last event of a session"""
    state: SessionState
    message: Optional[str] = None


ResultEvent = Union[Info, EchoResult, HopResult, PortResult, DnsRecordResult,
                    Summary, Error, StateChanged, Done]


# ---------------------------------------------------------------------------
# Accumulators
# ---------------------------------------------------------------------------

@dataclass
class PingStatistics:
    """Running counters for a ping session. Counters only ever increase."""
    sent: int = 0
    received: int = 0
    rtts: list[float] = field(default_factory=list)

    def record_sent(self):
        self.sent += 1

    def record_reply(self, rtt_ms: float):
        self.received += 1
        self.rtts.append(rtt_ms)

    @property
    def loss_percent(self) -> float:
        if self.sent <= 0:
            return 0.0
        return (self.sent - self.received) / self.sent * 100

    def summary(self) -> Summary:
        if not self.rtts:
            return Summary(sent=self.sent, received=self.received)
        return Summary(
            sent=self.sent,
            received=self.received,
            min_ms=min(self.rtts),
            max_ms=max(self.rtts),
            avg_ms=sum(self.rtts) / len(self.rtts),
        )


@dataclass(frozen=True)
class EchoReply:
    """Raw outcome of one echo request as reported by a transport"""
    status: EchoStatus
    address: Optional[str] = None
    rtt_ms: Optional[float] = None
    ttl: Optional[int] = None
    size: Optional[int] = None
