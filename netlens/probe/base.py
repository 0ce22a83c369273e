"""
Base classes and helpers shared by probe implementations
"""

import ipaddress
import socket
from abc import ABC, abstractmethod
from typing import Optional

from ..errors import ResolutionError, TransportError
from ..models import EchoReply, SessionState


# getaddrinfo codes meaning "this name does not exist" rather than "try again"
_HOST_NOT_FOUND_CODES = {
    code for code in (
        getattr(socket, 'EAI_NONAME', None),
        getattr(socket, 'EAI_NODATA', None),
        getattr(socket, 'EAI_FAIL', None),
        11001,  # WSAHOST_NOT_FOUND
    ) if code is not None
}


def is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def is_host_not_found(error: socket.gaierror) -> bool:
    return error.errno in _HOST_NOT_FOUND_CODES


def resolve_host(host: str, prefer_ipv4: bool = True) -> str:
    """
    Resolve a host name to one IP address.

    Literal addresses are returned unchanged.

    Raises:
        ResolutionError: The name does not exist
        TransportError: Resolution failed for another (possibly transient) reason
    """
    if is_ip_address(host):
        return str(ipaddress.ip_address(host))

    try:
        infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        if is_host_not_found(e):
            raise ResolutionError(host, e.strerror) from e
        raise TransportError(f"Name resolution failed for '{host}': {e.strerror}") from e
    except UnicodeError as e:
        raise ResolutionError(host, "invalid host name") from e

    if not infos:
        raise ResolutionError(host)

    if prefer_ipv4:
        for family, _, _, _, sockaddr in infos:
            if family == socket.AF_INET:
                return sockaddr[0]
    return infos[0][4][0]


class EchoTransport(ABC):
    """Abstract ICMP echo primitive"""

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout

    @abstractmethod
    def echo(self, host: str, ttl: Optional[int] = None,
             timeout: Optional[float] = None,
             dont_fragment: bool = False) -> EchoReply:
        """
        Send one echo request and wait for the matching reply.

        Args:
            host: Host name or literal address; names are resolved per call
            ttl: IP time-to-live / hop limit, or None for the system default
            timeout: Seconds to wait, defaults to the transport timeout
            dont_fragment: Set the don't-fragment bit

        Returns:
            EchoReply describing the outcome. A missing reply is a
            ``TIMED_OUT`` reply, not an exception.

        Raises:
            ResolutionError: ``host`` does not exist
            PermissionError: The platform refused to open an ICMP socket
        """
        pass

    @abstractmethod
    def close(self):
        """Clean up resources"""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class BaseProbe(ABC):
    """A probe operation that runs inside a ``ProbeSession``"""

    def __init__(self, request):
        self.request = request

    @abstractmethod
    async def run(self, session) -> SessionState:
        """
        Execute the probe, emitting events through ``session``.

        Implementations finish by calling ``session.complete()``,
        ``session.fail()`` or ``session.mark_cancelled()`` and returning
        the resulting state.
        """
        pass
