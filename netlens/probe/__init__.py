"""
Probe engines for NetLens
"""

from .base import BaseProbe, EchoTransport
from .http import HttpProbe
from .icmp import SocketEchoTransport, WindowsEchoTransport, create_echo_transport
from .ping import PingProbe
from .tcp import PortScanProbe
from .tracer import TracerouteProbe

__all__ = [
    'BaseProbe', 'EchoTransport', 'HttpProbe', 'PingProbe', 'PortScanProbe',
    'SocketEchoTransport', 'TracerouteProbe', 'WindowsEchoTransport',
    'create_echo_transport',
]
