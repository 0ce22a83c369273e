"""
NetLens - Network Diagnostics Probe Engine

Cancellable ping, traceroute, TCP port scan, DNS query and HTTP
reachability probes that stream ordered result events.
"""

__version__ = "1.0.0"
__author__ = "NetLens"
