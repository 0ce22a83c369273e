"""
Cross-platform ICMP echo transport

- Windows: Uses the IcmpSendEcho API (no elevation needed, IPv4 only)
- Linux/macOS: Uses raw sockets, falling back to unprivileged ICMP
  datagram sockets where the kernel allows them
"""

import itertools
import os
import socket
import struct
import sys
import time
from typing import Optional

from ..errors import TransportError
from ..models import EchoReply, EchoStatus
from .base import EchoTransport, resolve_host


PAYLOAD_SIZE = 32


def create_echo_transport(timeout: float = 2.0) -> EchoTransport:
    """Factory function to create the appropriate transport for the current OS"""
    if sys.platform == 'win32':
        return WindowsEchoTransport(timeout)
    return SocketEchoTransport(timeout)


def checksum(data: bytes) -> int:
    """Calculate ICMP checksum (RFC 1071)"""
    if len(data) % 2:
        data += b'\x00'

    s = 0
    for i in range(0, len(data), 2):
        w = (data[i] << 8) + data[i + 1]
        s += w

    s = (s >> 16) + (s & 0xFFFF)
    s += s >> 16
    return ~s & 0xFFFF


class WindowsEchoTransport(EchoTransport):
    """
    Echo transport using the Windows native IcmpSendEcho API.
    This properly receives ICMP Time Exceeded messages.
    """

    IP_FLAG_DF = 0x02

    STATUS_MAP = {
        0: EchoStatus.SUCCESS,
        11002: EchoStatus.DESTINATION_NET_UNREACHABLE,
        11003: EchoStatus.DESTINATION_HOST_UNREACHABLE,
        11004: EchoStatus.DESTINATION_PROTOCOL_UNREACHABLE,
        11005: EchoStatus.DESTINATION_PORT_UNREACHABLE,
        11009: EchoStatus.PACKET_TOO_BIG,
        11010: EchoStatus.TIMED_OUT,
        11013: EchoStatus.TTL_EXPIRED,
        11014: EchoStatus.TTL_EXPIRED,
        11015: EchoStatus.PARAMETER_PROBLEM,
    }

    def __init__(self, timeout: float = 2.0):
        super().__init__(timeout)
        self._icmp = None
        self._icmp_dll = None
        self._load_api()

    def _load_api(self):
        """Load Windows ICMP API"""
        import ctypes
        import ctypes.wintypes as wintypes

        class IP_OPTION_INFORMATION(ctypes.Structure):
            _fields_ = [
                ("Ttl", ctypes.c_uint8),
                ("Tos", ctypes.c_uint8),
                ("Flags", ctypes.c_uint8),
                ("OptionsSize", ctypes.c_uint8),
                ("OptionsData", ctypes.c_void_p),
            ]

        class ICMP_ECHO_REPLY(ctypes.Structure):
            _fields_ = [
                ("Address", ctypes.c_uint32),
                ("Status", ctypes.c_uint32),
                ("RoundTripTime", ctypes.c_uint32),
                ("DataSize", ctypes.c_uint16),
                ("Reserved", ctypes.c_uint16),
                ("Data", ctypes.c_void_p),
                ("Options", IP_OPTION_INFORMATION),
            ]

        self._IP_OPTION_INFORMATION = IP_OPTION_INFORMATION
        self._ICMP_ECHO_REPLY = ICMP_ECHO_REPLY

        try:
            self._icmp_dll = ctypes.windll.iphlpapi

            self._icmp_dll.IcmpCreateFile.restype = wintypes.HANDLE
            self._icmp_dll.IcmpCreateFile.argtypes = []

            self._icmp_dll.IcmpSendEcho.restype = wintypes.DWORD
            self._icmp_dll.IcmpSendEcho.argtypes = [
                wintypes.HANDLE,
                ctypes.c_uint32,
                ctypes.c_void_p,
                wintypes.WORD,
                ctypes.POINTER(IP_OPTION_INFORMATION),
                ctypes.c_void_p,
                wintypes.DWORD,
                wintypes.DWORD,
            ]

            self._icmp_dll.IcmpCloseHandle.restype = wintypes.BOOL
            self._icmp_dll.IcmpCloseHandle.argtypes = [wintypes.HANDLE]

            self._icmp = self._icmp_dll.IcmpCreateFile()
            if self._icmp == -1 or self._icmp == 0xFFFFFFFF:
                raise OSError("Failed to create ICMP handle")

        except (AttributeError, OSError) as e:
            raise TransportError(f"Failed to load Windows ICMP API: {e}") from e

    def echo(self, host: str, ttl: Optional[int] = None,
             timeout: Optional[float] = None,
             dont_fragment: bool = False) -> EchoReply:
        """Send one echo request through IcmpSendEcho"""
        import ctypes

        if not self._icmp:
            raise TransportError("ICMP handle is closed")

        target_ip = resolve_host(host)
        if ':' in target_ip:
            raise TransportError("IPv6 echo is not supported on this platform")

        timeout = self.timeout if timeout is None else timeout

        # Little-endian for Windows
        ip_parts = target_ip.split('.')
        ip_int = (int(ip_parts[0]) |
                  (int(ip_parts[1]) << 8) |
                  (int(ip_parts[2]) << 16) |
                  (int(ip_parts[3]) << 24))

        request_data = b'NetLens'.ljust(PAYLOAD_SIZE, b'\x00')
        request_size = len(request_data)
        request_buffer = ctypes.create_string_buffer(request_data)

        options = self._IP_OPTION_INFORMATION()
        options.Ttl = ttl if ttl else 128
        options.Tos = 0
        options.Flags = self.IP_FLAG_DF if dont_fragment else 0
        options.OptionsSize = 0
        options.OptionsData = None

        reply_size = ctypes.sizeof(self._ICMP_ECHO_REPLY) + request_size + 8
        reply_buffer = ctypes.create_string_buffer(reply_size)

        result = self._icmp_dll.IcmpSendEcho(
            self._icmp,
            ip_int,
            request_buffer,
            request_size,
            ctypes.byref(options),
            reply_buffer,
            reply_size,
            max(1, int(timeout * 1000))
        )

        if result == 0:
            return EchoReply(EchoStatus.TIMED_OUT)

        reply = ctypes.cast(reply_buffer, ctypes.POINTER(self._ICMP_ECHO_REPLY)).contents

        addr_int = reply.Address
        responder_ip = (f"{addr_int & 0xFF}.{(addr_int >> 8) & 0xFF}."
                        f"{(addr_int >> 16) & 0xFF}.{(addr_int >> 24) & 0xFF}")

        status = self.STATUS_MAP.get(reply.Status, EchoStatus.UNKNOWN)
        if status is EchoStatus.TIMED_OUT:
            return EchoReply(status)

        return EchoReply(
            status=status,
            address=responder_ip,
            rtt_ms=float(reply.RoundTripTime),
            ttl=reply.Options.Ttl if status is EchoStatus.SUCCESS else None,
            size=reply.DataSize if status is EchoStatus.SUCCESS else None,
        )

    def close(self):
        """Close ICMP handle"""
        if self._icmp and self._icmp_dll:
            try:
                self._icmp_dll.IcmpCloseHandle(self._icmp)
            except OSError:
                pass
            self._icmp = None


class SocketEchoTransport(EchoTransport):
    """
    Echo transport over ICMP sockets for Linux/macOS.

    Raw sockets receive Time Exceeded and Unreachable messages and need
    root. Without root, datagram ICMP sockets still carry plain echo replies,
    which is enough for ping but not for traceroute.
    """

    ICMP_ECHO_REQUEST = 8
    ICMP_ECHO_REPLY = 0
    ICMP_DEST_UNREACHABLE = 3
    ICMP_TIME_EXCEEDED = 11
    ICMP_PARAMETER_PROBLEM = 12

    ICMP6_DEST_UNREACHABLE = 1
    ICMP6_PACKET_TOO_BIG = 2
    ICMP6_TIME_EXCEEDED = 3
    ICMP6_PARAMETER_PROBLEM = 4
    ICMP6_ECHO_REQUEST = 128
    ICMP6_ECHO_REPLY = 129

    UNREACHABLE_CODES = {
        0: EchoStatus.DESTINATION_NET_UNREACHABLE,
        1: EchoStatus.DESTINATION_HOST_UNREACHABLE,
        2: EchoStatus.DESTINATION_PROTOCOL_UNREACHABLE,
        3: EchoStatus.DESTINATION_PORT_UNREACHABLE,
        4: EchoStatus.PACKET_TOO_BIG,
    }

    UNREACHABLE6_CODES = {
        0: EchoStatus.DESTINATION_NET_UNREACHABLE,
        3: EchoStatus.DESTINATION_HOST_UNREACHABLE,
        4: EchoStatus.DESTINATION_PORT_UNREACHABLE,
    }

    # Linux values, used when the socket module does not export them
    IP_MTU_DISCOVER = getattr(socket, 'IP_MTU_DISCOVER', 10)
    IP_PMTUDISC_DO = getattr(socket, 'IP_PMTUDISC_DO', 2)

    def __init__(self, timeout: float = 2.0):
        super().__init__(timeout)
        self.identifier = os.getpid() & 0xFFFF
        self._sequence = itertools.count(1)

    def _next_sequence(self) -> int:
        return next(self._sequence) & 0xFFFF

    def build_packet(self, sequence: int, ipv6: bool = False) -> bytes:
        """Build ICMP Echo Request packet"""
        icmp_type = self.ICMP6_ECHO_REQUEST if ipv6 else self.ICMP_ECHO_REQUEST
        payload = struct.pack('!d', time.time()).ljust(PAYLOAD_SIZE, b'\x00')

        header = struct.pack('!BBHHH', icmp_type, 0, 0, self.identifier, sequence)
        if ipv6:
            # the kernel fills in the ICMPv6 checksum
            return header + payload

        cs = checksum(header + payload)
        header = struct.pack('!BBHHH', icmp_type, 0, cs, self.identifier, sequence)
        return header + payload

    def _open_socket(self, ipv6: bool) -> tuple[socket.socket, bool]:
        """Open an ICMP socket. Returns (socket, is_raw)."""
        family = socket.AF_INET6 if ipv6 else socket.AF_INET
        proto = socket.IPPROTO_ICMPV6 if ipv6 else socket.IPPROTO_ICMP
        try:
            return socket.socket(family, socket.SOCK_RAW, proto), True
        except PermissionError:
            pass
        try:
            return socket.socket(family, socket.SOCK_DGRAM, proto), False
        except (PermissionError, OSError) as e:
            raise PermissionError(
                "Root privileges required for ICMP. Please run with sudo."
            ) from e

    @staticmethod
    def receives_ip_header(is_raw: bool) -> bool:
        """Whether IPv4 replies arrive with the IP header still attached"""
        # macOS datagram ICMP sockets keep it, Linux ping sockets strip it
        return is_raw or sys.platform == 'darwin'

    def _configure(self, sock: socket.socket, ipv6: bool,
                   ttl: Optional[int], dont_fragment: bool):
        if ttl:
            if ipv6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, ttl)
            else:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)
        if dont_fragment and not ipv6 and sys.platform.startswith('linux'):
            try:
                sock.setsockopt(socket.IPPROTO_IP, self.IP_MTU_DISCOVER, self.IP_PMTUDISC_DO)
            except OSError:
                pass

    def echo(self, host: str, ttl: Optional[int] = None,
             timeout: Optional[float] = None,
             dont_fragment: bool = False) -> EchoReply:
        """Send ICMP Echo Request and wait for the reply or an ICMP error"""
        target_ip = resolve_host(host)
        ipv6 = ':' in target_ip
        timeout = self.timeout if timeout is None else timeout

        sock, is_raw = self._open_socket(ipv6)
        try:
            self._configure(sock, ipv6, ttl, dont_fragment)

            sequence = self._next_sequence()
            packet = self.build_packet(sequence, ipv6)
            send_time = time.perf_counter()
            deadline = send_time + timeout

            sock.sendto(packet, (target_ip, 0))

            while True:
                remaining = deadline - time.perf_counter()
                if remaining <= 0:
                    return EchoReply(EchoStatus.TIMED_OUT)

                sock.settimeout(remaining)
                try:
                    data, addr = sock.recvfrom(2048)
                    recv_time = time.perf_counter()
                except socket.timeout:
                    return EchoReply(EchoStatus.TIMED_OUT)

                rtt_ms = round((recv_time - send_time) * 1000, 2)
                if ipv6:
                    reply = self.parse_icmp6(data, addr[0], sequence, rtt_ms, check_ident=is_raw)
                else:
                    reply = self.parse_icmp4(data, addr[0], sequence, rtt_ms,
                                             has_ip_header=self.receives_ip_header(is_raw),
                                             check_ident=is_raw)
                if reply is not None:
                    return reply
        except OSError as e:
            if isinstance(e, PermissionError):
                raise
            raise TransportError(f"Socket Error: {e.strerror or e}") from e
        finally:
            sock.close()

    def parse_icmp4(self, data: bytes, responder_ip: str, expected_seq: int,
                    rtt_ms: float, has_ip_header: bool = True,
                    check_ident: bool = True) -> Optional[EchoReply]:
        """Parse an ICMPv4 message. Returns None if it is not ours."""
        reply_ttl = None
        if has_ip_header:
            if len(data) < 20:
                return None
            ip_header_len = (data[0] & 0x0F) * 4
            reply_ttl = data[8]
            icmp_data = data[ip_header_len:]
        else:
            icmp_data = data

        if len(icmp_data) < 8:
            return None

        icmp_type, icmp_code = icmp_data[0], icmp_data[1]

        if icmp_type == self.ICMP_ECHO_REPLY:
            ident, seq = struct.unpack('!HH', icmp_data[4:8])
            if seq != expected_seq or (check_ident and ident != self.identifier):
                return None
            return EchoReply(
                status=EchoStatus.SUCCESS,
                address=responder_ip,
                rtt_ms=rtt_ms,
                ttl=reply_ttl,
                size=len(icmp_data) - 8,
            )

        if icmp_type == self.ICMP_TIME_EXCEEDED:
            status = EchoStatus.TTL_EXPIRED
        elif icmp_type == self.ICMP_DEST_UNREACHABLE:
            status = self.UNREACHABLE_CODES.get(icmp_code, EchoStatus.DESTINATION_UNREACHABLE)
        elif icmp_type == self.ICMP_PARAMETER_PROBLEM:
            status = EchoStatus.PARAMETER_PROBLEM
        else:
            return None

        if not self._is_our_packet4(icmp_data, expected_seq, check_ident):
            return None
        return EchoReply(status=status, address=responder_ip, rtt_ms=rtt_ms)

    def _is_our_packet4(self, icmp_data: bytes, expected_seq: int, check_ident: bool) -> bool:
        """Check if the embedded original datagram is our echo request"""
        if len(icmp_data) < 28:
            return False

        inner_ip_start = 8
        inner_ip_header_len = (icmp_data[inner_ip_start] & 0x0F) * 4
        inner_icmp_start = inner_ip_start + inner_ip_header_len

        if len(icmp_data) < inner_icmp_start + 8:
            return False

        inner_icmp = icmp_data[inner_icmp_start:inner_icmp_start + 8]
        inner_type = inner_icmp[0]
        inner_ident, inner_seq = struct.unpack('!HH', inner_icmp[4:8])

        return (inner_type == self.ICMP_ECHO_REQUEST and
                inner_seq == expected_seq and
                (not check_ident or inner_ident == self.identifier))

    def parse_icmp6(self, data: bytes, responder_ip: str, expected_seq: int,
                    rtt_ms: float, check_ident: bool = True) -> Optional[EchoReply]:
        """Parse an ICMPv6 message (raw ICMPv6 sockets carry no IP header)"""
        if len(data) < 8:
            return None

        icmp_type, icmp_code = data[0], data[1]
        responder_ip = responder_ip.split('%')[0]

        if icmp_type == self.ICMP6_ECHO_REPLY:
            ident, seq = struct.unpack('!HH', data[4:8])
            if seq != expected_seq or (check_ident and ident != self.identifier):
                return None
            return EchoReply(
                status=EchoStatus.SUCCESS,
                address=responder_ip,
                rtt_ms=rtt_ms,
                size=len(data) - 8,
            )

        if icmp_type == self.ICMP6_TIME_EXCEEDED:
            status = EchoStatus.TTL_EXPIRED
        elif icmp_type == self.ICMP6_DEST_UNREACHABLE:
            status = self.UNREACHABLE6_CODES.get(icmp_code, EchoStatus.DESTINATION_UNREACHABLE)
        elif icmp_type == self.ICMP6_PACKET_TOO_BIG:
            status = EchoStatus.PACKET_TOO_BIG
        elif icmp_type == self.ICMP6_PARAMETER_PROBLEM:
            status = EchoStatus.PARAMETER_PROBLEM
        else:
            return None

        # error body: 8-byte ICMPv6 header, then the 40-byte original IPv6 header
        inner = data[48:56]
        if len(inner) < 8 or inner[0] != self.ICMP6_ECHO_REQUEST:
            return None
        inner_ident, inner_seq = struct.unpack('!HH', inner[4:8])
        if inner_seq != expected_seq or (check_ident and inner_ident != self.identifier):
            return None
        return EchoReply(status=status, address=responder_ip, rtt_ms=rtt_ms)

    def close(self):
        """No persistent resources"""
        pass
