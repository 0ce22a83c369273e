"""
DNS queries with typed record formatting
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterator, Optional

import dns.exception
import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdatatype
import dns.resolver
import dns.reversename

from .config import get_settings
from .errors import (
    InputValidationError, ProbeCancelled, ProbeTimeoutError, ProtocolError,
    ReverseNameError, TransportError,
)
from .models import (
    DnsQueryRequest, DnsRecordResult, Error, ErrorKind, Info, SessionState,
)
from .probe.base import BaseProbe, is_ip_address


logger = logging.getLogger(__name__)


@dataclass
class DnsAnswer:
    """Outcome of a successful query. ``records`` may be empty."""
    qname: str
    record_type: str
    server: Optional[str] = None
    records: list[DnsRecordResult] = field(default_factory=list)


def _name(value) -> str:
    return value.to_text() if hasattr(value, 'to_text') else str(value)


def format_record(rdtype: int, rdata, ttl: int) -> DnsRecordResult:
    """Turn one rdata into a record event with type-specific fields"""
    kind = dns.rdatatype.to_text(rdtype)

    if rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
        fields = {"address": rdata.address}
        text = f"{kind}: {rdata.address} (TTL: {ttl})"
    elif rdtype in (dns.rdatatype.CNAME, dns.rdatatype.NS, dns.rdatatype.PTR):
        target = _name(rdata.target)
        fields = {"target": target}
        text = f"{kind}: {target} (TTL: {ttl})"
    elif rdtype == dns.rdatatype.MX:
        exchange = _name(rdata.exchange)
        fields = {"preference": rdata.preference, "exchange": exchange}
        text = f"MX: {exchange} (Pref: {rdata.preference}, TTL: {ttl})"
    elif rdtype == dns.rdatatype.SOA:
        fields = {
            "mname": _name(rdata.mname),
            "rname": _name(rdata.rname),
            "serial": rdata.serial,
            "refresh": rdata.refresh,
            "retry": rdata.retry,
            "expire": rdata.expire,
            "minimum": rdata.minimum,
        }
        text = (f"SOA: {fields['mname']}, {fields['rname']}, "
                f"Serial: {rdata.serial} (TTL: {ttl})")
    elif rdtype == dns.rdatatype.TXT:
        strings = tuple(s.decode('utf-8', errors='replace') for s in rdata.strings)
        joined = " ".join(strings) if strings else "(empty)"
        fields = {"strings": strings}
        text = f'TXT: "{joined}" (TTL: {ttl})'
    else:
        raw = rdata.to_text()
        fields = {"raw": raw}
        text = f"{kind}: {raw} (TTL: {ttl})"

    return DnsRecordResult(kind=kind, fields=fields, ttl=ttl, text=text)


def _failure_rcode(error: dns.resolver.NoNameservers) -> str:
    """The rcode a nameserver actually answered with, SERVFAIL if none did"""
    for attempt in error.kwargs.get("errors") or ():
        for item in attempt:
            if isinstance(item, dns.message.Message) and item.rcode() != dns.rcode.NOERROR:
                return dns.rcode.to_text(item.rcode())
    return "SERVFAIL"


def iter_records(response: dns.message.Message) -> Iterator[DnsRecordResult]:
    """All answer-section records in the order the server sent them"""
    for rrset in response.answer:
        for rdata in rrset:
            yield format_record(rrset.rdtype, rdata, rrset.ttl)


class DnsResolver:
    """
    DNS resolver.

    Queries a literal server address directly, or goes through the system
    resolver configuration when no usable server is given.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = get_settings().dns_timeout if timeout is None else timeout

    def query_name(self, name: str, record_type: str) -> dns.name.Name:
        """
        Build the name to query. PTR queries for a literal IP address use
        its in-addr.arpa / ip6.arpa form.
        """
        rdtype = dns.rdatatype.from_text(record_type)
        if rdtype == dns.rdatatype.PTR and is_ip_address(name):
            try:
                return dns.reversename.from_address(name)
            except (dns.exception.DNSException, ValueError) as e:
                raise ReverseNameError(
                    f"Could not generate reverse lookup name for the IP: {e}"
                ) from e
        try:
            return dns.name.from_text(name)
        except dns.exception.DNSException as e:
            raise InputValidationError(f"Invalid name '{name}': {e}") from e

    def query(self, name: str, record_type: str = "A",
              server: Optional[str] = None) -> DnsAnswer:
        """
        Perform a DNS query.

        Args:
            name: Name to query (or an IP address for PTR)
            record_type: Record type mnemonic, e.g. "MX"
            server: Literal IP of the server to ask; anything else means
                the system resolver

        Raises:
            InputValidationError: Bad name or reverse name
            ProbeTimeoutError: No response in time
            ProtocolError: The server answered with a non-NOERROR rcode
            TransportError: Network-level failure
        """
        rdtype = dns.rdatatype.from_text(record_type)
        qname = self.query_name(name, record_type)

        if server and is_ip_address(server):
            response = self._query_server(qname, rdtype, server)
        else:
            server = None
            response = self._query_system(qname, rdtype)

        rcode = response.rcode()
        if rcode != dns.rcode.NOERROR:
            raise ProtocolError(dns.rcode.to_text(rcode))

        return DnsAnswer(
            qname=qname.to_text(),
            record_type=dns.rdatatype.to_text(rdtype),
            server=server,
            records=list(iter_records(response)),
        )

    def _query_server(self, qname: dns.name.Name, rdtype: int, server: str) -> dns.message.Message:
        request = dns.message.make_query(qname, rdtype)
        try:
            response, _ = dns.query.udp_with_fallback(request, server, timeout=self.timeout)
        except dns.exception.Timeout as e:
            raise ProbeTimeoutError("Query failed: No response from server (timeout?).") from e
        except OSError as e:
            raise TransportError(f"Network Error: {e}") from e
        except dns.exception.DNSException as e:
            raise TransportError(f"Query failed: {e}") from e
        return response

    resolve = query

    def _query_system(self, qname: dns.name.Name, rdtype: int) -> dns.message.Message:
        try:
            resolver = dns.resolver.Resolver()
        except dns.resolver.NoResolverConfiguration as e:
            raise TransportError("No system DNS servers configured") from e
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout

        try:
            answer = resolver.resolve(qname, rdtype, raise_on_no_answer=False)
        except dns.resolver.NXDOMAIN as e:
            raise ProtocolError("NXDOMAIN") from e
        except dns.resolver.YXDOMAIN as e:
            raise ProtocolError("YXDOMAIN") from e
        except dns.resolver.NoNameservers as e:
            code = _failure_rcode(e)
            raise ProtocolError(code, f"Query failed: {code} ({e})") from e
        except dns.exception.Timeout as e:
            raise ProbeTimeoutError("Query timed out.") from e
        except OSError as e:
            raise TransportError(f"Network Error: {e}") from e
        return answer.response


class DnsProbe(BaseProbe):
    """Run one DNS query inside a session"""

    def __init__(self, request: DnsQueryRequest, resolver: Optional[DnsResolver] = None):
        super().__init__(request)
        self.resolver = resolver or DnsResolver()

    async def run(self, session) -> SessionState:
        req = self.request
        server = req.server_address

        if req.server and server is None:
            session.emit(Info(f"Ignoring DNS server '{req.server}': not an IP address."))
        if server:
            session.emit(Info(f"Using DNS Server: {server}"))
        else:
            session.emit(Info("Using System Default DNS Servers"))

        try:
            qname = self.resolver.query_name(req.name, req.record_type)
        except InputValidationError as e:
            session.emit(Error(ErrorKind.INPUT, f"Invalid Input: {e}"))
            return session.fail()

        if req.record_type == "PTR" and is_ip_address(req.name):
            session.emit(Info(f"Performing PTR lookup for: {qname.to_text()}"))
        else:
            session.emit(Info(f"Querying for {req.record_type} records for: {req.name}"))

        try:
            answer = await session.run_blocking(
                self.resolver.query, req.name, req.record_type, server,
                timeout=self.resolver.timeout + 1.0,
            )
        except ProbeCancelled:
            return session.mark_cancelled("DNS query cancelled.")
        except (ProbeTimeoutError, asyncio.TimeoutError):
            session.emit(Error(ErrorKind.TIMEOUT, "Query timed out."))
            return session.fail()
        except ProtocolError as e:
            session.emit(Error(ErrorKind.PROTOCOL, str(e)))
            return session.fail()
        except InputValidationError as e:
            session.emit(Error(ErrorKind.INPUT, f"Invalid Input: {e}"))
            return session.fail()
        except TransportError as e:
            session.emit(Error(ErrorKind.TRANSPORT, str(e)))
            return session.fail()

        if not answer.records:
            session.emit(Info("No records found."))
        else:
            session.emit(Info(f"Found {len(answer.records)} record(s):"))
            for record in answer.records:
                session.emit(record)

        return session.complete()
