"""
Traceroute probe
"""

import asyncio
import logging
from typing import Optional

from ..config import get_settings
from ..enrichment import PTRResolver
from ..errors import ProbeCancelled, ResolutionError, TransportError, UnexpectedError
from ..models import (
    EchoReply, EchoStatus, Error, ErrorKind, HopResult, Info,
    SessionState, TracerouteRequest,
)
from .base import BaseProbe, EchoTransport, resolve_host
from .icmp import create_echo_transport
from .ping import RACE_GRACE


logger = logging.getLogger(__name__)


class TracerouteProbe(BaseProbe):
    """
    Discover the hop path to a target.

    Sends one echo per TTL from 1 up to ``max_hops`` with don't-fragment
    set, stopping at the first reply from the destination.
    """

    def __init__(
        self,
        request: TracerouteRequest,
        transport: Optional[EchoTransport] = None,
        ptr_resolver: Optional[PTRResolver] = None,
    ):
        super().__init__(request)
        settings = get_settings()
        self.resolve_timeout = settings.dns_timeout
        self._transport = transport
        self._ptr = ptr_resolver
        self._ptr_timeout = settings.ptr_timeout

    async def _reverse_name(self, session, address: Optional[str]) -> Optional[str]:
        """Best-effort reverse lookup. Cancellation still propagates."""
        if not address or self._ptr is None:
            return None
        try:
            return await session.race(self._ptr.resolve(address), timeout=self._ptr.timeout + RACE_GRACE)
        except asyncio.TimeoutError:
            return None
        except (OSError, RuntimeError) as e:
            logger.debug("reverse lookup of %s failed: %s", address, e)
            return None

    async def _send(self, session, transport: EchoTransport, address: str,
                    ttl: int, timeout: float) -> EchoReply:
        try:
            return await session.run_blocking(
                transport.echo, address, ttl, timeout, True,
                timeout=timeout + RACE_GRACE,
            )
        except asyncio.TimeoutError:
            return EchoReply(EchoStatus.TIMED_OUT)

    async def run(self, session) -> SessionState:
        req = self.request
        timeout = req.timeout_ms / 1000
        transport = self._transport
        owns_ptr = self._ptr is None
        if owns_ptr:
            self._ptr = PTRResolver(timeout=self._ptr_timeout)

        try:
            try:
                address = await session.run_blocking(
                    resolve_host, req.target, timeout=self.resolve_timeout
                )
            except (ResolutionError, TransportError, asyncio.TimeoutError) as e:
                logger.warning("traceroute %s: %s", req.target, e)
                session.emit(Error(ErrorKind.RESOLUTION, f"Could not resolve hostname: {req.target}"))
                return session.fail()

            session.emit(Info(
                f"Tracing route to {req.target} [{address}] over a maximum of {req.max_hops} hops:"
            ))

            if transport is None:
                try:
                    transport = create_echo_transport(timeout)
                except TransportError as e:
                    session.emit(Error(ErrorKind.TRANSPORT, str(e)))
                    return session.fail()

            for ttl in range(1, req.max_hops + 1):
                session.raise_if_cancelled()

                try:
                    reply = await self._send(session, transport, address, ttl, timeout)
                except ProbeCancelled:
                    raise
                except (TransportError, OSError) as e:
                    session.emit(HopResult(ttl, status=EchoStatus.UNKNOWN, detail=f"Ping Error: {e}"))
                    continue
                except Exception as e:
                    logger.exception("hop %d to %s failed", ttl, address)
                    detail = str(UnexpectedError(e, "Error"))
                    session.emit(HopResult(ttl, status=EchoStatus.UNKNOWN, detail=detail))
                    continue

                if reply.status is EchoStatus.SUCCESS:
                    hostname = await self._reverse_name(session, reply.address)
                    session.emit(HopResult(ttl, reply.rtt_ms, reply.address, hostname, reply.status))
                    session.emit(Info("Trace complete."))
                    return session.complete()

                if reply.status is EchoStatus.TTL_EXPIRED:
                    hostname = await self._reverse_name(session, reply.address)
                    session.emit(HopResult(ttl, reply.rtt_ms, reply.address, hostname, reply.status))
                elif reply.status is EchoStatus.TIMED_OUT:
                    session.emit(HopResult(ttl, status=reply.status, detail="Request timed out."))
                else:
                    session.emit(HopResult(ttl, status=reply.status, detail=f"Failed: {reply.status.value}"))

            session.emit(Info("Trace incomplete (max hops reached)."))
            return session.complete()

        except ProbeCancelled:
            return session.mark_cancelled("Traceroute cancelled by user.")
        finally:
            if transport is not None and transport is not self._transport:
                transport.close()
            if owns_ptr:
                self._ptr.close()
                self._ptr = None
