"""
Ping probe: a bounded sequence of ICMP echo requests
"""

import asyncio
import logging
from typing import Optional

from ..config import get_settings
from ..errors import ProbeCancelled, ResolutionError, TransportError, UnexpectedError
from ..models import (
    EchoResult, EchoStatus, Error, ErrorKind, Info, PingRequest,
    PingStatistics, SessionState,
)
from .base import BaseProbe, EchoTransport, resolve_host
from .icmp import create_echo_transport


logger = logging.getLogger(__name__)

# Extra time the session waits beyond the echo timeout before giving up on
# the blocking call itself
RACE_GRACE = 1.0


class PingProbe(BaseProbe):
    """
    Send ``count`` echo requests to a target and report statistics.

    A failed echo never stops the run. Only an unresolvable host name and
    user cancellation end it early.
    """

    def __init__(
        self,
        request: PingRequest,
        transport: Optional[EchoTransport] = None,
        interval: Optional[float] = None,
    ):
        super().__init__(request)
        settings = get_settings()
        self.interval = settings.ping_interval if interval is None else interval
        self.resolve_timeout = settings.dns_timeout
        self._transport = transport

    async def _display_address(self, session) -> str:
        """Resolve once for the header. Failure here is only a note."""
        target = self.request.target
        try:
            return await session.run_blocking(resolve_host, target, timeout=self.resolve_timeout)
        except (ResolutionError, TransportError, asyncio.TimeoutError) as e:
            logger.info("display resolution of %s failed: %s", target, e)
            session.emit(Info(f"Could not resolve {target}; sending echo requests anyway."))
            return "unresolved"

    async def run(self, session) -> SessionState:
        req = self.request
        timeout = req.timeout_ms / 1000
        stats = PingStatistics()
        transport = self._transport

        try:
            address = await self._display_address(session)
            session.emit(Info(f"Pinging {req.target} [{address}] with {req.count} requests:"))

            if transport is None:
                try:
                    transport = create_echo_transport(timeout)
                except TransportError as e:
                    session.emit(Error(ErrorKind.TRANSPORT, str(e)))
                    return session.fail()

            for i in range(req.count):
                session.raise_if_cancelled()

                sequence = i + 1
                stats.record_sent()

                try:
                    reply = await session.run_blocking(
                        transport.echo, req.target, None, timeout,
                        timeout=timeout + RACE_GRACE,
                    )
                except ResolutionError as e:
                    # an unknown name will not start resolving mid-run
                    logger.warning("ping %s: %s", req.target, e)
                    session.emit(Error(ErrorKind.RESOLUTION, str(e)))
                    session.emit(stats.summary())
                    return session.fail("Ping stopped: host not found.")
                except ProbeCancelled:
                    raise
                except asyncio.TimeoutError:
                    session.emit(EchoResult(sequence, EchoStatus.TIMED_OUT, detail="Request timed out."))
                except PermissionError as e:
                    session.emit(Error(ErrorKind.TRANSPORT, f"Ping Error: {e}"))
                except TransportError as e:
                    session.emit(Error(ErrorKind.TRANSPORT, f"Ping Error: {e}"))
                except OSError as e:
                    session.emit(Error(ErrorKind.TRANSPORT, f"Socket Error: {e}"))
                except Exception as e:
                    logger.exception("echo %d to %s failed", sequence, req.target)
                    session.emit(Error(ErrorKind.UNEXPECTED, str(UnexpectedError(e, "Error during ping"))))
                else:
                    if reply.status is EchoStatus.SUCCESS:
                        stats.record_reply(reply.rtt_ms)
                        session.emit(EchoResult(
                            sequence=sequence,
                            status=reply.status,
                            address=reply.address,
                            rtt_ms=reply.rtt_ms,
                            ttl=reply.ttl,
                            size=reply.size,
                        ))
                    else:
                        session.emit(EchoResult(
                            sequence=sequence,
                            status=reply.status,
                            address=reply.address,
                            detail=f"Request failed: {reply.status.value}",
                        ))

                if i < req.count - 1:
                    await session.sleep(self.interval)

        except ProbeCancelled:
            session.emit(stats.summary())
            return session.mark_cancelled("Ping operation cancelled.")
        finally:
            if transport is not None and transport is not self._transport:
                transport.close()

        session.emit(stats.summary())
        return session.complete()
