"""
TCP connect port scan
"""

import asyncio
import errno
import logging
import socket
import time
from collections import deque
from typing import Optional

from ..config import get_settings
from ..errors import ProbeCancelled, ResolutionError, TransportError
from ..models import (
    Error, ErrorKind, Info, PortResult, PortScanRequest, PortStatus,
    SessionState,
)
from .base import BaseProbe, is_host_not_found, resolve_host


logger = logging.getLogger(__name__)


def _close_stream(stream):
    """Close a (reader, writer) pair from a connect that lost its race"""
    _, writer = stream
    writer.close()


class PortScanProbe(BaseProbe):
    """
    Attempt a bounded-time TCP connection to each port and classify it.

    With ``workers > 1`` up to that many connects are in flight at once,
    but results are still emitted in ascending port order.
    """

    def __init__(self, request: PortScanRequest):
        super().__init__(request)
        self.resolve_timeout = get_settings().dns_timeout

    async def check_port(self, session, address: str, port: int, timeout: float) -> PortResult:
        """
        Connect to one port.

        Raises:
            ResolutionError: The target name stopped resolving
            ProbeCancelled: The session was cancelled mid-connect
        """
        start = time.perf_counter()
        writer = None
        detail = None
        try:
            _, writer = await session.race(
                asyncio.open_connection(address, port), timeout=timeout, discard=_close_stream,
            )
            status = PortStatus.OPEN
        except ProbeCancelled:
            raise
        except asyncio.TimeoutError:
            status = PortStatus.FILTERED
        except ConnectionRefusedError:
            status = PortStatus.CLOSED
        except socket.gaierror as e:
            if is_host_not_found(e):
                raise ResolutionError(self.request.target, e.strerror) from e
            status = PortStatus.ERROR
            detail = f"gaierror {e.errno}"
        except OSError as e:
            status = PortStatus.ERROR
            detail = errno.errorcode.get(e.errno, str(e.errno)) if e.errno else type(e).__name__
        except Exception as e:
            logger.exception("connect to %s:%d failed unexpectedly", address, port)
            status = PortStatus.ERROR
            detail = type(e).__name__
        finally:
            if writer is not None:
                writer.close()

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        return PortResult(port, status, elapsed_ms, detail)

    async def run(self, session) -> SessionState:
        req = self.request
        timeout = req.timeout_ms / 1000
        session.emit(Info(f"Starting TCP port scan for {req.target}..."))

        pending: deque = deque()
        try:
            try:
                address = await session.run_blocking(
                    resolve_host, req.target, timeout=self.resolve_timeout
                )
            except (TransportError, asyncio.TimeoutError) as e:
                raise ResolutionError(req.target, str(e)) from e

            ports = iter(req.port_list)

            def fill():
                while len(pending) < req.workers:
                    port = next(ports, None)
                    if port is None:
                        return
                    task = asyncio.ensure_future(self.check_port(session, address, port, timeout))
                    pending.append(task)

            fill()
            while pending:
                session.raise_if_cancelled()
                task = pending.popleft()
                result = await task
                session.emit(result)
                fill()

        except ProbeCancelled:
            await self._discard(pending)
            return session.mark_cancelled("Scan cancelled by user.")
        except ResolutionError as e:
            await self._discard(pending)
            logger.warning("port scan %s: %s", req.target, e)
            session.emit(Error(ErrorKind.RESOLUTION, f"Error: Could not resolve host '{req.target}'. Stopping scan."))
            return session.fail()

        return session.complete("Scan complete.")

    async def _discard(self, pending: deque):
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        pending.clear()
