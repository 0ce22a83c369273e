"""
HTTP reachability probe: a single GET that reports only the status line
"""

import asyncio
import logging
from typing import Optional

import httpx

from ..config import get_settings
from ..errors import ProbeCancelled, UnexpectedError
from ..models import Error, ErrorKind, HttpCheckRequest, Info, SessionState
from .base import BaseProbe


logger = logging.getLogger(__name__)

USER_AGENT = "NetLens/1.0"


class HttpProbe(BaseProbe):
    """
    Issue one GET request. The response body is never read.

    ``timeout`` bounds the whole request, redirects included; session
    cancellation aborts it at any point.
    """

    def __init__(
        self,
        request: HttpCheckRequest,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(request)
        self.timeout = get_settings().http_timeout if timeout is None else timeout
        self._transport = transport

    async def fetch_status(self) -> tuple[int, str]:
        """Send the GET and return (status code, reason phrase)"""
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            async with client.stream("GET", self.request.url) as response:
                return response.status_code, response.reason_phrase

    async def run(self, session) -> SessionState:
        url = self.request.url
        session.emit(Info(f"Attempting GET request to: {url}"))

        try:
            status_code, reason = await session.race(self.fetch_status(), timeout=self.timeout)
        except ProbeCancelled:
            session.emit(Error(ErrorKind.TIMED_OUT_OR_CANCELLED, "HTTP request timed out or was cancelled."))
            return session.mark_cancelled()
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            logger.info("GET %s timed out after %.1fs: %r", url, self.timeout, e)
            session.emit(Error(ErrorKind.TIMED_OUT_OR_CANCELLED, "HTTP request timed out or was cancelled."))
            return session.fail()
        except httpx.RequestError as e:
            detail = str(e) or type(e).__name__
            logger.info("GET %s failed: %s", url, detail)
            session.emit(Error(ErrorKind.HTTP_TRANSPORT, f"HTTP Request Error: {detail}"))
            return session.fail()
        except Exception as e:
            logger.exception("GET %s failed unexpectedly", url)
            session.emit(Error(ErrorKind.UNEXPECTED, str(UnexpectedError(e, "Unexpected Error"))))
            return session.fail()

        session.emit(Info(f"Status Code: {status_code} ({reason})"))
        return session.complete()
