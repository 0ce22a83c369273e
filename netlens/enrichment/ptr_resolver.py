"""
PTR (reverse DNS) resolver for hop addresses
"""

import asyncio
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Optional


logger = logging.getLogger(__name__)


class PTRResolver:
    """
    Async PTR record resolver.

    Performs best-effort reverse DNS lookups to get display names for hop
    addresses. Every failure, including a timeout, yields None.
    """

    def __init__(self, timeout: float = 2.0, max_workers: int = 2):
        self.timeout = timeout
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="netlens-ptr"
        )

    def _resolve_sync(self, ip: str) -> Optional[str]:
        """Synchronous PTR lookup"""
        try:
            hostname, _, _ = socket.gethostbyaddr(ip)
            return hostname
        except (socket.herror, socket.gaierror, socket.timeout, OSError):
            return None

    async def resolve(self, ip: Optional[str]) -> Optional[str]:
        """
        Async PTR lookup for single IP.

        Args:
            ip: IP address to resolve

        Returns:
            Hostname, or None if not found or the address has no
            name other than itself
        """
        if not ip:
            return None

        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self._resolve_sync, ip),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.debug("PTR lookup for %s timed out", ip)
            return None

        if not result or result == ip:
            return None
        return result

    def close(self):
        """Shutdown thread pool"""
        self._executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
