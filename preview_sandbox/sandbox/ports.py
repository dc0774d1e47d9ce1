"""
Port Allocator - Hand out unique host ports for preview sandboxes.

Responsibilities:
- Track claimed ports in a single mutex-guarded set
- Scan ascending from the base port, lowest free port first
- Optionally test bind-ability to skip ports held by other processes
"""

import logging
import socket
import threading
from typing import Iterable, List, Optional

from preview_sandbox.sandbox.errors import PoolExhausted

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    Allocates ports from [start, end).

    allocate() and release() are atomic with respect to each other.
    """

    def __init__(
        self,
        start: int,
        end: int,
        check_bind: bool = True,
        host: str = "localhost",
    ):
        if end <= start:
            raise ValueError("end must be greater than start")
        self.start = start
        self.end = end
        self.check_bind = check_bind
        self.host = host
        self._claimed: set = set()
        self._lock = threading.Lock()

    def allocate(self, preferred: Optional[int] = None) -> int:
        """
        Claim a port.

        Args:
            preferred: Port to try first; ignored if outside the range or taken

        Returns:
            The claimed port

        Raises:
            PoolExhausted: If no port in the range is available
        """
        with self._lock:
            if preferred is not None and self._available(preferred):
                self._claimed.add(preferred)
                return preferred

            for port in range(self.start, self.end):
                if self._available(port):
                    self._claimed.add(port)
                    return port

        logger.warning("Port pool %d-%d exhausted", self.start, self.end - 1)
        raise PoolExhausted(
            f"No available ports in range {self.start}-{self.end - 1}. "
            "Too many preview sandboxes running."
        )

    def release(self, port: Optional[int]) -> None:
        """Return a port to the pool. Releasing an unclaimed port is a no-op."""
        if port is None:
            return
        with self._lock:
            self._claimed.discard(port)

    def claim(self, ports: Iterable[int]) -> None:
        """Mark ports as claimed without a bind check, e.g. for sandboxes that survived a restart."""
        with self._lock:
            for port in ports:
                if self.start <= port < self.end:
                    self._claimed.add(port)

    def is_claimed(self, port: int) -> bool:
        with self._lock:
            return port in self._claimed

    def in_use(self) -> List[int]:
        with self._lock:
            return sorted(self._claimed)

    def _available(self, port: int) -> bool:
        if not (self.start <= port < self.end):
            return False
        if port in self._claimed:
            return False
        if self.check_bind and not self._is_port_free(port):
            logger.debug("Port %d is bound by another process, skipping", port)
            return False
        return True

    def _is_port_free(self, port: int) -> bool:
        """Check if a port is free on the system."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((self.host, port))
                return True
            except OSError:
                return False
