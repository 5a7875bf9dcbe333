"""Concurrency gate for one expensive external dependency.

Purpose: Bound in-flight calls without queueing. Callers that cannot get a
permit fail fast with TooBusy so the HTTP layer answers immediately.
"""
import threading
from contextlib import contextmanager

from stylebook.errors import TooBusy
from stylebook.logging_config import get_logger

logger = get_logger(__name__)


class ConcurrencyGate:
    """Non-blocking counting semaphore with scoped acquisition."""

    def __init__(self, permits: int = 2, name: str = "external"):
        """
        Initialize gate.

        Args:
            permits: Maximum concurrent holders (values < 1 clamp to 1)
            name: Label used in logs
        """
        self.permits = max(1, permits)
        self.name = name
        self._semaphore = threading.BoundedSemaphore(self.permits)

    def try_acquire(self) -> bool:
        """Take a permit if one is free. Never blocks."""
        return self._semaphore.acquire(blocking=False)

    def release(self):
        """
        Return a permit.

        Raises:
            ValueError: If released more times than acquired
        """
        self._semaphore.release()

    @contextmanager
    def acquire(self, message: str = "High demand right now. Try again in a few seconds."):
        """
        Hold a permit for the duration of the block.

        Usage:
            with gate.acquire():
                call_external_service()

        Raises:
            TooBusy: If every permit is taken
        """
        if not self.try_acquire():
            logger.warning("concurrency_gate_saturated", gate=self.name, permits=self.permits)
            raise TooBusy(message)
        try:
            yield
        finally:
            self.release()
