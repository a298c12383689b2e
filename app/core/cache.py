"""
Expiring single-value cache.

Used by collaborator clients that hold credentials (e.g. the WhatsApp client)
so a rotated token is picked up without restarting the process.
"""
import logging
import threading
import time
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")

log = logging.getLogger("storecast.cache")


class ExpiringValue(Generic[T]):
    """
    Holds one value produced by ``factory`` and rebuilds it after ``ttl_seconds``.

    Usage:
        client = ExpiringValue(build_client, ttl_seconds=3600)
        wa = client.get()
    """

    def __init__(
        self,
        factory: Callable[[], T],
        ttl_seconds: float,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self._factory = factory
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._value: Optional[T] = None
        self._expires_at: float = 0.0
        self._lock = threading.Lock()

    @property
    def expired(self) -> bool:
        return self._value is None or self._monotonic() >= self._expires_at

    def get(self) -> T:
        """Return the cached value, refreshing it when expired"""
        with self._lock:
            if self.expired:
                self._refresh_locked()
            return self._value

    def invalidate(self):
        """Force the next get() to rebuild the value"""
        with self._lock:
            self._value = None
            self._expires_at = 0.0

    def _refresh_locked(self):
        log.debug("Refreshing cached value")
        self._value = self._factory()
        self._expires_at = self._monotonic() + self._ttl
