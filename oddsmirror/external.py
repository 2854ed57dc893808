import asyncio
import logging
import threading
import time
import weakref
from contextlib import asynccontextmanager

from .settings import settings

logger = logging.getLogger(__name__)


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a venue whose breaker is open."""

    def __init__(self, name: str) -> None:
        super().__init__(f"circuit open: {name}")
        self.name = name


class CircuitBreaker:
    def __init__(self, name: str, max_failures: int, reset_seconds: int) -> None:
        self.name = name
        self.max_failures = max(int(max_failures), 1)
        self.reset_seconds = max(int(reset_seconds), 1)
        self._failures = 0
        self._opened_at: float | None = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._opened_at is not None

    def allow(self) -> bool:
        with self._lock:
            if self._opened_at is None:
                return True
            # half-open: one trial call after the cool-down
            if time.monotonic() - self._opened_at >= self.reset_seconds:
                self._failures = self.max_failures - 1
                self._opened_at = None
                return True
            return False

    def guard(self) -> None:
        if not self.allow():
            raise CircuitOpenError(self.name)

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.max_failures and self._opened_at is None:
                self._opened_at = time.monotonic()
                logger.warning("circuit_opened name=%s failures=%s", self.name, self._failures)


_semaphores: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


def polymarket_semaphore() -> asyncio.Semaphore | None:
    """One semaphore per running event loop; sync wrappers spin up fresh loops."""
    limit = settings.EXTERNAL_MAX_CONCURRENT_POLY_CALLS
    if limit is None or limit <= 0:
        return None
    loop = asyncio.get_running_loop()
    semaphore = _semaphores.get(loop)
    if semaphore is None:
        semaphore = asyncio.Semaphore(limit)
        _semaphores[loop] = semaphore
    return semaphore


@asynccontextmanager
async def async_limited(semaphore: asyncio.Semaphore | None):
    if semaphore is None:
        yield
        return
    async with semaphore:
        yield


POLYMARKET_BREAKER = CircuitBreaker(
    "polymarket",
    settings.POLY_CIRCUIT_MAX_FAILURES,
    settings.POLY_CIRCUIT_RESET_SECONDS,
)
