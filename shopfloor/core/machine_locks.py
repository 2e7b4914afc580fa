"""
Machine Locks

Per-machine mutexes guarding the "at most one stage in progress per
machine" invariant. Every check-and-start or check-and-resume on a machine
runs while holding that machine's lock, whether it comes from the
reconciliation loop or from an operator action.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

import redis
from redis.exceptions import LockError

from ..domain.shared.exceptions import MachineLockTimeoutError
from .config import Settings
from .observability import get_logger

logger = get_logger(__name__)


class MachineLockRegistry:
    """In-process registry of one ``threading.Lock`` per machine."""

    def __init__(self, blocking_timeout: float = 5.0):
        self.blocking_timeout = blocking_timeout
        self._locks: dict[UUID, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, machine_id: UUID) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(machine_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[machine_id] = lock
            return lock

    @contextmanager
    def hold(self, machine_id: UUID) -> Iterator[None]:
        """
        Hold the machine's lock for the duration of the block.

        Raises:
            MachineLockTimeoutError: If the lock is not acquired in time
        """
        lock = self._lock_for(machine_id)
        if not lock.acquire(timeout=self.blocking_timeout):
            raise MachineLockTimeoutError(machine_id, self.blocking_timeout)
        try:
            yield
        finally:
            lock.release()


class RedisMachineLockRegistry:
    """
    Redis-backed machine locks for deployments with several processes.

    Locks expire after ``timeout`` seconds so a crashed holder cannot block
    a machine forever.
    """

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "shopfloor:",
        timeout: float = 30.0,
        blocking_timeout: float = 5.0,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    def key_for(self, machine_id: UUID) -> str:
        return f"{self.key_prefix}machine:{machine_id}"

    @contextmanager
    def hold(self, machine_id: UUID) -> Iterator[None]:
        """
        Hold the machine's Redis lock for the duration of the block.

        Raises:
            MachineLockTimeoutError: If the lock is not acquired in time
        """
        lock = self.client.lock(
            self.key_for(machine_id),
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not lock.acquire():
            raise MachineLockTimeoutError(machine_id, self.blocking_timeout)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # Expired while held; the next holder already owns the key
                logger.warning(
                    "Machine lock expired before release", machine_id=str(machine_id)
                )


def build_machine_lock_registry(
    settings: Settings,
) -> MachineLockRegistry | RedisMachineLockRegistry:
    """Create the lock registry selected by ``MACHINE_LOCK_BACKEND``."""
    if settings.MACHINE_LOCK_BACKEND == "redis":
        client = redis.Redis.from_url(settings.REDIS_URL)
        return RedisMachineLockRegistry(
            client,
            key_prefix=settings.REDIS_KEY_PREFIX,
            timeout=settings.MACHINE_LOCK_TIMEOUT_SECONDS,
            blocking_timeout=settings.MACHINE_LOCK_BLOCKING_TIMEOUT_SECONDS,
        )
    return MachineLockRegistry(
        blocking_timeout=settings.MACHINE_LOCK_BLOCKING_TIMEOUT_SECONDS
    )
