"""Tests for per-machine lock registries."""

import threading
from uuid import uuid4

import pytest
from redis.exceptions import LockError

from shopfloor.core.config import Settings
from shopfloor.core.machine_locks import (
    MachineLockRegistry,
    RedisMachineLockRegistry,
    build_machine_lock_registry,
)
from shopfloor.domain.shared.exceptions import MachineLockTimeoutError


class FakeRedisLock:
    def __init__(self, acquired: bool = True, expired: bool = False):
        self.acquired = acquired
        self.expired = expired
        self.released = False

    def acquire(self) -> bool:
        return self.acquired

    def release(self) -> None:
        if self.expired:
            raise LockError("Cannot release an unlocked lock")
        self.released = True


class FakeRedis:
    """Records ``lock`` calls and hands out a preset lock."""

    def __init__(self, lock: FakeRedisLock):
        self._lock = lock
        self.calls: list[dict] = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.calls.append(
            {"name": name, "timeout": timeout, "blocking_timeout": blocking_timeout}
        )
        return self._lock


class TestMachineLockRegistry:
    """Test the in-process registry."""

    def test_held_lock_times_out_other_holder(self):
        registry = MachineLockRegistry(blocking_timeout=0.05)
        machine_id = uuid4()
        errors = []

        def contend():
            try:
                with registry.hold(machine_id):
                    pass
            except MachineLockTimeoutError as e:
                errors.append(e)

        with registry.hold(machine_id):
            worker = threading.Thread(target=contend)
            worker.start()
            worker.join()

        assert len(errors) == 1
        assert errors[0].details["machine_id"] == str(machine_id)

    def test_machines_lock_independently(self):
        registry = MachineLockRegistry(blocking_timeout=0.05)

        with registry.hold(uuid4()):
            with registry.hold(uuid4()):
                pass

    def test_lock_released_after_error(self):
        registry = MachineLockRegistry(blocking_timeout=0.05)
        machine_id = uuid4()

        with pytest.raises(RuntimeError):
            with registry.hold(machine_id):
                raise RuntimeError("start failed")

        with registry.hold(machine_id):
            pass


class TestRedisMachineLockRegistry:
    """Test the Redis-backed registry against a fake client."""

    def test_lock_key_and_timeouts(self):
        lock = FakeRedisLock()
        client = FakeRedis(lock)
        registry = RedisMachineLockRegistry(
            client, key_prefix="plant1:", timeout=10.0, blocking_timeout=1.5
        )
        machine_id = uuid4()

        with registry.hold(machine_id):
            pass

        assert client.calls == [
            {
                "name": f"plant1:machine:{machine_id}",
                "timeout": 10.0,
                "blocking_timeout": 1.5,
            }
        ]
        assert lock.released

    def test_contended_lock_raises(self):
        registry = RedisMachineLockRegistry(FakeRedis(FakeRedisLock(acquired=False)))

        with pytest.raises(MachineLockTimeoutError):
            with registry.hold(uuid4()):
                pytest.fail("block must not run without the lock")

    def test_expired_lock_release_is_tolerated(self):
        registry = RedisMachineLockRegistry(FakeRedis(FakeRedisLock(expired=True)))

        with registry.hold(uuid4()):
            pass


class TestBuildRegistry:
    """Test backend selection from settings."""

    def test_local_backend(self):
        registry = build_machine_lock_registry(
            Settings(MACHINE_LOCK_BACKEND="local", MACHINE_LOCK_BLOCKING_TIMEOUT_SECONDS=3)
        )

        assert isinstance(registry, MachineLockRegistry)
        assert registry.blocking_timeout == 3

    def test_redis_backend(self):
        registry = build_machine_lock_registry(
            Settings(
                MACHINE_LOCK_BACKEND="redis",
                REDIS_HOST="redis.internal",
                REDIS_KEY_PREFIX="plant1:",
                MACHINE_LOCK_TIMEOUT_SECONDS=12,
            )
        )

        assert isinstance(registry, RedisMachineLockRegistry)
        assert registry.key_prefix == "plant1:"
        assert registry.timeout == 12
