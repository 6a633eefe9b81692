import logging
import threading
import time

import pytest

from agents.config import PoolConfig
from devices.backend import DeviceCommandError
from devices.pool import AcquireTimeout, DevicePool, DeviceState, PoolClosed, PoolError

from fakes import FakeBackend


def _pool(max_size=2, pre_create=0, timeout=2.0, **kw):
    backend = FakeBackend(**kw)
    pool = DevicePool(backend, PoolConfig(max_size=max_size, pre_create_count=pre_create, acquire_timeout_s=timeout))
    return pool, backend


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_initialize_precreates_idle_devices():
    """Pre-created devices start idle."""
    pool, backend = _pool(max_size=3, pre_create=2)
    pool.initialize()
    assert pool.stats() == {"total": 2, "idle": 2, "in_use": 0, "cleaning": 0, "queue_length": 0}


def test_initialize_fails_fast_on_create_error():
    pool, backend = _pool(pre_create=1)
    backend.fail_create = True
    with pytest.raises(Exception):
        pool.initialize()
    assert pool.stats()["total"] == 0


def test_initialize_removes_orphans_only():
    """Only pool-named devices this pool doesn't track are deleted."""
    pool, backend = _pool(orphans=[("old-1", "iPhone-15-Pro-pool-abc123"), ("mine", "Personal iPhone")])
    pool.initialize()
    assert backend.deleted == ["old-1"]


def test_concurrent_leases_never_exceed_max_size_or_share_a_device():
    pool, backend = _pool(max_size=2, timeout=5.0)
    lock = threading.Lock()
    holders = {}
    peak = [0]
    errors = []

    def job(i):
        try:
            with pool.lease(f"job-{i}") as handle:
                with lock:
                    assert handle not in holders, f"{handle} leased twice"
                    holders[handle] = i
                    peak[0] = max(peak[0], len(holders))
                time.sleep(0.02)
                with lock:
                    del holders[handle]
        except Exception as e:  # collected and asserted below
            errors.append(e)

    threads = [threading.Thread(target=job, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert peak[0] <= 2
    assert pool.stats()["total"] <= 2
    assert pool.stats()["in_use"] == 0


def test_acquire_times_out_and_waiter_is_never_resolved_later():
    pool, backend = _pool(max_size=1, timeout=0.05)
    first = pool.acquire("a")

    with pytest.raises(AcquireTimeout):
        pool.acquire("b")
    assert pool.stats()["queue_length"] == 0

    pool.release(first)
    # The timed-out waiter must not have been handed the device.
    assert pool.device(first).state is DeviceState.IDLE
    assert pool.device(first).lease_holder is None


def test_release_hands_device_to_head_waiter_in_fifo_order():
    pool, backend = _pool(max_size=1, timeout=2.0)
    handle = pool.acquire("a")
    got = {}

    def waiter(name):
        got[name] = pool.acquire(name)

    tb = threading.Thread(target=waiter, args=("b",))
    tb.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 1)
    tc = threading.Thread(target=waiter, args=("c",))
    tc.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 2)

    pool.release(handle)
    tb.join(1)
    assert got.get("b") == handle
    assert "c" not in got
    assert pool.device(handle).lease_holder == "b"

    pool.release(handle)
    tc.join(1)
    assert got.get("c") == handle


def test_release_uninstalls_cleanup_key_and_returns_to_idle():
    pool, backend = _pool()
    handle = pool.acquire("a")
    pool.release(handle, cleanup_key="com.example.app")
    assert backend.uninstalled == [(handle, "com.example.app")]
    assert pool.device(handle).state is DeviceState.IDLE


def test_cleanup_failure_is_not_fatal():
    pool, backend = _pool()
    backend.fail_uninstall = True
    handle = pool.acquire("a")
    pool.release(handle, cleanup_key="com.example.app")
    assert pool.device(handle).state is DeviceState.IDLE


def test_erase_strategy_erases_without_cleanup_key():
    backend = FakeBackend()
    pool = DevicePool(backend, PoolConfig(max_size=1, pre_create_count=0, cleanup_strategy="erase"))
    handle = pool.acquire("a")
    pool.release(handle)
    assert backend.erased == [handle]


def test_unhealthy_after_cleanup_is_corrupted_and_removed():
    pool, backend = _pool()
    handle = pool.acquire("a")
    backend.unhealthy.add(handle)
    pool.release(handle)
    assert pool.stats()["total"] == 0
    assert handle in backend.deleted
    with pytest.raises(PoolError):
        pool.device(handle)


def test_corrupted_device_is_replaced_for_a_waiter():
    pool, backend = _pool(max_size=1, timeout=2.0)
    handle = pool.acquire("a")
    got = {}
    t = threading.Thread(target=lambda: got.setdefault("b", pool.acquire("b")))
    t.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 1)

    backend.unhealthy.add(handle)
    pool.release(handle)
    t.join(1)
    assert got["b"] != handle
    assert pool.stats()["in_use"] == 1


def test_unhealthy_idle_device_is_replaced_on_acquire():
    pool, backend = _pool(max_size=1, pre_create=1)
    pool.initialize()
    (stale,) = sorted(backend.alive)
    backend.unhealthy.add(stale)
    handle = pool.acquire("a")
    assert handle != stale
    assert stale in backend.deleted


def test_release_of_idle_device_is_rejected():
    pool, backend = _pool()
    handle = pool.acquire("a")
    pool.release(handle)
    with pytest.raises(PoolError):
        pool.release(handle)


def test_lease_releases_when_job_raises():
    pool, backend = _pool()
    with pytest.raises(RuntimeError):
        with pool.lease("a", cleanup_key="com.example.app") as handle:
            raise RuntimeError("job crashed")
    assert pool.device(handle).state is DeviceState.IDLE
    assert backend.uninstalled == [(handle, "com.example.app")]


def test_shutdown_rejects_waiters_and_later_acquires():
    pool, backend = _pool(max_size=1, timeout=5.0)
    handle = pool.acquire("a")
    outcome = {}

    def waiter():
        try:
            pool.acquire("b")
        except PoolClosed as e:
            outcome["error"] = e

    t = threading.Thread(target=waiter)
    t.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 1)

    pool.shutdown(drain_timeout=0.05)
    t.join(1)
    assert isinstance(outcome.get("error"), PoolClosed)
    assert handle in backend.deleted
    with pytest.raises(PoolClosed):
        pool.acquire("c")


def test_shutdown_waits_for_in_flight_release():
    pool, backend = _pool(max_size=1)
    handle = pool.acquire("a")

    def finish_job():
        time.sleep(0.05)
        pool.release(handle)

    t = threading.Thread(target=finish_job)
    t.start()
    started = time.monotonic()
    pool.shutdown(drain_timeout=2.0)
    t.join(1)
    assert time.monotonic() - started < 1.5
    assert backend.uninstalled == [] and handle in backend.deleted


class GatedCreateBackend(FakeBackend):
    """create() blocks until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def create(self, name):
        self.entered.set()
        self.gate.wait(5)
        return super().create(name)


def test_device_created_during_shutdown_is_deleted_not_leased():
    backend = GatedCreateBackend()
    pool = DevicePool(backend, PoolConfig(max_size=1, pre_create_count=0))
    outcome = {}

    def job():
        try:
            outcome["handle"] = pool.acquire("a")
        except PoolClosed as e:
            outcome["error"] = e

    t = threading.Thread(target=job)
    t.start()
    assert backend.entered.wait(1)

    pool.shutdown(drain_timeout=0.05)
    backend.gate.set()
    t.join(1)

    assert "handle" not in outcome
    assert isinstance(outcome.get("error"), PoolClosed)
    assert backend.alive == set()
    assert backend.deleted == ["dev-1"]


def test_shutdown_drain_waits_for_pending_create():
    backend = GatedCreateBackend()
    pool = DevicePool(backend, PoolConfig(max_size=1, pre_create_count=0))
    t = threading.Thread(target=lambda: pytest.raises(PoolClosed, pool.acquire, "a"))
    t.start()
    assert backend.entered.wait(1)

    threading.Timer(0.05, backend.gate.set).start()
    pool.shutdown(drain_timeout=2.0)
    t.join(1)
    assert backend.deleted == ["dev-1"]
    assert pool.stats()["total"] == 0


def test_newcomer_cannot_take_a_released_device_from_the_queue(caplog):
    pool, backend = _pool(max_size=1, timeout=2.0)
    handle = pool.acquire("a")
    got = {}

    class Intruder(logging.Handler):
        def emit(self, record):
            if "released by" in record.getMessage() and "intruder" not in got:
                try:
                    got["intruder"] = pool.acquire("intruder", timeout=0.1)
                except AcquireTimeout as e:
                    got["intruder"] = e

    t = threading.Thread(target=lambda: got.setdefault("b", pool.acquire("b")))
    t.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 1)

    intruder = Intruder()
    logging.getLogger().addHandler(intruder)
    try:
        with caplog.at_level(logging.INFO):
            pool.release(handle)
    finally:
        logging.getLogger().removeHandler(intruder)
    t.join(1)

    assert got["b"] == handle
    assert isinstance(got["intruder"], AcquireTimeout)


def test_acquire_queues_behind_existing_waiters():
    pool, backend = _pool(max_size=1, timeout=2.0)
    handle = pool.acquire("a")
    order = []

    def waiter(name):
        pool.acquire(name)
        order.append(name)
        pool.release(handle)

    tb = threading.Thread(target=waiter, args=("b",))
    tb.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 1)
    tc = threading.Thread(target=waiter, args=("c",))
    tc.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 2)

    pool.release(handle)
    tb.join(1)
    tc.join(1)
    assert order == ["b", "c"]


def test_failed_replacement_is_reported_to_the_queued_job():
    pool, backend = _pool(max_size=1, timeout=5.0)
    handle = pool.acquire("a")
    outcome = {}

    def waiter():
        try:
            outcome["handle"] = pool.acquire("b")
        except DeviceCommandError as e:
            outcome["error"] = e

    t = threading.Thread(target=waiter)
    t.start()
    assert _wait_for(lambda: pool.stats()["queue_length"] == 1)

    backend.unhealthy.add(handle)
    backend.fail_create = True
    started = time.monotonic()
    pool.release(handle)
    t.join(1)

    assert isinstance(outcome.get("error"), DeviceCommandError)
    assert time.monotonic() - started < 1.0
    assert pool.stats()["queue_length"] == 0
