"""
Device pool shared by concurrent exploration jobs.

Each job leases one device for its whole run. The pool grows on demand up to
`max_size`, parks callers in a FIFO queue once saturated, and recycles
devices (uninstall or erase) between leases.

Every device carries an explicit DeviceState. All table and queue mutations
happen under one lock; slow tool calls (create, cleanup, delete) run outside
it so one job's cleanup never blocks another job's acquire.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, Iterator, List, Optional

from agents.config import PoolConfig
from devices.backend import DeviceBackend, DeviceCommandError


class PoolError(RuntimeError):
    pass


class AcquireTimeout(PoolError):
    """No device became available within the acquire timeout."""


class PoolClosed(PoolError):
    """The pool is shutting down (or already has)."""


class UnknownDevice(PoolError):
    pass


class DeviceState(str, Enum):
    IDLE = "idle"
    IN_USE = "in-use"
    CLEANING = "cleaning"
    CORRUPTED = "corrupted"


_ALLOWED_TRANSITIONS = {
    DeviceState.IDLE: {DeviceState.IN_USE, DeviceState.CORRUPTED},
    DeviceState.IN_USE: {DeviceState.CLEANING, DeviceState.CORRUPTED},
    DeviceState.CLEANING: {DeviceState.IDLE, DeviceState.CORRUPTED},
    DeviceState.CORRUPTED: set(),
}


@dataclass
class Device:
    handle: str
    name: str
    device_type: str
    state: DeviceState = DeviceState.IDLE
    lease_holder: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: Optional[datetime] = None

    def transition(self, new_state: DeviceState):
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise PoolError(f"Illegal device transition {self.state.value} -> {new_state.value} ({self.handle})")
        self.state = new_state


@dataclass
class _Waiter:
    job_id: str
    event: threading.Event = field(default_factory=threading.Event)
    handle: Optional[str] = None
    error: Optional[Exception] = None
    enqueued_at: float = field(default_factory=time.monotonic)


class DevicePool:
    """Leases ephemeral devices to jobs.

    Usage:
        pool = DevicePool(SimctlBackend(), PoolConfig(max_size=3))
        pool.initialize()
        with pool.lease("job-1", cleanup_key="com.example.app") as handle:
            ...
        pool.shutdown()
    """

    def __init__(self, backend: DeviceBackend, config: Optional[PoolConfig] = None):
        self.backend = backend
        self.config = config or PoolConfig()
        self._devices: Dict[str, Device] = {}
        self._waiters: Deque[_Waiter] = deque()
        self._pending_creates = 0
        self._closed = False
        self._lock = threading.Lock()
        # Signalled whenever a lease ends, so shutdown can drain.
        self._lease_ended = threading.Condition(self._lock)

    @property
    def platform(self) -> str:
        return self.backend.platform

    # Lifecycle

    def initialize(self):
        """Remove orphans, then pre-create idle devices. Creation errors propagate."""
        self.cleanup_orphaned_devices()
        for _ in range(self.config.pre_create_count):
            with self._lock:
                if self._total_locked() >= self.config.max_size:
                    break
                self._pending_creates += 1
            if not self._register(self._create_device()):
                break
        logging.info(f"[POOL] initialized with {len(self._devices)} idle device(s)")

    def acquire(self, job_id: str, timeout: Optional[float] = None) -> str:
        timeout = self.config.acquire_timeout_s if timeout is None else timeout

        while True:
            create = False
            idle = None
            with self._lock:
                if self._closed:
                    raise PoolClosed("Device pool is shut down")
                # Queued jobs are served first; newcomers get in line behind them.
                if not self._waiters:
                    idle = self._first_idle_locked()
                    if idle is not None:
                        self._lease_locked(idle, job_id)
                    elif self._total_locked() < self.config.max_size:
                        self._pending_creates += 1
                        create = True
                if idle is None and not create:
                    waiter = _Waiter(job_id=job_id)
                    self._waiters.append(waiter)
                    logging.info(f"[POOL] {job_id} queued (position {len(self._waiters)})")
                    break

            if create:
                try:
                    device = self._create_device()
                except DeviceCommandError:
                    # The reserved slot is free again; jobs queued behind it need it.
                    self._fill_waiters()
                    raise
                if not self._register(device, job_id):
                    raise PoolClosed("Device pool shut down while creating a device")
                logging.info(f"[POOL] created {device.handle} for {job_id}")
                return device.handle

            # Health check outside the lock; the device is already ours.
            if self.backend.is_healthy(idle.handle):
                logging.info(f"[POOL] leased {idle.handle} to {job_id}")
                return idle.handle
            logging.warning(f"[POOL] {idle.handle} failed health check, replacing")
            self._corrupt(idle.handle)

        return self._wait(waiter, timeout)

    def _wait(self, waiter: _Waiter, timeout: float) -> str:
        waiter.event.wait(timeout)
        with self._lock:
            if waiter.handle is not None:
                logging.info(f"[POOL] leased {waiter.handle} to queued {waiter.job_id}")
                return waiter.handle
            if waiter.error is None:
                # Timed out. Removing under the lock means no release can
                # resolve this waiter afterwards.
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
                waited = time.monotonic() - waiter.enqueued_at
                raise AcquireTimeout(
                    f"Timeout acquiring device for {waiter.job_id} after {waited:.1f}s"
                )
        raise waiter.error

    def release(self, handle: str, cleanup_key: Optional[str] = None):
        with self._lock:
            device = self._devices.get(handle)
            if device is None:
                raise UnknownDevice(f"Device {handle} not in pool")
            if device.state is not DeviceState.IN_USE:
                raise PoolError(f"Device {handle} is {device.state.value}, not in-use")
            holder = device.lease_holder
            device.transition(DeviceState.CLEANING)

        try:
            self._clean(handle, cleanup_key)
        except DeviceCommandError as e:
            logging.warning(f"[POOL] cleanup of {handle} failed (continuing): {e}")

        if not self.backend.is_healthy(handle):
            logging.error(f"[POOL] {handle} unhealthy after cleanup, marking corrupted")
            self._corrupt(handle)
            return

        with self._lock:
            device.transition(DeviceState.IDLE)
            device.lease_holder = None
            next_holder = self._hand_idle_to_waiter_locked(device)
            self._lease_ended.notify_all()
        if next_holder:
            logging.info(f"[POOL] {handle} released by {holder}, handed to {next_holder}")
        else:
            logging.info(f"[POOL] {handle} released by {holder}")

    @contextmanager
    def lease(self, job_id: str, cleanup_key: Optional[str] = None,
              timeout: Optional[float] = None) -> Iterator[str]:
        """Acquire a device and release it exactly once, however the job ends."""
        handle = self.acquire(job_id, timeout=timeout)
        try:
            yield handle
        finally:
            try:
                self.release(handle, cleanup_key)
            except PoolError as e:
                logging.error(f"[POOL] release of {handle} failed: {e}")

    def shutdown(self, drain_timeout: float = 10.0):
        deadline = time.monotonic() + drain_timeout
        with self._lock:
            self._closed = True
            waiters = list(self._waiters)
            self._waiters.clear()
            for w in waiters:
                w.error = PoolClosed("Device pool shut down while waiting")
                w.event.set()

            while self._pending_creates or self._count_locked(DeviceState.IN_USE, DeviceState.CLEANING):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logging.warning("[POOL] drain timed out, forcing teardown of leased devices")
                    break
                self._lease_ended.wait(remaining)

            devices = list(self._devices.values())
            self._devices.clear()

        for device in devices:
            self._teardown(device.handle)
        logging.info(f"[POOL] shut down ({len(devices)} device(s) torn down, {len(waiters)} waiter(s) rejected)")

    def cleanup_orphaned_devices(self) -> List[str]:
        """Delete pool-named devices this instance doesn't track (crash leftovers)."""
        with self._lock:
            tracked = set(self._devices)
        removed = []
        for handle, name in self.backend.list_devices():
            if self.backend.name_marker in name and handle not in tracked:
                logging.info(f"[POOL] cleaning up orphaned device: {name}")
                try:
                    self.backend.delete(handle)
                    removed.append(handle)
                except DeviceCommandError as e:
                    logging.warning(f"[POOL] could not delete orphan {name}: {e}")
        return removed

    # Observability

    def stats(self) -> dict:
        with self._lock:
            return {
                "total": len(self._devices),
                "idle": self._count_locked(DeviceState.IDLE),
                "in_use": self._count_locked(DeviceState.IN_USE),
                "cleaning": self._count_locked(DeviceState.CLEANING),
                "queue_length": len(self._waiters),
            }

    def device(self, handle: str) -> Device:
        with self._lock:
            device = self._devices.get(handle)
        if device is None:
            raise UnknownDevice(f"Device {handle} not in pool")
        return device

    def automation_id(self, handle: str) -> str:
        return self.backend.automation_id(handle)

    def install_app(self, handle: str, app_path: str):
        self.backend.install(handle, app_path)

    # Internals

    def _total_locked(self) -> int:
        return len(self._devices) + self._pending_creates

    def _count_locked(self, *states: DeviceState) -> int:
        return sum(1 for d in self._devices.values() if d.state in states)

    def _first_idle_locked(self) -> Optional[Device]:
        for device in self._devices.values():
            if device.state is DeviceState.IDLE:
                return device
        return None

    def _lease_locked(self, device: Device, job_id: str):
        device.transition(DeviceState.IN_USE)
        device.lease_holder = job_id
        device.last_used_at = datetime.now()

    def _create_device(self) -> Device:
        """Create one device. Caller must already hold a pending-create slot."""
        name = self.backend.name_for(self.config.device_type, uuid.uuid4().hex[:8])
        try:
            handle = self.backend.create(name)
        finally:
            with self._lock:
                self._pending_creates -= 1
                # shutdown() drains pending creates too.
                self._lease_ended.notify_all()
        return Device(handle=handle, name=name, device_type=self.config.device_type)

    def _register(self, device: Device, job_id: Optional[str] = None) -> bool:
        """Add a freshly created device: leased to `job_id`, else idle or handed to the head waiter.

        Returns False (and deletes the device) when the pool closed during creation.
        """
        with self._lock:
            if not self._closed:
                self._devices[device.handle] = device
                if job_id is not None:
                    self._lease_locked(device, job_id)
                else:
                    self._hand_idle_to_waiter_locked(device)
                return True
        logging.info(f"[POOL] pool closed while creating {device.handle}, deleting it")
        self._teardown(device.handle)
        return False

    def _clean(self, handle: str, cleanup_key: Optional[str]):
        if cleanup_key:
            self.backend.uninstall(handle, cleanup_key)
        elif self.config.cleanup_strategy == "erase":
            self.backend.erase(handle)

    def _teardown(self, handle: str):
        try:
            self.backend.delete(handle)
        except DeviceCommandError as e:
            logging.warning(f"[POOL] teardown of {handle} failed: {e}")

    def _hand_idle_to_waiter_locked(self, device: Device) -> Optional[str]:
        if device.state is not DeviceState.IDLE or not self._waiters:
            return None
        waiter = self._waiters.popleft()
        self._lease_locked(device, waiter.job_id)
        waiter.handle = device.handle
        waiter.event.set()
        return waiter.job_id

    def _corrupt(self, handle: str):
        """Mark a device corrupted, drop it from the table, and backfill waiters."""
        with self._lock:
            device = self._devices.get(handle)
            if device is not None:
                device.transition(DeviceState.CORRUPTED)
                device.lease_holder = None
            # Reconciliation: corrupted devices never stay in the table.
            self._devices.pop(handle, None)
            self._lease_ended.notify_all()
        self._teardown(handle)
        self._fill_waiters()

    def _fill_waiters(self):
        """Create devices for queued jobs while there is spare capacity.

        A failed create goes to the head waiter as its acquire error, the same
        error it would have seen creating the device itself.
        """
        while True:
            with self._lock:
                if self._closed or not self._waiters or self._total_locked() >= self.config.max_size:
                    return
                self._pending_creates += 1
            try:
                device = self._create_device()
            except DeviceCommandError as e:
                logging.error(f"[POOL] replacement device creation failed: {e}")
                with self._lock:
                    if self._waiters:
                        waiter = self._waiters.popleft()
                        waiter.error = e
                        waiter.event.set()
                continue
            if not self._register(device):
                return
