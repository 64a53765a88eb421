"""Per-device scheduled reads with on-change filtering."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import math
from typing import Any, Awaitable, Callable

from loguru import logger

from devicecore.cache import Caches
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, AutoEvent, Device
from devicecore.models.event import Event, Reading
from devicecore.utils.helpers import parse_duration
from devicecore.values.types import ValueType, is_numeric, is_numeric_array

Reader = Callable[[str, str], Awaitable[Event | None]]
Publish = Callable[[Event], Awaitable[None]]


def _fingerprint(reading: Reading) -> Any:
    if reading.value_type == ValueType.BINARY:
        return hashlib.sha256(reading.binary_value).hexdigest()
    if is_numeric(reading.value_type):
        try:
            return float(reading.value)
        except ValueError:
            return reading.value
    if is_numeric_array(reading.value_type):
        try:
            return [float(x) for x in reading.value.strip("[]").split(",") if x.strip()]
        except ValueError:
            return reading.value
    return reading.value


def _differs(previous: Any, current: Any, threshold: float) -> bool:
    if isinstance(previous, float) and isinstance(current, float):
        if math.isnan(previous) or math.isnan(current):
            return not (math.isnan(previous) and math.isnan(current))
        return abs(previous - current) > threshold
    if isinstance(previous, list) and isinstance(current, list):
        if len(previous) != len(current):
            return True
        return any(_differs(a, b, threshold) for a, b in zip(previous, current))
    return previous != current


class AutoEventExecutor:
    """Reads one source of one device on a fixed schedule."""

    def __init__(
        self,
        device_name: str,
        auto_event: AutoEvent,
        *,
        reader: Reader,
        publish: Publish,
    ) -> None:
        interval = parse_duration(auto_event.interval)
        if interval <= 0:
            raise ValueError(f"auto event interval must be positive, got {auto_event.interval!r}")
        self.device_name = device_name
        self.source_name = auto_event.source_name
        self.interval = interval
        self.on_change = auto_event.on_change
        self.on_change_threshold = max(0.0, float(auto_event.on_change_threshold))
        self.last_readings: dict[str, Any] = {}
        self._reader = reader
        self._publish = publish
        self._stopped = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None:
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    def should_publish(self, event: Event) -> bool:
        """Apply the on-change filter and remember what was seen."""
        if not self.on_change:
            return True
        current = {r.resource_name: _fingerprint(r) for r in event.readings}
        if set(current) != set(self.last_readings):
            self.last_readings = current
            return True
        changed = False
        for name, value in current.items():
            if _differs(self.last_readings[name], value, self.on_change_threshold):
                self.last_readings[name] = value
                changed = True
        return changed

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while not self._stopped:
            deadline += self.interval
            now = loop.time()
            while deadline < now:
                deadline += self.interval
            await asyncio.sleep(deadline - now)
            if self._stopped:
                break
            try:
                event = await self._reader(self.device_name, self.source_name)
            except asyncio.CancelledError:
                raise
            except EdgeError as e:
                if e.kind == ErrorKind.SERVICE_LOCKED:
                    logger.debug(f"auto event {self.device_name}/{self.source_name} skipped: {e}")
                else:
                    logger.warning(f"auto event {self.device_name}/{self.source_name} failed: {e}")
                continue
            except Exception as e:
                logger.error(f"auto event {self.device_name}/{self.source_name} failed: {e}")
                continue
            if event is None or not event.readings:
                continue
            if not self.should_publish(event):
                logger.debug(f"auto event {self.device_name}/{self.source_name} unchanged, not published")
                continue
            try:
                await self._publish(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"auto event {self.device_name}/{self.source_name} publish failed: {e}")


class AutoEventManager:
    """
    Owns the executors of every device.

    Events from all executors go through one publish queue bounded by
    ``pool_size`` and drained by ``pool_size`` workers; an executor blocks
    while the queue is full.
    """

    def __init__(
        self,
        *,
        caches: Caches,
        reader: Reader,
        publish: Publish,
        pool_size: int = 16,
    ) -> None:
        self.caches = caches
        self.pool_size = max(1, int(pool_size))
        self._reader = reader
        self._publish = publish
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self.pool_size)
        self._workers: list[asyncio.Task[None]] = []
        self._executors: dict[str, list[AutoEventExecutor]] = {}

    @property
    def workers_running(self) -> int:
        return sum(1 for worker in self._workers if not worker.done())

    def executors_for(self, device_name: str) -> list[AutoEventExecutor]:
        return list(self._executors.get(device_name, []))

    def start_all(self) -> None:
        for device in self.caches.devices.all():
            self._start_for(device)

    def restart_for_device(self, device_name: str) -> None:
        self.stop_for_device(device_name)
        device = self.caches.devices.for_name(device_name)
        if device is None:
            logger.debug(f"no auto events restarted: device {device_name} not cached")
            return
        self._start_for(device)

    def stop_for_device(self, device_name: str) -> None:
        executors = self._executors.pop(device_name, [])
        for executor in executors:
            executor.stop()
        if executors:
            logger.info(f"stopped {len(executors)} auto events of {device_name}")

    async def stop_all(self) -> None:
        stopped: list[AutoEventExecutor] = []
        for name in list(self._executors):
            stopped.extend(self._executors.get(name, []))
            self.stop_for_device(name)
        for executor in stopped:
            await executor.wait()
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        for worker in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.warning(f"dropped {dropped} queued auto events on shutdown")

    def _start_for(self, device: Device) -> None:
        if not device.profile_name or device.admin_state == AdminState.LOCKED:
            return
        if device.name in self._executors:
            return
        executors: list[AutoEventExecutor] = []
        for auto_event in device.auto_events:
            try:
                executor = AutoEventExecutor(
                    device.name,
                    auto_event,
                    reader=self._reader,
                    publish=self._enqueue,
                )
            except ValueError as e:
                logger.warning(f"skipping auto event {device.name}/{auto_event.source_name}: {e}")
                continue
            executor.start()
            executors.append(executor)
        if executors:
            self._ensure_workers()
            self._executors[device.name] = executors
            logger.info(f"started {len(executors)} auto events of {device.name}")

    def _ensure_workers(self) -> None:
        self._workers = [worker for worker in self._workers if not worker.done()]
        while len(self._workers) < self.pool_size:
            self._workers.append(asyncio.create_task(self._publish_worker()))

    async def _enqueue(self, event: Event) -> None:
        await self._queue.put(event)

    async def _publish_worker(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._publish(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"auto event {event.device_name}/{event.source_name} publish failed: {e}")
            finally:
                self._queue.task_done()
