import asyncio

import pytest

from devicecore.cache import Caches
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, AutoEvent, Device
from devicecore.models.event import Event, Reading
from devicecore.runtime.autoevent import AutoEventExecutor, AutoEventManager
from devicecore.values.types import ValueType


def _event(device: str, **values: str) -> Event:
    return Event(
        device_name=device,
        profile_name="p1",
        source_name="temp",
        readings=[Reading(resource_name=k, value_type=ValueType.FLOAT32, value=v) for k, v in values.items()],
    )


class _Recorder:
    def __init__(self) -> None:
        self.reads = 0
        self.published: list[Event] = []
        self.value = "21.5"
        self.error: EdgeError | None = None

    async def read(self, device_name: str, source_name: str) -> Event | None:
        del source_name
        self.reads += 1
        if self.error is not None:
            raise self.error
        return _event(device_name, temp=self.value)

    async def publish(self, event: Event) -> None:
        self.published.append(event)


def _executor(recorder: _Recorder, **kwargs) -> AutoEventExecutor:  # type: ignore[no-untyped-def]
    return AutoEventExecutor(
        "d4",
        AutoEvent(source_name="temp", interval=kwargs.pop("interval", "20ms"), **kwargs),
        reader=recorder.read,
        publish=recorder.publish,
    )


@pytest.mark.asyncio
async def test_on_change_suppresses_identical_reads() -> None:
    recorder = _Recorder()
    executor = _executor(recorder, on_change=True, on_change_threshold=0)
    executor.start()
    await asyncio.sleep(0.15)
    executor.stop()
    await executor.wait()

    assert recorder.reads >= 3
    assert len(recorder.published) == 1


@pytest.mark.asyncio
async def test_without_on_change_every_read_is_published() -> None:
    recorder = _Recorder()
    executor = _executor(recorder)
    executor.start()
    await asyncio.sleep(0.1)
    executor.stop()
    await executor.wait()

    assert len(recorder.published) == recorder.reads
    assert recorder.reads >= 2


def test_on_change_threshold_and_new_resources() -> None:
    recorder = _Recorder()
    executor = _executor(recorder, on_change=True, on_change_threshold=0.5)

    assert executor.should_publish(_event("d4", temp="20.0"))
    assert not executor.should_publish(_event("d4", temp="20.4"))
    assert executor.should_publish(_event("d4", temp="20.6"))
    assert executor.should_publish(_event("d4", temp="20.6", humidity="40"))
    assert executor.last_readings == {"temp": 20.6, "humidity": 40.0}
    assert not executor.should_publish(_event("d4", temp="20.6", humidity="40"))


def test_on_change_compares_binary_by_hash() -> None:
    recorder = _Recorder()
    executor = _executor(recorder, on_change=True)

    def _binary(payload: bytes) -> Event:
        return Event(
            device_name="d4",
            profile_name="p1",
            source_name="image",
            readings=[Reading(resource_name="image", value_type=ValueType.BINARY, binary_value=payload)],
        )

    assert executor.should_publish(_binary(b"frame-1"))
    assert not executor.should_publish(_binary(b"frame-1"))
    assert executor.should_publish(_binary(b"frame-2"))


def test_invalid_interval_is_rejected() -> None:
    recorder = _Recorder()
    with pytest.raises(ValueError):
        _executor(recorder, interval="0s")
    with pytest.raises(ValueError):
        _executor(recorder, interval="soon")


@pytest.mark.asyncio
async def test_locked_reads_are_skipped_without_publishing() -> None:
    recorder = _Recorder()
    recorder.error = EdgeError(ErrorKind.SERVICE_LOCKED, "device d4 is DOWN")
    executor = _executor(recorder)
    executor.start()
    await asyncio.sleep(0.08)
    assert executor.running
    executor.stop()
    await executor.wait()
    assert recorder.reads >= 2
    assert recorder.published == []


@pytest.mark.asyncio
async def test_manager_starts_restarts_and_stops_executors() -> None:
    caches = Caches()
    caches.devices.add(
        Device(
            name="d4",
            profile_name="p1",
            auto_events=[
                AutoEvent(source_name="temp", interval="50ms"),
                AutoEvent(source_name="bad", interval="nope"),
            ],
        )
    )
    caches.devices.add(
        Device(
            name="locked",
            profile_name="p1",
            admin_state=AdminState.LOCKED,
            auto_events=[AutoEvent(source_name="temp", interval="50ms")],
        )
    )
    recorder = _Recorder()
    manager = AutoEventManager(caches=caches, reader=recorder.read, publish=recorder.publish, pool_size=2)

    manager.start_all()
    assert len(manager.executors_for("d4")) == 1
    assert manager.workers_running == 2
    assert manager.executors_for("locked") == []

    first = manager.executors_for("d4")[0]
    manager.restart_for_device("d4")
    replacement = manager.executors_for("d4")[0]
    assert replacement is not first
    await first.wait()
    assert not first.running

    await asyncio.sleep(0.12)
    await manager.stop_all()
    assert manager.executors_for("d4") == []
    assert not replacement.running
    assert recorder.published
    assert manager.workers_running == 0


class _GatedPublisher:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.published: list[Event] = []
        self.release = asyncio.Event()

    async def publish(self, event: Event) -> None:
        self.active += 1
        self.peak = max(self.peak, self.active)
        await self.release.wait()
        self.active -= 1
        self.published.append(event)


@pytest.mark.asyncio
async def test_manager_publishes_through_bounded_pool() -> None:
    caches = Caches()
    for name in ("d1", "d2", "d3"):
        caches.devices.add(
            Device(name=name, profile_name="p1", auto_events=[AutoEvent(source_name="temp", interval="10ms")])
        )
    recorder = _Recorder()
    publisher = _GatedPublisher()
    manager = AutoEventManager(caches=caches, reader=recorder.read, publish=publisher.publish, pool_size=1)

    manager.start_all()
    await asyncio.sleep(0.15)

    assert manager.workers_running == 1
    assert publisher.peak == 1
    assert publisher.published == []
    # One event in the worker, one queued, one blocked in each executor.
    assert recorder.reads <= 5

    publisher.release.set()
    await asyncio.sleep(0.05)
    assert publisher.published
    assert publisher.peak == 1

    await manager.stop_all()
    assert manager.workers_running == 0
