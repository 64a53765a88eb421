import asyncio

import pytest

from devicecore.bus import MemoryMessageBus, MessageEnvelope
from devicecore.cache import Caches
from devicecore.clients.metadata import MemoryMetadataClient
from devicecore.config.schema import DeviceConfig
from devicecore.driver.simulated import SimulatedDriver
from devicecore.errors import EdgeError
from devicecore.models.device import AdminState, AutoEvent, Device, DeviceService
from devicecore.models.event import Event
from devicecore.models.profile import DeviceProfile, DeviceResource, ResourceProperties
from devicecore.models.system_event import SystemEvent
from devicecore.models.watcher import DiscoveredDeviceTemplate, ProvisionWatcher
from devicecore.observability import ServiceMetrics
from devicecore.runtime.autoevent import AutoEventManager
from devicecore.runtime.dispatcher import CommandDispatcher
from devicecore.runtime.reconciler import Reconciler
from devicecore.values.types import ValueType


class _RecordingDriver(SimulatedDriver):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, str]] = []

    async def add_device(self, device_name, protocols, admin_state) -> None:  # type: ignore[no-untyped-def]
        self.calls.append(("add", device_name))
        await super().add_device(device_name, protocols, admin_state)

    async def update_device(self, device_name, protocols, admin_state) -> None:  # type: ignore[no-untyped-def]
        self.calls.append(("update", device_name))
        await super().update_device(device_name, protocols, admin_state)

    async def remove_device(self, device_name, protocols) -> None:  # type: ignore[no-untyped-def]
        self.calls.append(("remove", device_name))
        await super().remove_device(device_name, protocols)


def _profile(name: str = "p1") -> DeviceProfile:
    return DeviceProfile(
        name=name,
        device_resources=[DeviceResource(name="temp", properties=ResourceProperties(value_type=ValueType.FLOAT32))],
    )


def _device_details(name: str = "d5", **extra) -> dict:  # type: ignore[no-untyped-def]
    data = Device(
        name=name,
        profile_name="p1",
        service_name="svc",
        auto_events=[AutoEvent(source_name="temp", interval="1s")],
    ).to_dict()
    data.update(extra)
    return data


async def _no_read(device_name: str, source_name: str) -> Event | None:
    del device_name, source_name
    return None


async def _no_publish(event: Event) -> None:
    del event


def _make_reconciler(
    allowed_fails: int = 3,
) -> tuple[Reconciler, Caches, _RecordingDriver, CommandDispatcher, AutoEventManager, DeviceService]:
    caches = Caches()
    metadata = MemoryMetadataClient(profiles=[_profile(), _profile("p2")])
    driver = _RecordingDriver()
    service = DeviceService(name="svc")
    dispatcher = CommandDispatcher(
        service=service,
        caches=caches,
        driver=driver,
        config=DeviceConfig(allowed_fails=allowed_fails),
        metadata=metadata,
    )
    autoevents = AutoEventManager(caches=caches, reader=_no_read, publish=_no_publish)
    reconciler = Reconciler(
        service=service,
        base_service_name="svc",
        metadata_service_name="core-metadata",
        caches=caches,
        driver=driver,
        metadata=metadata,
        dispatcher=dispatcher,
        autoevents=autoevents,
        metrics=ServiceMetrics(),
    )
    return reconciler, caches, driver, dispatcher, autoevents, service


@pytest.mark.asyncio
async def test_device_add_system_event_over_bus() -> None:
    reconciler, caches, driver, dispatcher, autoevents, _ = _make_reconciler()
    bus = MemoryMessageBus()
    await bus.connect()
    await reconciler.start(bus, "edgex")
    try:
        event = SystemEvent(type="device", action="add", owner="svc", details=_device_details())
        await bus.publish(
            "edgex/system-events/device/add/svc/p1",
            MessageEnvelope(payload=event.to_dict()),
        )
        for _ in range(50):
            if caches.devices.for_name("d5") is not None:
                break
            await asyncio.sleep(0.01)

        assert caches.devices.for_name("d5") is not None
        assert caches.profiles.for_name("p1") is not None
        assert driver.calls == [("add", "d5")]
        assert dispatcher.tracker.value("d5") == 3
        assert len(autoevents.executors_for("d5")) == 1
        assert reconciler.metrics.system_events_applied_total == 1
    finally:
        await autoevents.stop_all()
        await reconciler.stop()
        await bus.disconnect()


@pytest.mark.asyncio
async def test_events_owned_by_other_services_are_ignored() -> None:
    reconciler, caches, driver, _, _, _ = _make_reconciler()
    event = SystemEvent(type="device", action="add", owner="someone-else", details=_device_details())
    assert await reconciler.apply(event) is False
    assert caches.devices.names() == []
    assert driver.calls == []


@pytest.mark.asyncio
async def test_device_update_lock_and_move() -> None:
    reconciler, caches, driver, dispatcher, autoevents, _ = _make_reconciler()
    await reconciler.apply(SystemEvent(type="device", action="add", owner="svc", details=_device_details()))
    assert autoevents.executors_for("d5")

    locked = _device_details(adminState="LOCKED")
    await reconciler.apply(SystemEvent(type="device", action="update", owner="svc", details=locked))
    assert caches.devices.for_name("d5").admin_state == AdminState.LOCKED  # type: ignore[union-attr]
    assert autoevents.executors_for("d5") == []

    moved = _device_details(serviceName="other-svc")
    await reconciler.apply(SystemEvent(type="device", action="update", owner="svc", details=moved))
    assert caches.devices.for_name("d5") is None
    assert driver.calls[-1] == ("remove", "d5")
    assert dispatcher.tracker.value("d5") == -1
    await autoevents.stop_all()


@pytest.mark.asyncio
async def test_device_delete_of_unknown_device_fails() -> None:
    reconciler, _, _, _, _, _ = _make_reconciler()
    with pytest.raises(EdgeError):
        await reconciler.apply(SystemEvent(type="device", action="delete", owner="svc", details=_device_details()))


@pytest.mark.asyncio
async def test_profile_update_and_delete() -> None:
    reconciler, caches, driver, _, autoevents, _ = _make_reconciler()
    await reconciler.apply(SystemEvent(type="device", action="add", owner="svc", details=_device_details()))

    updated = _profile()
    updated.device_resources.append(
        DeviceResource(name="humidity", properties=ResourceProperties(value_type=ValueType.INT32))
    )
    await reconciler.apply(
        SystemEvent(type="deviceprofile", action="update", owner="svc", details=updated.to_dict())
    )
    assert caches.profiles.device_resource("p1", "humidity") is not None
    assert ("update", "d5") in driver.calls

    delete = SystemEvent(type="deviceprofile", action="delete", owner="core-metadata", details=_profile().to_dict())
    await reconciler.apply(delete)
    assert caches.profiles.for_name("p1") is not None

    await reconciler.apply(SystemEvent(type="device", action="delete", owner="svc", details=_device_details()))
    await reconciler.apply(delete)
    assert caches.profiles.for_name("p1") is None
    await autoevents.stop_all()


@pytest.mark.asyncio
async def test_watcher_events_and_service_lock() -> None:
    reconciler, caches, _, _, _, service = _make_reconciler()
    watcher = ProvisionWatcher(
        name="w1",
        service_name="svc",
        identifiers={"Address": ".*"},
        discovered_device=DiscoveredDeviceTemplate(profile_name="p2"),
    )
    await reconciler.apply(
        SystemEvent(type="provisionwatcher", action="add", owner="svc", details=watcher.to_dict())
    )
    assert caches.watchers.for_name("w1") is not None
    assert caches.profiles.for_name("p2") is not None

    watcher.identifiers = {"Address": "^10\\."}
    await reconciler.apply(
        SystemEvent(type="provisionwatcher", action="update", owner="svc", details=watcher.to_dict())
    )
    assert caches.watchers.for_name("w1").identifiers == {"Address": "^10\\."}  # type: ignore[union-attr]

    await reconciler.apply(
        SystemEvent(type="provisionwatcher", action="delete", owner="svc", details=watcher.to_dict())
    )
    assert caches.watchers.for_name("w1") is None

    locked = DeviceService(name="svc", admin_state=AdminState.LOCKED, labels=["edge"])
    await reconciler.apply(SystemEvent(type="deviceservice", action="update", owner="svc", details=locked.to_dict()))
    assert service.admin_state == AdminState.LOCKED
    assert service.labels == ["edge"]


@pytest.mark.asyncio
async def test_invalid_payload_is_counted_as_failure() -> None:
    reconciler, _, _, _, _, _ = _make_reconciler()
    bus = MemoryMessageBus()
    await bus.connect()
    await reconciler.start(bus, "edgex")
    try:
        await bus.publish("edgex/system-events/device/add/svc/p1", MessageEnvelope(payload="not json"))
        for _ in range(50):
            if reconciler.metrics.system_events_failed_total:
                break
            await asyncio.sleep(0.01)
        assert reconciler.metrics.system_events_failed_total == 1
    finally:
        await reconciler.stop()
        await bus.disconnect()
