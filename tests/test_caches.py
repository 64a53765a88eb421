import pytest

from devicecore.cache import Caches, DeviceCache, ProfileCache, ProvisionWatcherCache
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, Device, OperatingState
from devicecore.models.profile import (
    DeviceCommand,
    DeviceProfile,
    DeviceResource,
    ResourceOperation,
    ResourceProperties,
)
from devicecore.models.watcher import DiscoveredDeviceTemplate, ProvisionWatcher
from devicecore.observability import ServiceMetrics, last_connected_gauge_name
from devicecore.values.types import ValueType


def _profile() -> DeviceProfile:
    return DeviceProfile(
        name="p1",
        device_resources=[
            DeviceResource(name="temp", properties=ResourceProperties(value_type=ValueType.FLOAT32)),
            DeviceResource(name="temp2", properties=ResourceProperties(value_type=ValueType.FLOAT32)),
            DeviceResource(name="mode", properties=ResourceProperties(value_type=ValueType.STRING)),
        ],
        device_commands=[
            DeviceCommand(name="all", resource_operations=[ResourceOperation(device_resource="mode")]),
        ],
    )


def test_device_cache_returns_copies() -> None:
    cache = DeviceCache([Device(name="d1", profile_name="p1")])
    device = cache.for_name("d1")
    assert device is not None
    device.profile_name = "changed"
    assert cache.for_name("d1").profile_name == "p1"  # type: ignore[union-attr]


def test_device_cache_add_update_remove_errors() -> None:
    cache = DeviceCache()
    cache.add(Device(name="d1"))
    with pytest.raises(EdgeError) as exc:
        cache.add(Device(name="d1"))
    assert exc.value.kind == ErrorKind.DUPLICATE_NAME
    with pytest.raises(EdgeError) as exc:
        cache.update(Device(name="missing"))
    assert exc.value.kind == ErrorKind.ENTITY_DOES_NOT_EXIST
    cache.remove_by_name("d1")
    with pytest.raises(EdgeError):
        cache.remove_by_name("d1")
    assert cache.names() == []


def test_device_cache_state_updates() -> None:
    cache = DeviceCache([Device(name="d1")])
    cache.update_admin_state("d1", "locked")
    assert cache.for_name("d1").admin_state == AdminState.LOCKED  # type: ignore[union-attr]
    previous = cache.update_operating_state("d1", OperatingState.DOWN)
    assert previous == OperatingState.UP
    with pytest.raises(EdgeError) as exc:
        cache.update_admin_state("d1", "sleepy")
    assert exc.value.kind == ErrorKind.CONTRACT_INVALID


def test_last_connected_is_monotonic_and_exported_as_gauge() -> None:
    metrics = ServiceMetrics()
    cache = DeviceCache([Device(name="d1")], metrics=metrics)
    gauge = last_connected_gauge_name("d1")
    assert gauge in metrics.gauges
    first = cache.set_last_connected_by_name("d1")
    second = cache.set_last_connected_by_name("d1")
    assert second >= first
    assert metrics.gauges[gauge] == second
    assert cache.for_name("d1").last_connected == second  # type: ignore[union-attr]
    cache.remove_by_name("d1")
    assert gauge not in metrics.gauges


def test_profile_cache_indices() -> None:
    cache = ProfileCache([_profile()])
    assert cache.device_resource("p1", "temp") is not None
    assert cache.device_resource("p1", "nope") is None
    assert cache.device_command("p1", "all") is not None
    names = sorted(dr.name for dr in cache.device_resources_by_regex("p1", "temp.*"))
    assert names == ["temp", "temp2"]
    assert cache.device_resources_by_regex("p1", "emp") == []


def test_profile_cache_update_reindexes() -> None:
    cache = ProfileCache([_profile()])
    updated = _profile()
    updated.device_resources = updated.device_resources[:1]
    cache.update(updated)
    assert cache.device_resource("p1", "mode") is None
    with pytest.raises(EdgeError):
        cache.update(DeviceProfile(name="other"))


def test_watcher_cache_admin_state() -> None:
    cache = ProvisionWatcherCache([ProvisionWatcher(name="w1")])
    cache.update_admin_state("w1", AdminState.LOCKED)
    assert cache.for_name("w1").admin_state == AdminState.LOCKED  # type: ignore[union-attr]
    with pytest.raises(EdgeError):
        cache.add(ProvisionWatcher(name="w1"))


def test_check_profile_not_used() -> None:
    caches = Caches()
    caches.profiles.add(_profile())
    assert caches.check_profile_not_used("p1") is True
    caches.watchers.add(
        ProvisionWatcher(name="w1", discovered_device=DiscoveredDeviceTemplate(profile_name="p1"))
    )
    assert caches.check_profile_not_used("p1") is False
    caches.watchers.remove_by_name("w1")
    caches.devices.add(Device(name="d1", profile_name="p1"))
    assert caches.check_profile_not_used("p1") is False
