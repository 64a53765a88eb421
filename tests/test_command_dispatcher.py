import asyncio
import time

import pytest

from devicecore.cache import Caches
from devicecore.clients.metadata import MemoryMetadataClient
from devicecore.config.schema import DeviceConfig
from devicecore.driver.base import ProtocolDriver
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, Device, DeviceService, OperatingState
from devicecore.models.profile import (
    DeviceCommand,
    DeviceProfile,
    DeviceResource,
    ReadWrite,
    ResourceOperation,
    ResourceProperties,
)
from devicecore.runtime.dispatcher import URL_RAW_QUERY, CommandDispatcher, split_query
from devicecore.values.command_value import CommandValue, to_float32
from devicecore.values.types import ValueType


class _FakeDriver(ProtocolDriver):
    name = "fake"

    def __init__(self) -> None:
        self.values: dict[str, object] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.prebuilt: dict[str, CommandValue] = {}
        self.read_calls: list[list[str]] = []
        self.read_attributes: list[dict] = []
        self.writes: list[tuple[str, list[CommandValue]]] = []

    async def initialize(self, sdk) -> None:  # type: ignore[no-untyped-def]
        del sdk

    async def handle_read_commands(self, device_name, protocols, reqs):  # type: ignore[no-untyped-def]
        del protocols
        self.read_calls.append([r.resource_name for r in reqs])
        self.read_attributes.extend(r.attributes for r in reqs)
        if self.fail_reads:
            raise IOError(f"{device_name} unreachable")
        return [
            self.prebuilt.get(r.resource_name) or CommandValue.new(r.resource_name, r.type, self.values[r.resource_name])
            for r in reqs
        ]

    async def handle_write_commands(self, device_name, protocols, reqs, params):  # type: ignore[no-untyped-def]
        del protocols, reqs
        if self.fail_writes:
            raise IOError(f"{device_name} rejected the write")
        self.writes.append((device_name, list(params)))

    async def start(self) -> None:
        return None

    async def stop(self, force: bool) -> None:
        del force

    async def add_device(self, device_name, protocols, admin_state) -> None:  # type: ignore[no-untyped-def]
        del device_name, protocols, admin_state

    async def update_device(self, device_name, protocols, admin_state) -> None:  # type: ignore[no-untyped-def]
        del device_name, protocols, admin_state

    async def remove_device(self, device_name, protocols) -> None:  # type: ignore[no-untyped-def]
        del device_name, protocols


def _resource(name: str, value_type: ValueType, rw: ReadWrite = ReadWrite.RW, **props) -> DeviceResource:  # type: ignore[no-untyped-def]
    return DeviceResource(
        name=name,
        properties=ResourceProperties(value_type=value_type, read_write=rw, **props),
        attributes={"register": name},
    )


def _profile() -> DeviceProfile:
    return DeviceProfile(
        name="p1",
        device_resources=[
            _resource("temp", ValueType.FLOAT32, scale=0.1, offset=2),
            _resource("humidity", ValueType.INT32),
            _resource("mode", ValueType.STRING),
            _resource("reset", ValueType.BOOL, ReadWrite.W, default_value="true"),
            _resource("serial", ValueType.STRING, ReadWrite.R),
            _resource("level", ValueType.FLOAT32, ReadWrite.R),
        ],
        device_commands=[
            DeviceCommand(
                name="mode",
                resource_operations=[ResourceOperation(device_resource="mode", mappings={"on": "1", "off": "0"})],
            ),
            DeviceCommand(
                name="climate",
                read_write=ReadWrite.R,
                resource_operations=[
                    ResourceOperation(device_resource="temp"),
                    ResourceOperation(device_resource="humidity"),
                ],
            ),
            DeviceCommand(
                name="broken",
                resource_operations=[ResourceOperation(device_resource="ghost")],
            ),
        ],
    )


def _make_dispatcher(
    config: DeviceConfig | None = None,
    *,
    devices: list[Device] | None = None,
) -> tuple[CommandDispatcher, _FakeDriver, Caches, MemoryMetadataClient]:
    seeded = devices or [Device(name="d1", profile_name="p1")]
    caches = Caches()
    caches.profiles.add(_profile())
    caches.profiles.add(
        DeviceProfile(
            name="switch",
            device_resources=[_resource("reset", ValueType.BOOL, ReadWrite.W, default_value="true")],
        )
    )
    for device in seeded:
        caches.devices.add(device)
    driver = _FakeDriver()
    metadata = MemoryMetadataClient(devices=seeded)
    dispatcher = CommandDispatcher(
        service=DeviceService(name="svc"),
        caches=caches,
        driver=driver,
        config=config or DeviceConfig(),
        metadata=metadata,
    )
    for name in caches.devices.names():
        dispatcher.device_added(name)
    return dispatcher, driver, caches, metadata


@pytest.mark.asyncio
async def test_get_resource_applies_transform() -> None:
    dispatcher, driver, caches, _ = _make_dispatcher(DeviceConfig(allowed_fails=3))
    driver.values["temp"] = 217.0
    before = time.time_ns()

    event = await dispatcher.get_command("d1", "temp")

    assert [r.value for r in event.readings] == ["23.7"]
    assert event.readings[0].value_type == ValueType.FLOAT32
    assert dispatcher.tracker.value("d1") == 3
    assert caches.devices.last_connected("d1") >= before


@pytest.mark.asyncio
async def test_get_command_reads_all_resource_operations() -> None:
    dispatcher, driver, _, _ = _make_dispatcher()
    driver.values.update({"temp": 100.0, "humidity": 40})

    event = await dispatcher.get_command("d1", "climate", "page=2")

    assert driver.read_calls == [["temp", "humidity"]]
    assert [r.resource_name for r in event.readings] == ["temp", "humidity"]
    assert all(attrs[URL_RAW_QUERY] == "page=2" for attrs in driver.read_attributes)
    assert driver.read_attributes[0]["register"] == "temp"


@pytest.mark.asyncio
async def test_get_with_regex_matches_whole_resource_names() -> None:
    dispatcher, driver, _, _ = _make_dispatcher()
    driver.values.update({"temp": 1.0, "humidity": 2, "serial": "x"})

    event = await dispatcher.get_command("d1", "(temp|serial)", regex=True)
    assert sorted(r.resource_name for r in event.readings) == ["serial", "temp"]

    with pytest.raises(EdgeError) as exc:
        await dispatcher.get_command("d1", "emp", regex=True)
    assert exc.value.kind == ErrorKind.ENTITY_DOES_NOT_EXIST

    # Invalid pattern falls back to exact lookup.
    with pytest.raises(EdgeError) as exc:
        await dispatcher.get_command("d1", "temp(", regex=True)
    assert exc.value.kind == ErrorKind.ENTITY_DOES_NOT_EXIST


@pytest.mark.asyncio
async def test_set_command_reverse_maps_values() -> None:
    dispatcher, driver, _, _ = _make_dispatcher()

    event = await dispatcher.set_command("d1", "mode", "", {"mode": "on"})

    device_name, params = driver.writes[0]
    assert device_name == "d1"
    assert params[0].resource_name == "mode"
    assert params[0].value_type == ValueType.STRING
    assert params[0].value == "1"
    assert event is not None
    assert event.readings[0].value == "1"


@pytest.mark.asyncio
async def test_set_write_only_resource_uses_default_and_returns_no_event() -> None:
    dispatcher, driver, _, _ = _make_dispatcher()

    event = await dispatcher.set_command("d1", "reset", "", {})

    assert event is None
    assert driver.writes[0][1][0].value is True


@pytest.mark.asyncio
async def test_set_without_value_or_default_is_server_error() -> None:
    dispatcher, _, _, _ = _make_dispatcher()
    with pytest.raises(EdgeError) as exc:
        await dispatcher.set_command("d1", "humidity", "", {})
    assert exc.value.kind == ErrorKind.SERVER_ERROR


@pytest.mark.asyncio
async def test_direction_mismatches_are_not_allowed() -> None:
    dispatcher, _, _, _ = _make_dispatcher()
    with pytest.raises(EdgeError) as exc:
        await dispatcher.get_command("d1", "reset")
    assert exc.value.kind == ErrorKind.NOT_ALLOWED
    with pytest.raises(EdgeError) as exc:
        await dispatcher.set_command("d1", "serial", "", {"serial": "x"})
    assert exc.value.kind == ErrorKind.NOT_ALLOWED
    with pytest.raises(EdgeError) as exc:
        await dispatcher.set_command("d1", "climate", "", {"temp": "1", "humidity": "2"})
    assert exc.value.kind == ErrorKind.NOT_ALLOWED


@pytest.mark.asyncio
async def test_preconditions() -> None:
    dispatcher, _, caches, _ = _make_dispatcher(
        devices=[
            Device(name="d1", profile_name="p1"),
            Device(name="locked", profile_name="p1", admin_state=AdminState.LOCKED),
            Device(name="down", profile_name="p1", operating_state=OperatingState.DOWN),
            Device(name="bare"),
            Device(name="orphan", profile_name="missing"),
        ]
    )
    cases = {
        ("", "temp"): ErrorKind.CONTRACT_INVALID,
        ("ghost", "temp"): ErrorKind.ENTITY_DOES_NOT_EXIST,
        ("locked", "temp"): ErrorKind.SERVICE_LOCKED,
        ("down", "temp"): ErrorKind.SERVICE_LOCKED,
        ("bare", "temp"): ErrorKind.SERVICE_LOCKED,
        ("orphan", "temp"): ErrorKind.ENTITY_DOES_NOT_EXIST,
        ("d1", "nothing"): ErrorKind.ENTITY_DOES_NOT_EXIST,
        ("d1", "broken"): ErrorKind.SERVER_ERROR,
    }
    for (device, command), kind in cases.items():
        with pytest.raises(EdgeError) as exc:
            await dispatcher.get_command(device, command)
        assert exc.value.kind == kind, (device, command)

    dispatcher.service.admin_state = AdminState.LOCKED
    with pytest.raises(EdgeError) as exc:
        await dispatcher.get_command("d1", "temp")
    assert exc.value.kind == ErrorKind.SERVICE_LOCKED
    assert caches.devices.for_name("d1") is not None


@pytest.mark.asyncio
async def test_max_cmd_ops_limit() -> None:
    dispatcher, driver, _, _ = _make_dispatcher(DeviceConfig(max_cmd_ops=1))
    driver.values.update({"temp": 1.0, "humidity": 2})
    with pytest.raises(EdgeError) as exc:
        await dispatcher.get_command("d1", "climate")
    assert exc.value.kind == ErrorKind.SERVER_ERROR
    assert driver.read_calls == []


@pytest.mark.asyncio
async def test_driver_failures_mark_device_down_and_recovery_brings_it_up() -> None:
    config = DeviceConfig(allowed_fails=2, device_down_timeout=0.05)
    dispatcher, driver, caches, metadata = _make_dispatcher(config)
    driver.values.update({"temp": 217.0, "humidity": 1, "mode": "x", "serial": "s"})
    driver.fail_reads = True

    for _ in range(2):
        with pytest.raises(EdgeError) as exc:
            await dispatcher.get_command("d1", "temp")
        assert exc.value.kind == ErrorKind.SERVER_ERROR

    assert caches.devices.for_name("d1").operating_state == OperatingState.DOWN  # type: ignore[union-attr]
    assert metadata.operating_state_updates == [("d1", OperatingState.DOWN)]
    assert dispatcher.recovery.in_flight("d1")

    with pytest.raises(EdgeError) as exc:
        await dispatcher.get_command("d1", "temp")
    assert exc.value.kind == ErrorKind.SERVICE_LOCKED

    driver.fail_reads = False
    for _ in range(100):
        if caches.devices.for_name("d1").operating_state == OperatingState.UP:  # type: ignore[union-attr]
            break
        await asyncio.sleep(0.02)

    assert caches.devices.for_name("d1").operating_state == OperatingState.UP  # type: ignore[union-attr]
    event = await dispatcher.get_command("d1", "temp")
    assert event.readings[0].value == "23.7"
    assert dispatcher.tracker.value("d1") == 2
    await dispatcher.stop()


def test_split_query_extracts_reserved_options() -> None:
    options, rest = split_query("ds-pushevent=true&ds-returnevent=false&page=2")
    assert options.push_event is True
    assert options.return_event is False
    assert options.regex is True
    assert rest == "page=2"
    with pytest.raises(EdgeError) as exc:
        split_query({"ds-pushevent": "yes"})
    assert exc.value.kind == ErrorKind.CONTRACT_INVALID


@pytest.mark.asyncio
async def test_device_without_readable_resources_is_marked_up_after_down_timeout() -> None:
    config = DeviceConfig(allowed_fails=1, device_down_timeout=0.05)
    dispatcher, driver, caches, metadata = _make_dispatcher(
        config,
        devices=[Device(name="w1", profile_name="switch")],
    )
    driver.fail_writes = True

    with pytest.raises(EdgeError) as exc:
        await dispatcher.set_command("w1", "reset", "", {})
    assert exc.value.kind == ErrorKind.SERVER_ERROR
    assert caches.devices.for_name("w1").operating_state == OperatingState.DOWN  # type: ignore[union-attr]
    assert dispatcher.recovery.in_flight("w1")

    await asyncio.sleep(0.3)

    assert caches.devices.for_name("w1").operating_state == OperatingState.UP  # type: ignore[union-attr]
    assert not dispatcher.recovery.in_flight("w1")
    assert driver.read_calls == []
    assert metadata.operating_state_updates == [("w1", OperatingState.DOWN), ("w1", OperatingState.UP)]
    assert dispatcher.tracker.value("w1") == 1
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_recovery_poller_exits_when_profile_is_gone() -> None:
    config = DeviceConfig(allowed_fails=1, device_down_timeout=0.05)
    dispatcher, driver, caches, _ = _make_dispatcher(config)
    driver.fail_reads = True

    with pytest.raises(EdgeError):
        await dispatcher.get_command("d1", "temp")
    assert dispatcher.recovery.in_flight("d1")
    caches.profiles.remove_by_name("p1")

    await asyncio.sleep(0.3)

    assert not dispatcher.recovery.in_flight("d1")
    assert driver.read_calls == [["temp"]]
    assert caches.devices.for_name("d1").operating_state == OperatingState.DOWN  # type: ignore[union-attr]
    await dispatcher.stop()


@pytest.mark.asyncio
async def test_get_float32_at_maximum_is_rendered() -> None:
    dispatcher, driver, _, _ = _make_dispatcher()
    driver.values["level"] = 3.4028234663852886e38

    event = await dispatcher.get_command("d1", "level")

    assert to_float32(float(event.readings[0].value)) == 3.4028234663852886e38


@pytest.mark.asyncio
async def test_unrenderable_driver_value_is_server_error() -> None:
    dispatcher, driver, _, _ = _make_dispatcher()
    driver.prebuilt["humidity"] = CommandValue(resource_name="humidity", value_type=ValueType.INT32, value="x")

    with pytest.raises(EdgeError) as exc:
        await dispatcher.get_command("d1", "humidity")
    assert exc.value.kind == ErrorKind.SERVER_ERROR
    assert dispatcher.metrics.snapshot()["command_failures_total"] == 1


@pytest.mark.asyncio
async def test_unparseable_set_value_is_rejected_before_the_driver() -> None:
    dispatcher, driver, _, _ = _make_dispatcher()

    with pytest.raises(EdgeError) as exc:
        await dispatcher.set_command("d1", "humidity", "", {"humidity": "warm"})

    assert exc.value.kind == ErrorKind.CONTRACT_INVALID
    assert exc.value.http_status == 400
    assert driver.writes == []
