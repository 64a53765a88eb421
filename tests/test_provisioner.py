import json
from pathlib import Path

import pytest

from devicecore.cache import Caches
from devicecore.clients.metadata import MemoryMetadataClient
from devicecore.config.schema import DeviceConfig
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import Device
from devicecore.runtime.provision import Provisioner

PROFILE_YAML = """
name: Simple-Device
manufacturer: Simple Corp.
deviceResources:
  - name: SwitchButton
    properties:
      valueType: Bool
      readWrite: RW
      defaultValue: "true"
  - name: Xrotation
    properties:
      valueType: Int32
      readWrite: RW
      units: rpm
deviceCommands:
  - name: Switch
    readWrite: RW
    resourceOperations:
      - deviceResource: SwitchButton
        defaultValue: "false"
"""

DEVICES_YAML = """
deviceList:
  - name: Simple-Device01
    profileName: Simple-Device
    protocols:
      other:
        Address: simple01
        Port: "300"
    autoEvents:
      - interval: 10s
        onChange: false
        sourceName: Switch
  - name: Simple-Device02
    profileName: Simple-Device
    protocols:
      other:
        Address: simple02
"""

WATCHER_JSON = {
    "name": "Simple-Provision-Watcher",
    "identifiers": {"Address": "simple[0-9]+"},
    "blockingIdentifiers": {"Address": ["simple05"]},
    "discoveredDevice": {"profileName": "Simple-Device", "adminState": "UNLOCKED"},
}


def _seed(tmp_path: Path) -> DeviceConfig:
    profiles = tmp_path / "profiles"
    devices = tmp_path / "devices"
    watchers = tmp_path / "watchers"
    for directory in (profiles, devices, watchers):
        directory.mkdir()
    (profiles / "simple.yaml").write_text(PROFILE_YAML, encoding="utf-8")
    (profiles / "README.md").write_text("not a seed file", encoding="utf-8")
    (profiles / "broken.yml").write_text("name: [unterminated", encoding="utf-8")
    (devices / "devices.yaml").write_text(DEVICES_YAML, encoding="utf-8")
    (watchers / "watcher.json").write_text(json.dumps(WATCHER_JSON), encoding="utf-8")
    return DeviceConfig(
        profiles_dir=str(profiles),
        devices_dir=str(devices),
        provision_watchers_dir=str(watchers),
    )


@pytest.mark.asyncio
async def test_provision_from_directories(tmp_path: Path) -> None:
    caches = Caches()
    metadata = MemoryMetadataClient()
    provisioner = Provisioner(service_name="device-simple", caches=caches, metadata=metadata)

    await provisioner.provision(_seed(tmp_path))

    profile = caches.profiles.for_name("Simple-Device")
    assert profile is not None
    assert caches.profiles.device_resource("Simple-Device", "Xrotation").properties.units == "rpm"  # type: ignore[union-attr]
    assert sorted(caches.devices.names()) == ["Simple-Device01", "Simple-Device02"]
    device = caches.devices.for_name("Simple-Device01")
    assert device.service_name == "device-simple"  # type: ignore[union-attr]
    assert device.auto_events[0].source_name == "Switch"  # type: ignore[union-attr]
    assert [d.name for d in metadata.added_devices] == ["Simple-Device01", "Simple-Device02"]
    watcher = caches.watchers.for_name("Simple-Provision-Watcher")
    assert watcher is not None
    assert watcher.service_name == "device-simple"
    assert watcher.blocking_identifiers == {"Address": ["simple05"]}


@pytest.mark.asyncio
async def test_provision_skips_entities_already_in_metadata(tmp_path: Path) -> None:
    caches = Caches()
    metadata = MemoryMetadataClient(devices=[Device(name="Simple-Device01", service_name="device-simple")])
    provisioner = Provisioner(service_name="device-simple", caches=caches, metadata=metadata)

    await provisioner.provision(_seed(tmp_path))

    assert [d.name for d in metadata.added_devices] == ["Simple-Device02"]
    assert caches.devices.for_name("Simple-Device01") is None


@pytest.mark.asyncio
async def test_provision_from_http_index() -> None:
    files = {
        "http://seed.local/profiles/index.json": json.dumps(["simple.yaml"]),
        "http://seed.local/profiles/simple.yaml": PROFILE_YAML,
    }
    requested: list[str] = []

    async def _fetch(url: str, timeout: float) -> str:
        del timeout
        requested.append(url)
        return files[url]

    caches = Caches()
    provisioner = Provisioner(
        service_name="device-simple",
        caches=caches,
        metadata=MemoryMetadataClient(),
        fetcher=_fetch,
    )
    added = await provisioner.load_profiles("http://seed.local/profiles/index.json")

    assert [p.name for p in added] == ["Simple-Device"]
    assert requested[1] == "http://seed.local/profiles/simple.yaml"


@pytest.mark.asyncio
async def test_invalid_http_index_is_service_unavailable() -> None:
    async def _fetch(url: str, timeout: float) -> str:
        del url, timeout
        return "<html>"

    provisioner = Provisioner(
        service_name="svc",
        caches=Caches(),
        metadata=MemoryMetadataClient(),
        fetcher=_fetch,
    )
    with pytest.raises(EdgeError) as exc:
        await provisioner.documents("https://seed.local/index.json")
    assert exc.value.kind == ErrorKind.SERVICE_UNAVAILABLE


@pytest.mark.asyncio
async def test_missing_seed_location_is_ignored(tmp_path: Path) -> None:
    provisioner = Provisioner(service_name="svc", caches=Caches(), metadata=MemoryMetadataClient())
    assert await provisioner.documents(str(tmp_path / "nope")) == []
