"""One-shot loading of seed profiles, devices and provision watchers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import urljoin, urlparse

import httpx
import yaml
from loguru import logger

from devicecore.cache import Caches
from devicecore.clients.metadata import MetadataClient
from devicecore.config.schema import DeviceConfig
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import Device
from devicecore.models.profile import DeviceProfile
from devicecore.models.watcher import ProvisionWatcher

TextFetcher = Callable[[str, float], Awaitable[str]]

_SEED_SUFFIXES = (".yaml", ".yml", ".json")


def _parse_document(name: str, text: str) -> Any:
    if name.endswith(".json"):
        return json.loads(text)
    return yaml.safe_load(text)


def _is_url(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


class Provisioner:
    """Adds seed entities missing from metadata, then mirrors them into the caches."""

    def __init__(
        self,
        *,
        service_name: str,
        caches: Caches,
        metadata: MetadataClient,
        timeout_seconds: float = 5.0,
        fetcher: TextFetcher | None = None,
    ) -> None:
        self.service_name = service_name
        self.caches = caches
        self.metadata = metadata
        self.timeout_seconds = max(0.2, float(timeout_seconds))
        self._fetcher = fetcher or self._http_fetch_text

    async def provision(self, config: DeviceConfig) -> None:
        if config.profiles_dir:
            await self.load_profiles(config.profiles_dir)
        if config.devices_dir:
            await self.load_devices(config.devices_dir)
        if config.provision_watchers_dir:
            await self.load_provision_watchers(config.provision_watchers_dir)

    async def load_profiles(self, source: str) -> list[DeviceProfile]:
        added: list[DeviceProfile] = []
        for name, doc in await self.documents(source):
            try:
                profile = DeviceProfile.from_dict(doc)
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f"skipping profile file {name}: {e}")
                continue
            if self.caches.profiles.for_name(profile.name) is not None:
                continue
            if await self._exists(self.metadata.device_profile_by_name, profile.name):
                logger.debug(f"profile {profile.name} already exists in metadata")
                continue
            try:
                await self.metadata.add_device_profile(profile)
                self.caches.profiles.add(profile)
            except EdgeError as e:
                logger.warning(f"failed to provision profile {profile.name}: {e}")
                continue
            logger.info(f"provisioned profile {profile.name}")
            added.append(profile)
        return added

    async def load_devices(self, source: str) -> list[Device]:
        added: list[Device] = []
        for name, doc in await self.documents(source):
            entries = doc.get("deviceList") if isinstance(doc, dict) else doc
            if not isinstance(entries, list):
                logger.warning(f"device file {name} has no deviceList")
                continue
            for entry in entries:
                try:
                    device = Device.from_dict(entry)
                except (TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"skipping device entry in {name}: {e}")
                    continue
                device.service_name = self.service_name
                if self.caches.devices.for_name(device.name) is not None:
                    continue
                if await self._exists(self.metadata.device_by_name, device.name):
                    logger.debug(f"device {device.name} already exists in metadata")
                    continue
                try:
                    await self.metadata.add_device(device)
                    await self._cache_profile(device.profile_name)
                    self.caches.devices.add(device)
                except EdgeError as e:
                    logger.warning(f"failed to provision device {device.name}: {e}")
                    continue
                logger.info(f"provisioned device {device.name}")
                added.append(device)
        return added

    async def load_provision_watchers(self, source: str) -> list[ProvisionWatcher]:
        added: list[ProvisionWatcher] = []
        for name, doc in await self.documents(source):
            try:
                watcher = ProvisionWatcher.from_dict(doc)
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f"skipping provision watcher file {name}: {e}")
                continue
            watcher.service_name = watcher.service_name or self.service_name
            if self.caches.watchers.for_name(watcher.name) is not None:
                continue
            existing = await self.metadata.provision_watchers_by_service_name(watcher.service_name)
            if any(w.name == watcher.name for w in existing):
                logger.debug(f"provision watcher {watcher.name} already exists in metadata")
                continue
            try:
                await self.metadata.add_provision_watcher(watcher)
                await self._cache_profile(watcher.discovered_device.profile_name)
                self.caches.watchers.add(watcher)
            except EdgeError as e:
                logger.warning(f"failed to provision watcher {watcher.name}: {e}")
                continue
            logger.info(f"provisioned provision watcher {watcher.name}")
            added.append(watcher)
        return added

    async def documents(self, source: str) -> list[tuple[str, Any]]:
        """Parsed seed documents of a directory, a single file or an http(s) index."""
        if _is_url(source):
            return await self._remote_documents(source)
        path = Path(source).expanduser()
        if path.is_file():
            files = [path]
        elif path.is_dir():
            files = sorted(p for p in path.iterdir() if p.suffix.lower() in _SEED_SUFFIXES)
        else:
            logger.warning(f"seed location {source} does not exist")
            return []
        docs: list[tuple[str, Any]] = []
        for file in files:
            try:
                docs.append((file.name, _parse_document(file.name.lower(), file.read_text(encoding="utf-8"))))
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"cannot read seed file {file}: {e}")
        return docs

    async def _remote_documents(self, index_url: str) -> list[tuple[str, Any]]:
        try:
            index = json.loads(await self._fetcher(index_url, self.timeout_seconds))
        except (httpx.HTTPError, ValueError) as e:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, f"cannot load seed index {index_url}", e) from e
        names = list(index.values()) if isinstance(index, dict) else index
        if not isinstance(names, list):
            raise EdgeError(ErrorKind.CONTRACT_INVALID, f"seed index {index_url} must list file names")
        docs: list[tuple[str, Any]] = []
        for name in names:
            url = urljoin(index_url, str(name))
            try:
                docs.append((str(name), _parse_document(str(name).lower(), await self._fetcher(url, self.timeout_seconds))))
            except (httpx.HTTPError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"cannot load seed file {url}: {e}")
        return docs

    async def _cache_profile(self, profile_name: str) -> None:
        if not profile_name or self.caches.profiles.for_name(profile_name) is not None:
            return
        self.caches.profiles.add(await self.metadata.device_profile_by_name(profile_name))

    @staticmethod
    async def _exists(lookup: Callable[[str], Awaitable[Any]], name: str) -> bool:
        try:
            await lookup(name)
        except EdgeError as e:
            if e.kind == ErrorKind.ENTITY_DOES_NOT_EXIST:
                return False
            raise
        return True

    @staticmethod
    async def _http_fetch_text(url: str, timeout_seconds: float) -> str:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.text
