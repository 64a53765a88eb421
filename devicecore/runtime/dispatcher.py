"""Get/set command execution against the protocol driver."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, urlencode

from loguru import logger

from devicecore import transformer
from devicecore.cache import Caches
from devicecore.clients.metadata import MetadataClient
from devicecore.config.schema import DeviceConfig
from devicecore.driver.base import ProtocolDriver
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, Device, DeviceService, OperatingState
from devicecore.models.event import CommandRequest, Event
from devicecore.models.profile import DeviceCommand, DeviceProfile, DeviceResource, ReadWrite, ResourceOperation
from devicecore.observability import ServiceMetrics
from devicecore.runtime.failures import FailureTracker
from devicecore.runtime.recovery import RecoveryPoller
from devicecore.values.codec import command_values_to_event, create_command_value
from devicecore.values.command_value import CommandValue

URL_RAW_QUERY = "urlRawQuery"
PUSH_EVENT = "ds-pushevent"
RETURN_EVENT = "ds-returnevent"
REGEX_COMMAND = "ds-regexcmd"


@dataclass(slots=True)
class CommandOptions:
    """Reserved query parameters recognised on command paths."""

    push_event: bool = False
    return_event: bool = True
    regex: bool = True


def _query_bool(key: str, value: str) -> bool:
    text = value.strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    raise EdgeError(ErrorKind.CONTRACT_INVALID, f"query parameter {key} must be true or false, got {value!r}")


def _to_event(
    values: list[CommandValue],
    device: Device,
    profile: DeviceProfile,
    source_name: str,
    **kwargs: Any,
) -> Event:
    try:
        return command_values_to_event(values, device, profile, source_name, **kwargs)
    except EdgeError:
        raise
    except Exception as e:
        raise EdgeError(ErrorKind.SERVER_ERROR, f"failed to convert values of {device.name} to an event", e) from e


def split_query(params: dict[str, str] | str | None) -> tuple[CommandOptions, str]:
    """Extract the reserved ``ds-*`` options and re-encode the rest for the driver."""
    if isinstance(params, str):
        pairs = parse_qsl(params.lstrip("?"), keep_blank_values=True)
    else:
        pairs = list((params or {}).items())
    options = CommandOptions()
    passthrough: list[tuple[str, str]] = []
    for key, value in pairs:
        if key == PUSH_EVENT:
            options.push_event = _query_bool(key, value)
        elif key == RETURN_EVENT:
            options.return_event = _query_bool(key, value)
        elif key == REGEX_COMMAND:
            options.regex = _query_bool(key, value)
        else:
            passthrough.append((key, value))
    return options, urlencode(passthrough)


class CommandDispatcher:
    """
    Resolves get/set requests to driver calls and driver results to Events.

    Device health is tracked here: every driver failure consumes one of the
    device's allowed failures. Exhausting them marks the device DOWN and
    starts the recovery poller; the next success marks it UP again.
    """

    def __init__(
        self,
        *,
        service: DeviceService,
        caches: Caches,
        driver: ProtocolDriver,
        config: DeviceConfig,
        tracker: FailureTracker | None = None,
        metadata: MetadataClient | None = None,
        metrics: ServiceMetrics | None = None,
    ) -> None:
        self.service = service
        self.caches = caches
        self.driver = driver
        self.config = config
        self.tracker = tracker or FailureTracker()
        self.metadata = metadata
        self.metrics = metrics or ServiceMetrics()
        self.recovery = RecoveryPoller(
            caches=caches,
            probe=self._probe,
            mark_up=self._mark_recovered,
            interval=config.device_down_timeout,
        )

    async def get_command(
        self,
        device_name: str,
        command_name: str,
        raw_query: str = "",
        regex: bool = False,
        *,
        probe: bool = False,
    ) -> Event:
        try:
            device = self._check_preconditions(device_name, command_name, probe=probe)
            profile = self._profile_for(device)
            resources = self._resolve_read(profile, command_name, regex=regex)
            reqs = [self._request_for(dr, raw_query) for dr in resources]
            try:
                values = await self.driver.handle_read_commands(device.name, device.protocols, reqs)
            except Exception as e:
                await self._record_driver_failure(device, probe=probe)
                raise EdgeError(
                    ErrorKind.SERVER_ERROR,
                    f"error reading {command_name} from device {device.name}",
                    e,
                ) from e
            await self._record_driver_success(device)
            event = _to_event(
                list(values or []),
                device,
                profile,
                command_name,
                apply_transform=True,
                data_transform=self.config.data_transform,
            )
        except EdgeError:
            self.metrics.record_command("GET", success=False)
            raise
        self.metrics.record_command("GET", success=True)
        return event

    async def set_command(
        self,
        device_name: str,
        command_name: str,
        raw_query: str = "",
        params: dict[str, Any] | None = None,
    ) -> Event | None:
        """Write ``params`` (resource name to raw value); returns the applied values as an Event."""
        try:
            device = self._check_preconditions(device_name, command_name, probe=False)
            profile = self._profile_for(device)
            targets = self._resolve_write(profile, command_name)
            values = [self._write_value(dr, ro, params or {}) for dr, ro in targets]
            reqs = [self._request_for(dr, raw_query) for dr, _ in targets]
            try:
                await self.driver.handle_write_commands(device.name, device.protocols, reqs, values)
            except Exception as e:
                await self._record_driver_failure(device, probe=False)
                raise EdgeError(
                    ErrorKind.SERVER_ERROR,
                    f"error writing {command_name} to device {device.name}",
                    e,
                ) from e
            await self._record_driver_success(device)
            event = None
            if not any(dr.properties.read_write == ReadWrite.W for dr, _ in targets):
                event = _to_event(
                    values,
                    device,
                    profile,
                    command_name,
                    apply_transform=False,
                )
        except EdgeError:
            self.metrics.record_command("SET", success=False)
            raise
        self.metrics.record_command("SET", success=True)
        return event

    def device_added(self, device_name: str) -> None:
        if self.config.allowed_fails > 0:
            self.tracker.set(device_name, self.config.allowed_fails)

    async def device_removed(self, device_name: str) -> None:
        self.tracker.remove(device_name)
        await self.recovery.stop(device_name)

    async def stop(self) -> None:
        await self.recovery.stop_all()

    def _check_preconditions(self, device_name: str, command_name: str, *, probe: bool) -> Device:
        if not device_name or not command_name:
            raise EdgeError(ErrorKind.CONTRACT_INVALID, "device name and command name are required")
        if self.service.admin_state == AdminState.LOCKED:
            raise EdgeError(ErrorKind.SERVICE_LOCKED, f"service {self.service.name} is locked")
        device = self.caches.devices.for_name(device_name)
        if device is None:
            raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {device_name} not found")
        if device.admin_state == AdminState.LOCKED:
            raise EdgeError(ErrorKind.SERVICE_LOCKED, f"device {device_name} is locked")
        if device.operating_state == OperatingState.DOWN and not (probe and self.recovery.in_flight(device_name)):
            raise EdgeError(ErrorKind.SERVICE_LOCKED, f"device {device_name} is DOWN")
        if not device.profile_name:
            raise EdgeError(ErrorKind.SERVICE_LOCKED, f"device {device_name} has no profile")
        return device

    def _profile_for(self, device: Device) -> DeviceProfile:
        profile = self.caches.profiles.for_name(device.profile_name)
        if profile is None:
            raise EdgeError(
                ErrorKind.ENTITY_DOES_NOT_EXIST,
                f"device profile {device.profile_name} of {device.name} not found",
            )
        return profile

    def _command_resources(
        self,
        profile: DeviceProfile,
        command: DeviceCommand,
    ) -> list[tuple[DeviceResource, ResourceOperation]]:
        command_name = command.name
        if len(command.resource_operations) > self.config.max_cmd_ops:
            raise EdgeError(
                ErrorKind.SERVER_ERROR,
                f"command {command_name} has {len(command.resource_operations)} resource operations, "
                f"more than the allowed {self.config.max_cmd_ops}",
            )
        targets: list[tuple[DeviceResource, ResourceOperation]] = []
        for ro in command.resource_operations:
            resource = self.caches.profiles.device_resource(profile.name, ro.device_resource)
            if resource is None:
                raise EdgeError(
                    ErrorKind.SERVER_ERROR,
                    f"device resource {ro.device_resource} of command {command_name} not found",
                )
            targets.append((resource, ro))
        return targets

    def _resolve_read(self, profile: DeviceProfile, command_name: str, *, regex: bool) -> list[DeviceResource]:
        command = self.caches.profiles.device_command(profile.name, command_name)
        if command is not None:
            targets = self._command_resources(profile, command)
            if not command.read_write.readable:
                raise EdgeError(ErrorKind.NOT_ALLOWED, f"command {command_name} is marked as write-only")
            for resource, _ in targets:
                if not resource.properties.read_write.readable:
                    raise EdgeError(ErrorKind.NOT_ALLOWED, f"device resource {resource.name} is marked as write-only")
            return [resource for resource, _ in targets]

        if regex:
            try:
                matched = self.caches.profiles.device_resources_by_regex(profile.name, command_name)
            except re.error:
                logger.debug(f"{command_name!r} is not a valid pattern, using exact lookup")
            else:
                readable = [dr for dr in matched if dr.properties.read_write.readable]
                if not readable:
                    raise EdgeError(
                        ErrorKind.ENTITY_DOES_NOT_EXIST,
                        f"no readable resource of {profile.name} matches {command_name}",
                    )
                return readable

        resource = self.caches.profiles.device_resource(profile.name, command_name)
        if resource is None:
            raise EdgeError(
                ErrorKind.ENTITY_DOES_NOT_EXIST,
                f"{command_name} is neither a command nor a resource of {profile.name}",
            )
        if not resource.properties.read_write.readable:
            raise EdgeError(ErrorKind.NOT_ALLOWED, f"device resource {command_name} is marked as write-only")
        return [resource]

    def _resolve_write(
        self,
        profile: DeviceProfile,
        command_name: str,
    ) -> list[tuple[DeviceResource, ResourceOperation | None]]:
        command = self.caches.profiles.device_command(profile.name, command_name)
        if command is not None:
            targets = self._command_resources(profile, command)
            if not command.read_write.writable:
                raise EdgeError(ErrorKind.NOT_ALLOWED, f"command {command_name} is marked as read-only")
            for resource, _ in targets:
                if not resource.properties.read_write.writable:
                    raise EdgeError(ErrorKind.NOT_ALLOWED, f"device resource {resource.name} is marked as read-only")
            return list(targets)

        resource = self.caches.profiles.device_resource(profile.name, command_name)
        if resource is None:
            raise EdgeError(
                ErrorKind.ENTITY_DOES_NOT_EXIST,
                f"{command_name} is neither a command nor a resource of {profile.name}",
            )
        if not resource.properties.read_write.writable:
            raise EdgeError(ErrorKind.NOT_ALLOWED, f"device resource {command_name} is marked as read-only")
        return [(resource, None)]

    def _write_value(
        self,
        resource: DeviceResource,
        ro: ResourceOperation | None,
        params: dict[str, Any],
    ) -> CommandValue:
        raw = params.get(resource.name)
        if raw is None and ro is not None and ro.default_value:
            raw = ro.default_value
        if raw is None and resource.properties.default_value:
            raw = resource.properties.default_value
        if raw is None:
            raise EdgeError(ErrorKind.SERVER_ERROR, f"no value or default value for {resource.name}")
        if ro is not None and ro.mappings:
            raw = transformer.reverse_map(raw, ro.mappings)
        cv = create_command_value(resource, raw)
        transformer.validate_write_range(cv, resource.properties)
        if self.config.data_transform:
            cv = transformer.transform_write_value(cv, resource.properties)
        return cv

    @staticmethod
    def _request_for(resource: DeviceResource, raw_query: str) -> CommandRequest:
        attributes = dict(resource.attributes)
        if raw_query:
            attributes[URL_RAW_QUERY] = raw_query
        return CommandRequest(
            resource_name=resource.name,
            attributes=attributes,
            type=resource.properties.value_type,
        )

    async def _probe(self, device_name: str, resource_name: str) -> None:
        await self.get_command(device_name, resource_name, "", False, probe=True)

    async def _mark_recovered(self, device_name: str) -> None:
        if self.config.allowed_fails > 0:
            self.tracker.set(device_name, self.config.allowed_fails)
        await self._set_operating_state(device_name, OperatingState.UP)

    async def _record_driver_failure(self, device: Device, *, probe: bool) -> None:
        if self.config.allowed_fails <= 0:
            return
        remaining = self.tracker.decrease(device.name)
        if remaining != 0 or probe:
            return
        logger.warning(f"device {device.name} exhausted {self.config.allowed_fails} allowed failures")
        await self._set_operating_state(device.name, OperatingState.DOWN)
        self.recovery.start(device.name)

    async def _record_driver_success(self, device: Device) -> None:
        if self.config.allowed_fails > 0:
            self.tracker.set(device.name, self.config.allowed_fails)
        current = self.caches.devices.for_name(device.name)
        if current is not None and current.operating_state == OperatingState.DOWN:
            await self._set_operating_state(device.name, OperatingState.UP)
        try:
            self.caches.devices.set_last_connected_by_name(device.name)
        except EdgeError:
            logger.debug(f"device {device.name} removed while its command ran")

    async def _set_operating_state(self, device_name: str, state: OperatingState) -> None:
        try:
            previous = self.caches.devices.update_operating_state(device_name, state)
        except EdgeError as e:
            logger.warning(f"cannot mark {device_name} {state}: {e}")
            return
        if previous == state:
            return
        logger.info(f"device {device_name} operating state {previous} -> {state}")
        if self.metadata is None:
            return
        try:
            await self.metadata.update_device_operating_state(device_name, state)
        except EdgeError as e:
            logger.warning(f"failed to update operating state of {device_name} in metadata: {e}")
