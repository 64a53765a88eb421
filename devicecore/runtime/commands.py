"""Command requests and device validation received over the message bus."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

from loguru import logger

from devicecore.bus.base import BusMessage, MessageBus, pump
from devicecore.bus.envelope import API_VERSION, MessageEnvelope
from devicecore.bus.topics import command_request_subscription, topic_tail, validate_device_topic
from devicecore.driver.base import ProtocolDriver
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import Device
from devicecore.runtime.dispatcher import CommandDispatcher, split_query
from devicecore.runtime.publisher import EventPublisher


def _ok(payload: dict[str, Any] | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {"apiVersion": API_VERSION, "statusCode": 200}
    data.update(payload or {})
    return data


def _as_object(payload: Any, what: str) -> dict[str, Any]:
    if payload is None or payload == "":
        return {}
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise EdgeError(ErrorKind.CONTRACT_INVALID, f"{what} is not valid JSON", e) from e
    if not isinstance(payload, dict):
        raise EdgeError(ErrorKind.CONTRACT_INVALID, f"{what} must be a JSON object")
    return payload


class BusCommandHandler:
    """Serves ``commandrequest`` and ``validate/device`` topics; replies on the response topic."""

    def __init__(
        self,
        *,
        service_name: str,
        dispatcher: CommandDispatcher,
        publisher: EventPublisher,
        driver: ProtocolDriver,
    ) -> None:
        self.service_name = service_name
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.driver = driver
        self.command_pattern = ""
        self._tasks: list[asyncio.Task[None]] = []
        self._inflight_tasks: set[asyncio.Task[None]] = set()

    async def start(self, bus: MessageBus, topic_prefix: str) -> None:
        self.command_pattern = command_request_subscription(topic_prefix, self.service_name)
        commands = await bus.subscribe(self.command_pattern)
        validation = await bus.subscribe(validate_device_topic(topic_prefix, self.service_name))
        self._tasks.append(asyncio.create_task(pump(commands, self._spawn_command, label="command request")))
        self._tasks.append(asyncio.create_task(pump(validation, self.handle_validation, label="device validation")))
        logger.info(f"command handler subscribed to {self.command_pattern}")

    async def stop(self) -> None:
        tasks = [*self._tasks, *self._inflight_tasks]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._inflight_tasks.clear()

    async def _spawn_command(self, message: BusMessage) -> None:
        task = asyncio.create_task(self.handle_command(message))
        self._inflight_tasks.add(task)
        task.add_done_callback(self._inflight_tasks.discard)

    async def handle_command(self, message: BusMessage) -> MessageEnvelope:
        request = message.envelope
        try:
            payload = await self._execute(message)
            response = MessageEnvelope.response(request, payload)
        except EdgeError as e:
            logger.warning(f"command request {message.topic} correlation-id={request.correlation_id} failed: {e}")
            response = MessageEnvelope.response(request, e.to_dict(), error=True)
        except Exception as e:
            logger.error(f"command request {message.topic} correlation-id={request.correlation_id} crashed: {e}")
            error = EdgeError(ErrorKind.SERVER_ERROR, f"command request {message.topic} failed", e)
            response = MessageEnvelope.response(request, error.to_dict(), error=True)
        await self.publisher.send_response(request.request_id, response)
        return response

    async def _execute(self, message: BusMessage) -> dict[str, Any]:
        request = message.envelope
        parts = topic_tail(self.command_pattern, message.topic)
        if len(parts) < 3:
            raise EdgeError(ErrorKind.CONTRACT_INVALID, f"command topic {message.topic} lacks device, command and method")
        device_name, command_name, method = parts[0], parts[1], parts[2].lower()
        options, raw_query = split_query(request.query_params)

        if method == "get":
            event = await self.dispatcher.get_command(device_name, command_name, raw_query, options.regex)
            if options.push_event:
                await self.publisher.send_event(event, request.correlation_id)
            if options.return_event:
                return _ok({"event": event.to_dict()})
            return _ok()
        if method == "set":
            params = _as_object(request.payload, "set command payload")
            event = await self.dispatcher.set_command(device_name, command_name, raw_query, params)
            if options.push_event and event is not None:
                await self.publisher.send_event(event, request.correlation_id)
            return _ok()
        raise EdgeError(ErrorKind.CONTRACT_INVALID, f"unknown command method {method!r}")

    async def handle_validation(self, message: BusMessage) -> MessageEnvelope:
        request = message.envelope
        try:
            body = _as_object(request.payload, "device validation payload")
            raw_device = body.get("device") if isinstance(body.get("device"), dict) else body
            try:
                device = Device.from_dict(raw_device)
            except ValueError as e:
                raise EdgeError(ErrorKind.CONTRACT_INVALID, "invalid device", e) from e
            try:
                await self.driver.validate_device(device)
            except EdgeError:
                raise
            except Exception as e:
                raise EdgeError(ErrorKind.CONTRACT_INVALID, f"device {device.name} failed validation", e) from e
            response = MessageEnvelope.response(request, _ok())
        except EdgeError as e:
            logger.warning(f"device validation correlation-id={request.correlation_id} failed: {e}")
            response = MessageEnvelope.response(request, e.to_dict(), error=True)
        await self.publisher.send_response(request.request_id, response)
        return response
