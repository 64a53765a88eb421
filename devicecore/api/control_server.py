"""Threaded HTTP control API proxying into the asyncio runtime."""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Coroutine
from urllib.parse import unquote, urlparse

from loguru import logger

from devicecore import __version__
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.event import ProfileScanRequest
from devicecore.runtime.dispatcher import split_query
from devicecore.runtime.service import ServiceRuntime
from devicecore.utils.helpers import now_ns

API_VERSION = "v3"
_API_VERSION_PART = re.compile(r"^v\d+$")
_SECRET_KEYS = {"password", "token", "secret"}


def json_response(data: dict[str, Any]) -> bytes:
    return json.dumps(data, ensure_ascii=False).encode("utf-8")


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("***" if k.lower() in _SECRET_KEYS and v else _redact(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact(x) for x in data]
    return data


def _ok(extra: dict[str, Any] | None = None, status: HTTPStatus = HTTPStatus.OK) -> dict[str, Any]:
    payload: dict[str, Any] = {"apiVersion": API_VERSION, "statusCode": int(status)}
    payload.update(extra or {})
    return payload


class _ControlRequestHandler(BaseHTTPRequestHandler):
    """Synchronous HTTP handler that proxies into asyncio runtime."""

    runtime: ServiceRuntime | None = None
    loop: asyncio.AbstractEventLoop | None = None
    max_request_body_bytes: int = 4 * 1024 * 1024
    request_timeout_seconds: float = 30.0

    server_version = f"devicecore/{__version__}"

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        parts = self._api_parts(parsed.path)
        if parts is None:
            return
        if parts == ["ping"]:
            self._send_json(HTTPStatus.OK, _ok({"timestamp": str(now_ns()), "serviceName": self._service_name()}))
            return
        if parts == ["version"]:
            self._send_json(HTTPStatus.OK, _ok({"version": __version__, "serviceName": self._service_name()}))
            return
        if parts == ["config"]:
            config = self.runtime.config.model_dump() if self.runtime else {}
            self._send_json(HTTPStatus.OK, _ok({"config": _redact(config)}))
            return
        if parts == ["metrics"]:
            metrics = self.runtime.metrics.snapshot() if self.runtime else {}
            status = self.runtime.status_snapshot() if self.runtime else {}
            self._send_json(HTTPStatus.OK, _ok({"metrics": metrics, "status": status}))
            return
        if len(parts) == 4 and parts[:2] == ["device", "name"]:
            self._get_command(unquote(parts[2]), unquote(parts[3]), parsed.query)
            return
        self._send_error(EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, "unknown endpoint"))

    def do_PUT(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        parts = self._api_parts(parsed.path)
        if parts is None:
            return
        if len(parts) == 4 and parts[:2] == ["device", "name"]:
            payload = self._read_json_body()
            if payload is None:
                return
            self._set_command(unquote(parts[2]), unquote(parts[3]), parsed.query, payload)
            return
        self._send_error(EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, "unknown endpoint"))

    def do_POST(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        parts = self._api_parts(parsed.path)
        if parts is None:
            return
        if parts == ["discovery"]:
            self._post_discovery()
            return
        if parts == ["profilescan"]:
            payload = self._read_json_body()
            if payload is None:
                return
            self._post_profile_scan(payload)
            return
        self._send_error(EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, "unknown endpoint"))

    def do_DELETE(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        parts = self._api_parts(parsed.path)
        if parts is None:
            return
        if parts and parts[0] == "discovery" and len(parts) <= 2:
            request_id = unquote(parts[1]) if len(parts) == 2 else ""
            self._delete_discovery(request_id)
            return
        if len(parts) == 4 and parts[:3] == ["profilescan", "device", "name"]:
            self._delete_profile_scan(unquote(parts[3]))
            return
        self._send_error(EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, "unknown endpoint"))

    def log_message(self, fmt: str, *args: Any) -> None:
        logger.debug("control-api " + fmt % args)

    def _api_parts(self, path: str) -> list[str] | None:
        """Path segments after ``/api/v{n}``; sends 404 and returns None for other paths."""
        parts = [p for p in path.split("/") if p]
        if len(parts) < 2 or parts[0] != "api" or not _API_VERSION_PART.match(parts[1]):
            self._send_error(EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, "unknown endpoint"))
            return None
        return parts[2:]

    def _service_name(self) -> str:
        return self.runtime.service.name if self.runtime else ""

    def _read_json_body(self) -> dict[str, Any] | None:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = 0
        max_body = max(1024, int(self.max_request_body_bytes))
        if length > max_body:
            self._send_json(
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
                {
                    "success": False,
                    "message": f"request body too large (max {max_body} bytes)",
                },
            )
            return None
        body = self.rfile.read(length) if length > 0 else b"{}"
        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            self._send_error(EdgeError(ErrorKind.CONTRACT_INVALID, "invalid json"))
            return None
        if not isinstance(payload, dict):
            self._send_error(EdgeError(ErrorKind.CONTRACT_INVALID, "request body must be a JSON object"))
            return None
        return payload

    def _run(self, coro: Coroutine[Any, Any, Any]) -> tuple[bool, Any]:
        """Run ``coro`` on the runtime loop; on failure the error response is already sent."""
        if not self.runtime or not self.loop:
            coro.close()
            self._send_error(EdgeError(ErrorKind.SERVICE_UNAVAILABLE, "runtime unavailable"))
            return False, None
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return True, future.result(timeout=self.request_timeout_seconds)
        except FutureTimeoutError:
            with contextlib.suppress(Exception):
                future.cancel()
            self._send_json(HTTPStatus.GATEWAY_TIMEOUT, {"success": False, "message": "runtime timeout"})
        except EdgeError as e:
            self._send_error(e)
        except Exception as e:
            logger.warning(f"control-api future failed: {e}")
            self._send_error(EdgeError(ErrorKind.SERVER_ERROR, "runtime error", e))
        return False, None

    def _get_command(self, device_name: str, command_name: str, query: str) -> None:
        try:
            options, raw_query = split_query(query)
        except EdgeError as e:
            self._send_error(e)
            return
        runtime = self.runtime

        async def run() -> Any:
            event = await runtime.dispatcher.get_command(device_name, command_name, raw_query, options.regex)
            if options.push_event:
                await runtime.publisher.send_event(event)
            return event

        ok, event = self._run(run())
        if not ok:
            return
        if options.return_event:
            self._send_json(HTTPStatus.OK, _ok({"event": event.to_dict()}))
        else:
            self._send_json(HTTPStatus.OK, _ok())

    def _set_command(self, device_name: str, command_name: str, query: str, payload: dict[str, Any]) -> None:
        try:
            options, raw_query = split_query(query)
        except EdgeError as e:
            self._send_error(e)
            return
        runtime = self.runtime

        async def run() -> Any:
            event = await runtime.dispatcher.set_command(device_name, command_name, raw_query, payload)
            if options.push_event and event is not None:
                await runtime.publisher.send_event(event)
            return event

        ok, _ = self._run(run())
        if ok:
            self._send_json(HTTPStatus.OK, _ok())

    def _post_discovery(self) -> None:
        runtime = self.runtime

        async def run() -> str:
            return runtime.discovery.trigger_discovery()

        ok, request_id = self._run(run())
        if ok:
            self._send_json(HTTPStatus.ACCEPTED, _ok({"requestId": request_id}, HTTPStatus.ACCEPTED))

    def _delete_discovery(self, request_id: str) -> None:
        runtime = self.runtime

        async def run() -> None:
            await runtime.discovery.stop_discovery(request_id)

        ok, _ = self._run(run())
        if ok:
            self._send_json(HTTPStatus.OK, _ok())

    def _post_profile_scan(self, payload: dict[str, Any]) -> None:
        runtime = self.runtime
        req = ProfileScanRequest.from_dict(payload)

        async def run() -> str:
            return runtime.discovery.profile_scan(req)

        ok, request_id = self._run(run())
        if ok:
            self._send_json(HTTPStatus.ACCEPTED, _ok({"requestId": request_id}, HTTPStatus.ACCEPTED))

    def _delete_profile_scan(self, device_name: str) -> None:
        runtime = self.runtime

        async def run() -> None:
            await runtime.discovery.stop_profile_scan(device_name)

        ok, _ = self._run(run())
        if ok:
            self._send_json(HTTPStatus.OK, _ok())

    def _send_error(self, error: EdgeError) -> None:
        self._send_json(error.http_status, error.to_dict())

    def _send_json(self, code: HTTPStatus, payload: dict[str, Any]) -> None:
        body = json_response(payload)
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class ControlServer:
    """Threaded HTTP control endpoint for commands, discovery and health."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        runtime: ServiceRuntime,
        loop: asyncio.AbstractEventLoop,
        max_request_body_bytes: int = 4 * 1024 * 1024,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.runtime = runtime
        self.loop = loop
        self.max_request_body_bytes = max(1024, int(max_request_body_bytes))
        self.request_timeout_seconds = max(0.1, float(request_timeout_seconds))
        self._thread: threading.Thread | None = None
        self._server: ThreadingHTTPServer | None = None

    @property
    def bound_port(self) -> int:
        if self._server is None:
            return self.port
        return int(self._server.server_address[1])

    def start(self) -> None:
        handler_cls = type("BoundControlRequestHandler", (_ControlRequestHandler,), {})
        handler_cls.runtime = self.runtime
        handler_cls.loop = self.loop
        handler_cls.max_request_body_bytes = self.max_request_body_bytes
        handler_cls.request_timeout_seconds = self.request_timeout_seconds
        self._server = ThreadingHTTPServer((self.host, self.port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info(f"devicecore control API listening on http://{self.host}:{self.bound_port}")

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2)
        self._thread = None
