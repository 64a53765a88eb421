"""Message envelope carried on every bus topic."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

CONTENT_TYPE_JSON = "application/json"
API_VERSION = "v3"


@dataclass(slots=True)
class MessageEnvelope:
    """Request, response or event wrapper with correlation metadata."""

    payload: Any = None
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str = ""
    api_version: str = API_VERSION
    content_type: str = CONTENT_TYPE_JSON
    error_code: int = 0
    query_params: dict[str, str] = field(default_factory=dict)
    received_topic: str = ""

    @classmethod
    def response(
        cls,
        request: "MessageEnvelope",
        payload: Any,
        *,
        error: bool = False,
    ) -> "MessageEnvelope":
        """Response envelope echoing the request and correlation ids."""
        return cls(
            payload=payload,
            correlation_id=request.correlation_id,
            request_id=request.request_id,
            api_version=request.api_version or API_VERSION,
            error_code=1 if error else 0,
        )

    @property
    def is_error(self) -> bool:
        return self.error_code != 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "apiVersion": self.api_version,
            "correlationID": self.correlation_id,
            "requestID": self.request_id,
            "contentType": self.content_type,
            "errorCode": self.error_code,
            "payload": self.payload,
        }
        if self.query_params:
            data["queryParams"] = dict(self.query_params)
        if self.received_topic:
            data["receivedTopic"] = self.received_topic
        return data

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, topic: str = "") -> "MessageEnvelope":
        if not isinstance(data, dict):
            raise ValueError("message envelope must be an object")
        params = data.get("queryParams") or {}
        if not isinstance(params, dict):
            raise ValueError("queryParams must be an object")
        return cls(
            payload=data.get("payload"),
            correlation_id=str(data.get("correlationID") or data.get("correlationId") or uuid.uuid4()),
            request_id=str(data.get("requestID") or data.get("requestId") or ""),
            api_version=str(data.get("apiVersion") or API_VERSION),
            content_type=str(data.get("contentType") or CONTENT_TYPE_JSON),
            error_code=int(data.get("errorCode") or 0),
            query_params={str(k): str(v) for k, v in params.items()},
            received_topic=topic or str(data.get("receivedTopic") or ""),
        )

    @classmethod
    def from_json(cls, raw: str | bytes, *, topic: str = "") -> "MessageEnvelope":
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        return cls.from_dict(json.loads(text), topic=topic)
