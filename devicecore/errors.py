"""Error kinds shared by every command and reconcile path."""

from __future__ import annotations

from enum import StrEnum
from http import HTTPStatus
from typing import Any


class ErrorKind(StrEnum):
    """Classification carried by every EdgeError."""

    CONTRACT_INVALID = "ContractInvalid"
    ENTITY_DOES_NOT_EXIST = "EntityDoesNotExist"
    DUPLICATE_NAME = "DuplicateName"
    NOT_ALLOWED = "NotAllowed"
    SERVICE_LOCKED = "ServiceLocked"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    SERVER_ERROR = "ServerError"
    NOT_IMPLEMENTED = "NotImplemented"
    STATUS_CONFLICT = "StatusConflict"


_HTTP_STATUS_BY_KIND: dict[ErrorKind, HTTPStatus] = {
    ErrorKind.CONTRACT_INVALID: HTTPStatus.BAD_REQUEST,
    ErrorKind.ENTITY_DOES_NOT_EXIST: HTTPStatus.NOT_FOUND,
    ErrorKind.DUPLICATE_NAME: HTTPStatus.CONFLICT,
    ErrorKind.NOT_ALLOWED: HTTPStatus.METHOD_NOT_ALLOWED,
    ErrorKind.SERVICE_LOCKED: HTTPStatus.LOCKED,
    ErrorKind.SERVICE_UNAVAILABLE: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorKind.SERVER_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
    ErrorKind.NOT_IMPLEMENTED: HTTPStatus.NOT_IMPLEMENTED,
    ErrorKind.STATUS_CONFLICT: HTTPStatus.CONFLICT,
}


class EdgeError(Exception):
    """Error with a kind tag, a human message and an optional chained cause."""

    def __init__(self, kind: ErrorKind, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def http_status(self) -> HTTPStatus:
        return _HTTP_STATUS_BY_KIND.get(self.kind, HTTPStatus.INTERNAL_SERVER_ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "kind": str(self.kind),
            "statusCode": int(self.http_status),
            "message": str(self),
        }

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message

