"""
Storage error taxonomy and the HTTP mapping for it.

Every error carries a stable ``kind`` for machines and a ``detail`` string
for humans. Only ``InvalidInput`` and ``PersistenceFailure`` are expected to
reach a client; the remote-store errors are recovered by the coordinator and
only surface in remote-only mode.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = logging.getLogger(__name__)


class StorageError(Exception):
    kind = "storage_error"
    status_code = 500
    message = "Storage error"

    def __init__(self, detail: str = "", extra: Optional[Dict[str, Any]] = None):
        super().__init__(detail or self.message)
        self.detail = detail or self.message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "kind": self.kind, "details": self.detail}
        body.update(self.extra)
        return body


class InvalidInput(StorageError):
    kind = "invalid_input"
    status_code = 400
    message = "Invalid data format"


class OperationTimeout(StorageError):
    kind = "operation_timeout"
    status_code = 503
    message = "Remote store operation timed out"


class RemoteUnavailable(StorageError):
    kind = "remote_unavailable"
    status_code = 503
    message = "Remote store unavailable"


class RemoteWriteError(StorageError):
    kind = "remote_write_error"
    status_code = 503
    message = "Remote store write failed"


class DuplicateRecord(StorageError):
    kind = "duplicate_record"
    status_code = 409
    message = "Record already exists"


class ReadFailure(StorageError):
    kind = "read_failure"
    message = "Local data file could not be read"


class WriteFailure(StorageError):
    kind = "write_failure"
    message = "Local data file could not be written"


class PersistenceFailure(StorageError):
    kind = "persistence_failure"
    message = "Persistence failure"


async def _storage_error_handler(request: Request, exc: StorageError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc.detail)
    else:
        log.warning("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _unhandled_error_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "kind": "internal_error", "details": str(exc)},
    )


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return await _storage_error_handler(request, InvalidInput(f"malformed request: {problems}"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StorageError, _storage_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
