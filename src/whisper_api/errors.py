"""Failure taxonomy and its rendering at the HTTP boundary.

Every failure the service reports to a client is a ServiceError subclass.
Each carries a public message that is safe to return, while the full detail
(host paths, engine messages, ffmpeg stderr) only ever reaches the log.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("whisper_api.errors")


class ServiceError(Exception):
    """Base class for classified service failures."""

    kind: str = "InternalError"
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, detail: str | None = None, *, public_message: str | None = None):
        super().__init__(detail or self.default_message)
        self.detail = detail or self.default_message
        self.public_message = public_message or self.default_message


class ModelLoadFailure(ServiceError):
    """Model file missing or unloadable. Fatal at startup, never per-request."""

    kind = "ModelLoadFailure"
    default_message = "Model failed to load"


class InvalidFormat(ServiceError):
    """Unparseable or unsupported audio header."""

    kind = "InvalidFormat"
    status_code = 400
    default_message = "Invalid audio format"

    def __init__(self, detail: str | None = None, *, status_code: int | None = None):
        # Detail describes the client's own bytes and is returned as-is.
        super().__init__(detail, public_message=detail)
        if status_code is not None:
            self.status_code = status_code


class EmptyAudio(ServiceError):
    kind = "EmptyAudio"
    status_code = 400
    default_message = "No audio samples found in input"


class InferenceFailure(ServiceError):
    kind = "InferenceFailure"
    status_code = 500
    default_message = "Transcription failed"


class Overloaded(ServiceError):
    """The inference queue is full; the client should retry later."""

    kind = "Overloaded"
    status_code = 503
    default_message = "Server is busy, retry later"
    retry_after_s: int = 1


class AudioIOError(ServiceError):
    """The transcoding collaborator failed.

    ``client_fault`` separates undecodable input (4xx) from a broken host
    setup such as a missing ffmpeg binary (5xx).
    """

    kind = "IOError"
    default_message = "Audio could not be processed"

    def __init__(self, detail: str | None = None, *, client_fault: bool):
        public = "Audio could not be decoded" if client_fault else self.default_message
        super().__init__(detail, public_message=public)
        self.client_fault = client_fault
        self.status_code = 400 if client_fault else 502


def error_body(exc: ServiceError) -> dict:
    """Render the JSON body for a classified failure."""
    return {
        "error": exc.public_message,
        "kind": exc.kind,
        "status": exc.status_code,
    }


def error_response(exc: ServiceError) -> JSONResponse:
    """Log a classified failure and build its HTTP response."""
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.kind, exc.detail)
    else:
        logger.info("%s: %s", exc.kind, exc.detail)

    headers = None
    if isinstance(exc, Overloaded):
        headers = {"Retry-After": str(exc.retry_after_s)}
    return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    """Register handlers mapping ServiceError (and anything unexpected) to JSON."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(ServiceError(repr(exc)))
