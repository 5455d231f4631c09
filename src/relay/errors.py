from typing import Any

import httpx


class RelayError(Exception):
    """Base class for errors that are reported to the client."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str, *, status_code: int | None = None, error_type: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type

    def to_body(self) -> dict[str, Any]:
        return error_body(self.error_type, self.message)


class MalformedRequest(RelayError):
    """Raised when the inbound body is missing required fields or has the wrong shape."""

    status_code = 400
    error_type = "invalid_request_error"


class UnknownModel(RelayError):
    status_code = 404
    error_type = "not_found_error"

    def __init__(self, model: str):
        super().__init__(f"model '{model}' is not configured")
        self.model = model


class UpstreamUnavailable(RelayError):
    """Connection failure or timeout before any byte reached the client. Retryable."""

    status_code = 503
    error_type = "overloaded_error"

    def __init__(self, message: str, *, timeout: bool = False):
        if timeout:
            super().__init__(message, status_code=504, error_type="timeout_error")
        else:
            super().__init__(message)
        self.timeout = timeout


class UpstreamProtocolError(RelayError):
    """The upstream answered with a shape that cannot be translated. Never retried."""

    status_code = 502
    error_type = "api_error"


class UpstreamRejected(RelayError):
    """The upstream returned a structured error; its message is passed through."""

    def __init__(self, message: str, *, upstream_status: int | None):
        status = upstream_status if upstream_status and 400 <= upstream_status < 500 else 502
        super().__init__(
            message,
            status_code=status,
            error_type=_error_type_from_status(upstream_status),
        )
        self.upstream_status = upstream_status


def _error_type_from_status(status: int | None) -> str:
    if status == 401:
        return "authentication_error"
    if status == 403:
        return "permission_error"
    if status == 404:
        return "not_found_error"
    if status == 429:
        return "rate_limit_error"
    if status is not None and 400 <= status < 500:
        return "invalid_request_error"
    return "api_error"


def error_body(error_type: str, message: str) -> dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message}}


def http_status_error_details(exc: httpx.HTTPStatusError) -> tuple[int | None, str]:
    status: int | None = None
    message: str | None = None
    response = exc.response
    if response is not None:
        status = response.status_code
        try:
            payload = response.json()
        except (ValueError, httpx.ResponseNotRead):
            payload = None
        if isinstance(payload, dict):
            error_field = payload.get("error")
            if isinstance(error_field, dict):
                error_message = error_field.get("message")
                if isinstance(error_message, str) and error_message:
                    message = error_message
            if message is None:
                nested_message = payload.get("message")
                if isinstance(nested_message, str) and nested_message:
                    message = nested_message
        if message is None:
            try:
                text = response.text
            except httpx.ResponseNotRead:
                text = ""
            if text:
                message = text
        if message is None:
            reason = response.reason_phrase
            if reason:
                message = reason
    if message is None:
        message = str(exc)
    return status, message


def from_httpx_error(exc: httpx.HTTPError) -> RelayError:
    """Map a transport or status error raised by httpx onto the client taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status, message = http_status_error_details(exc)
        if status is not None and status >= 500:
            # 5xx before any output is treated as a transient outage.
            return UpstreamUnavailable(f"upstream returned {status}: {message}")
        return UpstreamRejected(message, upstream_status=status)
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamUnavailable(str(exc) or "upstream timed out", timeout=True)
    if isinstance(exc, httpx.TransportError):
        return UpstreamUnavailable(str(exc) or exc.__class__.__name__)
    return UpstreamProtocolError(str(exc) or exc.__class__.__name__)
