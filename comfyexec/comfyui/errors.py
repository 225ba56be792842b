"""
Exceptions raised by the ComfyUI execution client and its collaborators.

Validation and data errors describe bad input and are never retried. Network errors are retried by the
client for idempotent operations only. Timeout and cancellation are terminal states of an execution.
"""
from typing import Any, Optional

STATUS_HINTS: dict[int, str] = {
    400: "The server returned 400 Bad Request. The request may be malformed.",
    403: "The server returned 403 Forbidden. The URL may require authentication or block automated access.",
    404: "The server returned 404 Not Found. The URL may be incorrect or the resource may have been removed.",
    500: "The server returned 500 Internal Server Error. Please try again later.",
    503: "The server returned 503 Service Unavailable. The server may be overloaded.",
}


class ComfyUIError(Exception):
    code = "COMFYUI_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details

    def __str__(self) -> str:
        return self.message


class WorkflowValidationError(ComfyUIError):
    code = "VALIDATION_ERROR"


class DataError(ComfyUIError):
    code = "DATA_ERROR"


class NetworkError(ComfyUIError):
    code = "NETWORK_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None,
                 hint: Optional[str] = None):
        super().__init__(message, status_code, details)
        self.hint = hint


class ExecutionError(ComfyUIError):
    code = "EXECUTION_ERROR"


class ExecutionTimeoutError(ComfyUIError):
    code = "TIMEOUT_ERROR"

    def __init__(self, message: str, elapsed_s: float, details: Any = None):
        super().__init__(message, details=details)
        self.elapsed_s = elapsed_s


class CancellationError(ComfyUIError):
    code = "CANCELLED"


class ClientStateError(ComfyUIError):
    code = "CLIENT_STATE_ERROR"


def error_from_status(status_code: int, reason: Optional[str] = None, context: str = "HTTP request failed",
                      details: Any = None) -> NetworkError:
    """
    Build a NetworkError for an HTTP error status, attaching a human readable hint when the status is known.
    :param status_code: HTTP status returned by the server.
    :param reason: HTTP reason phrase, if any.
    :param context: What the client was doing when the error occurred.
    :param details: Response body or other diagnostic payload.
    """
    message = f"{context}: HTTP {status_code} {reason or ''}".rstrip()
    return NetworkError(message, status_code=status_code, details=details, hint=STATUS_HINTS.get(status_code))
