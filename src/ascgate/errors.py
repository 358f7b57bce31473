import re
from typing import Any, Union

REDACTED = "[REDACTED]"

_SENSITIVE_PATTERNS = (
    # bearer tokens: any three dot-separated base64url segments after the scheme
    re.compile(r"Bearer\s+[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+", re.IGNORECASE),
    # bare JWTs (header always starts with base64url '{"')
    re.compile(r"eyJ[A-Za-z0-9\-_]*\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+"),
    re.compile(r"-----BEGIN[^-]*-----.*?-----END[^-]*-----", re.DOTALL),
    # issuer ids and other UUIDs
    re.compile(
        r"[A-Za-z0-9]{8}-[A-Za-z0-9]{4}-[A-Za-z0-9]{4}-[A-Za-z0-9]{4}-[A-Za-z0-9]{12}"
    ),
)


def sanitize_message(message: str) -> str:
    """Replace tokens, PEM blocks and UUIDs with a redaction marker."""
    for pattern in _SENSITIVE_PATTERNS:
        message = pattern.sub(REDACTED, message)
    return message


class ApiFailure(Exception):
    """Base failure for everything raised by ascgate.

    Also used directly for 4xx/5xx responses without a more specific kind.
    The message is sanitized on construction so no subclass can leak
    credentials through str(exc).
    """

    code = "API_ERROR"
    status = 0

    def __init__(
        self,
        message: str,
        code: Union[str, None] = None,
        status: Union[int, None] = None,
        details: Union[list[dict[str, Any]], None] = None,
    ):
        super().__init__(sanitize_message(message))
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.details = details

    @property
    def message(self) -> str:
        return self.args[0] if self.args else ""

    @property
    def retryable(self) -> bool:
        return self.status >= 500  # noqa: PLR2004, http status code can be constant

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = [
                {k: sanitize_message(v) if isinstance(v, str) else v for k, v in d.items()}
                for d in self.details
            ]
        return {"success": False, "error": error}


class ConfigFailure(ApiFailure):
    code = "CONFIG_ERROR"
    status = 500

    @property
    def retryable(self) -> bool:
        return False


class AuthFailure(ApiFailure):
    code = "AUTH_ERROR"
    status = 401


class RateLimitFailure(ApiFailure):
    code = "RATE_LIMIT"
    status = 429

    def __init__(self, retry_after: float, details=None):
        super().__init__(
            f"Rate limit exceeded. Retry after {retry_after:g} seconds.", details=details
        )
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["error"]["retryAfter"] = self.retry_after
        return out


class ValidationFailure(ApiFailure):
    code = "VALIDATION_ERROR"
    status = 400

    def __init__(self, message: str, field: Union[str, None] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        if self.field is not None:
            out["error"]["field"] = self.field
        return out


class NotFound(ApiFailure):
    code = "NOT_FOUND"
    status = 404


class Forbidden(ApiFailure):
    code = "FORBIDDEN"
    status = 403


class Conflict(ApiFailure):
    code = "CONFLICT"
    status = 409


class TimeoutFailure(ApiFailure):
    code = "TIMEOUT"
    status = 408

    @property
    def retryable(self) -> bool:
        return True


class NetworkFailure(ApiFailure):
    code = "NETWORK_ERROR"
    status = 0

    @property
    def retryable(self) -> bool:
        return True


class SizeMismatch(ApiFailure):
    code = "FILE_SIZE_MISMATCH"
    status = 400

    def __init__(self, declared: int, actual: int):
        super().__init__(f"File size mismatch: expected {declared}, got {actual}")
        self.declared = declared
        self.actual = actual


class UploadFailure(ApiFailure):
    code = "UPLOAD_ERROR"
    status = 500

    def __init__(self, message: str, code=None, status=None, phase: Union[str, None] = None):
        super().__init__(message, code=code, status=status)
        self.phase = phase

    @property
    def retryable(self) -> bool:
        return False


def parse_api_error(status: int, body: Any) -> ApiFailure:
    """Map an error response to the matching failure kind."""
    errors = body.get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list) or not errors:
        errors = None
    detail = None
    if errors and isinstance(errors[0], dict):
        detail = errors[0].get("detail")

    if status == 401:  # noqa: PLR2004
        return AuthFailure(detail or "Authentication failed", details=errors)
    if status == 403:  # noqa: PLR2004
        return Forbidden(
            detail or "Access forbidden. Check your API key permissions.", details=errors
        )
    if status == 404:  # noqa: PLR2004
        return NotFound(detail or "Resource not found", details=errors)
    if status == 409:  # noqa: PLR2004
        return Conflict(detail or "Conflict with current state", details=errors)
    if status == 429:  # noqa: PLR2004
        return RateLimitFailure(60.0, details=errors)
    return ApiFailure(
        detail or f"API request failed with status {status}", status=status, details=errors
    )


def format_error_response(error: BaseException) -> dict[str, Any]:
    """Render any exception into the envelope returned to tool callers."""
    if isinstance(error, ApiFailure):
        return error.to_dict()
    return {
        "success": False,
        "error": {"code": "INTERNAL_ERROR", "message": sanitize_message(str(error))},
    }
