from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Union

# Defaults shared by the token managers
TOKEN_LIFETIME_SECONDS = 15 * 60
TOKEN_REFRESH_BUFFER_SECONDS = 5 * 60
AUDIENCE = "appstoreconnect-v1"

ParamValue = Union[str, int, float, bool, None]


@dataclass(frozen=True)
class TokenConfig:
    key_id: str
    issuer_id: str
    # One of the two key sources is required; the path wins when both are set.
    private_key_path: str | None = None
    private_key_content: str | None = None
    audience: str = AUDIENCE
    lifetime: float = TOKEN_LIFETIME_SECONDS
    refresh_buffer: float = TOKEN_REFRESH_BUFFER_SECONDS

    def __repr__(self) -> str:
        has_content = self.private_key_content is not None
        return (
            f"TokenConfig(key_id={self.key_id!r}, private_key_path={self.private_key_path!r}, "
            f"private_key_content={'<set>' if has_content else None})"
        )


@dataclass(frozen=True)
class AuthConfig:
    header: str = "Authorization"
    scheme: str = "Bearer"


@dataclass(frozen=True)
class RetryConfig:
    # Attempt budget shared by 5xx, transport errors, timeouts and 429s
    max_attempts: int = 3

    # Exponential backoff for transient errors (seconds)
    base_delay: float = 1.0
    growth: float = 2.0

    # Used when a 429 carries no usable Retry-After header
    default_retry_after: float = 60.0

    # Per-attempt deadline (seconds)
    timeout: float = 30.0


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = 50
    window: float = 60.0


@dataclass(frozen=True)
class RequestDescriptor:
    method: Literal["GET", "POST", "PATCH", "DELETE"]
    path: str
    params: Mapping[str, ParamValue] = field(default_factory=dict)
    body: Any = None
    # None -> RetryConfig.timeout
    timeout: float | None = None


@dataclass(frozen=True)
class UploadOperation:
    method: str
    url: str
    offset: int
    length: int
    request_headers: tuple[tuple[str, str], ...] = ()

    @property
    def end(self) -> int:
        return self.offset + self.length

    def headers(self) -> dict[str, str]:
        return dict(self.request_headers)
