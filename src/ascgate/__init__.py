from .client import BASE_URL, AsyncClient, Client
from .env import load_token_config_from_env
from .errors import (
    ApiFailure,
    AuthFailure,
    ConfigFailure,
    Conflict,
    Forbidden,
    NetworkFailure,
    NotFound,
    RateLimitFailure,
    SizeMismatch,
    TimeoutFailure,
    UploadFailure,
    ValidationFailure,
    format_error_response,
    parse_api_error,
    sanitize_message,
)
from .keys import KeySource
from .ratelimit import AsyncRateLimiter, RateLimiter
from .state import Credential
from .tokens import AsyncTokenManager, TokenManager
from .types import (
    AuthConfig,
    RateLimitConfig,
    RequestDescriptor,
    RetryConfig,
    TokenConfig,
    UploadOperation,
)
from .uploads import AssetUploader, AsyncAssetUploader, checksum

__all__ = [
    "BASE_URL",
    "TokenConfig",
    "AuthConfig",
    "RetryConfig",
    "RateLimitConfig",
    "RequestDescriptor",
    "UploadOperation",
    "Credential",
    "KeySource",
    "TokenManager",
    "AsyncTokenManager",
    "RateLimiter",
    "AsyncRateLimiter",
    "Client",
    "AsyncClient",
    "AssetUploader",
    "AsyncAssetUploader",
    "checksum",
    "load_token_config_from_env",
    "ApiFailure",
    "ConfigFailure",
    "AuthFailure",
    "RateLimitFailure",
    "ValidationFailure",
    "NotFound",
    "Forbidden",
    "Conflict",
    "TimeoutFailure",
    "NetworkFailure",
    "SizeMismatch",
    "UploadFailure",
    "parse_api_error",
    "format_error_response",
    "sanitize_message",
]
