"""S3O authentication gate for ASGI applications."""

from .errors import (
    AuthError,
    BadTokenError,
    FormDecodeError,
    InternalFailureError,
    KeyUnavailableError,
    VerificationFailedError,
)
from .gate import S3OMiddleware
from .keys import KeyCache, fetch_public_key

__all__ = [
    "AuthError",
    "BadTokenError",
    "FormDecodeError",
    "InternalFailureError",
    "KeyCache",
    "KeyUnavailableError",
    "S3OMiddleware",
    "VerificationFailedError",
    "fetch_public_key",
]
