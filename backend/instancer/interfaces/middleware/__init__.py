"""HTTP middleware."""

from .error_handler import ErrorHandlerMiddleware, instance_error_handler
from .identity import TrustedIdentityMiddleware

__all__ = [
    "ErrorHandlerMiddleware",
    "TrustedIdentityMiddleware",
    "instance_error_handler",
]
