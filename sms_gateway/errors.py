"""
Error taxonomy for the gateway.

Handlers raise these; the exception handlers in main.py turn them into
JSON responses of the form {"error": ..., "success": false}.
"""

from typing import Optional

from fastapi import status


class GatewayError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra):
        self.message = message or self.default_message
        # Extra keys merged into the response body (e.g. id)
        self.extra = extra
        super().__init__(self.message)


class AuthError(GatewayError):
    """Missing or incorrect X-API-Key."""
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized: Invalid API Key"


class ValidationError(GatewayError):
    """Missing required field or unparsable body."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad Request"


class NotFoundError(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Message not found"


class CapabilityUnavailable(GatewayError):
    """The platform permission for this operation has not been granted."""
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "READ_SMS permission not granted"


class InternalError(GatewayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
