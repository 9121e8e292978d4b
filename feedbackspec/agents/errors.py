"""
Error taxonomy for calls made through the request gateway.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNCONFIGURED = "unconfigured"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection_failed"
    UPSTREAM_BAD_REQUEST = "upstream_bad_request"
    UPSTREAM_AUTH_FAILED = "upstream_auth_failed"
    UPSTREAM_SERVER_ERROR = "upstream_server_error"
    MALFORMED_RESPONSE = "malformed_response"
    UNKNOWN = "unknown"


# Kinds the end user can act on; everything else is reported as a generic outage.
USER_MESSAGES = {
    ErrorKind.UNCONFIGURED: "AI features are not configured. Add an OpenAI API key to enable analysis.",
    ErrorKind.RATE_LIMITED: "Too many AI requests right now. Please wait a few minutes and try again.",
    ErrorKind.UPSTREAM_AUTH_FAILED: "The OpenAI API key was rejected. Check that the configured key is valid.",
}

GENERIC_USER_MESSAGE = "The AI service is temporarily unavailable. Please try again later."


class GatewayError(Exception):
    """Typed failure raised by RequestGateway.make_request."""

    def __init__(self, kind: ErrorKind, message: str, detail: str = "",
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail
        self.status_code = status_code

    @property
    def is_actionable(self) -> bool:
        return self.kind in USER_MESSAGES

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.kind, GENERIC_USER_MESSAGE)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, message={self.message!r})"
