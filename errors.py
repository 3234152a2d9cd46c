"""Error taxonomy shared by the HTTP handlers and the relay.

Every error carries the HTTP status it maps to and a machine-readable code;
the message is what the client sees.
"""


class ChatError(Exception):
    status_code = 500
    code = "INTERNAL"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ChatError):
    """Malformed or missing input."""

    status_code = 400
    code = "VALIDATION"


class AuthenticationError(ChatError):
    """Missing or invalid session credential."""

    status_code = 401
    code = "UNAUTHENTICATED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationError(ChatError):
    """Authenticated, but not entitled to the resource."""

    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(ChatError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ChatError):
    """Unique constraint would be violated."""

    status_code = 409
    code = "CONFLICT"


class InternalError(ChatError):
    """Storage or infrastructure failure. The message stays generic."""

    status_code = 500
    code = "INTERNAL"

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(message)


def error_body(error: ChatError) -> dict:
    return {"ok": False, "error": error.code, "message": error.message}
