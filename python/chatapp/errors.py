"""Core error definitions.

All core errors are defined here with their corresponding user-facing message.
Nothing in the core is fatal: services raise these at operation boundaries and
the client facade turns them into reported error states.
"""

from enum import Enum

from chatapp.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Standardized error kinds for the chat core."""

    # Backend reads
    LOOKUP_FAILED = "LookupFailed"

    # User input validation
    SELF_CHAT_FORBIDDEN = "SelfChatForbidden"
    INVALID_REQUEST = "InvalidRequest"

    # Blob storage
    UPLOAD_FAILED = "UploadFailed"

    # Backend writes
    WRITE_FAILED = "WriteFailed"
    PARTIAL_WRITE_FAILURE = "PartialWriteFailure"

    # Optimistic local mutations
    STALE_LOCAL_STATE = "StaleLocalState"
    OPERATION_IN_FLIGHT = "OperationInFlight"

    # Session / lookups
    NOT_AUTHENTICATED = "NotAuthenticated"
    NOT_FOUND = "NotFound"


# Error kind to user-presentable message mapping
ERROR_KIND_TO_USER_MESSAGE: dict[ErrorKind, str] = {
    ErrorKind.LOOKUP_FAILED: "Could not reach the server. Please try again.",
    ErrorKind.SELF_CHAT_FORBIDDEN: "Cannot chat with yourself.",
    ErrorKind.INVALID_REQUEST: "The request was not valid.",
    ErrorKind.UPLOAD_FAILED: "Failed to upload image.",
    ErrorKind.WRITE_FAILED: "Could not save your changes. Please try again.",
    ErrorKind.PARTIAL_WRITE_FAILURE: "Some changes have not been saved yet.",
    ErrorKind.STALE_LOCAL_STATE: "Failed to delete conversation.",
    ErrorKind.OPERATION_IN_FLIGHT: "Please wait for the current operation to finish.",
    ErrorKind.NOT_AUTHENTICATED: "You need to be logged in to do that.",
    ErrorKind.NOT_FOUND: "Not found.",
}


class ChatError(Exception):
    """Base exception for chat core errors.

    Attributes:
        kind: The error kind enum value
        message: Human-readable diagnostic message
        user_message: Message suitable for presenting to the user
    """

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        self.message = message
        self.user_message = ERROR_KIND_TO_USER_MESSAGE.get(kind, message)
        super().__init__(message)


class LookupFailedError(ChatError):
    """A directory or summary read failed."""

    def __init__(self, message: str = "Lookup failed"):
        super().__init__(ErrorKind.LOOKUP_FAILED, message)


class SelfChatForbiddenError(ChatError):
    """The user attempted to open a conversation with themself."""

    def __init__(self, message: str = "Cannot chat with yourself"):
        super().__init__(ErrorKind.SELF_CHAT_FORBIDDEN, message)


class InvalidRequestError(ChatError):
    """Invalid input error."""

    def __init__(self, message: str = "Invalid request"):
        super().__init__(ErrorKind.INVALID_REQUEST, message)


class UploadFailedError(ChatError):
    """Blob upload or URL retrieval failed after all retries."""

    def __init__(self, message: str = "Upload failed", attempts: int = 0):
        self.attempts = attempts
        super().__init__(ErrorKind.UPLOAD_FAILED, message)


class WriteFailedError(ChatError):
    """A single backend write failed."""

    def __init__(self, message: str = "Write failed"):
        super().__init__(ErrorKind.WRITE_FAILED, message)


class PartialWriteFailureError(ChatError):
    """One of several independent denormalized writes failed."""

    def __init__(
        self, message: str = "Partial write failure", failed_paths: list[str] | None = None
    ):
        self.failed_paths = failed_paths or []
        super().__init__(ErrorKind.PARTIAL_WRITE_FAILURE, message)


class StaleLocalStateError(ChatError):
    """An optimistic local mutation was rolled back."""

    def __init__(self, message: str = "Local state rolled back"):
        super().__init__(ErrorKind.STALE_LOCAL_STATE, message)


class OperationInFlightError(ChatError):
    """A non-reentrant operation is already running."""

    def __init__(self, message: str = "Operation already in flight"):
        super().__init__(ErrorKind.OPERATION_IN_FLIGHT, message)


class NotAuthenticatedError(ChatError):
    """No authenticated session is available."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(ErrorKind.NOT_AUTHENTICATED, message)


class NotFoundError(ChatError):
    """Record not found error."""

    def __init__(self, message: str = "Not found"):
        super().__init__(ErrorKind.NOT_FOUND, message)


def describe_error(exc: BaseException, operation: str = "Operation") -> str:
    """Log an exception and convert it into a user-presentable message.

    Args:
        exc: The exception raised by a core operation.
        operation: Human-readable name of the failed operation.

    Returns:
        Message to show the user.
    """
    if isinstance(exc, ChatError):
        logger.warning(
            "operation_failed",
            operation=operation,
            error_kind=exc.kind.value,
            error=exc.message,
        )
        return exc.user_message

    logger.error("operation_failed", operation=operation, error=str(exc), exc_info=exc)
    return f"{operation} failed: {exc}"
