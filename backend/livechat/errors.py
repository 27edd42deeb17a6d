from typing import Any, Optional

# validation
MISSING_USER_ID = "MISSING_USER_ID"
MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
MISSING_SESSION_ID = "MISSING_SESSION_ID"
NOT_CONNECTED = "NOT_CONNECTED"
EMPTY_MESSAGE = "EMPTY_MESSAGE"
MESSAGE_TOO_LONG = "MESSAGE_TOO_LONG"
INVALID_MESSAGE_TYPE = "INVALID_MESSAGE_TYPE"
INVALID_STATUS = "INVALID_STATUS"
INVALID_STRATEGY = "INVALID_STRATEGY"
INVALID_PAYLOAD = "INVALID_PAYLOAD"
UNKNOWN_COMMAND = "UNKNOWN_COMMAND"

# not found
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
OPERATOR_NOT_FOUND = "OPERATOR_NOT_FOUND"

# conflict
SESSION_CLOSED = "SESSION_CLOSED"
SESSION_ALREADY_ASSIGNED = "SESSION_ALREADY_ASSIGNED"
ASSIGNMENT_CONFLICT = "ASSIGNMENT_CONFLICT"
OPERATOR_NOT_AVAILABLE = "OPERATOR_NOT_AVAILABLE"
NO_AVAILABLE_OPERATORS = "NO_AVAILABLE_OPERATORS"
NO_SUITABLE_OPERATORS = "NO_SUITABLE_OPERATORS"
DUPLICATE_EMAIL = "DUPLICATE_EMAIL"

INTERNAL_ERROR = "INTERNAL_ERROR"


class ChatError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class InputError(ChatError):
    def __init__(self, message: str, code: str = INVALID_PAYLOAD, details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class NotFoundError(ChatError):
    def __init__(self, message: str, code: str = SESSION_NOT_FOUND, details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class ConflictError(ChatError):
    def __init__(self, message: str, code: str, details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class StorageError(ChatError):
    def __init__(self, message: str):
        super().__init__(INTERNAL_ERROR, message)
