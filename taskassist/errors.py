from typing import Dict, List, Optional


class TaskAssistError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TaskAssistError):
    """Client-correctable input problem. ``errors`` lists one entry per field."""

    status_code = 400
    default_message = "Validation error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.errors = errors or []


class AuthenticationError(TaskAssistError):
    status_code = 401
    default_message = "Authentication required"


class NotFoundError(TaskAssistError):
    status_code = 404
    default_message = "Not found"


class ConflictError(TaskAssistError):
    status_code = 400
    default_message = "Conflict"


class InternalError(TaskAssistError):
    pass
