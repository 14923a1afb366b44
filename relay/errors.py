"""
Domain errors for the relay API.

Every error carries the HTTP status it maps to; the exception handler in
main.py renders them as {"error": message}.
"""


class RelayError(Exception):
    """Base class for request-level failures."""

    status_code = 400
    default_message = "Bad request"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCode(RelayError):
    status_code = 403
    default_message = "Invalid code"


class Forbidden(RelayError):
    status_code = 403
    default_message = "Admin access required"


class NotFound(RelayError):
    status_code = 404
    default_message = "Member not found"


class DuplicateName(RelayError):
    status_code = 400
    default_message = "This name is already taken"


class EmptyName(RelayError):
    status_code = 400
    default_message = "Name is required"


class EmptyMessage(RelayError):
    status_code = 400
    default_message = "Message is required"
