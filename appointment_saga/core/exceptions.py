"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    code = "APPOINTMENT_ERROR"
    permanent = False

    def __init__(self, message: str, status_code: int = 500, code: str | None = None):
        """Initialize exception with message, status code and error code."""
        self.message = message
        self.status_code = status_code
        if code is not None:
            self.code = code
        super().__init__(self.message)


class ValidationException(AppException):
    """Bad input shape or failed business rule."""

    code = "VALIDATION_ERROR"
    permanent = True

    def __init__(self, message: str = "Validation error"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Duplicate schedule booking detected."""

    code = "CONFLICT"

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class NotFoundException(AppException):
    """Referenced appointment does not exist."""

    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class OperationException(AppException):
    """Store or transport failure."""

    code = "OPERATION_ERROR"

    def __init__(self, message: str = "Operation failed", code: str | None = None):
        """Initialize with 500 status code."""
        super().__init__(message, status_code=500, code=code)


class CountryMismatchException(ValidationException):
    """Event routed to a processor of another country. Never retried."""

    code = "COUNTRY_MISMATCH"


class MessageFormatException(ValidationException):
    """Queue message body could not be parsed into an event."""

    code = "MESSAGE_PARSE_ERROR"


def is_permanent(exc: BaseException) -> bool:
    """Return True when redelivering the message cannot change the outcome."""
    return isinstance(exc, AppException) and exc.permanent
