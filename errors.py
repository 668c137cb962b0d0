"""Error kinds raised by the scheduling and grading core."""


class SchoolFlowError(Exception):
    """Base error; status_code is what the HTTP layer answers with."""
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class InvalidTimeFormat(SchoolFlowError):
    """A time string could not be parsed strictly, or the range is empty."""

    def __init__(self, value, field=None, reason=''):
        self.value = value
        self.field = field
        label = field or 'time'
        message = f"Invalid {label}: {value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ScoreValidationError(SchoolFlowError):
    def __init__(self, field, message):
        self.field = field
        super().__init__(message)


class ConflictError(SchoolFlowError):
    """Teacher double-booking; carries the conflicting class and day."""
    status_code = 409

    def __init__(self, message, class_name='', day=''):
        self.class_name = class_name
        self.day = day
        super().__init__(message)


class DuplicateTimetableError(SchoolFlowError):
    status_code = 409


class NotFoundError(SchoolFlowError):
    status_code = 404


class Unauthorized(SchoolFlowError):
    status_code = 403
