class TaskError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TaskError):
    status_code = 400


class NotFound(TaskError):
    status_code = 404


class Forbidden(TaskError):
    status_code = 403


class InvalidTransition(TaskError):
    status_code = 400


class Conflict(TaskError):
    """The task changed between read and write. Re-fetch and try again."""

    status_code = 409
    retryable = True


class SchedulingFailure(TaskError):
    """The reminder queue could not be reached. Logged, never surfaced."""

    status_code = 503
