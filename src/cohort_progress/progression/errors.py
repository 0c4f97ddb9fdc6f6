import typing


class ProgressionError(Exception):
    """Base class for rule-engine failures. Every subclass carries a machine-readable reason code."""

    reason_code = "progression_error"

    def __init__(self, message: str, reason_code: typing.Optional[str] = None) -> None:
        self.message = message
        if reason_code:
            self.reason_code = reason_code
        super().__init__(message)


class ValidationError(ProgressionError):
    reason_code = "invalid_time_value"


class NotFoundError(ProgressionError):
    reason_code = "not_found"


class AlreadyCompletedError(ProgressionError):
    """Raised internally when a completion races an earlier one. Callers treat it as success."""

    reason_code = "already_completed"


class InconsistentPrerequisiteError(ProgressionError):
    reason_code = "previous_week_missing"


class NotEligibleError(ProgressionError):
    reason_code = "not_eligible"

    def __init__(self, message: str, time_remaining_seconds: int) -> None:
        self.time_remaining_seconds = time_remaining_seconds
        super().__init__(message)


class WeekLockedError(ProgressionError):
    reason_code = "week_locked"
