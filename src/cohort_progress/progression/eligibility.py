import logging
import typing

from cohort_progress.models.completion_models import (
    CompletionRecordModel,
    TimeTrackingStatusModel,
)
from cohort_progress.models.curriculum_models import ContentUnitModel
from cohort_progress.progression.errors import ValidationError

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


def resolve_min_time_required(unit: ContentUnitModel, default_min_time: int) -> int:
    """A unit without its own requirement falls back to the deployment default; 0 means no requirement."""
    if unit.minTimeRequiredSeconds is None:
        return default_min_time
    return unit.minTimeRequiredSeconds


def is_eligible_for_completion(time_spent_seconds: int, min_time_required_seconds: int, is_completed: bool) -> bool:
    return not is_completed and time_spent_seconds >= min_time_required_seconds


def time_remaining_seconds(time_spent_seconds: int, min_time_required_seconds: int) -> int:
    return max(0, min_time_required_seconds - time_spent_seconds)


def build_time_tracking_status(
    record: typing.Optional[CompletionRecordModel],
    min_time_required_seconds: int,
) -> TimeTrackingStatusModel:
    """
    Builds the heartbeat response from the server-side record. The client reconciles its local
    timer to `time_spent_seconds` on every response.
    """
    time_spent = record.timeSpentSeconds if record else 0
    is_completed = record.is_completed if record else False

    return TimeTrackingStatusModel(
        time_spent_seconds=time_spent,
        is_eligible_for_completion=is_eligible_for_completion(time_spent, min_time_required_seconds, is_completed),
        time_remaining_seconds=0 if is_completed else time_remaining_seconds(time_spent, min_time_required_seconds),
        min_time_required_seconds=min_time_required_seconds,
        is_completed=is_completed,
        progress_percentage=record.completionPercentage if record else 0.0,
        last_position_seconds=record.lastPositionSeconds if record else 0,
    )


def validate_time_value(value: typing.Any, field_name: str, max_seconds: int) -> int:
    """
    Validates a client supplied time value.

    :raises ValidationError: If the value is not an integer within [0, max_seconds].
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer number of seconds")
    if value < 0:
        _LOGGER.warning(f"Rejected negative {field_name}: {value}")
        raise ValidationError(f"{field_name} must not be negative")
    if value > max_seconds:
        _LOGGER.warning(f"Rejected {field_name} above cap: {value} > {max_seconds}")
        raise ValidationError(f"{field_name} must not exceed {max_seconds} seconds")
    return value
