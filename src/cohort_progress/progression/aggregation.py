import typing

from cohort_progress.models.completion_models import CompletionRecordModel
from cohort_progress.models.curriculum_models import ContentUnitModel
from cohort_progress.models.week_progress_models import UnitTypeBreakdownModel
from cohort_progress.utils.base_types import ContentUnitId


class WeekCompletion(typing.NamedTuple):
    percentage: float
    completed_required: int
    total_required: int
    breakdown: dict[str, UnitTypeBreakdownModel]


def percentage_of(completed: int, total: int) -> float:
    # A week without required content has nothing left to do.
    if total <= 0:
        return 100.0
    return round(min(completed, total) / total * 100, 2)


def compute_week_completion(
    units: typing.Iterable[ContentUnitModel],
    records: typing.Iterable[CompletionRecordModel],
    *,
    assume_completed: typing.Optional[ContentUnitId] = None,
) -> WeekCompletion:
    """
    Completed required units over required units in the week, as 0-100.

    :param units: All content units belonging to the week. Optional units are ignored.
    :param records: The user's completion records for the week (any status).
    :param assume_completed: A unit to count as completed even though its record is not yet
        written, used to compute the aggregate inside the completing transaction.
    """
    completed_ids = {record.unitId for record in records if record.is_completed}
    if assume_completed:
        completed_ids.add(assume_completed)

    breakdown: dict[str, UnitTypeBreakdownModel] = {}
    completed_required = 0
    total_required = 0
    for unit in units:
        if unit.isOptional:
            continue
        bucket = breakdown.setdefault(unit.unitType, UnitTypeBreakdownModel())
        bucket.total += 1
        total_required += 1
        if unit.unitId in completed_ids:
            bucket.completed += 1
            completed_required += 1

    return WeekCompletion(
        percentage=percentage_of(completed_required, total_required),
        completed_required=completed_required,
        total_required=total_required,
        breakdown=breakdown,
    )


def compute_cohort_completion(week_completions: typing.Iterable[WeekCompletion]) -> float:
    """Cohort completion weights every required unit equally, regardless of which week holds it."""
    completed = 0
    total = 0
    for week_completion in week_completions:
        completed += week_completion.completed_required
        total += week_completion.total_required
    return percentage_of(completed, total)
