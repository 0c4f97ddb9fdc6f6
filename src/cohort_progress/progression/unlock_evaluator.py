import logging
import typing
from datetime import datetime

from cohort_progress.models.curriculum_models import RequiredCount, WeekModel
from cohort_progress.models.week_progress_models import (
    UnitTypeBreakdownModel,
    UnlockReasonModel,
    UnlockState,
    WeekProgressModel,
)
from cohort_progress.utils.ddb_utils import parse_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class UnlockDecision(typing.NamedTuple):
    state: UnlockState
    reasons: list[UnlockReasonModel]

    @property
    def is_unlocked(self) -> bool:
        return self.state == "UNLOCKED"


def is_always_unlocked(week: WeekModel) -> bool:
    """Week 0, free weeks and weeks that are not locked by default need no prerequisite."""
    return week.weekNumber == 0 or week.isFree or not week.lockPolicy.lockedByDefault


def locked(*reasons: UnlockReasonModel) -> UnlockDecision:
    return UnlockDecision(state="LOCKED", reasons=list(reasons))


def missing_completions(
    required: dict[str, RequiredCount],
    breakdown: dict[str, UnitTypeBreakdownModel],
) -> dict[str, int]:
    """Units still to complete per type, for the types whose requirement is not met yet."""
    missing: dict[str, int] = {}
    for unit_type, required_count in required.items():
        bucket = breakdown.get(unit_type, UnitTypeBreakdownModel())
        target = bucket.total if required_count == "all" else required_count
        if bucket.completed < target:
            missing[unit_type] = target - bucket.completed
    return missing


def decide_unlock(
    week: WeekModel,
    previous_week: typing.Optional[WeekModel],
    previous_progress: typing.Optional[WeekProgressModel],
    coin_balance: int,
    now: datetime,
    previous_breakdown: typing.Optional[dict[str, UnitTypeBreakdownModel]] = None,
) -> UnlockDecision:
    """
    Decides whether `week` may be unlocked for a user, given the user's cached progress on the
    previous week and their coin balance. Never raises; every failure is a LOCKED decision with
    the failed condition(s) listed.

    The previous week is the one numbered `week.weekNumber - 1` in the same cohort. If it does not
    exist the curriculum has a gap and the week stays locked.

    `previous_breakdown` holds the completed and total required units per type in the previous week;
    it is only consulted when the policy lists `requiredCompletions`, and a missing one counts as nothing done.
    """
    if is_always_unlocked(week):
        return UnlockDecision(state="UNLOCKED", reasons=[])

    if previous_week is None:
        _LOGGER.warning(f"Week {week.weekId} (number {week.weekNumber}) has no predecessor in cohort {week.cohortId}")
        return locked(UnlockReasonModel(code="previous_week_missing", value=week.weekNumber - 1))

    policy = week.lockPolicy
    reasons: list[UnlockReasonModel] = []

    previous_percentage = previous_progress.completionPercentage if previous_progress else 0.0
    if previous_percentage < policy.minCompletionPercent:
        short_by = round(policy.minCompletionPercent - previous_percentage, 2)
        reasons.append(UnlockReasonModel(code="completion_percent_short_by", value=short_by))

    if coin_balance < policy.minCoinsToUnlockNextWeek:
        reasons.append(UnlockReasonModel(code="coins_short_by", value=policy.minCoinsToUnlockNextWeek - coin_balance))

    if policy.requiredCompletions:
        missing = missing_completions(policy.requiredCompletions, previous_breakdown or {})
        if missing:
            reasons.append(UnlockReasonModel(code="required_completions_short", value=missing))

    available_from = parse_iso(policy.availableFrom)
    if available_from and now < available_from:
        reasons.append(UnlockReasonModel(code="not_available_until", value=policy.availableFrom))

    if reasons:
        return locked(*reasons)
    return UnlockDecision(state="UNLOCKED", reasons=[])


def is_deadline_passed(week: WeekModel, now: datetime) -> bool:
    deadline = parse_iso(week.lockPolicy.deadlineAt)
    return deadline is not None and now > deadline
