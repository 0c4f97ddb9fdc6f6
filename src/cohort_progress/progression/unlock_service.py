import logging
import typing
from datetime import datetime, timezone

from cohort_progress.cloudwatch.metrics import UNLOCK_EVALUATION_FAILED, WEEK_UNLOCKED, MetricsManager
from cohort_progress.dynamodb.coin_balances_table import CoinBalancesTable
from cohort_progress.dynamodb.completion_records_table import CompletionRecordsTable
from cohort_progress.dynamodb.content_units_table import ContentUnitsTable
from cohort_progress.dynamodb.week_progress_table import WeekProgressTable
from cohort_progress.dynamodb.weeks_table import WeeksTable
from cohort_progress.models.curriculum_models import WeekModel
from cohort_progress.models.week_progress_models import (
    UnitTypeBreakdownModel,
    UnlockEvaluationResponseModel,
    UnlockReasonModel,
    UnlockRequirementModel,
    UnlockRequirementsSummaryModel,
    WeekProgressModel,
)
from cohort_progress.progression import aggregation
from cohort_progress.progression.errors import (
    InconsistentPrerequisiteError,
    NotFoundError,
    WeekLockedError,
)
from cohort_progress.progression.unlock_evaluator import (
    UnlockDecision,
    decide_unlock,
    is_always_unlocked,
    is_deadline_passed,
    locked,
    missing_completions,
)
from cohort_progress.utils.base_types import AdminId, IsoTimestamp, UserId, WeekId
from cohort_progress.utils.ddb_utils import parse_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

BulkUnlockOutcome = typing.Literal["unlocked", "already_unlocked", "failed"]


class UnlockNotifier:
    """Receives every LOCKED -> UNLOCKED transition exactly once."""

    def __init__(self, metrics_manager: typing.Optional[MetricsManager] = None) -> None:
        self.metrics_manager = metrics_manager

    def week_unlocked(self, user_id: UserId, week: WeekModel, unlocked_at: IsoTimestamp) -> None:
        _LOGGER.info(f"Week {week.weekNumber} ({week.weekId}) of cohort {week.cohortId} unlocked for {user_id}")
        if self.metrics_manager:
            self.metrics_manager.put_metric(WEEK_UNLOCKED, 1)


class UnlockService:
    """
    Loads the inputs of the unlock decision, persists the transition and notifies about it.
    `evaluate_unlock` only raises NotFoundError for an unknown week; any other failure is a LOCKED
    answer carrying the `evaluation_failed` reason.
    """

    def __init__(
        self,
        weeks_table: WeeksTable,
        week_progress_table: WeekProgressTable,
        balances_table: CoinBalancesTable,
        content_units_table: ContentUnitsTable,
        records_table: CompletionRecordsTable,
        notifier: typing.Optional[UnlockNotifier] = None,
        metrics_manager: typing.Optional[MetricsManager] = None,
    ) -> None:
        self.weeks_table = weeks_table
        self.week_progress_table = week_progress_table
        self.balances_table = balances_table
        self.content_units_table = content_units_table
        self.records_table = records_table
        self.notifier = notifier or UnlockNotifier(metrics_manager)
        self.metrics_manager = metrics_manager

    def _get_week_or_raise(self, week_id: WeekId) -> WeekModel:
        week = self.weeks_table.get_week(week_id)
        if week is None:
            raise NotFoundError(f"Week {week_id} not found")
        return week

    def _load_previous_week(self, week: WeekModel) -> WeekModel:
        previous_week = self.weeks_table.get_week_by_number(week.cohortId, week.weekNumber - 1)
        if previous_week is None:
            raise InconsistentPrerequisiteError(
                f"Cohort {week.cohortId} has no week {week.weekNumber - 1} before {week.weekId}"
            )
        return previous_week

    def _decide(self, user_id: UserId, week: WeekModel, now: datetime) -> UnlockDecision:
        if is_always_unlocked(week):
            return UnlockDecision(state="UNLOCKED", reasons=[])
        try:
            previous_week = self._load_previous_week(week)
        except InconsistentPrerequisiteError as e:
            _LOGGER.warning(f"Keeping week {week.weekId} locked for {user_id}: {e.message}")
            return locked(UnlockReasonModel(code=e.reason_code, value=week.weekNumber - 1))

        previous_progress, previous_breakdown = self._previous_week_standing(user_id, week, previous_week, now)
        coin_balance = self.balances_table.get_balance(user_id).totalBalance
        return decide_unlock(week, previous_week, previous_progress, coin_balance, now, previous_breakdown)

    def _previous_week_standing(
        self,
        user_id: UserId,
        week: WeekModel,
        previous_week: WeekModel,
        now: datetime,
        persist: bool = True,
    ) -> tuple[WeekProgressModel, typing.Optional[dict[str, UnitTypeBreakdownModel]]]:
        """
        The user's aggregate on the previous week, plus its per-type breakdown when the policy needs one.

        The aggregate is only cached once the user completed something in that week (a row holding just
        an unlock stamp has version 0), so a missing aggregate is computed from the week's units and the
        user's records, where a week without required units is 100%. With `persist` it is written so
        later reads find it.
        """
        progress = self.week_progress_table.get_progress(user_id, previous_week.weekId)
        has_aggregate = progress is not None and progress.version > 0
        if has_aggregate and not week.lockPolicy.requiredCompletions:
            return progress, None

        week_completion = aggregation.compute_week_completion(
            self.content_units_table.get_units_for_week(previous_week.weekId),
            self.records_table.get_records_for_week(user_id, previous_week.weekId),
        )
        if has_aggregate:
            return progress, week_completion.breakdown

        computed = WeekProgressModel(
            userId=user_id,
            weekId=previous_week.weekId,
            cohortId=previous_week.cohortId,
            completionPercentage=week_completion.percentage,
            completedRequiredUnits=week_completion.completed_required,
            totalRequiredUnits=week_completion.total_required,
        )
        if persist and not self.week_progress_table.save_aggregate(
            user_id,
            previous_week.weekId,
            previous_week.cohortId,
            week_completion.percentage,
            week_completion.completed_required,
            week_completion.total_required,
            IsoTimestamp(now.isoformat()),
            progress.version if progress else 0,
        ):
            # A completion wrote the aggregate first; it is the newer one.
            computed = self.week_progress_table.get_progress(user_id, previous_week.weekId) or computed
        return computed, week_completion.breakdown

    def _response(
        self,
        week: WeekModel,
        now: datetime,
        unlocked_at: typing.Optional[IsoTimestamp] = None,
        reasons: typing.Optional[list[UnlockReasonModel]] = None,
    ) -> UnlockEvaluationResponseModel:
        return UnlockEvaluationResponseModel(
            week_id=week.weekId,
            is_unlocked=unlocked_at is not None,
            state="UNLOCKED" if unlocked_at is not None else "LOCKED",
            unlocked_at=unlocked_at,
            reasons_if_locked=reasons or [],
            deadline_at=week.lockPolicy.deadlineAt,
            deadline_passed=is_deadline_passed(week, now),
        )

    def evaluate_unlock(
        self,
        user_id: UserId,
        week_id: WeekId,
        now: typing.Optional[datetime] = None,
    ) -> UnlockEvaluationResponseModel:
        """
        Decides and, when the thresholds hold, persists the unlock of `week_id` for `user_id`.
        An already unlocked week is returned as is without re-checking, so unlocks never revert.

        :raises NotFoundError: If the week does not exist.
        """
        now = now or datetime.now(timezone.utc)
        week = self._get_week_or_raise(week_id)

        try:
            progress = self.week_progress_table.get_progress(user_id, week_id)
            if progress and progress.is_unlocked:
                return self._response(week, now, unlocked_at=progress.unlockedAt)

            decision = self._decide(user_id, week, now)
            if not decision.is_unlocked:
                _LOGGER.info(f"Week {week_id} stays locked for {user_id}: {[r.code for r in decision.reasons]}")
                return self._response(week, now, reasons=decision.reasons)

            unlocked_at = IsoTimestamp(now.isoformat())
            if self.week_progress_table.mark_unlocked(user_id, week_id, week.cohortId, unlocked_at):
                self.notifier.week_unlocked(user_id, week, unlocked_at)
            else:
                # A concurrent evaluation won the transition; report its stamp.
                stored = self.week_progress_table.get_progress(user_id, week_id)
                if stored and stored.unlockedAt:
                    unlocked_at = stored.unlockedAt
            return self._response(week, now, unlocked_at=unlocked_at)
        except Exception as e:
            _LOGGER.error(f"Unlock evaluation failed for {user_id}, week {week_id}: {e}", exc_info=True)
            if self.metrics_manager:
                self.metrics_manager.put_metric(UNLOCK_EVALUATION_FAILED, 1)
            return self._response(week, now, reasons=[UnlockReasonModel(code="evaluation_failed")])

    def evaluate_next_week(
        self,
        user_id: UserId,
        week: WeekModel,
        now: typing.Optional[datetime] = None,
    ) -> typing.Optional[UnlockEvaluationResponseModel]:
        """Re-evaluates the week after `week` once progress in `week` changed. None if it is the last week."""
        try:
            next_week = self.weeks_table.get_week_by_number(week.cohortId, week.weekNumber + 1)
            if next_week is None:
                return None
            return self.evaluate_unlock(user_id, next_week.weekId, now)
        except Exception as e:
            _LOGGER.error(f"Could not evaluate the week after {week.weekId} for {user_id}: {e}", exc_info=True)
            return None

    def ensure_unlocked(self, user_id: UserId, week: WeekModel, now: typing.Optional[datetime] = None) -> None:
        """
        :raises WeekLockedError: If the week is (still) locked for the user after evaluation.
        """
        if is_always_unlocked(week):
            return
        result = self.evaluate_unlock(user_id, week.weekId, now)
        if not result.is_unlocked:
            raise WeekLockedError(f"Week {week.weekId} is locked for user {user_id}")

    def unlock_summary(
        self,
        user_id: UserId,
        week_id: WeekId,
        now: typing.Optional[datetime] = None,
    ) -> UnlockRequirementsSummaryModel:
        """Lists the requirements of a week next to the user's current standing against each."""
        now = now or datetime.now(timezone.utc)
        week = self._get_week_or_raise(week_id)

        progress = self.week_progress_table.get_progress(user_id, week_id)
        if progress and progress.is_unlocked:
            return UnlockRequirementsSummaryModel(
                week_id=week_id, can_unlock=True, requirements=[], message="This week is already unlocked."
            )
        if is_always_unlocked(week):
            return UnlockRequirementsSummaryModel(
                week_id=week_id, can_unlock=True, requirements=[], message="This week is always available."
            )

        policy = week.lockPolicy
        requirements: list[UnlockRequirementModel] = []
        previous_week = self.weeks_table.get_week_by_number(week.cohortId, week.weekNumber - 1)
        if previous_week is None:
            requirements.append(
                UnlockRequirementModel(
                    type="previous_week",
                    description=f"Week {week.weekNumber - 1} must exist in the curriculum",
                    met=False,
                )
            )
        else:
            previous_progress, previous_breakdown = self._previous_week_standing(
                user_id, week, previous_week, now, persist=False
            )
            current = previous_progress.completionPercentage
            requirements.append(
                UnlockRequirementModel(
                    type="completion_percent",
                    description=f"Complete at least {policy.minCompletionPercent:g}% of week {previous_week.weekNumber}",
                    met=current >= policy.minCompletionPercent,
                    current=current,
                    required=policy.minCompletionPercent,
                )
            )
            missing = missing_completions(policy.requiredCompletions, previous_breakdown or {})
            for unit_type, required_count in policy.requiredCompletions.items():
                bucket = (previous_breakdown or {}).get(unit_type, UnitTypeBreakdownModel())
                requirements.append(
                    UnlockRequirementModel(
                        type="required_completions",
                        description=f"Complete {required_count} {unit_type} unit(s) of week {previous_week.weekNumber}",
                        met=unit_type not in missing,
                        current=bucket.completed,
                        required=bucket.total if required_count == "all" else required_count,
                    )
                )

        if policy.minCoinsToUnlockNextWeek > 0:
            balance = self.balances_table.get_balance(user_id).totalBalance
            requirements.append(
                UnlockRequirementModel(
                    type="coins",
                    description=f"Hold at least {policy.minCoinsToUnlockNextWeek} coins",
                    met=balance >= policy.minCoinsToUnlockNextWeek,
                    current=balance,
                    required=policy.minCoinsToUnlockNextWeek,
                )
            )

        available_from = parse_iso(policy.availableFrom)
        if available_from:
            requirements.append(
                UnlockRequirementModel(
                    type="available_from",
                    description=f"Available from {policy.availableFrom}",
                    met=now >= available_from,
                    required=policy.availableFrom,
                )
            )

        unmet = [r for r in requirements if not r.met]
        message = (
            "All requirements are met."
            if not unmet
            else f"{len(unmet)} of {len(requirements)} requirements not yet met."
        )
        return UnlockRequirementsSummaryModel(
            week_id=week_id, can_unlock=not unmet, requirements=requirements, message=message
        )

    def bulk_unlock(
        self,
        week_id: WeekId,
        user_ids: typing.Iterable[UserId],
        unlocked_by: typing.Optional[AdminId] = None,
        now: typing.Optional[datetime] = None,
    ) -> dict[UserId, BulkUnlockOutcome]:
        """
        Administrative override: stamps the week UNLOCKED for each user without checking thresholds.
        Failures are reported per user.

        :raises NotFoundError: If the week does not exist.
        """
        now = now or datetime.now(timezone.utc)
        week = self._get_week_or_raise(week_id)
        unlocked_at = IsoTimestamp(now.isoformat())

        results: dict[UserId, BulkUnlockOutcome] = {}
        for user_id in user_ids:
            try:
                if self.week_progress_table.mark_unlocked(user_id, week_id, week.cohortId, unlocked_at):
                    self.notifier.week_unlocked(user_id, week, unlocked_at)
                    results[user_id] = "unlocked"
                else:
                    results[user_id] = "already_unlocked"
            except Exception as e:
                _LOGGER.error(f"Bulk unlock of {week_id} failed for {user_id}: {e}", exc_info=True)
                results[user_id] = "failed"

        _LOGGER.info(f"Bulk unlock of week {week_id} by {unlocked_by or 'system'}: {results}")
        return results
