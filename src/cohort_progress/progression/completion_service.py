import logging
import typing

from botocore.exceptions import ClientError

from cohort_progress.cloudwatch.metrics import COINS_AWARDED, TOPIC_COMPLETED, MetricsManager
from cohort_progress.dynamodb.completion_records_table import CompletionRecordsTable
from cohort_progress.dynamodb.content_units_table import ContentUnitsTable
from cohort_progress.dynamodb.transactions import TransactionWriter, is_transaction_cancelled
from cohort_progress.dynamodb.week_progress_table import WeekProgressTable
from cohort_progress.dynamodb.weeks_table import WeeksTable
from cohort_progress.models.completion_models import (
    CompletionMethod,
    CompletionRecordModel,
    CompletionResultModel,
    NextItemModel,
    TimeTrackingStatusModel,
)
from cohort_progress.models.curriculum_models import ContentUnitModel, WeekModel
from cohort_progress.models.week_progress_models import WeekCompletionResponseModel
from cohort_progress.progression import aggregation, eligibility
from cohort_progress.progression.coin_service import CoinService
from cohort_progress.progression.errors import (
    AlreadyCompletedError,
    NotEligibleError,
    NotFoundError,
)
from cohort_progress.progression.unlock_evaluator import is_always_unlocked
from cohort_progress.progression.unlock_service import UnlockService
from cohort_progress.utils import aws_env_vars
from cohort_progress.utils.base_types import CohortId, ContentUnitId, UserId, WeekId
from cohort_progress.utils.ddb_utils import utc_now_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

_MAX_COMPLETION_ATTEMPTS = 3
_MAX_AGGREGATE_ATTEMPTS = 3


class CompletionService:
    """
    Orchestrates time tracking and completion of content units.

    Completing a unit writes, in one DynamoDB transaction, the completed record, the coin reward
    (ledger row and balance delta) and the recomputed week aggregate. The record condition makes the
    transaction fail for a second completion, so a unit pays its reward at most once per user.
    """

    def __init__(
        self,
        content_units_table: ContentUnitsTable,
        weeks_table: WeeksTable,
        records_table: CompletionRecordsTable,
        week_progress_table: WeekProgressTable,
        coin_service: CoinService,
        unlock_service: UnlockService,
        transaction_writer: typing.Optional[TransactionWriter] = None,
        metrics_manager: typing.Optional[MetricsManager] = None,
        default_min_time_required_seconds: typing.Optional[int] = None,
        max_tracked_seconds: typing.Optional[int] = None,
    ) -> None:
        self.content_units_table = content_units_table
        self.weeks_table = weeks_table
        self.records_table = records_table
        self.week_progress_table = week_progress_table
        self.coin_service = coin_service
        self.unlock_service = unlock_service
        self.transaction_writer = transaction_writer or TransactionWriter()
        self.metrics_manager = metrics_manager
        self.default_min_time_required_seconds = (
            default_min_time_required_seconds
            if default_min_time_required_seconds is not None
            else aws_env_vars.get_default_min_time_required_seconds()
        )
        self.max_tracked_seconds = (
            max_tracked_seconds if max_tracked_seconds is not None else aws_env_vars.get_max_tracked_seconds()
        )

    def _get_unit(self, unit_id: ContentUnitId) -> ContentUnitModel:
        unit = self.content_units_table.get_unit(unit_id)
        if unit is None:
            raise NotFoundError(f"Content unit {unit_id} not found")
        return unit

    def _get_week(self, week_id: WeekId) -> WeekModel:
        week = self.weeks_table.get_week(week_id)
        if week is None:
            raise NotFoundError(f"Week {week_id} not found")
        return week

    def _min_time(self, unit: ContentUnitModel) -> int:
        return eligibility.resolve_min_time_required(unit, self.default_min_time_required_seconds)

    def _put_metric(self, name: str, value: int) -> None:
        if self.metrics_manager:
            self.metrics_manager.put_metric(name, value)

    def get_status(self, user_id: UserId, unit_id: ContentUnitId) -> TimeTrackingStatusModel:
        unit = self._get_unit(unit_id)
        record = self.records_table.get_record(user_id, unit_id)
        return eligibility.build_time_tracking_status(record, self._min_time(unit))

    def _after_heartbeat(
        self,
        user_id: UserId,
        unit: ContentUnitModel,
        record: CompletionRecordModel,
        progress_percentage: typing.Optional[float],
        last_position: typing.Optional[int],
    ) -> TimeTrackingStatusModel:
        if progress_percentage is not None and not record.is_completed:
            position = last_position if last_position is not None else record.lastPositionSeconds
            if self.records_table.update_progress(user_id, unit.unitId, progress_percentage, position):
                record = record.model_copy(
                    update={"completionPercentage": progress_percentage, "lastPositionSeconds": position}
                )
        return eligibility.build_time_tracking_status(record, self._min_time(unit))

    def track_time(
        self,
        user_id: UserId,
        unit_id: ContentUnitId,
        time_spent: typing.Any,
        progress_percentage: typing.Optional[float] = None,
        last_position: typing.Optional[int] = None,
    ) -> TimeTrackingStatusModel:
        """
        Heartbeat carrying the client's cumulative seconds on the unit. A claim at or below the stored
        value leaves the record untouched and the stored value is returned for the client to adopt.

        :raises ValidationError: For a negative, non-integer or over-cap value.
        :raises NotFoundError: For an unknown unit.
        :raises WeekLockedError: If the unit's week is locked for the user.
        """
        claimed = eligibility.validate_time_value(time_spent, "time_spent", self.max_tracked_seconds)
        unit = self._get_unit(unit_id)
        self.unlock_service.ensure_unlocked(user_id, self._get_week(unit.weekId))

        record = self.records_table.record_heartbeat(user_id, unit, claimed)
        _LOGGER.debug(f"Heartbeat {user_id}/{unit_id}: claimed={claimed}, stored={record.timeSpentSeconds}")
        return self._after_heartbeat(user_id, unit, record, progress_percentage, last_position)

    def track_elapsed(
        self,
        user_id: UserId,
        unit_id: ContentUnitId,
        elapsed_seconds: typing.Any,
        progress_percentage: typing.Optional[float] = None,
        last_position: typing.Optional[int] = None,
    ) -> TimeTrackingStatusModel:
        """Heartbeat carrying the seconds elapsed since the previous one."""
        elapsed = eligibility.validate_time_value(elapsed_seconds, "elapsed_seconds", self.max_tracked_seconds)
        unit = self._get_unit(unit_id)
        self.unlock_service.ensure_unlocked(user_id, self._get_week(unit.weekId))

        if elapsed == 0:
            record = self.records_table.start_record(user_id, unit)
        else:
            record = self.records_table.add_elapsed_time(user_id, unit, elapsed)
        return self._after_heartbeat(user_id, unit, record, progress_percentage, last_position)

    def next_item(self, unit: ContentUnitModel) -> typing.Optional[NextItemModel]:
        """The unit following `unit` in its week by order, or None for the last one."""
        units = self.content_units_table.get_units_for_week(unit.weekId)
        unit_ids = [u.unitId for u in units]
        if unit.unitId not in unit_ids:
            return None
        position = unit_ids.index(unit.unitId)
        if position + 1 >= len(units):
            return None
        following = units[position + 1]
        return NextItemModel(type=following.unitType, id=following.unitId, title=following.title)

    def _already_completed_result(
        self,
        user_id: UserId,
        unit: ContentUnitModel,
        record: CompletionRecordModel,
    ) -> CompletionResultModel:
        progress = self.week_progress_table.get_progress(user_id, unit.weekId)
        percentage = (
            progress.completionPercentage
            if progress
            else aggregation.compute_week_completion(
                self.content_units_table.get_units_for_week(unit.weekId),
                self.records_table.get_records_for_week(user_id, unit.weekId),
            ).percentage
        )
        return CompletionResultModel(
            coins_awarded=record.coinsAwarded,
            new_balance=self.coin_service.get_balance(user_id).totalBalance,
            week_completion_percentage=percentage,
            already_completed=True,
            completed_at=record.completedAt,
            next_item=self.next_item(unit),
        )

    def _commit_completion(
        self,
        user_id: UserId,
        unit: ContentUnitModel,
        week: WeekModel,
        method: CompletionMethod,
        completion_data: typing.Optional[dict[str, typing.Any]],
    ) -> typing.Optional[aggregation.WeekCompletion]:
        """
        One attempt at the completion transaction.

        :return: The week aggregate that was written, or None if the attempt lost a race and should be retried.
        :raises AlreadyCompletedError: If the record turned out to be completed by a concurrent call.
        """
        now = utc_now_iso()
        week_completion = aggregation.compute_week_completion(
            self.content_units_table.get_units_for_week(week.weekId),
            self.records_table.get_records_for_week(user_id, week.weekId),
            assume_completed=unit.unitId,
        )
        progress = self.week_progress_table.get_progress(user_id, week.weekId)
        expected_version = progress.version if progress else 0

        transact_items = [
            self.records_table.build_complete_transact_item(
                user_id, unit, now, unit.coinReward, method, completion_data
            ),
            self.week_progress_table.build_aggregate_update(
                user_id,
                week.weekId,
                week.cohortId,
                week_completion.percentage,
                week_completion.completed_required,
                week_completion.total_required,
                now,
                expected_version,
            ),
        ]
        if unit.coinReward > 0:
            entry = self.coin_service.ledger_table.new_entry(
                user_id,
                unit.coinReward,
                "earned",
                unit.unitType,
                now,
                source_id=unit.unitId,
                description=f"Completed {unit.unitType} {unit.title or unit.unitId}",
            )
            transact_items.extend(self.coin_service.build_entry_items(entry))

        try:
            self.transaction_writer.write(transact_items)
            return week_completion
        except ClientError as e:
            if not is_transaction_cancelled(e):
                raise

        record = self.records_table.get_record(user_id, unit.unitId)
        if record and record.is_completed:
            raise AlreadyCompletedError(f"{unit.unitId} was completed concurrently for {user_id}")
        return None

    def complete(
        self,
        user_id: UserId,
        unit_id: ContentUnitId,
        completion_data: typing.Optional[dict[str, typing.Any]] = None,
        method: CompletionMethod = "manual",
    ) -> CompletionResultModel:
        """
        Marks a unit completed for the user, awarding its coins and refreshing the week aggregate.
        Completing an already completed unit succeeds without side effects.

        :raises NotFoundError: For an unknown unit.
        :raises WeekLockedError: If the unit's week is locked for the user.
        :raises NotEligibleError: If the minimum time on the unit has not been reached.
        """
        unit = self._get_unit(unit_id)
        week = self._get_week(unit.weekId)
        self.unlock_service.ensure_unlocked(user_id, week)

        record = self.records_table.get_record(user_id, unit_id)
        if record and record.is_completed:
            _LOGGER.info(f"Unit {unit_id} already completed by {user_id}, nothing to do")
            return self._already_completed_result(user_id, unit, record)

        min_time = self._min_time(unit)
        time_spent = record.timeSpentSeconds if record else 0
        if not eligibility.is_eligible_for_completion(time_spent, min_time, is_completed=False):
            remaining = eligibility.time_remaining_seconds(time_spent, min_time)
            raise NotEligibleError(
                f"Spend {remaining} more seconds on {unit_id} before completing it", time_remaining_seconds=remaining
            )

        week_completion: typing.Optional[aggregation.WeekCompletion] = None
        for attempt in range(1, _MAX_COMPLETION_ATTEMPTS + 1):
            try:
                week_completion = self._commit_completion(user_id, unit, week, method, completion_data)
            except AlreadyCompletedError:
                stored = self.records_table.get_record(user_id, unit_id)
                if stored is None:
                    raise
                return self._already_completed_result(user_id, unit, stored)
            if week_completion is not None:
                break
            _LOGGER.info(f"Completion of {unit_id} for {user_id} raced a concurrent write (attempt {attempt})")
        if week_completion is None:
            raise RuntimeError(f"Could not complete {unit_id} for {user_id} after {_MAX_COMPLETION_ATTEMPTS} attempts")

        _LOGGER.info(
            f"User {user_id} completed {unit.unitType} {unit_id}: +{unit.coinReward} coins, "
            f"week {week.weekId} at {week_completion.percentage}%"
        )
        self._put_metric(TOPIC_COMPLETED, 1)
        if unit.coinReward > 0:
            self._put_metric(COINS_AWARDED, unit.coinReward)

        self.unlock_service.evaluate_next_week(user_id, week)

        stored = self.records_table.get_record(user_id, unit_id)
        return CompletionResultModel(
            coins_awarded=unit.coinReward,
            new_balance=self.coin_service.get_balance(user_id).totalBalance,
            week_completion_percentage=week_completion.percentage,
            already_completed=False,
            completed_at=stored.completedAt if stored else None,
            next_item=self.next_item(unit),
        )

    def get_week_completion(self, user_id: UserId, week_id: WeekId) -> WeekCompletionResponseModel:
        """Computes the week aggregate from the ledger, with a per unit type breakdown."""
        week = self._get_week(week_id)
        week_completion = aggregation.compute_week_completion(
            self.content_units_table.get_units_for_week(week_id),
            self.records_table.get_records_for_week(user_id, week_id),
        )
        progress = self.week_progress_table.get_progress(user_id, week_id)
        return WeekCompletionResponseModel(
            week_id=week_id,
            completion_percentage=week_completion.percentage,
            completed_required_units=week_completion.completed_required,
            total_required_units=week_completion.total_required,
            is_unlocked=is_always_unlocked(week) or bool(progress and progress.is_unlocked),
            breakdown=week_completion.breakdown,
        )

    def recompute_week_progress(self, user_id: UserId, week_id: WeekId) -> aggregation.WeekCompletion:
        """Rebuilds the cached week aggregate from completion records, e.g. after an admin reset."""
        week = self._get_week(week_id)
        for attempt in range(1, _MAX_AGGREGATE_ATTEMPTS + 1):
            week_completion = aggregation.compute_week_completion(
                self.content_units_table.get_units_for_week(week_id),
                self.records_table.get_records_for_week(user_id, week_id),
            )
            progress = self.week_progress_table.get_progress(user_id, week_id)
            if self.week_progress_table.save_aggregate(
                user_id,
                week_id,
                week.cohortId,
                week_completion.percentage,
                week_completion.completed_required,
                week_completion.total_required,
                utc_now_iso(),
                progress.version if progress else 0,
            ):
                return week_completion
            _LOGGER.info(f"Aggregate of {week_id} for {user_id} changed during recompute (attempt {attempt})")
        raise RuntimeError(f"Could not recompute week {week_id} for {user_id}")

    def reset_completion(self, user_id: UserId, unit_id: ContentUnitId) -> bool:
        """
        Administrative reset of one unit. The week aggregate is recomputed; coins already awarded
        and unlocks already granted are kept.
        """
        unit = self._get_unit(unit_id)
        existed = self.records_table.reset_record(user_id, unit_id)
        if existed:
            self.recompute_week_progress(user_id, unit.weekId)
        return existed

    def get_cohort_completion(self, user_id: UserId, cohort_id: CohortId) -> float:
        records = self.records_table.get_records_for_user(user_id)
        week_completions = []
        for week in self.weeks_table.get_weeks_for_cohort(cohort_id):
            week_records = [r for r in records if r.weekId == week.weekId]
            week_completions.append(
                aggregation.compute_week_completion(
                    self.content_units_table.get_units_for_week(week.weekId), week_records
                )
            )
        return aggregation.compute_cohort_completion(week_completions)
