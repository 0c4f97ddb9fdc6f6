import logging
import typing
from decimal import Decimal

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from pydantic import ValidationError

from cohort_progress.dynamodb.transactions import TransactItem, is_conditional_check_failure
from cohort_progress.models.week_progress_models import WeekProgressModel
from cohort_progress.utils.base_types import CohortId, IsoTimestamp, UserId, WeekId
from cohort_progress.utils.ddb_utils import from_ddb_value

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class WeekProgressTable:
    """
    Data Abstraction Layer for the cached per-(user, week) aggregate and unlock state.

    Table Schema:
      - PK: userId
      - SK: weekId

    Aggregate writes are guarded by an optimistic `version` counter. The unlock stamp is written
    with `attribute_not_exists(unlockedAt)` and no write ever sets the state back to LOCKED.
    """

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    @property
    def table_name(self) -> str:
        return self.table.name

    def get_progress(self, user_id: UserId, week_id: WeekId) -> typing.Optional[WeekProgressModel]:
        try:
            response = self.table.get_item(Key={"userId": user_id, "weekId": week_id}, ConsistentRead=True)
            item = response.get("Item")
            if item:
                return WeekProgressModel.model_validate(from_ddb_value(item))
            _LOGGER.debug(f"No week progress for user_id: {user_id}, week_id: {week_id}")
            return None
        except ClientError as e:
            _LOGGER.error(f"Failed for user_id {user_id}, week_id {week_id}: {e.response['Error']['Message']}")
            raise
        except ValidationError as ve:
            _LOGGER.error(f"Failed to validate week progress {user_id}/{week_id}: {ve}", exc_info=True)
            return None

    def get_progress_for_user(self, user_id: UserId) -> list[WeekProgressModel]:
        progress_items: list[WeekProgressModel] = []
        query_kwargs: dict[str, typing.Any] = {"KeyConditionExpression": Key("userId").eq(user_id)}
        try:
            while True:
                response = self.table.query(**query_kwargs)
                for item in response.get("Items", []):
                    try:
                        progress_items.append(WeekProgressModel.model_validate(from_ddb_value(item)))
                    except ValidationError as ve:
                        _LOGGER.warning(f"Skipping invalid week progress for user {user_id}: {item}. Error: {ve}")
                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            _LOGGER.error(f"Failed to query week progress for user {user_id}: {e.response['Error']['Message']}")
            raise
        return progress_items

    def _aggregate_update_kwargs(
        self,
        user_id: UserId,
        week_id: WeekId,
        cohort_id: CohortId,
        percentage: float,
        completed_required: int,
        total_required: int,
        now: IsoTimestamp,
        expected_version: int,
    ) -> dict[str, typing.Any]:
        set_parts = [
            "cohortId = :cohortId",
            "completionPercentage = :pct",
            "completedRequiredUnits = :completed",
            "totalRequiredUnits = :total",
            "unlockState = if_not_exists(unlockState, :locked)",
            "#version = :nextVersion",
        ]
        values: dict[str, typing.Any] = {
            ":cohortId": cohort_id,
            ":pct": Decimal(str(percentage)),
            ":completed": completed_required,
            ":total": total_required,
            ":locked": "LOCKED",
            ":nextVersion": expected_version + 1,
            ":expectedVersion": expected_version,
        }
        if percentage >= 100:
            set_parts.append("completedAt = if_not_exists(completedAt, :now)")
            values[":now"] = now

        return {
            "Key": {"userId": user_id, "weekId": week_id},
            "UpdateExpression": "SET " + ", ".join(set_parts),
            "ConditionExpression": "attribute_not_exists(#version) OR #version = :expectedVersion",
            "ExpressionAttributeNames": {"#version": "version"},
            "ExpressionAttributeValues": values,
        }

    def build_aggregate_update(
        self,
        user_id: UserId,
        week_id: WeekId,
        cohort_id: CohortId,
        percentage: float,
        completed_required: int,
        total_required: int,
        now: IsoTimestamp,
        expected_version: int,
    ) -> TransactItem:
        kwargs = self._aggregate_update_kwargs(
            user_id, week_id, cohort_id, percentage, completed_required, total_required, now, expected_version
        )
        return {"Update": {"TableName": self.table_name, **kwargs}}

    def save_aggregate(
        self,
        user_id: UserId,
        week_id: WeekId,
        cohort_id: CohortId,
        percentage: float,
        completed_required: int,
        total_required: int,
        now: IsoTimestamp,
        expected_version: int,
    ) -> bool:
        """
        Writes a recomputed aggregate outside of a completion transaction.

        :return: True if written, False if another writer bumped the version first.
        """
        kwargs = self._aggregate_update_kwargs(
            user_id, week_id, cohort_id, percentage, completed_required, total_required, now, expected_version
        )
        try:
            self.table.update_item(**kwargs)
            _LOGGER.info(f"Saved week aggregate {user_id}/{week_id}: {percentage}%")
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                _LOGGER.info(f"Week aggregate {user_id}/{week_id} changed concurrently (expected v{expected_version})")
                return False
            _LOGGER.error(f"Failed to save aggregate {user_id}/{week_id}: {e.response['Error']['Message']}")
            raise

    def mark_unlocked(
        self,
        user_id: UserId,
        week_id: WeekId,
        cohort_id: CohortId,
        unlocked_at: IsoTimestamp,
    ) -> bool:
        """
        Stamps the LOCKED -> UNLOCKED transition, creating the row if needed.

        :return: True if this call performed the transition, False if the week was already unlocked.
        """
        try:
            self.table.update_item(
                Key={"userId": user_id, "weekId": week_id},
                UpdateExpression=(
                    "SET unlockState = :unlocked, unlockedAt = :now, "
                    "cohortId = if_not_exists(cohortId, :cohortId), "
                    "completionPercentage = if_not_exists(completionPercentage, :zero), "
                    "completedRequiredUnits = if_not_exists(completedRequiredUnits, :zero), "
                    "totalRequiredUnits = if_not_exists(totalRequiredUnits, :zero)"
                ),
                ConditionExpression="attribute_not_exists(unlockedAt)",
                ExpressionAttributeValues={
                    ":unlocked": "UNLOCKED",
                    ":now": unlocked_at,
                    ":cohortId": cohort_id,
                    ":zero": 0,
                },
            )
            _LOGGER.info(f"Week {week_id} unlocked for user {user_id} at {unlocked_at}")
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                _LOGGER.debug(f"Week {week_id} was already unlocked for user {user_id}")
                return False
            _LOGGER.error(f"Failed to unlock week {week_id} for {user_id}: {e.response['Error']['Message']}")
            raise
