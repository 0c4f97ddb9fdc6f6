import logging
import typing
from decimal import Decimal

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError
from pydantic import ValidationError

from cohort_progress.dynamodb.transactions import TransactItem, is_conditional_check_failure
from cohort_progress.models.completion_models import CompletionMethod, CompletionRecordModel
from cohort_progress.models.curriculum_models import ContentUnitModel
from cohort_progress.utils.base_types import ContentUnitId, IsoTimestamp, UserId, WeekId
from cohort_progress.utils.ddb_utils import from_ddb_value, to_ddb_value, utc_now_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

# Attributes a record receives on creation, applied with if_not_exists so an update can create the row.
_CREATE_DEFAULTS_EXPRESSION = (
    "unitType = if_not_exists(unitType, :unitType), "
    "weekId = if_not_exists(weekId, :weekId), "
    "#status = if_not_exists(#status, :inProgress), "
    "startedAt = if_not_exists(startedAt, :now), "
    "completionPercentage = if_not_exists(completionPercentage, :zero), "
    "lastPositionSeconds = if_not_exists(lastPositionSeconds, :zero), "
    "coinsAwarded = if_not_exists(coinsAwarded, :zero)"
)


class CompletionRecordsTable:
    """
    Data Abstraction Layer for per-(user, content unit) completion state.

    Table Schema:
      - PK: userId
      - SK: unitId

    The key pair is the uniqueness constraint: a user has at most one record per unit. All writes
    are single conditional updates so duplicate or out-of-order heartbeats can never lower
    `timeSpentSeconds` or reopen a completed record.
    """

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    @property
    def table_name(self) -> str:
        return self.table.name

    def _creation_values(self, unit: ContentUnitModel, now: IsoTimestamp) -> dict[str, typing.Any]:
        return {
            ":unitType": unit.unitType,
            ":weekId": unit.weekId,
            ":inProgress": "IN_PROGRESS",
            ":now": now,
            ":zero": 0,
        }

    def _parse(self, item: dict[str, typing.Any]) -> CompletionRecordModel:
        return CompletionRecordModel.model_validate(from_ddb_value(item))

    def get_record(self, user_id: UserId, unit_id: ContentUnitId) -> typing.Optional[CompletionRecordModel]:
        """
        Strongly consistent read of a user's record for a unit.

        :return: CompletionRecordModel instance if found, else None.
        """
        try:
            response = self.table.get_item(Key={"userId": user_id, "unitId": unit_id}, ConsistentRead=True)
            item = response.get("Item")
            if item:
                return self._parse(item)
            return None
        except ClientError as e:
            _LOGGER.error(f"Failed for user_id {user_id}, unit_id {unit_id}: {e.response['Error']['Message']}")
            raise
        except ValidationError as ve:
            _LOGGER.error(f"Failed to validate record for user_id {user_id}, unit_id {unit_id}: {ve}", exc_info=True)
            return None

    def _query_records(self, user_id: UserId, **extra_kwargs: typing.Any) -> list[CompletionRecordModel]:
        records: list[CompletionRecordModel] = []
        query_kwargs: dict[str, typing.Any] = {"KeyConditionExpression": Key("userId").eq(user_id), **extra_kwargs}
        try:
            while True:
                response = self.table.query(**query_kwargs)
                for item in response.get("Items", []):
                    try:
                        records.append(self._parse(item))
                    except ValidationError as ve:
                        _LOGGER.warning(f"Skipping invalid completion record for user {user_id}: {item}. Error: {ve}")
                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            _LOGGER.error(f"Failed to query completion records for user {user_id}: {e.response['Error']['Message']}")
            raise
        return records

    def get_records_for_user(self, user_id: UserId) -> list[CompletionRecordModel]:
        return self._query_records(user_id)

    def get_records_for_week(self, user_id: UserId, week_id: WeekId) -> list[CompletionRecordModel]:
        return self._query_records(user_id, FilterExpression=Attr("weekId").eq(week_id), ConsistentRead=True)

    def start_record(self, user_id: UserId, unit: ContentUnitModel) -> CompletionRecordModel:
        """Creates the in-progress record on first interaction; an existing record is returned untouched."""
        now = utc_now_iso()
        try:
            self.table.put_item(
                Item={
                    "userId": user_id,
                    "unitId": unit.unitId,
                    "unitType": unit.unitType,
                    "weekId": unit.weekId,
                    "status": "IN_PROGRESS",
                    "startedAt": now,
                    "timeSpentSeconds": 0,
                    "completionPercentage": 0,
                    "lastPositionSeconds": 0,
                    "coinsAwarded": 0,
                },
                ConditionExpression="attribute_not_exists(unitId)",
            )
            _LOGGER.info(f"Started record for user {user_id}, unit {unit.unitId}")
        except ClientError as e:
            if not is_conditional_check_failure(e):
                _LOGGER.error(f"Failed to start record for {user_id}/{unit.unitId}: {e.response['Error']['Message']}")
                raise
            _LOGGER.debug(f"Record for user {user_id}, unit {unit.unitId} already exists.")

        record = self.get_record(user_id, unit.unitId)
        if record is None:
            raise RuntimeError(f"Completion record for {user_id}/{unit.unitId} missing right after creation")
        return record

    def _conditional_time_update(
        self,
        user_id: UserId,
        unit: ContentUnitModel,
        update_expression: str,
        condition_expression: str,
        values: dict[str, typing.Any],
    ) -> CompletionRecordModel:
        now = utc_now_iso()
        try:
            response = self.table.update_item(
                Key={"userId": user_id, "unitId": unit.unitId},
                UpdateExpression=update_expression,
                ConditionExpression=condition_expression,
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={**self._creation_values(unit, now), **values},
                ReturnValues="ALL_NEW",
            )
            return self._parse(response["Attributes"])
        except ClientError as e:
            if not is_conditional_check_failure(e):
                _LOGGER.error(f"Failed to track time for {user_id}/{unit.unitId}: {e.response['Error']['Message']}")
                raise

        # Stale, duplicate, or post-completion heartbeat: nothing changed, report the stored state.
        _LOGGER.debug(f"Heartbeat for user {user_id}, unit {unit.unitId} was a no-op.")
        record = self.get_record(user_id, unit.unitId)
        if record is None:
            raise RuntimeError(f"Completion record for {user_id}/{unit.unitId} missing after a failed condition")
        return record

    def record_heartbeat(self, user_id: UserId, unit: ContentUnitModel, claimed_total_seconds: int) -> CompletionRecordModel:
        """
        Raises the stored time to the client's cumulative claim if the claim is larger and the record
        is not completed. The read-modify-write happens inside DynamoDB, so concurrent heartbeats from
        duplicate tabs cannot lose updates or move the value backwards.
        """
        return self._conditional_time_update(
            user_id,
            unit,
            update_expression=f"SET timeSpentSeconds = :claimed, {_CREATE_DEFAULTS_EXPRESSION}",
            condition_expression=(
                "attribute_not_exists(completedAt) "
                "AND (attribute_not_exists(timeSpentSeconds) OR timeSpentSeconds < :claimed)"
            ),
            values={":claimed": claimed_total_seconds},
        )

    def add_elapsed_time(self, user_id: UserId, unit: ContentUnitModel, elapsed_seconds: int) -> CompletionRecordModel:
        """Atomically adds the seconds elapsed since the previous heartbeat."""
        return self._conditional_time_update(
            user_id,
            unit,
            update_expression=f"SET {_CREATE_DEFAULTS_EXPRESSION} ADD timeSpentSeconds :elapsed",
            condition_expression="attribute_not_exists(completedAt)",
            values={":elapsed": elapsed_seconds},
        )

    def update_progress(
        self,
        user_id: UserId,
        unit_id: ContentUnitId,
        percentage: float,
        last_position_seconds: int = 0,
    ) -> bool:
        """
        Records media progress for an in-progress record. Completed records are left untouched.

        :return: True if the record was updated, False otherwise.
        """
        try:
            self.table.update_item(
                Key={"userId": user_id, "unitId": unit_id},
                UpdateExpression="SET completionPercentage = :pct, lastPositionSeconds = :pos",
                ConditionExpression="attribute_exists(unitId) AND attribute_not_exists(completedAt)",
                ExpressionAttributeValues={
                    ":pct": to_ddb_value(float(min(100.0, max(0.0, percentage)))),
                    ":pos": last_position_seconds,
                },
            )
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                _LOGGER.debug(f"Skipped progress update for completed or missing record {user_id}/{unit_id}")
                return False
            _LOGGER.error(f"Failed to update progress for {user_id}/{unit_id}: {e.response['Error']['Message']}")
            raise

    def build_complete_transact_item(
        self,
        user_id: UserId,
        unit: ContentUnitModel,
        completed_at: IsoTimestamp,
        coins_awarded: int,
        completion_method: CompletionMethod,
        completion_data: typing.Optional[dict[str, typing.Any]] = None,
    ) -> TransactItem:
        """
        Transaction item finalizing a record. The condition makes completion a one-time transition:
        if the record is already completed the whole transaction is cancelled.
        """
        set_parts = [
            "#status = :completed",
            "completedAt = :now",
            "completionPercentage = :hundred",
            "coinsAwarded = :coins",
            "completionMethod = :method",
            "unitType = :unitType",
            "weekId = :weekId",
            "startedAt = if_not_exists(startedAt, :now)",
            "timeSpentSeconds = if_not_exists(timeSpentSeconds, :zero)",
            "lastPositionSeconds = if_not_exists(lastPositionSeconds, :zero)",
        ]
        values: dict[str, typing.Any] = {
            ":completed": "COMPLETED",
            ":now": completed_at,
            ":hundred": Decimal("100"),
            ":coins": coins_awarded,
            ":method": completion_method,
            ":unitType": unit.unitType,
            ":weekId": unit.weekId,
            ":zero": 0,
        }
        if completion_data:
            set_parts.append("completionData = :data")
            values[":data"] = to_ddb_value(completion_data)

        return {
            "Update": {
                "TableName": self.table_name,
                "Key": {"userId": user_id, "unitId": unit.unitId},
                "UpdateExpression": "SET " + ", ".join(set_parts),
                "ConditionExpression": "attribute_not_exists(completedAt)",
                "ExpressionAttributeNames": {"#status": "status"},
                "ExpressionAttributeValues": values,
            }
        }

    def reset_record(self, user_id: UserId, unit_id: ContentUnitId) -> bool:
        """Deletes a user's record for a unit (admin reset). Coins already awarded stay in the ledger."""
        try:
            response = self.table.delete_item(Key={"userId": user_id, "unitId": unit_id}, ReturnValues="ALL_OLD")
            existed = bool(response.get("Attributes"))
            _LOGGER.info(f"Reset completion record for user {user_id}, unit {unit_id}. Existed: {existed}")
            return existed
        except ClientError as e:
            _LOGGER.error(f"Failed to reset record {user_id}/{unit_id}: {e.response['Error']['Message']}")
            raise
