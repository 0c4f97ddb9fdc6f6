import logging
import typing

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from pydantic import ValidationError

from cohort_progress.models.curriculum_models import WeekModel
from cohort_progress.utils.base_types import CohortId, WeekId
from cohort_progress.utils.ddb_utils import from_ddb_value, to_ddb_item

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class WeeksTable:
    """
    Data Abstraction Layer for the Weeks catalog table.

    Table Schema:
      - PK: weekId
    GSI ('CohortWeekNumberIndex'):
      - GSI_PK: cohortId
      - GSI_SK: weekNumber (Number)

    Week numbers are unique within a cohort; the previous week of week N is week N-1.
    """

    GSI_COHORT_WEEK_NUMBER_INDEX_NAME = "CohortWeekNumberIndex"

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    def _parse_item(self, item: dict[str, typing.Any]) -> typing.Optional[WeekModel]:
        try:
            return WeekModel.model_validate(from_ddb_value(item))
        except ValidationError as ve:
            _LOGGER.error(f"Failed to validate week item {item.get('weekId')}: {ve}", exc_info=True)
            return None

    def get_week(self, week_id: WeekId) -> typing.Optional[WeekModel]:
        _LOGGER.debug(f"Fetching week {week_id}")
        try:
            response = self.table.get_item(Key={"weekId": week_id})
        except ClientError as e:
            _LOGGER.error(f"Failed to get week {week_id}: {e.response['Error']['Message']}")
            raise
        item = response.get("Item")
        if not item:
            _LOGGER.info(f"No week found for week_id: {week_id}")
            return None
        return self._parse_item(item)

    def get_week_by_number(self, cohort_id: CohortId, week_number: int) -> typing.Optional[WeekModel]:
        """Returns the week with the given number in a cohort, or None if the cohort has no such week."""
        try:
            response = self.table.query(
                IndexName=self.GSI_COHORT_WEEK_NUMBER_INDEX_NAME,
                KeyConditionExpression=Key("cohortId").eq(cohort_id) & Key("weekNumber").eq(week_number),
                Limit=1,
            )
        except ClientError as e:
            _LOGGER.error(
                f"Failed to query week {week_number} of cohort {cohort_id}: {e.response['Error']['Message']}"
            )
            raise
        items = response.get("Items", [])
        if not items:
            return None
        return self._parse_item(items[0])

    def get_weeks_for_cohort(self, cohort_id: CohortId) -> list[WeekModel]:
        """All weeks of a cohort ordered by week number."""
        weeks: list[WeekModel] = []
        query_kwargs: dict[str, typing.Any] = {
            "IndexName": self.GSI_COHORT_WEEK_NUMBER_INDEX_NAME,
            "KeyConditionExpression": Key("cohortId").eq(cohort_id),
        }
        try:
            while True:
                response = self.table.query(**query_kwargs)
                for item in response.get("Items", []):
                    week = self._parse_item(item)
                    if week:
                        weeks.append(week)
                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            _LOGGER.error(f"Failed to query weeks of cohort {cohort_id}: {e.response['Error']['Message']}")
            raise
        return sorted(weeks, key=lambda w: w.weekNumber)

    def save_week(self, week: WeekModel) -> WeekModel:
        try:
            self.table.put_item(Item=to_ddb_item(week.model_dump(exclude_none=True)))
            _LOGGER.info(f"Saved week {week.weekId} (number {week.weekNumber}) of cohort {week.cohortId}")
            return week
        except ClientError as e:
            _LOGGER.error(f"Error saving week {week.weekId}: {e.response['Error']['Message']}", exc_info=True)
            raise
