import logging
import typing

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from pydantic import ValidationError

from cohort_progress.models.curriculum_models import ContentUnitModel
from cohort_progress.utils.base_types import ContentUnitId, WeekId
from cohort_progress.utils.ddb_utils import from_ddb_value, to_ddb_item

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class ContentUnitsTable:
    """
    Data Abstraction Layer for the content unit catalog (topics, lesson blocks, quizzes,
    assignments, live classes).

    Table Schema:
      - PK: unitId
    GSI ('WeekContentUnitsIndex'):
      - GSI_PK: weekId
    """

    GSI_WEEK_INDEX_NAME = "WeekContentUnitsIndex"

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    def get_unit(self, unit_id: ContentUnitId) -> typing.Optional[ContentUnitModel]:
        try:
            response = self.table.get_item(Key={"unitId": unit_id})
            item = response.get("Item")
            if item:
                return ContentUnitModel.model_validate(from_ddb_value(item))
            _LOGGER.info(f"No content unit found for unit_id: {unit_id}")
            return None
        except ClientError as e:
            _LOGGER.error(f"Failed to get content unit {unit_id}: {e.response['Error']['Message']}")
            raise
        except ValidationError as ve:
            _LOGGER.error(f"Failed to validate content unit {unit_id}: {ve}", exc_info=True)
            return None

    def get_units_for_week(self, week_id: WeekId) -> list[ContentUnitModel]:
        """All content units of a week, ordered by their `order` attribute."""
        units: list[ContentUnitModel] = []
        query_kwargs: dict[str, typing.Any] = {
            "IndexName": self.GSI_WEEK_INDEX_NAME,
            "KeyConditionExpression": Key("weekId").eq(week_id),
        }
        try:
            while True:
                response = self.table.query(**query_kwargs)
                for item in response.get("Items", []):
                    try:
                        units.append(ContentUnitModel.model_validate(from_ddb_value(item)))
                    except ValidationError as ve:
                        _LOGGER.warning(f"Skipping invalid content unit in week {week_id}: {item}. Error: {ve}")
                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            _LOGGER.error(f"Failed to query content units of week {week_id}: {e.response['Error']['Message']}")
            raise
        return sorted(units, key=lambda u: (u.order, u.unitId))

    def save_unit(self, unit: ContentUnitModel) -> ContentUnitModel:
        try:
            self.table.put_item(Item=to_ddb_item(unit.model_dump(exclude_none=True)))
            _LOGGER.info(f"Saved content unit {unit.unitId} ({unit.unitType}) in week {unit.weekId}")
            return unit
        except ClientError as e:
            _LOGGER.error(f"Error saving content unit {unit.unitId}: {e.response['Error']['Message']}", exc_info=True)
            raise
