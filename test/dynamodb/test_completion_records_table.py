import typing

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from cohort_progress.dynamodb.completion_records_table import CompletionRecordsTable
from cohort_progress.dynamodb.transactions import TransactionWriter
from cohort_progress.models.curriculum_models import ContentUnitModel
from cohort_progress.utils.base_types import CohortId, ContentUnitId, IsoTimestamp, UserId, WeekId
from test_utils.ddb_tables import COMPLETION_RECORDS_TABLE_NAME, REGION, create_completion_records_table

USER = UserId("student1")


@pytest.fixture
def records_table(aws_credentials) -> typing.Iterator[CompletionRecordsTable]:
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name=REGION)
        create_completion_records_table(dynamodb)
        yield CompletionRecordsTable(COMPLETION_RECORDS_TABLE_NAME)


def _unit(unit_id: str = "topic-1", week_id: str = "week-1") -> ContentUnitModel:
    return ContentUnitModel(
        unitId=ContentUnitId(unit_id),
        unitType="topic",
        weekId=WeekId(week_id),
        cohortId=CohortId("cohort-a"),
        minTimeRequiredSeconds=120,
        coinReward=10,
    )


def _complete(records_table: CompletionRecordsTable, unit: ContentUnitModel) -> None:
    TransactionWriter().write(
        [
            records_table.build_complete_transact_item(
                USER, unit, IsoTimestamp("2025-03-01T10:00:00+00:00"), unit.coinReward, "manual"
            )
        ]
    )


def test_get_record_not_found(records_table: CompletionRecordsTable):
    assert records_table.get_record(USER, ContentUnitId("missing")) is None


def test_start_record_creates_in_progress_record(records_table: CompletionRecordsTable):
    record = records_table.start_record(USER, _unit())

    assert record.status == "IN_PROGRESS"
    assert record.timeSpentSeconds == 0
    assert record.startedAt is not None
    assert record.completedAt is None


def test_start_record_keeps_existing_record(records_table: CompletionRecordsTable):
    unit = _unit()
    records_table.record_heartbeat(USER, unit, 45)

    record = records_table.start_record(USER, unit)

    assert record.timeSpentSeconds == 45


def test_heartbeat_creates_record_on_first_call(records_table: CompletionRecordsTable):
    record = records_table.record_heartbeat(USER, _unit(), 30)

    assert record.timeSpentSeconds == 30
    assert record.status == "IN_PROGRESS"
    assert record.weekId == "week-1"
    assert record.unitType == "topic"


def test_heartbeat_raises_stored_time(records_table: CompletionRecordsTable):
    unit = _unit()
    records_table.record_heartbeat(USER, unit, 30)

    record = records_table.record_heartbeat(USER, unit, 60)

    assert record.timeSpentSeconds == 60


@pytest.mark.parametrize("stale_claim", [60, 10, 0])
def test_heartbeat_never_lowers_stored_time(records_table: CompletionRecordsTable, stale_claim: int):
    unit = _unit()
    records_table.record_heartbeat(USER, unit, 60)

    record = records_table.record_heartbeat(USER, unit, stale_claim)

    assert record.timeSpentSeconds == 60
    assert records_table.get_record(USER, unit.unitId).timeSpentSeconds == 60


def test_add_elapsed_time_accumulates(records_table: CompletionRecordsTable):
    unit = _unit()
    records_table.add_elapsed_time(USER, unit, 30)
    records_table.add_elapsed_time(USER, unit, 30)

    record = records_table.add_elapsed_time(USER, unit, 15)

    assert record.timeSpentSeconds == 75


def test_heartbeat_after_completion_is_ignored(records_table: CompletionRecordsTable):
    unit = _unit()
    records_table.record_heartbeat(USER, unit, 130)
    _complete(records_table, unit)

    after_claim = records_table.record_heartbeat(USER, unit, 500)
    after_elapsed = records_table.add_elapsed_time(USER, unit, 30)

    assert after_claim.timeSpentSeconds == 130
    assert after_elapsed.timeSpentSeconds == 130
    assert after_elapsed.is_completed


def test_complete_transact_item_finalizes_record(records_table: CompletionRecordsTable):
    unit = _unit()
    records_table.record_heartbeat(USER, unit, 125)

    _complete(records_table, unit)

    record = records_table.get_record(USER, unit.unitId)
    assert record.status == "COMPLETED"
    assert record.completedAt == "2025-03-01T10:00:00+00:00"
    assert record.coinsAwarded == 10
    assert record.completionPercentage == 100
    assert record.completionMethod == "manual"
    assert record.timeSpentSeconds == 125


def test_complete_transact_item_is_one_time(records_table: CompletionRecordsTable):
    unit = _unit()
    _complete(records_table, unit)

    with pytest.raises(ClientError) as exc_info:
        _complete(records_table, unit)

    assert exc_info.value.response["Error"]["Code"] == "TransactionCanceledException"


def test_update_progress(records_table: CompletionRecordsTable):
    unit = _unit()
    records_table.start_record(USER, unit)

    assert records_table.update_progress(USER, unit.unitId, 42.5, 300) is True

    record = records_table.get_record(USER, unit.unitId)
    assert record.completionPercentage == 42.5
    assert record.lastPositionSeconds == 300


def test_update_progress_skips_completed_and_missing(records_table: CompletionRecordsTable):
    unit = _unit()
    _complete(records_table, unit)

    assert records_table.update_progress(USER, unit.unitId, 10.0, 5) is False
    assert records_table.update_progress(USER, ContentUnitId("never-started"), 10.0, 5) is False
    assert records_table.get_record(USER, ContentUnitId("never-started")) is None


def test_get_records_for_week_filters_by_week(records_table: CompletionRecordsTable):
    records_table.start_record(USER, _unit("topic-1", "week-1"))
    records_table.start_record(USER, _unit("topic-2", "week-1"))
    records_table.start_record(USER, _unit("topic-3", "week-2"))
    records_table.start_record(UserId("someone-else"), _unit("topic-1", "week-1"))

    records = records_table.get_records_for_week(USER, WeekId("week-1"))

    assert sorted(r.unitId for r in records) == ["topic-1", "topic-2"]
    assert len(records_table.get_records_for_user(USER)) == 3


def test_reset_record(records_table: CompletionRecordsTable):
    unit = _unit()
    _complete(records_table, unit)

    assert records_table.reset_record(USER, unit.unitId) is True
    assert records_table.get_record(USER, unit.unitId) is None
    assert records_table.reset_record(USER, unit.unitId) is False
