import typing

import boto3
import pytest
from moto import mock_aws

from cohort_progress.dynamodb.transactions import TransactionWriter
from cohort_progress.dynamodb.week_progress_table import WeekProgressTable
from cohort_progress.utils.base_types import CohortId, IsoTimestamp, UserId, WeekId
from test_utils.ddb_tables import REGION, WEEK_PROGRESS_TABLE_NAME, create_week_progress_table

USER = UserId("student1")
WEEK = WeekId("cohort-a-w1")
COHORT = CohortId("cohort-a")
NOW = IsoTimestamp("2025-02-01T12:00:00+00:00")


@pytest.fixture
def progress_table(aws_credentials) -> typing.Iterator[WeekProgressTable]:
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name=REGION)
        create_week_progress_table(dynamodb)
        yield WeekProgressTable(WEEK_PROGRESS_TABLE_NAME)


def test_get_progress_not_found(progress_table: WeekProgressTable):
    assert progress_table.get_progress(USER, WEEK) is None


def test_save_aggregate_creates_locked_row(progress_table: WeekProgressTable):
    assert progress_table.save_aggregate(USER, WEEK, COHORT, 66.67, 2, 3, NOW, expected_version=0)

    progress = progress_table.get_progress(USER, WEEK)
    assert progress.completionPercentage == 66.67
    assert progress.completedRequiredUnits == 2
    assert progress.totalRequiredUnits == 3
    assert progress.unlockState == "LOCKED"
    assert progress.completedAt is None
    assert progress.version == 1


def test_save_aggregate_rejects_stale_version(progress_table: WeekProgressTable):
    progress_table.save_aggregate(USER, WEEK, COHORT, 50.0, 1, 2, NOW, expected_version=0)

    assert progress_table.save_aggregate(USER, WEEK, COHORT, 100.0, 2, 2, NOW, expected_version=0) is False
    assert progress_table.get_progress(USER, WEEK).completionPercentage == 50.0


def test_full_week_stamps_completed_at(progress_table: WeekProgressTable):
    progress_table.save_aggregate(USER, WEEK, COHORT, 100.0, 2, 2, NOW, expected_version=0)

    assert progress_table.get_progress(USER, WEEK).completedAt == NOW


def test_mark_unlocked_is_one_time(progress_table: WeekProgressTable):
    assert progress_table.mark_unlocked(USER, WEEK, COHORT, NOW) is True
    assert progress_table.mark_unlocked(USER, WEEK, COHORT, IsoTimestamp("2025-03-01T00:00:00+00:00")) is False

    progress = progress_table.get_progress(USER, WEEK)
    assert progress.is_unlocked
    assert progress.unlockedAt == NOW


def test_aggregate_update_keeps_unlock(progress_table: WeekProgressTable):
    progress_table.mark_unlocked(USER, WEEK, COHORT, NOW)

    TransactionWriter().write(
        [progress_table.build_aggregate_update(USER, WEEK, COHORT, 25.0, 1, 4, NOW, expected_version=0)]
    )

    progress = progress_table.get_progress(USER, WEEK)
    assert progress.unlockState == "UNLOCKED"
    assert progress.unlockedAt == NOW
    assert progress.completionPercentage == 25.0
    assert progress.version == 1


def test_get_progress_for_user(progress_table: WeekProgressTable):
    progress_table.mark_unlocked(USER, WeekId("w0"), COHORT, NOW)
    progress_table.save_aggregate(USER, WeekId("w1"), COHORT, 10.0, 1, 10, NOW, expected_version=0)
    progress_table.mark_unlocked(UserId("other"), WeekId("w0"), COHORT, NOW)

    assert sorted(p.weekId for p in progress_table.get_progress_for_user(USER)) == ["w0", "w1"]
