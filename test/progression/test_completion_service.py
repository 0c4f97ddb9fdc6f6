import typing

import boto3
import pytest
from moto import mock_aws

from cohort_progress.cloudwatch.metrics import COINS_AWARDED, TOPIC_COMPLETED, WEEK_UNLOCKED
from cohort_progress.dynamodb.transactions import TransactItem, TransactionWriter
from cohort_progress.progression.errors import NotEligibleError, NotFoundError, ValidationError, WeekLockedError
from cohort_progress.utils.base_types import CohortId, ContentUnitId, UserId, WeekId
from test_utils.ddb_tables import REGION, create_all_tables
from test_utils.services import Services, build_services, seed_cohort

USER = UserId("student1")


@pytest.fixture
def services(aws_credentials) -> typing.Iterator[Services]:
    with mock_aws():
        create_all_tables(boto3.resource("dynamodb", region_name=REGION))
        built = build_services()
        seed_cohort(built)
        yield built


def _metric_calls(services: Services) -> list[tuple]:
    return [c.args for c in services.metrics_manager.put_metric.call_args_list]


def test_heartbeats_accumulate_towards_eligibility(services: Services):
    statuses = [
        services.completion_service.track_time(USER, ContentUnitId("t0a"), t) for t in (0, 30, 60, 95, 125)
    ]

    assert [s.time_spent_seconds for s in statuses] == [0, 30, 60, 95, 125]
    assert [s.is_eligible_for_completion for s in statuses] == [False, False, False, False, True]
    assert [s.time_remaining_seconds for s in statuses] == [120, 90, 60, 25, 0]


def test_stale_heartbeat_returns_stored_time(services: Services):
    services.completion_service.track_time(USER, ContentUnitId("t0a"), 90)

    status = services.completion_service.track_time(USER, ContentUnitId("t0a"), 40)

    assert status.time_spent_seconds == 90
    assert status.time_remaining_seconds == 30


def test_elapsed_heartbeats(services: Services):
    for _ in range(4):
        status = services.completion_service.track_elapsed(USER, ContentUnitId("t0a"), 30)

    assert status.time_spent_seconds == 120
    assert status.is_eligible_for_completion


def test_heartbeat_records_media_progress(services: Services):
    status = services.completion_service.track_time(
        USER, ContentUnitId("t0a"), 30, progress_percentage=25.0, last_position=31
    )

    assert status.progress_percentage == 25.0
    assert status.last_position_seconds == 31


@pytest.mark.parametrize("bad_value", [-5, 86401, 3.5])
def test_invalid_heartbeat_rejected(services: Services, bad_value):
    with pytest.raises(ValidationError):
        services.completion_service.track_time(USER, ContentUnitId("t0a"), bad_value)
    assert services.records_table.get_record(USER, ContentUnitId("t0a")) is None


def test_unknown_unit(services: Services):
    with pytest.raises(NotFoundError):
        services.completion_service.track_time(USER, ContentUnitId("nope"), 10)


def test_complete_before_minimum_time(services: Services):
    services.completion_service.track_time(USER, ContentUnitId("t0a"), 95)

    with pytest.raises(NotEligibleError) as exc_info:
        services.completion_service.complete(USER, ContentUnitId("t0a"))

    assert exc_info.value.time_remaining_seconds == 25
    assert services.coin_service.get_balance(USER).totalBalance == 0


def test_complete_awards_coins_and_updates_week(services: Services):
    services.completion_service.track_time(USER, ContentUnitId("t0a"), 125)

    result = services.completion_service.complete(USER, ContentUnitId("t0a"), completion_data={"score": 1})

    assert result.coins_awarded == 10
    assert result.new_balance == 10
    assert result.week_completion_percentage == 50.0
    assert result.already_completed is False
    assert result.next_item.id == "t0b"

    record = services.records_table.get_record(USER, ContentUnitId("t0a"))
    assert record.is_completed
    assert record.completionData == {"score": 1}
    assert services.week_progress_table.get_progress(USER, WeekId("w0")).completionPercentage == 50.0
    assert (TOPIC_COMPLETED, 1) in _metric_calls(services)
    assert (COINS_AWARDED, 10) in _metric_calls(services)


def test_second_completion_is_a_no_op(services: Services):
    services.completion_service.track_time(USER, ContentUnitId("t0a"), 125)
    first = services.completion_service.complete(USER, ContentUnitId("t0a"))

    second = services.completion_service.complete(USER, ContentUnitId("t0a"))

    assert second.already_completed is True
    assert second.coins_awarded == 10
    assert second.new_balance == 10
    assert second.completed_at == first.completed_at
    assert len(services.ledger_table.get_all_entries_for_user(USER)) == 1


def test_heartbeat_after_completion_keeps_completed_state(services: Services):
    services.completion_service.track_time(USER, ContentUnitId("t0a"), 125)
    services.completion_service.complete(USER, ContentUnitId("t0a"))

    status = services.completion_service.track_time(USER, ContentUnitId("t0a"), 400)

    assert status.is_completed
    assert status.time_spent_seconds == 125
    assert status.is_eligible_for_completion is False


class _RacingTransactionWriter(TransactionWriter):
    """Lets a competing request complete the record right before the first transaction is written."""

    def __init__(self) -> None:
        super().__init__()
        self.raced = False

    def write(self, transact_items: list[TransactItem]) -> None:
        if not self.raced:
            self.raced = True
            super().write(transact_items[:1])
        super().write(transact_items)


def test_completion_race_awards_coins_once(aws_credentials):
    with mock_aws():
        create_all_tables(boto3.resource("dynamodb", region_name=REGION))
        services = build_services(transaction_writer=_RacingTransactionWriter())
        seed_cohort(services)

        result = services.completion_service.complete(USER, ContentUnitId("t0b"))

        assert result.already_completed is True
        assert services.records_table.get_record(USER, ContentUnitId("t0b")).is_completed
        # The competing write carried no coins; the cancelled transaction must not add any either.
        assert services.ledger_table.get_all_entries_for_user(USER) == []
        assert services.coin_service.get_balance(USER).totalBalance == 0


def test_locked_week_rejects_tracking_and_completion(services: Services):
    with pytest.raises(WeekLockedError):
        services.completion_service.track_time(USER, ContentUnitId("t1a"), 10)
    with pytest.raises(WeekLockedError):
        services.completion_service.complete(USER, ContentUnitId("t1a"))


def test_finishing_week_zero_unlocks_week_one(services: Services):
    services.completion_service.track_time(USER, ContentUnitId("t0a"), 125)
    services.completion_service.complete(USER, ContentUnitId("t0a"))

    result = services.completion_service.complete(USER, ContentUnitId("t0b"))

    assert result.week_completion_percentage == 100.0
    assert result.new_balance == 30
    progress = services.week_progress_table.get_progress(USER, WeekId("w1"))
    assert progress is not None and progress.is_unlocked
    assert (WEEK_UNLOCKED, 1) in _metric_calls(services)
    assert services.completion_service.track_time(USER, ContentUnitId("t1a"), 10).time_spent_seconds == 10


def test_get_status_without_record(services: Services):
    status = services.completion_service.get_status(USER, ContentUnitId("t0a"))

    assert status.time_spent_seconds == 0
    assert status.min_time_required_seconds == 120


def test_next_item_is_none_for_last_unit(services: Services):
    last = services.content_units_table.get_unit(ContentUnitId("t0-extra"))
    assert services.completion_service.next_item(last) is None


def test_week_completion_breakdown(services: Services):
    services.completion_service.complete(USER, ContentUnitId("t0b"))

    week_completion = services.completion_service.get_week_completion(USER, WeekId("w0"))

    assert week_completion.completion_percentage == 50.0
    assert week_completion.is_unlocked is True
    assert week_completion.breakdown["quiz"].completed == 1
    assert week_completion.breakdown["topic"].completed == 0


def test_reset_completion_keeps_coins_and_recomputes_week(services: Services):
    services.completion_service.complete(USER, ContentUnitId("t0b"))

    assert services.completion_service.reset_completion(USER, ContentUnitId("t0b")) is True

    assert services.week_progress_table.get_progress(USER, WeekId("w0")).completionPercentage == 0.0
    assert services.coin_service.get_balance(USER).totalBalance == 20


def test_cohort_completion(services: Services):
    services.completion_service.complete(USER, ContentUnitId("t0b"))

    # Required units: t0a, t0b, t1a; week 2 and week 4 have none.
    assert services.completion_service.get_cohort_completion(USER, CohortId("cohort-a")) == 33.33
