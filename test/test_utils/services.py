import typing
from unittest.mock import Mock

from cohort_progress.dynamodb.coin_balances_table import CoinBalancesTable
from cohort_progress.dynamodb.coin_ledger_table import CoinLedgerTable
from cohort_progress.dynamodb.completion_records_table import CompletionRecordsTable
from cohort_progress.dynamodb.content_units_table import ContentUnitsTable
from cohort_progress.dynamodb.transactions import TransactionWriter
from cohort_progress.dynamodb.week_progress_table import WeekProgressTable
from cohort_progress.dynamodb.weeks_table import WeeksTable
from cohort_progress.models.curriculum_models import ContentUnitModel, LockPolicyModel, WeekModel
from cohort_progress.progression.coin_service import CoinService
from cohort_progress.progression.completion_service import CompletionService
from cohort_progress.progression.unlock_service import UnlockService
from cohort_progress.utils.base_types import CohortId, ContentUnitId, WeekId
from test_utils.ddb_tables import (
    COIN_BALANCES_TABLE_NAME,
    COIN_LEDGER_TABLE_NAME,
    COMPLETION_RECORDS_TABLE_NAME,
    CONTENT_UNITS_TABLE_NAME,
    WEEK_PROGRESS_TABLE_NAME,
    WEEKS_TABLE_NAME,
)

COHORT = CohortId("cohort-a")


class Services(typing.NamedTuple):
    weeks_table: WeeksTable
    content_units_table: ContentUnitsTable
    records_table: CompletionRecordsTable
    week_progress_table: WeekProgressTable
    ledger_table: CoinLedgerTable
    balances_table: CoinBalancesTable
    coin_service: CoinService
    unlock_service: UnlockService
    completion_service: CompletionService
    metrics_manager: Mock


def build_services(transaction_writer: typing.Optional[TransactionWriter] = None) -> Services:
    """Wires the services over the mocked tables. Must run inside `mock_aws()` after the tables exist."""
    metrics_manager = Mock()
    weeks_table = WeeksTable(WEEKS_TABLE_NAME)
    content_units_table = ContentUnitsTable(CONTENT_UNITS_TABLE_NAME)
    records_table = CompletionRecordsTable(COMPLETION_RECORDS_TABLE_NAME)
    week_progress_table = WeekProgressTable(WEEK_PROGRESS_TABLE_NAME)
    ledger_table = CoinLedgerTable(COIN_LEDGER_TABLE_NAME)
    balances_table = CoinBalancesTable(COIN_BALANCES_TABLE_NAME)

    coin_service = CoinService(ledger_table, balances_table)
    unlock_service = UnlockService(
        weeks_table,
        week_progress_table,
        balances_table,
        content_units_table,
        records_table,
        metrics_manager=metrics_manager,
    )
    completion_service = CompletionService(
        content_units_table,
        weeks_table,
        records_table,
        week_progress_table,
        coin_service,
        unlock_service,
        transaction_writer=transaction_writer,
        metrics_manager=metrics_manager,
        default_min_time_required_seconds=120,
        max_tracked_seconds=86400,
    )
    return Services(
        weeks_table,
        content_units_table,
        records_table,
        week_progress_table,
        ledger_table,
        balances_table,
        coin_service,
        unlock_service,
        completion_service,
        metrics_manager,
    )


def seed_cohort(services: Services) -> None:
    """
    Week 0: two required units (one timed, one without a time requirement).
    Week 1: needs 90% of week 0.
    Week 2: needs 90% of week 1 and 50 coins.
    Week 4: exists without a week 3.
    """
    weeks = [
        WeekModel(weekId=WeekId("w0"), cohortId=COHORT, weekNumber=0),
        WeekModel(weekId=WeekId("w1"), cohortId=COHORT, weekNumber=1, lockPolicy=LockPolicyModel(minCompletionPercent=90)),
        WeekModel(
            weekId=WeekId("w2"),
            cohortId=COHORT,
            weekNumber=2,
            lockPolicy=LockPolicyModel(minCompletionPercent=90, minCoinsToUnlockNextWeek=50),
        ),
        WeekModel(weekId=WeekId("w4"), cohortId=COHORT, weekNumber=4),
    ]
    for week in weeks:
        services.weeks_table.save_week(week)

    units = [
        ContentUnitModel(
            unitId=ContentUnitId("t0a"),
            weekId=WeekId("w0"),
            cohortId=COHORT,
            title="Intro",
            order=1,
            minTimeRequiredSeconds=120,
            coinReward=10,
        ),
        ContentUnitModel(
            unitId=ContentUnitId("t0b"),
            unitType="quiz",
            weekId=WeekId("w0"),
            cohortId=COHORT,
            title="Intro quiz",
            order=2,
            minTimeRequiredSeconds=0,
            coinReward=20,
        ),
        ContentUnitModel(
            unitId=ContentUnitId("t0-extra"),
            weekId=WeekId("w0"),
            cohortId=COHORT,
            order=3,
            isOptional=True,
            minTimeRequiredSeconds=0,
        ),
        ContentUnitModel(unitId=ContentUnitId("t1a"), weekId=WeekId("w1"), cohortId=COHORT, coinReward=5),
    ]
    for unit in units:
        services.content_units_table.save_unit(unit)
