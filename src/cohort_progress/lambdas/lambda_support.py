import logging
import typing

from cohort_progress.cloudwatch.metrics import MetricsManager
from cohort_progress.dynamodb.coin_balances_table import CoinBalancesTable
from cohort_progress.dynamodb.coin_ledger_table import CoinLedgerTable
from cohort_progress.dynamodb.completion_records_table import CompletionRecordsTable
from cohort_progress.dynamodb.content_units_table import ContentUnitsTable
from cohort_progress.dynamodb.transactions import TransactionWriter
from cohort_progress.dynamodb.week_progress_table import WeekProgressTable
from cohort_progress.dynamodb.weeks_table import WeeksTable
from cohort_progress.progression.coin_service import CoinService
from cohort_progress.progression.completion_service import CompletionService
from cohort_progress.progression.errors import (
    NotEligibleError,
    NotFoundError,
    ProgressionError,
    ValidationError,
    WeekLockedError,
)
from cohort_progress.progression.unlock_service import UnlockService
from cohort_progress.utils.apig_utils import ErrorCode, create_error_response
from cohort_progress.utils.aws_env_vars import (
    get_coin_balances_table_name,
    get_coin_ledger_table_name,
    get_completion_records_table_name,
    get_content_units_table_name,
    get_week_progress_table_name,
    get_weeks_table_name,
)

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

_ERROR_CODES: list[tuple[type[ProgressionError], ErrorCode]] = [
    (ValidationError, ErrorCode.VALIDATION_ERROR),
    (NotFoundError, ErrorCode.RESOURCE_NOT_FOUND),
    (WeekLockedError, ErrorCode.WEEK_LOCKED),
    (NotEligibleError, ErrorCode.NOT_ELIGIBLE),
]


def progression_error_response(error: ProgressionError, event: dict[str, typing.Any]) -> dict[str, typing.Any]:
    """Maps a rule-engine error onto the structured API error response."""
    error_code = ErrorCode.INTERNAL_ERROR
    for error_type, code in _ERROR_CODES:
        if isinstance(error, error_type):
            error_code = code
            break

    details = None
    if isinstance(error, NotEligibleError):
        details = {"time_remaining_seconds": error.time_remaining_seconds}

    if error_code is ErrorCode.INTERNAL_ERROR:
        _LOGGER.error(f"Unmapped progression error {type(error).__name__}: {error.message}")
        return create_error_response(error_code, reason=error.reason_code, event=event)
    return create_error_response(error_code, error.message, reason=error.reason_code, details=details, event=event)


def build_coin_service() -> CoinService:
    return CoinService(
        ledger_table=CoinLedgerTable(get_coin_ledger_table_name()),
        balances_table=CoinBalancesTable(get_coin_balances_table_name()),
    )


def build_unlock_service(metrics_manager: typing.Optional[MetricsManager] = None) -> UnlockService:
    return UnlockService(
        weeks_table=WeeksTable(get_weeks_table_name()),
        week_progress_table=WeekProgressTable(get_week_progress_table_name()),
        balances_table=CoinBalancesTable(get_coin_balances_table_name()),
        content_units_table=ContentUnitsTable(get_content_units_table_name()),
        records_table=CompletionRecordsTable(get_completion_records_table_name()),
        metrics_manager=metrics_manager,
    )


def build_completion_service(
    unlock_service: UnlockService,
    metrics_manager: typing.Optional[MetricsManager] = None,
) -> CompletionService:
    return CompletionService(
        content_units_table=ContentUnitsTable(get_content_units_table_name()),
        weeks_table=WeeksTable(get_weeks_table_name()),
        records_table=CompletionRecordsTable(get_completion_records_table_name()),
        week_progress_table=WeekProgressTable(get_week_progress_table_name()),
        coin_service=build_coin_service(),
        unlock_service=unlock_service,
        transaction_writer=TransactionWriter(),
        metrics_manager=metrics_manager,
    )
