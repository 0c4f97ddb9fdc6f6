import logging
import typing

from cohort_progress.lambdas.lambda_support import build_coin_service, progression_error_response
from cohort_progress.models.coin_models import CoinBalanceModel, CoinBalanceResponseModel
from cohort_progress.progression.coin_service import CoinService
from cohort_progress.progression.errors import ProgressionError
from cohort_progress.utils.apig_utils import (
    ErrorCode,
    create_error_response,
    format_lambda_response,
    get_last_evaluated_key,
    get_method,
    get_pagination_limit,
    get_path,
    get_query_string_parameters,
    get_user_id_from_event,
)
from cohort_progress.utils.base_types import UserId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

_MAX_HISTORY_PAGE_SIZE = 100


def _balance_response(balance: CoinBalanceModel) -> dict[str, typing.Any]:
    return CoinBalanceResponseModel(
        total_balance=balance.totalBalance,
        lifetime_earned=balance.lifetimeEarned,
        lifetime_spent=balance.lifetimeSpent,
    ).model_dump()


class CoinsApiHandler:
    def __init__(self, coin_service: CoinService):
        self.coin_service = coin_service

    def _handle_get_balance(self, event: dict, user_id: UserId) -> dict:
        return format_lambda_response(200, _balance_response(self.coin_service.get_balance(user_id)), event=event)

    def _handle_get_transactions(self, event: dict, user_id: UserId) -> dict:
        query_params = get_query_string_parameters(event)
        limit = max(1, min(get_pagination_limit(query_params), _MAX_HISTORY_PAGE_SIZE))
        history = self.coin_service.get_history(user_id, limit, get_last_evaluated_key(query_params))
        return format_lambda_response(200, history.model_dump(exclude_none=True), event=event)

    def _handle_get_earnings(self, event: dict, user_id: UserId) -> dict:
        earnings = self.coin_service.get_earnings_by_source(user_id)
        return format_lambda_response(200, {"earnings_by_source": earnings}, event=event)

    def _handle_post_recalculate(self, event: dict, user_id: UserId) -> dict:
        """
        Self-service: a user can only rebuild their own cached balance from their own ledger. The rebuild
        is conditioned on the cache it read, so it never drops a concurrent coin write.
        """
        verification = self.coin_service.verify_balance(user_id)
        balance = self.coin_service.recalculate_balance(user_id)
        body = _balance_response(balance)
        body["previous_cached_balance"] = verification.cached_balance
        body["was_consistent"] = verification.is_consistent
        return format_lambda_response(200, body, event=event)

    def handle(self, event: dict) -> dict:
        user_id = get_user_id_from_event(event)
        if not user_id:
            _LOGGER.warning("Unauthorized: No user_id found in event.")
            return create_error_response(ErrorCode.AUTHENTICATION_FAILED, event=event)

        http_method = get_method(event).upper()
        path = get_path(event)

        _LOGGER.info(f"CoinsApiHandler: {http_method} {path} for user: {user_id}")

        try:
            if http_method == "GET" and path == "/coins/balance":
                return self._handle_get_balance(event, user_id)
            elif http_method == "GET" and path == "/coins/transactions":
                return self._handle_get_transactions(event, user_id)
            elif http_method == "GET" and path == "/coins/earnings":
                return self._handle_get_earnings(event, user_id)
            elif http_method == "POST" and path == "/coins/recalculate":
                return self._handle_post_recalculate(event, user_id)
            else:
                _LOGGER.warning(f"Unsupported path or method for coins: {http_method} {path}")
                return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, event=event)

        except ProgressionError as e:
            return progression_error_response(e, event)
        except Exception as e:
            _LOGGER.error(f"Unexpected error in CoinsApiHandler for user {user_id}: {str(e)}", exc_info=True)
            return create_error_response(ErrorCode.INTERNAL_ERROR, event=event)


def coins_lambda_handler(event: dict[str, typing.Any], context: typing.Any) -> dict[str, typing.Any]:
    _LOGGER.info(f"coins_lambda_handler invoked. Method: {get_method(event)}, Path: {get_path(event)}")

    try:
        api_handler = CoinsApiHandler(coin_service=build_coin_service())
        return api_handler.handle(event)

    except ValueError as ve:
        _LOGGER.critical(f"Configuration error in coins_lambda_handler: {str(ve)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR, "Server configuration error")
    except Exception as e:
        _LOGGER.critical(f"Error during CoinsApiHandler: {str(e)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR)
