import logging
import typing

from cohort_progress.cloudwatch.metrics import MetricsManager
from cohort_progress.lambdas.lambda_support import (
    build_completion_service,
    build_unlock_service,
    progression_error_response,
)
from cohort_progress.progression.completion_service import CompletionService
from cohort_progress.progression.errors import ProgressionError
from cohort_progress.progression.unlock_service import UnlockService
from cohort_progress.utils.apig_utils import (
    ErrorCode,
    create_error_response,
    format_lambda_response,
    get_method,
    get_path,
    get_path_parts,
    get_user_id_from_event,
)
from cohort_progress.utils.base_types import UserId, WeekId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class WeeksApiHandler:
    def __init__(self, unlock_service: UnlockService, completion_service: CompletionService):
        self.unlock_service = unlock_service
        self.completion_service = completion_service

    def _handle_post_evaluate_unlock(self, event: dict, user_id: UserId, week_id: WeekId) -> dict:
        result = self.unlock_service.evaluate_unlock(user_id, week_id)
        return format_lambda_response(200, result.model_dump(exclude_none=True), event=event)

    def _handle_get_progress(self, event: dict, user_id: UserId, week_id: WeekId) -> dict:
        week_completion = self.completion_service.get_week_completion(user_id, week_id)
        return format_lambda_response(200, week_completion.model_dump(), event=event)

    def _handle_get_unlock_requirements(self, event: dict, user_id: UserId, week_id: WeekId) -> dict:
        summary = self.unlock_service.unlock_summary(user_id, week_id)
        return format_lambda_response(200, summary.model_dump(exclude_none=True), event=event)

    def handle(self, event: dict) -> dict:
        user_id = get_user_id_from_event(event)
        if not user_id:
            _LOGGER.warning("Unauthorized: No user_id found in event.")
            return create_error_response(ErrorCode.AUTHENTICATION_FAILED, event=event)

        http_method = get_method(event).upper()
        path = get_path(event)
        path_parts = get_path_parts(event)

        _LOGGER.info(f"WeeksApiHandler: {http_method} {path} for user: {user_id}")

        # Path: /weeks/{weekId}/{action}
        if len(path_parts) != 3 or path_parts[0] != "weeks":
            _LOGGER.warning(f"Unsupported path for weeks: {http_method} {path}")
            return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, event=event)
        week_id = WeekId(path_parts[1])
        action = path_parts[2]

        try:
            if http_method == "POST" and action == "evaluate-unlock":
                return self._handle_post_evaluate_unlock(event, user_id, week_id)
            elif http_method == "GET" and action == "progress":
                return self._handle_get_progress(event, user_id, week_id)
            elif http_method == "GET" and action == "unlock-requirements":
                return self._handle_get_unlock_requirements(event, user_id, week_id)
            else:
                _LOGGER.warning(f"Unsupported path or method for weeks: {http_method} {path}")
                return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, event=event)

        except ProgressionError as e:
            _LOGGER.info(f"{type(e).__name__} for {user_id} on week {week_id}: {e.message}")
            return progression_error_response(e, event)
        except Exception as e:
            _LOGGER.error(f"Unexpected error in WeeksApiHandler for user {user_id}: {str(e)}", exc_info=True)
            return create_error_response(ErrorCode.INTERNAL_ERROR, event=event)


def weeks_lambda_handler(event: dict[str, typing.Any], context: typing.Any) -> dict[str, typing.Any]:
    _LOGGER.info(f"weeks_lambda_handler invoked. Method: {get_method(event)}, Path: {get_path(event)}")
    metrics_manager = MetricsManager()

    try:
        unlock_service = build_unlock_service(metrics_manager)
        api_handler = WeeksApiHandler(
            unlock_service=unlock_service,
            completion_service=build_completion_service(unlock_service, metrics_manager),
        )
        return api_handler.handle(event)

    except ValueError as ve:
        _LOGGER.critical(f"Configuration error in weeks_lambda_handler: {str(ve)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR, "Server configuration error")
    except Exception as e:
        _LOGGER.critical(f"Error during WeeksApiHandler: {str(e)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR)
    finally:
        metrics_manager.flush()
