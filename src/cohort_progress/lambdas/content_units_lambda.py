import json
import logging
import typing

from pydantic import ValidationError

from cohort_progress.cloudwatch.metrics import MetricsManager
from cohort_progress.lambdas.lambda_support import (
    build_completion_service,
    build_unlock_service,
    progression_error_response,
)
from cohort_progress.models.completion_models import CompleteInputModel, TrackTimeInputModel
from cohort_progress.progression.completion_service import CompletionService
from cohort_progress.progression.errors import ProgressionError
from cohort_progress.utils.apig_utils import (
    ErrorCode,
    create_error_response,
    format_lambda_response,
    get_method,
    get_path,
    get_path_parts,
    get_raw_body,
    get_user_id_from_event,
)
from cohort_progress.utils.base_types import ContentUnitId, UserId

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class ContentUnitsApiHandler:
    def __init__(self, completion_service: CompletionService):
        self.completion_service = completion_service

    def _handle_post_track_time(self, event: dict, user_id: UserId, unit_id: ContentUnitId) -> dict:
        raw_body = get_raw_body(event)
        if not raw_body:
            _LOGGER.error("Request body is missing for track-time.")
            return create_error_response(ErrorCode.VALIDATION_ERROR, "Request body is missing.", event=event)

        heartbeat = TrackTimeInputModel.model_validate_json(raw_body)
        if heartbeat.time_spent is not None:
            status = self.completion_service.track_time(
                user_id, unit_id, heartbeat.time_spent, heartbeat.progress_percentage, heartbeat.last_position
            )
        else:
            status = self.completion_service.track_elapsed(
                user_id, unit_id, heartbeat.elapsed_seconds, heartbeat.progress_percentage, heartbeat.last_position
            )
        return format_lambda_response(200, status.model_dump(), event=event)

    def _handle_post_complete(self, event: dict, user_id: UserId, unit_id: ContentUnitId) -> dict:
        raw_body = get_raw_body(event)
        completion_input = CompleteInputModel.model_validate_json(raw_body) if raw_body else CompleteInputModel()

        result = self.completion_service.complete(
            user_id, unit_id, completion_data=completion_input.completion_data, method=completion_input.method
        )
        return format_lambda_response(200, result.model_dump(exclude_none=True), event=event)

    def _handle_get_status(self, event: dict, user_id: UserId, unit_id: ContentUnitId) -> dict:
        status = self.completion_service.get_status(user_id, unit_id)
        return format_lambda_response(200, status.model_dump(), event=event)

    def handle(self, event: dict) -> dict:
        user_id = get_user_id_from_event(event)
        if not user_id:
            _LOGGER.warning("Unauthorized: No user_id found in event.")
            return create_error_response(ErrorCode.AUTHENTICATION_FAILED, event=event)

        http_method = get_method(event).upper()
        path = get_path(event)
        path_parts = get_path_parts(event)

        _LOGGER.info(f"ContentUnitsApiHandler: {http_method} {path} for user: {user_id}")

        # Path: /content-units/{unitId}/{action}
        if len(path_parts) != 3 or path_parts[0] != "content-units":
            _LOGGER.warning(f"Unsupported path for content units: {http_method} {path}")
            return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, event=event)
        unit_id = ContentUnitId(path_parts[1])
        action = path_parts[2]

        try:
            if http_method == "POST" and action == "track-time":
                return self._handle_post_track_time(event, user_id, unit_id)
            elif http_method == "POST" and action == "complete":
                return self._handle_post_complete(event, user_id, unit_id)
            elif http_method == "GET" and action == "status":
                return self._handle_get_status(event, user_id, unit_id)
            else:
                _LOGGER.warning(f"Unsupported path or method for content units: {http_method} {path}")
                return create_error_response(ErrorCode.RESOURCE_NOT_FOUND, event=event)

        except ValidationError as e:
            _LOGGER.error(f"Content unit request body validation error: {e.errors()}")
            return create_error_response(
                ErrorCode.VALIDATION_ERROR, details=json.loads(e.json(include_url=False)), event=event
            )
        except json.JSONDecodeError:
            _LOGGER.error("Content unit request body is not valid JSON.", exc_info=True)
            return create_error_response(ErrorCode.VALIDATION_ERROR, event=event)
        except ProgressionError as e:
            _LOGGER.info(f"{type(e).__name__} for {user_id} on {unit_id}: {e.message}")
            return progression_error_response(e, event)
        except Exception as e:
            _LOGGER.error(f"Unexpected error in ContentUnitsApiHandler for user {user_id}: {str(e)}", exc_info=True)
            return create_error_response(ErrorCode.INTERNAL_ERROR, event=event)


def content_units_lambda_handler(event: dict[str, typing.Any], context: typing.Any) -> dict[str, typing.Any]:
    _LOGGER.info(f"content_units_lambda_handler invoked. Method: {get_method(event)}, Path: {get_path(event)}")
    metrics_manager = MetricsManager()

    try:
        api_handler = ContentUnitsApiHandler(
            completion_service=build_completion_service(build_unlock_service(metrics_manager), metrics_manager),
        )
        return api_handler.handle(event)

    except ValueError as ve:
        _LOGGER.critical(f"Configuration error in content_units_lambda_handler: {str(ve)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR, "Server configuration error")
    except Exception as e:
        _LOGGER.critical(f"Error during ContentUnitsApiHandler: {str(e)}", exc_info=True)
        return create_error_response(ErrorCode.INTERNAL_ERROR)
    finally:
        metrics_manager.flush()
