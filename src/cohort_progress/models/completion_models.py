import typing

import pydantic

from cohort_progress.models.curriculum_models import ContentUnitType
from cohort_progress.utils.base_types import ContentUnitId, IsoTimestamp, UserId, WeekId

CompletionStatus = typing.Literal["NOT_STARTED", "IN_PROGRESS", "COMPLETED"]

CompletionMethod = typing.Literal[
    "manual",
    "time_tracked",
    "quiz_passed",
    "assignment_approved",
    "live_attendance",
    "admin",
]

# The methods a student may claim; the others are set by graders and administrators server side.
ClientCompletionMethod = typing.Literal["manual", "time_tracked"]


class CompletionRecordModel(pydantic.BaseModel):
    """
    One row per (user, content unit), created on first interaction and finalized on completion.

    Table Schema:
      - PK: userId
      - SK: unitId
    """

    userId: UserId
    unitId: ContentUnitId
    unitType: ContentUnitType = "topic"
    weekId: WeekId
    status: CompletionStatus = "IN_PROGRESS"
    startedAt: typing.Optional[IsoTimestamp] = None
    completedAt: typing.Optional[IsoTimestamp] = None
    timeSpentSeconds: int = pydantic.Field(default=0, ge=0)
    completionPercentage: float = pydantic.Field(default=0.0, ge=0, le=100)
    lastPositionSeconds: int = pydantic.Field(default=0, ge=0)
    coinsAwarded: int = 0
    completionMethod: typing.Optional[CompletionMethod] = None
    completionData: typing.Optional[dict[str, typing.Any]] = None

    @pydantic.model_validator(mode="after")
    def check_status_matches_completion(self) -> "CompletionRecordModel":
        if (self.status == "COMPLETED") != (self.completedAt is not None):
            raise ValueError("completedAt must be set if and only if status is COMPLETED")
        return self

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED"


class TrackTimeInputModel(pydantic.BaseModel):
    """
    Body of POST /content-units/{id}/track-time.

    `time_spent` is the cumulative number of seconds the client claims; `elapsed_seconds` is the
    delta since the previous heartbeat. Exactly one must be provided.
    """

    time_spent: typing.Optional[int] = None
    elapsed_seconds: typing.Optional[int] = None
    progress_percentage: typing.Optional[float] = pydantic.Field(default=None, ge=0, le=100)
    last_position: typing.Optional[int] = pydantic.Field(default=None, ge=0)

    model_config = pydantic.ConfigDict(extra="forbid", strict=True)

    @pydantic.model_validator(mode="after")
    def check_exactly_one_time_value(self) -> "TrackTimeInputModel":
        if (self.time_spent is None) == (self.elapsed_seconds is None):
            raise ValueError("Provide exactly one of 'time_spent' or 'elapsed_seconds'")
        return self


class CompleteInputModel(pydantic.BaseModel):
    completion_data: typing.Optional[dict[str, typing.Any]] = None
    method: ClientCompletionMethod = "manual"

    model_config = pydantic.ConfigDict(extra="forbid")


class TimeTrackingStatusModel(pydantic.BaseModel):
    time_spent_seconds: int
    is_eligible_for_completion: bool
    time_remaining_seconds: int
    min_time_required_seconds: int
    is_completed: bool
    progress_percentage: float = 0.0
    last_position_seconds: int = 0


class NextItemModel(pydantic.BaseModel):
    type: ContentUnitType
    id: ContentUnitId
    title: typing.Optional[str] = None


class CompletionResultModel(pydantic.BaseModel):
    coins_awarded: int
    new_balance: int
    week_completion_percentage: float
    already_completed: bool = False
    completed_at: typing.Optional[IsoTimestamp] = None
    next_item: typing.Optional[NextItemModel] = None
