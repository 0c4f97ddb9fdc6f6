import typing

import pydantic

from cohort_progress.utils.base_types import CohortId, IsoTimestamp, UserId, WeekId

UnlockState = typing.Literal["LOCKED", "UNLOCKED"]

UnlockReasonCode = typing.Literal[
    "completion_percent_short_by",
    "coins_short_by",
    "previous_week_missing",
    "not_available_until",
    "required_completions_short",
    "evaluation_failed",
]


class WeekProgressModel(pydantic.BaseModel):
    """
    Cached per-(user, week) aggregate and unlock state.

    Table Schema:
      - PK: userId
      - SK: weekId
    """

    userId: UserId
    weekId: WeekId
    cohortId: CohortId
    completionPercentage: float = pydantic.Field(default=0.0, ge=0, le=100)
    completedRequiredUnits: int = 0
    totalRequiredUnits: int = 0
    unlockState: UnlockState = "LOCKED"
    unlockedAt: typing.Optional[IsoTimestamp] = None
    completedAt: typing.Optional[IsoTimestamp] = None
    version: int = 0

    @pydantic.model_validator(mode="after")
    def check_unlock_stamp(self) -> "WeekProgressModel":
        if (self.unlockState == "UNLOCKED") != (self.unlockedAt is not None):
            raise ValueError("unlockedAt must be set if and only if unlockState is UNLOCKED")
        return self

    @property
    def is_unlocked(self) -> bool:
        return self.unlockState == "UNLOCKED"


class UnlockReasonModel(pydantic.BaseModel):
    code: UnlockReasonCode
    value: typing.Optional[typing.Union[float, int, str, dict[str, int]]] = None


class UnlockEvaluationResponseModel(pydantic.BaseModel):
    week_id: WeekId
    is_unlocked: bool
    state: UnlockState
    unlocked_at: typing.Optional[IsoTimestamp] = None
    reasons_if_locked: list[UnlockReasonModel] = pydantic.Field(default_factory=list)
    deadline_at: typing.Optional[IsoTimestamp] = None
    deadline_passed: bool = False


class UnitTypeBreakdownModel(pydantic.BaseModel):
    completed: int = 0
    total: int = 0


class WeekCompletionResponseModel(pydantic.BaseModel):
    week_id: WeekId
    completion_percentage: float
    completed_required_units: int
    total_required_units: int
    is_unlocked: bool
    breakdown: dict[str, UnitTypeBreakdownModel] = pydantic.Field(default_factory=dict)


class UnlockRequirementModel(pydantic.BaseModel):
    type: str
    description: str
    met: bool
    current: typing.Optional[typing.Union[float, int, str]] = None
    required: typing.Optional[typing.Union[float, int, str]] = None


class UnlockRequirementsSummaryModel(pydantic.BaseModel):
    week_id: WeekId
    can_unlock: bool
    requirements: list[UnlockRequirementModel]
    message: str
