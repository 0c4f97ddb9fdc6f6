import typing

import pydantic

from cohort_progress.utils.base_types import CohortId, ContentUnitId, IsoTimestamp, WeekId

ContentUnitType = typing.Literal["topic", "lesson_block", "quiz", "assignment", "live_class"]

# A number of completed units, or "all" required units of the type.
RequiredCount = typing.Union[pydantic.NonNegativeInt, typing.Literal["all"]]


class LockPolicyModel(pydantic.BaseModel):
    """
    Drip/lock configuration attached to a week. Read-only input to the unlock evaluator.
    """

    lockedByDefault: bool = True
    minCompletionPercent: float = pydantic.Field(default=90.0, ge=0, le=100)
    minCoinsToUnlockNextWeek: int = pydantic.Field(default=0, ge=0)
    # Completed units per type the previous week must show, e.g. {"quiz": 1, "live_class": "all"}.
    requiredCompletions: dict[ContentUnitType, RequiredCount] = pydantic.Field(default_factory=dict)
    # Informational only, an elapsed deadline never re-locks a week.
    deadlineAt: typing.Optional[IsoTimestamp] = None
    # Drip gate: the week cannot be unlocked before this instant even if all thresholds are met.
    availableFrom: typing.Optional[IsoTimestamp] = None


class WeekModel(pydantic.BaseModel):
    """
    A week of a cohort's curriculum, stored in the Weeks table.

    Table Schema:
      - PK: weekId
      - GSI CohortWeekNumberIndex: cohortId (HASH), weekNumber (RANGE)
    """

    weekId: WeekId
    cohortId: CohortId
    weekNumber: int = pydantic.Field(..., ge=0)
    title: typing.Optional[str] = None
    isFree: bool = False
    lockPolicy: LockPolicyModel = pydantic.Field(default_factory=LockPolicyModel)


class ContentUnitModel(pydantic.BaseModel):
    """
    Any trackable item inside a week: topic, lesson block, quiz, assignment or live class.

    Table Schema:
      - PK: unitId
      - GSI WeekContentUnitsIndex: weekId (HASH)
    """

    unitId: ContentUnitId
    unitType: ContentUnitType = "topic"
    weekId: WeekId
    cohortId: CohortId
    title: typing.Optional[str] = None
    order: int = 0
    minTimeRequiredSeconds: typing.Optional[int] = pydantic.Field(default=None, ge=0)
    coinReward: int = pydantic.Field(default=0, ge=0)
    isOptional: bool = False
