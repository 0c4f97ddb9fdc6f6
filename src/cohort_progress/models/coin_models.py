import typing

import pydantic

from cohort_progress.utils.base_types import IsoTimestamp, LedgerEntryId, UserId

TransactionType = typing.Literal["earned", "spent", "bonus", "penalty", "adjustment"]

SourceType = typing.Literal[
    "topic",
    "lesson_block",
    "quiz",
    "assignment",
    "live_class",
    "bonus",
    "manual",
    "unlock",
]


class CoinLedgerEntryModel(pydantic.BaseModel):
    """
    Append-only coin ledger row. The balance of a user is the sum of `amount` over their entries.

    Table Schema:
      - PK: userId
      - SK: entryId ("<createdAt>#<sourceType>#<sourceId or random suffix>"), so a range query
        returns entries in chronological order
    """

    userId: UserId
    entryId: LedgerEntryId
    amount: int
    transactionType: TransactionType
    sourceType: SourceType
    sourceId: typing.Optional[str] = None
    description: typing.Optional[str] = None
    createdBy: typing.Optional[str] = None
    createdAt: IsoTimestamp
    metadata: typing.Optional[dict[str, typing.Any]] = None


class CoinBalanceModel(pydantic.BaseModel):
    """Cached running totals, rebuildable from the ledger at any time."""

    userId: UserId
    totalBalance: int = 0
    lifetimeEarned: int = 0
    lifetimeSpent: int = 0
    updatedAt: typing.Optional[IsoTimestamp] = None


class BalanceVerificationModel(pydantic.BaseModel):
    user_id: UserId
    cached_balance: int
    ledger_balance: int
    is_consistent: bool


class CoinBalanceResponseModel(pydantic.BaseModel):
    total_balance: int
    lifetime_earned: int
    lifetime_spent: int


class CoinHistoryResponseModel(pydantic.BaseModel):
    transactions: list[CoinLedgerEntryModel]
    lastEvaluatedKey: typing.Optional[dict[str, typing.Any]] = None
