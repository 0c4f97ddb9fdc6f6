import logging
import typing

import boto3
from botocore.exceptions import ClientError
from pydantic import ValidationError

from cohort_progress.dynamodb.transactions import TransactItem, is_conditional_check_failure
from cohort_progress.models.coin_models import CoinBalanceModel
from cohort_progress.utils.base_types import IsoTimestamp, UserId
from cohort_progress.utils.ddb_utils import from_ddb_value, to_ddb_item

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class CoinBalancesTable:
    """
    Cached coin balance per user, maintained next to the ledger in the same transactions.

    Table Schema:
      - PK: userId

    The cache is a rebuildable index over the ledger, never the sole source of truth.
    """

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    @property
    def table_name(self) -> str:
        return self.table.name

    def get_balance(self, user_id: UserId) -> CoinBalanceModel:
        """Returns the cached balance, or a zero balance for users who never earned coins."""
        try:
            response = self.table.get_item(Key={"userId": user_id}, ConsistentRead=True)
            item = response.get("Item")
            if item:
                return CoinBalanceModel.model_validate(from_ddb_value(item))
        except ClientError as e:
            _LOGGER.error(f"Failed to get coin balance for {user_id}: {e.response['Error']['Message']}")
            raise
        except ValidationError as ve:
            _LOGGER.error(f"Invalid coin balance item for {user_id}: {ve}", exc_info=True)
            raise
        return CoinBalanceModel(userId=user_id)

    def build_balance_update(
        self,
        user_id: UserId,
        delta: int,
        updated_at: IsoTimestamp,
        *,
        earned: int = 0,
        spent: int = 0,
        require_at_least: typing.Optional[int] = None,
    ) -> TransactItem:
        """
        Transaction item applying `delta` to the cached balance with atomic ADDs.

        :param require_at_least: When set, the transaction is cancelled unless the current balance is
            at least this amount (used for spending so the balance cannot be overdrawn).
        """
        update: dict[str, typing.Any] = {
            "TableName": self.table_name,
            "Key": {"userId": user_id},
            "UpdateExpression": (
                "SET updatedAt = :now ADD totalBalance :delta, lifetimeEarned :earned, lifetimeSpent :spent"
            ),
            "ExpressionAttributeValues": {
                ":now": updated_at,
                ":delta": delta,
                ":earned": earned,
                ":spent": spent,
            },
        }
        if require_at_least is not None:
            update["ConditionExpression"] = "totalBalance >= :required"
            update["ExpressionAttributeValues"][":required"] = require_at_least
        return {"Update": update}

    def overwrite_balance(self, balance: CoinBalanceModel, seen: typing.Optional[CoinBalanceModel] = None) -> bool:
        """
        Replaces the cached totals.

        :param seen: The cached balance the new totals were derived against. When given, the write only
            happens if the cache still holds exactly those totals, so a ledger write that landed in the
            meantime is not overwritten. A missing row always matches.
        :return: True if written, False if the cache changed since `seen` was read.
        """
        put_kwargs: dict[str, typing.Any] = {"Item": to_ddb_item(balance.model_dump(exclude_none=True))}
        if seen is not None:
            put_kwargs["ConditionExpression"] = (
                "attribute_not_exists(userId) OR "
                "(totalBalance = :seenTotal AND lifetimeEarned = :seenEarned AND lifetimeSpent = :seenSpent)"
            )
            put_kwargs["ExpressionAttributeValues"] = {
                ":seenTotal": seen.totalBalance,
                ":seenEarned": seen.lifetimeEarned,
                ":seenSpent": seen.lifetimeSpent,
            }
        try:
            self.table.put_item(**put_kwargs)
            _LOGGER.info(f"Rewrote cached balance for {balance.userId}: {balance.totalBalance}")
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                _LOGGER.info(f"Cached balance for {balance.userId} changed during the rewrite")
                return False
            _LOGGER.error(f"Failed to rewrite balance for {balance.userId}: {e.response['Error']['Message']}")
            raise
