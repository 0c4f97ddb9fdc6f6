import logging
import typing
import uuid

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from pydantic import ValidationError

from cohort_progress.dynamodb.transactions import TransactItem
from cohort_progress.models.coin_models import CoinLedgerEntryModel, SourceType, TransactionType
from cohort_progress.utils.base_types import IsoTimestamp, LedgerEntryId, UserId
from cohort_progress.utils.ddb_utils import from_ddb_value, to_ddb_item

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)


class LedgerTotals(typing.NamedTuple):
    total_balance: int
    lifetime_earned: int
    lifetime_spent: int


class CoinLedgerTable:
    """
    Data Abstraction Layer for the append-only coin ledger.

    Table Schema:
      - PK: userId
      - SK: entryId ("<createdAt>#<sourceType>#<sourceId or random suffix>")

    Rows are only ever put with `attribute_not_exists(entryId)`; nothing updates or deletes them.
    The ledger is the source of truth for balances.
    """

    def __init__(self, table_name: str) -> None:
        self.client = boto3.resource("dynamodb")
        self.table = self.client.Table(table_name)

    @property
    def table_name(self) -> str:
        return self.table.name

    @staticmethod
    def make_entry_id(created_at: IsoTimestamp, source_type: SourceType, source_id: typing.Optional[str]) -> LedgerEntryId:
        suffix = source_id if source_id else uuid.uuid4().hex[:12]
        return LedgerEntryId(f"{created_at}#{source_type}#{suffix}")

    def new_entry(
        self,
        user_id: UserId,
        amount: int,
        transaction_type: TransactionType,
        source_type: SourceType,
        created_at: IsoTimestamp,
        source_id: typing.Optional[str] = None,
        description: typing.Optional[str] = None,
        created_by: typing.Optional[str] = None,
        metadata: typing.Optional[dict[str, typing.Any]] = None,
    ) -> CoinLedgerEntryModel:
        return CoinLedgerEntryModel(
            userId=user_id,
            entryId=self.make_entry_id(created_at, source_type, source_id),
            amount=amount,
            transactionType=transaction_type,
            sourceType=source_type,
            sourceId=source_id,
            description=description,
            createdBy=created_by,
            createdAt=created_at,
            metadata=metadata,
        )

    def build_entry_put(self, entry: CoinLedgerEntryModel) -> TransactItem:
        return {
            "Put": {
                "TableName": self.table_name,
                "Item": to_ddb_item(entry.model_dump(exclude_none=True)),
                "ConditionExpression": "attribute_not_exists(entryId)",
            }
        }

    def _parse_items(self, ddb_items: list[dict[str, typing.Any]]) -> list[CoinLedgerEntryModel]:
        parsed_items = []
        for item in ddb_items:
            try:
                parsed_items.append(CoinLedgerEntryModel.model_validate(from_ddb_value(item)))
            except ValidationError as e:
                _LOGGER.error(f"Validation error for ledger item (entryId: {item.get('entryId')}): {e}", exc_info=True)
        return parsed_items

    def get_entries_for_user(
        self,
        user_id: UserId,
        limit: int = 50,
        last_evaluated_key: typing.Optional[dict[str, typing.Any]] = None,
    ) -> tuple[list[CoinLedgerEntryModel], typing.Optional[dict[str, typing.Any]]]:
        """Newest first, paginated."""
        query_kwargs: dict[str, typing.Any] = {
            "KeyConditionExpression": Key("userId").eq(user_id),
            "ScanIndexForward": False,
            "Limit": limit,
        }
        if last_evaluated_key:
            query_kwargs["ExclusiveStartKey"] = last_evaluated_key

        try:
            response = self.table.query(**query_kwargs)
            items = self._parse_items(response.get("Items", []))
            new_last_evaluated_key = response.get("LastEvaluatedKey")
            _LOGGER.info(f"Found {len(items)} ledger entries for {user_id}. Has more: {bool(new_last_evaluated_key)}")
            return items, new_last_evaluated_key
        except ClientError as e:
            _LOGGER.error(f"Error fetching ledger entries for userId: {user_id}: {e.response['Error']['Message']}")
            raise

    def get_all_entries_for_user(self, user_id: UserId) -> list[CoinLedgerEntryModel]:
        entries: list[CoinLedgerEntryModel] = []
        query_kwargs: dict[str, typing.Any] = {
            "KeyConditionExpression": Key("userId").eq(user_id),
            "ConsistentRead": True,
        }
        try:
            while True:
                response = self.table.query(**query_kwargs)
                entries.extend(self._parse_items(response.get("Items", [])))
                if "LastEvaluatedKey" not in response:
                    break
                query_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            _LOGGER.error(f"Error fetching full ledger for userId: {user_id}: {e.response['Error']['Message']}")
            raise
        return entries

    def compute_totals(self, user_id: UserId) -> LedgerTotals:
        """Sums the ledger. Used to verify or rebuild the cached balance."""
        entries = self.get_all_entries_for_user(user_id)
        earned = sum(e.amount for e in entries if e.amount > 0)
        spent = -sum(e.amount for e in entries if e.amount < 0)
        return LedgerTotals(total_balance=earned - spent, lifetime_earned=earned, lifetime_spent=spent)

    def get_earnings_by_source(self, user_id: UserId) -> dict[str, int]:
        earnings: dict[str, int] = {}
        for entry in self.get_all_entries_for_user(user_id):
            if entry.amount > 0:
                earnings[entry.sourceType] = earnings.get(entry.sourceType, 0) + entry.amount
        return earnings
