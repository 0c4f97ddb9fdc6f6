import logging
import typing

from botocore.exceptions import ClientError

from cohort_progress.dynamodb.coin_balances_table import CoinBalancesTable
from cohort_progress.dynamodb.coin_ledger_table import CoinLedgerTable
from cohort_progress.dynamodb.transactions import TransactItem, TransactionWriter, is_transaction_cancelled
from cohort_progress.models.coin_models import (
    BalanceVerificationModel,
    CoinBalanceModel,
    CoinHistoryResponseModel,
    CoinLedgerEntryModel,
    SourceType,
    TransactionType,
)
from cohort_progress.progression.errors import ValidationError
from cohort_progress.utils.base_types import UserId
from cohort_progress.utils.ddb_utils import utc_now_iso

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

_MAX_DEDUCTION_ATTEMPTS = 3
_MAX_REBUILD_ATTEMPTS = 3


class CoinService:
    """
    Awards and deducts coins. Every change is a ledger row plus a balance-cache delta written in
    one transaction, so the cache can only drift if written outside this service, and
    `recalculate_balance` rebuilds it from the ledger.
    """

    def __init__(
        self,
        ledger_table: CoinLedgerTable,
        balances_table: CoinBalancesTable,
        transaction_writer: typing.Optional[TransactionWriter] = None,
    ) -> None:
        self.ledger_table = ledger_table
        self.balances_table = balances_table
        self.transaction_writer = transaction_writer or TransactionWriter()

    def build_entry_items(
        self,
        entry: CoinLedgerEntryModel,
        require_at_least: typing.Optional[int] = None,
    ) -> list[TransactItem]:
        """Ledger put plus the matching balance delta, for inclusion in a larger transaction."""
        return [
            self.ledger_table.build_entry_put(entry),
            self.balances_table.build_balance_update(
                entry.userId,
                entry.amount,
                entry.createdAt,
                earned=max(entry.amount, 0),
                spent=max(-entry.amount, 0),
                require_at_least=require_at_least,
            ),
        ]

    def _write_entry(
        self,
        user_id: UserId,
        amount: int,
        transaction_type: TransactionType,
        source_type: SourceType,
        source_id: typing.Optional[str] = None,
        description: typing.Optional[str] = None,
        created_by: typing.Optional[str] = None,
        metadata: typing.Optional[dict[str, typing.Any]] = None,
        require_at_least: typing.Optional[int] = None,
    ) -> CoinLedgerEntryModel:
        entry = self.ledger_table.new_entry(
            user_id,
            amount,
            transaction_type,
            source_type,
            utc_now_iso(),
            source_id=source_id,
            description=description,
            created_by=created_by,
            metadata=metadata,
        )
        self.transaction_writer.write(self.build_entry_items(entry, require_at_least=require_at_least))
        _LOGGER.info(f"Ledger {transaction_type} of {amount} coins for {user_id} ({source_type}:{source_id})")
        return entry

    def award_coins(
        self,
        user_id: UserId,
        amount: int,
        source_type: SourceType,
        source_id: typing.Optional[str] = None,
        description: typing.Optional[str] = None,
    ) -> CoinLedgerEntryModel:
        if amount <= 0:
            raise ValidationError("Coin award amount must be positive", reason_code="invalid_amount")
        return self._write_entry(user_id, amount, "earned", source_type, source_id, description)

    def spend_coins(
        self,
        user_id: UserId,
        amount: int,
        source_type: SourceType,
        source_id: typing.Optional[str] = None,
        description: typing.Optional[str] = None,
    ) -> typing.Optional[CoinLedgerEntryModel]:
        """
        Deducts coins if the balance covers the amount.

        :return: The ledger entry, or None when the balance is insufficient.
        """
        if amount <= 0:
            raise ValidationError("Coin spend amount must be positive", reason_code="invalid_amount")
        try:
            return self._write_entry(
                user_id, -amount, "spent", source_type, source_id, description, require_at_least=amount
            )
        except ClientError as e:
            if is_transaction_cancelled(e):
                _LOGGER.info(f"Insufficient balance for {user_id} to spend {amount} coins")
                return None
            raise

    def award_bonus(
        self,
        user_id: UserId,
        amount: int,
        reason: str,
        awarded_by: typing.Optional[str] = None,
    ) -> CoinLedgerEntryModel:
        if amount <= 0:
            raise ValidationError("Bonus amount must be positive", reason_code="invalid_amount")
        return self._write_entry(user_id, amount, "bonus", "bonus", description=reason, created_by=awarded_by)

    def apply_penalty(
        self,
        user_id: UserId,
        amount: int,
        reason: str,
        applied_by: typing.Optional[str] = None,
    ) -> typing.Optional[CoinLedgerEntryModel]:
        """
        Deducts up to `amount` coins; the balance never goes below zero, so only what is available
        is deducted and recorded.

        :return: The ledger entry, or None when the balance was already zero.
        """
        if amount <= 0:
            raise ValidationError("Penalty amount must be positive", reason_code="invalid_amount")

        for attempt in range(1, _MAX_DEDUCTION_ATTEMPTS + 1):
            available = self.balances_table.get_balance(user_id).totalBalance
            deduction = min(amount, max(available, 0))
            if deduction == 0:
                _LOGGER.info(f"Penalty for {user_id} skipped, balance is zero")
                return None
            try:
                return self._write_entry(
                    user_id,
                    -deduction,
                    "penalty",
                    "manual",
                    description=reason,
                    created_by=applied_by,
                    metadata={"requestedAmount": amount} if deduction != amount else None,
                    require_at_least=deduction,
                )
            except ClientError as e:
                if not is_transaction_cancelled(e):
                    raise
                _LOGGER.info(f"Balance for {user_id} changed during penalty (attempt {attempt}), retrying")
        raise RuntimeError(f"Could not apply penalty for {user_id} after {_MAX_DEDUCTION_ATTEMPTS} attempts")

    def adjust_balance(
        self,
        user_id: UserId,
        amount: int,
        reason: str,
        adjusted_by: typing.Optional[str] = None,
    ) -> CoinLedgerEntryModel:
        """Signed manual correction. A negative adjustment may not overdraw the balance."""
        if amount == 0:
            raise ValidationError("Adjustment amount must not be zero", reason_code="invalid_amount")
        try:
            return self._write_entry(
                user_id,
                amount,
                "adjustment",
                "manual",
                description=reason,
                created_by=adjusted_by,
                require_at_least=-amount if amount < 0 else None,
            )
        except ClientError as e:
            if amount < 0 and is_transaction_cancelled(e):
                raise ValidationError(
                    f"Adjustment of {amount} would overdraw the balance", reason_code="insufficient_balance"
                )
            raise

    def get_balance(self, user_id: UserId) -> CoinBalanceModel:
        return self.balances_table.get_balance(user_id)

    def get_history(
        self,
        user_id: UserId,
        limit: int = 50,
        last_evaluated_key: typing.Optional[dict[str, typing.Any]] = None,
    ) -> CoinHistoryResponseModel:
        entries, next_key = self.ledger_table.get_entries_for_user(user_id, limit, last_evaluated_key)
        return CoinHistoryResponseModel(transactions=entries, lastEvaluatedKey=next_key)

    def get_earnings_by_source(self, user_id: UserId) -> dict[str, int]:
        return self.ledger_table.get_earnings_by_source(user_id)

    def verify_balance(self, user_id: UserId) -> BalanceVerificationModel:
        cached = self.balances_table.get_balance(user_id).totalBalance
        ledger = self.ledger_table.compute_totals(user_id).total_balance
        if cached != ledger:
            _LOGGER.warning(f"Balance cache drift for {user_id}: cached={cached}, ledger={ledger}")
        return BalanceVerificationModel(
            user_id=user_id,
            cached_balance=cached,
            ledger_balance=ledger,
            is_consistent=cached == ledger,
        )

    def recalculate_balance(self, user_id: UserId) -> CoinBalanceModel:
        """
        Rewrites the cached balance from the ledger. The cache is read before the ledger is summed and the
        rewrite is conditioned on it, so a coin write committed in between forces another pass.
        """
        for attempt in range(1, _MAX_REBUILD_ATTEMPTS + 1):
            seen = self.balances_table.get_balance(user_id)
            totals = self.ledger_table.compute_totals(user_id)
            balance = CoinBalanceModel(
                userId=user_id,
                totalBalance=totals.total_balance,
                lifetimeEarned=totals.lifetime_earned,
                lifetimeSpent=totals.lifetime_spent,
                updatedAt=utc_now_iso(),
            )
            if self.balances_table.overwrite_balance(balance, seen=seen):
                return balance
            _LOGGER.info(f"Coins moved for {user_id} while rebuilding the balance (attempt {attempt})")
        raise RuntimeError(f"Could not rebuild the balance of {user_id} after {_MAX_REBUILD_ATTEMPTS} attempts")
