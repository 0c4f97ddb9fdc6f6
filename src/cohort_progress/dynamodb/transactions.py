import logging
import typing

import boto3
from botocore.exceptions import ClientError

_LOGGER = logging.getLogger(__name__)
_LOGGER.setLevel(logging.INFO)

TransactItem = dict[str, typing.Any]


def is_conditional_check_failure(e: ClientError) -> bool:
    return e.response["Error"]["Code"] == "ConditionalCheckFailedException"


def is_transaction_cancelled(e: ClientError) -> bool:
    return e.response["Error"]["Code"] == "TransactionCanceledException"


class TransactionWriter:
    """
    Executes DynamoDB TransactWriteItems across the progress tables. Either every item is written
    or none is. Uses the resource-level client so items can be plain python values.
    """

    def __init__(self) -> None:
        self.client = boto3.resource("dynamodb").meta.client

    def write(self, transact_items: list[TransactItem]) -> None:
        """
        :raises ClientError: TransactionCanceledException when any condition fails; the caller decides
            whether the cancellation means "already done" or "retry".
        """
        if not transact_items:
            return
        try:
            self.client.transact_write_items(TransactItems=transact_items)
            _LOGGER.debug(f"Committed transaction with {len(transact_items)} item(s).")
        except ClientError as e:
            if is_transaction_cancelled(e):
                reasons = e.response.get("CancellationReasons", [])
                _LOGGER.info(f"Transaction cancelled. Reasons: {reasons}")
            else:
                _LOGGER.error(f"Transaction failed: {e.response['Error']['Message']}", exc_info=True)
            raise
