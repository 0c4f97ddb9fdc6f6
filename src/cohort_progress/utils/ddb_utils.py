import typing
from datetime import datetime, timezone
from decimal import Decimal

from cohort_progress.utils.base_types import IsoTimestamp


def utc_now_iso() -> IsoTimestamp:
    return IsoTimestamp(datetime.now(timezone.utc).isoformat())


def parse_iso(timestamp: typing.Optional[str]) -> typing.Optional[datetime]:
    if not timestamp:
        return None
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_ddb_value(value: typing.Any) -> typing.Any:
    """
    Converts a python value into something the boto3 DynamoDB serializer accepts.
    DynamoDB rejects floats, so they are written as Decimal via their string form.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_ddb_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_ddb_value(v) for v in value]
    return value


def to_ddb_item(model_dump: dict[str, typing.Any]) -> dict[str, typing.Any]:
    return {k: to_ddb_value(v) for k, v in model_dump.items() if v is not None}


def from_ddb_value(value: typing.Any) -> typing.Any:
    """Reverses the Decimal encoding DynamoDB applies to every number."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_ddb_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_ddb_value(v) for v in value]
    return value
