from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cohort_progress.utils import aws_env_vars
from cohort_progress.utils.ddb_utils import from_ddb_value, parse_iso, to_ddb_item, to_ddb_value


def test_table_names_come_from_environment() -> None:
    assert aws_env_vars.get_weeks_table_name() == "test-weeks-table"
    assert aws_env_vars.get_coin_ledger_table_name() == "test-coin-ledger-table"


def test_missing_table_name_raises(monkeypatch) -> None:
    monkeypatch.delenv("WEEK_PROGRESS_TABLE_NAME")
    with pytest.raises(ValueError, match="WEEK_PROGRESS_TABLE_NAME"):
        aws_env_vars.get_week_progress_table_name()


def test_time_settings_default(monkeypatch) -> None:
    monkeypatch.delenv("DEFAULT_MIN_TIME_REQUIRED_SECONDS", raising=False)
    monkeypatch.delenv("MAX_TRACKED_SECONDS", raising=False)
    assert aws_env_vars.get_default_min_time_required_seconds() == 120
    assert aws_env_vars.get_max_tracked_seconds() == 86400


def test_time_settings_override(monkeypatch) -> None:
    monkeypatch.setenv("DEFAULT_MIN_TIME_REQUIRED_SECONDS", "300")
    assert aws_env_vars.get_default_min_time_required_seconds() == 300

    monkeypatch.setenv("MAX_TRACKED_SECONDS", "lots")
    with pytest.raises(ValueError):
        aws_env_vars.get_max_tracked_seconds()


def test_parse_iso() -> None:
    assert parse_iso("2025-03-01T12:00:00Z") == datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
    assert parse_iso("2025-03-01T12:00:00") == datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
    assert parse_iso(None) is None


def test_floats_become_decimals() -> None:
    item = to_ddb_item({"pct": 66.67, "flag": True, "nested": {"xs": [0.5, 2]}, "missing": None})

    assert item == {"pct": Decimal("66.67"), "flag": True, "nested": {"xs": [Decimal("0.5"), 2]}}
    assert to_ddb_value(3) == 3


def test_decimals_become_python_numbers() -> None:
    value = from_ddb_value({"count": Decimal("3"), "pct": Decimal("66.67"), "items": [Decimal("1.0")]})

    assert value == {"count": 3, "pct": 66.67, "items": [1]}
    assert isinstance(value["count"], int)
