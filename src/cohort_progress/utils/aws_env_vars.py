import os

DEFAULT_MIN_TIME_REQUIRED_SECONDS = 120
DEFAULT_MAX_TRACKED_SECONDS = 86400


def _get_resource_by_env_var(env_var: str) -> str:
    table_name = os.environ.get(env_var)
    if not table_name:
        raise ValueError(f"Missing environment variable: {env_var}")
    return table_name


def _get_int_env_var(env_var: str, default: int) -> int:
    value = os.environ.get(env_var)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {env_var} must be an integer, got: {value}")


def get_aws_region() -> str:
    return _get_resource_by_env_var("AWS_REGION")


def get_weeks_table_name() -> str:
    return _get_resource_by_env_var("WEEKS_TABLE_NAME")


def get_content_units_table_name() -> str:
    return _get_resource_by_env_var("CONTENT_UNITS_TABLE_NAME")


def get_completion_records_table_name() -> str:
    return _get_resource_by_env_var("COMPLETION_RECORDS_TABLE_NAME")


def get_coin_ledger_table_name() -> str:
    return _get_resource_by_env_var("COIN_LEDGER_TABLE_NAME")


def get_coin_balances_table_name() -> str:
    return _get_resource_by_env_var("COIN_BALANCES_TABLE_NAME")


def get_week_progress_table_name() -> str:
    return _get_resource_by_env_var("WEEK_PROGRESS_TABLE_NAME")


def get_default_min_time_required_seconds() -> int:
    """
    Minimum time a content unit must be viewed before it can be completed,
    used when the unit itself does not configure one.
    """
    return _get_int_env_var("DEFAULT_MIN_TIME_REQUIRED_SECONDS", DEFAULT_MIN_TIME_REQUIRED_SECONDS)


def get_max_tracked_seconds() -> int:
    return _get_int_env_var("MAX_TRACKED_SECONDS", DEFAULT_MAX_TRACKED_SECONDS)
