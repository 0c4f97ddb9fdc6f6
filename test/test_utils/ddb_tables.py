import typing

REGION = "us-west-1"

WEEKS_TABLE_NAME = "test-weeks-table"
CONTENT_UNITS_TABLE_NAME = "test-content-units-table"
COMPLETION_RECORDS_TABLE_NAME = "test-completion-records-table"
COIN_LEDGER_TABLE_NAME = "test-coin-ledger-table"
COIN_BALANCES_TABLE_NAME = "test-coin-balances-table"
WEEK_PROGRESS_TABLE_NAME = "test-week-progress-table"


def create_weeks_table(dynamodb) -> typing.Any:
    table = dynamodb.create_table(
        TableName=WEEKS_TABLE_NAME,
        KeySchema=[{"AttributeName": "weekId", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "weekId", "AttributeType": "S"},
            {"AttributeName": "cohortId", "AttributeType": "S"},
            {"AttributeName": "weekNumber", "AttributeType": "N"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "CohortWeekNumberIndex",
                "KeySchema": [
                    {"AttributeName": "cohortId", "KeyType": "HASH"},
                    {"AttributeName": "weekNumber", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


def create_content_units_table(dynamodb) -> typing.Any:
    table = dynamodb.create_table(
        TableName=CONTENT_UNITS_TABLE_NAME,
        KeySchema=[{"AttributeName": "unitId", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "unitId", "AttributeType": "S"},
            {"AttributeName": "weekId", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "WeekContentUnitsIndex",
                "KeySchema": [{"AttributeName": "weekId", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


def _create_user_table(dynamodb, table_name: str, sort_key: typing.Optional[str]) -> typing.Any:
    key_schema = [{"AttributeName": "userId", "KeyType": "HASH"}]
    attribute_definitions = [{"AttributeName": "userId", "AttributeType": "S"}]
    if sort_key:
        key_schema.append({"AttributeName": sort_key, "KeyType": "RANGE"})
        attribute_definitions.append({"AttributeName": sort_key, "AttributeType": "S"})
    table = dynamodb.create_table(
        TableName=table_name,
        KeySchema=key_schema,
        AttributeDefinitions=attribute_definitions,
        BillingMode="PAY_PER_REQUEST",
    )
    table.wait_until_exists()
    return table


def create_completion_records_table(dynamodb) -> typing.Any:
    return _create_user_table(dynamodb, COMPLETION_RECORDS_TABLE_NAME, "unitId")


def create_coin_ledger_table(dynamodb) -> typing.Any:
    return _create_user_table(dynamodb, COIN_LEDGER_TABLE_NAME, "entryId")


def create_coin_balances_table(dynamodb) -> typing.Any:
    return _create_user_table(dynamodb, COIN_BALANCES_TABLE_NAME, None)


def create_week_progress_table(dynamodb) -> typing.Any:
    return _create_user_table(dynamodb, WEEK_PROGRESS_TABLE_NAME, "weekId")


def create_all_tables(dynamodb) -> None:
    create_weeks_table(dynamodb)
    create_content_units_table(dynamodb)
    create_completion_records_table(dynamodb)
    create_coin_ledger_table(dynamodb)
    create_coin_balances_table(dynamodb)
    create_week_progress_table(dynamodb)
