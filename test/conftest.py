"""
Pytest configuration and fixtures for all tests.

This file contains fixtures that are automatically available to all test files.
"""

import os
import typing

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """
    Sets up environment variables required for all tests.

    Runs once per test session (autouse=True). The values mirror what the Lambda
    functions receive from their deployment configuration.
    """
    # AWS Configuration
    os.environ["AWS_REGION"] = "us-west-1"

    # DynamoDB Table Names
    os.environ["WEEKS_TABLE_NAME"] = "test-weeks-table"
    os.environ["CONTENT_UNITS_TABLE_NAME"] = "test-content-units-table"
    os.environ["COMPLETION_RECORDS_TABLE_NAME"] = "test-completion-records-table"
    os.environ["COIN_LEDGER_TABLE_NAME"] = "test-coin-ledger-table"
    os.environ["COIN_BALANCES_TABLE_NAME"] = "test-coin-balances-table"
    os.environ["WEEK_PROGRESS_TABLE_NAME"] = "test-week-progress-table"

    # Embedded metrics are printed to stdout instead of sent to an agent
    os.environ["AWS_EMF_ENVIRONMENT"] = "Local"

    yield


@pytest.fixture(scope="function")
def aws_credentials() -> typing.Iterator[None]:
    """
    Mocks AWS credentials for moto.

    Used by the DynamoDB and service tests that run inside `mock_aws()`.
    """
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-west-1"
    yield
    # Clean up after each test
    del os.environ["AWS_ACCESS_KEY_ID"]
    del os.environ["AWS_SECRET_ACCESS_KEY"]
    del os.environ["AWS_SECURITY_TOKEN"]
    del os.environ["AWS_SESSION_TOKEN"]
    del os.environ["AWS_DEFAULT_REGION"]
