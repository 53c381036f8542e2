"""Pytest configuration and fixtures."""

import json
import os

import pytest

# Set environment variables before imports
os.environ["TABLE_NAME"] = "funnelscope-test"
os.environ["FUNNEL_STORE"] = "memory"
os.environ.pop("FUNNEL_EVENT_BUS_NAME", None)
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"

# Arbitrary fixed "now" for deterministic funnel timing
BASE_TIME = 1_700_000_000_000


@pytest.fixture
def aws_credentials():
    """Mock AWS credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


@pytest.fixture
def dynamodb_table(aws_credentials):
    """Create mocked DynamoDB table."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")

        table = dynamodb.create_table(
            TableName="funnelscope-test",
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )

        table.wait_until_exists()

        yield table


class FakeClock:
    """Settable clock returning epoch milliseconds."""

    def __init__(self, now: int = BASE_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    """Deterministic analyzer clock starting at BASE_TIME."""
    return FakeClock()


@pytest.fixture
def make_event():
    """Build funnel event payloads relative to BASE_TIME."""
    def _make_event(
        event_name: str = "page-view",
        offset_ms: int = 0,
        user_id: str = "user-1",
        session_id: str | None = None,
        metadata: dict | None = None,
        **extra,
    ) -> dict:
        event = {
            "event_name": event_name,
            "timestamp": BASE_TIME + offset_ms,
            "user_id": user_id,
            "session_id": session_id or f"session-{user_id}",
            "page_url": "https://example.com/",
            "metadata": metadata or {},
        }
        event.update(extra)
        return event

    return _make_event


@pytest.fixture
def analyzer(clock):
    """Analyzer over the default funnel with an in-memory store."""
    from funnelscope.repositories.memory import InMemoryProgressStore
    from funnelscope.services.funnel_analyzer import ConversionFunnelAnalyzer

    return ConversionFunnelAnalyzer(store=InMemoryProgressStore(), clock=clock)


@pytest.fixture
def two_stage_config():
    """Minimal funnel: A entered on 'x', B entered on 'y' once A is done."""
    from funnelscope.models.stage import FunnelConfig

    return FunnelConfig.from_stages([
        {"id": "A", "name": "Stage A", "triggers": ["x"]},
        {"id": "B", "name": "Stage B", "triggers": ["y"], "required_events": ["A"], "goal_value": 100},
    ])


@pytest.fixture
def api_gateway_event():
    """Create a sample API Gateway event."""
    def _create_event(
        method: str = "GET",
        path: str = "/",
        query_params: dict = None,
        body: dict = None,
        headers: dict = None,
    ):
        return {
            "httpMethod": method,
            "path": path,
            "pathParameters": {},
            "queryStringParameters": query_params or {},
            "body": body if isinstance(body, str) else (
                json.dumps(body) if body else None
            ),
            "headers": headers or {
                "Content-Type": "application/json",
            },
            "requestContext": {},
        }

    return _create_event


@pytest.fixture
def lambda_context():
    """Minimal Lambda context object."""
    class Context:
        function_name = "funnelscope-test"
        aws_request_id = "test-request-id"

        @staticmethod
        def get_remaining_time_in_millis():
            return 30000

    return Context()
