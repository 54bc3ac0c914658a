"""
Pytest configuration and fixtures for the MCP Gateway topology tests
"""
import os
import sys
from pathlib import Path

import pytest

# Add src and the CDK app directory to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "infrastructure"))
sys.path.insert(0, str(project_root / "src"))

from mcpgw_topology.parameters import resolve  # noqa: E402

FIXED_SECRET = "0123456789abcdef0123456789abcdef"


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: marks tests as fast unit tests"
    )
    config.addinivalue_line(
        "markers", "property: marks hypothesis property tests"
    )
    config.addinivalue_line(
        "markers", "cdk: marks tests that synthesize CDK stacks (slow)"
    )


@pytest.fixture(autouse=True)
def aws_test_credentials(monkeypatch):
    """Keep boto3 away from real accounts"""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def secret_generator():
    return lambda: FIXED_SECRET


@pytest.fixture
def base_inputs():
    """Minimum inputs for complete and infrastructure-only deployments"""
    return {
        "domainName": "mcp.example.com",
        "adminPassword": "Sup3r-Secret!",
    }


@pytest.fixture
def app_only_inputs(base_inputs):
    """Inputs for application-only deployments onto existing infrastructure"""
    return {
        **base_inputs,
        "efsFileSystemId": "fs-0123456789abcdef0",
        "certificateArn": "arn:aws:acm:us-east-1:123456789012:certificate/abc-123",
        "cognitoUserPoolId": "us-east-1_ABCDEF123",
        "cognitoClientId": "client123",
        "cognitoClientSecret": "client-secret-value",
    }


@pytest.fixture
def complete_params(base_inputs, secret_generator):
    return resolve("complete", base_inputs, {}, secret_generator)


@pytest.fixture
def infra_params(base_inputs, secret_generator):
    return resolve("infrastructure-only", base_inputs, {}, secret_generator)


@pytest.fixture
def app_only_params(app_only_inputs, secret_generator):
    return resolve("application-only", app_only_inputs, {}, secret_generator)
