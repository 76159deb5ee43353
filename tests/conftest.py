"""
Pytest configuration and fixtures for FinSight infrastructure tests
Provides environment profiles and the compiled plans built from them
"""
import copy
import sys
from pathlib import Path

import pytest

# Add src, infrastructure and scripts directories to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "scripts"))
sys.path.insert(0, str(project_root / "infrastructure"))
sys.path.insert(0, str(project_root / "src"))

from finsight_infra.compiler import compile_plan
from finsight_infra.config import load_profile


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: marks tests as fast unit tests"
    )
    config.addinivalue_line(
        "markers", "property: marks hypothesis property-based tests"
    )
    config.addinivalue_line(
        "markers", "cdk: marks tests that synthesize CDK stacks (needs aws-cdk-lib)"
    )


BASE_PROFILE = {
    "environment": "dev",
    "region": "ap-northeast-1",
    "auth0Domain": "finsight-test.jp.auth0.com",
    "auth0Audience": "https://api.test.finsight.example.com",
    "auth0ClientId": "test-client-id",
    "githubOwner": "finsight",
    "repositoryName": "finsight",
    "databaseConfig": {
        "instanceType": "db.t3.micro",
        "multiAz": False,
        "deletionProtection": False,
    },
    "lambdaConfig": {
        "memorySize": 256,
        "timeout": 30,
    },
    "sesConfig": {
        "fromEmail": "noreply@test.finsight.example.com",
        "sendingQuota": 200,
        "sendingRate": 1,
    },
}

PROD_OVERRIDES = {
    "environment": "prod",
    "customDomain": "finsight.example.com",
    "databaseConfig": {
        "instanceType": "db.t3.small",
        "multiAz": True,
        "deletionProtection": True,
    },
    "sesConfig": {
        "fromEmail": "noreply@finsight.example.com",
        "sendingQuota": 50000,
        "sendingRate": 14,
        "bounceEmail": "bounces@finsight.example.com",
        "complaintEmail": "complaints@finsight.example.com",
    },
}


def make_profile_data(production: bool = False, **overrides):
    """Raw profile dict; top-level keys in overrides replace the defaults"""
    data = copy.deepcopy(BASE_PROFILE)
    if production:
        data.update(copy.deepcopy(PROD_OVERRIDES))
    data.update(overrides)
    return data


@pytest.fixture
def profile_data():
    return make_profile_data()


@pytest.fixture
def dev_profile():
    return load_profile(make_profile_data())


@pytest.fixture
def prod_profile():
    return load_profile(make_profile_data(production=True))


@pytest.fixture
def dev_plan(dev_profile):
    return compile_plan(dev_profile)


@pytest.fixture
def prod_plan(prod_profile):
    return compile_plan(prod_profile)
