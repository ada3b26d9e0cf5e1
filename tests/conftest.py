"""
DriftScore - Shared test fixtures
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from driftscore.config import Settings
from driftscore.detection.base import Resource, StaticResourceProvider
from driftscore.detection.rules import load_ruleset
from driftscore.engine import DriftScoreEngine
from driftscore.store.memory import MemoryStore

USER = "user-1"


def make_settings(**overrides) -> Settings:
    values = {"app_env": "testing", "store_backend": "memory", "detection_workers": 4}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def bucket(resource_id="bucket-1", encrypted=True, **extra) -> Resource:
    config = {"encryption": {"enabled": encrypted}, "versioning": {"enabled": True}}
    config.update(extra)
    return Resource(resource_id=resource_id, provider="aws", resource_type="s3-bucket", configuration=config)


def security_group(resource_id="sg-1", cidr="10.0.0.0/8") -> Resource:
    return Resource(
        resource_id=resource_id,
        provider="aws",
        resource_type="security-group",
        configuration={"ingress": [{"port": 22, "cidr": cidr}]},
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture(scope="session")
def ruleset():
    return load_ruleset(make_settings().security_rules_path)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def provider():
    return StaticResourceProvider()


@pytest.fixture
def make_engine(store, provider, ruleset):
    """Build an engine over the shared store/provider with setting overrides."""
    def _make(**overrides):
        return DriftScoreEngine(
            store=store,
            provider=provider,
            settings=make_settings(**overrides),
            ruleset=ruleset,
        )
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()
