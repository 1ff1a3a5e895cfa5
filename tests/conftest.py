"""
Pytest configuration and shared fixtures for the matching service tests.
"""
import pytest
import os
import sys
from datetime import datetime, timezone
from unittest.mock import Mock, patch

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from venturematch.adapters.memory_store import InMemoryMatchStore, InMemoryProfileStore
from venturematch.schemas.profile import parse_profile
from venturematch.services.compatibility_service import CompatibilityScorer, ScoringConfig
from venturematch.utils.cache import MemoryCache

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

NEW_YORK = {"latitude": 40.7128, "longitude": -74.0060}
BOSTON = {"latitude": 42.3601, "longitude": -71.0589}


@pytest.fixture(autouse=True)
def mock_environment():
    """Ensure environment variables are set for testing."""
    env_vars = {
        'CACHE_BACKEND': 'memory',
        'CACHE_ENABLED': 'true',
        'INDEX_BACKEND': 'memory',
        'RATE_LIMIT_ENABLED': 'false',
        'LOG_LEVEL': 'WARNING',
        'REDIS_URL': 'redis://localhost:6380/0',
        'CELERY_TASK_ALWAYS_EAGER': 'true',
        'API_KEY': 'test-api-key',
        'ADMIN_API_KEY': 'test-admin-key',
        'ENVIRONMENT': 'test',
    }
    with patch.dict(os.environ, env_vars):
        yield


def make_entrepreneur(profile_id="e1", **overrides):
    record = {
        "id": profile_id,
        "role": "entrepreneur",
        "project_name": "LedgerLoop",
        "industries": ["Tech", "Finance"],
        "desired_investment_amount": 500000,
        "business_type": "SaaS",
        "features": ["Payments API"],
        "years_experience": 5,
        "verification_level": "BusinessPlan",
        "location": NEW_YORK,
        "email_verified": True,
        "phone_verified": True,
        "photo_url": "https://cdn.example.com/e.png",
    }
    record.update(overrides)
    return parse_profile(record)


def make_funder(profile_id="f1", **overrides):
    record = {
        "id": profile_id,
        "role": "funder",
        "name": "Harbor Ventures",
        "areas_of_interest": ["Tech", "Healthcare"],
        "investment_range": {"min": 250000, "max": 1000000},
        "available_funds": 2000000,
        "certifications": ["Accredited Investor"],
        "years_experience": 10,
        "verification_level": "UseCase",
        "location": NEW_YORK,
        "email_verified": True,
        "phone_verified": True,
        "photo_url": "https://cdn.example.com/f.png",
    }
    record.update(overrides)
    return parse_profile(record)


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def scorer(fixed_clock):
    return CompatibilityScorer(config=ScoringConfig(), clock=fixed_clock)


@pytest.fixture
def profiles():
    """A small marketplace: two entrepreneurs and three funders."""
    return [
        make_entrepreneur("e1"),
        make_entrepreneur(
            "e2",
            project_name="CareBridge",
            industries=["Healthcare"],
            desired_investment_amount=2000000,
            years_experience=12,
            location=BOSTON,
        ),
        make_funder("f1"),
        make_funder(
            "f2",
            name="Corner Capital",
            areas_of_interest=["Retail"],
            investment_range={"min": 10000, "max": 50000},
            years_experience=2,
            location=None,
            verification_level="None",
        ),
        make_funder(
            "f3",
            name="Summit Partners",
            areas_of_interest=["Tech", "Finance"],
            investment_range={"min": 400000, "max": 600000},
            subscription_tier="Gold",
        ),
    ]


@pytest.fixture
def profile_store(profiles):
    return InMemoryProfileStore(profiles)


@pytest.fixture
def match_store():
    return InMemoryMatchStore()


@pytest.fixture
def memory_cache():
    return MemoryCache(default_ttl=300)


@pytest.fixture
def mock_redis():
    """Return a mocked Redis client."""
    with patch('redis.from_url') as mock:
        mock_client = Mock()
        mock_client.ping.return_value = True
        mock_client.get.return_value = None
        mock_client.setex.return_value = True
        mock.return_value = mock_client
        yield mock_client
