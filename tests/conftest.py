"""
Pytest configuration and shared fixtures for custody ledger tests.
"""
import pytest
from core.database.connection import DatabaseManager
from core.logging import reset_logging
from core.monitoring import get_metrics_for_testing
from services.custodian.simulated import SimulatedCustodianGateway
from tests.fixtures.ledger_fixtures import Components, build_components, make_settings


@pytest.fixture
def test_settings(tmp_path):
    """Test settings configuration."""
    return make_settings(tmp_path)


@pytest.fixture
async def db_manager(test_settings):
    db = DatabaseManager(test_settings.database.url, environment=test_settings.environment)
    await db.init()
    yield db
    await db.shutdown()


@pytest.fixture
def metrics():
    return get_metrics_for_testing()


@pytest.fixture
def gateway(metrics):
    return SimulatedCustodianGateway(name="TestCustodian", metrics=metrics)


@pytest.fixture
def components(test_settings, db_manager, gateway, metrics) -> Components:
    return build_components(test_settings, db_manager, gateway, metrics)


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    reset_logging()
