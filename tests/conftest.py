"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile
from decimal import Decimal

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from core.config import LedgerConfig
from credit.aging import AgingService
from credit.allocator import SettlementAllocator
from credit.ledger import CreditLedger
from metering.pricing import PriceResolver
from metering.readings import MeterReadingLedger
from persistence.database import Database
from persistence.models import NozzleRecord, StationRecord
from persistence.repository import NozzleRepository, StationRepository
from reconciliation.daily import DailyTransactionReconciler

STATION_ID = "stn-highway"
OTHER_STATION_ID = "stn-market"


def _remove(path):
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"

    yield db_path

    _remove(db_path)


@pytest.fixture
def config(temp_db):
    return LedgerConfig(
        database_url=f"sqlite:///{temp_db}",
        tolerance=Decimal("0.01"),
        lock_timeout_seconds=10.0,
    )


@pytest.fixture
def db(config):
    database = Database(config.database_url, config.lock_timeout_seconds)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def station(db):
    stations = StationRepository(db)
    stations.create(StationRecord(station_id=OTHER_STATION_ID, name="Market Road"))
    return stations.create(StationRecord(station_id=STATION_ID, name="Highway Fuels"))


def make_nozzle(db, nozzle_id, fuel_type="petrol", initial_reading="1000", station_id=STATION_ID, number=1):
    return NozzleRepository(db).create(NozzleRecord(
        nozzle_id=nozzle_id,
        station_id=station_id,
        pump_id="pump-1",
        nozzle_number=number,
        fuel_type=fuel_type,
        initial_reading=Decimal(initial_reading),
    ))


@pytest.fixture
def nozzle(db, station):
    """Petrol nozzle with a 1000 L baseline."""
    return make_nozzle(db, "nz-petrol-1")


@pytest.fixture
def second_nozzle(db, station):
    return make_nozzle(db, "nz-petrol-2", initial_reading="500", number=2)


@pytest.fixture
def prices(db):
    return PriceResolver(db)


@pytest.fixture
def petrol_price(prices, station):
    """Petrol at 100.00 from the start of 2024, cost 92.00."""
    return prices.set_price(STATION_ID, "petrol", "100", "2024-01-01", cost_price="92")


@pytest.fixture
def readings(db, prices, config):
    return MeterReadingLedger(db, prices, config)


@pytest.fixture
def allocator(db, config):
    return SettlementAllocator(db, config)


@pytest.fixture
def credit(db, config, allocator):
    return CreditLedger(db, config, allocator)


@pytest.fixture
def reconciler(db, credit, config):
    return DailyTransactionReconciler(db, credit, config)


@pytest.fixture
def aging(db):
    return AgingService(db)


@pytest.fixture
def creditor(credit, station):
    """Creditor with a 10,000 limit."""
    return credit.create_creditor(STATION_ID, "Sharma Transport", credit_limit="10000")


def assert_balance_matches_log(credit, creditor_id):
    check = credit.reconcile_balance(creditor_id)
    assert check.consistent, check.to_dict()
    return check
