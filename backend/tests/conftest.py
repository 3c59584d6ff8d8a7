"""
Shared fixtures for the settlement test suite.

Services run against the in-memory Motor double in fakes.py. `client`
reports replica-set support (transactions on); `standalone_client` does
not, so scopes built on it run in degraded sequential mode.
"""

import pytest

from audit_service import AuditService
from settlement.commission_resolver import CommissionCalculator
from settlement.commission_store import CommissionRateStore
from settlement.disbursement_service import FinanceDisbursementService
from settlement.ledger_service import LedgerService
from settlement.transaction_scope import TransactionScope

from fakes import FakeMongoClient


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def client():
    """Fake client answering `hello` as a replica set member."""
    return FakeMongoClient(replica_set=True)


@pytest.fixture
def standalone_client():
    """Fake client answering `hello` as a standalone mongod."""
    return FakeMongoClient(replica_set=False)


@pytest.fixture
def db(client):
    return client.db


@pytest.fixture
def standalone_db(standalone_client):
    return standalone_client.db


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def audit(db):
    return AuditService(db)


@pytest.fixture
def ledger_service(client, db, audit):
    return LedgerService(db, TransactionScope(client), audit)


@pytest.fixture
def degraded_ledger_service(standalone_client, standalone_db):
    return LedgerService(standalone_db, TransactionScope(standalone_client), AuditService(standalone_db))


@pytest.fixture
def disbursement_service(db, ledger_service):
    return FinanceDisbursementService(db, ledger_service)


@pytest.fixture
def commission_store(db, audit):
    return CommissionRateStore(db, audit)


@pytest.fixture
def commission_calculator(db):
    return CommissionCalculator(db)
