# invoice_billing/conftest.py

import pytest

from invoice_billing.core.clock import FrozenClock
from invoice_billing.core.database import create_all_tables, dispose_engine, init_engine
from invoice_billing.core.metrics import METRICS
from invoice_billing.features.billing.notifications import RecordingNotifier
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.features.billing.retry_scheduler import RetryPolicy
from invoice_billing.features.billing.service import set_orchestrator
from invoice_billing.features.billing.store import InMemoryBillingStore
from invoice_billing.features.plans.catalog import PlanCatalog
from invoice_billing.tests.mocks import T0, ScriptedProcessor


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """Keep tests off any developer DATABASE_URL and reset process-wide state."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    METRICS.reset()
    yield
    set_orchestrator(None)
    METRICS.reset()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def store():
    return InMemoryBillingStore()


@pytest.fixture
def catalog():
    return PlanCatalog()


@pytest.fixture
def processor():
    return ScriptedProcessor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def billing(store, catalog, processor, notifier, clock):
    return BillingOrchestrator(
        store=store,
        catalog=catalog,
        processor=processor,
        notifier=notifier,
        clock=clock,
        policy=RetryPolicy(),
        worker_id="test-worker",
    )


@pytest.fixture
def sqlite_db(tmp_path):
    """File-backed SQLite database with all billing tables."""
    init_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    create_all_tables()
    yield
    dispose_engine()
