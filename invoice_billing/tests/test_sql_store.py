"""
Persistence tests for the SQLAlchemy billing store (temp-file SQLite).
"""

import json
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from invoice_billing.core.database import billing_job_runs, check_connection, get_db_session, payment_failures
from invoice_billing.core.errors import FailureAlreadyOpen
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.features.billing.retry_scheduler import RetryScheduler
from invoice_billing.features.billing.sql_store import SqlBillingStore
from invoice_billing.models.account import Account, PlanPeriodStatus
from invoice_billing.models.credit import CreditBalance
from invoice_billing.models.payment_failure import FailureStatus
from invoice_billing.tests.mocks import T0


@pytest.fixture
def sql_store(sqlite_db):
    store = SqlBillingStore()
    store.save_account(Account(account_id="acct-1", plan="pro", plan_assigned_at=T0, created_at=T0))
    return store


def _new_failure(account_id="acct-1"):
    return RetryScheduler().open(account_id, "pro", Decimal("299.00"), "card_declined", T0, timedelta(days=7))


def test_check_connection(sqlite_db):
    assert check_connection() is True


def test_sqlite_does_not_take_advisory_locks(sql_store):
    assert sql_store._use_advisory_lock is False
    with sql_store.account_lock("acct-1"):
        with sql_store.account_lock("acct-1"):
            pass


def test_account_round_trip_is_utc_aware(sql_store):
    account = sql_store.get_account("acct-1")

    assert account.plan == "pro"
    assert account.created_at == T0
    assert account.created_at.tzinfo is not None

    sql_store.save_account(account.model_copy(update={"plan": "free", "plan_assigned_at": T0 + timedelta(days=1)}))
    assert sql_store.get_account("acct-1").plan == "free"
    assert sql_store.get_account("missing") is None


def test_account_failure_counters_persist(sql_store):
    account = sql_store.get_account("acct-1")
    assert account.payment_failure_count == 0
    assert account.last_payment_failure_at is None

    sql_store.save_account(account.model_copy(update={
        "payment_failure_count": 2,
        "last_payment_failure_at": T0 + timedelta(hours=7),
    }))

    loaded = sql_store.get_account("acct-1")
    assert loaded.payment_failure_count == 2
    assert loaded.last_payment_failure_at == T0 + timedelta(hours=7)


def test_plan_change_closes_active_period(sql_store):
    sql_store.record_plan_change("acct-1", "pro", T0, PlanPeriodStatus.CHANGED)
    opened = sql_store.record_plan_change("acct-1", "free", T0 + timedelta(days=7), PlanPeriodStatus.PAYMENT_FAILED)

    history = sql_store.list_plan_history("acct-1")

    assert len(history) == 2
    assert history[0].id == opened.id
    assert history[0].plan == "free"
    assert history[0].status == PlanPeriodStatus.ACTIVE
    assert history[0].ended_at is None
    assert history[1].plan == "pro"
    assert history[1].status == PlanPeriodStatus.PAYMENT_FAILED
    assert history[1].ended_at == T0 + timedelta(days=7)
    assert sql_store.list_plan_history("missing") == []


def test_balance_insert_then_update(sql_store):
    balance = CreditBalance(
        account_id="acct-1", email_used=3, cycle_start=T0, cycle_end=T0 + timedelta(days=31), anchor_day=15
    )
    sql_store.save_balance(balance)
    sql_store.save_balance(balance.model_copy(update={"email_used": 4, "sms_used": 1}))

    loaded = sql_store.get_balance("acct-1")

    assert loaded.email_used == 4
    assert loaded.sms_used == 1
    assert loaded.cycle_end == T0 + timedelta(days=31)
    assert loaded.anchor_day == 15


def test_failure_round_trip(sql_store):
    stored = sql_store.insert_failure(_new_failure())

    loaded = sql_store.get_failure(stored.id)

    assert loaded == stored
    assert loaded.amount == Decimal("299.00")
    assert loaded.status == FailureStatus.PENDING
    assert sql_store.find_active_failure("acct-1").id == stored.id


def test_second_active_failure_rejected(sql_store):
    first = sql_store.insert_failure(_new_failure())

    with pytest.raises(FailureAlreadyOpen) as exc:
        sql_store.insert_failure(_new_failure())

    assert exc.value.failure_id == first.id


def test_partial_unique_index_guards_active_rows(sql_store):
    sql_store.insert_failure(_new_failure())
    row = {
        "account_id": "acct-1",
        "plan_id": "pro",
        "amount": Decimal("1.00"),
        "retry_count": 0,
        "max_retries": 3,
        "grace_until": T0,
        "status": "retrying",
        "created_at": T0,
        "updated_at": T0,
    }

    with pytest.raises(IntegrityError):
        with get_db_session() as session:
            session.execute(insert(payment_failures).values(**row))

    # Closed rows do not count against the index
    with get_db_session() as session:
        session.execute(insert(payment_failures).values(**{**row, "status": "succeeded"}))


def test_list_failures_newest_first_with_status_filter(sql_store):
    first = sql_store.insert_failure(_new_failure())
    sql_store.save_failure(first.model_copy(update={"status": FailureStatus.MANUALLY_RESOLVED}))
    later = _new_failure().model_copy(update={"created_at": T0 + timedelta(days=1)})
    second = sql_store.insert_failure(later)

    assert [f.id for f in sql_store.list_failures("acct-1")] == [second.id, first.id]
    active = sql_store.list_failures("acct-1", [FailureStatus.PENDING, FailureStatus.RETRYING])
    assert [f.id for f in active] == [second.id]


def test_list_due_failures(sql_store):
    failure = sql_store.insert_failure(_new_failure())
    window = timedelta(days=2)

    assert sql_store.list_due_failures(T0 + timedelta(minutes=30), window, 10) == []
    assert [f.id for f in sql_store.list_due_failures(T0 + timedelta(hours=1), window, 10)] == [failure.id]

    exhausted = failure.model_copy(update={"next_retry_at": None, "retry_count": 3})
    sql_store.save_failure(exhausted)
    assert sql_store.list_due_failures(T0 + timedelta(days=1), window, 10) == []
    # grace warning window, then grace deadline
    assert len(sql_store.list_due_failures(T0 + timedelta(days=5), window, 10)) == 1
    sql_store.save_failure(exhausted.model_copy(update={"grace_warning_sent_at": T0 + timedelta(days=5)}))
    assert sql_store.list_due_failures(T0 + timedelta(days=6), window, 10) == []
    assert len(sql_store.list_due_failures(T0 + timedelta(days=7), window, 10)) == 1


def test_record_job_run(sql_store):
    sql_store.record_job_run("payment_retry_sweep", T0, T0 + timedelta(seconds=2), "completed", {"due": 2})

    with get_db_session() as session:
        row = session.execute(select(billing_job_runs)).fetchone()

    assert row.job_name == "payment_retry_sweep"
    assert row.status == "completed"
    assert json.loads(row.stats_json) == {"due": 2}


def test_orchestrator_flow_on_sql_store(sqlite_db, catalog, processor, clock):
    billing = BillingOrchestrator(store=SqlBillingStore(), catalog=catalog, processor=processor, clock=clock)
    billing.open_account("acct-sql", plan="solo")
    billing.request_credit("acct-sql", "sms", 10)
    failure = billing.record_failure("acct-sql", "solo", "149")

    for hours in (1, 3, 7):
        clock.set(T0 + timedelta(hours=hours))
        billing.process_due_retries()
    clock.set(T0 + timedelta(days=7))
    report = billing.process_due_retries()

    assert report.downgraded == 1
    assert billing.get_failure(failure.id).status == FailureStatus.DOWNGRADED
    assert billing.get_account("acct-sql").plan == "free"
    assert billing.check_credit("acct-sql", "sms", 1) == (False, 0)
    assert [p.plan for p in billing.plan_history("acct-sql")] == ["free", "solo"]
    assert billing.plan_history("acct-sql")[1].status == PlanPeriodStatus.PAYMENT_FAILED
    assert billing.get_account("acct-sql").payment_failure_count == 2
    with get_db_session() as session:
        runs = session.execute(select(billing_job_runs)).fetchall()
    assert len(runs) == 4
