"""
Flow tests for the billing orchestrator: failure recording, sweeps, manual
retries, downgrades and the races between them.
"""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from invoice_billing.core.errors import (
    FailureAlreadyOpen,
    InvalidTransition,
    NonRetryableDecline,
    ProcessorUnavailable,
    RecordNotFound,
    UnknownPlan,
    ValidationError,
)
from invoice_billing.core.metrics import payment_retry_attempts_total, plan_downgrades_total
from invoice_billing.features.billing import notifications
from invoice_billing.features.billing.orchestrator import BillingOrchestrator
from invoice_billing.features.billing.processor import ChargeResult
from invoice_billing.features.billing.retry_scheduler import RetryPolicy
from invoice_billing.models.account import PlanPeriodStatus
from invoice_billing.models.payment_failure import FailureStatus, LatestFailure
from invoice_billing.tests.mocks import T0, ExplodingNotifier, GatedProcessor

OK = ChargeResult(success=True, reference="ch_1")
DECLINED = ChargeResult(success=False, reason="insufficient_funds")


@pytest.fixture
def account(billing):
    return billing.open_account("acct-1", plan="pro")


def _gated_billing(store, catalog, clock, result):
    gate = GatedProcessor(result)
    orchestrator = BillingOrchestrator(
        store=store, catalog=catalog, processor=gate, clock=clock, policy=RetryPolicy(), worker_id="sweeper",
    )
    return orchestrator, gate


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

def test_open_account_defaults_to_free_and_is_idempotent(billing):
    first = billing.open_account("acct-9")
    again = billing.open_account("acct-9", plan="pro")

    assert first.plan == "free"
    assert again == first


def test_assign_plan_keeps_usage(billing, account):
    billing.request_credit("acct-1", "email", 10)

    updated = billing.assign_plan("acct-1", "business")

    assert updated.plan == "business"
    assert billing.credit_usage("acct-1").credits["email"].used == 10


def test_assign_unknown_plan(billing, account):
    with pytest.raises(UnknownPlan):
        billing.assign_plan("acct-1", "platinum")


def test_plan_history_records_each_change(billing, clock):
    billing.open_account("acct-h")
    clock.set(T0 + timedelta(days=1))
    billing.assign_plan("acct-h", "pro")
    billing.assign_plan("acct-h", "pro")

    history = billing.plan_history("acct-h")

    assert [(p.plan, p.status) for p in history] == [
        ("pro", PlanPeriodStatus.ACTIVE),
        ("free", PlanPeriodStatus.CHANGED),
    ]
    assert history[0].started_at == T0 + timedelta(days=1)
    assert history[0].ended_at is None
    assert history[1].started_at == T0
    assert history[1].ended_at == T0 + timedelta(days=1)


# ---------------------------------------------------------------------------
# Recording failures
# ---------------------------------------------------------------------------

def test_record_failure_opens_grace_period(billing, account, notifier):
    failure = billing.record_failure("acct-1", "pro", "299.00", "card_declined")

    assert failure.id is not None
    assert failure.status == FailureStatus.PENDING
    assert failure.amount == Decimal("299.00")
    assert failure.grace_until == T0 + timedelta(days=7)
    assert failure.next_retry_at == T0 + timedelta(hours=1)
    assert notifier.types() == [notifications.GRACE_PERIOD_STARTED]


def test_enterprise_gets_longer_grace(billing):
    billing.open_account("acct-e", plan="enterprise")

    failure = billing.record_failure("acct-e", "enterprise", Decimal("999"))

    assert failure.grace_until == T0 + timedelta(days=14)


def test_second_active_failure_rejected(billing, account):
    first = billing.record_failure("acct-1", "pro", "299")

    with pytest.raises(FailureAlreadyOpen) as exc:
        billing.record_failure("acct-1", "pro", "299")

    assert exc.value.failure_id == first.id
    assert len(billing.list_failures("acct-1")) == 1


def test_new_failure_allowed_after_resolution(billing, account):
    first = billing.record_failure("acct-1", "pro", "299")
    billing.resolve_failure(first.id, note="paid in person")

    second = billing.record_failure("acct-1", "pro", "299")

    assert second.id != first.id
    assert [f.id for f in billing.list_failures("acct-1")] == [second.id, first.id]


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
def test_record_failure_rejects_bad_amount(billing, account, amount):
    with pytest.raises(ValidationError):
        billing.record_failure("acct-1", "pro", amount)


def test_record_failure_unknown_plan(billing, account):
    with pytest.raises(UnknownPlan):
        billing.record_failure("acct-1", "gold", "10")


def test_record_failure_unknown_account(billing):
    with pytest.raises(RecordNotFound):
        billing.record_failure("ghost", "pro", "10")


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

def test_full_schedule_ends_in_downgrade(billing, account, clock, processor, notifier, store):
    billing.request_credit("acct-1", "email", 50)
    failure = billing.record_failure("acct-1", "pro", "299", "card_declined")

    for hours in (1, 3, 7):
        clock.set(T0 + timedelta(hours=hours))
        report = billing.process_due_retries()
        assert report.processed == 1
        assert report.failed == 1

    current = billing.get_failure(failure.id)
    assert current.retry_count == 3
    assert current.next_retry_at is None
    assert current.status == FailureStatus.RETRYING
    assert report.exhausted == 1

    clock.set(T0 + timedelta(days=3))
    assert billing.process_due_retries().due == 0

    clock.set(T0 + timedelta(days=7))
    report = billing.process_due_retries()

    assert report.downgraded == 1
    assert len(processor.calls) == 3
    assert billing.get_failure(failure.id).status == FailureStatus.DOWNGRADED
    assert billing.get_account("acct-1").plan == "free"
    # Usage kept, limit now the free tier's
    usage = billing.credit_usage("acct-1")
    assert usage.credits["email"].used == 50
    assert usage.credits["email"].limit == 20
    assert billing.check_credit("acct-1", "email", 1) == (False, 0)
    assert plan_downgrades_total.value({"from_plan": "pro"}) == 1
    assert notifier.types() == [
        notifications.GRACE_PERIOD_STARTED,
        notifications.RETRY_FAILED,
        notifications.RETRY_FAILED,
        notifications.RETRIES_EXHAUSTED,
        notifications.PLAN_DOWNGRADED,
    ]
    assert store.job_runs[-1]["stats"]["downgraded"] == 1

    history = billing.plan_history("acct-1")
    assert [(p.plan, p.status) for p in history] == [
        ("free", PlanPeriodStatus.ACTIVE),
        ("pro", PlanPeriodStatus.PAYMENT_FAILED),
    ]
    assert history[1].ended_at == T0 + timedelta(days=7)
    # Recorded failure plus the attempt that used up the retries
    account = billing.get_account("acct-1")
    assert account.payment_failure_count == 2
    assert account.last_payment_failure_at == T0 + timedelta(hours=7)


def test_nothing_due_before_first_retry(billing, account, clock, processor):
    billing.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(minutes=59))

    report = billing.process_due_retries()

    assert report.due == 0
    assert processor.calls == []


def test_sweep_success_closes_failure(billing, account, clock, processor, notifier):
    failure = billing.record_failure("acct-1", "pro", "299")
    processor.queue(OK)
    clock.set(T0 + timedelta(hours=1))

    report = billing.process_due_retries()

    assert report.succeeded == 1
    current = billing.get_failure(failure.id)
    assert current.status == FailureStatus.SUCCEEDED
    assert current.retry_count == 0
    assert billing.get_account("acct-1").plan == "pro"
    assert notifier.types()[-1] == notifications.RETRY_SUCCEEDED
    assert payment_retry_attempts_total.value({"trigger": "sweep", "outcome": "succeeded"}) == 1


def test_failure_counters_bump_on_record_and_clear_on_success(billing, account, clock, processor):
    billing.record_failure("acct-1", "pro", "299")
    recorded = billing.get_account("acct-1")
    assert recorded.payment_failure_count == 1
    assert recorded.last_payment_failure_at == T0

    clock.set(T0 + timedelta(hours=1))
    billing.process_due_retries()
    assert billing.get_account("acct-1").payment_failure_count == 1

    processor.queue(OK)
    clock.set(T0 + timedelta(hours=3))
    billing.process_due_retries()

    cleared = billing.get_account("acct-1")
    assert cleared.payment_failure_count == 0
    assert cleared.last_payment_failure_at is None


def test_grace_warning_sent_once(billing, account, clock, notifier):
    failure = billing.record_failure("acct-1", "pro", "299")

    clock.set(T0 + timedelta(days=5, hours=1))
    first = billing.process_due_retries()
    clock.set(T0 + timedelta(days=6))
    second = billing.process_due_retries()

    assert first.warnings_sent == 1
    assert second.warnings_sent == 0
    assert notifier.types().count(notifications.GRACE_WARNING) == 1
    assert billing.get_failure(failure.id).grace_warning_sent_at == T0 + timedelta(days=5, hours=1)


def test_final_attempt_at_grace_deadline_can_rescue(billing, account, clock, processor, store):
    short = BillingOrchestrator(
        store=store,
        catalog=billing.catalog,
        processor=processor,
        clock=clock,
        policy=RetryPolicy(max_retries=10, base_interval=timedelta(days=3)),
    )
    failure = short.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(days=3))
    short.process_due_retries()
    assert short.get_failure(failure.id).next_retry_at == failure.grace_until

    processor.queue(OK)
    clock.set(failure.grace_until)
    report = short.process_due_retries()

    assert report.succeeded == 1
    assert short.get_failure(failure.id).status == FailureStatus.SUCCEEDED
    assert short.get_account("acct-1").plan == "pro"


def test_failed_final_attempt_downgrades(billing, account, clock, processor, store):
    short = BillingOrchestrator(
        store=store,
        catalog=billing.catalog,
        processor=processor,
        clock=clock,
        policy=RetryPolicy(max_retries=10, base_interval=timedelta(days=3)),
    )
    failure = short.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(days=3))
    short.process_due_retries()

    clock.set(failure.grace_until)
    report = short.process_due_retries()

    assert report.downgraded == 1
    assert short.get_failure(failure.id).status == FailureStatus.DOWNGRADED
    assert short.get_failure(failure.id).retry_count == 2


def test_processor_unavailable_counts_as_failed_attempt(billing, account, clock, processor):
    failure = billing.record_failure("acct-1", "pro", "299")
    processor.queue(ProcessorUnavailable("timeout"))
    clock.set(T0 + timedelta(hours=1))

    report = billing.process_due_retries()

    assert report.failed == 1
    assert report.errors == []
    current = billing.get_failure(failure.id)
    assert current.retry_count == 1
    assert current.failure_reason == "processor_unavailable"
    assert current.claimed_by is None


def test_non_retryable_decline_moves_to_grace_only(billing, account, clock, processor, notifier):
    failure = billing.record_failure("acct-1", "pro", "299")
    processor.queue(NonRetryableDecline("Card declined: stolen_card"))
    clock.set(T0 + timedelta(hours=1))

    billing.process_due_retries()

    current = billing.get_failure(failure.id)
    assert current.retry_count == current.max_retries
    assert current.next_retry_at is None
    assert current.status == FailureStatus.RETRYING
    assert notifier.types()[-1] == notifications.RETRIES_EXHAUSTED


def test_unexpected_processor_error_is_reported_and_claim_released(billing, account, clock, processor, store):
    failure = billing.record_failure("acct-1", "pro", "299")
    processor.queue(KeyError("boom"))
    clock.set(T0 + timedelta(hours=1))

    report = billing.process_due_retries()

    assert report.errors == [{"failure_id": failure.id, "account_id": "acct-1", "error": "KeyError"}]
    current = billing.get_failure(failure.id)
    assert current.claimed_by is None
    assert current.retry_count == 0
    assert store.job_runs[-1]["status"] == "completed_with_errors"


def test_notification_failures_never_block_billing(store, catalog, processor, clock):
    exploding = ExplodingNotifier()
    billing = BillingOrchestrator(store=store, catalog=catalog, processor=processor, notifier=exploding, clock=clock)
    billing.open_account("acct-1", plan="pro")

    failure = billing.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(hours=1))
    report = billing.process_due_retries()

    assert exploding.attempts == 2
    assert report.failed == 1
    assert billing.get_failure(failure.id).retry_count == 1


# ---------------------------------------------------------------------------
# Manual retry
# ---------------------------------------------------------------------------

def test_manual_retry_success_then_stale_sweep_does_nothing(billing, account, clock, processor):
    failure = billing.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(hours=1))
    billing.process_due_retries()
    assert billing.get_failure(failure.id).retry_count == 1

    processor.queue(OK)
    clock.set(T0 + timedelta(hours=2))
    result = billing.manual_retry(failure.id, account_id="acct-1")

    assert result.success is True
    assert result.next_retry is None
    assert result.failure.status == FailureStatus.SUCCEEDED
    assert result.failure.retry_count == 1

    clock.set(T0 + timedelta(hours=3))
    report = billing.process_due_retries()
    assert report.due == 0
    assert len(processor.calls) == 2
    assert billing.get_failure(failure.id).status == FailureStatus.SUCCEEDED


def test_manual_retry_failure_reschedules(billing, account, clock):
    failure = billing.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(minutes=10))

    result = billing.manual_retry(failure.id)

    assert result.success is False
    assert result.failure.retry_count == 1
    assert result.next_retry == T0 + timedelta(minutes=10) + timedelta(hours=2)
    assert "scheduled" in result.message


def test_manual_retry_allowed_after_exhaustion(billing, account, clock, processor):
    failure = billing.record_failure("acct-1", "pro", "299")
    for minutes in (1, 2, 3):
        clock.set(T0 + timedelta(minutes=minutes))
        billing.manual_retry(failure.id)
    assert billing.get_failure(failure.id).retries_exhausted

    clock.set(T0 + timedelta(minutes=4))
    declined = billing.manual_retry(failure.id)
    assert declined.success is False
    assert declined.failure.retry_count == 3
    assert declined.next_retry is None

    processor.queue(OK)
    assert billing.manual_retry(failure.id).success is True


def test_manual_retry_on_closed_failure_rejected(billing, account):
    failure = billing.record_failure("acct-1", "pro", "299")
    billing.resolve_failure(failure.id)

    with pytest.raises(InvalidTransition):
        billing.manual_retry(failure.id)


def test_manual_retry_hides_other_accounts(billing, account):
    billing.open_account("acct-2", plan="solo")
    failure = billing.record_failure("acct-2", "solo", "149")

    with pytest.raises(RecordNotFound):
        billing.manual_retry(failure.id, account_id="acct-1")


def test_manual_retry_reraises_unexpected_errors_and_releases_claim(billing, account, processor):
    failure = billing.record_failure("acct-1", "pro", "299")
    processor.queue(RuntimeError("processor bug"))

    with pytest.raises(RuntimeError):
        billing.manual_retry(failure.id)

    assert billing.get_failure(failure.id).claimed_by is None


# ---------------------------------------------------------------------------
# Races
# ---------------------------------------------------------------------------

def test_manual_retry_rejected_while_sweep_attempt_in_flight(store, catalog, clock):
    sweeper, gate = _gated_billing(store, catalog, clock, DECLINED)
    sweeper.open_account("acct-1", plan="pro")
    failure = sweeper.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(hours=1))

    thread = threading.Thread(target=sweeper.process_due_retries)
    thread.start()
    assert gate.entered.wait(5)
    try:
        with pytest.raises(InvalidTransition):
            sweeper.manual_retry(failure.id)
    finally:
        gate.release.set()
        thread.join(5)

    assert gate.calls == 1
    assert sweeper.get_failure(failure.id).retry_count == 1


def test_concurrent_sweeps_charge_once(store, catalog, clock):
    sweeper, gate = _gated_billing(store, catalog, clock, DECLINED)
    sweeper.open_account("acct-1", plan="pro")
    failure = sweeper.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(hours=1))

    reports = []
    first = threading.Thread(target=lambda: reports.append(sweeper.process_due_retries()))
    first.start()
    assert gate.entered.wait(5)
    second = sweeper.process_due_retries()
    gate.release.set()
    first.join(5)

    assert second.skipped == 1
    assert reports[0].processed == 1
    assert gate.calls == 1
    assert sweeper.get_failure(failure.id).retry_count == 1


def _two_due_failures(store, catalog, clock):
    gate = GatedProcessor(DECLINED, only={"acct-a"})
    sweeper = BillingOrchestrator(
        store=store, catalog=catalog, processor=gate, clock=clock, policy=RetryPolicy(), worker_id="sweeper",
    )
    for account_id in ("acct-a", "acct-b"):
        sweeper.open_account(account_id, plan="pro")
    sweeper.record_failure("acct-a", "pro", "299")
    failure_b = sweeper.record_failure("acct-b", "pro", "299")
    clock.set(T0 + timedelta(hours=1))
    return sweeper, gate, failure_b


def test_overlapping_sweep_does_not_recharge_from_stale_listing(store, catalog, clock):
    sweeper, gate, failure_b = _two_due_failures(store, catalog, clock)

    reports = []
    slow = threading.Thread(target=lambda: reports.append(sweeper.process_due_retries()))
    slow.start()
    assert gate.entered.wait(5)
    fast = sweeper.process_due_retries()
    gate.release.set()
    slow.join(5)

    assert fast.processed == 1
    assert fast.skipped == 1
    assert gate.charged == ["acct-a", "acct-b"]
    assert sweeper.get_failure(failure_b.id).retry_count == 1
    assert reports[0].processed == 1
    assert reports[0].skipped == 1


def test_sweep_respects_reschedule_from_manual_retry(store, catalog, clock):
    sweeper, gate, failure_b = _two_due_failures(store, catalog, clock)

    slow = threading.Thread(target=sweeper.process_due_retries)
    slow.start()
    assert gate.entered.wait(5)
    manual = sweeper.manual_retry(failure_b.id, account_id="acct-b")
    gate.release.set()
    slow.join(5)

    current = sweeper.get_failure(failure_b.id)
    assert gate.charged == ["acct-a", "acct-b"]
    assert current.retry_count == 1
    assert manual.next_retry == T0 + timedelta(hours=3)
    assert current.next_retry_at == manual.next_retry


def test_stale_result_never_reverses_manual_resolution(store, catalog, clock):
    sweeper, gate = _gated_billing(store, catalog, clock, OK)
    sweeper.open_account("acct-1", plan="pro")
    failure = sweeper.record_failure("acct-1", "pro", "299")
    clock.set(T0 + timedelta(hours=1))

    reports = []
    thread = threading.Thread(target=lambda: reports.append(sweeper.process_due_retries()))
    thread.start()
    assert gate.entered.wait(5)
    sweeper.resolve_failure(failure.id, note="waived")
    gate.release.set()
    thread.join(5)

    current = sweeper.get_failure(failure.id)
    assert current.status == FailureStatus.MANUALLY_RESOLVED
    assert current.resolution_note == "waived"
    assert reports[0].skipped == 1
    assert reports[0].succeeded == 0


def test_abandoned_claim_is_reclaimed_by_later_sweep(billing, account, clock, store, processor):
    failure = billing.record_failure("acct-1", "pro", "299")
    stuck = billing.get_failure(failure.id).model_copy(
        update={"claimed_by": "dead-worker:1", "claimed_at": T0 + timedelta(hours=1)}
    )
    store.save_failure(stuck)

    clock.set(T0 + timedelta(hours=1, minutes=5))
    assert billing.process_due_retries().skipped == 1
    assert processor.calls == []

    clock.set(T0 + timedelta(hours=1, minutes=16))
    report = billing.process_due_retries()
    assert report.processed == 1
    assert len(processor.calls) == 1


# ---------------------------------------------------------------------------
# Projections and operator actions
# ---------------------------------------------------------------------------

def test_retry_status_projection(billing, account, clock):
    assert billing.retry_status("acct-1").has_failed_payments is False

    failure = billing.record_failure("acct-1", "pro", "299", "insufficient_funds")
    status = billing.retry_status("acct-1")

    assert status.has_failed_payments is True
    assert status.failed_count == 1
    assert status.grace_until == failure.grace_until
    assert status.next_retry_at == failure.next_retry_at
    assert status.latest_failure == LatestFailure(
        id=failure.id,
        amount=299.0,
        plan="pro",
        failure_reason="insufficient_funds",
        retry_count=0,
        max_retries=3,
    )


def test_resolve_failure(billing, account):
    failure = billing.record_failure("acct-1", "pro", "299")

    resolved = billing.resolve_failure(failure.id, note="refunded")

    assert resolved.status == FailureStatus.MANUALLY_RESOLVED
    assert billing.retry_status("acct-1").has_failed_payments is False
    with pytest.raises(InvalidTransition):
        billing.resolve_failure(failure.id)


def test_resolve_unknown_failure(billing):
    with pytest.raises(RecordNotFound):
        billing.resolve_failure(404)
