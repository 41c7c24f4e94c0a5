"""
Test suite for the installment schedule store

Tests schedule persistence and the guarded settle, overdue and reminder-flag
mutations.
"""

import threading
import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from contract_billing.amortization import generate_schedule
from contract_billing.currency import Currency
from contract_billing.exceptions import ConcurrencyConflict, EntityNotFound
from contract_billing.installments import (
    InstallmentManager, InstallmentScheduleEntry, InstallmentStatus, OVERDUE_FLAG, REMINDER_FLAGS
)
from contract_billing.storage import InMemoryStorage


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def installment_manager(storage):
    return InstallmentManager(storage)


@pytest.fixture
def schedule(installment_manager):
    lines = generate_schedule(Decimal('3000.00'), 3, Decimal('0.01'), Decimal('0.02'), date(2025, 1, 10))
    return installment_manager.create_schedule(
        contract_id="contract-1",
        client_id="hospital-1",
        contract_number="CNT-20250110-0000ABCD",
        lines=lines,
        late_penalty_rate=Decimal('0.02'),
        currency=Currency.EGP
    )


class TestScheduleStore:
    """Test schedule creation and queries"""

    def test_schedule_persisted_in_order(self, installment_manager, schedule):
        stored = installment_manager.get_schedule("contract-1")

        assert [e.installment_number for e in stored] == [1, 2, 3]
        assert all(e.status == InstallmentStatus.PENDING for e in stored)
        assert stored[0].due_date == date(2025, 2, 10)
        assert stored[0].interest_amount == Decimal('30.00')

    def test_entry_round_trip(self, schedule):
        entry = schedule[0]
        restored = InstallmentScheduleEntry.from_dict(entry.to_dict())

        assert restored == entry

    def test_second_schedule_rejected(self, installment_manager, schedule):
        lines = generate_schedule(Decimal('100'), 1, Decimal('0'), Decimal('0'), date(2025, 1, 1))

        with pytest.raises(ConcurrencyConflict):
            installment_manager.create_schedule("contract-1", "hospital-1", "CNT", lines, Decimal('0'), Currency.EGP)

        assert len(installment_manager.get_schedule("contract-1")) == 3

    def test_find_due_uses_lookahead(self, installment_manager, schedule):
        due = installment_manager.find_due(date(2025, 2, 5), lookahead_days=7)

        assert [e.installment_number for e in due] == [1]

    def test_find_due_includes_past_due(self, installment_manager, schedule):
        due = installment_manager.find_due(date(2025, 4, 1), lookahead_days=7)

        assert [e.installment_number for e in due] == [1, 2]

    def test_unknown_installment(self, installment_manager):
        assert installment_manager.get_installment("missing") is None
        with pytest.raises(EntityNotFound):
            installment_manager.require_installment("missing")


class TestSettlement:
    """Test settling installments"""

    def test_settle_marks_paid(self, installment_manager, schedule):
        paid_at = datetime.now(timezone.utc)
        entry = installment_manager.settle(schedule[0].id, paid_at=paid_at, notes="cash at branch")

        assert entry.status == InstallmentStatus.PAID
        assert entry.paid_at >= entry.created_at
        assert installment_manager.get_installment(schedule[0].id).payment_notes == "cash at branch"

    def test_settle_twice_conflicts(self, installment_manager, schedule):
        installment_manager.settle(schedule[0].id)

        with pytest.raises(ConcurrencyConflict):
            installment_manager.settle(schedule[0].id)

    def test_concurrent_settle_pays_once(self, installment_manager, schedule):
        outcomes = []
        barrier = threading.Barrier(2)

        def settle():
            barrier.wait()
            try:
                installment_manager.settle(schedule[1].id)
                outcomes.append("paid")
            except ConcurrencyConflict:
                outcomes.append("conflict")

        threads = [threading.Thread(target=settle) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["conflict", "paid"]

    def test_overdue_installment_can_be_settled(self, installment_manager, schedule):
        installment_manager.mark_overdue(schedule[0].id, date(2025, 2, 11))

        entry = installment_manager.settle(schedule[0].id)

        assert entry.status == InstallmentStatus.PAID


class TestOverdueAndReminders:
    """Test overdue marking and reminder flags"""

    def test_mark_overdue_computes_penalty(self, installment_manager, schedule):
        entry = installment_manager.mark_overdue(schedule[0].id, date(2025, 2, 11))

        assert entry.status == InstallmentStatus.OVERDUE
        # (1000.00 + 30.00) x 0.02 x 1 month
        assert entry.late_penalty_amount == Decimal('20.60')
        assert entry.total_due == Decimal('1050.60')

    def test_mark_overdue_requires_past_due_pending(self, installment_manager, schedule):
        assert installment_manager.mark_overdue(schedule[0].id, date(2025, 2, 10)) is None

        installment_manager.settle(schedule[0].id)
        assert installment_manager.mark_overdue(schedule[0].id, date(2025, 3, 1)) is None
        assert installment_manager.get_installment(schedule[0].id).status == InstallmentStatus.PAID

    def test_refresh_penalty_accrues_with_months_late(self, installment_manager, schedule):
        installment_manager.mark_overdue(schedule[0].id, date(2025, 2, 11))

        entry = installment_manager.refresh_penalty(schedule[0].id, date(2025, 4, 11))

        # (1000.00 + 30.00) x 0.02 x 3 months
        assert entry.late_penalty_amount == Decimal('61.80')
        assert installment_manager.get_installment(schedule[0].id).late_penalty_amount == Decimal('61.80')
        assert installment_manager.refresh_penalty(schedule[0].id, date(2025, 4, 11)) is None

    def test_refresh_penalty_ignores_open_and_paid(self, installment_manager, schedule):
        assert installment_manager.refresh_penalty(schedule[0].id, date(2025, 4, 11)) is None
        assert installment_manager.get_installment(schedule[0].id).late_penalty_amount in (None, Decimal('0'))

        installment_manager.settle(schedule[0].id)
        assert installment_manager.refresh_penalty(schedule[0].id, date(2025, 4, 11)) is None

    def test_summary_as_of_reports_accrued_penalty(self, installment_manager, schedule):
        installment_manager.mark_overdue(schedule[0].id, date(2025, 2, 11))

        stored = installment_manager.summarize("contract-1")
        accrued = installment_manager.summarize("contract-1", as_of=date(2025, 4, 11))

        assert Decimal(accrued["outstanding_total"]) - Decimal(stored["outstanding_total"]) == Decimal('41.20')
        assert accrued["status_counts"]["overdue"] == 1
        # Reporting does not change the stored penalty
        assert installment_manager.get_installment(schedule[0].id).late_penalty_amount == Decimal('20.60')

    def test_record_reminder_sets_flag(self, installment_manager, schedule):
        sent_at = datetime.now(timezone.utc)
        installment_manager.record_reminder(schedule[0].id, REMINDER_FLAGS[7], sent_at)

        entry = installment_manager.get_installment(schedule[0].id)
        assert entry.notification_sent_7_days is True
        assert entry.notification_sent_2_days is False
        assert entry.last_reminder_sent_at == sent_at

    def test_unknown_flag_rejected(self, installment_manager, schedule):
        with pytest.raises(ValueError):
            installment_manager.record_reminder(schedule[0].id, "status", datetime.now(timezone.utc))

    def test_cancel_open_keeps_paid(self, installment_manager, schedule):
        installment_manager.settle(schedule[0].id)
        installment_manager.record_reminder(schedule[1].id, OVERDUE_FLAG, datetime.now(timezone.utc))

        cancelled = installment_manager.cancel_open("contract-1")

        assert cancelled == 2
        statuses = [e.status for e in installment_manager.get_schedule("contract-1")]
        assert statuses == [InstallmentStatus.PAID, InstallmentStatus.CANCELLED, InstallmentStatus.CANCELLED]
        # Flags survive cancellation
        assert installment_manager.get_installment(schedule[1].id).overdue_notification_sent is True
