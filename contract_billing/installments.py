"""
Installment Schedule Module

Persisted installment obligations of a contract and the guarded mutations applied
to them by payment settlement, the reminder sweep and contract cancellation. Every
mutation takes the installment's record lock, then re-reads the entry inside the
unit of work and rejects the change when its precondition no longer holds.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .amortization import ScheduleLine, calculate_late_penalty, months_late
from .currency import Currency
from .events import BillingEvent, EventDispatcher, publish_event
from .exceptions import ConcurrencyConflict, EntityNotFound
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


OPEN_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE)

# Days-before-due threshold -> reminder flag attribute
REMINDER_FLAGS = {
    7: "notification_sent_7_days",
    2: "notification_sent_2_days",
    1: "notification_sent_1_day",
}
OVERDUE_FLAG = "overdue_notification_sent"


def installment_lock_key(installment_id: str) -> str:
    return f"installment:{installment_id}"


@dataclass
class InstallmentScheduleEntry(StorageRecord):
    """One scheduled payment obligation of a contract"""
    contract_id: str
    client_id: str
    contract_number: str
    installment_number: int
    amount: Decimal
    due_date: date
    interest_amount: Decimal
    currency: Currency = Currency.EGP
    late_penalty_rate: Decimal = Decimal('0')
    late_penalty_amount: Optional[Decimal] = None
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_at: Optional[datetime] = None
    payment_notes: Optional[str] = None

    # Reminder tracking; a flag once set is never cleared
    notification_sent_7_days: bool = False
    notification_sent_2_days: bool = False
    notification_sent_1_day: bool = False
    overdue_notification_sent: bool = False
    last_reminder_sent_at: Optional[datetime] = None

    @property
    def total_due(self) -> Decimal:
        return self.amount + self.interest_amount + (self.late_penalty_amount or Decimal('0'))

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def days_until_due(self, today: date) -> int:
        return (self.due_date - today).days

    def penalty_as_of(self, as_of: date) -> Decimal:
        """Late penalty accrued on the principal and interest at ``as_of``"""
        return calculate_late_penalty(
            self.amount + self.interest_amount,
            self.late_penalty_rate,
            months_late(self.due_date, as_of),
            self.currency
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InstallmentScheduleEntry':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            contract_id=data['contract_id'],
            client_id=data['client_id'],
            contract_number=data['contract_number'],
            installment_number=data['installment_number'],
            amount=Decimal(data['amount']),
            due_date=date.fromisoformat(data['due_date']),
            interest_amount=Decimal(data['interest_amount']),
            currency=Currency.from_code(data['currency']),
            late_penalty_rate=Decimal(data['late_penalty_rate']),
            late_penalty_amount=parse_decimal(data.get('late_penalty_amount')),
            status=InstallmentStatus(data['status']),
            paid_at=parse_datetime(data.get('paid_at')),
            payment_notes=data.get('payment_notes'),
            notification_sent_7_days=data.get('notification_sent_7_days', False),
            notification_sent_2_days=data.get('notification_sent_2_days', False),
            notification_sent_1_day=data.get('notification_sent_1_day', False),
            overdue_notification_sent=data.get('overdue_notification_sent', False),
            last_reminder_sent_at=parse_datetime(data.get('last_reminder_sent_at'))
        )


class InstallmentManager:
    """Stores installment schedules and applies guarded mutations"""

    def __init__(self, storage: StorageInterface, event_dispatcher: Optional[EventDispatcher] = None):
        self.storage = storage
        self.event_dispatcher = event_dispatcher
        self.locks = storage.record_locks
        self.table = "installment_schedules"
        self.logger = get_logger("billing.installments")

    def create_schedule(
        self,
        contract_id: str,
        client_id: str,
        contract_number: str,
        lines: List[ScheduleLine],
        late_penalty_rate: Decimal,
        currency: Currency
    ) -> List[InstallmentScheduleEntry]:
        """Persist a generated schedule as one batch"""
        now = datetime.now(timezone.utc)
        entries = [
            InstallmentScheduleEntry(
                id=f"{contract_id}_{line.sequence}",
                created_at=now,
                updated_at=now,
                contract_id=contract_id,
                client_id=client_id,
                contract_number=contract_number,
                installment_number=line.sequence,
                amount=line.amount,
                due_date=line.due_date,
                interest_amount=line.interest_amount,
                currency=currency,
                late_penalty_rate=late_penalty_rate
            )
            for line in lines
        ]

        with self.storage.atomic():
            if self.storage.find(self.table, {"contract_id": contract_id}):
                raise ConcurrencyConflict(
                    f"Contract {contract_id} already has an installment schedule",
                    contract_id=contract_id
                )
            for entry in entries:
                self.storage.save(self.table, entry.id, entry.to_dict())

        log_action(
            self.logger, "info", f"Installment schedule generated for contract {contract_number}",
            action="generate_schedule", resource=f"contract:{contract_id}",
            extra={"installments": len(entries), "total_principal": str(sum(e.amount for e in entries))}
        )
        publish_event(self.event_dispatcher, BillingEvent.SCHEDULE_GENERATED, "contract", contract_id, {
            "contract_number": contract_number,
            "installments": len(entries)
        })

        return entries

    def get_installment(self, installment_id: str) -> Optional[InstallmentScheduleEntry]:
        data = self.storage.load(self.table, installment_id)
        return InstallmentScheduleEntry.from_dict(data) if data else None

    def require_installment(self, installment_id: str) -> InstallmentScheduleEntry:
        entry = self.get_installment(installment_id)
        if entry is None:
            raise EntityNotFound("installment", installment_id)
        return entry

    def get_schedule(self, contract_id: str) -> List[InstallmentScheduleEntry]:
        """Schedule ordered by installment number"""
        entries = [
            InstallmentScheduleEntry.from_dict(data)
            for data in self.storage.find(self.table, {"contract_id": contract_id})
        ]
        entries.sort(key=lambda e: e.installment_number)
        return entries

    def find_due(self, as_of: date, lookahead_days: int) -> List[InstallmentScheduleEntry]:
        """Open entries due within the lookahead window or already past due"""
        horizon = as_of + timedelta(days=lookahead_days)
        entries = [
            InstallmentScheduleEntry.from_dict(data)
            for data in self.storage.find(self.table, {"status": [s.value for s in OPEN_STATUSES]})
        ]
        due = [entry for entry in entries if entry.due_date <= horizon]
        due.sort(key=lambda e: (e.due_date, e.contract_id, e.installment_number))
        return due

    def settle(
        self,
        installment_id: str,
        paid_at: Optional[datetime] = None,
        notes: Optional[str] = None
    ) -> InstallmentScheduleEntry:
        """
        Mark an open installment as paid.

        Raises:
            ConcurrencyConflict: the installment is no longer open (already paid or cancelled)
        """
        with self.locks.hold(installment_lock_key(installment_id)):
            with self.storage.atomic():
                entry = self.require_installment(installment_id)
                if not entry.is_open:
                    raise ConcurrencyConflict(
                        f"Installment {installment_id} is {entry.status.value}, cannot settle",
                        installment_id=installment_id, status=entry.status
                    )

                paid_at = paid_at or datetime.now(timezone.utc)
                entry.status = InstallmentStatus.PAID
                entry.paid_at = max(paid_at, entry.created_at)
                entry.payment_notes = notes
                entry.touch()
                self.storage.save(self.table, entry.id, entry.to_dict())

        log_action(
            self.logger, "info", f"Installment {entry.installment_number} of {entry.contract_number} paid",
            action="settle_installment", resource=f"installment:{installment_id}"
        )
        publish_event(self.event_dispatcher, BillingEvent.INSTALLMENT_PAID, "installment", installment_id, {
            "contract_id": entry.contract_id,
            "installment_number": entry.installment_number,
            "paid_at": entry.paid_at.isoformat()
        })
        return entry

    def mark_overdue(self, installment_id: str, as_of: date) -> Optional[InstallmentScheduleEntry]:
        """Move a pending, past-due installment to overdue; None if the precondition fails"""
        with self.locks.hold(installment_lock_key(installment_id)):
            with self.storage.atomic():
                entry = self.require_installment(installment_id)
                if entry.status != InstallmentStatus.PENDING or entry.due_date >= as_of:
                    return None

                entry.status = InstallmentStatus.OVERDUE
                entry.late_penalty_amount = entry.penalty_as_of(as_of)
                entry.touch()
                self.storage.save(self.table, entry.id, entry.to_dict())

        publish_event(self.event_dispatcher, BillingEvent.INSTALLMENT_OVERDUE, "installment", installment_id, {
            "contract_id": entry.contract_id,
            "installment_number": entry.installment_number,
            "late_penalty_amount": str(entry.late_penalty_amount)
        })
        return entry

    def refresh_penalty(self, installment_id: str, as_of: date) -> Optional[InstallmentScheduleEntry]:
        """Recompute an overdue installment's penalty at ``as_of``; None if unchanged or not overdue"""
        with self.locks.hold(installment_lock_key(installment_id)):
            with self.storage.atomic():
                entry = self.require_installment(installment_id)
                if entry.status != InstallmentStatus.OVERDUE:
                    return None

                penalty = entry.penalty_as_of(as_of)
                if penalty == entry.late_penalty_amount:
                    return None

                previous = entry.late_penalty_amount
                entry.late_penalty_amount = penalty
                entry.touch()
                self.storage.save(self.table, entry.id, entry.to_dict())

        self.logger.debug(
            f"Late penalty of installment {installment_id} moved from {previous} to {penalty}"
        )
        return entry

    def record_reminder(self, installment_id: str, flag: str, sent_at: datetime) -> InstallmentScheduleEntry:
        """Set a reminder flag after a successful send"""
        if flag not in REMINDER_FLAGS.values() and flag != OVERDUE_FLAG:
            raise ValueError(f"Unknown reminder flag: {flag}")

        with self.locks.hold(installment_lock_key(installment_id)):
            with self.storage.atomic():
                entry = self.require_installment(installment_id)
                setattr(entry, flag, True)
                entry.last_reminder_sent_at = sent_at
                entry.touch()
                self.storage.save(self.table, entry.id, entry.to_dict())
        return entry

    def cancel_open(self, contract_id: str) -> int:
        """Cancel every unpaid installment of a contract; caller holds the record locks"""
        cancelled = 0
        with self.storage.atomic():
            for entry in self.get_schedule(contract_id):
                if entry.is_open:
                    entry.status = InstallmentStatus.CANCELLED
                    entry.touch()
                    self.storage.save(self.table, entry.id, entry.to_dict())
                    cancelled += 1
        return cancelled

    def delete_schedule(self, contract_id: str) -> int:
        """Remove a contract's schedule; used only by the contract delete cascade"""
        deleted = 0
        with self.storage.atomic():
            for data in self.storage.find(self.table, {"contract_id": contract_id}):
                if self.storage.delete(self.table, data['id']):
                    deleted += 1
        return deleted

    def summarize(self, contract_id: str, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Installment counts by status with paid and outstanding totals.

        With ``as_of``, overdue entries are totalled with the penalty accrued at that
        date rather than the one last stored by the reminder sweep.
        """
        schedule = self.get_schedule(contract_id)
        if as_of is not None:
            for entry in schedule:
                if entry.status == InstallmentStatus.OVERDUE:
                    entry.late_penalty_amount = entry.penalty_as_of(as_of)
        counts = {status.value: 0 for status in InstallmentStatus}
        paid_total = Decimal('0')
        outstanding_total = Decimal('0')

        for entry in schedule:
            counts[entry.status.value] += 1
            if entry.status == InstallmentStatus.PAID:
                paid_total += entry.total_due
            elif entry.is_open:
                outstanding_total += entry.total_due

        next_due = next((e for e in schedule if e.is_open), None)
        return {
            "contract_id": contract_id,
            "installment_count": len(schedule),
            "status_counts": counts,
            "paid_total": str(paid_total),
            "outstanding_total": str(outstanding_total),
            "next_due_date": next_due.due_date.isoformat() if next_due else None
        }
