"""
Payment Reminder Module

The reminder sweep walks open installments that are due soon or past due, sends at
most one reminder per threshold (7, 2 and 1 days before the due date by default),
and moves past-due installments to overdue with their late penalty. The billing
scheduler runs the sweep and the contract expiry pass on a fixed interval in a
background thread.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
import threading

from .config import ReminderSettings
from .exceptions import ConfigurationError
from .installments import (
    InstallmentManager, InstallmentScheduleEntry, InstallmentStatus,
    OVERDUE_FLAG, REMINDER_FLAGS, installment_lock_key
)
from .logging_config import get_logger
from .notifications import NotificationCategory, NotificationPriority, NotificationSender

logger = get_logger("billing.reminders")


@dataclass
class SweepResult:
    """Counters for one sweep"""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    skipped: bool = False
    scanned: int = 0
    reminders_sent: int = 0
    marked_overdue: int = 0
    penalties_updated: int = 0
    overdue_notices_sent: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "skipped": self.skipped,
            "scanned": self.scanned,
            "reminders_sent": self.reminders_sent,
            "marked_overdue": self.marked_overdue,
            "penalties_updated": self.penalties_updated,
            "overdue_notices_sent": self.overdue_notices_sent,
            "failures": self.failures
        }


class ReminderSweep:
    """Sends due-date reminders and flags overdue installments"""

    def __init__(
        self,
        installment_manager: InstallmentManager,
        notification_sender: NotificationSender,
        settings: Optional[ReminderSettings] = None
    ):
        self.installment_manager = installment_manager
        self.sender = notification_sender
        self.settings = settings or ReminderSettings()

        unknown = set(self.settings.thresholds_days) - set(REMINDER_FLAGS)
        if unknown:
            raise ConfigurationError(
                f"No reminder flag for thresholds {sorted(unknown)}; supported: {sorted(REMINDER_FLAGS)}",
                thresholds=sorted(unknown)
            )
        self.thresholds = sorted(self.settings.thresholds_days)
        self.lookahead_days = max([self.settings.lookahead_days] + self.thresholds)
        self._running = threading.Lock()

    def run(self, today: Optional[date] = None) -> SweepResult:
        """One pass over due installments; declined while another pass is running"""
        if not self._running.acquire(blocking=False):
            logger.info("Reminder sweep already running, skipping this run")
            return SweepResult(skipped=True)

        try:
            today = today or date.today()
            result = SweepResult()
            for entry in self.installment_manager.find_due(today, self.lookahead_days):
                result.scanned += 1
                try:
                    self._process(entry, today, result)
                except Exception as e:
                    # One installment never stops the sweep
                    result.failures += 1
                    logger.error(f"Reminder processing failed for installment {entry.id}: {e}")

            logger.info(
                f"Reminder sweep for {today.isoformat()}: {result.scanned} scanned, "
                f"{result.reminders_sent} reminders, {result.marked_overdue} newly overdue, "
                f"{result.penalties_updated} penalties updated, "
                f"{result.failures} failures"
            )
            return result
        finally:
            self._running.release()

    def threshold_for(self, days_until_due: int) -> Optional[int]:
        """Nearest configured threshold at or above ``days_until_due``"""
        for threshold in self.thresholds:
            if days_until_due <= threshold:
                return threshold
        return None

    def _process(self, entry: InstallmentScheduleEntry, today: date, result: SweepResult) -> None:
        days_until_due = entry.days_until_due(today)

        if days_until_due < 0:
            if entry.status == InstallmentStatus.PENDING:
                if self.installment_manager.mark_overdue(entry.id, today) is not None:
                    result.marked_overdue += 1
            elif self.installment_manager.refresh_penalty(entry.id, today) is not None:
                result.penalties_updated += 1
            self._send_overdue_notice(entry.id, result)
            return

        threshold = self.threshold_for(days_until_due)
        if threshold is None:
            return
        flag = REMINDER_FLAGS[threshold]

        # A settlement of this installment waits until the reminder is sent and flagged
        with self.installment_manager.locks.hold(installment_lock_key(entry.id)):
            current = self.installment_manager.require_installment(entry.id)
            if not current.is_open or getattr(current, flag):
                return

            self.sender.notify(
                recipient_id=current.client_id,
                title=f"Installment due in {days_until_due} day{'s' if days_until_due != 1 else ''}",
                body=(
                    f"Installment {current.installment_number} of contract {current.contract_number} "
                    f"({current.total_due} {current.currency.code}) is due on {current.due_date.isoformat()}."
                ),
                category=NotificationCategory.PAYMENT_REMINDER,
                priority=NotificationPriority.HIGH if threshold <= 1 else NotificationPriority.MEDIUM,
                metadata=self._metadata(current, threshold=threshold)
            )
            self.installment_manager.record_reminder(entry.id, flag, datetime.now(timezone.utc))
        result.reminders_sent += 1

    def _send_overdue_notice(self, installment_id: str, result: SweepResult) -> None:
        with self.installment_manager.locks.hold(installment_lock_key(installment_id)):
            current = self.installment_manager.require_installment(installment_id)
            if current.status != InstallmentStatus.OVERDUE or current.overdue_notification_sent:
                return

            self.sender.notify(
                recipient_id=current.client_id,
                title="Installment overdue",
                body=(
                    f"Installment {current.installment_number} of contract {current.contract_number} was due on "
                    f"{current.due_date.isoformat()}. Amount due {current.total_due} {current.currency.code}, "
                    f"including a late penalty of {current.late_penalty_amount or 0}."
                ),
                category=NotificationCategory.PAYMENT_OVERDUE,
                priority=NotificationPriority.HIGH,
                metadata=self._metadata(current)
            )
            self.installment_manager.record_reminder(installment_id, OVERDUE_FLAG, datetime.now(timezone.utc))
        result.overdue_notices_sent += 1

    @staticmethod
    def _metadata(entry: InstallmentScheduleEntry, threshold: Optional[int] = None) -> Dict[str, Any]:
        metadata = {
            "installment_id": entry.id,
            "contract_id": entry.contract_id,
            "contract_number": entry.contract_number,
            "installment_number": entry.installment_number,
            "due_date": entry.due_date.isoformat(),
            "amount_due": str(entry.total_due),
        }
        if threshold is not None:
            metadata["threshold_days"] = threshold
        return metadata


class BillingScheduler:
    """Background thread running the reminder sweep and contract expiry on an interval"""

    def __init__(self, sweep: ReminderSweep, contract_manager=None, interval_seconds: Optional[int] = None):
        self.sweep = sweep
        self.contract_manager = contract_manager
        self.interval_seconds = interval_seconds or sweep.settings.sweep_interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="billing-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Billing scheduler started, interval {self.interval_seconds}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Billing scheduler stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, today: Optional[date] = None) -> Dict[str, Any]:
        """One tick; errors are logged so the loop keeps going"""
        summary: Dict[str, Any] = {}
        try:
            summary["sweep"] = self.sweep.run(today).to_dict()
        except Exception as e:
            logger.error(f"Reminder sweep failed: {e}")
            summary["sweep_error"] = str(e)

        if self.contract_manager is not None:
            try:
                summary["expired_contracts"] = self.contract_manager.expire_stale_contracts()
            except Exception as e:
                logger.error(f"Contract expiry pass failed: {e}")
                summary["expiry_error"] = str(e)
        return summary

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_seconds)
