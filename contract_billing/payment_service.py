"""
Payment Service Module

Creates payment transactions, runs them through the strategy dispatcher, and handles
their confirmation, rejection, cancellation and gateway callbacks. A transaction that
completes against an installment settles that installment in the same unit of work,
under the installment's record lock, so an installment is never paid twice.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from .currency import Currency, quantize, to_decimal
from .events import BillingEvent, EventDispatcher, publish_event
from .exceptions import (
    ConcurrencyConflict, EntityNotFound, InvalidTransition,
    TransactionFinalized, UnsupportedPaymentMethod
)
from .installments import InstallmentManager, InstallmentStatus, installment_lock_key
from .logging_config import get_logger, log_action
from .payments import (
    InstallmentTarget, PaymentMethod, PaymentStatus, PaymentTransaction,
    TargetRef, target_to_dict
)
from .storage import StorageInterface
from .strategies import PaymentContext, PaymentResult, PaymentStrategyDispatcher


def transaction_lock_key(transaction_id: str) -> str:
    return f"transaction:{transaction_id}"


class PaymentService:
    """Payment transactions from start to settlement"""

    def __init__(
        self,
        storage: StorageInterface,
        dispatcher: PaymentStrategyDispatcher,
        installment_manager: InstallmentManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        default_currency: Currency = Currency.EGP
    ):
        self.storage = storage
        self.dispatcher = dispatcher
        self.installment_manager = installment_manager
        self.event_dispatcher = event_dispatcher
        self.default_currency = default_currency
        self.locks = storage.record_locks
        self.table = "payment_transactions"
        self.logger = get_logger("billing.payments")

    def start_payment(
        self,
        amount,
        method: PaymentMethod,
        target: TargetRef = None,
        initiated_by: Optional[str] = None,
        currency: Optional[Currency] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> PaymentTransaction:
        """
        Open a pending payment transaction

        Raises:
            UnsupportedPaymentMethod: no strategy handles ``method``
            EntityNotFound: the target installment does not exist
            InvalidTransition: the target installment is already paid or cancelled
            ConcurrencyConflict: another payment of the installment awaits gateway confirmation
        """
        self.dispatcher.strategy_for(method)

        if isinstance(target, InstallmentTarget):
            entry = self.installment_manager.require_installment(target.installment_id)
            if not entry.is_open:
                raise InvalidTransition(
                    "installment", entry.id, entry.status, InstallmentStatus.PAID,
                    reason="installment is no longer payable"
                )
            self._require_no_payment_in_flight(entry.id)
            currency = entry.currency

        currency = currency or self.default_currency
        now = datetime.now(timezone.utc)
        transaction = PaymentTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            amount=quantize(to_decimal(amount), currency),
            currency=currency,
            method=method,
            target=target,
            initiated_by=initiated_by,
            notes=notes,
            metadata=dict(metadata or {})
        )
        self._save(transaction)

        log_action(
            self.logger, "info", f"Payment {transaction.id} started",
            actor=initiated_by, action="start_payment", resource=f"payment:{transaction.id}",
            extra={"amount": str(transaction.amount), "currency": currency.code,
                   "method": method.value, "target": target_to_dict(target)}
        )
        return transaction

    def process_payment(self, transaction_id: str, context: Optional[PaymentContext] = None) -> PaymentResult:
        """
        Run a pending transaction through its payment strategy.

        The installment lock is held for the whole call, so a second attempt on the
        same installment waits and then sees it paid.

        Raises:
            TransactionFinalized: the transaction is completed or cancelled
            InvalidTransition: the transaction is not pending
            ConcurrencyConflict: the target installment was paid or cancelled meanwhile
            UnsupportedPaymentMethod: no strategy handles the method; nothing is changed
        """
        context = context or PaymentContext()
        transaction = self.require_transaction(transaction_id)

        with self.locks.hold(*self._lock_keys(transaction)):
            with self.storage.atomic():
                transaction = self.require_transaction(transaction_id)
                if transaction.is_final:
                    raise TransactionFinalized(transaction.id, transaction.status)
                if transaction.status != PaymentStatus.PENDING:
                    raise InvalidTransition("payment_transaction", transaction.id,
                                            transaction.status, PaymentStatus.PROCESSING)
                self._require_open_installment(transaction)

            try:
                result = self.dispatcher.dispatch(transaction, transaction.amount, context)
            except UnsupportedPaymentMethod:
                raise
            except BaseException as e:
                self._fail_interrupted(transaction, e)
                raise

            with self.storage.atomic():
                self._save(transaction)
                if transaction.status == PaymentStatus.COMPLETED:
                    self._settle_target(transaction)

        self._after_processing(transaction, result, context)
        return result

    def confirm_payment(self, transaction_id: str, approver: str, notes: Optional[str] = None) -> PaymentTransaction:
        """
        Accounts confirms that the money was received

        Raises:
            TransactionFinalized: already completed or cancelled
            InvalidTransition: the transaction failed
            ConcurrencyConflict: the installment was already paid by another transaction, or
                another payment of it awaits gateway confirmation
        """
        transaction = self.require_transaction(transaction_id)

        with self.locks.hold(*self._lock_keys(transaction)):
            with self.storage.atomic():
                transaction = self.require_transaction(transaction_id)
                transaction.transition_to(PaymentStatus.COMPLETED)
                transaction.approved_by = approver
                transaction.confirmed_at = datetime.now(timezone.utc)
                if notes:
                    transaction.notes = notes
                if transaction.installment_id:
                    self._require_no_payment_in_flight(transaction.installment_id, transaction.id)
                self._settle_target(transaction)
                self._save(transaction)

        log_action(
            self.logger, "info", f"Payment {transaction_id} confirmed",
            actor=approver, action="confirm_payment", resource=f"payment:{transaction_id}"
        )
        self._publish(BillingEvent.PAYMENT_COMPLETED, transaction)
        return transaction

    def reject_payment(self, transaction_id: str, approver: str, reason: str) -> PaymentTransaction:
        """Accounts rejects a pending payment; the transaction fails"""
        transaction = self._update(transaction_id, PaymentStatus.FAILED, approver=approver, reason=reason)
        log_action(
            self.logger, "warning", f"Payment {transaction_id} rejected",
            actor=approver, action="reject_payment", resource=f"payment:{transaction_id}",
            extra={"reason": reason}
        )
        self._publish(BillingEvent.PAYMENT_FAILED, transaction)
        return transaction

    def cancel_payment(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> PaymentTransaction:
        """Withdraw a pending payment before it is processed"""
        transaction = self._update(transaction_id, PaymentStatus.CANCELLED, reason=reason)
        log_action(
            self.logger, "info", f"Payment {transaction_id} cancelled",
            actor=actor, action="cancel_payment", resource=f"payment:{transaction_id}"
        )
        self._publish(BillingEvent.PAYMENT_CANCELLED, transaction)
        return transaction

    def handle_gateway_callback(self, payload: Dict[str, Any]) -> PaymentTransaction:
        """
        Resolve a gateway-confirmed transaction from the gateway's callback.

        Accepts either the bare transaction object or one wrapped under ``obj``. A
        callback repeating an already applied success is acknowledged unchanged. When the
        gateway captured money for an installment that was meanwhile paid or cancelled,
        the transaction still completes and is flagged for refund.
        """
        obj = payload.get("obj", payload) if isinstance(payload.get("obj"), dict) else payload
        transaction = self._find_for_callback(obj)

        if obj.get("pending") and obj.get("success") is not True:
            self.logger.debug(f"Gateway callback for {transaction.id} still pending")
            return transaction

        success = obj.get("success") is True
        target_status = PaymentStatus.COMPLETED if success else PaymentStatus.FAILED

        with self.locks.hold(*self._lock_keys(transaction)):
            with self.storage.atomic():
                transaction = self.require_transaction(transaction.id)
                if transaction.status == target_status:
                    return transaction

                transaction.transition_to(target_status)
                transaction.gateway_response = obj
                refund_required = False
                if success:
                    transaction.confirmed_at = datetime.now(timezone.utc)
                    refund_required = not self._target_still_payable(transaction)
                    if refund_required:
                        self._flag_refund(transaction)
                    else:
                        self._settle_target(transaction)
                else:
                    message = obj.get("data", {}).get("message") if isinstance(obj.get("data"), dict) else None
                    transaction.failure_reason = message or "Declined by gateway"
                self._save(transaction)

        log_action(
            self.logger, "info", f"Gateway callback resolved payment {transaction.id} as {target_status.value}",
            action="gateway_callback", resource=f"payment:{transaction.id}"
        )
        self._publish(BillingEvent.PAYMENT_COMPLETED if success else BillingEvent.PAYMENT_FAILED, transaction)
        if refund_required:
            self._publish(BillingEvent.PAYMENT_REFUND_REQUIRED, transaction)
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        data = self.storage.load(self.table, transaction_id)
        return PaymentTransaction.from_dict(data) if data else None

    def require_transaction(self, transaction_id: str) -> PaymentTransaction:
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise EntityNotFound("payment_transaction", transaction_id)
        return transaction

    def get_transactions_for_installment(self, installment_id: str) -> List[PaymentTransaction]:
        """Every transaction that targeted an installment, oldest first"""
        records = self.storage.find(self.table, {"target": target_to_dict(InstallmentTarget(installment_id))})
        transactions = [PaymentTransaction.from_dict(data) for data in records]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def _update(self, transaction_id: str, status: PaymentStatus, approver: Optional[str] = None,
                reason: Optional[str] = None) -> PaymentTransaction:
        transaction = self.require_transaction(transaction_id)
        with self.locks.hold(*self._lock_keys(transaction)):
            with self.storage.atomic():
                transaction = self.require_transaction(transaction_id)
                transaction.transition_to(status)
                if approver:
                    transaction.approved_by = approver
                if reason:
                    transaction.failure_reason = reason
                self._save(transaction)
        return transaction

    def _lock_keys(self, transaction: PaymentTransaction) -> List[str]:
        keys = [transaction_lock_key(transaction.id)]
        if transaction.installment_id:
            keys.append(installment_lock_key(transaction.installment_id))
        return keys

    def _require_open_installment(self, transaction: PaymentTransaction) -> None:
        if not transaction.installment_id:
            return
        entry = self.installment_manager.require_installment(transaction.installment_id)
        if not entry.is_open:
            raise ConcurrencyConflict(
                f"Installment {entry.id} is {entry.status.value}, payment {transaction.id} cannot proceed",
                installment_id=entry.id, transaction_id=transaction.id, status=entry.status
            )
        self._require_no_payment_in_flight(entry.id, transaction.id)

    def _require_no_payment_in_flight(self, installment_id: str, transaction_id: Optional[str] = None) -> None:
        """A gateway payment awaiting its callback reserves the installment"""
        for other in self.get_transactions_for_installment(installment_id):
            if other.id != transaction_id and other.status == PaymentStatus.PROCESSING:
                raise ConcurrencyConflict(
                    f"Installment {installment_id} has payment {other.id} awaiting gateway confirmation",
                    installment_id=installment_id, transaction_id=other.id, status=other.status
                )

    def _target_still_payable(self, transaction: PaymentTransaction) -> bool:
        if not transaction.installment_id:
            return True
        return self.installment_manager.require_installment(transaction.installment_id).is_open

    def _flag_refund(self, transaction: PaymentTransaction) -> None:
        entry = self.installment_manager.require_installment(transaction.installment_id)
        transaction.metadata["refund_required"] = True
        transaction.metadata["refund_reason"] = f"installment {entry.id} already {entry.status.value}"
        self.logger.warning(
            f"Gateway captured payment {transaction.id} for {entry.status.value} installment {entry.id}, "
            f"refund required"
        )

    def _settle_target(self, transaction: PaymentTransaction) -> None:
        if not transaction.installment_id:
            return
        self.installment_manager.settle(
            transaction.installment_id,
            paid_at=transaction.confirmed_at,
            notes=f"Paid by {transaction.method.value} transaction {transaction.id}"
        )

    def _fail_interrupted(self, transaction: PaymentTransaction, error: BaseException) -> None:
        if transaction.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            return
        transaction.transition_to(PaymentStatus.FAILED)
        transaction.failure_reason = f"Interrupted: {type(error).__name__}: {error}"
        self._save(transaction)
        self.logger.error(f"Payment {transaction.id} interrupted during processing, marked failed")

    def _find_for_callback(self, obj: Dict[str, Any]) -> PaymentTransaction:
        reference = obj.get("id")
        if reference is not None:
            matches = self.storage.find(self.table, {"gateway_transaction_id": str(reference)})
            if matches:
                return PaymentTransaction.from_dict(matches[0])

        order = obj.get("order") if isinstance(obj.get("order"), dict) else {}
        merchant_order_id = obj.get("merchant_order_id") or order.get("merchant_order_id")
        if merchant_order_id:
            # Merchant order ids are "<transaction id>-<attempt>"
            transaction_id = str(merchant_order_id).rsplit("-", 1)[0]
            transaction = self.get_transaction(transaction_id)
            if transaction is not None:
                return transaction

        raise EntityNotFound("payment_transaction", str(reference or merchant_order_id))

    def _after_processing(self, transaction: PaymentTransaction, result: PaymentResult,
                          context: PaymentContext) -> None:
        log_action(
            self.logger, "info" if result.success else "warning",
            f"Payment {transaction.id} processed: {transaction.status.value}",
            actor=context.actor, action="process_payment", resource=f"payment:{transaction.id}",
            extra={"method": transaction.method.value, "success": result.success,
                   "error": result.error, "gateway_reference": result.gateway_reference}
        )
        if transaction.status == PaymentStatus.COMPLETED:
            self._publish(BillingEvent.PAYMENT_COMPLETED, transaction)
        elif transaction.status == PaymentStatus.FAILED:
            self._publish(BillingEvent.PAYMENT_FAILED, transaction)
        elif result.requires_confirmation:
            self._publish(BillingEvent.PAYMENT_CONFIRMATION_REQUIRED, transaction)

    def _publish(self, event_type: BillingEvent, transaction: PaymentTransaction) -> None:
        publish_event(self.event_dispatcher, event_type, "payment_transaction", transaction.id, {
            "amount": str(transaction.amount),
            "currency": transaction.currency.code,
            "method": transaction.method.value,
            "status": transaction.status.value,
            "target": target_to_dict(transaction.target),
            "failure_reason": transaction.failure_reason,
            "refund_required": bool(transaction.metadata.get("refund_required"))
        })

    def _save(self, transaction: PaymentTransaction) -> None:
        self.storage.save(self.table, transaction.id, transaction.to_dict())
