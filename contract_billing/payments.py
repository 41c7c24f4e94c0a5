"""
Payment Transaction Module

Payment transaction records, what a transaction pays for, and the payment status
state machine. Status only moves forward; a completed or cancelled transaction is
final.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from .currency import Currency
from .exceptions import InvalidTransition, TransactionFinalized
from .storage import StorageRecord, parse_datetime


class PaymentMethod(Enum):
    """Supported ways to pay"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    GATEWAY_WALLET = "gateway_wallet"
    GATEWAY = "gateway"
    INSTALLMENT = "installment"


class PaymentStatus(Enum):
    """Payment transaction states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING, PaymentStatus.COMPLETED,
        PaymentStatus.FAILED, PaymentStatus.CANCELLED
    },
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
}

FINAL_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.CANCELLED)


@dataclass(frozen=True)
class InstallmentTarget:
    """Payment settles one installment of a contract schedule"""
    installment_id: str


@dataclass(frozen=True)
class GeneralPaymentTarget:
    """Payment for an ad-hoc charge outside any schedule"""
    payment_id: str


TargetRef = Optional[Union[InstallmentTarget, GeneralPaymentTarget]]


def target_to_dict(target: TargetRef) -> Optional[Dict[str, str]]:
    if isinstance(target, InstallmentTarget):
        return {"type": "installment", "id": target.installment_id}
    if isinstance(target, GeneralPaymentTarget):
        return {"type": "general", "id": target.payment_id}
    return None


def target_from_dict(data: Optional[Dict[str, str]]) -> TargetRef:
    if not data:
        return None
    if data["type"] == "installment":
        return InstallmentTarget(data["id"])
    if data["type"] == "general":
        return GeneralPaymentTarget(data["id"])
    raise ValueError(f"Unknown payment target type: {data['type']}")


@dataclass
class PaymentTransaction(StorageRecord):
    """One attempt to move money"""
    amount: Decimal
    currency: Currency
    method: PaymentMethod
    target: TargetRef = None
    status: PaymentStatus = PaymentStatus.PENDING
    initiated_by: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    gateway_response: Optional[Dict[str, Any]] = None
    attempt_count: int = 0
    collection_delegate_id: Optional[str] = None
    approved_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    notes: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Payment amount must be positive, got {self.amount}")

    @property
    def installment_id(self) -> Optional[str]:
        return self.target.installment_id if isinstance(self.target, InstallmentTarget) else None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def can_transition_to(self, status: PaymentStatus) -> bool:
        return status in PAYMENT_TRANSITIONS[self.status]

    def transition_to(self, status: PaymentStatus) -> None:
        """
        Move to a new status

        Raises:
            TransactionFinalized: the transaction is completed or cancelled
            InvalidTransition: any other edge outside the state machine
        """
        if self.is_final:
            raise TransactionFinalized(self.id, self.status)
        if not self.can_transition_to(status):
            raise InvalidTransition("payment_transaction", self.id, self.status, status)
        self.status = status
        self.updated_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        result['target'] = target_to_dict(self.target)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentTransaction':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            amount=Decimal(data['amount']),
            currency=Currency.from_code(data['currency']),
            method=PaymentMethod(data['method']),
            target=target_from_dict(data.get('target')),
            status=PaymentStatus(data['status']),
            initiated_by=data.get('initiated_by'),
            gateway_transaction_id=data.get('gateway_transaction_id'),
            gateway_response=data.get('gateway_response'),
            attempt_count=data.get('attempt_count', 0),
            collection_delegate_id=data.get('collection_delegate_id'),
            approved_by=data.get('approved_by'),
            confirmed_at=parse_datetime(data.get('confirmed_at')),
            notes=data.get('notes'),
            failure_reason=data.get('failure_reason'),
            metadata=dict(data.get('metadata') or {})
        )
