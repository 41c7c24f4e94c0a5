"""
Payment Strategy Module

Pluggable handlers that process a payment transaction according to its payment
method, and the dispatcher routing each transaction to the one handler registered
for its method. Handlers update the transaction in memory and report a uniform
``PaymentResult``; persisting the transaction is the payment service's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .currency import Money
from .exceptions import ConfigurationError, ErrorCategory, GatewayError, UnsupportedPaymentMethod
from .gateway import BillingData, GatewayClient, GatewayPaymentRequest, OrderItem, PaymentSource
from .logging_config import get_logger
from .payments import PaymentMethod, PaymentStatus, PaymentTransaction

logger = get_logger("billing.strategies")


@dataclass
class PaymentResult:
    """Uniform outcome of processing a payment"""
    success: bool
    gateway_reference: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    requires_confirmation: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "gateway_reference": self.gateway_reference,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "requires_confirmation": self.requires_confirmation,
            "data": self.data
        }


@dataclass
class PaymentContext:
    """Caller-supplied details a strategy may need"""
    actor: Optional[str] = None
    notes: Optional[str] = None
    description: Optional[str] = None
    billing_data: Optional[BillingData] = None
    source: Optional[PaymentSource] = None
    collection_delegate_id: Optional[str] = None


class PaymentStrategy(ABC):
    """A handler declaring the payment methods it can process"""

    supported_methods: FrozenSet[PaymentMethod] = frozenset()

    def supports_method(self, method: PaymentMethod) -> bool:
        return method in self.supported_methods

    @abstractmethod
    def process(self, transaction: PaymentTransaction, amount: Decimal,
                context: PaymentContext) -> PaymentResult:
        """Process the transaction; never raises for provider failures"""


def _await_manual_confirmation(transaction: PaymentTransaction, context: PaymentContext) -> PaymentResult:
    # Money changes hands offline; accounts confirms it later
    if context.notes:
        transaction.notes = context.notes
    return PaymentResult(
        success=True,
        requires_confirmation=True,
        data={
            "method": transaction.method.value,
            "status": transaction.status.value,
            "message": "Payment recorded, awaiting confirmation by accounts"
        }
    )


class CashPaymentStrategy(PaymentStrategy):
    """Cash and bank transfer: stays pending until an approver confirms receipt"""

    supported_methods = frozenset({PaymentMethod.CASH, PaymentMethod.BANK_TRANSFER})

    def process(self, transaction, amount, context):
        return _await_manual_confirmation(transaction, context)


class InstallmentCollectionStrategy(PaymentStrategy):
    """Installment cash collected by a delegate, confirmed by accounts like cash"""

    supported_methods = frozenset({PaymentMethod.INSTALLMENT})

    def process(self, transaction, amount, context):
        if context.collection_delegate_id:
            transaction.collection_delegate_id = context.collection_delegate_id
        result = _await_manual_confirmation(transaction, context)
        result.data["collection_delegate_id"] = transaction.collection_delegate_id
        return result


class GatewayPaymentStrategy(PaymentStrategy):
    """Card and wallet payments charged through the external gateway"""

    supported_methods = frozenset({
        PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD,
        PaymentMethod.GATEWAY_WALLET, PaymentMethod.GATEWAY
    })

    def __init__(self, client: GatewayClient):
        self.client = client

    def process(self, transaction, amount, context):
        if context.source is None or context.billing_data is None:
            return PaymentResult(
                success=False,
                error="Gateway payments require a payment source and billing data",
                error_category=ErrorCategory.BUSINESS_RULE
            )

        money = Money(amount, transaction.currency)
        transaction.attempt_count += 1
        transaction.transition_to(PaymentStatus.PROCESSING)

        request = GatewayPaymentRequest(
            transaction_id=transaction.id,
            attempt=transaction.attempt_count,
            amount=money,
            billing_data=context.billing_data,
            source=context.source,
            items=[OrderItem(
                name=context.description or f"Payment {transaction.id}",
                amount_cents=money.to_minor_units()
            )]
        )

        try:
            outcome = self.client.pay(request)
        except GatewayError as e:
            logger.warning(f"Gateway payment failed for transaction {transaction.id} at {e.step}: {e.message}")
            transaction.transition_to(PaymentStatus.FAILED)
            transaction.failure_reason = e.message
            transaction.gateway_response = e.to_dict()
            return PaymentResult(
                success=False,
                error=e.message,
                error_category=e.category,
                data={"step": e.step, "retryable": e.retryable, "code": e.code}
            )

        transaction.gateway_transaction_id = outcome.gateway_reference
        transaction.gateway_response = outcome.raw_response
        if not outcome.pending:
            transaction.transition_to(PaymentStatus.COMPLETED)
            transaction.confirmed_at = datetime.now(timezone.utc)

        return PaymentResult(
            success=True,
            gateway_reference=outcome.gateway_reference,
            data={
                "order_id": outcome.order_id,
                "pending": outcome.pending,
                "redirect_url": outcome.redirect_url,
                "status": transaction.status.value
            }
        )


class PaymentStrategyDispatcher:
    """Routes a transaction to the single strategy registered for its method"""

    def __init__(self, strategies: Optional[Iterable[PaymentStrategy]] = None):
        self._strategies: Dict[PaymentMethod, PaymentStrategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: PaymentStrategy) -> None:
        """
        Raises:
            ConfigurationError: another strategy already handles one of the methods
        """
        overlap = [m for m in strategy.supported_methods if m in self._strategies]
        if overlap:
            owners = {type(self._strategies[m]).__name__ for m in overlap}
            raise ConfigurationError(
                f"{type(strategy).__name__} overlaps {', '.join(sorted(owners))} on "
                f"{', '.join(sorted(m.value for m in overlap))}",
                methods=[m.value for m in overlap]
            )
        for method in strategy.supported_methods:
            self._strategies[method] = strategy
        logger.debug(f"Registered {type(strategy).__name__} for "
                     f"{', '.join(sorted(m.value for m in strategy.supported_methods))}")

    def strategy_for(self, method: PaymentMethod) -> PaymentStrategy:
        strategy = self._strategies.get(method)
        if strategy is None:
            raise UnsupportedPaymentMethod(method)
        return strategy

    @property
    def supported_methods(self) -> List[PaymentMethod]:
        return sorted(self._strategies, key=lambda m: m.value)

    def dispatch(self, transaction: PaymentTransaction, amount: Decimal,
                 context: Optional[PaymentContext] = None) -> PaymentResult:
        """
        Raises:
            UnsupportedPaymentMethod: no strategy for the method; the transaction is untouched
        """
        strategy = self.strategy_for(transaction.method)
        return strategy.process(transaction, amount, context or PaymentContext())
