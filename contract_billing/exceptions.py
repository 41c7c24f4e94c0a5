"""
Billing Error Taxonomy

Structured exceptions for the billing engine. Every error carries an
``ErrorCategory`` so callers can tell a business-rule rejection from a retryable
dependency outage or a terminal decline by the payment provider.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """How a caller should react to a failure"""
    BUSINESS_RULE = "business_rule"                    # rejected, fix the request
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"  # safe to retry
    PROVIDER_DECLINED = "provider_declined"            # terminal, needs new payment details


class BillingError(Exception):
    """Base exception for all billing engine errors"""

    category = ErrorCategory.BUSINESS_RULE
    code = "billing_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for API responses and logs"""
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "details": {k: (v.value if isinstance(v, Enum) else v) for k, v in self.details.items()}
        }


class EntityNotFound(BillingError):
    """Raised when a referenced contract, installment or transaction does not exist"""

    code = "entity_not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} not found",
                         entity_type=entity_type, entity_id=entity_id)
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidTransition(BillingError):
    """Raised when a requested status change is not an edge of the state machine"""

    code = "invalid_transition"

    def __init__(self, entity_type: str, entity_id: str, current: Enum, attempted: Enum,
                 reason: Optional[str] = None):
        message = f"Cannot move {entity_type} {entity_id} from {current.value} to {attempted.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, entity_type=entity_type, entity_id=entity_id,
                         current=current, attempted=attempted)
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        self.attempted = attempted


class AlreadyConfigured(BillingError):
    """Raised when financial terms are finalized twice for one contract"""

    code = "already_configured"

    def __init__(self, contract_id: str):
        super().__init__(f"Contract {contract_id} financial configuration is already finalized",
                         contract_id=contract_id)
        self.contract_id = contract_id


class InvalidFinancialConfiguration(BillingError):
    """Raised when a financial configuration is partial or out of range"""

    code = "invalid_financial_configuration"


class InvalidScheduleParameters(BillingError):
    """Raised when an amortization schedule cannot be generated from the inputs"""

    code = "invalid_schedule_parameters"


class UnsupportedPaymentMethod(BillingError):
    """Raised when no registered strategy handles a payment method"""

    code = "unsupported_payment_method"

    def __init__(self, method: Enum):
        super().__init__(f"Payment method {method.value} is not supported", method=method)
        self.method = method


class TransactionFinalized(BillingError):
    """Raised when a completed or cancelled transaction is asked to change"""

    code = "transaction_finalized"

    def __init__(self, transaction_id: str, status: Enum):
        super().__init__(f"Transaction {transaction_id} is already {status.value}",
                         transaction_id=transaction_id, status=status)
        self.transaction_id = transaction_id
        self.status = status


class ConcurrencyConflict(BillingError):
    """Raised when a re-read shows the precondition of a mutation no longer holds"""

    code = "concurrency_conflict"


class ConfigurationError(BillingError):
    """Raised at startup when the engine is wired inconsistently"""

    code = "configuration_error"


class GatewayError(BillingError):
    """Base class for payment gateway adapter failures"""

    code = "gateway_error"

    def __init__(self, message: str, step: str, retryable: bool = False,
                 status_code: Optional[int] = None, response: Optional[Any] = None):
        super().__init__(message, step=step, retryable=retryable, status_code=status_code)
        self.step = step
        self.retryable = retryable
        self.status_code = status_code
        self.response = response
        if retryable:
            self.category = ErrorCategory.DEPENDENCY_UNAVAILABLE


class AuthFailed(GatewayError):
    """Gateway rejected the merchant credentials"""

    code = "gateway_auth_failed"


class OrderCreationFailed(GatewayError):
    """Gateway did not register the order"""

    code = "gateway_order_creation_failed"


class KeyRequestFailed(GatewayError):
    """Gateway did not issue a payment key"""

    code = "gateway_key_request_failed"


class PaymentDeclined(GatewayError):
    """Gateway or issuer declined the payment"""

    code = "gateway_payment_declined"
    category = ErrorCategory.PROVIDER_DECLINED


class GatewayUnavailable(GatewayError):
    """Gateway timed out or answered with a server error"""

    code = "gateway_unavailable"
    category = ErrorCategory.DEPENDENCY_UNAVAILABLE

    def __init__(self, message: str, step: str, status_code: Optional[int] = None,
                 response: Optional[Any] = None):
        super().__init__(message, step=step, retryable=True,
                         status_code=status_code, response=response)
