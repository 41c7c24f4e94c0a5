"""
Payment Gateway Client Module

REST client for the external card/wallet payment gateway. A payment is a four-step
handshake: authenticate, create order, request payment key, submit payment. A failing
step aborts the rest and raises a typed ``GatewayError`` naming the step. The client
never touches billing records; callers decide what a failure means for a transaction.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import threading
import time

import httpx
from pydantic import BaseModel, Field

from .config import GatewaySettings
from .currency import Money
from .exceptions import (
    AuthFailed, GatewayError, GatewayUnavailable, KeyRequestFailed,
    OrderCreationFailed, PaymentDeclined
)
from .logging_config import get_logger

logger = get_logger("billing.gateway")


class BillingData(BaseModel):
    """Customer billing block required by the payment key request"""
    first_name: str
    last_name: str
    email: str
    phone_number: str
    apartment: str = "NA"
    floor: str = "NA"
    street: str = "NA"
    building: str = "NA"
    shipping_method: str = "NA"
    postal_code: str = "NA"
    city: str = "NA"
    country: str = "EG"
    state: str = "NA"


class OrderItem(BaseModel):
    name: str
    amount_cents: int
    description: str = ""
    quantity: int = 1


class OrderRequest(BaseModel):
    auth_token: str
    delivery_needed: bool = False
    amount_cents: int
    currency: str
    merchant_order_id: str
    items: List[OrderItem] = Field(default_factory=list)


class PaymentKeyRequest(BaseModel):
    auth_token: str
    amount_cents: int
    expiration: int = 3600
    order_id: str
    billing_data: BillingData
    currency: str
    integration_id: int
    lock_order_when_paid: bool = True


class PaymentSource(BaseModel):
    """Card token or wallet number the payment is drawn from"""
    identifier: str
    subtype: str  # TOKEN, WALLET, CASH, ...


class PayRequest(BaseModel):
    source: PaymentSource
    payment_token: str


@dataclass
class GatewayPaymentRequest:
    """Everything the gateway needs to charge one transaction attempt"""
    transaction_id: str
    attempt: int
    amount: Money
    billing_data: BillingData
    source: PaymentSource
    items: List[OrderItem] = field(default_factory=list)

    @property
    def merchant_order_id(self) -> str:
        return f"{self.transaction_id}-{self.attempt}"


@dataclass
class GatewayPaymentOutcome:
    """Result of a submitted payment; ``pending`` means a redirect or async confirmation"""
    order_id: str
    gateway_reference: str
    pending: bool = False
    redirect_url: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)


class GatewayClient:
    """httpx client for the payment gateway handshake"""

    def __init__(
        self,
        settings: GatewaySettings,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self._client = http_client or httpx.Client(timeout=settings.timeout_seconds)
        self._sleep = sleep
        self._clock = clock

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def authenticate(self, force: bool = False) -> str:
        """
        Return a valid auth token, reusing the cached one until it expires.

        Timeouts and server errors are retried with exponential backoff up to
        ``auth_retries`` times; credential rejections are not retried.

        Raises:
            AuthFailed: credentials rejected
            GatewayUnavailable: gateway unreachable after all retries
        """
        with self._token_lock:
            if not force and self._token and self._clock() < self._token_expires_at:
                return self._token

            last_error: Optional[GatewayUnavailable] = None
            for attempt in range(self.settings.auth_retries + 1):
                try:
                    response = self._post("authenticate", "/auth", {"api_key": self.settings.api_key},
                                          GatewayUnavailable)
                except GatewayUnavailable as e:
                    last_error = e
                    if attempt < self.settings.auth_retries:
                        delay = self.settings.auth_backoff_seconds * (2 ** attempt)
                        logger.warning(f"Gateway authentication attempt {attempt + 1} failed ({e}), "
                                       f"retrying in {delay:.2f}s")
                        self._sleep(delay)
                    continue

                if response.status_code >= 400:
                    raise AuthFailed(
                        f"Gateway rejected credentials ({response.status_code})",
                        step="authenticate", status_code=response.status_code, response=_safe_text(response)
                    )

                data = self._json(response, "authenticate", GatewayUnavailable)
                token = data.get("token")
                if not token:
                    raise AuthFailed("Gateway returned no auth token", step="authenticate", response=data)

                ttl = data.get("expires_in") or self.settings.token_ttl_seconds
                self._token = token
                self._token_expires_at = self._clock() + float(ttl)
                logger.debug("Gateway auth token refreshed")
                return token

            raise last_error

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def create_order(self, auth_token: str, request: GatewayPaymentRequest) -> str:
        """Register the order and return the gateway order id"""
        payload = OrderRequest(
            auth_token=auth_token,
            amount_cents=request.amount.to_minor_units(),
            currency=request.amount.currency.code,
            merchant_order_id=request.merchant_order_id,
            items=request.items
        )
        response = self._post("create_order", "/orders", payload.model_dump(), OrderCreationFailed)
        if response.status_code >= 400:
            raise OrderCreationFailed(
                f"Gateway refused order {request.merchant_order_id} ({response.status_code})",
                step="create_order", status_code=response.status_code, response=_safe_text(response)
            )

        data = self._json(response, "create_order", OrderCreationFailed)
        if data.get("id") is None:
            raise OrderCreationFailed("Gateway returned no order id", step="create_order", response=data)
        return str(data["id"])

    def request_payment_key(self, auth_token: str, order_id: str, request: GatewayPaymentRequest) -> str:
        """Obtain the single-use payment key for an order"""
        payload = PaymentKeyRequest(
            auth_token=auth_token,
            amount_cents=request.amount.to_minor_units(),
            order_id=order_id,
            billing_data=request.billing_data,
            currency=request.amount.currency.code,
            integration_id=self.settings.integration_id
        )
        response = self._post("request_payment_key", "/acceptance/payment_keys", payload.model_dump(),
                              KeyRequestFailed)
        if response.status_code >= 400:
            raise KeyRequestFailed(
                f"Gateway refused payment key for order {order_id} ({response.status_code})",
                step="request_payment_key", status_code=response.status_code, response=_safe_text(response)
            )

        data = self._json(response, "request_payment_key", KeyRequestFailed)
        if not data.get("token"):
            raise KeyRequestFailed("Gateway returned no payment key", step="request_payment_key", response=data)
        return data["token"]

    def submit_payment(self, payment_key: str, source: PaymentSource, order_id: str) -> GatewayPaymentOutcome:
        """
        Charge the source against a payment key.

        Raises:
            PaymentDeclined: gateway or issuer declined the payment
            GatewayUnavailable: timeout or server error; the charge state is unknown
        """
        payload = PayRequest(source=source, payment_token=payment_key)
        response = self._post("submit_payment", "/acceptance/payments/pay", payload.model_dump(),
                              GatewayUnavailable)
        if response.status_code >= 400:
            raise PaymentDeclined(
                f"Payment declined for order {order_id} ({response.status_code})",
                step="submit_payment", status_code=response.status_code, response=_safe_text(response)
            )

        data = self._json(response, "submit_payment", GatewayUnavailable)
        redirect_url = data.get("redirect_url") or None
        success = data.get("success")
        pending = bool(data.get("pending")) or (redirect_url is not None and success is not True)

        if success is False and not pending:
            message = data.get("data", {}).get("message") if isinstance(data.get("data"), dict) else None
            raise PaymentDeclined(
                f"Payment declined for order {order_id}: {message or 'no reason given'}",
                step="submit_payment", response=data
            )

        bill_reference = data.get("data", {}).get("bill_reference") if isinstance(data.get("data"), dict) else None
        reference = data.get("id") or bill_reference or order_id
        return GatewayPaymentOutcome(
            order_id=order_id,
            gateway_reference=str(reference),
            pending=pending,
            redirect_url=redirect_url,
            raw_response=data
        )

    def pay(self, request: GatewayPaymentRequest) -> GatewayPaymentOutcome:
        """Run the full handshake for one attempt"""
        start = time.time()
        order_id = self._with_token_refresh(lambda token: self.create_order(token, request))
        payment_key = self._with_token_refresh(lambda token: self.request_payment_key(token, order_id, request))
        outcome = self.submit_payment(payment_key, request.source, order_id)

        logger.info(
            f"Gateway payment for {request.merchant_order_id} "
            f"{'pending' if outcome.pending else 'completed'} in {(time.time() - start) * 1000:.0f}ms"
        )
        return outcome

    def _with_token_refresh(self, step: Callable[[str], Any]) -> Any:
        """Run a step with the cached token; on 401 re-authenticate and retry once"""
        token = self.authenticate()
        try:
            return step(token)
        except GatewayError as e:
            if e.status_code != 401:
                raise
            logger.info(f"Gateway rejected cached token at {e.step}, re-authenticating")
            self.invalidate_token()
            return step(self.authenticate())

    def _post(self, step: str, path: str, payload: Dict[str, Any], unavailable_error) -> httpx.Response:
        """POST and map transport failures and server errors to a retryable error"""
        try:
            response = self._client.post(f"{self.base_url}{path}", json=payload)
        except httpx.TimeoutException as e:
            raise self._unavailable(unavailable_error, f"Gateway timed out during {step}: {e}", step)
        except httpx.TransportError as e:
            raise self._unavailable(unavailable_error, f"Gateway unreachable during {step}: {e}", step)

        if response.status_code >= 500:
            logger.warning(f"Gateway returned {response.status_code} during {step}")
            raise self._unavailable(
                unavailable_error, f"Gateway error {response.status_code} during {step}", step,
                status_code=response.status_code, response=_safe_text(response)
            )
        return response

    @staticmethod
    def _unavailable(error_class, message: str, step: str, status_code: Optional[int] = None,
                     response: Optional[Any] = None) -> GatewayError:
        if error_class is GatewayUnavailable:
            return GatewayUnavailable(message, step=step, status_code=status_code, response=response)
        return error_class(message, step=step, retryable=True, status_code=status_code, response=response)

    @staticmethod
    def _json(response: httpx.Response, step: str, error_class) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise GatewayClient._unavailable(error_class, f"Gateway sent a malformed response during {step}", step,
                                             status_code=response.status_code, response=_safe_text(response))
        return data

    def close(self):
        """Close the HTTP client"""
        self._client.close()


def _safe_text(response: httpx.Response) -> Optional[str]:
    try:
        return response.text[:500]
    except Exception:
        return None
