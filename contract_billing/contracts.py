"""
Contract Lifecycle Module

Sales contracts from drafting to signature, cancellation or expiry. Every status
change goes through the transition table below, is applied under the contract's
record lock after re-reading it, and leaves a negotiation record behind. Finalizing
a contract's financial terms materializes its installment schedule exactly once.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import uuid

from .amortization import generate_schedule
from .currency import Currency, to_decimal
from .events import BillingEvent, EventDispatcher, EventPayload, publish_event
from .exceptions import (
    AlreadyConfigured, ConcurrencyConflict, EntityNotFound,
    InvalidFinancialConfiguration, InvalidTransition
)
from .installments import (
    InstallmentManager, InstallmentScheduleEntry, InstallmentStatus, installment_lock_key
)
from .logging_config import get_logger, log_action
from .notifications import NotificationCategory, NotificationPriority, NotificationSender
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal


class ContractStatus(Enum):
    """Contract lifecycle states"""
    DRAFT = "draft"
    SENT_TO_CUSTOMER = "sent_to_customer"
    UNDER_NEGOTIATION = "under_negotiation"
    SIGNED = "signed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class NegotiationAction(Enum):
    """Kinds of negotiation log entries"""
    COMMENT = "comment"
    REVISION = "revision"
    APPROVAL = "approval"
    # Derived from status transitions
    SENT = "sent"
    CANCELLATION = "cancellation"
    EXPIRY = "expiry"


CONTRACT_TRANSITIONS = {
    ContractStatus.DRAFT: {ContractStatus.SENT_TO_CUSTOMER, ContractStatus.CANCELLED},
    ContractStatus.SENT_TO_CUSTOMER: {
        ContractStatus.UNDER_NEGOTIATION, ContractStatus.CANCELLED, ContractStatus.EXPIRED
    },
    ContractStatus.UNDER_NEGOTIATION: {
        ContractStatus.SENT_TO_CUSTOMER, ContractStatus.SIGNED,
        ContractStatus.CANCELLED, ContractStatus.EXPIRED
    },
    ContractStatus.SIGNED: set(),
    ContractStatus.CANCELLED: set(),
    ContractStatus.EXPIRED: set(),
}

NEGOTIABLE_STATUSES = (ContractStatus.SENT_TO_CUSTOMER, ContractStatus.UNDER_NEGOTIATION)
USER_NEGOTIATION_ACTIONS = (NegotiationAction.COMMENT, NegotiationAction.REVISION, NegotiationAction.APPROVAL)
CONFIGURABLE_STATUSES = (
    ContractStatus.DRAFT, ContractStatus.SENT_TO_CUSTOMER,
    ContractStatus.UNDER_NEGOTIATION, ContractStatus.SIGNED
)

# Rates above 100% a month are almost certainly percentages passed as fractions
MAX_MONTHLY_RATE = Decimal('1')


def contract_lock_key(contract_id: str) -> str:
    return f"contract:{contract_id}"


def transition_action(current: ContractStatus, target: ContractStatus) -> NegotiationAction:
    """Negotiation action recorded for a status transition"""
    if target == ContractStatus.SENT_TO_CUSTOMER:
        if current == ContractStatus.UNDER_NEGOTIATION:
            return NegotiationAction.REVISION
        return NegotiationAction.SENT
    if target == ContractStatus.UNDER_NEGOTIATION:
        return NegotiationAction.COMMENT
    if target == ContractStatus.SIGNED:
        return NegotiationAction.APPROVAL
    if target == ContractStatus.CANCELLED:
        return NegotiationAction.CANCELLATION
    return NegotiationAction.EXPIRY


@dataclass(frozen=True)
class FinancialConfiguration:
    """
    Payment terms of a contract.

    Either a pure-cash configuration (only ``cash_amount``) or one carrying a full
    installment block. Rates are monthly fractions (0.01 = 1%).
    """
    cash_amount: Optional[Decimal] = None
    installment_amount: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    late_penalty_rate: Optional[Decimal] = None
    installment_duration_months: Optional[int] = None
    installment_start_date: Optional[date] = None

    @classmethod
    def from_percentages(
        cls,
        cash_amount=None,
        installment_amount=None,
        interest_rate_percent=None,
        late_penalty_percent=None,
        installment_duration_months: Optional[int] = None,
        installment_start_date: Optional[date] = None
    ) -> 'FinancialConfiguration':
        """Build from percentage rates as entered on the contract form (1.00 -> 0.01)"""
        def fraction(percent):
            return to_decimal(percent) / Decimal('100') if percent is not None else None

        return cls(
            cash_amount=to_decimal(cash_amount) if cash_amount is not None else None,
            installment_amount=to_decimal(installment_amount) if installment_amount is not None else None,
            interest_rate=fraction(interest_rate_percent),
            late_penalty_rate=fraction(late_penalty_percent),
            installment_duration_months=installment_duration_months,
            installment_start_date=installment_start_date
        )

    @property
    def installment_fields(self) -> Dict[str, Any]:
        return {
            "installment_amount": self.installment_amount,
            "interest_rate": self.interest_rate,
            "late_penalty_rate": self.late_penalty_rate,
            "installment_duration_months": self.installment_duration_months,
        }

    @property
    def has_installments(self) -> bool:
        return any(value is not None for value in self.installment_fields.values())

    def validate(self) -> None:
        """
        Raises:
            InvalidFinancialConfiguration: partial installment block or out-of-range values
        """
        if self.cash_amount is None and not self.has_installments:
            raise InvalidFinancialConfiguration("Financial configuration is empty")

        if self.cash_amount is not None and self.cash_amount <= 0:
            raise InvalidFinancialConfiguration(
                f"Cash amount must be positive, got {self.cash_amount}", cash_amount=str(self.cash_amount)
            )

        if not self.has_installments:
            if self.installment_start_date is not None:
                raise InvalidFinancialConfiguration(
                    "Installment start date given without an installment plan"
                )
            return

        missing = [name for name, value in self.installment_fields.items() if value is None]
        if missing:
            raise InvalidFinancialConfiguration(
                f"Partial installment configuration, missing: {', '.join(missing)}", missing=missing
            )

        if self.installment_amount <= 0:
            raise InvalidFinancialConfiguration(
                f"Installment amount must be positive, got {self.installment_amount}"
            )
        duration = self.installment_duration_months
        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            raise InvalidFinancialConfiguration(
                f"Installment duration must be a positive number of months, got {duration!r}"
            )
        for name in ("interest_rate", "late_penalty_rate"):
            rate = getattr(self, name)
            if rate < 0 or rate > MAX_MONTHLY_RATE:
                raise InvalidFinancialConfiguration(
                    f"{name} must be a monthly fraction between 0 and 1, got {rate}", **{name: str(rate)}
                )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cash_amount": str(self.cash_amount) if self.cash_amount is not None else None,
            "installment_amount": str(self.installment_amount) if self.installment_amount is not None else None,
            "interest_rate": str(self.interest_rate) if self.interest_rate is not None else None,
            "late_penalty_rate": str(self.late_penalty_rate) if self.late_penalty_rate is not None else None,
            "installment_duration_months": self.installment_duration_months,
            "installment_start_date": (
                self.installment_start_date.isoformat() if self.installment_start_date else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FinancialConfiguration':
        start = data.get('installment_start_date')
        return cls(
            cash_amount=parse_decimal(data.get('cash_amount')),
            installment_amount=parse_decimal(data.get('installment_amount')),
            interest_rate=parse_decimal(data.get('interest_rate')),
            late_penalty_rate=parse_decimal(data.get('late_penalty_rate')),
            installment_duration_months=data.get('installment_duration_months'),
            installment_start_date=date.fromisoformat(start) if start else None
        )


@dataclass
class Contract(StorageRecord):
    """A negotiated sales agreement tied to a deal and a client"""
    contract_number: str
    title: str
    deal_id: str
    client_id: str
    drafted_by: str
    status: ContractStatus = ContractStatus.DRAFT
    content: Optional[str] = None
    document_url: Optional[str] = None
    currency: Currency = Currency.EGP

    # Lifecycle milestones
    drafted_at: Optional[datetime] = None
    sent_to_customer_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    customer_signed_by: Optional[str] = None
    customer_signed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    expired_at: Optional[datetime] = None
    last_reviewed_by: Optional[str] = None
    last_reviewed_at: Optional[datetime] = None

    # Financial configuration
    financials: Optional[FinancialConfiguration] = None
    financial_configured_at: Optional[datetime] = None
    financial_configured_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return not CONTRACT_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        result['financials'] = self.financials.to_dict() if self.financials else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contract':
        financials = data.get('financials')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            contract_number=data['contract_number'],
            title=data['title'],
            deal_id=data['deal_id'],
            client_id=data['client_id'],
            drafted_by=data['drafted_by'],
            status=ContractStatus(data['status']),
            content=data.get('content'),
            document_url=data.get('document_url'),
            currency=Currency.from_code(data['currency']),
            drafted_at=parse_datetime(data.get('drafted_at')),
            sent_to_customer_at=parse_datetime(data.get('sent_to_customer_at')),
            signed_at=parse_datetime(data.get('signed_at')),
            customer_signed_by=data.get('customer_signed_by'),
            customer_signed_at=parse_datetime(data.get('customer_signed_at')),
            cancelled_at=parse_datetime(data.get('cancelled_at')),
            cancellation_reason=data.get('cancellation_reason'),
            expired_at=parse_datetime(data.get('expired_at')),
            last_reviewed_by=data.get('last_reviewed_by'),
            last_reviewed_at=parse_datetime(data.get('last_reviewed_at')),
            financials=FinancialConfiguration.from_dict(financials) if financials else None,
            financial_configured_at=parse_datetime(data.get('financial_configured_at')),
            financial_configured_by=data.get('financial_configured_by')
        )


@dataclass
class ContractNegotiation(StorageRecord):
    """Append-only negotiation log entry"""
    contract_id: str
    action_type: NegotiationAction
    submitted_by: str
    notes: Optional[str] = None
    submitter_role: Optional[str] = None
    attachments: List[str] = field(default_factory=list)
    from_status: Optional[ContractStatus] = None
    to_status: Optional[ContractStatus] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractNegotiation':
        from_status = data.get('from_status')
        to_status = data.get('to_status')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            contract_id=data['contract_id'],
            action_type=NegotiationAction(data['action_type']),
            submitted_by=data['submitted_by'],
            notes=data.get('notes'),
            submitter_role=data.get('submitter_role'),
            attachments=list(data.get('attachments') or []),
            from_status=ContractStatus(from_status) if from_status else None,
            to_status=ContractStatus(to_status) if to_status else None,
            submitted_at=parse_datetime(data['submitted_at'])
        )


class ContractManager:
    """
    Manages the contract lifecycle: drafting, sending, negotiation, signature,
    cancellation, expiry and financial configuration.
    """

    def __init__(
        self,
        storage: StorageInterface,
        installment_manager: InstallmentManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        validity_days: int = 30,
        currency: Currency = Currency.EGP
    ):
        self.storage = storage
        self.installment_manager = installment_manager
        self.event_dispatcher = event_dispatcher
        self.validity_days = validity_days
        self.currency = currency
        self.locks = storage.record_locks
        self.logger = get_logger("billing.contracts")

        self.contracts_table = "contracts"
        self.negotiations_table = "contract_negotiations"

    def create_contract(
        self,
        title: str,
        deal_id: str,
        client_id: str,
        drafted_by: str,
        content: Optional[str] = None,
        document_url: Optional[str] = None,
        contract_number: Optional[str] = None,
        currency: Optional[Currency] = None
    ) -> Contract:
        """
        Draft a new contract

        Args:
            title: Contract title
            deal_id: Sales deal the contract closes
            client_id: Client (hospital) the contract is with
            drafted_by: User drafting the contract
            content: Contract body text
            document_url: Reference to the contract document
            contract_number: Explicit number; generated as CNT-YYYYMMDD-XXXXXXXX if omitted
            currency: Contract currency (defaults to the manager's)

        Returns:
            Created Contract in Draft
        """
        if not title or not title.strip():
            raise ValueError("Contract title is required")

        now = datetime.now(timezone.utc)
        contract = Contract(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            contract_number=contract_number or self._generate_contract_number(now),
            title=title.strip(),
            deal_id=deal_id,
            client_id=client_id,
            drafted_by=drafted_by,
            content=content,
            document_url=document_url,
            currency=currency or self.currency,
            drafted_at=now
        )

        with self.storage.atomic():
            if self.storage.find(self.contracts_table, {"contract_number": contract.contract_number}):
                raise ValueError(f"Contract number {contract.contract_number} already exists")
            self._save_contract(contract)

        log_action(
            self.logger, "info", f"Contract {contract.contract_number} drafted",
            actor=drafted_by, action="create_contract", resource=f"contract:{contract.id}",
            extra={"deal_id": deal_id, "client_id": client_id}
        )
        publish_event(self.event_dispatcher, BillingEvent.CONTRACT_CREATED, "contract", contract.id, {
            "contract_number": contract.contract_number,
            "client_id": client_id,
            "deal_id": deal_id
        })
        return contract

    def advance(
        self,
        contract_id: str,
        target_status: ContractStatus,
        actor: str,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
        actor_role: Optional[str] = None
    ) -> Contract:
        """
        Move a contract along the lifecycle

        Raises:
            EntityNotFound: unknown contract
            InvalidTransition: the edge is not allowed, or a cancellation has no reason
        """
        return self._transition(contract_id, target_status, actor, notes, reason, actor_role)

    def _transition(
        self,
        contract_id: str,
        target_status: ContractStatus,
        actor: str,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
        actor_role: Optional[str] = None,
        precondition: Optional[Callable[[Contract], bool]] = None
    ) -> Contract:
        cancelling = target_status == ContractStatus.CANCELLED
        if cancelling and not (reason and reason.strip()):
            current = self.require_contract(contract_id)
            raise InvalidTransition(
                "contract", contract_id, current.status, target_status,
                reason="a cancellation reason is required"
            )

        with self.locks.hold(contract_lock_key(contract_id)):
            # The schedule cannot change while the contract lock is held
            installment_keys = []
            if cancelling:
                installment_keys = [
                    installment_lock_key(entry.id)
                    for entry in self.installment_manager.get_schedule(contract_id)
                ]

            with self.locks.hold(*installment_keys):
                with self.storage.atomic():
                    contract = self.require_contract(contract_id)
                    previous = contract.status

                    if target_status not in CONTRACT_TRANSITIONS[previous]:
                        raise InvalidTransition("contract", contract_id, previous, target_status)
                    if precondition is not None and not precondition(contract):
                        raise ConcurrencyConflict(
                            f"Contract {contract_id} changed before {target_status.value} was applied",
                            contract_id=contract_id
                        )

                    now = datetime.now(timezone.utc)
                    self._apply_milestones(contract, target_status, actor, reason, now)
                    contract.status = target_status
                    contract.updated_at = now
                    self._save_contract(contract)

                    self._append_negotiation(
                        contract_id=contract_id,
                        action=transition_action(previous, target_status),
                        submitted_by=actor,
                        notes=notes or reason,
                        submitter_role=actor_role,
                        from_status=previous,
                        to_status=target_status,
                        submitted_at=now
                    )

                    cancelled_installments = 0
                    if cancelling:
                        cancelled_installments = self.installment_manager.cancel_open(contract_id)

        log_action(
            self.logger, "info",
            f"Contract {contract.contract_number} moved {previous.value} -> {target_status.value}",
            actor=actor, action="advance_contract", resource=f"contract:{contract_id}",
            extra={"reason": reason, "cancelled_installments": cancelled_installments} if cancelling else None
        )
        publish_event(self.event_dispatcher, BillingEvent.CONTRACT_STATUS_CHANGED, "contract", contract_id, {
            "contract_number": contract.contract_number,
            "client_id": contract.client_id,
            "from_status": previous.value,
            "to_status": target_status.value,
            "actor": actor,
            "reason": reason
        })
        return contract

    def _apply_milestones(self, contract: Contract, target: ContractStatus, actor: str,
                          reason: Optional[str], now: datetime) -> None:
        if target == ContractStatus.SENT_TO_CUSTOMER:
            contract.sent_to_customer_at = now
        elif target == ContractStatus.UNDER_NEGOTIATION:
            contract.last_reviewed_by = actor
            contract.last_reviewed_at = now
        elif target == ContractStatus.SIGNED:
            contract.signed_at = now
            contract.customer_signed_by = actor
            contract.customer_signed_at = now
            contract.last_reviewed_by = actor
            contract.last_reviewed_at = now
        elif target == ContractStatus.CANCELLED:
            contract.cancelled_at = now
            contract.cancellation_reason = reason.strip()
        elif target == ContractStatus.EXPIRED:
            contract.expired_at = now

    def record_negotiation(
        self,
        contract_id: str,
        action: NegotiationAction,
        submitted_by: str,
        notes: Optional[str] = None,
        submitter_role: Optional[str] = None,
        attachments: Optional[List[str]] = None
    ) -> ContractNegotiation:
        """Append a comment, revision request or approval while the contract is with the customer"""
        if action not in USER_NEGOTIATION_ACTIONS:
            raise ValueError(f"{action.value} entries are recorded by status transitions only")

        with self.locks.hold(contract_lock_key(contract_id)):
            with self.storage.atomic():
                contract = self.require_contract(contract_id)
                if contract.status not in NEGOTIABLE_STATUSES:
                    raise InvalidTransition(
                        "contract", contract_id, contract.status, ContractStatus.UNDER_NEGOTIATION,
                        reason="negotiation entries are accepted only while the contract is with the customer"
                    )
                negotiation = self._append_negotiation(
                    contract_id=contract_id,
                    action=action,
                    submitted_by=submitted_by,
                    notes=notes,
                    submitter_role=submitter_role,
                    attachments=attachments
                )

        publish_event(self.event_dispatcher, BillingEvent.CONTRACT_NEGOTIATION_RECORDED, "contract", contract_id, {
            "negotiation_id": negotiation.id,
            "action_type": action.value,
            "submitted_by": submitted_by
        })
        return negotiation

    def finalize_financials(
        self,
        contract_id: str,
        config: FinancialConfiguration,
        actor: str
    ) -> List[InstallmentScheduleEntry]:
        """
        Record a contract's payment terms and generate its installment schedule

        Returns:
            The generated schedule; empty for a pure-cash configuration

        Raises:
            InvalidFinancialConfiguration: partial or out-of-range terms, or a closed contract
            AlreadyConfigured: terms were already finalized
        """
        config.validate()

        with self.locks.hold(contract_lock_key(contract_id)):
            with self.storage.atomic():
                contract = self.require_contract(contract_id)

                if contract.status not in CONFIGURABLE_STATUSES:
                    raise InvalidFinancialConfiguration(
                        f"Contract {contract_id} is {contract.status.value}, "
                        f"financial terms can no longer be configured",
                        contract_id=contract_id, status=contract.status
                    )
                if contract.financial_configured_at or self.installment_manager.get_schedule(contract_id):
                    raise AlreadyConfigured(contract_id)

                now = datetime.now(timezone.utc)
                contract.financials = config
                contract.financial_configured_at = now
                contract.financial_configured_by = actor
                contract.updated_at = now
                self._save_contract(contract)

                schedule = []
                if config.has_installments:
                    start_date = (
                        config.installment_start_date
                        or (contract.signed_at.date() if contract.signed_at else now.date())
                    )
                    lines = generate_schedule(
                        config.installment_amount,
                        config.installment_duration_months,
                        config.interest_rate,
                        config.late_penalty_rate,
                        start_date,
                        contract.currency
                    )
                    schedule = self.installment_manager.create_schedule(
                        contract_id=contract_id,
                        client_id=contract.client_id,
                        contract_number=contract.contract_number,
                        lines=lines,
                        late_penalty_rate=config.late_penalty_rate,
                        currency=contract.currency
                    )

        log_action(
            self.logger, "info", f"Financial terms finalized for contract {contract.contract_number}",
            actor=actor, action="finalize_financials", resource=f"contract:{contract_id}",
            extra={"installments": len(schedule), **config.to_dict()}
        )
        publish_event(self.event_dispatcher, BillingEvent.CONTRACT_FINANCIALS_CONFIGURED, "contract", contract_id, {
            "contract_number": contract.contract_number,
            "installments": len(schedule),
            "configured_by": actor
        })
        return schedule

    def expire_stale_contracts(self, now: Optional[datetime] = None) -> List[str]:
        """Expire contracts left unsigned with the customer past the validity window"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.validity_days)

        def is_stale(contract: Contract) -> bool:
            return contract.sent_to_customer_at is not None and contract.sent_to_customer_at < cutoff

        candidates = [
            contract for contract in self.list_contracts(status=list(NEGOTIABLE_STATUSES))
            if is_stale(contract)
        ]

        expired = []
        for contract in candidates:
            try:
                self._transition(
                    contract.id, ContractStatus.EXPIRED, actor="system",
                    notes=f"Unsigned {self.validity_days} days after being sent",
                    precondition=is_stale
                )
                expired.append(contract.id)
            except (InvalidTransition, ConcurrencyConflict) as e:
                # Signed, cancelled or re-sent since the scan
                self.logger.debug(f"Skipping expiry of {contract.contract_number}: {e}")

        if expired:
            self.logger.info(f"Expired {len(expired)} stale contracts")
        return expired

    def delete_contract(self, contract_id: str, actor: str) -> None:
        """Delete a draft with its negotiation log and schedule"""
        with self.locks.hold(contract_lock_key(contract_id)):
            schedule = self.installment_manager.get_schedule(contract_id)
            with self.locks.hold(*[installment_lock_key(entry.id) for entry in schedule]):
                with self.storage.atomic():
                    contract = self.require_contract(contract_id)
                    if contract.status != ContractStatus.DRAFT:
                        raise InvalidTransition(
                            "contract", contract_id, contract.status, contract.status,
                            reason="only draft contracts can be deleted"
                        )
                    if any(e.status == InstallmentStatus.PAID
                           for e in self.installment_manager.get_schedule(contract_id)):
                        raise ConcurrencyConflict(
                            f"Contract {contract_id} has paid installments", contract_id=contract_id
                        )

                    for data in self.storage.find(self.negotiations_table, {"contract_id": contract_id}):
                        self.storage.delete(self.negotiations_table, data['id'])
                    self.installment_manager.delete_schedule(contract_id)
                    self.storage.delete(self.contracts_table, contract_id)

        log_action(
            self.logger, "info", f"Contract {contract.contract_number} deleted",
            actor=actor, action="delete_contract", resource=f"contract:{contract_id}"
        )

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        data = self.storage.load(self.contracts_table, contract_id)
        return Contract.from_dict(data) if data else None

    def require_contract(self, contract_id: str) -> Contract:
        contract = self.get_contract(contract_id)
        if contract is None:
            raise EntityNotFound("contract", contract_id)
        return contract

    def get_contract_by_number(self, contract_number: str) -> Optional[Contract]:
        matches = self.storage.find(self.contracts_table, {"contract_number": contract_number})
        return Contract.from_dict(matches[0]) if matches else None

    def list_contracts(self, status=None, client_id: Optional[str] = None) -> List[Contract]:
        """Contracts ordered by creation, optionally filtered by status (one or several)"""
        filters: Dict[str, Any] = {}
        if status is not None:
            if isinstance(status, ContractStatus):
                filters["status"] = status.value
            else:
                filters["status"] = [s.value for s in status]
        if client_id is not None:
            filters["client_id"] = client_id

        contracts = [Contract.from_dict(data) for data in self.storage.find(self.contracts_table, filters)]
        contracts.sort(key=lambda c: c.created_at)
        return contracts

    def get_negotiations(self, contract_id: str) -> List[ContractNegotiation]:
        """Negotiation log in submission order"""
        entries = [
            ContractNegotiation.from_dict(data)
            for data in self.storage.find(self.negotiations_table, {"contract_id": contract_id})
        ]
        entries.sort(key=lambda n: n.submitted_at)
        return entries

    def get_contract_summary(self, contract_id: str, as_of: Optional[date] = None) -> Dict[str, Any]:
        contract = self.require_contract(contract_id)
        summary = self.installment_manager.summarize(contract_id, as_of)
        summary.update({
            "contract_number": contract.contract_number,
            "title": contract.title,
            "client_id": contract.client_id,
            "status": contract.status.value,
            "currency": contract.currency.code,
            "financials": contract.financials.to_dict() if contract.financials else None,
            "negotiation_count": len(self.get_negotiations(contract_id)),
        })
        return summary

    def _append_negotiation(
        self,
        contract_id: str,
        action: NegotiationAction,
        submitted_by: str,
        notes: Optional[str] = None,
        submitter_role: Optional[str] = None,
        attachments: Optional[List[str]] = None,
        from_status: Optional[ContractStatus] = None,
        to_status: Optional[ContractStatus] = None,
        submitted_at: Optional[datetime] = None
    ) -> ContractNegotiation:
        now = submitted_at or datetime.now(timezone.utc)
        negotiation = ContractNegotiation(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            contract_id=contract_id,
            action_type=action,
            submitted_by=submitted_by,
            notes=notes,
            submitter_role=submitter_role,
            attachments=list(attachments or []),
            from_status=from_status,
            to_status=to_status,
            submitted_at=now
        )
        self.storage.save(self.negotiations_table, negotiation.id, negotiation.to_dict())
        return negotiation

    def _save_contract(self, contract: Contract) -> None:
        self.storage.save(self.contracts_table, contract.id, contract.to_dict())

    @staticmethod
    def _generate_contract_number(now: datetime) -> str:
        return f"CNT-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


CONTRACT_STATUS_TITLES = {
    ContractStatus.SENT_TO_CUSTOMER: "Contract ready for your review",
    ContractStatus.UNDER_NEGOTIATION: "Contract under negotiation",
    ContractStatus.SIGNED: "Contract signed",
    ContractStatus.CANCELLED: "Contract cancelled",
    ContractStatus.EXPIRED: "Contract expired",
}


def contract_status_notifier(sender: NotificationSender) -> Callable[[EventPayload], None]:
    """Event handler sending a lifecycle notification to the contract's client"""

    def notify_contract_status(event: EventPayload) -> None:
        status = ContractStatus(event.data["to_status"])
        number = event.data["contract_number"]
        body = f"Contract {number} is now {status.value.replace('_', ' ')}."
        if event.data.get("reason"):
            body = f"{body} Reason: {event.data['reason']}"

        sender.notify(
            recipient_id=event.data["client_id"],
            title=CONTRACT_STATUS_TITLES.get(status, "Contract updated"),
            body=body,
            category=NotificationCategory.CONTRACT,
            priority=NotificationPriority.HIGH if status == ContractStatus.CANCELLED else NotificationPriority.MEDIUM,
            metadata={"contract_id": event.entity_id, "contract_number": number, "status": status.value}
        )

    return notify_contract_status
