"""
End-to-end tests for the wired billing system

Drives a contract from draft to signature, generates its schedule, collects an
installment in cash, and runs a scheduler tick, all against in-memory storage.
"""

import pytest
from decimal import Decimal
from datetime import date
from unittest.mock import Mock

from contract_billing.config import load_config
from contract_billing.contracts import ContractStatus, FinancialConfiguration
from contract_billing.events import BillingEvent
from contract_billing.exceptions import ConfigurationError
from contract_billing.gateway import GatewayClient
from contract_billing.installments import InstallmentStatus
from contract_billing.notifications import NotificationCategory, NotificationSender
from contract_billing.payments import InstallmentTarget, PaymentMethod, PaymentStatus
from contract_billing.storage import InMemoryStorage
from contract_billing.system import BillingSystem


@pytest.fixture
def sender():
    return Mock(spec=NotificationSender)


@pytest.fixture
def system(sender):
    billing = BillingSystem(
        config=load_config(storage_backend="memory", sweep_interval_seconds=60),
        notification_sender=sender,
        gateway_client=Mock(spec=GatewayClient)
    )
    yield billing
    billing.close()


def sign_contract(system):
    contracts = system.contract_manager
    contract = contracts.create_contract("Imaging equipment supply", "deal-1", "hospital-1", "sales-1")
    contracts.advance(contract.id, ContractStatus.SENT_TO_CUSTOMER, "sales-1")
    contracts.advance(contract.id, ContractStatus.UNDER_NEGOTIATION, "hospital-1")
    return contracts.advance(contract.id, ContractStatus.SIGNED, "sales-1")


class TestWiring:
    """Test component wiring"""

    def test_memory_backend_selected(self, system):
        assert isinstance(system.storage, InMemoryStorage)

    def test_dispatcher_sealed(self, system):
        assert system.event_dispatcher.sealed is True
        assert system.event_dispatcher.get_handler_count(BillingEvent.CONTRACT_STATUS_CHANGED) == 1
        with pytest.raises(ConfigurationError):
            system.event_dispatcher.subscribe(BillingEvent.PAYMENT_COMPLETED, Mock())

    def test_every_method_has_a_strategy(self, system):
        assert set(system.payment_dispatcher.supported_methods) == set(PaymentMethod)

    def test_unknown_backend_rejected(self, sender):
        with pytest.raises(ValueError):
            BillingSystem(config=load_config(storage_backend="postgres"), notification_sender=sender,
                          gateway_client=Mock(spec=GatewayClient))


class TestContractToCash:
    """Test the full contract-to-cash flow"""

    def test_status_changes_notify_client(self, system, sender):
        contract = sign_contract(system)

        assert contract.status == ContractStatus.SIGNED
        assert sender.notify.call_count == 3
        last = sender.notify.call_args.kwargs
        assert last["recipient_id"] == "hospital-1"
        assert last["category"] == NotificationCategory.CONTRACT
        assert last["metadata"]["status"] == "signed"

    def test_installment_collected_in_cash(self, system):
        contract = sign_contract(system)
        schedule = system.contract_manager.finalize_financials(
            contract.id,
            FinancialConfiguration.from_percentages(
                cash_amount="500000", installment_amount="120000",
                interest_rate_percent="1.00", late_penalty_percent="2.00",
                installment_duration_months=12, installment_start_date=date(2025, 1, 1)
            ),
            actor="accounts-1"
        )
        assert len(schedule) == 12
        assert sum(e.amount for e in schedule) == Decimal('120000.00')

        payments = system.payment_service
        transaction = payments.start_payment(
            schedule[0].total_due, PaymentMethod.INSTALLMENT, InstallmentTarget(schedule[0].id),
            initiated_by="delegate-1"
        )
        payments.process_payment(transaction.id)
        confirmed = payments.confirm_payment(transaction.id, approver="accounts-1")

        assert confirmed.status == PaymentStatus.COMPLETED
        assert system.installment_manager.get_installment(schedule[0].id).status == InstallmentStatus.PAID
        summary = system.installment_manager.summarize(contract.id)
        assert summary["status_counts"]["paid"] == 1

    def test_scheduler_tick_marks_overdue(self, system, sender):
        contract = sign_contract(system)
        schedule = system.contract_manager.finalize_financials(
            contract.id,
            FinancialConfiguration.from_percentages(
                cash_amount="10000", installment_amount="3000", interest_rate_percent="0",
                late_penalty_percent="2", installment_duration_months=3,
                installment_start_date=date(2025, 1, 1)
            ),
            actor="accounts-1"
        )
        sender.notify.reset_mock()

        summary = system.scheduler.run_once(date(2025, 2, 5))

        assert summary["sweep"]["marked_overdue"] == 1
        assert summary["expired_contracts"] == []
        assert system.installment_manager.get_installment(schedule[0].id).status == InstallmentStatus.OVERDUE
        assert sender.notify.call_args.kwargs["category"] == NotificationCategory.PAYMENT_OVERDUE
