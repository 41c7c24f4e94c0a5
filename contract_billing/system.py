"""
Billing System Wiring

Builds every billing component from one ``BillingConfig``: storage, event dispatcher,
managers, payment strategies, reminder sweep and scheduler. Event handlers are
subscribed here and the dispatcher is sealed before the system is handed out.
"""

from typing import Optional

from .config import BillingConfig, load_config
from .contracts import ContractManager, contract_status_notifier
from .currency import Currency
from .events import BillingEvent, EventDispatcher
from .gateway import GatewayClient
from .installments import InstallmentManager
from .logging_config import get_logger
from .notifications import LogNotificationSender, NotificationSender
from .payment_service import PaymentService
from .reminders import BillingScheduler, ReminderSweep
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .strategies import (
    CashPaymentStrategy, GatewayPaymentStrategy, InstallmentCollectionStrategy,
    PaymentStrategyDispatcher
)

logger = get_logger("billing.system")


class BillingSystem:
    """Contract billing engine with all components initialized"""

    def __init__(
        self,
        config: Optional[BillingConfig] = None,
        storage: Optional[StorageInterface] = None,
        notification_sender: Optional[NotificationSender] = None,
        gateway_client: Optional[GatewayClient] = None
    ):
        self.config = config or load_config()
        self.storage = storage or self._create_storage()
        self.notification_sender = notification_sender or LogNotificationSender()
        self.currency = Currency.from_code(self.config.default_currency)

        self.event_dispatcher = EventDispatcher()
        self.installment_manager = InstallmentManager(self.storage, self.event_dispatcher)
        self.contract_manager = ContractManager(
            self.storage, self.installment_manager, self.event_dispatcher,
            validity_days=self.config.contract_validity_days,
            currency=self.currency
        )

        self.gateway_client = gateway_client or GatewayClient(self.config.gateway_settings())
        self.payment_dispatcher = PaymentStrategyDispatcher([
            CashPaymentStrategy(),
            InstallmentCollectionStrategy(),
            GatewayPaymentStrategy(self.gateway_client),
        ])
        self.payment_service = PaymentService(
            self.storage, self.payment_dispatcher, self.installment_manager,
            self.event_dispatcher, default_currency=self.currency
        )

        reminder_settings = self.config.reminder_settings()
        self.reminder_sweep = ReminderSweep(
            self.installment_manager, self.notification_sender, reminder_settings
        )
        self.scheduler = BillingScheduler(
            self.reminder_sweep, self.contract_manager, reminder_settings.sweep_interval_seconds
        )

        self.event_dispatcher.subscribe(
            BillingEvent.CONTRACT_STATUS_CHANGED, contract_status_notifier(self.notification_sender)
        )
        self.event_dispatcher.seal()

        logger.info(
            f"Billing system initialized ({type(self.storage).__name__}, "
            f"methods: {', '.join(m.value for m in self.payment_dispatcher.supported_methods)})"
        )

    def _create_storage(self) -> StorageInterface:
        if self.config.storage_backend == "memory":
            return InMemoryStorage()
        if self.config.storage_backend == "sqlite":
            return SQLiteStorage(self.config.sqlite_path)
        raise ValueError(f"Unknown storage backend: {self.config.storage_backend}")

    def close(self) -> None:
        self.scheduler.stop()
        self.gateway_client.close()
        self.storage.close()
