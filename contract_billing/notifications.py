"""
Notification Sender Module

The notification collaborator consumed by the billing engine. Sending is
fire-and-forget from the engine's point of view: callers log failures and never
let them block or roll back a financial state change.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

import requests


class NotificationCategory(Enum):
    """What a notification is about"""
    CONTRACT = "contract"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_OVERDUE = "payment_overdue"
    PAYMENT = "payment"


class NotificationPriority(Enum):
    """Notification priority levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationSender(ABC):
    """Push/email transport used by the billing engine"""

    @abstractmethod
    def notify(
        self,
        recipient_id: str,
        title: str,
        body: str,
        category: NotificationCategory,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Send a notification. Raises on transport failure."""


class LogNotificationSender(NotificationSender):
    """Writes notifications to the log; the default for development"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("billing.notifications")

    def notify(self, recipient_id, title, body, category,
               priority=NotificationPriority.MEDIUM, metadata=None) -> None:
        self.logger.info(
            f"[{category.value}/{priority.value}] to {recipient_id}: {title} | {body[:100]}"
        )


class WebhookNotificationSender(NotificationSender):
    """POSTs notifications to the notification service's webhook"""

    def __init__(self, url: str, timeout: int = 10, api_key: Optional[str] = None):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key

    def notify(self, recipient_id, title, body, category,
               priority=NotificationPriority.MEDIUM, metadata=None) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "notification_id": str(uuid.uuid4()),
            "recipient_id": recipient_id,
            "title": title,
            "body": body,
            "category": category.value,
            "priority": priority.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {}
        }

        response = requests.post(self.url, json=payload, timeout=self.timeout, headers=headers)
        response.raise_for_status()


class CompositeNotificationSender(NotificationSender):
    """Fans out to several senders; raises only if every sender failed"""

    def __init__(self, senders: List[NotificationSender]):
        self.senders = senders
        self.logger = logging.getLogger("billing.notifications")

    def notify(self, recipient_id, title, body, category,
               priority=NotificationPriority.MEDIUM, metadata=None) -> None:
        errors = []
        for sender in self.senders:
            try:
                sender.notify(recipient_id, title, body, category, priority, metadata)
            except Exception as e:
                self.logger.warning(f"{type(sender).__name__} failed for {recipient_id}: {e}")
                errors.append(e)

        if self.senders and len(errors) == len(self.senders):
            raise errors[-1]
