"""Domain events and the fire-and-forget notification dispatchers.

Events are staged on an ``EventPublisher`` while a transaction is open and
handed to the dispatcher only after it commits. A dispatcher failure is
logged and dropped; it never reaches the caller.
"""
from datetime import datetime
from typing import List, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from settlement.domain.models import utcnow
from settlement.domain.status import OrderStatus, PayoutRole
from shared.core import get_logger

logger = get_logger(__name__)


class DomainEvent(BaseModel):
    event_type: str
    occurred_at: datetime = Field(default_factory=utcnow)


class OrderStatusChanged(DomainEvent):
    event_type: Literal["order.status_changed"] = "order.status_changed"
    order_id: int
    order_number: str
    customer_id: int
    old_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    actor_id: Optional[int] = None


class PaymentConfirmed(DomainEvent):
    event_type: Literal["payment.confirmed"] = "payment.confirmed"
    payment_id: int
    order_id: int
    amount: int


class PaymentRefunded(DomainEvent):
    event_type: Literal["payment.refunded"] = "payment.refunded"
    payment_id: int
    order_id: int
    amount: int
    refunded_total: int
    fully_refunded: bool


class PayoutCreated(DomainEvent):
    event_type: Literal["payout.created"] = "payout.created"
    payout_id: int
    order_id: int
    user_id: int
    role: PayoutRole
    amount: int


class NotificationDispatcher(Protocol):
    def dispatch(self, event: DomainEvent) -> None:
        ...


class LoggingDispatcher:
    """Used when no notification endpoint is configured."""

    def dispatch(self, event: DomainEvent) -> None:
        logger.info(
            f"Domain event {event.event_type}",
            extra={'extra_fields': event.model_dump(mode="json")}
        )


class HttpNotificationDispatcher:
    """POSTs each event as JSON to the notification service."""

    def __init__(self, url: str, timeout: float = 2.0, transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def dispatch(self, event: DomainEvent) -> None:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, json=event.model_dump(mode="json"))
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                f"Notification {event.event_type} not delivered: {exc}",
                extra={'extra_fields': {'event_type': event.event_type}}
            )


class EventPublisher:
    """Per-request outbox shared by every service taking part in one transaction."""

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher
        self._pending: List[DomainEvent] = []

    def stage(self, event: DomainEvent) -> None:
        self._pending.append(event)

    def discard(self) -> None:
        self._pending.clear()

    @property
    def pending(self) -> List[DomainEvent]:
        return list(self._pending)

    def flush(self) -> None:
        events, self._pending = self._pending, []
        for event in events:
            try:
                self.dispatcher.dispatch(event)
            except Exception:
                logger.error(f"Dispatcher raised for {event.event_type}", exc_info=True)
