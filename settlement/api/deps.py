"""FastAPI dependency wiring.

One ``EventPublisher`` is created per request and shared by every service the
request touches, so events staged by nested operations are published together
after the single commit.
"""
from functools import lru_cache

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from settlement.application.directory import Actor, UserDirectory
from settlement.application.events import (
    EventPublisher, HttpNotificationDispatcher, LoggingDispatcher, NotificationDispatcher,
)
from settlement.application.orders import OrderLedger
from settlement.application.payments import PaymentGateway
from settlement.application.payouts import PayoutCalculator, PayoutPolicy
from settlement.application.refunds import RefundProcessor
from settlement.auth_local import decode_access_token
from settlement.core_settings import Settings, get_settings
from settlement.domain.errors import Unauthenticated
from settlement.infrastructure.db import get_db
from settlement.infrastructure.processor import PaymentProcessor, StripeProcessor
from shared.core import set_request_context

BEARER_PREFIX = "Bearer "


@lru_cache
def get_processor() -> PaymentProcessor:
    return StripeProcessor(get_settings())


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    if settings.NOTIFICATIONS_URL:
        return HttpNotificationDispatcher(settings.NOTIFICATIONS_URL, settings.NOTIFICATIONS_TIMEOUT_SECONDS)
    return LoggingDispatcher()


def get_payout_policy(settings: Settings = Depends(get_settings)) -> PayoutPolicy:
    return PayoutPolicy.from_settings(settings)


def get_events(dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> EventPublisher:
    return EventPublisher(dispatcher)


def get_payouts(
    db: Session = Depends(get_db),
    events: EventPublisher = Depends(get_events),
    policy: PayoutPolicy = Depends(get_payout_policy),
) -> PayoutCalculator:
    return PayoutCalculator(db, events, policy)


def get_ledger(
    db: Session = Depends(get_db),
    events: EventPublisher = Depends(get_events),
    payouts: PayoutCalculator = Depends(get_payouts),
    settings: Settings = Depends(get_settings),
) -> OrderLedger:
    return OrderLedger(db, events, payouts, settings.DELIVERY_FEE, settings.ORDER_NUMBER_PREFIX)


def get_refunds(
    db: Session = Depends(get_db),
    events: EventPublisher = Depends(get_events),
    processor: PaymentProcessor = Depends(get_processor),
    ledger: OrderLedger = Depends(get_ledger),
) -> RefundProcessor:
    return RefundProcessor(db, events, processor, ledger)


def get_gateway(
    db: Session = Depends(get_db),
    events: EventPublisher = Depends(get_events),
    processor: PaymentProcessor = Depends(get_processor),
    ledger: OrderLedger = Depends(get_ledger),
    refunds: RefundProcessor = Depends(get_refunds),
    settings: Settings = Depends(get_settings),
) -> PaymentGateway:
    return PaymentGateway(db, events, processor, ledger, refunds, settings.CURRENCY)


async def get_raw_body(request: Request) -> bytes:
    """Raw request bytes for signature checks; lets the handler itself stay sync."""
    return await request.body()


def get_current_actor(request: Request, db: Session = Depends(get_db)) -> Actor:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise Unauthenticated("Missing token")
    token_data = decode_access_token(auth_header.split(" ", 1)[1])
    if not token_data or not str(token_data.get("sub", "")).isdigit():
        raise Unauthenticated("Invalid token")
    actor = UserDirectory(db).actor_for(int(token_data["sub"]))
    set_request_context(actor_id=actor.id)
    return actor
