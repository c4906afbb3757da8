import json
import os
from datetime import date

# must be set before the settlement package builds its engine and settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_dummy")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from settlement.application.directory import Actor
from settlement.application.events import EventPublisher
from settlement.application.orders import OrderLedger
from settlement.application.payments import PaymentGateway
from settlement.application.payouts import PayoutCalculator, PayoutPolicy
from settlement.application.refunds import RefundProcessor
from settlement.application.schemas import AddressSnapshot, OrderCreate, OrderItemCreate
from settlement.domain.errors import InvalidSignature, ProcessorUnavailable
from settlement.domain.models import Base, CatalogService, Payment, User
from settlement.domain.status import ItemStatus, OrderStatus, PickupSlot, Role, next_status
from settlement.infrastructure.processor import CheckoutSession, EventKind, ProcessorEvent, RefundResult

DELIVERY_FEE = 700

USERS = {
    "customer": (1, Role.CUSTOMER),
    "other_customer": (2, Role.CUSTOMER),
    "agent": (10, Role.AGENT),
    "other_agent": (11, Role.AGENT),
    "provider": (20, Role.PROVIDER),
    "other_provider": (21, Role.PROVIDER),
    "staff": (30, Role.STAFF),
    "admin": (40, Role.ADMIN),
}

# who drives each forward edge when walking an order down the pipeline
EDGE_DRIVERS = {
    OrderStatus.BOOKED: "staff",
    OrderStatus.PICKUP_SCHEDULED: "agent",
    OrderStatus.COLLECTED: "provider",
    OrderStatus.READY: "agent",
    OrderStatus.OUT_FOR_DELIVERY: "agent",
    OrderStatus.DELIVERED: "staff",
}


class FakeProcessor:
    """In-memory processor; refunds are idempotent per key like the real one."""

    def __init__(self):
        self.sessions = []
        self.refund_calls = []
        self.refund_status = "succeeded"
        self.unavailable = False
        self.completed = []
        self._refunds_by_key = {}

    def create_checkout_session(self, amount, order_ref, *, idempotency_key):
        if self.unavailable:
            raise ProcessorUnavailable("processor timed out")
        session = CheckoutSession(
            session_id=f"cs_test_{len(self.sessions) + 1}",
            url=f"https://checkout.test/{len(self.sessions) + 1}",
        )
        self.sessions.append((session, amount, order_ref, idempotency_key))
        return session

    def refund(self, payment_intent_id, amount, *, idempotency_key, metadata=None):
        self.refund_calls.append((payment_intent_id, amount, idempotency_key))
        if self.unavailable:
            raise ProcessorUnavailable("processor timed out")
        if idempotency_key not in self._refunds_by_key:
            self._refunds_by_key[idempotency_key] = RefundResult(
                refund_id=f"re_test_{len(self._refunds_by_key) + 1}",
                status=self.refund_status,
                amount=amount,
            )
        return self._refunds_by_key[idempotency_key]

    def list_completed_sessions(self):
        if self.unavailable:
            raise ProcessorUnavailable("processor timed out")
        return list(self.completed)

    @property
    def refunds_issued(self):
        return len(self._refunds_by_key)

    def parse_event(self, payload, signature):
        if signature != "valid":
            raise InvalidSignature("Webhook signature verification failed")
        data = json.loads(payload)
        if data.get("kind") is None:
            return None
        return ProcessorEvent(**{**data, "kind": EventKind(data["kind"])})


class RecordingDispatcher:
    def __init__(self):
        self.events = []

    def dispatch(self, event):
        self.events.append(event)

    def types(self):
        return [e.event_type for e in self.events]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)()
    for user_id, role in USERS.values():
        session.add(User(id=user_id, email=f"user{user_id}@example.com", full_name=f"User {user_id}",
                         role=role, active=True))
    session.add_all([
        CatalogService(id=1, name="Trouser hem", category="alterations", base_price=1500, active=True),
        CatalogService(id=2, name="Suit alteration", category="alterations", base_price=4500, active=True),
        CatalogService(id=3, name="Retired service", category="repairs", base_price=999, active=False),
        CatalogService(id=4, name="Dress alteration", category="alterations", base_price=4000, active=True),
    ])
    session.commit()
    yield session
    session.close()


@pytest.fixture
def other_db(engine):
    """A second session on the same database, for a competing writer."""
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def actors():
    return {name: Actor(id=user_id, role=role) for name, (user_id, role) in USERS.items()}


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def events(dispatcher):
    return EventPublisher(dispatcher)


@pytest.fixture
def policy():
    return PayoutPolicy(provider_rate="0.60", agent_fee=500)


@pytest.fixture
def payouts(db, events, policy):
    return PayoutCalculator(db, events, policy)


@pytest.fixture
def ledger(db, events, payouts):
    return OrderLedger(db, events, payouts, DELIVERY_FEE)


@pytest.fixture
def refunds(db, events, processor, ledger):
    return RefundProcessor(db, events, processor, ledger)


@pytest.fixture
def gateway(db, events, processor, ledger, refunds):
    return PaymentGateway(db, events, processor, ledger, refunds)


def order_payload(items=None):
    return OrderCreate(
        items=items or [OrderItemCreate(service_id=1, quantity=2), OrderItemCreate(service_id=2)],
        address=AddressSnapshot(line1="1 High Street", city="London", postcode="N1 1AA"),
        phone="07700900000",
        pickup_date=date(2026, 10, 20),
        pickup_slot=PickupSlot.MORNING,
    )


@pytest.fixture
def place_order(ledger, actors):
    """Books 2 x 1500 + 1 x 4500: subtotal 7500, total 8200."""
    def _place(customer=None, items=None):
        return ledger.create_order(customer or actors["customer"], order_payload(items))
    return _place


@pytest.fixture
def drive(ledger, actors):
    """Walks an order forward to ``target`` with the actor each edge expects."""
    def _drive(order, target):
        while order.status != target:
            current = order.status
            if current == OrderStatus.IN_PROGRESS:
                # finishing the last item moves the order to ready
                for item_id in [item.id for item in order.items]:
                    order = ledger.update_item(order.id, item_id, ItemStatus.DONE, actors["provider"])
                continue
            order = ledger.advance(order.id, next_status(current), actors[EDGE_DRIVERS[current]])
        return order
    return _drive


@pytest.fixture
def pay(gateway, db, actors):
    """Checkout plus a confirmed capture; returns the succeeded payment."""
    def _pay(order, customer=None):
        handoff = gateway.initiate(order.id, customer or actors["customer"])
        gateway.reconcile(ProcessorEvent(
            event_id=f"evt_paid_{handoff.payment_id}",
            kind=EventKind.PAYMENT_SUCCEEDED,
            session_id=handoff.session_id,
            payment_intent_id=f"pi_test_{handoff.payment_id}",
            amount=handoff.amount,
        ))
        return db.get(Payment, handoff.payment_id)
    return _pay
