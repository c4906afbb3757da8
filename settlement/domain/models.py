from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates
from sqlalchemy import (
    JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, event,
)
from datetime import date, datetime, timezone
from typing import Optional

from .status import (
    ItemStatus, OrderStatus, PaymentStatus, PayoutRole, PayoutStatus, Role,
)


def _enum(enum_cls, length: int = 30) -> Enum:
    # store the lowercase value, not the member name
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


def utcnow() -> datetime:
    """Naive UTC, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class User(Base):
    """Directory entry; owned by the accounts service, read-only here."""
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    full_name: Mapped[str] = mapped_column(String(200))
    role: Mapped[Role] = mapped_column(_enum(Role, 20))
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class CatalogService(Base):
    """Catalog entry; read once at order time and snapshotted onto the item."""
    __tablename__ = "catalog_services"
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(50))
    base_price: Mapped[int] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    # directory ids (no FK - users live in the accounts service)
    customer_id: Mapped[int] = mapped_column(index=True)
    agent_id: Mapped[Optional[int]] = mapped_column(nullable=True, index=True)
    provider_id: Mapped[Optional[int]] = mapped_column(nullable=True, index=True)
    status: Mapped[OrderStatus] = mapped_column(_enum(OrderStatus), default=OrderStatus.BOOKED)
    # minor currency units
    subtotal: Mapped[int] = mapped_column(Integer)
    delivery_fee: Mapped[int] = mapped_column(Integer)
    total: Mapped[int] = mapped_column(Integer)
    pickup_date: Mapped[Optional[date]] = mapped_column(nullable=True)
    pickup_slot: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    # Address snapshot captured at checkout
    delivery_address: Mapped[dict] = mapped_column(JSON, default=dict)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    pickup_scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    collected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    timeline: Mapped[list["OrderTimelineEntry"]] = relationship(
        "OrderTimelineEntry", back_populates="order", order_by="OrderTimelineEntry.id"
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment", back_populates="order", order_by="Payment.id"
    )
    payouts: Mapped[list["Payout"]] = relationship(
        "Payout", back_populates="order", order_by="Payout.id"
    )

    __mapper_args__ = {"version_id_col": version}

    @validates("subtotal", "delivery_fee", "total")
    def _freeze_money(self, key, value):
        current = self.__dict__.get(key)
        if current is not None and current != value:
            raise ValueError(f"Order.{key} is fixed at checkout")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status.value}>"


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    # catalog id (no FK - snapshot below is authoritative)
    service_id: Mapped[int]
    service_name: Mapped[str] = mapped_column(String(200))
    unit_price: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int]
    # unit_price * quantity
    price: Mapped[int] = mapped_column(Integer)
    garment_description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[ItemStatus] = mapped_column(_enum(ItemStatus), default=ItemStatus.PENDING)
    provider_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order: Mapped[Order] = relationship("Order", back_populates="items")


class OrderTimelineEntry(Base):
    """Append-only audit log of order status changes."""
    __tablename__ = "order_timeline"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    from_status: Mapped[Optional[OrderStatus]] = mapped_column(_enum(OrderStatus), nullable=True)
    to_status: Mapped[OrderStatus] = mapped_column(_enum(OrderStatus))
    actor_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    actor_role: Mapped[Optional[Role]] = mapped_column(_enum(Role, 20), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    override: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="timeline")


@event.listens_for(OrderTimelineEntry, "before_update")
@event.listens_for(OrderTimelineEntry, "before_delete")
def _timeline_is_append_only(mapper, connection, target):
    raise ValueError("Timeline entries are immutable")


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    processor_session_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    processor_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    refunded_amount: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8))
    status: Mapped[PaymentStatus] = mapped_column(_enum(PaymentStatus, 20), default=PaymentStatus.PENDING)
    # refund trail, pending refunds, retry links, failure reasons
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    succeeded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="payments")

    @property
    def pending_refund_total(self) -> int:
        return sum(entry["amount"] for entry in (self.meta or {}).get("pending_refunds", []))

    @property
    def refundable_balance(self) -> int:
        return self.amount - self.refunded_amount - self.pending_refund_total


class ProcessedEvent(Base):
    """Idempotency keys of processor callbacks that have been applied."""
    __tablename__ = "processed_events"
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(50))
    payment_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payments.id"), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("order_id", "user_id", name="uq_payouts_order_user"),
        UniqueConstraint("order_id", "role", name="uq_payouts_order_role"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    user_id: Mapped[int] = mapped_column(index=True)
    role: Mapped[PayoutRole] = mapped_column(_enum(PayoutRole, 20))
    amount: Mapped[int] = mapped_column(Integer)
    status: Mapped[PayoutStatus] = mapped_column(_enum(PayoutStatus, 20), default=PayoutStatus.PENDING)
    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_by: Mapped[Optional[int]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="payouts")
