from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import List, Optional

from settlement.domain.status import (
    ItemStatus, OrderStatus, PaymentStatus, PayoutMethod, PayoutRole, PayoutStatus, PickupSlot, Role,
)


class AddressSnapshot(BaseModel):
    line1: str = Field(min_length=1, max_length=200)
    line2: Optional[str] = Field(default=None, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    postcode: str = Field(min_length=2, max_length=12)


class OrderItemCreate(BaseModel):
    service_id: int
    quantity: int = Field(default=1, gt=0, le=50)
    garment_description: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class OrderCreate(BaseModel):
    items: list[OrderItemCreate] = Field(min_length=1)
    address: AddressSnapshot
    phone: str = Field(min_length=5, max_length=50)
    pickup_date: date
    pickup_slot: PickupSlot
    notes: Optional[str] = None


class AdvanceRequest(BaseModel):
    target_status: OrderStatus
    override: bool = False
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1)


class AssignRequest(BaseModel):
    role: PayoutRole
    user_id: int


class ItemUpdate(BaseModel):
    status: ItemStatus
    notes: Optional[str] = None


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    service_id: int
    service_name: str
    unit_price: int
    quantity: int
    price: int
    garment_description: Optional[str] = None
    notes: Optional[str] = None
    status: ItemStatus
    provider_notes: Optional[str] = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_number: str
    customer_id: int
    agent_id: Optional[int] = None
    provider_id: Optional[int] = None
    status: OrderStatus
    subtotal: int
    delivery_fee: int
    total: int
    pickup_date: Optional[date] = None
    pickup_slot: Optional[str] = None
    delivery_address: dict
    customer_phone: Optional[str] = None
    customer_notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    collected_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: list[OrderItemRead]


class TimelineEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor_id: Optional[int] = None
    actor_role: Optional[Role] = None
    notes: Optional[str] = None
    override: bool
    created_at: datetime


class CheckoutHandoff(BaseModel):
    payment_id: int
    session_id: str
    checkout_url: str
    amount: int


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_id: int
    processor_session_id: Optional[str] = None
    processor_payment_intent_id: Optional[str] = None
    amount: int
    refunded_amount: int
    currency: str
    status: PaymentStatus
    meta: dict = Field(default_factory=dict, serialization_alias="metadata")
    succeeded_at: Optional[datetime] = None
    created_at: datetime


class RefundRequest(BaseModel):
    # omitted = the whole remaining balance
    amount: Optional[int] = Field(default=None, gt=0)
    reason: str = Field(min_length=1)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class RefundOutcome(BaseModel):
    payment_id: int
    refund_id: str
    amount: int
    # "succeeded" or "pending"
    status: str
    refunded_total: int
    payment_status: PaymentStatus
    order_status: OrderStatus


class ReconcileResult(BaseModel):
    event_id: str
    duplicate: bool = False
    payment_id: Optional[int] = None
    outcome: str = "applied"


class SyncReport(BaseModel):
    orders_checked: int = 0
    synced: int = 0
    skipped: int = 0
    unmatched: int = 0
    errors: List[str] = Field(default_factory=list)


class PayoutRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    order_id: int
    user_id: int
    role: PayoutRole
    amount: int
    status: PayoutStatus
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    paid_by: Optional[int] = None
    created_at: datetime


class MarkPaidRequest(BaseModel):
    payment_method: PayoutMethod
    notes: Optional[str] = None


class VoidRequest(BaseModel):
    reason: str = Field(min_length=1)


class PayoutSummary(BaseModel):
    user_id: int
    pending_total: int = 0
    pending_count: int = 0
    paid_total: int = 0
    paid_count: int = 0
