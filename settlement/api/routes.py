from fastapi import APIRouter, Depends, Query, Request
from typing import Optional

from settlement.application.directory import Actor
from settlement.application.orders import OrderLedger
from settlement.application.payments import PaymentGateway
from settlement.application.payouts import PayoutCalculator
from settlement.application.refunds import RefundProcessor
from settlement.application.schemas import (
    AdvanceRequest, AssignRequest, CancelRequest, CheckoutHandoff, ItemUpdate, MarkPaidRequest, OrderCreate,
    OrderRead, PaymentRead, PayoutRead, PayoutSummary, ReconcileResult, RefundOutcome, RefundRequest,
    SyncReport, TimelineEntryRead, VoidRequest,
)
from settlement.domain.errors import Unauthorized
from settlement.domain.status import PayoutStatus, Role
from settlement.infrastructure.processor import PaymentProcessor
from .deps import (
    get_current_actor, get_gateway, get_ledger, get_payouts, get_processor, get_raw_body, get_refunds,
)

orders_router = APIRouter(prefix="/orders", tags=["orders"])
payments_router = APIRouter(tags=["payments"])
payouts_router = APIRouter(prefix="/payouts", tags=["payouts"])


# -- orders ------------------------------------------------------------------

@orders_router.post("/", response_model=OrderRead, status_code=201)
def create_order(
    payload: OrderCreate,
    actor: Actor = Depends(get_current_actor),
    ledger: OrderLedger = Depends(get_ledger),
):
    """Checkout: price the basket from the catalog and book the order."""
    return ledger.create_order(actor, payload)


@orders_router.get("/", response_model=list[OrderRead])
def list_orders(actor: Actor = Depends(get_current_actor), ledger: OrderLedger = Depends(get_ledger)):
    return ledger.list_for(actor)


@orders_router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, actor: Actor = Depends(get_current_actor), ledger: OrderLedger = Depends(get_ledger)):
    return ledger.get_for(order_id, actor)


@orders_router.get("/{order_id}/timeline", response_model=list[TimelineEntryRead])
def get_timeline(order_id: int, actor: Actor = Depends(get_current_actor), ledger: OrderLedger = Depends(get_ledger)):
    return ledger.timeline(order_id, actor)


@orders_router.post("/{order_id}/advance", response_model=OrderRead)
def advance_order(
    order_id: int,
    payload: AdvanceRequest,
    actor: Actor = Depends(get_current_actor),
    ledger: OrderLedger = Depends(get_ledger),
):
    return ledger.advance(order_id, payload.target_status, actor, override=payload.override, reason=payload.reason)


@orders_router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: int,
    payload: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    ledger: OrderLedger = Depends(get_ledger),
):
    """Cancel without refunding; refunds go through /payments/{id}/refund."""
    return ledger.cancel(order_id, actor, payload.reason)


@orders_router.post("/{order_id}/assign", response_model=OrderRead)
def assign_order(
    order_id: int,
    payload: AssignRequest,
    actor: Actor = Depends(get_current_actor),
    ledger: OrderLedger = Depends(get_ledger),
):
    return ledger.assign(order_id, payload.role, payload.user_id, actor)


@orders_router.post("/{order_id}/claim", response_model=OrderRead)
def claim_order(order_id: int, actor: Actor = Depends(get_current_actor), ledger: OrderLedger = Depends(get_ledger)):
    return ledger.claim(order_id, actor)


@orders_router.patch("/{order_id}/items/{item_id}", response_model=OrderRead)
def update_item(
    order_id: int,
    item_id: int,
    payload: ItemUpdate,
    actor: Actor = Depends(get_current_actor),
    ledger: OrderLedger = Depends(get_ledger),
):
    return ledger.update_item(order_id, item_id, payload.status, actor, notes=payload.notes)


@orders_router.post("/{order_id}/checkout", response_model=CheckoutHandoff, status_code=201)
def start_checkout(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return gateway.initiate(order_id, actor)


@orders_router.get("/{order_id}/payments", response_model=list[PaymentRead])
def list_order_payments(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    ledger: OrderLedger = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
):
    order = ledger.get_for(order_id, actor)
    return gateway.payments_for(order.id)


@orders_router.post("/{order_id}/payouts", response_model=list[PayoutRead])
def settle_order_payouts(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutCalculator = Depends(get_payouts),
):
    """Backfill payouts for a completed order; returns only newly created rows."""
    return payouts.settle_order(order_id, actor)


# -- payments ----------------------------------------------------------------

@payments_router.post("/webhooks/processor", response_model=ReconcileResult)
def processor_webhook(
    request: Request,
    payload: bytes = Depends(get_raw_body),
    processor: PaymentProcessor = Depends(get_processor),
    gateway: PaymentGateway = Depends(get_gateway),
):
    signature = request.headers.get("Stripe-Signature", "")
    event = processor.parse_event(payload, signature)
    if event is None:
        return ReconcileResult(event_id="", outcome="ignored")
    return gateway.reconcile(event)


@payments_router.post("/payments/sync", response_model=SyncReport)
def sync_payments(actor: Actor = Depends(get_current_actor), gateway: PaymentGateway = Depends(get_gateway)):
    """Backfill captures whose success callback was lost."""
    return gateway.sync(actor)


@payments_router.post("/payments/{payment_id}/refund", response_model=RefundOutcome)
def refund_payment(
    payment_id: int,
    payload: RefundRequest,
    actor: Actor = Depends(get_current_actor),
    refunds: RefundProcessor = Depends(get_refunds),
):
    return refunds.refund(
        payment_id, actor, payload.reason, amount=payload.amount, idempotency_key=payload.idempotency_key
    )


# -- payouts -----------------------------------------------------------------

@payouts_router.get("/", response_model=list[PayoutRead])
def list_payouts(
    user_id: Optional[int] = Query(None),
    status: Optional[PayoutStatus] = Query(None),
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutCalculator = Depends(get_payouts),
):
    """Operators see every payout, providers and agents only their own."""
    if not actor.is_operator:
        if actor.role not in (Role.AGENT, Role.PROVIDER):
            raise Unauthorized("Payouts are visible to staff and earners only")
        user_id = actor.id
    return payouts.ledger(user_id=user_id, status=status)


@payouts_router.get("/summary/{user_id}", response_model=PayoutSummary)
def payout_summary(
    user_id: int,
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutCalculator = Depends(get_payouts),
):
    if not actor.is_operator and actor.id != user_id:
        raise Unauthorized("Payout summaries are private")
    return payouts.summary(user_id)


@payouts_router.post("/{payout_id}/mark-paid", response_model=PayoutRead)
def mark_payout_paid(
    payout_id: int,
    payload: MarkPaidRequest,
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutCalculator = Depends(get_payouts),
):
    return payouts.mark_paid(payout_id, payload.payment_method, payload.notes, actor)


@payouts_router.post("/{payout_id}/void", response_model=PayoutRead)
def void_payout(
    payout_id: int,
    payload: VoidRequest,
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutCalculator = Depends(get_payouts),
):
    return payouts.void(payout_id, payload.reason, actor)
