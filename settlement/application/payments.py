"""Payment Gateway Adapter: checkout hand-off and processor callback reconciliation.

Callbacks are applied at most once. The processor's event id is written to
``processed_events`` in the same transaction as the effect it gates, so a
redelivered event finds its key and becomes a no-op.
"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.domain.errors import (
    AlreadyPaid, InvalidTransition, PaymentNotFound, SettlementError, Unauthorized,
)
from settlement.domain.models import Order, Payment, ProcessedEvent, utcnow
from settlement.domain.status import OrderStatus, PaymentStatus, Role
from settlement.infrastructure.processor import CompletedSession, EventKind, PaymentProcessor, ProcessorEvent
from shared.core import get_logger, set_request_context
from .directory import SYSTEM_ACTOR, Actor
from .events import EventPublisher, PaymentConfirmed
from .orders import OrderLedger
from .refunds import RefundProcessor
from .schemas import CheckoutHandoff, ReconcileResult, SyncReport
from .uow import lock_order, transaction

logger = get_logger(__name__)

_PAID_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED)


class PaymentGateway:
    def __init__(
        self,
        db: Session,
        events: EventPublisher,
        processor: PaymentProcessor,
        ledger: OrderLedger,
        refunds: RefundProcessor,
        currency: str = "gbp",
    ):
        self.db = db
        self.events = events
        self.processor = processor
        self.ledger = ledger
        self.refunds = refunds
        self.currency = currency

    def payments_for(self, order_id: int) -> List[Payment]:
        return self.db.query(Payment).filter(Payment.order_id == order_id).order_by(Payment.id).all()

    # -- checkout ----------------------------------------------------------

    def initiate(self, order_id: int, actor: Actor) -> CheckoutHandoff:
        if not (actor.role == Role.CUSTOMER or actor.is_operator):
            raise Unauthorized("Only the customer can pay for an order")

        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            if actor.role == Role.CUSTOMER and order.customer_id != actor.id:
                raise Unauthorized("Order does not belong to you")
            if order.is_terminal:
                raise InvalidTransition(f"Order {order.order_number} is {order.status.value}")

            previous = self.payments_for(order.id)
            if any(p.status in _PAID_STATUSES for p in previous):
                raise AlreadyPaid(f"Order {order.order_number} is already paid")

            meta = {}
            if previous:
                meta = {"retry": True, "previous_payment_id": previous[-1].id}
            payment = Payment(
                order_id=order.id,
                amount=order.total,
                refunded_amount=0,
                currency=self.currency,
                status=PaymentStatus.PENDING,
                meta=meta,
            )
            self.db.add(payment)
            self.db.flush()

            # a processor failure rolls the pending row back with the transaction
            session = self.processor.create_checkout_session(
                payment.amount,
                order.order_number,
                idempotency_key=f"checkout-{order.id}-{payment.id}",
            )
            payment.processor_session_id = session.session_id

        set_request_context(order_id=order.id)
        logger.info(
            f"Checkout started for {order.order_number}",
            extra={'extra_fields': {
                'payment_id': payment.id,
                'amount': payment.amount,
                'retry': bool(meta),
            }}
        )
        return CheckoutHandoff(
            payment_id=payment.id,
            session_id=session.session_id,
            checkout_url=session.url,
            amount=payment.amount,
        )

    # -- callbacks ---------------------------------------------------------

    def reconcile(self, event: ProcessorEvent) -> ReconcileResult:
        if self._seen(event.event_id):
            return self._duplicate(event)

        try:
            with transaction(self.db, self.events):
                payment_id, order_id = self._locate(event)
                order = lock_order(self.db, order_id)
                payment = self._load_payment(payment_id)
                if self._seen(event.event_id):
                    return self._duplicate(event, payment.id)

                self.db.add(ProcessedEvent(
                    event_id=event.event_id,
                    event_type=event.kind.value,
                    payment_id=payment.id,
                ))
                outcome = self._apply(order, payment, event)
        except IntegrityError:
            # concurrent delivery of the same event won the insert
            self.db.rollback()
            if self._seen(event.event_id):
                return self._duplicate(event)
            raise

        set_request_context(order_id=order_id)
        logger.info(
            f"Processor event {event.kind.value} reconciled: {outcome}",
            extra={'extra_fields': {
                'event_id': event.event_id,
                'payment_id': payment_id,
                'outcome': outcome,
            }}
        )
        return ReconcileResult(event_id=event.event_id, payment_id=payment_id, outcome=outcome)

    def _apply(self, order: Order, payment: Payment, event: ProcessorEvent) -> str:
        if event.kind == EventKind.PAYMENT_SUCCEEDED:
            return self._on_succeeded(order, payment, event)
        if event.kind == EventKind.PAYMENT_FAILED:
            return self._on_failed(payment, event)
        if event.kind == EventKind.SESSION_EXPIRED:
            return self._on_expired(order, payment)
        if event.kind in (EventKind.REFUND_COMPLETED, EventKind.REFUND_FAILED):
            return self.refunds.settle_pending(
                order, payment, event.refund_id,
                succeeded=event.kind == EventKind.REFUND_COMPLETED,
                failure_message=event.failure_message,
            )
        return "ignored"

    def _on_succeeded(self, order: Order, payment: Payment, event: ProcessorEvent) -> str:
        if payment.status in _PAID_STATUSES:
            return "already_succeeded"

        other = self.db.execute(
            select(Payment.id).where(
                Payment.order_id == order.id,
                Payment.id != payment.id,
                Payment.status.in_(_PAID_STATUSES),
            )
        ).scalars().first()
        if other is not None:
            # at most one capture per order; the second one is left for an operator to refund
            payment.processor_payment_intent_id = event.payment_intent_id
            payment.meta = {**(payment.meta or {}), "duplicate_capture": True, "duplicate_of": other}
            logger.error(
                f"Second capture for {order.order_number}, payment {payment.id} needs a manual refund",
                extra={'extra_fields': {'payment_id': payment.id, 'duplicate_of': other}}
            )
            return "duplicate_capture"

        meta = dict(payment.meta or {})
        if payment.status == PaymentStatus.FAILED:
            meta["recovered_from"] = "failed"
        if event.amount is not None and event.amount != payment.amount:
            meta["captured_amount"] = event.amount
            logger.error(
                f"Captured {event.amount} but payment {payment.id} expects {payment.amount}",
                extra={'extra_fields': {'payment_id': payment.id}}
            )
        payment.meta = meta
        payment.status = PaymentStatus.SUCCEEDED
        payment.processor_payment_intent_id = event.payment_intent_id
        payment.succeeded_at = utcnow()
        self.events.stage(PaymentConfirmed(payment_id=payment.id, order_id=order.id, amount=payment.amount))
        return "succeeded"

    def _on_failed(self, payment: Payment, event: ProcessorEvent) -> str:
        if payment.status != PaymentStatus.PENDING:
            # success is final; a late failure changes nothing
            return f"ignored_{payment.status.value}"
        payment.status = PaymentStatus.FAILED
        payment.meta = {**(payment.meta or {}), "failure": event.failure_message or "payment_failed"}
        return "failed"

    def _on_expired(self, order: Order, payment: Payment) -> str:
        if payment.status != PaymentStatus.PENDING:
            return f"ignored_{payment.status.value}"
        payment.status = PaymentStatus.FAILED
        payment.meta = {**(payment.meta or {}), "failure": "expired"}

        live = self.db.execute(
            select(Payment.id).where(
                Payment.order_id == order.id,
                Payment.id != payment.id,
                Payment.status.in_((PaymentStatus.PENDING,) + _PAID_STATUSES),
            )
        ).scalars().first()
        if order.status == OrderStatus.BOOKED and live is None:
            self.ledger.apply_cancel(order, SYSTEM_ACTOR, "Unpaid: checkout session expired")
            return "expired_order_cancelled"
        return "expired"

    # -- backfill ----------------------------------------------------------

    def sync(self, actor: Actor) -> SyncReport:
        """Recover captures whose success callback never arrived.

        Unpaid, uncancelled orders are matched to paid processor sessions by
        order number, and each match goes through ``reconcile`` like a real
        callback would.
        """
        if actor.role != Role.ADMIN:
            raise Unauthorized("Only admins can sync payments")

        paid = select(Payment.id).where(
            Payment.order_id == Order.id, Payment.status.in_(_PAID_STATUSES)
        ).exists()
        unpaid = self.db.execute(
            select(Order.id, Order.order_number)
            .where(Order.status != OrderStatus.CANCELLED, ~paid)
            .order_by(Order.id)
        ).all()
        report = SyncReport(orders_checked=len(unpaid))
        if not unpaid:
            return report

        by_ref = {}
        for session in self.processor.list_completed_sessions():
            by_ref.setdefault(session.order_ref, []).append(session)

        for order_id, order_number in unpaid:
            sessions = by_ref.get(order_number)
            if not sessions:
                report.unmatched += 1
                continue
            for session in sessions:
                try:
                    self._ensure_payment(order_id, session)
                    result = self.reconcile(ProcessorEvent(
                        event_id=f"sync-{session.session_id}",
                        kind=EventKind.PAYMENT_SUCCEEDED,
                        session_id=session.session_id,
                        payment_intent_id=session.payment_intent_id,
                        amount=session.amount,
                    ))
                except SettlementError as exc:
                    report.errors.append(f"Order {order_number}: {exc.message}")
                    continue
                if result.outcome == "succeeded":
                    report.synced += 1
                else:
                    report.skipped += 1

        logger.info(
            f"Payment sync: {report.synced} recovered of {report.orders_checked} unpaid orders",
            extra={'extra_fields': {**report.model_dump(exclude={"errors"}), 'actor_id': actor.id}}
        )
        return report

    def _ensure_payment(self, order_id: int, session: CompletedSession) -> None:
        """Create the pending row for a session the processor knows and we do not."""
        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            known = self.db.execute(
                select(Payment.id).where(Payment.processor_session_id == session.session_id)
            ).first()
            if known is not None:
                return
            self.db.add(Payment(
                order_id=order.id,
                amount=order.total,
                refunded_amount=0,
                currency=self.currency,
                status=PaymentStatus.PENDING,
                processor_session_id=session.session_id,
                meta={"backfilled": True},
            ))

    # -- lookups -----------------------------------------------------------

    def _seen(self, event_id: str) -> bool:
        return self.db.get(ProcessedEvent, event_id) is not None

    def _duplicate(self, event: ProcessorEvent, payment_id: Optional[int] = None) -> ReconcileResult:
        logger.info(
            f"Duplicate processor event {event.event_id} ignored",
            extra={'extra_fields': {'event_id': event.event_id, 'kind': event.kind.value}}
        )
        return ReconcileResult(event_id=event.event_id, duplicate=True, payment_id=payment_id, outcome="duplicate")

    def _locate(self, event: ProcessorEvent):
        stmt = select(Payment.id, Payment.order_id)
        if event.session_id:
            stmt = stmt.where(Payment.processor_session_id == event.session_id)
        elif event.payment_intent_id:
            stmt = stmt.where(
                Payment.processor_payment_intent_id == event.payment_intent_id,
                Payment.status.in_(_PAID_STATUSES),
            )
        else:
            raise PaymentNotFound(f"Event {event.event_id} references no payment")
        row = self.db.execute(stmt.order_by(Payment.id)).first()
        if row is None:
            raise PaymentNotFound(f"No payment for event {event.event_id}")
        return row.id, row.order_id

    def _load_payment(self, payment_id: int) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one()
