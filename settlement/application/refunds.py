"""Refund Processor: full and partial refunds against a succeeded payment.

Nothing is marked refunded until the processor confirms the money moved.
The processor call carries an idempotency key that stays the same across
caller retries of the same request, so a retry after a timeout returns the
original refund instead of issuing a second one.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.domain.errors import (
    CannotCancel, ExceedsBalance, InvariantViolation, NotRefundable, PaymentNotFound, RefundFailed,
    Unauthorized, ValidationFailed,
)
from settlement.domain.models import Order, Payment, utcnow
from settlement.domain.status import OrderStatus, PaymentStatus, Role
from settlement.infrastructure.processor import PaymentProcessor
from shared.core import get_logger, set_request_context
from .directory import Actor
from .events import EventPublisher, PaymentRefunded
from .orders import OrderLedger
from .schemas import RefundOutcome
from .uow import lock_order, transaction

logger = get_logger(__name__)


class RefundProcessor:
    def __init__(self, db: Session, events: EventPublisher, processor: PaymentProcessor, ledger: OrderLedger):
        self.db = db
        self.events = events
        self.processor = processor
        self.ledger = ledger

    def refund(
        self,
        payment_id: int,
        actor: Actor,
        reason: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundOutcome:
        if actor.role != Role.ADMIN:
            raise Unauthorized("Only admins can refund payments")
        if not reason or not reason.strip():
            raise ValidationFailed("A refund needs a reason")
        if amount is not None and amount <= 0:
            raise ValidationFailed("Refund amount must be positive")

        with transaction(self.db, self.events):
            order_id = self.db.execute(
                select(Payment.order_id).where(Payment.id == payment_id)
            ).scalar_one_or_none()
            if order_id is None:
                raise PaymentNotFound(f"Payment {payment_id} not found")
            order = lock_order(self.db, order_id)
            payment = self.db.execute(
                select(Payment)
                .where(Payment.id == payment_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()

            if payment.status != PaymentStatus.SUCCEEDED:
                raise NotRefundable(f"Payment {payment.id} is {payment.status.value}")
            if not payment.processor_payment_intent_id:
                raise NotRefundable(f"Payment {payment.id} has no processor payment reference")

            balance = payment.refundable_balance
            if amount is None:
                if balance <= 0:
                    raise ExceedsBalance(f"Payment {payment.id} has nothing left to refund")
                amount = balance
            elif amount > balance:
                raise ExceedsBalance(
                    f"Refund of {amount} exceeds the refundable balance of {balance}"
                )

            committed = payment.refunded_amount + payment.pending_refund_total
            if committed + amount == payment.amount and order.status == OrderStatus.COMPLETED:
                # a full refund voids the order, and completed orders stay completed
                raise CannotCancel(
                    f"Order {order.order_number} is completed; only partial refunds are possible"
                )

            key = idempotency_key or f"refund-{payment.id}-{self._attempts(payment)}-{amount}"
            result = self.processor.refund(
                payment.processor_payment_intent_id,
                amount,
                idempotency_key=key,
                metadata={
                    "payment_id": payment.id,
                    "order_number": order.order_number,
                    "actor_id": actor.id,
                    "reason": reason,
                },
            )
            if result.status == "failed":
                # kept so the next attempt gets a fresh key
                self._record_failed(payment, result.refund_id, amount, reason, actor)
            elif result.status == "pending":
                self._record_pending(payment, result.refund_id, amount, reason, actor)
            else:
                self._apply(order, payment, result.refund_id, amount, reason, actor)

        set_request_context(order_id=order.id)
        if result.status == "failed":
            logger.warning(
                f"Processor refused refund {result.refund_id} on payment {payment.id}",
                extra={'extra_fields': {'payment_id': payment.id, 'amount': amount, 'actor_id': actor.id}}
            )
            raise RefundFailed(f"Processor refused refund {result.refund_id}")
        logger.info(
            f"Refund {result.refund_id} of {amount} on payment {payment.id}: {result.status}",
            extra={'extra_fields': {
                'payment_id': payment.id,
                'amount': amount,
                'refunded_total': payment.refunded_amount,
                'actor_id': actor.id,
                'reason': reason,
            }}
        )
        return RefundOutcome(
            payment_id=payment.id,
            refund_id=result.refund_id,
            amount=amount,
            status="pending" if result.status == "pending" else "succeeded",
            refunded_total=payment.refunded_amount,
            payment_status=payment.status,
            order_status=order.status,
        )

    def settle_pending(
        self,
        order: Order,
        payment: Payment,
        refund_id: Optional[str],
        succeeded: bool,
        failure_message: Optional[str] = None,
    ) -> str:
        """Resolve a refund the processor left pending; caller holds the order lock."""
        meta = dict(payment.meta or {})
        pending = list(meta.get("pending_refunds", []))
        entry = next((p for p in pending if p["refund_id"] == refund_id), None)
        if entry is None:
            return "no_pending_refund"

        pending.remove(entry)
        meta["pending_refunds"] = pending
        if not succeeded:
            failed = list(meta.get("failed_refunds", []))
            failed.append({**entry, "failure": failure_message or "refund_failed"})
            meta["failed_refunds"] = failed
        payment.meta = meta

        if not succeeded:
            logger.warning(
                f"Pending refund {refund_id} on payment {payment.id} failed",
                extra={'extra_fields': {'payment_id': payment.id, 'failure': failure_message}}
            )
            return "refund_failed"

        requested_by = Actor(id=entry.get("actor_id"), role=Role(entry.get("actor_role", Role.ADMIN.value)))
        self._apply(order, payment, refund_id, entry["amount"], entry["reason"], requested_by)
        return "refund_completed"

    @staticmethod
    def _attempts(payment: Payment) -> int:
        """Refund attempts the processor has answered for this payment, whatever the result."""
        meta = payment.meta or {}
        return sum(len(meta.get(k, [])) for k in ("refunds", "pending_refunds", "failed_refunds"))

    def _record_pending(self, payment: Payment, refund_id: str, amount: int, reason: str, actor: Actor) -> None:
        meta = dict(payment.meta or {})
        pending = list(meta.get("pending_refunds", []))
        settled = meta.get("refunds", []) + meta.get("failed_refunds", [])
        if any(p["refund_id"] == refund_id for p in pending + settled):
            return
        pending.append({
            "refund_id": refund_id,
            "amount": amount,
            "reason": reason,
            "actor_id": actor.id,
            "actor_role": actor.role.value,
            "requested_at": utcnow().isoformat(),
        })
        meta["pending_refunds"] = pending
        payment.meta = meta

    def _record_failed(self, payment: Payment, refund_id: str, amount: int, reason: str, actor: Actor) -> None:
        meta = dict(payment.meta or {})
        failed = list(meta.get("failed_refunds", []))
        if any(f["refund_id"] == refund_id for f in failed):
            return
        failed.append({
            "refund_id": refund_id,
            "amount": amount,
            "reason": reason,
            "actor_id": actor.id,
            "failure": "refused",
        })
        meta["failed_refunds"] = failed
        payment.meta = meta

    def _apply(self, order: Order, payment: Payment, refund_id: str, amount: int, reason: str, actor: Actor) -> None:
        meta = dict(payment.meta or {})
        trail = list(meta.get("refunds", []))
        if any(r["refund_id"] == refund_id for r in trail):
            return

        payment.refunded_amount += amount
        if payment.refunded_amount > payment.amount:
            raise InvariantViolation(f"Payment {payment.id} refunded beyond its amount")
        trail.append({
            "refund_id": refund_id,
            "amount": amount,
            "reason": reason,
            "actor_id": actor.id,
            "refunded_at": utcnow().isoformat(),
        })
        meta["refunds"] = trail
        meta["refund_reason"] = reason
        payment.meta = meta

        fully_refunded = payment.refunded_amount == payment.amount
        if fully_refunded:
            payment.status = PaymentStatus.REFUNDED
            if order.status == OrderStatus.COMPLETED:
                # only reachable when a pending refund settles after completion
                logger.error(
                    f"Order {order.order_number} completed but fully refunded, needs review",
                    extra={'extra_fields': {'payment_id': payment.id, 'refund_id': refund_id}}
                )
            elif order.status != OrderStatus.CANCELLED:
                self.ledger.apply_cancel(order, actor, f"Refunded in full: {reason}")

        self.events.stage(PaymentRefunded(
            payment_id=payment.id,
            order_id=order.id,
            amount=amount,
            refunded_total=payment.refunded_amount,
            fully_refunded=fully_refunded,
        ))
