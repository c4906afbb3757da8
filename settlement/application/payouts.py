"""Payout Calculator: what the provider and the collection agent earn per order.

Payouts only exist for completed orders. Materialising is idempotent per
(order, user) so it can be re-run for backfills without creating duplicates.
"""
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.core_settings import Settings
from settlement.domain.errors import (
    AlreadySettled, PayoutNotEarned, PayoutNotFound, Unauthorized, ValidationFailed,
)
from settlement.domain.models import Order, Payout, utcnow
from settlement.domain.status import OrderStatus, PayoutMethod, PayoutRole, PayoutStatus, Role
from shared.core import get_logger
from .directory import Actor
from .events import EventPublisher, PayoutCreated
from .schemas import PayoutSummary
from .uow import lock_order, transaction

logger = get_logger(__name__)


@dataclass(frozen=True)
class PayoutPolicy:
    """Platform payout terms; ``provider_rate`` is a fraction of the order subtotal."""
    provider_rate: Decimal
    agent_fee: int

    def __post_init__(self):
        rate = Decimal(str(self.provider_rate))
        if not Decimal(0) <= rate <= Decimal(1):
            raise ValueError("provider_rate must be between 0 and 1")
        if self.agent_fee < 0:
            raise ValueError("agent_fee cannot be negative")
        object.__setattr__(self, "provider_rate", rate)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayoutPolicy":
        return cls(provider_rate=settings.TAILOR_PAYOUT_RATE, agent_fee=settings.RUNNER_FEE_PER_JOB)

    def provider_amount(self, subtotal: int) -> int:
        # fractions of a penny stay with the platform
        return int((Decimal(subtotal) * self.provider_rate).to_integral_value(rounding=ROUND_DOWN))


class PayoutCalculator:
    def __init__(self, db: Session, events: EventPublisher, policy: PayoutPolicy):
        self.db = db
        self.events = events
        self.policy = policy

    def owed(self, order: Order) -> List[tuple]:
        """(role, user_id, amount) for every assigned participant with a positive amount."""
        owed = []
        if order.provider_id is not None:
            owed.append((PayoutRole.PROVIDER, order.provider_id, self.policy.provider_amount(order.subtotal)))
        if order.agent_id is not None:
            owed.append((PayoutRole.AGENT, order.agent_id, self.policy.agent_fee))
        return [entry for entry in owed if entry[2] > 0]

    def materialize(self, order: Order) -> List[Payout]:
        """Create the missing pending payouts of a completed order inside the caller's transaction."""
        if order.status != OrderStatus.COMPLETED:
            raise PayoutNotEarned(f"Order {order.order_number} is {order.status.value}, not completed")

        existing = self.db.execute(select(Payout).where(Payout.order_id == order.id)).scalars().all()
        taken_users = {p.user_id for p in existing}
        taken_roles = {p.role for p in existing}

        created = []
        for role, user_id, amount in self.owed(order):
            if user_id in taken_users or role in taken_roles:
                continue
            payout = Payout(
                order_id=order.id,
                user_id=user_id,
                role=role,
                amount=amount,
                status=PayoutStatus.PENDING,
            )
            self.db.add(payout)
            taken_users.add(user_id)
            taken_roles.add(role)
            created.append(payout)

        if created:
            self.db.flush()
        for payout in created:
            self.events.stage(PayoutCreated(
                payout_id=payout.id,
                order_id=order.id,
                user_id=payout.user_id,
                role=payout.role,
                amount=payout.amount,
            ))
            logger.info(
                f"Payout of {payout.amount} owed to {payout.role.value} {payout.user_id}",
                extra={'extra_fields': {'order_id': order.id, 'payout_id': payout.id}}
            )
        return created

    def settle_order(self, order_id: int, actor: Actor) -> List[Payout]:
        """Backfill entry point; a no-op for orders that already have their payouts."""
        if not actor.is_operator:
            raise Unauthorized("Only staff can settle orders")
        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            created = self.materialize(order)
        return created

    def mark_paid(self, payout_id: int, method: str, notes: Optional[str], actor: Actor) -> Payout:
        if actor.role != Role.ADMIN:
            raise Unauthorized("Only admins can settle payouts")
        try:
            method = PayoutMethod(method)
        except ValueError:
            raise ValidationFailed(f"Invalid payment method {method!r}") from None

        with transaction(self.db, self.events):
            payout = self._lock_payout(payout_id)
            if payout.status != PayoutStatus.PENDING:
                raise AlreadySettled(f"Payout {payout.id} is {payout.status.value}")
            payout.status = PayoutStatus.PAID
            payout.payment_method = method.value
            payout.notes = notes
            payout.paid_at = utcnow()
            payout.paid_by = actor.id

        logger.info(
            f"Payout {payout.id} paid by {method.value}",
            extra={'extra_fields': {'payout_id': payout.id, 'amount': payout.amount, 'actor_id': actor.id}}
        )
        return payout

    def void(self, payout_id: int, reason: str, actor: Actor) -> Payout:
        """Manual reversal of an unpaid obligation."""
        if actor.role != Role.ADMIN:
            raise Unauthorized("Only admins can void payouts")
        if not reason or not reason.strip():
            raise ValidationFailed("Voiding a payout needs a reason")

        with transaction(self.db, self.events):
            payout = self._lock_payout(payout_id)
            if payout.status != PayoutStatus.PENDING:
                raise AlreadySettled(f"Payout {payout.id} is {payout.status.value}")
            payout.status = PayoutStatus.CANCELLED
            payout.notes = reason

        logger.warning(
            f"Payout {payout.id} voided",
            extra={'extra_fields': {'payout_id': payout.id, 'actor_id': actor.id, 'reason': reason}}
        )
        return payout

    def ledger(self, user_id: Optional[int] = None, status: Optional[PayoutStatus] = None) -> List[Payout]:
        query = self.db.query(Payout)
        if user_id is not None:
            query = query.filter(Payout.user_id == user_id)
        if status is not None:
            query = query.filter(Payout.status == PayoutStatus(status))
        return query.order_by(Payout.created_at.desc(), Payout.id.desc()).all()

    def summary(self, user_id: int) -> PayoutSummary:
        summary = PayoutSummary(user_id=user_id)
        for payout in self.ledger(user_id=user_id):
            if payout.status == PayoutStatus.PENDING:
                summary.pending_total += payout.amount
                summary.pending_count += 1
            elif payout.status == PayoutStatus.PAID:
                summary.paid_total += payout.amount
                summary.paid_count += 1
        return summary

    def _lock_payout(self, payout_id: int) -> Payout:
        order_id = self.db.execute(
            select(Payout.order_id).where(Payout.id == payout_id)
        ).scalar_one_or_none()
        if order_id is None:
            raise PayoutNotFound(f"Payout {payout_id} not found")
        lock_order(self.db, order_id)
        return self.db.execute(
            select(Payout).where(Payout.id == payout_id).execution_options(populate_existing=True)
        ).scalar_one()
