"""Order Ledger: checkout, the status state machine and the order timeline.

Every status change goes through ``_set_status`` so the milestone stamp, the
timeline entry, the totals check and the ``OrderStatusChanged`` event can
never drift apart.
"""
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.domain.errors import (
    CannotCancel, ConcurrencyConflict, InvalidTransition, InvariantViolation, NotFound, OrderNotFound,
    Unauthorized, ValidationFailed,
)
from settlement.domain.models import Order, OrderItem, OrderTimelineEntry, utcnow
from settlement.domain.status import (
    CLAIMABLE, CLAIMING_EDGES, ITEM_EDITABLE, MILESTONE_FIELDS, ItemStatus, OrderStatus, PayoutRole, Role,
    is_forward, next_status, permitted_role, requires_finished_items,
)
from shared.core import get_logger, set_request_context
from .directory import Actor, Catalog, UserDirectory
from .events import EventPublisher, OrderStatusChanged
from .schemas import OrderCreate
from .uow import lock_order, transaction

if TYPE_CHECKING:
    from .payouts import PayoutCalculator

logger = get_logger(__name__)

_ASSIGNMENT_FIELDS = {Role.AGENT: "agent_id", Role.PROVIDER: "provider_id"}
_PAYOUT_ROLE_TO_ROLE = {PayoutRole.AGENT: Role.AGENT, PayoutRole.PROVIDER: Role.PROVIDER}


class OrderItemNotFound(NotFound):
    pass


class OrderLedger:
    def __init__(
        self,
        db: Session,
        events: EventPublisher,
        payouts: "PayoutCalculator",
        delivery_fee: int,
        order_prefix: str = "TS",
    ):
        self.db = db
        self.events = events
        self.payouts = payouts
        self.delivery_fee = delivery_fee
        self.order_prefix = order_prefix
        self.directory = UserDirectory(db)

    def _generate_order_number(self) -> str:
        """Order number in format TS-YYYY-NNNNN"""
        prefix = f"{self.order_prefix}-{datetime.now().year}-"
        count = self.db.query(Order).filter(Order.order_number.like(f"{prefix}%")).count()
        return f"{prefix}{(count + 1):05d}"

    # -- reads -----------------------------------------------------------

    def get(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def get_for(self, order_id: int, actor: Actor) -> Order:
        order = self.get(order_id)
        if not self.visible_to(order, actor):
            # same answer as a missing order, ids are not disclosed
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    @staticmethod
    def visible_to(order: Order, actor: Actor) -> bool:
        if actor.is_operator:
            return True
        if actor.role == Role.CUSTOMER:
            return order.customer_id == actor.id
        if actor.role == Role.AGENT:
            return order.agent_id == actor.id or (
                order.agent_id is None and order.status in CLAIMABLE[Role.AGENT]
            )
        if actor.role == Role.PROVIDER:
            return order.provider_id == actor.id or (
                order.provider_id is None and order.status in CLAIMABLE[Role.PROVIDER]
            )
        return False

    def list_for(self, actor: Actor) -> List[Order]:
        query = self.db.query(Order).order_by(Order.created_at.desc(), Order.id.desc())
        if actor.role == Role.CUSTOMER:
            query = query.filter(Order.customer_id == actor.id)
        elif actor.role == Role.AGENT:
            query = query.filter(Order.agent_id == actor.id)
        elif actor.role == Role.PROVIDER:
            query = query.filter(Order.provider_id == actor.id)
        elif not actor.is_operator:
            return []
        return query.all()

    def timeline(self, order_id: int, actor: Actor) -> List[OrderTimelineEntry]:
        return list(self.get_for(order_id, actor).timeline)

    # -- checkout ----------------------------------------------------------

    def create_order(self, customer: Actor, data: OrderCreate) -> Order:
        if customer.role != Role.CUSTOMER:
            raise Unauthorized("Only customers can place orders")
        if not data.items:
            raise ValidationFailed("No items in order")

        try:
            order = self._book(customer, data)
        except IntegrityError as exc:
            # two checkouts drew the same order number; the loser retries
            raise ConcurrencyConflict("Order number taken by a concurrent checkout, retry") from exc

        set_request_context(order_id=order.id)
        logger.info(
            f"Order {order.order_number} booked",
            extra={'extra_fields': {
                'order_id': order.id,
                'customer_id': customer.id,
                'subtotal': order.subtotal,
                'total': order.total,
                'items': len(order.items),
            }}
        )
        return order

    def _book(self, customer: Actor, data: OrderCreate) -> Order:
        with transaction(self.db, self.events):
            services = Catalog(self.db).snapshot(line.service_id for line in data.items)
            items = []
            for line in data.items:
                service = services[line.service_id]
                items.append(OrderItem(
                    service_id=service.id,
                    service_name=service.name,
                    unit_price=service.base_price,
                    quantity=line.quantity,
                    price=service.base_price * line.quantity,
                    garment_description=line.garment_description,
                    notes=line.notes,
                    status=ItemStatus.PENDING,
                ))
            subtotal = sum(item.price for item in items)

            order = Order(
                order_number=self._generate_order_number(),
                customer_id=customer.id,
                status=OrderStatus.BOOKED,
                subtotal=subtotal,
                delivery_fee=self.delivery_fee,
                total=subtotal + self.delivery_fee,
                pickup_date=data.pickup_date,
                pickup_slot=data.pickup_slot.value,
                delivery_address=data.address.model_dump(exclude_none=True),
                customer_phone=data.phone,
                customer_notes=data.notes,
                items=items,
            )
            self.db.add(order)
            self._append_timeline(order, None, OrderStatus.BOOKED, customer, notes="Order placed")
            self._check_totals(order)
            self.db.flush()
            self.events.stage(self._status_event(order, None, customer))
        return order

    # -- state machine -----------------------------------------------------

    def advance(
        self,
        order_id: int,
        target: OrderStatus,
        actor: Actor,
        override: bool = False,
        reason: Optional[str] = None,
    ) -> Order:
        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            self.apply_advance(order, target, actor, override=override, reason=reason)
        return order

    def apply_advance(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor,
        override: bool = False,
        reason: Optional[str] = None,
    ) -> None:
        """Run a transition on an order the caller has locked, inside the caller's transaction."""
        target = OrderStatus(target)
        if actor.role == Role.CUSTOMER:
            raise Unauthorized("Customers cannot change order status")
        if target == OrderStatus.CANCELLED:
            self.apply_cancel(order, actor, reason)
            return

        current = order.status
        if override:
            if not actor.is_operator:
                raise Unauthorized("Only staff can override the pipeline")
            if not reason or not reason.strip():
                raise ValidationFailed("An override needs a reason")
            if not is_forward(current, target):
                raise InvalidTransition(
                    f"Override can only move {order.order_number} forward from {current.value}"
                )
        else:
            if next_status(current) != target:
                raise InvalidTransition(
                    f"Cannot move {order.order_number} from {current.value} to {target.value}"
                )
            self._authorize_edge(order, current, target, actor)

        if requires_finished_items(target):
            unfinished = [item.id for item in order.items if item.status != ItemStatus.DONE]
            if unfinished:
                raise InvalidTransition(
                    f"Items {unfinished} of {order.order_number} are not done"
                )

        self._set_status(order, target, actor, notes=reason, override=override)
        if override:
            logger.warning(
                f"Status override on {order.order_number}: {current.value} -> {target.value}",
                extra={'extra_fields': {
                    'order_id': order.id,
                    'actor_id': actor.id,
                    'actor_role': actor.role.value,
                    'reason': reason,
                }}
            )
        if target == OrderStatus.COMPLETED:
            self.payouts.materialize(order)

    def _authorize_edge(self, order: Order, current: OrderStatus, target: OrderStatus, actor: Actor) -> None:
        if actor.is_operator:
            return
        role = permitted_role(current, target)
        if role is None or actor.role != role:
            raise Unauthorized(
                f"{actor.role.value} cannot move orders from {current.value} to {target.value}"
            )
        field = _ASSIGNMENT_FIELDS[role]
        assigned = getattr(order, field)
        if assigned is None and (current, target) in CLAIMING_EDGES:
            setattr(order, field, actor.id)
            return
        if assigned != actor.id:
            raise Unauthorized(f"Order {order.order_number} is not assigned to you")

    def cancel(self, order_id: int, actor: Actor, reason: str) -> Order:
        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            self.apply_cancel(order, actor, reason)
        return order

    def apply_cancel(self, order: Order, actor: Actor, reason: Optional[str]) -> None:
        """Cancel a locked order; never touches payments."""
        if not (actor.is_operator or actor.role == Role.SYSTEM):
            raise Unauthorized("Only staff can cancel orders")
        if order.status == OrderStatus.COMPLETED:
            raise CannotCancel(f"Order {order.order_number} is completed")
        if order.status == OrderStatus.CANCELLED:
            raise CannotCancel(f"Order {order.order_number} is already cancelled")
        if not reason or not reason.strip():
            raise ValidationFailed("A cancellation needs a reason")

        order.cancel_reason = reason
        self._set_status(order, OrderStatus.CANCELLED, actor, notes=reason)
        logger.info(
            f"Order {order.order_number} cancelled",
            extra={'extra_fields': {'order_id': order.id, 'actor_id': actor.id, 'reason': reason}}
        )

    # -- assignment and items ----------------------------------------------

    def assign(self, order_id: int, role: PayoutRole, user_id: int, actor: Actor) -> Order:
        if not actor.is_operator:
            raise Unauthorized("Only staff can assign orders")
        directory_role = _PAYOUT_ROLE_TO_ROLE[PayoutRole(role)]
        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            if order.is_terminal:
                raise InvalidTransition(f"Order {order.order_number} is closed")
            if not self.directory.has_role(user_id, directory_role):
                raise ValidationFailed(f"User {user_id} is not an active {directory_role.value}")
            setattr(order, _ASSIGNMENT_FIELDS[directory_role], user_id)
            self._append_timeline(
                order, order.status, order.status, actor,
                notes=f"{directory_role.value} {user_id} assigned",
            )
        return order

    def claim(self, order_id: int, actor: Actor) -> Order:
        if actor.role not in CLAIMABLE:
            raise Unauthorized("Only agents and providers can claim orders")
        field = _ASSIGNMENT_FIELDS[actor.role]
        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            if order.status not in CLAIMABLE[actor.role]:
                raise InvalidTransition(
                    f"Order {order.order_number} cannot be claimed while {order.status.value}"
                )
            assigned = getattr(order, field)
            if assigned == actor.id:
                return order
            if assigned is not None:
                raise Unauthorized(f"Order {order.order_number} is already assigned")
            setattr(order, field, actor.id)
            self._append_timeline(
                order, order.status, order.status, actor,
                notes=f"claimed by {actor.role.value} {actor.id}",
            )
        return order

    def update_item(
        self,
        order_id: int,
        item_id: int,
        status: ItemStatus,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Order:
        if not (actor.is_operator or actor.role == Role.PROVIDER):
            raise Unauthorized("Only the provider can update items")
        with transaction(self.db, self.events):
            order = lock_order(self.db, order_id)
            if actor.role == Role.PROVIDER and order.provider_id != actor.id:
                raise Unauthorized(f"Order {order.order_number} is not assigned to you")
            if order.status not in ITEM_EDITABLE:
                raise InvalidTransition(
                    f"Items of {order.order_number} cannot change while {order.status.value}"
                )
            item = next((i for i in order.items if i.id == item_id), None)
            if item is None:
                raise OrderItemNotFound(f"Item {item_id} not found on {order.order_number}")

            item.status = ItemStatus(status)
            if notes is not None:
                item.provider_notes = notes
            self._append_timeline(
                order, order.status, order.status, actor,
                notes=f"item {item.id} {item.status.value}",
            )
            if order.status == OrderStatus.IN_PROGRESS and all(
                i.status == ItemStatus.DONE for i in order.items
            ):
                self._set_status(order, OrderStatus.READY, actor, notes="All items done")
        return order

    # -- internals ---------------------------------------------------------

    def _set_status(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor,
        notes: Optional[str] = None,
        override: bool = False,
    ) -> None:
        previous = order.status
        order.status = target
        milestone = MILESTONE_FIELDS.get(target)
        if milestone:
            setattr(order, milestone, utcnow())
        self._append_timeline(order, previous, target, actor, notes=notes, override=override)
        self._check_totals(order)
        self.events.stage(self._status_event(order, previous, actor))

    @staticmethod
    def _append_timeline(
        order: Order,
        previous: Optional[OrderStatus],
        target: OrderStatus,
        actor: Actor,
        notes: Optional[str] = None,
        override: bool = False,
    ) -> None:
        order.timeline.append(OrderTimelineEntry(
            from_status=previous,
            to_status=target,
            actor_id=actor.id,
            actor_role=actor.role,
            notes=notes,
            override=override,
        ))

    @staticmethod
    def _check_totals(order: Order) -> None:
        if order.total != order.subtotal + order.delivery_fee:
            raise InvariantViolation(f"Order {order.order_number} total does not add up")
        if order.subtotal != sum(item.price for item in order.items):
            raise InvariantViolation(f"Order {order.order_number} subtotal does not match its items")

    @staticmethod
    def _status_event(order: Order, previous: Optional[OrderStatus], actor: Actor) -> OrderStatusChanged:
        return OrderStatusChanged(
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            old_status=previous,
            new_status=order.status,
            actor_id=actor.id,
        )
