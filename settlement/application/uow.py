"""Transaction boundary and order-level locking shared by all services."""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from settlement.domain.errors import ConcurrencyConflict, OrderNotFound
from settlement.domain.models import Order
from .events import EventPublisher


@contextmanager
def transaction(db: Session, events: EventPublisher) -> Iterator[None]:
    """Commit on success, roll back on any error, publish staged events after commit.

    A lost optimistic-version race on the order row surfaces as
    ``ConcurrencyConflict``.
    """
    try:
        yield
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        events.discard()
        raise ConcurrencyConflict("Order was modified concurrently, retry the request") from exc
    except BaseException:
        db.rollback()
        events.discard()
        raise
    events.flush()


def lock_order(db: Session, order_id: int) -> Order:
    """Load the order with ``SELECT ... FOR UPDATE``; all writers on one order queue here."""
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = db.execute(stmt).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order
