import pytest

from settlement.application.events import EventPublisher
from settlement.application.orders import OrderLedger
from settlement.application.payments import PaymentGateway
from settlement.application.payouts import PayoutCalculator
from settlement.application.refunds import RefundProcessor
from settlement.domain.errors import (
    AlreadyPaid, InvalidTransition, PaymentNotFound, ProcessorUnavailable, Unauthorized,
)
from settlement.domain.models import Order, Payment, ProcessedEvent
from settlement.domain.status import OrderStatus, PaymentStatus, Role
from settlement.infrastructure.processor import CompletedSession, EventKind, ProcessorEvent


def succeeded(handoff, event_id=None, amount=None):
    return ProcessorEvent(
        event_id=event_id or f"evt_ok_{handoff.payment_id}",
        kind=EventKind.PAYMENT_SUCCEEDED,
        session_id=handoff.session_id,
        payment_intent_id=f"pi_{handoff.payment_id}",
        amount=handoff.amount if amount is None else amount,
    )


def session_event(handoff, kind, event_id):
    return ProcessorEvent(event_id=event_id, kind=kind, session_id=handoff.session_id,
                          failure_message="card_declined" if kind == EventKind.PAYMENT_FAILED else None)


def test_initiate_creates_pending_payment_for_order_total(place_order, gateway, processor, actors, db):
    order = place_order()
    handoff = gateway.initiate(order.id, actors["customer"])

    payment = db.get(Payment, handoff.payment_id)
    assert handoff.amount == order.total == 8200
    assert handoff.checkout_url.startswith("https://checkout.test/")
    assert payment.status == PaymentStatus.PENDING
    assert payment.processor_session_id == handoff.session_id
    assert payment.currency == "gbp"
    _, amount, order_ref, key = processor.sessions[0]
    assert (amount, order_ref) == (8200, order.order_number)
    assert key == f"checkout-{order.id}-{payment.id}"


def test_processor_outage_leaves_no_payment(place_order, gateway, processor, actors, db):
    order = place_order()
    processor.unavailable = True

    with pytest.raises(ProcessorUnavailable) as exc:
        gateway.initiate(order.id, actors["customer"])

    assert exc.value.retryable is True
    assert db.query(Payment).count() == 0
    assert db.get(Order, order.id).status == OrderStatus.BOOKED


def test_only_the_owner_pays(place_order, gateway, actors):
    order = place_order()
    with pytest.raises(Unauthorized):
        gateway.initiate(order.id, actors["other_customer"])
    with pytest.raises(Unauthorized):
        gateway.initiate(order.id, actors["agent"])


def test_closed_orders_cannot_be_paid(place_order, gateway, ledger, actors):
    order = ledger.cancel(place_order().id, actors["staff"], "Duplicate booking")
    with pytest.raises(InvalidTransition):
        gateway.initiate(order.id, actors["customer"])


def test_success_confirms_payment_without_moving_the_order(place_order, gateway, actors, db, dispatcher):
    order = place_order()
    handoff = gateway.initiate(order.id, actors["customer"])

    result = gateway.reconcile(succeeded(handoff))

    payment = db.get(Payment, handoff.payment_id)
    assert result.outcome == "succeeded"
    assert result.duplicate is False
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.succeeded_at is not None
    assert payment.processor_payment_intent_id == f"pi_{payment.id}"
    assert db.get(Order, order.id).status == OrderStatus.BOOKED
    assert dispatcher.types().count("payment.confirmed") == 1


def test_redelivered_event_is_applied_once(place_order, gateway, actors, db, dispatcher):
    order = place_order()
    handoff = gateway.initiate(order.id, actors["customer"])
    event = succeeded(handoff, event_id="evt_same")

    first = gateway.reconcile(event)
    second = gateway.reconcile(event)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.outcome == "duplicate"
    assert db.query(ProcessedEvent).count() == 1
    assert dispatcher.types().count("payment.confirmed") == 1
    assert db.get(Payment, handoff.payment_id).status == PaymentStatus.SUCCEEDED


def test_paid_order_cannot_start_another_checkout(place_order, pay, gateway, actors):
    order = place_order()
    pay(order)
    with pytest.raises(AlreadyPaid):
        gateway.initiate(order.id, actors["customer"])


def test_retry_after_failure_links_previous_attempt(place_order, gateway, actors, db):
    order = place_order()
    first = gateway.initiate(order.id, actors["customer"])
    result = gateway.reconcile(session_event(first, EventKind.PAYMENT_FAILED, "evt_fail"))
    assert result.outcome == "failed"
    assert db.get(Payment, first.payment_id).meta["failure"] == "card_declined"

    second = gateway.initiate(order.id, actors["customer"])
    retry = db.get(Payment, second.payment_id)
    assert retry.meta == {"retry": True, "previous_payment_id": first.payment_id}
    assert retry.status == PaymentStatus.PENDING


def test_failure_after_success_is_ignored(place_order, gateway, actors, db):
    handoff = gateway.initiate(place_order().id, actors["customer"])
    gateway.reconcile(succeeded(handoff))

    result = gateway.reconcile(session_event(handoff, EventKind.PAYMENT_FAILED, "evt_late_fail"))

    assert result.outcome == "ignored_succeeded"
    assert db.get(Payment, handoff.payment_id).status == PaymentStatus.SUCCEEDED


def test_success_after_failure_is_accepted(place_order, gateway, actors, db):
    handoff = gateway.initiate(place_order().id, actors["customer"])
    gateway.reconcile(session_event(handoff, EventKind.PAYMENT_FAILED, "evt_fail"))

    result = gateway.reconcile(succeeded(handoff))

    payment = db.get(Payment, handoff.payment_id)
    assert result.outcome == "succeeded"
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.meta["recovered_from"] == "failed"


def test_second_capture_is_flagged_not_counted(place_order, gateway, actors, db):
    order = place_order()
    first = gateway.initiate(order.id, actors["customer"])
    second = gateway.initiate(order.id, actors["customer"])

    gateway.reconcile(succeeded(first))
    result = gateway.reconcile(succeeded(second))

    duplicate = db.get(Payment, second.payment_id)
    assert result.outcome == "duplicate_capture"
    assert duplicate.status == PaymentStatus.PENDING
    assert duplicate.meta["duplicate_capture"] is True
    assert duplicate.meta["duplicate_of"] == first.payment_id
    paid = [p for p in gateway.payments_for(order.id) if p.status == PaymentStatus.SUCCEEDED]
    assert [p.id for p in paid] == [first.payment_id]


def test_captured_amount_mismatch_is_recorded(place_order, gateway, actors, db):
    handoff = gateway.initiate(place_order().id, actors["customer"])
    gateway.reconcile(succeeded(handoff, amount=100))
    assert db.get(Payment, handoff.payment_id).meta["captured_amount"] == 100


def test_expired_session_cancels_unpaid_booking(place_order, gateway, actors, db):
    order = place_order()
    handoff = gateway.initiate(order.id, actors["customer"])

    result = gateway.reconcile(session_event(handoff, EventKind.SESSION_EXPIRED, "evt_expired"))

    order = db.get(Order, order.id)
    assert result.outcome == "expired_order_cancelled"
    assert db.get(Payment, handoff.payment_id).status == PaymentStatus.FAILED
    assert order.status == OrderStatus.CANCELLED
    assert order.cancel_reason == "Unpaid: checkout session expired"
    assert order.timeline[-1].actor_role == Role.SYSTEM
    assert order.timeline[-1].actor_id is None


def test_expired_session_keeps_order_with_another_live_attempt(place_order, gateway, actors, db):
    order = place_order()
    stale = gateway.initiate(order.id, actors["customer"])
    gateway.initiate(order.id, actors["customer"])

    result = gateway.reconcile(session_event(stale, EventKind.SESSION_EXPIRED, "evt_expired"))

    assert result.outcome == "expired"
    assert db.get(Order, order.id).status == OrderStatus.BOOKED


def test_expired_session_never_cancels_an_order_in_progress(place_order, drive, gateway, actors, db):
    order = place_order()
    handoff = gateway.initiate(order.id, actors["customer"])
    drive(order, OrderStatus.PICKUP_SCHEDULED)

    result = gateway.reconcile(session_event(handoff, EventKind.SESSION_EXPIRED, "evt_expired"))

    assert result.outcome == "expired"
    assert db.get(Order, order.id).status == OrderStatus.PICKUP_SCHEDULED


def test_event_for_unknown_session_is_rejected(gateway, db):
    event = ProcessorEvent(event_id="evt_x", kind=EventKind.PAYMENT_SUCCEEDED, session_id="cs_missing")
    with pytest.raises(PaymentNotFound):
        gateway.reconcile(event)
    assert db.get(ProcessedEvent, "evt_x") is None


def test_concurrent_redelivery_reads_as_duplicate(place_order, gateway, processor, policy, actors, db, other_db,
                                                  dispatcher, monkeypatch):
    handoff = gateway.initiate(place_order().id, actors["customer"])
    events = EventPublisher(dispatcher)
    rival_ledger = OrderLedger(other_db, events, PayoutCalculator(other_db, events, policy), 700)
    rival = PaymentGateway(other_db, events, processor, rival_ledger,
                           RefundProcessor(other_db, events, processor, rival_ledger))
    apply = gateway._apply

    def apply_after_rival_delivery(order, payment, event):
        assert rival.reconcile(event).outcome == "succeeded"
        return apply(order, payment, event)

    monkeypatch.setattr(gateway, "_apply", apply_after_rival_delivery)

    result = gateway.reconcile(succeeded(handoff, event_id="evt_raced"))

    assert result.duplicate is True
    assert db.query(ProcessedEvent).count() == 1
    assert db.get(Payment, handoff.payment_id).status == PaymentStatus.SUCCEEDED
    assert dispatcher.types().count("payment.confirmed") == 1


def completed(session_id, order, intent="pi_sync"):
    return CompletedSession(session_id=session_id, order_ref=order.order_number,
                            payment_intent_id=intent, amount=order.total)


def test_sync_recovers_a_lost_success_callback(place_order, gateway, processor, actors, db, dispatcher):
    order = place_order()
    handoff = gateway.initiate(order.id, actors["customer"])
    processor.completed.append(completed(handoff.session_id, order))
    place_order()

    report = gateway.sync(actors["admin"])

    payment = db.get(Payment, handoff.payment_id)
    assert (report.orders_checked, report.synced, report.unmatched) == (2, 1, 1)
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.processor_payment_intent_id == "pi_sync"
    assert db.get(ProcessedEvent, f"sync-{handoff.session_id}") is not None
    assert dispatcher.types().count("payment.confirmed") == 1

    again = gateway.sync(actors["admin"])
    assert (again.orders_checked, again.synced) == (1, 0)
    assert dispatcher.types().count("payment.confirmed") == 1


def test_sync_backfills_a_session_with_no_payment_row(place_order, gateway, processor, actors, db):
    order = place_order()
    processor.completed.append(completed("cs_lost", order, intent="pi_lost"))

    report = gateway.sync(actors["admin"])

    payment = db.query(Payment).filter(Payment.order_id == order.id).one()
    assert report.synced == 1
    assert (payment.amount, payment.status) == (8200, PaymentStatus.SUCCEEDED)
    assert payment.processor_session_id == "cs_lost"
    assert payment.meta["backfilled"] is True


def test_sync_skips_cancelled_orders_and_needs_an_admin(place_order, ledger, gateway, processor, actors, db):
    order = ledger.cancel(place_order().id, actors["staff"], "Changed mind")
    processor.completed.append(completed("cs_cancelled", order))

    with pytest.raises(Unauthorized):
        gateway.sync(actors["staff"])
    report = gateway.sync(actors["admin"])

    assert report.orders_checked == 0
    assert db.query(Payment).count() == 0
