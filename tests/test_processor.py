from types import SimpleNamespace

import pytest
import stripe

from settlement.core_settings import Settings
from settlement.domain.errors import InvalidSignature, ProcessorRejected, ProcessorUnavailable, RefundFailed
from settlement.infrastructure.processor import EventKind, StripeProcessor


class FakeResource:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def create(self, params=None, options=None):
        self.calls.append((params, options))
        if self.error is not None:
            raise self.error
        return self.result

    def list(self, params=None, options=None):
        self.calls.append((params, options))
        if self.error is not None:
            raise self.error
        return self.result


def make_client(sessions=None, refunds=None, construct_event=None):
    return SimpleNamespace(
        checkout=SimpleNamespace(sessions=sessions or FakeResource()),
        refunds=refunds or FakeResource(),
        construct_event=construct_event,
    )


def stripe_event(event_type, **obj):
    return SimpleNamespace(id="evt_1", type=event_type, data=SimpleNamespace(object=SimpleNamespace(**obj)))


@pytest.fixture
def settings():
    return Settings(STRIPE_SECRET_KEY="sk_test_x", STRIPE_WEBHOOK_SECRET="whsec_x", CURRENCY="gbp")


def test_checkout_session_carries_amount_and_idempotency_key(settings):
    sessions = FakeResource(result=SimpleNamespace(id="cs_1", url="https://checkout.stripe.test/cs_1"))
    processor = StripeProcessor(settings, client=make_client(sessions=sessions))

    session = processor.create_checkout_session(8200, "TS-2026-00001", idempotency_key="checkout-1-1")

    params, options = sessions.calls[0]
    assert session.session_id == "cs_1"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 8200
    assert params["line_items"][0]["price_data"]["currency"] == "gbp"
    assert params["metadata"] == {"order_number": "TS-2026-00001"}
    assert options == {"idempotency_key": "checkout-1-1"}


def test_transport_errors_are_retryable(settings):
    sessions = FakeResource(error=stripe.APIConnectionError("connection reset"))
    processor = StripeProcessor(settings, client=make_client(sessions=sessions))
    with pytest.raises(ProcessorUnavailable):
        processor.create_checkout_session(100, "TS-1", idempotency_key="k")


def test_declines_are_rejections(settings):
    sessions = FakeResource(error=stripe.InvalidRequestError("amount too small", "amount"))
    processor = StripeProcessor(settings, client=make_client(sessions=sessions))
    with pytest.raises(ProcessorRejected):
        processor.create_checkout_session(1, "TS-1", idempotency_key="k")

    refunds = FakeResource(error=stripe.InvalidRequestError("charge already refunded", "payment_intent"))
    processor = StripeProcessor(settings, client=make_client(refunds=refunds))
    with pytest.raises(RefundFailed):
        processor.refund("pi_1", 100, idempotency_key="k")


def test_completed_sessions_are_paged_and_limited_to_paid_orders(settings):
    pages = [
        SimpleNamespace(id="cs_1", payment_status="paid", payment_intent="pi_1", amount_total=8200,
                        metadata={"order_number": "TS-2026-00001"}),
        SimpleNamespace(id="cs_2", payment_status="unpaid", payment_intent=None, amount_total=4700,
                        metadata={"order_number": "TS-2026-00002"}),
        SimpleNamespace(id="cs_3", payment_status="paid", payment_intent="pi_3", amount_total=500, metadata={}),
    ]
    sessions = FakeResource(result=SimpleNamespace(auto_paging_iter=lambda: iter(pages)))
    processor = StripeProcessor(settings, client=make_client(sessions=sessions))

    found = processor.list_completed_sessions()

    assert [(s.session_id, s.order_ref, s.payment_intent_id, s.amount) for s in found] == [
        ("cs_1", "TS-2026-00001", "pi_1", 8200),
    ]
    assert sessions.calls == [({"status": "complete", "limit": 100}, None)]


def test_session_listing_outage_is_retryable(settings):
    sessions = FakeResource(error=stripe.RateLimitError("slow down"))
    processor = StripeProcessor(settings, client=make_client(sessions=sessions))
    with pytest.raises(ProcessorUnavailable):
        processor.list_completed_sessions()


@pytest.mark.parametrize("stripe_status, expected", [
    ("succeeded", "succeeded"),
    ("pending", "pending"),
    ("requires_action", "pending"),
    ("failed", "failed"),
    ("canceled", "failed"),
])
def test_refund_status_is_normalised(settings, stripe_status, expected):
    refunds = FakeResource(result=SimpleNamespace(id="re_1", status=stripe_status, amount=500))
    processor = StripeProcessor(settings, client=make_client(refunds=refunds))

    result = processor.refund("pi_1", 500, idempotency_key="refund-1-0-500", metadata={"payment_id": 1})

    assert result.status == expected
    params, options = refunds.calls[0]
    assert params["metadata"] == {"payment_id": "1"}
    assert options == {"idempotency_key": "refund-1-0-500"}


def test_bad_signature_is_rejected(settings):
    def construct_event(payload, signature, secret):
        raise stripe.SignatureVerificationError("No signatures found", signature)

    processor = StripeProcessor(settings, client=make_client(construct_event=construct_event))
    with pytest.raises(InvalidSignature):
        processor.parse_event(b"{}", "t=1,v1=bad")


def test_parse_event_passes_the_webhook_secret(settings):
    seen = []

    def construct_event(payload, signature, secret):
        seen.append(secret)
        return stripe_event("checkout.session.expired", id="cs_1")

    processor = StripeProcessor(settings, client=make_client(construct_event=construct_event))
    event = processor.parse_event(b"{}", "t=1,v1=ok")

    assert seen == ["whsec_x"]
    assert event.kind == EventKind.SESSION_EXPIRED
    assert event.session_id == "cs_1"


def test_translate_checkout_events():
    paid = StripeProcessor.translate(stripe_event(
        "checkout.session.completed", id="cs_1", payment_status="paid", payment_intent="pi_1", amount_total=8200,
    ))
    assert (paid.kind, paid.session_id, paid.payment_intent_id, paid.amount) == (
        EventKind.PAYMENT_SUCCEEDED, "cs_1", "pi_1", 8200,
    )

    # delayed payment methods complete unpaid and report later
    assert StripeProcessor.translate(stripe_event(
        "checkout.session.completed", id="cs_1", payment_status="unpaid",
    )) is None
    assert StripeProcessor.translate(stripe_event(
        "checkout.session.async_payment_failed", id="cs_1",
    )).kind == EventKind.PAYMENT_FAILED


def test_translate_refund_events():
    done = StripeProcessor.translate(stripe_event(
        "refund.updated", id="re_1", status="succeeded", payment_intent="pi_1", amount=500,
    ))
    assert (done.kind, done.refund_id, done.payment_intent_id) == (EventKind.REFUND_COMPLETED, "re_1", "pi_1")

    failed = StripeProcessor.translate(stripe_event(
        "refund.failed", id="re_1", status="failed", payment_intent="pi_1", failure_reason="expired_or_canceled_card",
    ))
    assert failed.kind == EventKind.REFUND_FAILED
    assert failed.failure_message == "expired_or_canceled_card"

    assert StripeProcessor.translate(stripe_event("refund.updated", id="re_1", status="pending")) is None
    assert StripeProcessor.translate(stripe_event("customer.created", id="cus_1")) is None
