"""External payment processor client.

The engine only ever talks to the processor through ``PaymentProcessor``;
``StripeProcessor`` is the production implementation on top of the Stripe
SDK. Every mutating call carries an idempotency key so SDK-level retries
after a timeout can never move money twice.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

import stripe

from settlement.core_settings import Settings
from settlement.domain.errors import InvalidSignature, ProcessorRejected, ProcessorUnavailable, RefundFailed
from shared.core import get_logger

logger = get_logger(__name__)

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SESSION_EXPIRED = "session_expired"
    REFUND_COMPLETED = "refund_completed"
    REFUND_FAILED = "refund_failed"


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


@dataclass(frozen=True)
class CompletedSession:
    session_id: str
    order_ref: str
    payment_intent_id: Optional[str]
    amount: Optional[int]


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    # "succeeded", "pending" or "failed"
    status: str
    amount: int


@dataclass(frozen=True)
class ProcessorEvent:
    event_id: str
    kind: EventKind
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    failure_message: Optional[str] = None


class PaymentProcessor(Protocol):
    def create_checkout_session(self, amount: int, order_ref: str, *, idempotency_key: str) -> CheckoutSession:
        ...

    def refund(self, payment_intent_id: str, amount: int, *, idempotency_key: str,
               metadata: Optional[dict] = None) -> RefundResult:
        ...

    def parse_event(self, payload: bytes, signature: str) -> Optional[ProcessorEvent]:
        ...

    def list_completed_sessions(self) -> List[CompletedSession]:
        ...


class StripeProcessor:
    """Stripe Checkout + Refunds with bounded timeouts and idempotent retries."""

    def __init__(self, settings: Settings, client: Optional[stripe.StripeClient] = None):
        self.settings = settings
        self.client = client or stripe.StripeClient(
            settings.STRIPE_SECRET_KEY,
            max_network_retries=settings.PROCESSOR_MAX_RETRIES,
            http_client=stripe.RequestsClient(timeout=settings.PROCESSOR_TIMEOUT_SECONDS),
        )

    def create_checkout_session(self, amount: int, order_ref: str, *, idempotency_key: str) -> CheckoutSession:
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": self.settings.CURRENCY,
                    "product_data": {"name": f"Order {order_ref}"},
                    "unit_amount": amount,
                },
                "quantity": 1,
            }],
            "success_url": self.settings.CHECKOUT_SUCCESS_URL,
            "cancel_url": self.settings.CHECKOUT_CANCEL_URL,
            "metadata": {"order_number": order_ref},
        }
        try:
            session = self.client.checkout.sessions.create(
                params=params, options={"idempotency_key": idempotency_key}
            )
        except _TRANSIENT_ERRORS as exc:
            logger.warning(f"Checkout session creation failed for {order_ref}: {exc}")
            raise ProcessorUnavailable("Payment processor unavailable, retry checkout") from exc
        except stripe.StripeError as exc:
            raise ProcessorRejected(f"Checkout session rejected: {exc.user_message or exc}") from exc
        return CheckoutSession(session_id=session.id, url=session.url)

    def refund(self, payment_intent_id: str, amount: int, *, idempotency_key: str,
               metadata: Optional[dict] = None) -> RefundResult:
        params = {
            "payment_intent": payment_intent_id,
            "amount": amount,
            "reason": "requested_by_customer",
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        try:
            refund = self.client.refunds.create(
                params=params, options={"idempotency_key": idempotency_key}
            )
        except _TRANSIENT_ERRORS as exc:
            logger.warning(f"Refund call failed for {payment_intent_id}: {exc}")
            raise ProcessorUnavailable("Payment processor unavailable, refund not confirmed") from exc
        except stripe.StripeError as exc:
            raise RefundFailed(f"Refund rejected: {exc.user_message or exc}") from exc

        status = refund.status
        if status in ("failed", "canceled"):
            status = "failed"
        elif status != "succeeded":
            # requires_action and pending both wait for the refund webhook
            status = "pending"
        return RefundResult(refund_id=refund.id, status=status, amount=refund.amount)

    def list_completed_sessions(self) -> List[CompletedSession]:
        """Paid checkout sessions that carry an order reference, across every page."""
        found = []
        try:
            listing = self.client.checkout.sessions.list(params={"status": "complete", "limit": 100})
            for session in listing.auto_paging_iter():
                order_ref = (session.metadata or {}).get("order_number")
                if getattr(session, "payment_status", None) != "paid" or not order_ref:
                    continue
                found.append(CompletedSession(
                    session_id=session.id,
                    order_ref=order_ref,
                    payment_intent_id=getattr(session, "payment_intent", None),
                    amount=getattr(session, "amount_total", None),
                ))
        except _TRANSIENT_ERRORS as exc:
            logger.warning(f"Listing checkout sessions failed: {exc}")
            raise ProcessorUnavailable("Payment processor unavailable, retry the sync") from exc
        except stripe.StripeError as exc:
            raise ProcessorRejected(f"Session listing rejected: {exc.user_message or exc}") from exc
        return found

    def parse_event(self, payload: bytes, signature: str) -> Optional[ProcessorEvent]:
        try:
            event = self.client.construct_event(payload, signature, self.settings.STRIPE_WEBHOOK_SECRET)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise InvalidSignature("Webhook signature verification failed") from exc
        return self.translate(event)

    @staticmethod
    def translate(event) -> Optional[ProcessorEvent]:
        """Map a Stripe event onto the engine's event kinds; ``None`` if unhandled."""
        obj = event.data.object
        event_type = event.type

        if event_type.startswith("checkout.session."):
            kind = None
            if event_type == "checkout.session.completed":
                # delayed methods complete unpaid and follow up asynchronously
                if getattr(obj, "payment_status", None) == "paid":
                    kind = EventKind.PAYMENT_SUCCEEDED
            elif event_type == "checkout.session.async_payment_succeeded":
                kind = EventKind.PAYMENT_SUCCEEDED
            elif event_type == "checkout.session.async_payment_failed":
                kind = EventKind.PAYMENT_FAILED
            elif event_type == "checkout.session.expired":
                kind = EventKind.SESSION_EXPIRED
            if kind is None:
                return None
            return ProcessorEvent(
                event_id=event.id,
                kind=kind,
                session_id=obj.id,
                payment_intent_id=getattr(obj, "payment_intent", None),
                amount=getattr(obj, "amount_total", None),
            )

        if event_type in ("refund.updated", "charge.refund.updated", "refund.failed"):
            status = getattr(obj, "status", None)
            if status == "succeeded":
                kind = EventKind.REFUND_COMPLETED
            elif status in ("failed", "canceled"):
                kind = EventKind.REFUND_FAILED
            else:
                return None
            return ProcessorEvent(
                event_id=event.id,
                kind=kind,
                payment_intent_id=getattr(obj, "payment_intent", None),
                refund_id=obj.id,
                amount=getattr(obj, "amount", None),
                failure_message=getattr(obj, "failure_reason", None),
            )

        return None
