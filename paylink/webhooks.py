"""
Webhook reconciliation.

Processor events arrive at least once, in any order, and possibly before or
after the customer's return callback. Each event is mapped to one guarded
transition of the payment state machine; a transition whose guard no longer
holds is a no-op, so duplicates and late arrivals never regress a payment.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import structlog

from paylink.lifecycle import APPROVABLE, CAPTURABLE, DENIABLE
from paylink.models import PaymentStatus
from paylink.paypal_service import PayPalGateway
from paylink.store import PaymentStore

logger = structlog.get_logger(__name__)

ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"
CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"

# event type -> (statuses the payment may be in, status it moves to)
TRANSITIONS = {
    ORDER_APPROVED: (APPROVABLE, PaymentStatus.APPROVED),
    CAPTURE_COMPLETED: (CAPTURABLE, PaymentStatus.COMPLETED),
    CAPTURE_DENIED: (DENIABLE, PaymentStatus.FAILED),
}

# Outcomes
REJECTED = "rejected"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNMATCHED = "unmatched"
APPLIED = "applied"
NOOP = "noop"


def is_well_formed(event: Any) -> bool:
    return (
        isinstance(event, dict)
        and isinstance(event.get("id"), str) and bool(event["id"].strip())
        and isinstance(event.get("event_type"), str) and bool(event["event_type"].strip())
    )


def extract_order_id(event: Dict[str, Any]) -> Optional[str]:
    """
    Order id the event refers to.

    Order events carry it as the resource id; capture events are about the
    capture, so the order id sits under supplementary_data.related_ids.
    """
    resource = event.get("resource")
    if not isinstance(resource, dict):
        return None

    event_type = event.get("event_type", "")
    if event_type.startswith("CHECKOUT.ORDER."):
        return resource.get("id")
    if event_type.startswith("PAYMENT.CAPTURE."):
        supplementary = resource.get("supplementary_data") or {}
        related = supplementary.get("related_ids") or {}
        return related.get("order_id")
    return None


class WebhookVerifier(ABC):
    @abstractmethod
    def verify(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        ...


class PermissiveVerifier(WebhookVerifier):
    """Accepts every delivery. Only for setups without a PayPal webhook id."""

    _warned = False

    def verify(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        if not PermissiveVerifier._warned:
            logger.warning("webhook_signature_not_verified", hint="set PAYPAL_WEBHOOK_ID")
            PermissiveVerifier._warned = True
        return True


class PayPalSignatureVerifier(WebhookVerifier):
    def __init__(self, gateway: PayPalGateway, webhook_id: str):
        self.gateway = gateway
        self.webhook_id = webhook_id

    def verify(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        """
        False for a signature PayPal rejects.

        Raises:
            ProcessorError: PayPal could not be asked; the signature is unknown.
        """
        return self.gateway.verify_webhook_signature(headers, event, self.webhook_id)


class WebhookReconciler:
    def __init__(self, store: PaymentStore, verifier: WebhookVerifier):
        self.store = store
        self.verifier = verifier

    def verify(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        return self.verifier.verify(headers, event)

    def handle(self, event: Any) -> str:
        """Apply one processor event and return its outcome."""
        if not is_well_formed(event):
            logger.warning("webhook_malformed")
            return REJECTED

        event_id = event["id"]
        event_type = event["event_type"]
        log = logger.bind(event_id=event_id, event_type=event_type)
        log.info("webhook_received")

        if self.store.event_seen(event_id):
            log.info("webhook_duplicate")
            return DUPLICATE

        order_id = None
        if event_type in TRANSITIONS:
            order_id = extract_order_id(event)
            outcome = self._apply(log, event_type, order_id)
        else:
            log.info("webhook_unhandled_type")
            outcome = IGNORED

        # Unmatched events stay unrecorded so a redelivery can still match
        if outcome != UNMATCHED and not self.store.record_event(event_id, event_type, order_id, outcome):
            log.info("webhook_duplicate")
            return DUPLICATE
        return outcome

    def _apply(self, log, event_type: str, order_id: Optional[str]) -> str:
        if not order_id:
            log.warning("webhook_order_id_missing")
            return UNMATCHED

        payment = self.store.get_by_order_id(order_id)
        if payment is None:
            log.warning("webhook_payment_not_found", order_id=order_id)
            return UNMATCHED

        from_statuses, target = TRANSITIONS[event_type]
        reference_id = payment.reference_id
        if self.store.transition(reference_id, from_statuses, target):
            log.info("payment_status_reconciled", reference_id=reference_id,
                     order_id=order_id, status=target.value)
            return APPLIED

        log.info("webhook_transition_skipped", reference_id=reference_id,
                 order_id=order_id, status=payment.status)
        return NOOP
