import pytest

from paylink.errors import ProcessorError
from paylink.models import WebhookEvent
from paylink.store import PaymentStore
from paylink.webhooks import (
    APPLIED,
    DUPLICATE,
    IGNORED,
    NOOP,
    REJECTED,
    UNMATCHED,
    PayPalSignatureVerifier,
    PermissiveVerifier,
    WebhookReconciler,
    extract_order_id,
    is_well_formed,
)


@pytest.fixture
def store(db):
    return PaymentStore(db)


@pytest.fixture
def reconciler(store):
    return WebhookReconciler(store, PermissiveVerifier())


def test_extract_order_id_from_order_event(webhook_event):
    assert extract_order_id(webhook_event("CHECKOUT.ORDER.APPROVED", "ORDER-7")) == "ORDER-7"


def test_extract_order_id_from_capture_event(webhook_event):
    event = webhook_event("PAYMENT.CAPTURE.COMPLETED", "ORDER-7")

    # The resource id is the capture, not the order
    assert event["resource"]["id"] != "ORDER-7"
    assert extract_order_id(event) == "ORDER-7"


def test_extract_order_id_missing():
    assert extract_order_id({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"id": "C"}}) is None
    assert extract_order_id({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": None}) is None
    assert extract_order_id({"event_type": "BILLING.PLAN.CREATED", "resource": {"id": "P"}}) is None


@pytest.mark.parametrize("event", [
    None,
    [],
    {},
    {"id": "WH-1"},
    {"event_type": "PAYMENT.CAPTURE.COMPLETED"},
    {"id": " ", "event_type": "PAYMENT.CAPTURE.COMPLETED"},
])
def test_malformed_events(reconciler, event):
    assert not is_well_formed(event)
    assert reconciler.handle(event) == REJECTED


@pytest.mark.parametrize("event_type,from_status,expected_status,outcome", [
    ("CHECKOUT.ORDER.APPROVED", "processing", "approved", APPLIED),
    ("CHECKOUT.ORDER.APPROVED", "pending", "pending", NOOP),
    ("CHECKOUT.ORDER.APPROVED", "completed", "completed", NOOP),
    ("PAYMENT.CAPTURE.COMPLETED", "pending", "completed", APPLIED),
    ("PAYMENT.CAPTURE.COMPLETED", "approved", "completed", APPLIED),
    ("PAYMENT.CAPTURE.COMPLETED", "cancelled", "cancelled", NOOP),
    ("PAYMENT.CAPTURE.COMPLETED", "refunded", "refunded", NOOP),
    ("PAYMENT.CAPTURE.DENIED", "approved", "failed", APPLIED),
    ("PAYMENT.CAPTURE.DENIED", "completed", "completed", NOOP),
])
def test_event_transitions(reconciler, store, make_payment, webhook_event,
                           event_type, from_status, expected_status, outcome):
    payment = make_payment(status=from_status, order_id="ORDER-1")

    assert reconciler.handle(webhook_event(event_type, "ORDER-1")) == outcome
    assert store.get(payment.reference_id).status == expected_status


def test_duplicate_event_applied_once(reconciler, store, make_payment, webhook_event):
    payment = make_payment(status="processing", order_id="ORDER-1")
    event = webhook_event("PAYMENT.CAPTURE.COMPLETED", "ORDER-1", event_id="WH-1")

    assert reconciler.handle(event) == APPLIED
    # Agent refunds in between; the redelivery must not bring it back to completed
    store.transition(payment.reference_id, ["completed"], "refunded")
    assert reconciler.handle(event) == DUPLICATE
    assert store.get(payment.reference_id).status == "refunded"


def test_unmatched_event_not_recorded(reconciler, store, db, webhook_event, make_payment):
    event = webhook_event("PAYMENT.CAPTURE.COMPLETED", "ORDER-LATER", event_id="WH-2")

    assert reconciler.handle(event) == UNMATCHED
    assert not store.event_seen("WH-2")

    # A redelivery after the order id is known still applies
    payment = make_payment(status="processing", order_id="ORDER-LATER")
    assert reconciler.handle(event) == APPLIED
    assert store.get(payment.reference_id).status == "completed"


def test_unknown_event_type_ignored(reconciler, db):
    event = {"id": "WH-3", "event_type": "BILLING.SUBSCRIPTION.CREATED", "resource": {"id": "S-1"}}

    assert reconciler.handle(event) == IGNORED
    assert db.get(WebhookEvent, "WH-3").outcome == IGNORED
    assert reconciler.handle(event) == DUPLICATE


def test_lost_record_race_reports_duplicate(reconciler, store, make_payment, webhook_event, mocker):
    make_payment(status="processing", order_id="ORDER-1")
    mocker.patch.object(store, "record_event", return_value=False)

    assert reconciler.handle(webhook_event("CHECKOUT.ORDER.APPROVED", "ORDER-1")) == DUPLICATE


def test_permissive_verifier_accepts_everything():
    assert PermissiveVerifier().verify({}, {"id": "WH-1"}) is True


def test_paypal_verifier_delegates_to_gateway(mocker):
    gateway = mocker.Mock()
    gateway.verify_webhook_signature.return_value = True
    verifier = PayPalSignatureVerifier(gateway, "WH-CONFIG-ID")
    headers = {"paypal-transmission-id": "t-1"}
    event = {"id": "WH-1"}

    assert verifier.verify(headers, event) is True
    gateway.verify_webhook_signature.assert_called_once_with(headers, event, "WH-CONFIG-ID")


def test_paypal_verifier_propagates_outage(mocker):
    gateway = mocker.Mock()
    gateway.verify_webhook_signature.side_effect = ProcessorError("PayPal request failed: timeout")

    with pytest.raises(ProcessorError):
        PayPalSignatureVerifier(gateway, "WH-CONFIG-ID").verify({}, {"id": "WH-1"})
