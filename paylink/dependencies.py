"""
Request-scoped wiring.

Routes ask for a PaymentLifecycle or WebhookReconciler; everything they are
built from (session, gateway, settings) comes through Depends so tests can
swap any piece with app.dependency_overrides.
"""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from paylink.config import Settings, get_settings
from paylink.database import get_db
from paylink.lifecycle import PaymentLifecycle
from paylink.paypal_service import PayPalGateway, ProcessorGateway
from paylink.store import PaymentStore
from paylink.webhooks import PayPalSignatureVerifier, PermissiveVerifier, WebhookReconciler, WebhookVerifier


@lru_cache
def _paypal_gateway() -> PayPalGateway:
    # Shared so the OAuth token cache survives across requests
    return PayPalGateway(get_settings())


def get_gateway() -> ProcessorGateway:
    return _paypal_gateway()


def get_store(db: Session = Depends(get_db)) -> PaymentStore:
    return PaymentStore(db)


def get_lifecycle(
    store: PaymentStore = Depends(get_store),
    gateway: ProcessorGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> PaymentLifecycle:
    return PaymentLifecycle(store, gateway, settings)


def get_verifier(
    gateway: ProcessorGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> WebhookVerifier:
    if settings.paypal_webhook_id and isinstance(gateway, PayPalGateway):
        return PayPalSignatureVerifier(gateway, settings.paypal_webhook_id)
    return PermissiveVerifier()


def get_reconciler(
    store: PaymentStore = Depends(get_store),
    verifier: WebhookVerifier = Depends(get_verifier),
) -> WebhookReconciler:
    return WebhookReconciler(store, verifier)
