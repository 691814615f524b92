"""
Processor gateway.

All calls to the external payment processor go through a ProcessorGateway so
the lifecycle controller can run against a fake in tests. PayPalGateway talks
to the PayPal Orders v2 REST API.

Amount formatting and currency normalization live here and nowhere else.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

import requests
import structlog

from paylink.config import Settings
from paylink.errors import ConflictError, ProcessorError

logger = structlog.get_logger(__name__)

APPROVAL_LINK_RELS = ("approve", "payer-action")

WEBHOOK_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def format_amount(amount) -> str:
    """Processor amounts are strings with exactly two decimals."""
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def normalize_currency(currency: str) -> str:
    return currency.strip().upper()


@dataclass
class OrderRequest:
    """Everything the processor needs to open an order for one payment."""

    reference_id: str
    amount: Decimal
    currency: str
    service_name: str
    brand_name: str

    @classmethod
    def from_payment(cls, payment) -> "OrderRequest":
        return cls(
            reference_id=payment.reference_id,
            amount=payment.amount,
            currency=payment.currency,
            service_name=payment.service_name,
            brand_name=payment.brand.name,
        )


@dataclass
class OrderResult:
    order_id: str
    status: str                         # CREATED, APPROVED, COMPLETED, ...
    approval_url: Optional[str] = None


@dataclass
class CaptureResult:
    capture_id: Optional[str]
    status: str                         # COMPLETED, PENDING, DECLINED


class ProcessorGateway(ABC):
    """Semantic operations the payment lifecycle needs from a processor."""

    @abstractmethod
    def create_order(self, order: OrderRequest, request_id: Optional[str] = None) -> OrderResult:
        """
        Open an order requesting full upfront capture.

        request_id is the processor-side idempotency key; it defaults to the
        payment's reference id.

        Raises:
            ProcessorError: On network, auth, or validation failure.
        """
        ...

    @abstractmethod
    def capture_order(self, order_id: str) -> CaptureResult:
        """
        Capture a customer-approved order.

        Raises:
            ConflictError: Order is not capturable (already captured, not approved).
            ProcessorError: Any other failure.
        """
        ...

    @abstractmethod
    def fetch_order(self, order_id: str) -> OrderResult:
        """Current status and approval link of an existing order."""
        ...


class PayPalGateway(ProcessorGateway):
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.base_url = settings.paypal_base_url
        self.timeout = settings.paypal_timeout_seconds
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        client_id = self.settings.paypal_client_id
        client_secret = self.settings.paypal_client_secret
        if not client_id or not client_secret:
            raise ProcessorError("Missing PayPal client ID or secret")

        try:
            response = self.session.request(
                "POST",
                f"{self.base_url}/v1/oauth2/token",
                auth=(client_id, client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProcessorError(f"PayPal authentication failed: {exc}") from exc

        if response.status_code >= 400:
            raise self._error("PayPal authentication failed", response)

        body = response.json()
        self._token = body["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + int(body.get("expires_in", 0)) - 60
        return self._token

    def _request(self, method: str, path: str, json: Any = None,
                 headers: Optional[Dict[str, str]] = None) -> requests.Response:
        all_headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        all_headers.update(headers or {})

        try:
            return self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers=all_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProcessorError(f"PayPal request failed: {exc}", {"path": path}) from exc

    @staticmethod
    def _error(message: str, response: requests.Response, error_cls=ProcessorError):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        issues = [d.get("issue") for d in body.get("details") or [] if isinstance(d, dict)]
        details = {
            "http_status": response.status_code,
            "name": body.get("name"),
            "debug_id": body.get("debug_id"),
            "issues": [issue for issue in issues if issue],
        }
        reason = body.get("message") or getattr(response, "reason", None) or "unknown error"
        return error_cls(f"{message}: {reason}", details)

    @staticmethod
    def _order_result(body: Dict[str, Any]) -> OrderResult:
        if not body.get("id"):
            raise ProcessorError("PayPal response did not include an order id")

        approval_url = None
        for link in body.get("links") or []:
            if link.get("rel") in APPROVAL_LINK_RELS and link.get("href"):
                approval_url = link["href"]
                break

        return OrderResult(order_id=body["id"], status=body.get("status", ""), approval_url=approval_url)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def build_order_body(self, order: OrderRequest) -> Dict[str, Any]:
        base_url = self.settings.frontend_url.rstrip("/")
        return {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.reference_id,
                    "description": f"Payment for {order.service_name}",
                    "custom_id": order.reference_id,    # correlation id in webhook events
                    "amount": {
                        "currency_code": normalize_currency(order.currency),
                        "value": format_amount(order.amount),
                    },
                }
            ],
            "application_context": {
                "brand_name": order.brand_name,
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "payment_method": {
                    "standard_entry_class_code": "WEB",
                    "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
                    "disallowed_payment_methods": [{"payment_method_type": "PAYLATER"}],
                },
                "stored_payment_source_expected": False,
                "return_url": f"{base_url}/payment/success/{order.reference_id}",
                "cancel_url": f"{base_url}/payment/cancel/{order.reference_id}",
            },
        }

    def create_order(self, order: OrderRequest, request_id: Optional[str] = None) -> OrderResult:
        response = self._request(
            "POST",
            "/v2/checkout/orders",
            json=self.build_order_body(order),
            headers={
                "Prefer": "return=representation",
                "PayPal-Request-Id": request_id or order.reference_id,
            },
        )
        if response.status_code >= 400:
            raise self._error("PayPal order creation failed", response)

        result = self._order_result(response.json())
        logger.info(
            "paypal_order_created",
            reference_id=order.reference_id,
            order_id=result.order_id,
            status=result.status,
        )
        return result

    def fetch_order(self, order_id: str) -> OrderResult:
        response = self._request("GET", f"/v2/checkout/orders/{order_id}")
        if response.status_code >= 400:
            raise self._error("PayPal order lookup failed", response)
        return self._order_result(response.json())

    def capture_order(self, order_id: str) -> CaptureResult:
        logger.info("paypal_capture_started", order_id=order_id)
        response = self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={"Prefer": "return=representation"},
        )
        if response.status_code == 422:
            raise self._error("PayPal order is not capturable", response, ConflictError)
        if response.status_code >= 400:
            raise self._error("PayPal payment capture failed", response)

        body = response.json()
        try:
            capture = body["purchase_units"][0]["payments"]["captures"][0]
        except (KeyError, IndexError, TypeError):
            capture = {}

        result = CaptureResult(
            capture_id=capture.get("id"),
            status=capture.get("status") or body.get("status", ""),
        )
        logger.info(
            "paypal_capture_finished",
            order_id=order_id,
            capture_id=result.capture_id,
            status=result.status,
        )
        return result

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, headers: Mapping[str, str], event: Dict[str, Any],
                                 webhook_id: str) -> bool:
        """Ask PayPal whether a webhook delivery carries a valid signature."""
        payload: Dict[str, Any] = {}
        for field_name, header in WEBHOOK_SIGNATURE_HEADERS.items():
            value = headers.get(header)
            if not value:
                logger.warning("paypal_webhook_header_missing", header=header)
                return False
            payload[field_name] = value
        payload["webhook_id"] = webhook_id
        payload["webhook_event"] = event

        response = self._request("POST", "/v1/notifications/verify-webhook-signature", json=payload)
        if response.status_code >= 400:
            raise self._error("PayPal webhook verification failed", response)
        return response.json().get("verification_status") == "SUCCESS"
