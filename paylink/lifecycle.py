"""
Payment lifecycle controller.

Orchestrates a payment attempt from link creation to a terminal state:

    pending -> processing -> approved -> completed
    pending -> expired                      (lazy, on read)
    pending/processing -> cancelled         (customer abandons approval)
    processing/approved -> failed           (processor denies capture)

Every automated move goes through PaymentStore's compare-and-set updates, so
a transition that lost a race (webhook vs. return callback, read vs. expiry)
simply does not apply instead of regressing the record.
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import structlog

from paylink.config import Settings
from paylink.errors import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    ProcessorError,
    ValidationError,
)
from paylink.models import Payment, PaymentStatus, as_utc, utcnow
from paylink.paypal_service import (
    OrderRequest,
    OrderResult,
    ProcessorGateway,
    format_amount,
    normalize_currency,
)
from paylink.schemas import PaymentLinkCreate
from paylink.store import PaymentStore

logger = structlog.get_logger(__name__)

S = PaymentStatus

CHECKOUT_READY = frozenset({S.PENDING, S.PROCESSING})
CAPTURABLE = frozenset({S.PENDING, S.PROCESSING, S.APPROVED})
CANCELLABLE = frozenset({S.PENDING, S.PROCESSING})
APPROVABLE = frozenset({S.PROCESSING})
DENIABLE = frozenset({S.PROCESSING, S.APPROVED})

# Processor order states in which the customer can still approve the order
RESUMABLE_ORDER_STATES = frozenset({"CREATED", "SAVED", "PAYER_ACTION_REQUIRED"})
# Approved or captured orders; replacing them could charge the customer twice
SETTLED_ORDER_STATES = frozenset({"APPROVED", "COMPLETED"})

REQUIRED_LINK_FIELDS = ("brand_id", "customer_name", "customer_email", "service_name", "amount")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def public_view(payment: Payment) -> Dict[str, Any]:
    """Customer-facing projection: no contact details, ids or processor state."""
    return {
        "reference_id": payment.reference_id,
        "customer_name": payment.customer_name,
        "service_name": payment.service_name,
        "service_description": payment.service_description,
        "amount": format_amount(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "brand": {
            "name": payment.brand.name,
            "logo_url": payment.brand.logo_url,
            "description": payment.brand.description,
        },
    }


def agent_view(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "reference_id": payment.reference_id,
        "customer_name": payment.customer_name,
        "customer_email": payment.customer_email,
        "customer_phone": payment.customer_phone,
        "service_name": payment.service_name,
        "amount": format_amount(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "payment_url": payment.payment_url,
        "processor_order_id": payment.processor_order_id,
        "brand_id": payment.brand_id,
        "brand_name": payment.brand.name,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "updated_at": payment.updated_at.isoformat() if payment.updated_at else None,
    }


class PaymentLifecycle:
    def __init__(self, store: PaymentStore, gateway: ProcessorGateway, settings: Settings,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Link creation
    # ------------------------------------------------------------------

    def create_link(self, data: PaymentLinkCreate) -> Dict[str, Any]:
        """
        Create a payment record and its processor order.

        The record is written first as the durable anchor. If the processor
        cannot open an order the record is deleted again, so no payment ever
        survives without an order.
        """
        missing = [name for name in REQUIRED_LINK_FIELDS if _blank(getattr(data, name))]
        if missing:
            logger.warning("payment_link_missing_fields", missing=missing)
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                {"missing": missing},
            )

        amount = self._parse_amount(data.amount)
        currency = normalize_currency(data.currency or self.settings.default_currency)
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code", {"currency": currency})

        brand = self.store.get_brand(data.brand_id)
        if brand is None:
            logger.warning("payment_link_unknown_brand", brand_id=data.brand_id)
            raise NotFoundError("Brand not found", {"brand_id": data.brand_id})

        reference_id = str(uuid.uuid4())
        log = logger.bind(reference_id=reference_id)

        payment = self.store.create(
            reference_id=reference_id,
            brand_id=brand.id,
            customer_name=data.customer_name.strip(),
            customer_email=data.customer_email.strip(),
            customer_phone=_clean(data.customer_phone),
            service_name=data.service_name.strip(),
            service_description=_clean(data.service_description),
            amount=amount,
            currency=currency,
            payment_url=f"{self.settings.frontend_url.rstrip('/')}/pay/{reference_id}",
            status=S.PENDING.value,
        )
        log.info("payment_record_created", brand_id=brand.id, amount=format_amount(amount),
                 currency=currency)

        try:
            order = self.gateway.create_order(OrderRequest.from_payment(payment))
        except (ProcessorError, ConflictError) as exc:
            log.error("processor_order_failed", error=exc.message, details=exc.details)
            self._rollback(reference_id)
            raise ProcessorError(
                "Payment order could not be created with the processor",
                {"reason": exc.message},
            ) from exc
        except Exception:
            log.exception("processor_order_crashed")
            self._rollback(reference_id)
            raise

        if not self.store.attach_order(reference_id, order.order_id, only_if_unset=True):
            # The unattached order is never approved and expires on the processor side
            log.error("processor_order_attach_failed", order_id=order.order_id)
            self._rollback(reference_id)
            raise ConflictError("Payment record changed while its order was created",
                                {"reference_id": reference_id})

        log.info("payment_link_created", order_id=order.order_id)
        return {
            "reference_id": reference_id,
            "payment_url": payment.payment_url,
            "amount": format_amount(amount),
            "currency": currency,
            "brand_name": brand.name,
            "processor_order_id": order.order_id,
            "status": S.PENDING.value,
        }

    def _parse_amount(self, value: Any) -> Decimal:
        try:
            amount = Decimal(format_amount(value))
        except (InvalidOperation, ValueError):
            raise ValidationError("Amount must be a decimal number", {"amount": str(value)})
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be greater than zero", {"amount": str(value)})
        return amount

    def _rollback(self, reference_id: str) -> None:
        self.store.delete(reference_id)
        logger.info("payment_record_rolled_back", reference_id=reference_id)

    # ------------------------------------------------------------------
    # Customer-facing flow
    # ------------------------------------------------------------------

    def get_public(self, reference_id: str) -> Dict[str, Any]:
        payment = self._require(reference_id)
        if self._expire_if_stale(payment) or payment.status == S.EXPIRED:
            raise ExpiredError(
                "Payment link has expired",
                {"reference_id": reference_id, "status": S.EXPIRED.value},
            )
        return public_view(payment)

    def initialize_checkout(self, reference_id: str) -> Dict[str, Any]:
        """
        Return an approval link for the payment, reusing the existing order
        when the processor still accepts approval for it.

        Safe to call repeatedly; a stale order is abandoned (it expires on the
        processor side) and replaced. An approved or paid order is settled
        instead, and the checkout is refused.
        """
        payment = self._require(reference_id)
        log = logger.bind(reference_id=reference_id)

        if self._expire_if_stale(payment):
            raise ExpiredError("Payment link has expired",
                               {"reference_id": reference_id, "status": S.EXPIRED.value})
        if payment.status not in CHECKOUT_READY:
            raise ConflictError(
                f"Payment is {payment.status} and cannot be checked out",
                {"reference_id": reference_id, "status": payment.status},
            )

        current_order_id = payment.processor_order_id
        order = None
        if current_order_id:
            try:
                existing = self.gateway.fetch_order(current_order_id)
            except (ProcessorError, ConflictError) as exc:
                log.warning("processor_order_lookup_failed", order_id=current_order_id,
                            error=exc.message)
            else:
                if existing.status in SETTLED_ORDER_STATES:
                    self._settle_existing_order(payment, existing, log)
                elif existing.approval_url and existing.status in RESUMABLE_ORDER_STATES:
                    order = existing
                    log.info("processor_order_reused", order_id=current_order_id)
                else:
                    log.info("processor_order_not_resumable", order_id=current_order_id,
                             status=existing.status)

        if order is None:
            order = self.gateway.create_order(
                OrderRequest.from_payment(payment),
                request_id=f"{reference_id}-{uuid.uuid4().hex[:12]}",
            )
            if not order.approval_url:
                raise ProcessorError("Processor did not return an approval link",
                                     {"order_id": order.order_id})
            log.info("processor_order_replaced", old_order_id=current_order_id,
                     order_id=order.order_id)

        if order.order_id == current_order_id:
            moved = self.store.transition(reference_id, CHECKOUT_READY, S.PROCESSING)
        else:
            moved = self.store.attach_order(reference_id, order.order_id,
                                            to_status=S.PROCESSING,
                                            from_statuses=CHECKOUT_READY)
        if not moved:
            raise ConflictError(
                "Payment changed state during checkout",
                {"reference_id": reference_id, "status": payment.status},
            )

        return {"order_id": order.order_id, "approval_url": order.approval_url}

    def _settle_existing_order(self, payment: Payment, order: OrderResult, log) -> None:
        """
        The customer already approved or paid the current order. It must not be
        replaced: capture it if needed, then refuse the checkout.
        """
        reference_id = payment.reference_id
        if order.status == "COMPLETED":
            if self.store.transition(reference_id, CAPTURABLE, S.COMPLETED):
                log.info("payment_completed_from_order_state", order_id=order.order_id)
        else:
            log.info("processor_order_already_approved", order_id=order.order_id)
            self.finalize_return(reference_id)

        payment = self._require(reference_id)
        raise ConflictError(
            f"Payment is {payment.status} and cannot be checked out",
            {"reference_id": reference_id, "status": payment.status,
             "order_status": order.status},
        )

    def finalize_return(self, reference_id: str, token: Optional[str] = None) -> Payment:
        """
        Capture the order after the customer comes back from approval.

        Capture failures are logged and swallowed: the customer already
        approved, and a webhook may still complete the payment.
        """
        payment = self._require(reference_id)
        order_id = payment.processor_order_id
        log = logger.bind(reference_id=reference_id, order_id=order_id)

        if not order_id:
            log.warning("return_without_order")
            raise NotFoundError("Payment has no processor order", {"reference_id": reference_id})
        if token and token != order_id:
            log.warning("return_token_mismatch", token=token)

        if payment.status == S.COMPLETED:
            log.info("payment_already_completed")
            return payment
        if payment.status not in CAPTURABLE:
            log.warning("payment_not_capturable", status=payment.status)
            return payment

        try:
            capture = self.gateway.capture_order(order_id)
        except (ProcessorError, ConflictError) as exc:
            log.error("capture_failed", error=exc.message, details=exc.details)
            # A webhook may have completed it in the meantime
            return self._require(reference_id)

        if capture.status != "COMPLETED":
            # Pending captures are settled later by PAYMENT.CAPTURE.* webhooks
            log.info("capture_not_final", capture_id=capture.capture_id, status=capture.status)
            return self._require(reference_id)

        if self.store.transition(reference_id, CAPTURABLE, S.COMPLETED):
            log.info("payment_completed", capture_id=capture.capture_id)
        else:
            log.info("payment_completion_skipped", status=payment.status)
        return payment

    def cancel(self, reference_id: str) -> Payment:
        payment = self._require(reference_id)
        if self.store.transition(reference_id, CANCELLABLE, S.CANCELLED):
            logger.info("payment_cancelled", reference_id=reference_id)
        else:
            logger.warning("payment_cancel_ignored", reference_id=reference_id,
                           status=payment.status)
        return payment

    # ------------------------------------------------------------------
    # Agent-facing
    # ------------------------------------------------------------------

    def list_payments(self, brand_id: Optional[int] = None, status: Optional[str] = None,
                      limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        if status is not None and status not in {s.value for s in PaymentStatus}:
            raise ValidationError("Invalid status filter", {"status": status})

        payments, total = self.store.list_payments(brand_id=brand_id, status=status,
                                                   limit=limit, offset=offset)
        logger.info("payments_listed", count=len(payments), total=total)
        return {
            "count": len(payments),
            "total": total,
            "payments": [agent_view(p) for p in payments],
        }

    def update_status(self, reference_id: str, status: str) -> Dict[str, Any]:
        """
        Administrative override. Any status may be forced, except that a
        refund is only recorded for a completed payment.
        """
        try:
            target = PaymentStatus(status)
        except ValueError:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(s.value for s in PaymentStatus)}",
                {"status": status},
            )

        payment = self._require(reference_id)
        previous = payment.status

        if target == S.REFUNDED:
            if previous != S.REFUNDED and not self.store.transition(
                    reference_id, {S.COMPLETED}, S.REFUNDED):
                raise ConflictError(
                    "Only completed payments can be refunded",
                    {"reference_id": reference_id, "status": payment.status},
                )
        else:
            self.store.set_status(reference_id, target)

        logger.info("payment_status_overridden", reference_id=reference_id,
                    from_status=previous, to_status=target.value)
        return {"reference_id": reference_id, "status": payment.status}

    # ------------------------------------------------------------------

    def _require(self, reference_id: str) -> Payment:
        payment = self.store.get(reference_id)
        if payment is None:
            logger.warning("payment_not_found", reference_id=reference_id)
            raise NotFoundError("Payment not found", {"reference_id": reference_id})
        return payment

    def _expire_if_stale(self, payment: Payment) -> bool:
        """Lazily move an old pending payment to expired. True if it is now expired."""
        if payment.status != S.PENDING:
            return False

        age = self.clock() - as_utc(payment.created_at)
        if age <= timedelta(hours=self.settings.payment_expiry_hours):
            return False

        if self.store.transition(payment.reference_id, {S.PENDING}, S.EXPIRED):
            logger.info("payment_expired", reference_id=payment.reference_id,
                        age_hours=round(age.total_seconds() / 3600, 2))
        # Reloaded after the commit; a concurrent checkout may have won
        return payment.status == S.EXPIRED
