"""
Payment record store.

Every write commits immediately, so no transaction is left open while the
caller talks to the processor. Status changes are compare-and-set updates
(`UPDATE ... WHERE status IN (...)`), which is what keeps concurrent return
callbacks, webhook retries and lazy expiry from overwriting each other.
"""
from typing import Iterable, List, Optional, Tuple, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from paylink.models import Brand, Payment, PaymentStatus, WebhookEvent, utcnow

StatusLike = Union[PaymentStatus, str]


def _status_value(status: StatusLike) -> str:
    return status.value if isinstance(status, PaymentStatus) else status


class PaymentStore:
    def __init__(self, db: Session):
        self.db = db

    # Brands ------------------------------------------------------------

    def get_brand(self, brand_id: int) -> Optional[Brand]:
        return self.db.get(Brand, brand_id)

    # Reads -------------------------------------------------------------

    def get(self, reference_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .options(joinedload(Payment.brand))
            .where(Payment.reference_id == reference_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.processor_order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_payments(self, brand_id: Optional[int] = None, status: Optional[StatusLike] = None,
                      limit: int = 50, offset: int = 0) -> Tuple[List[Payment], int]:
        filters = []
        if brand_id is not None:
            filters.append(Payment.brand_id == brand_id)
        if status is not None:
            filters.append(Payment.status == _status_value(status))

        total = self.db.execute(
            select(func.count()).select_from(Payment).where(*filters)
        ).scalar_one()
        payments = self.db.execute(
            select(Payment)
            .options(joinedload(Payment.brand))
            .where(*filters)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return list(payments), total

    # Writes ------------------------------------------------------------

    def create(self, **fields) -> Payment:
        payment = Payment(**fields)
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        return payment

    def delete(self, reference_id: str) -> None:
        self.db.execute(delete(Payment).where(Payment.reference_id == reference_id))
        self.db.commit()

    def attach_order(self, reference_id: str, order_id: str, *,
                     to_status: Optional[StatusLike] = None,
                     from_statuses: Optional[Iterable[StatusLike]] = None,
                     only_if_unset: bool = False) -> bool:
        """Set processor_order_id (and optionally status) if the guards still hold."""
        stmt = update(Payment).where(Payment.reference_id == reference_id)
        if only_if_unset:
            stmt = stmt.where(Payment.processor_order_id.is_(None))
        if from_statuses is not None:
            stmt = stmt.where(Payment.status.in_([_status_value(s) for s in from_statuses]))

        values = {"processor_order_id": order_id, "updated_at": utcnow()}
        if to_status is not None:
            values["status"] = _status_value(to_status)

        return self._apply(stmt.values(**values))

    def transition(self, reference_id: str, from_statuses: Iterable[StatusLike],
                   to_status: StatusLike) -> bool:
        """Move to to_status only if the current status is one of from_statuses."""
        stmt = (
            update(Payment)
            .where(
                Payment.reference_id == reference_id,
                Payment.status.in_([_status_value(s) for s in from_statuses]),
            )
            .values(status=_status_value(to_status), updated_at=utcnow())
        )
        return self._apply(stmt)

    def set_status(self, reference_id: str, status: StatusLike) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.reference_id == reference_id)
            .values(status=_status_value(status), updated_at=utcnow())
        )
        return self._apply(stmt)

    def _apply(self, stmt) -> bool:
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        self.db.commit()
        return result.rowcount == 1

    # Webhook events ----------------------------------------------------

    def event_seen(self, event_id: str) -> bool:
        return self.db.get(WebhookEvent, event_id) is not None

    def record_event(self, event_id: str, event_type: str, order_id: Optional[str],
                     outcome: str) -> bool:
        """Returns False when another delivery of the same event got there first."""
        self.db.add(WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            order_id=order_id,
            outcome=outcome,
        ))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True
