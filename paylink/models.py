from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from paylink.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"


class ContactStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    CLOSED = "closed"


def _in_check(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class Brand(Base):
    __tablename__ = "brands"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    logo_url = Column(String)
    description = Column(Text)
    email = Column(String)                         # lead notification address
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payments = relationship("Payment", back_populates="brand", passive_deletes="all")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    reference_id = Column(String, nullable=False, unique=True, index=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="RESTRICT"), nullable=False, index=True)

    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String)
    service_name = Column(String, nullable=False)
    service_description = Column(Text)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    payment_url = Column(String, nullable=False)

    processor_order_id = Column(String, unique=True, index=True)   # PayPal order id
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    brand = relationship("Brand", back_populates="payments")

    __table_args__ = (
        CheckConstraint(_in_check("status", PaymentStatus), name="payment_status_check"),
        CheckConstraint("amount > 0", name="payment_amount_positive"),
    )


class ContactRequest(Base):
    __tablename__ = "contact_requests"

    id = Column(Integer, primary_key=True)
    brand_id = Column(Integer, ForeignKey("brands.id", ondelete="RESTRICT"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    country = Column(String)
    budget = Column(String)
    services = Column(String)
    timeline = Column(String)
    status = Column(String, nullable=False, default=ContactStatus.NEW.value, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    brand = relationship("Brand")

    __table_args__ = (
        CheckConstraint(_in_check("status", ContactStatus), name="contact_status_check"),
    )


class WebhookEvent(Base):
    """Processor events already handled; lets redeliveries be skipped."""

    __tablename__ = "webhook_events"

    event_id = Column(String, primary_key=True)     # processor's event id
    event_type = Column(String, nullable=False)
    order_id = Column(String, index=True)
    outcome = Column(String, nullable=False)        # applied | noop | unmatched | ignored
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
