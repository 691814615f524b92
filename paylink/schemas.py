from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class PaymentLinkCreate(BaseModel):
    # Presence is checked by PaymentLifecycle so every missing field is reported at once
    brand_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    service_name: Optional[str] = None
    service_description: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    status: str


class BrandIn(BaseModel):
    name: str
    logo_url: Optional[str] = None
    description: Optional[str] = None
    email: Optional[str] = None


class ContactRequestCreate(BaseModel):
    brand_id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None
    country: Optional[str] = None
    budget: Optional[str] = None
    services: Optional[str] = None
    timeline: Optional[str] = None


class ContactStatusUpdate(BaseModel):
    status: str
