import math
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from paylink.auth import verify_token
from paylink.database import get_db
from paylink.errors import NotFoundError, ValidationError
from paylink.models import Brand, ContactRequest, ContactStatus
from paylink.schemas import ContactRequestCreate, ContactStatusUpdate

logger = structlog.get_logger(__name__)

router = APIRouter()

REQUIRED_FIELDS = ("name", "email", "phone", "message", "brand_id")


def contact_to_dict(contact: ContactRequest) -> dict:
    return {
        "id": contact.id,
        "brand_id": contact.brand_id,
        "brand": {
            "id": contact.brand.id,
            "name": contact.brand.name,
            "logo_url": contact.brand.logo_url,
        },
        "name": contact.name,
        "email": contact.email,
        "phone": contact.phone,
        "message": contact.message,
        "country": contact.country,
        "budget": contact.budget,
        "services": contact.services,
        "timeline": contact.timeline,
        "status": contact.status,
        "created_at": contact.created_at.isoformat() if contact.created_at else None,
    }


def _validate_status(status: str) -> str:
    valid = [s.value for s in ContactStatus]
    if status not in valid:
        raise ValidationError(f"Status must be one of: {', '.join(valid)}", {"status": status})
    return status


def _get_or_404(db: Session, contact_id: int) -> ContactRequest:
    contact = db.get(ContactRequest, contact_id)
    if contact is None:
        logger.warning("contact_request_not_found", contact_id=contact_id)
        raise NotFoundError("Contact request not found", {"id": contact_id})
    return contact


@router.post("", status_code=201)
def create_contact_request(request: ContactRequestCreate, db: Session = Depends(get_db)):
    missing = [f for f in REQUIRED_FIELDS
               if getattr(request, f) is None or str(getattr(request, f)).strip() == ""]
    if missing:
        logger.warning("contact_request_missing_fields", missing=missing)
        raise ValidationError(f"{', '.join(REQUIRED_FIELDS)} are required", {"missing": missing})

    brand = db.get(Brand, request.brand_id)
    if brand is None:
        logger.warning("contact_request_unknown_brand", brand_id=request.brand_id)
        raise NotFoundError("Brand not found", {"brand_id": request.brand_id})
    if not brand.email:
        logger.warning("brand_without_notification_email", brand_id=brand.id)

    contact = ContactRequest(**request.model_dump())
    db.add(contact)
    db.commit()
    db.refresh(contact)

    logger.info("contact_request_created", contact_id=contact.id, brand_id=brand.id)
    return contact_to_dict(contact)


@router.get("")
def list_contact_requests(
    brand_id: Optional[int] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    auth=Depends(verify_token),
    db: Session = Depends(get_db),
):
    query = db.query(ContactRequest)
    if brand_id is not None:
        query = query.filter(ContactRequest.brand_id == brand_id)
    if status is not None:
        query = query.filter(ContactRequest.status == _validate_status(status))

    total = query.count()
    contacts = (
        query.order_by(ContactRequest.created_at.desc(), ContactRequest.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "contact_requests": [contact_to_dict(c) for c in contacts],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/{contact_id}")
def get_contact_request(contact_id: int, auth=Depends(verify_token), db: Session = Depends(get_db)):
    return contact_to_dict(_get_or_404(db, contact_id))


@router.patch("/{contact_id}/status")
def update_contact_request_status(
    contact_id: int,
    request: ContactStatusUpdate,
    auth=Depends(verify_token),
    db: Session = Depends(get_db),
):
    status = _validate_status(request.status)
    contact = _get_or_404(db, contact_id)
    contact.status = status
    db.commit()
    db.refresh(contact)

    logger.info("contact_request_status_updated", contact_id=contact_id, status=status)
    return contact_to_dict(contact)
