import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paylink.auth import verify_token
from paylink.database import get_db
from paylink.errors import ConflictError, NotFoundError, ValidationError
from paylink.models import Brand
from paylink.schemas import BrandIn

logger = structlog.get_logger(__name__)

router = APIRouter()


def brand_to_dict(brand: Brand) -> dict:
    return {
        "id": brand.id,
        "name": brand.name,
        "logo_url": brand.logo_url,
        "description": brand.description,
        "email": brand.email,
        "created_at": brand.created_at.isoformat() if brand.created_at else None,
    }


def _save(db: Session, brand: Brand) -> Brand:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("A brand with this name already exists", {"name": brand.name})
    db.refresh(brand)
    return brand


def _get_or_404(db: Session, brand_id: int) -> Brand:
    brand = db.get(Brand, brand_id)
    if brand is None:
        logger.warning("brand_not_found", brand_id=brand_id)
        raise NotFoundError("Brand not found", {"brand_id": brand_id})
    return brand


@router.post("", status_code=201)
def create_brand(request: BrandIn, auth=Depends(verify_token), db: Session = Depends(get_db)):
    name = request.name.strip()
    if not name:
        raise ValidationError("Brand name is required")

    brand = Brand(name=name, logo_url=request.logo_url,
                  description=request.description, email=request.email)
    db.add(brand)
    _save(db, brand)

    logger.info("brand_created", brand_id=brand.id, name=brand.name)
    return brand_to_dict(brand)


@router.get("")
def list_brands(auth=Depends(verify_token), db: Session = Depends(get_db)):
    brands = db.query(Brand).order_by(Brand.name).all()
    return {"count": len(brands), "brands": [brand_to_dict(b) for b in brands]}


@router.get("/{brand_id}")
def get_brand(brand_id: int, auth=Depends(verify_token), db: Session = Depends(get_db)):
    return brand_to_dict(_get_or_404(db, brand_id))


@router.put("/{brand_id}")
def update_brand(brand_id: int, request: BrandIn, auth=Depends(verify_token),
                 db: Session = Depends(get_db)):
    name = request.name.strip()
    if not name:
        raise ValidationError("Brand name is required")

    brand = _get_or_404(db, brand_id)
    brand.name = name
    brand.logo_url = request.logo_url
    brand.description = request.description
    brand.email = request.email
    _save(db, brand)

    logger.info("brand_updated", brand_id=brand.id)
    return brand_to_dict(brand)
