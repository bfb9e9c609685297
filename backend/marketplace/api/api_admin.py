import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import models
from ..database import get_db
from ..schemas import DisputeResponse, TaxConfigCreate, TaxConfigResponse
from ..services import escrow
from ..services.dashboard import build_dashboard
from ..services.pricing import load_pricing_config
from .dependencies import get_current_admin

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])


@router.get("/tax")
def get_tax_config(
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_admin),
):
    config = load_pricing_config(db)
    return {
        "success": True,
        "data": TaxConfigResponse.model_validate(config).model_dump(by_alias=True, mode="json"),
    }


@router.post("/tax", status_code=status.HTTP_201_CREATED)
def set_tax_config(
    payload: TaxConfigCreate,
    db: Session = Depends(get_db),
    admin: models.User = Depends(get_current_admin),
):
    """Append a new tax/fee configuration. Existing appointments keep their snapshot."""
    row = models.TaxConfig(
        tax_percentage=payload.tax_percentage,
        platform_fee_percentage=payload.platform_fee_percentage,
        created_by_id=admin.id,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(
        "Admin %s set tax=%s%% fee=%s%%",
        admin.id,
        row.tax_percentage,
        row.platform_fee_percentage,
    )
    config = load_pricing_config(db)
    return {
        "success": True,
        "message": "Tax configuration updated",
        "data": TaxConfigResponse.model_validate(config).model_dump(by_alias=True, mode="json"),
    }


@router.get("/dashboard")
def get_dashboard(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_admin),
):
    return {"success": True, "data": build_dashboard(db, days=days)}


@router.get("/disputes")
def list_disputes(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    _: models.User = Depends(get_current_admin),
):
    """List disputes newest first, optionally filtered by status."""
    items, total = escrow.list_disputes(db, status_filter, page, limit)
    return {
        "success": True,
        "data": [
            DisputeResponse.model_validate(d).model_dump(by_alias=True, mode="json") for d in items
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }
