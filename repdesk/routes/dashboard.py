from typing import Any
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import BusinessLocation
from ..security.rbac import get_location
from ..services.metrics import overview

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

@router.get("/metrics")
def dashboard_metrics(
    days: int = Query(default=30, ge=1, le=365),
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    return overview(db, location, days)
