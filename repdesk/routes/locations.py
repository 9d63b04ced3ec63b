from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import BusinessLocation
from ..security.rbac import get_current_org_id, load_location
from ..schemas import LocationCreate, LocationUpdate, LocationOut
from ..logging_setup import log_event

router = APIRouter(prefix="/locations", tags=["locations"])

@router.get("", response_model=list[LocationOut])
def list_locations(
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    return db.query(BusinessLocation).filter(BusinessLocation.org_id == org_id).order_by(BusinessLocation.id.asc()).all()

@router.get("/primary", response_model=LocationOut)
def get_primary_location(
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    """The org's first-created location, which dashboards open on by default."""
    location = db.query(BusinessLocation).filter(BusinessLocation.org_id == org_id).order_by(BusinessLocation.id.asc()).first()
    if not location:
        raise HTTPException(status_code=404, detail="No business locations yet")
    return location

@router.post("", response_model=LocationOut)
def create_location(
    payload: LocationCreate,
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    location = BusinessLocation(org_id=org_id, **payload.model_dump())
    db.add(location)
    db.commit()
    db.refresh(location)
    log_event("location_created", org_id=org_id, business_location_id=location.id)
    return location

@router.get("/{location_id}", response_model=LocationOut)
def get_location(
    location_id: int,
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    return load_location(db, org_id, location_id)

@router.patch("/{location_id}", response_model=LocationOut)
def update_location(
    location_id: int,
    payload: LocationUpdate,
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    location = load_location(db, org_id, location_id)
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(location, k, v)
    db.commit()
    db.refresh(location)
    return location

@router.delete("/{location_id}")
def delete_location(
    location_id: int,
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    location = load_location(db, org_id, location_id)
    db.delete(location)
    db.commit()
    log_event("location_deleted", org_id=org_id, business_location_id=location_id)
    return {"ok": True}
