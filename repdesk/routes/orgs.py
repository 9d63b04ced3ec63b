import secrets
from datetime import datetime, timezone
from typing import Any
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import Org, ApiKey
from ..security.rbac import get_current_org_id
from ..security.auth import hash_api_key
from ..schemas import OrgOut, ApiKeyCreate, ApiKeyOut

router = APIRouter(prefix="/orgs", tags=["orgs"])

@router.get("/me", response_model=OrgOut)
def get_current_org(
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    """Return the organization the request is scoped to."""
    org = db.get(Org, org_id)
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org

@router.get("/api-keys", response_model=list[ApiKeyOut])
def list_api_keys(
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
):
    return db.query(ApiKey).filter(ApiKey.org_id == org_id).order_by(ApiKey.id.asc()).all()

@router.post("/api-keys")
def create_api_key(
    payload: ApiKeyCreate,
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
) -> dict[str, Any]:
    """Issues an X-API-Key for automation. The raw key is only shown once."""
    raw_key = f"rd_{secrets.token_urlsafe(32)}"
    key = ApiKey(org_id=org_id, name=payload.name, key_hash=hash_api_key(raw_key))
    db.add(key)
    db.commit()
    db.refresh(key)
    return {"id": key.id, "name": key.name, "api_key": raw_key}

@router.delete("/api-keys/{key_id}")
def revoke_api_key(
    key_id: int,
    db: Session = Depends(get_db),
    org_id: int = Depends(get_current_org_id)
) -> dict[str, Any]:
    key = db.query(ApiKey).filter(ApiKey.id == key_id, ApiKey.org_id == org_id).first()
    if not key:
        raise HTTPException(status_code=404, detail="API key not found")
    if not key.revoked_at:
        key.revoked_at = datetime.now(timezone.utc)
        db.commit()
    return {"ok": True}
