# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

from fastapi import Request, HTTPException, Depends, Header, Query, status
from sqlalchemy.orm import Session
from repdesk.db import get_db
from repdesk.models import User, OrgMember, Org, BusinessLocation
from repdesk.security.auth import require_user

def get_current_org_id(
    request: Request,
    user: User = Depends(require_user),
    org_id: str | None = Header(default=None, alias="X-Org-Id"),
    db: Session = Depends(get_db)
) -> int:
    """
    Returns the org_id the request is authorized for based on user membership and scoping.
    """
    # 1. An API key already pins the org
    if hasattr(request.state, "api_key_org_id"):
        return request.state.api_key_org_id

    # 2. Explicitly requested org
    target_org_id = None
    if org_id:
        try:
            target_org_id = int(org_id)
        except ValueError:
            pass

    if target_org_id:
        if user.is_superadmin:
            return target_org_id

        membership = db.query(OrgMember).filter(
            OrgMember.user_id == user.id,
            OrgMember.org_id == target_org_id
        ).first()

        if membership:
            return target_org_id
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this organization"
        )

    # 3. Default: the first org the user belongs to
    if user.is_superadmin:
        first_org = db.query(Org).order_by(Org.id.asc()).first()
        if first_org:
            return first_org.id
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No organizations exist in the system"
        )

    first_membership = db.query(OrgMember).filter(OrgMember.user_id == user.id).first()
    if not first_membership:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not belong to any organizations"
        )

    return first_membership.org_id

def load_location(db: Session, org_id: int, location_id: int) -> BusinessLocation:
    location = db.query(BusinessLocation).filter(
        BusinessLocation.id == location_id,
        BusinessLocation.org_id == org_id
    ).first()
    if not location:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Business location not found")
    return location

def get_location(
    location_id: int = Query(...),
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
) -> BusinessLocation:
    """Resolves ?location_id= inside the caller's org. Locations of other orgs look missing."""
    return load_location(db, org_id, location_id)
