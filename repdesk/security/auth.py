# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

import hashlib
from datetime import datetime, timedelta, timezone as dt_timezone
import jwt
import bcrypt
from fastapi import Request, HTTPException, Depends, status
from sqlalchemy.orm import Session
from repdesk.db import get_db
from repdesk.models import User, ApiKey, OrgMember
from repdesk.config import settings

ALGORITHM = "HS256"

def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode('utf-8')[:72], hashed_password.encode('utf-8'))
    except ValueError:
        return False

def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8')[:72], bcrypt.gensalt()).decode('utf-8')

def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()

def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(dt_timezone.utc) + (expires_delta or timedelta(days=7))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)

def _user_for_api_key(request: Request, db: Session, x_api_key: str) -> User | None:
    # Platform admin key acts as the superadmin
    if settings.admin_api_key and x_api_key == settings.admin_api_key:
        superadmin = db.query(User).filter(User.is_superadmin == True).first()
        if superadmin:
            return superadmin

    api_key_record = db.query(ApiKey).filter(
        ApiKey.key_hash == hash_api_key(x_api_key),
        ApiKey.revoked_at == None
    ).first()
    if not api_key_record:
        return None

    api_key_record.last_used_at = datetime.now(dt_timezone.utc)
    db.commit()
    request.state.api_key_org_id = api_key_record.org_id

    # Act as any member of the key's org, or the superadmin when it has none
    org_member = db.query(OrgMember).filter(OrgMember.org_id == api_key_record.org_id).first()
    if org_member:
        return db.query(User).filter(User.id == org_member.user_id).first()
    return db.query(User).filter(User.is_superadmin == True).first()

def get_current_user(
    request: Request,
    db: Session = Depends(get_db)
) -> User | None:
    # 1. HTTP-only cookie
    token = request.cookies.get("access_token")

    # 2. Bearer header
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split("Bearer ")[1]

    # 3. X-API-Key for automation
    if not token:
        x_api_key = request.headers.get("X-API-Key")
        if x_api_key:
            return _user_for_api_key(request, db, x_api_key)
        return None

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            return None
    except jwt.PyJWTError:
        return None

    user = db.query(User).filter(User.id == int(user_id)).first()
    if not user or not user.is_active:
        return None

    return user

def require_user(user: User | None = Depends(get_current_user)) -> User:
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
