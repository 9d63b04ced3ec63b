import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode, urljoin, urlsplit

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..logging_setup import log_event
from ..models import BusinessLocation, ConnectedAccount, InstagramConnection, OAuthState, User
from ..schemas import FacebookTokenIn, GBPLocationSelect, InstagramTokenIn
from ..security.auth import require_user
from ..security.rbac import get_current_org_id, get_location, load_location
from ..services import gbp, instagram_graph
from ..services.timestamps import as_utc

router = APIRouter(prefix="/integrations", tags=["integrations"])

STATE_TTL = timedelta(minutes=10)
FACEBOOK_PROVIDER = "facebook"

def _iso(value) -> str | None:
    return value.isoformat() if value else None

def _default_return_to() -> str:
    return f"{settings.public_base_url.rstrip('/')}/settings/integrations"

def _safe_return_to(value: str | None) -> str:
    """Only same-origin destinations; anything else falls back to the integrations page."""
    if not value:
        return _default_return_to()
    base = settings.public_base_url.rstrip("/")
    if value.startswith("/") and not value.startswith("//") and "\\" not in value:
        return urljoin(base + "/", value)
    target, origin = urlsplit(value), urlsplit(base)
    if target.scheme in ("http", "https") and (target.scheme, target.netloc) == (origin.scheme, origin.netloc):
        return value
    return _default_return_to()

def _with_params(url: str, **params) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"

def _issue_state(db: Session, provider: str, location: BusinessLocation, user: User, return_to: str | None) -> str:
    state = secrets.token_urlsafe(32)
    db.add(OAuthState(
        state=state,
        provider=provider,
        business_location_id=location.id,
        user_id=user.id,
        return_to=return_to,
        expires_at=datetime.now(timezone.utc) + STATE_TTL,
    ))
    db.commit()
    return state

def _consume_state(db: Session, provider: str, state: str | None) -> dict[str, Any]:
    """Single use: the row is deleted whether or not it is still valid."""
    if not state:
        raise HTTPException(status_code=400, detail="Missing OAuth state")
    row = db.get(OAuthState, state)
    if not row or row.provider != provider:
        raise HTTPException(status_code=400, detail="Invalid OAuth state")
    snapshot = {
        "business_location_id": row.business_location_id,
        "user_id": row.user_id,
        "return_to": row.return_to,
    }
    expired = as_utc(row.expires_at) < datetime.now(timezone.utc)
    db.delete(row)
    db.commit()
    if expired:
        raise HTTPException(status_code=400, detail="OAuth state expired, please try again")
    return snapshot

def _upsert_connected_account(db: Session, location_id: int, provider: str, **fields) -> ConnectedAccount:
    account = db.query(ConnectedAccount).filter(
        ConnectedAccount.business_location_id == location_id,
        ConnectedAccount.provider == provider,
    ).first()
    if not account:
        account = ConnectedAccount(business_location_id=location_id, provider=provider)
        db.add(account)
    for k, v in fields.items():
        setattr(account, k, v)
    account.status = "connected"
    db.commit()
    db.refresh(account)
    return account

def _upsert_instagram_connection(db: Session, location_id: int, **fields) -> InstagramConnection:
    connection = db.query(InstagramConnection).filter(InstagramConnection.business_location_id == location_id).first()
    if not connection:
        connection = InstagramConnection(business_location_id=location_id)
        db.add(connection)
    for k, v in fields.items():
        setattr(connection, k, v)
    db.commit()
    db.refresh(connection)
    return connection

# --- summary ----------------------------------------------------------------

@router.get("")
def integrations_summary(location: BusinessLocation = Depends(get_location)) -> dict[str, Any]:
    """Which channels a location has connected."""
    accounts = {a.provider: a for a in location.connected_accounts}
    connection = location.instagram_connection
    google = accounts.get(gbp.PROVIDER)
    facebook = accounts.get(FACEBOOK_PROVIDER)
    return {
        "location_id": location.id,
        "instagram": {
            "connected": connection is not None,
            "username": connection.instagram_username if connection else None,
        },
        "google_gbp": {
            "connected": bool(google and google.status == "connected"),
            "account_name": google.account_name if google else None,
            "location_selected": bool(location.google_location_name),
        },
        "facebook": {
            "connected": bool(facebook and facebook.status == "connected"),
            "page_name": facebook.display_name if facebook else None,
        },
    }

# --- instagram --------------------------------------------------------------

@router.get("/instagram/connect")
def instagram_connect(
    return_to: str | None = Query(default=None),
    location: BusinessLocation = Depends(get_location),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    state = _issue_state(db, "instagram", location, user, return_to)
    url = instagram_graph.build_authorization_url(state)
    log_event("instagram_oauth_start", business_location_id=location.id)
    return RedirectResponse(url, status_code=302)

@router.get("/instagram/callback")
def instagram_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    row = _consume_state(db, "instagram", state)
    return_to = _safe_return_to(row["return_to"])
    if error or not code:
        log_event("instagram_oauth_denied", level="warning", business_location_id=row["business_location_id"], error=error)
        return RedirectResponse(_with_params(return_to, instagram="error", reason=error or "missing_code"), status_code=302)

    short = instagram_graph.exchange_code(code)
    long_lived = instagram_graph.exchange_long_lived_token(short["access_token"])
    me = instagram_graph.get_me(long_lived["access_token"])

    ig_user_id = str(me.get("user_id") or short.get("user_id") or "")
    if not ig_user_id:
        raise HTTPException(status_code=502, detail="Instagram did not return a user id")

    scopes = short.get("permissions") or instagram_graph.REQUIRED_SCOPES
    _upsert_instagram_connection(
        db,
        row["business_location_id"],
        instagram_user_id=ig_user_id,
        instagram_username=me.get("username"),
        access_token=long_lived["access_token"],
        token_expires_at=long_lived["expires_at"],
        scopes=scopes.split(",") if isinstance(scopes, str) else scopes,
        connected_at=datetime.now(timezone.utc),
    )
    log_event("instagram_connected", business_location_id=row["business_location_id"], ig_user_id=ig_user_id)
    return RedirectResponse(_with_params(return_to, instagram="connected"), status_code=302)

@router.post("/instagram/token")
def instagram_attach_token(
    payload: InstagramTokenIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Attaches an existing long-lived token without going through OAuth."""
    location = load_location(db, org_id, payload.location_id)
    ig_user_id = payload.instagram_user_id
    username = payload.instagram_username
    if not ig_user_id:
        me = instagram_graph.get_me(payload.access_token)
        ig_user_id = str(me.get("user_id") or me.get("id"))
        username = username or me.get("username")

    connection = _upsert_instagram_connection(
        db,
        location.id,
        instagram_user_id=ig_user_id,
        instagram_username=username,
        access_token=payload.access_token,
        token_expires_at=payload.token_expires_at,
        connected_at=datetime.now(timezone.utc),
    )
    log_event("instagram_connected", business_location_id=location.id, ig_user_id=ig_user_id, manual=True)
    return {"ok": True, "instagram_user_id": connection.instagram_user_id, "instagram_username": connection.instagram_username}

@router.get("/instagram/status")
def instagram_status(location: BusinessLocation = Depends(get_location)) -> dict[str, Any]:
    connection = location.instagram_connection
    if not connection:
        return {"connected": False}
    expires_at = as_utc(connection.token_expires_at)
    return {
        "connected": True,
        "instagram_user_id": connection.instagram_user_id,
        "instagram_username": connection.instagram_username,
        "token_expires_at": _iso(expires_at),
        "token_expired": bool(expires_at and expires_at < datetime.now(timezone.utc)),
        "scopes": connection.scopes,
        "connected_at": _iso(connection.connected_at),
    }

@router.post("/instagram/disconnect")
def instagram_disconnect(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    connection = location.instagram_connection
    if connection:
        db.delete(connection)
        db.commit()
        log_event("instagram_disconnected", business_location_id=location.id)
    return {"ok": True}

# --- google business profile -------------------------------------------------

@router.get("/gbp/connect")
def gbp_connect(
    return_to: str | None = Query(default=None),
    location: BusinessLocation = Depends(get_location),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
):
    state = _issue_state(db, gbp.PROVIDER, location, user, return_to)
    url = gbp.build_authorization_url(state)
    log_event("gbp_oauth_start", business_location_id=location.id)
    return RedirectResponse(url, status_code=302)

@router.get("/gbp/callback")
def gbp_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    row = _consume_state(db, gbp.PROVIDER, state)
    return_to = _safe_return_to(row["return_to"])
    if error or not code:
        log_event("gbp_oauth_denied", level="warning", business_location_id=row["business_location_id"], error=error)
        return RedirectResponse(_with_params(return_to, gbp="error", reason=error or "missing_code"), status_code=302)

    token = gbp.exchange_code(code)
    if not token.get("refresh_token"):
        log_event("gbp_oauth_no_refresh_token", level="warning", business_location_id=row["business_location_id"])

    accounts = gbp.list_accounts(token["access_token"])
    primary = accounts[0] if accounts else {}
    scope = token.get("scope") or ""

    _upsert_connected_account(
        db,
        row["business_location_id"],
        gbp.PROVIDER,
        user_id=row["user_id"],
        provider_account_id=(primary.get("name") or "").split("/")[-1] or None,
        account_name=primary.get("name"),
        display_name=primary.get("accountName"),
        access_token=token["access_token"],
        refresh_token=token.get("refresh_token"),
        expires_at=gbp.token_expiry(token),
        scopes=scope.split() if isinstance(scope, str) else scope,
    )
    log_event("gbp_connected", business_location_id=row["business_location_id"], account_name=primary.get("name"))
    return RedirectResponse(_with_params(return_to, gbp="connected"), status_code=302)

@router.get("/gbp/locations")
def gbp_locations(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    account = gbp.find_connected_account(db, location.id)
    if not account:
        raise HTTPException(status_code=404, detail="Google Business Profile is not connected")
    if not account.account_name:
        raise HTTPException(status_code=400, detail="No Google Business account found for this connection")

    token = gbp.get_valid_access_token(db, account)
    items = []
    for loc in gbp.list_locations(token, account.account_name):
        address = loc.get("storefrontAddress") or {}
        items.append({
            "name": loc.get("name"),
            "title": loc.get("title"),
            "address": ", ".join((address.get("addressLines") or []) + [address.get("locality") or ""]).strip(", ") or None,
            "primary_category": ((loc.get("categories") or {}).get("primaryCategory") or {}).get("displayName"),
            "website": loc.get("websiteUri"),
            "place_id": (loc.get("metadata") or {}).get("placeId"),
        })
    return {"account_name": account.account_name, "locations": items}

@router.post("/gbp/select-location")
def gbp_select_location(
    payload: GBPLocationSelect,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    location = load_location(db, org_id, payload.location_id)
    account = gbp.find_connected_account(db, location.id)
    if not account:
        raise HTTPException(status_code=404, detail="Google Business Profile is not connected")

    # Reviews live under accounts/{a}/locations/{l}
    name = gbp.reviews_path(payload.google_location_name, account.account_name)
    location.google_location_name = name
    db.commit()
    log_event("gbp_location_selected", business_location_id=location.id, google_location_name=name)
    return {"ok": True, "google_location_name": name}

@router.post("/gbp/disconnect")
def gbp_disconnect(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    account = db.query(ConnectedAccount).filter(
        ConnectedAccount.business_location_id == location.id,
        ConnectedAccount.provider == gbp.PROVIDER,
    ).first()
    if account:
        db.delete(account)
        location.google_location_name = None
        db.commit()
        log_event("gbp_disconnected", business_location_id=location.id)
    return {"ok": True}

# --- facebook ---------------------------------------------------------------

@router.post("/facebook/token")
def facebook_attach_token(
    payload: FacebookTokenIn,
    org_id: int = Depends(get_current_org_id),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    location = load_location(db, org_id, payload.location_id)
    account = _upsert_connected_account(
        db,
        location.id,
        FACEBOOK_PROVIDER,
        user_id=user.id,
        provider_account_id=payload.page_id,
        display_name=payload.page_name,
        access_token=payload.access_token,
        expires_at=payload.expires_at,
    )
    log_event("facebook_connected", business_location_id=location.id, page_id=payload.page_id)
    return {"ok": True, "page_id": account.provider_account_id, "page_name": account.display_name}

@router.post("/facebook/disconnect")
def facebook_disconnect(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    account = db.query(ConnectedAccount).filter(
        ConnectedAccount.business_location_id == location.id,
        ConnectedAccount.provider == FACEBOOK_PROVIDER,
    ).first()
    if account:
        db.delete(account)
        db.commit()
        log_event("facebook_disconnected", business_location_id=location.id)
    return {"ok": True}
