# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

"""
Google Business Profile client.

The GBP connection uses its own OAuth client with the business.manage scope,
separate from any Google login. Access tokens are refreshed through Authlib
when they are within five minutes of expiry and the new token is persisted.
"""

import requests
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from sqlalchemy.orm import Session

from ..config import settings
from ..logging_setup import log_event
from ..models import BusinessLocation, ConnectedAccount

PROVIDER = "google_gbp"

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

ACCOUNTS_API = "https://mybusinessaccountmanagement.googleapis.com/v1"
BUSINESS_INFO_API = "https://mybusinessbusinessinformation.googleapis.com/v1"
REVIEWS_API = "https://mybusiness.googleapis.com/v4"

REQUIRED_SCOPES = [
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/business.manage",
]

REFRESH_BUFFER = timedelta(minutes=5)

STAR_RATINGS = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}

class GBPAPIError(Exception):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status

class GBPAuthError(GBPAPIError):
    """The connection can no longer produce a valid token; the user must reconnect."""

class GBPSetupError(GBPAuthError):
    """Not connected, not configured, or the OAuth code was rejected. Carries its own status."""

def redirect_uri() -> str:
    return settings.gbp_redirect_uri or f"{settings.public_base_url.rstrip('/')}/integrations/gbp/callback"

def oauth_session() -> OAuth2Session:
    if not settings.gbp_client_id or not settings.gbp_client_secret:
        raise GBPSetupError("GBP_CLIENT_ID / GBP_CLIENT_SECRET are not configured", status=500)
    return OAuth2Session(
        settings.gbp_client_id,
        settings.gbp_client_secret,
        scope=" ".join(REQUIRED_SCOPES),
        redirect_uri=redirect_uri(),
    )

def build_authorization_url(state: str) -> str:
    # offline + consent so Google always hands back a refresh token
    url, _ = oauth_session().create_authorization_url(
        AUTHORIZE_URL, state=state, access_type="offline", prompt="consent", include_granted_scopes="true"
    )
    return url

def exchange_code(code: str) -> dict[str, Any]:
    try:
        token = oauth_session().fetch_token(TOKEN_URL, code=code, grant_type="authorization_code")
    except (OAuthError, requests.RequestException) as e:
        raise GBPSetupError(f"Google token exchange failed: {e}", status=400)
    return dict(token)

def token_expiry(token: dict[str, Any]) -> datetime | None:
    if token.get("expires_at"):
        return datetime.fromtimestamp(float(token["expires_at"]), tz=timezone.utc)
    if token.get("expires_in"):
        return datetime.now(timezone.utc) + timedelta(seconds=int(token["expires_in"]))
    return None

def find_connected_account(db: Session, business_location_id: int) -> ConnectedAccount | None:
    return db.query(ConnectedAccount).filter(
        ConnectedAccount.business_location_id == business_location_id,
        ConnectedAccount.provider == PROVIDER,
        ConnectedAccount.status == "connected",
    ).first()

def get_valid_access_token(db: Session, account: ConnectedAccount) -> str:
    if not account.access_token:
        raise GBPAuthError("No GBP tokens found. Please reconnect your Google Business Profile.", status=401)

    expires_at = account.expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)

    if expires_at is None or expires_at - datetime.now(timezone.utc) > REFRESH_BUFFER:
        return account.access_token

    if not account.refresh_token:
        raise GBPAuthError("Access token expired and no refresh token available. Please reconnect.", status=401)

    log_event("gbp_token_refresh_start", business_location_id=account.business_location_id)
    try:
        token = oauth_session().refresh_token(TOKEN_URL, refresh_token=account.refresh_token)
    except (OAuthError, requests.RequestException) as e:
        log_event("gbp_token_refresh_failed", level="warning", business_location_id=account.business_location_id, error=str(e))
        raise GBPAuthError("Failed to refresh access token. Please reconnect your Google Business Profile.", status=401)

    account.access_token = token["access_token"]
    account.expires_at = token_expiry(token) or datetime.now(timezone.utc) + timedelta(hours=1)
    if token.get("refresh_token"):
        account.refresh_token = token["refresh_token"]
    db.commit()
    log_event("gbp_token_refresh_success", business_location_id=account.business_location_id)
    return account.access_token

def gbp_request(method: str, url: str, access_token: str, *, params: dict | None = None, json: dict | None = None) -> dict[str, Any]:
    response = requests.request(
        method,
        url,
        headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
        params=params,
        json=json,
        timeout=30,
    )
    if response.status_code >= 400:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = (body.get("error") or {}).get("message") if isinstance(body.get("error"), dict) else body.get("error")
        message = message or response.reason or "GBP API request failed"
        log_event("gbp_api_error", level="warning", url=url, status=response.status_code)
        if response.status_code == 401:
            raise GBPAuthError(f"GBP API error: {message}", status=401)
        raise GBPAPIError(f"GBP API error: {message}", status=response.status_code)
    if not response.content:
        return {}
    return response.json()

def list_accounts(access_token: str) -> list[dict[str, Any]]:
    return gbp_request("GET", f"{ACCOUNTS_API}/accounts", access_token).get("accounts", [])

def list_locations(access_token: str, account_name: str) -> list[dict[str, Any]]:
    locations = []
    params = {"readMask": "name,title,storefrontAddress,phoneNumbers,categories,websiteUri,metadata", "pageSize": 100}
    while True:
        page = gbp_request("GET", f"{BUSINESS_INFO_API}/{account_name}/locations", access_token, params=params)
        locations.extend(page.get("locations", []))
        if not page.get("nextPageToken"):
            return locations
        params = {**params, "pageToken": page["nextPageToken"]}

def reviews_path(location_name: str, account_name: str | None) -> str:
    """v4 reviews live under accounts/{a}/locations/{l}; Business Information names are just locations/{l}."""
    if location_name.startswith("accounts/") or not account_name:
        return location_name
    return f"{account_name}/{location_name}"

def iter_reviews(access_token: str, location_name: str, account_name: str | None = None) -> Iterator[dict[str, Any]]:
    params = {"pageSize": 50}
    path = reviews_path(location_name, account_name)
    while True:
        page = gbp_request("GET", f"{REVIEWS_API}/{path}/reviews", access_token, params=params)
        for review in page.get("reviews", []):
            yield review
        if not page.get("nextPageToken"):
            return
        params = {**params, "pageToken": page["nextPageToken"]}

def reply_to_review(access_token: str, review_name: str, comment: str) -> dict[str, Any]:
    log_event("gbp_review_reply_start", review_name=review_name)
    result = gbp_request("PUT", f"{REVIEWS_API}/{review_name}/reply", access_token, json={"comment": comment})
    log_event("gbp_review_reply_success", review_name=review_name)
    return result

def build_review_name(location: BusinessLocation, review_id: str) -> str | None:
    if not location.google_location_name or not review_id:
        return None
    review_id = review_id.strip().split("/")[-1].strip()
    if not review_id:
        return None
    return f"{location.google_location_name}/reviews/{review_id}"
