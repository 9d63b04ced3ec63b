# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

import time
import requests
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session

from ..config import settings
from ..logging_setup import log_event

GRAPH_HOST = "https://graph.instagram.com"
OAUTH_AUTHORIZE_URL = "https://www.instagram.com/oauth/authorize"
OAUTH_TOKEN_URL = "https://api.instagram.com/oauth/access_token"

REQUIRED_SCOPES = [
    "instagram_business_basic",
    "instagram_manage_comments",
    "instagram_business_manage_messages",
]

# Meta error code for expired / invalidated tokens
TOKEN_EXPIRED_CODE = 190

MAX_RETRIES = 3
BACKOFF_SECONDS = 1.0
MAX_PAGES = 10

class GraphAPIError(Exception):
    def __init__(self, message: str, status: int | None = None, code: int | None = None, fbtrace_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.fbtrace_id = fbtrace_id

class InstagramAuthError(GraphAPIError):
    """The stored token is expired or revoked; the user has to reconnect."""

class InstagramSetupError(InstagramAuthError):
    """OAuth could not start or finish: missing app credentials or a rejected code. Carries its own status."""

def graph_url(path: str) -> str:
    return f"{GRAPH_HOST}/{settings.graph_api_version}/{path.lstrip('/')}"

def _raise_for_error(response: requests.Response, path: str) -> None:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error", {}) if isinstance(body, dict) else {}
    message = error.get("message") or response.reason or "Graph API request failed"
    code = error.get("code")
    log_event(
        "ig_graph_error",
        level="warning",
        path=path,
        status=response.status_code,
        meta_error_code=code,
        fbtrace_id=error.get("fbtrace_id"),
    )
    if code == TOKEN_EXPIRED_CODE or response.status_code == 401:
        raise InstagramAuthError(message, response.status_code, code, error.get("fbtrace_id"))
    raise GraphAPIError(message, response.status_code, code, error.get("fbtrace_id"))

def graph_request(method: str, path: str, *, access_token: str, params: dict | None = None, json: dict | None = None, data: dict | None = None) -> dict[str, Any]:
    """Performs one Graph API call, retrying HTTP 429 with exponential backoff."""
    url = path if path.startswith("http") else graph_url(path)
    headers = {"Authorization": f"Bearer {access_token}"}

    for attempt in range(MAX_RETRIES):
        response = requests.request(method, url, headers=headers, params=params, json=json, data=data, timeout=30)
        if response.status_code == 429 and attempt < MAX_RETRIES - 1:
            delay = BACKOFF_SECONDS * (2 ** attempt)
            log_event("ig_graph_rate_limited", level="warning", path=path, retry_in=delay)
            time.sleep(delay)
            continue
        if response.status_code >= 400:
            _raise_for_error(response, path)
        return response.json()

def paginate(path: str, *, access_token: str, params: dict | None = None, max_pages: int = MAX_PAGES) -> Iterator[dict[str, Any]]:
    page = graph_request("GET", path, access_token=access_token, params=params)
    for _ in range(max_pages):
        for item in page.get("data", []):
            yield item
        next_url = (page.get("paging") or {}).get("next")
        if not next_url:
            return
        page = graph_request("GET", next_url, access_token=access_token)

# --- tokens -----------------------------------------------------------------

def redirect_uri() -> str:
    return f"{settings.public_base_url.rstrip('/')}/integrations/instagram/callback"

def oauth_session() -> OAuth2Session:
    if not settings.instagram_app_id or not settings.instagram_app_secret:
        raise InstagramSetupError("INSTAGRAM_APP_ID / INSTAGRAM_APP_SECRET are not configured", status=500)
    # Instagram Login wants the client secret in the form body
    return OAuth2Session(
        settings.instagram_app_id,
        settings.instagram_app_secret,
        scope=",".join(REQUIRED_SCOPES),
        redirect_uri=redirect_uri(),
        token_endpoint_auth_method="client_secret_post",
    )

def build_authorization_url(state: str) -> str:
    url, _ = oauth_session().create_authorization_url(OAUTH_AUTHORIZE_URL, state=state)
    return url

def exchange_code(code: str) -> dict[str, Any]:
    """Trades the callback code for a short-lived token (carries user_id)."""
    # Instagram appends "#_" to the code on redirect
    code = code.split("#")[0]
    try:
        token = oauth_session().fetch_token(OAUTH_TOKEN_URL, code=code, grant_type="authorization_code")
    except (OAuthError, requests.RequestException) as e:
        raise InstagramSetupError(f"Instagram token exchange failed: {e}", status=400)
    return dict(token)

def exchange_long_lived_token(short_lived_token: str) -> dict[str, Any]:
    """Swaps a 1-hour token from the OAuth callback for a 60-day one."""
    if not settings.instagram_app_secret:
        raise GraphAPIError("INSTAGRAM_APP_SECRET is not configured")
    response = requests.get(
        f"{GRAPH_HOST}/access_token",
        params={
            "grant_type": "ig_exchange_token",
            "client_secret": settings.instagram_app_secret,
            "access_token": short_lived_token,
        },
        timeout=30,
    )
    if response.status_code >= 400:
        _raise_for_error(response, "access_token")
    body = response.json()
    expires_in = body.get("expires_in") or 60 * 24 * 3600
    return {
        "access_token": body["access_token"],
        "expires_at": datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)),
    }

def refresh_long_lived_token(access_token: str) -> dict[str, Any]:
    response = requests.get(
        f"{GRAPH_HOST}/refresh_access_token",
        params={"grant_type": "ig_refresh_token", "access_token": access_token},
        timeout=30,
    )
    if response.status_code >= 400:
        _raise_for_error(response, "refresh_access_token")
    body = response.json()
    return {
        "access_token": body["access_token"],
        "expires_at": datetime.now(timezone.utc) + timedelta(seconds=int(body.get("expires_in") or 0)),
    }

def get_me(access_token: str) -> dict[str, Any]:
    return graph_request("GET", "me", access_token=access_token, params={"fields": "user_id,username,name,profile_picture_url"})

# --- messaging --------------------------------------------------------------

def list_conversations(access_token: str) -> list[dict[str, Any]]:
    return list(paginate(
        "me/conversations",
        access_token=access_token,
        params={"platform": "instagram", "fields": "id,updated_time,participants"},
    ))

def list_conversation_messages(conversation_id: str, access_token: str, limit: int = 50) -> list[dict[str, Any]]:
    return list(paginate(
        f"{conversation_id}/messages",
        access_token=access_token,
        params={"fields": "id,created_time,from,to,message,attachments", "limit": limit},
        max_pages=2,
    ))

def send_message(*, ig_user_id: str, recipient_id: str, text: str, access_token: str) -> dict[str, Any]:
    log_event("ig_message_send_start", ig_user_id=ig_user_id)
    result = graph_request(
        "POST",
        f"{ig_user_id}/messages",
        access_token=access_token,
        json={"recipient": {"id": recipient_id}, "message": {"text": text}},
    )
    log_event("ig_message_send_success", ig_user_id=ig_user_id, message_id=result.get("message_id"))
    return result

def get_user_profile(igsid: str, access_token: str) -> dict[str, Any]:
    return graph_request(
        "GET",
        igsid,
        access_token=access_token,
        params={"fields": "name,username,profile_pic,follower_count,is_user_follow_business"},
    )

# --- media & comments -------------------------------------------------------

def list_recent_media(ig_user_id: str, access_token: str, limit: int = 25) -> list[dict[str, Any]]:
    page = graph_request(
        "GET",
        f"{ig_user_id}/media",
        access_token=access_token,
        params={"fields": "id,caption,media_type,permalink,timestamp,comments_count,like_count", "limit": limit},
    )
    return page.get("data", [])

def list_media_comments(media_id: str, access_token: str) -> list[dict[str, Any]]:
    return list(paginate(
        f"{media_id}/comments",
        access_token=access_token,
        params={"fields": "id,text,username,timestamp,like_count,replies{id,text,username,timestamp,like_count}"},
        max_pages=3,
    ))

def reply_to_comment(*, comment_id: str, message: str, access_token: str) -> dict[str, Any]:
    log_event("ig_comment_reply_start", comment_id=comment_id)
    result = graph_request("POST", f"{comment_id}/replies", access_token=access_token, data={"message": message})
    log_event("ig_comment_reply_success", comment_id=comment_id, reply_id=result.get("id"))
    return result
