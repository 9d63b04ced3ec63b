# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

import base64
import json
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal, get_db
from ..logging_setup import log_event
from ..models import BusinessLocation, InstagramSyncState
from ..security.rbac import get_location
from ..services.instagram_identity import resolve_participant
from ..services.meta_webhooks import (
    SIGNATURE_PREFIX,
    compute_signature,
    mark_webhook_verified,
    process_webhook_payload,
    verify_signature,
)

router = APIRouter(prefix="/webhooks/meta", tags=["webhooks"])

DEBUG_CAPTURE_BYTES = 1024

def _iso(value) -> str | None:
    return value.isoformat() if value else None

@router.get("/instagram")
def verify_subscription(request: Request, db: Session = Depends(get_db)):
    """Meta subscription handshake: echo hub.challenge when the verify token matches."""
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")

    expected = settings.meta_webhook_verify_token
    if mode == "subscribe" and expected and token == expected and challenge is not None:
        stamped = mark_webhook_verified(db)
        log_event("meta_webhook_verified", locations=stamped)
        return PlainTextResponse(challenge, status_code=200)

    log_event("meta_webhook_verify_failed", level="warning", mode=mode, verify_supplied=bool(token))
    return JSONResponse({"error": "Verification failed"}, status_code=403)

@router.post("/instagram")
async def receive_events(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()

    secret = settings.meta_app_secret
    if not secret:
        log_event("meta_webhook_secret_missing", level="error")
        return JSONResponse({"error": "Webhook secret not configured"}, status_code=500)

    header = request.headers.get("X-Hub-Signature-256")
    if not verify_signature(body, header, secret):
        fields: dict[str, Any] = {"body_length": len(body), "header_present": bool(header)}
        if settings.meta_webhook_debug_capture:
            expected = compute_signature(body, secret)
            fields.update(
                received_prefix=(header or "")[: len(SIGNATURE_PREFIX) + 8],
                expected_prefix=expected[: len(SIGNATURE_PREFIX) + 8],
                body_b64=base64.b64encode(body[:DEBUG_CAPTURE_BYTES]).decode("ascii"),
            )
        log_event("meta_webhook_invalid_signature", level="warning", **fields)
        return JSONResponse({"error": "invalid_signature"}, status_code=403)

    try:
        payload = json.loads(body)
    except ValueError:
        log_event("meta_webhook_invalid_payload", level="warning", body_length=len(body))
        return JSONResponse({"error": "invalid_payload"}, status_code=400)

    log_event("meta_webhook_received", object=payload.get("object") if isinstance(payload, dict) else None, entries=len(payload.get("entry") or []) if isinstance(payload, dict) else 0)
    background_tasks.add_task(process_webhook_payload, SessionLocal, payload, resolve_participant)
    return {"ok": True}

@router.get("/instagram/status")
def webhook_status(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    state = db.query(InstagramSyncState).filter(InstagramSyncState.business_location_id == location.id).first()
    connection = location.instagram_connection
    return {
        "location_id": location.id,
        "secret_configured": bool(settings.meta_app_secret),
        "verify_token_configured": bool(settings.meta_webhook_verify_token),
        "instagram_connected": connection is not None,
        "instagram_user_id": connection.instagram_user_id if connection else None,
        "webhook_verified_at": _iso(state.webhook_verified_at) if state else None,
        "last_webhook_event_at": _iso(state.last_webhook_event_at) if state else None,
        "last_webhook_error": state.last_webhook_error if state else None,
        "last_inbox_sync_at": _iso(state.last_inbox_sync_at) if state else None,
        "last_comments_sync_at": _iso(state.last_comments_sync_at) if state else None,
        "last_sync_error": state.last_sync_error if state else None,
    }
