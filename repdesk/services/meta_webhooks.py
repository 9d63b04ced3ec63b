# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

"""
Meta (Instagram messaging) webhook handling.

Signature checks run over the raw request bytes; payloads are only parsed once
the HMAC matches. Two payload shapes are accepted:

    legacy:  {"object": "instagram", "entry": [{"id": ..., "messaging": [event, ...]}]}
    current: {"object": "instagram", "entry": [{"id": ..., "changes": [{"field": "messages", "value": event}]}]}
"""

import hashlib
import hmac
import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import is_unique_violation
from ..logging_setup import log_event
from ..models import (
    InstagramConnection,
    InstagramConversation,
    InstagramDMEvent,
    InstagramDMUnmatchedEvent,
    InstagramMessage,
    InstagramSyncState,
)
from .timestamps import as_utc

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
PREVIEW_LEN = 100

# Epoch values at or above this are milliseconds (Meta sends both)
MS_THRESHOLD = 100_000_000_000

@dataclass
class MessagingEvent:
    ig_account_id: str
    event: dict[str, Any]
    shape: str # "messaging" or "changes"

def compute_signature(body: bytes, secret: str) -> str:
    """Returns the X-Hub-Signature-256 header value Meta would send for body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"

def verify_signature(body: bytes, header: str | None, secret: str) -> bool:
    if not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    received_hex = header[len(SIGNATURE_PREFIX):]
    try:
        received = bytes.fromhex(received_hex)
    except ValueError:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return hmac.compare_digest(received, expected)

def parse_event_timestamp(value: Any) -> datetime:
    if value is None or value == "":
        return datetime.now(timezone.utc)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
    if number >= MS_THRESHOLD:
        number = number / 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return datetime.now(timezone.utc)

def normalize_webhook_payload(payload: Any) -> list[MessagingEvent]:
    """Flattens both webhook shapes into a list of message events."""
    if not isinstance(payload, dict) or payload.get("object") != "instagram":
        log_event("meta_webhook_ignored_object", object=payload.get("object") if isinstance(payload, dict) else None)
        return []

    events = []
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        ig_account_id = entry.get("id")
        if not ig_account_id or str(ig_account_id) == "0":
            log_event("meta_webhook_test_payload")
            continue
        ig_account_id = str(ig_account_id)

        changes = entry.get("changes")
        if isinstance(changes, list):
            for change in changes:
                if not isinstance(change, dict):
                    continue
                value = change.get("value")
                if change.get("field") == "messages" and isinstance(value, dict) and value.get("message"):
                    events.append(MessagingEvent(ig_account_id, value, "changes"))

        messaging = entry.get("messaging")
        if isinstance(messaging, list):
            for event in messaging:
                if isinstance(event, dict) and event.get("message"):
                    events.append(MessagingEvent(ig_account_id, event, "messaging"))

    return events

def _generated_message_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"wh_{int(time.time() * 1000)}_{suffix}"

def _get_or_create_sync_state(db: Session, business_location_id: int) -> InstagramSyncState:
    state = db.query(InstagramSyncState).filter(
        InstagramSyncState.business_location_id == business_location_id
    ).first()
    if not state:
        state = InstagramSyncState(business_location_id=business_location_id)
        db.add(state)
        db.flush()
    return state

def mark_webhook_verified(db: Session) -> int:
    """Stamps webhook_verified_at for every location with an Instagram connection."""
    now = datetime.now(timezone.utc)
    location_ids = {row[0] for row in db.query(InstagramConnection.business_location_id).all()}
    for location_id in location_ids:
        _get_or_create_sync_state(db, location_id).webhook_verified_at = now
    db.commit()
    return len(location_ids)

def _record_dm_event(db: Session, connection: InstagramConnection, event: dict, message_id: str | None, ts: datetime) -> bool:
    """Inserts the raw event; returns False when the message id was already logged."""
    message = event.get("message") or {}
    row = InstagramDMEvent(
        business_location_id=connection.business_location_id,
        ig_user_id=connection.instagram_user_id,
        sender_id=(event.get("sender") or {}).get("id"),
        recipient_id=(event.get("recipient") or {}).get("id"),
        message_id=message_id,
        text=message.get("text"),
        timestamp=ts,
        raw=event,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if not is_unique_violation(e):
            raise
        return False
    return True

def _find_or_create_conversation(db: Session, ig_account_id: str, participant_igsid: str, ts: datetime) -> InstagramConversation:
    conversation = db.query(InstagramConversation).filter(
        InstagramConversation.ig_account_id == ig_account_id,
        InstagramConversation.participant_igsid == participant_igsid,
    ).first()
    if conversation:
        return conversation

    conversation = InstagramConversation(
        id=f"conv_{ig_account_id}_{participant_igsid}",
        ig_account_id=ig_account_id,
        participant_igsid=participant_igsid,
        updated_time=ts,
        last_message_at=ts,
        unread_count=0,
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if not is_unique_violation(e):
            raise
        # Created concurrently by another delivery of the same thread
        conversation = db.query(InstagramConversation).filter(
            InstagramConversation.ig_account_id == ig_account_id,
            InstagramConversation.participant_igsid == participant_igsid,
        ).one()
    return conversation

def store_message(
    db: Session,
    *,
    ig_account_id: str,
    message_id: str,
    sender_id: str,
    recipient_id: str,
    text: str | None,
    attachments: Any,
    created_time: datetime,
    raw: Any,
    conversation_id: str | None = None,
) -> tuple[InstagramMessage, bool]:
    """
    Upserts one DM into its conversation and keeps the conversation summary current.
    Returns (message, created). A message id seen before never bumps unread counters.
    """
    direction = "outbound" if sender_id == ig_account_id else "inbound"
    participant = recipient_id if direction == "outbound" else sender_id

    if conversation_id:
        conversation = db.get(InstagramConversation, conversation_id)
        if not conversation:
            conversation = InstagramConversation(
                id=conversation_id,
                ig_account_id=ig_account_id,
                participant_igsid=participant,
                updated_time=created_time,
                last_message_at=created_time,
                unread_count=0,
            )
            db.add(conversation)
            db.flush()
    else:
        conversation = _find_or_create_conversation(db, ig_account_id, participant, created_time)

    existing = db.get(InstagramMessage, message_id)
    if existing:
        if text is not None:
            existing.text = text
        if attachments is not None:
            existing.attachments = attachments
        db.commit()
        return existing, False

    message = InstagramMessage(
        id=message_id,
        ig_account_id=ig_account_id,
        conversation_id=conversation.id,
        direction=direction,
        from_id=sender_id,
        to_id=recipient_id,
        text=text,
        attachments=attachments,
        created_time=created_time,
        # Our own messages are read by definition
        read_at=created_time if direction == "outbound" else None,
        raw=raw,
    )
    db.add(message)

    if conversation.last_message_at is None or as_utc(created_time) >= as_utc(conversation.last_message_at):
        conversation.last_message_at = created_time
        conversation.updated_time = created_time
        conversation.last_message_preview = text[:PREVIEW_LEN] if text else None
    if direction == "inbound":
        conversation.unread_count = (conversation.unread_count or 0) + 1
    else:
        conversation.unread_count = 0

    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if not is_unique_violation(e):
            raise
        return db.get(InstagramMessage, message_id), False
    return message, True

def ingest_message_event(
    db: Session,
    item: MessagingEvent,
    identity_resolver: Callable[[Session, InstagramConnection, str], Any] | None = None,
) -> InstagramMessage | None:
    event = item.event
    message = event.get("message") or {}
    sender_id = (event.get("sender") or {}).get("id")
    recipient_id = (event.get("recipient") or {}).get("id")
    message_id = message.get("mid")

    connection = db.query(InstagramConnection).filter(
        InstagramConnection.instagram_user_id == item.ig_account_id
    ).first()
    if not connection:
        log_event("meta_webhook_unmatched", level="warning", ig_account_id=item.ig_account_id, message_id=message_id)
        db.add(InstagramDMUnmatchedEvent(
            ig_account_id=item.ig_account_id,
            message_id=message_id,
            payload_json=event,
            error_message="No Instagram connection for account",
        ))
        db.commit()
        return None

    location_id = connection.business_location_id

    try:
        ts = parse_event_timestamp(event.get("timestamp"))
        logged = _record_dm_event(db, connection, event, message_id, ts)
        if not logged:
            log_event("meta_webhook_duplicate_event", business_location_id=location_id, message_id=message_id)

        if not sender_id or not recipient_id:
            log_event("meta_webhook_missing_participants", level="warning", business_location_id=location_id, message_id=message_id)
            return None

        stored, created = store_message(
            db,
            ig_account_id=connection.instagram_user_id,
            message_id=message_id or _generated_message_id(),
            sender_id=str(sender_id),
            recipient_id=str(recipient_id),
            text=message.get("text"),
            attachments=message.get("attachments"),
            created_time=ts,
            raw=event,
        )

        state = _get_or_create_sync_state(db, location_id)
        state.last_webhook_event_at = datetime.now(timezone.utc)
        state.last_webhook_error = None
        db.commit()
    except Exception as e:
        db.rollback()
        state = _get_or_create_sync_state(db, location_id)
        state.last_webhook_error = str(e)[:500]
        db.commit()
        raise

    log_event(
        "meta_webhook_message_processed",
        business_location_id=location_id,
        message_id=stored.id,
        conversation_id=stored.conversation_id,
        direction=stored.direction,
        created=created,
        shape=item.shape,
    )

    if created and stored.direction == "inbound" and identity_resolver:
        try:
            identity_resolver(db, connection, stored.from_id)
        except Exception as e:
            # Identity enrichment must never fail ingestion
            db.rollback()
            log_event("meta_webhook_identity_failed", level="warning", business_location_id=location_id, error=str(e))

    return stored

def process_webhook_payload(
    db_factory: Callable[[], Session],
    payload: Any,
    identity_resolver: Callable[[Session, InstagramConnection, str], Any] | None = None,
) -> int:
    """Background entry point: persists every message event in payload. Returns the number processed."""
    events = normalize_webhook_payload(payload)
    if not events:
        return 0

    processed = 0
    db = db_factory()
    try:
        for item in events:
            try:
                if ingest_message_event(db, item, identity_resolver) is not None:
                    processed += 1
            except Exception:
                logger.exception("Failed to persist webhook event for account %s", item.ig_account_id)
    finally:
        db.close()
    return processed
