from datetime import datetime, timezone
from typing import Any
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import BusinessLocation, InstagramConnection, InstagramConversation, InstagramMessage
from ..schemas import AIDraftIn, ConversationOut, MarkReadIn, MessageOut, SendMessageIn
from ..security.rbac import get_current_org_id, get_location, load_location
from ..services import instagram_graph, llm
from ..services.inbox_sync import record_sync_error, sync_inbox
from ..services.instagram_identity import identities_for
from ..services.meta_webhooks import store_message
from ..logging_setup import log_event

router = APIRouter(prefix="/social/instagram/inbox", tags=["inbox"])

AI_DRAFT_CONTEXT_MESSAGES = 20

def require_connection(location: BusinessLocation) -> InstagramConnection:
    connection = location.instagram_connection
    if not connection:
        raise HTTPException(status_code=404, detail="Instagram is not connected for this location")
    return connection

def load_conversation(db: Session, connection: InstagramConnection, conversation_id: str) -> InstagramConversation:
    conversation = db.query(InstagramConversation).filter(
        InstagramConversation.id == conversation_id,
        InstagramConversation.ig_account_id == connection.instagram_user_id
    ).first()
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation

@router.get("/conversations", response_model=list[ConversationOut])
def list_conversations(
    limit: int = Query(default=50, ge=1, le=200),
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
):
    connection = require_connection(location)
    conversations = db.query(InstagramConversation).filter(
        InstagramConversation.ig_account_id == connection.instagram_user_id
    ).order_by(InstagramConversation.last_message_at.desc()).limit(limit).all()

    identities = identities_for(db, connection.instagram_user_id, [c.participant_igsid for c in conversations])
    out = []
    for c in conversations:
        who = identities.get(c.participant_igsid)
        out.append(ConversationOut(
            id=c.id,
            ig_account_id=c.ig_account_id,
            participant_igsid=c.participant_igsid,
            participant_username=who.username if who else None,
            participant_name=who.name if who else None,
            participant_profile_pic=who.profile_pic if who else None,
            last_message_preview=c.last_message_preview,
            last_message_at=c.last_message_at,
            updated_time=c.updated_time,
            unread_count=c.unread_count or 0,
        ))
    return out

@router.get("/messages", response_model=list[MessageOut])
def list_messages(
    conversation_id: str = Query(...),
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
):
    connection = require_connection(location)
    conversation = load_conversation(db, connection, conversation_id)
    return db.query(InstagramMessage).filter(
        InstagramMessage.conversation_id == conversation.id
    ).order_by(InstagramMessage.created_time.asc()).all()

@router.post("/mark-read")
def mark_read(
    payload: MarkReadIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    location = load_location(db, org_id, payload.location_id)
    conversation = load_conversation(db, require_connection(location), payload.conversation_id)

    now = datetime.now(timezone.utc)
    marked = db.query(InstagramMessage).filter(
        InstagramMessage.conversation_id == conversation.id,
        InstagramMessage.direction == "inbound",
        InstagramMessage.read_at.is_(None)
    ).update({InstagramMessage.read_at: now}, synchronize_session=False)
    conversation.unread_count = 0
    db.commit()
    return {"ok": True, "marked": marked}

@router.post("/send", response_model=MessageOut)
def send_message(
    payload: SendMessageIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
):
    location = load_location(db, org_id, payload.location_id)
    connection = require_connection(location)
    conversation = load_conversation(db, connection, payload.conversation_id)

    result = instagram_graph.send_message(
        ig_user_id=connection.instagram_user_id,
        recipient_id=conversation.participant_igsid,
        text=payload.text,
        access_token=connection.access_token,
    )
    now = datetime.now(timezone.utc)
    message_id = result.get("message_id") or f"out_{int(now.timestamp() * 1000)}_{conversation.participant_igsid}"
    message, _ = store_message(
        db,
        ig_account_id=connection.instagram_user_id,
        message_id=str(message_id),
        sender_id=connection.instagram_user_id,
        recipient_id=conversation.participant_igsid,
        text=payload.text,
        attachments=None,
        created_time=now,
        raw=result,
        conversation_id=conversation.id,
    )
    log_event("ig_message_sent", business_location_id=location.id, conversation_id=conversation.id, message_id=message.id)
    return message

@router.post("/sync")
def sync(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    connection = require_connection(location)
    try:
        stats = sync_inbox(db, connection)
    except instagram_graph.GraphAPIError as e:
        record_sync_error(db, location.id, e)
        raise
    return {"ok": True, **stats}

@router.post("/ai-draft")
def ai_draft(
    payload: AIDraftIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    location = load_location(db, org_id, payload.location_id)
    connection = require_connection(location)
    conversation = load_conversation(db, connection, payload.conversation_id)

    recent = db.query(InstagramMessage).filter(
        InstagramMessage.conversation_id == conversation.id
    ).order_by(InstagramMessage.created_time.desc()).limit(AI_DRAFT_CONTEXT_MESSAGES).all()
    if not recent:
        raise HTTPException(status_code=400, detail="Conversation has no messages to reply to")

    who = identities_for(db, connection.instagram_user_id, [conversation.participant_igsid]).get(conversation.participant_igsid)
    thread = [{"direction": m.direction, "text": m.text} for m in reversed(recent)]
    draft = llm.generate_dm_reply(thread, location, participant_name=(who.name or who.username) if who else None)
    return {"success": True, **draft}
