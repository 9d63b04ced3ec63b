"""
Polling sync of Instagram DMs and comments.

Webhooks cover new messages in real time; this fills gaps (missed deliveries,
history from before the connection existed) by reading the Graph API and
upserting by id, so running it repeatedly is harmless.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..logging_setup import log_event
from ..models import InstagramComment, InstagramConnection, InstagramConversation, InstagramSyncState
from . import instagram_graph
from .meta_webhooks import store_message
from .timestamps import parse_api_time

logger = logging.getLogger(__name__)

def _sync_state(db: Session, location_id: int) -> InstagramSyncState:
    state = db.query(InstagramSyncState).filter(InstagramSyncState.business_location_id == location_id).first()
    if not state:
        state = InstagramSyncState(business_location_id=location_id)
        db.add(state)
        db.flush()
    return state

def _participant_of(conversation: dict, ig_account_id: str) -> str | None:
    participants = (conversation.get("participants") or {}).get("data", [])
    for p in participants:
        if str(p.get("id")) != ig_account_id:
            return str(p.get("id"))
    return None

def sync_inbox(db: Session, connection: InstagramConnection) -> dict[str, int]:
    ig_account_id = connection.instagram_user_id
    token = connection.access_token
    stats = {"conversations": 0, "messages": 0, "new_messages": 0}

    for remote in instagram_graph.list_conversations(token):
        participant = _participant_of(remote, ig_account_id)
        if not participant:
            continue
        updated_time = parse_api_time(remote.get("updated_time")) or datetime.now(timezone.utc)

        conversation = db.query(InstagramConversation).filter(
            InstagramConversation.ig_account_id == ig_account_id,
            InstagramConversation.participant_igsid == participant,
        ).first()
        backfill = conversation is None
        if backfill:
            conversation = InstagramConversation(
                id=str(remote["id"]),
                ig_account_id=ig_account_id,
                participant_igsid=participant,
                updated_time=updated_time,
                last_message_at=updated_time,
                unread_count=0,
            )
            db.add(conversation)
            db.commit()
        stats["conversations"] += 1

        messages = instagram_graph.list_conversation_messages(str(remote["id"]), token)
        messages.sort(key=lambda m: m.get("created_time") or "")
        for m in messages:
            sender = str((m.get("from") or {}).get("id") or "")
            recipients = (m.get("to") or {}).get("data", [])
            recipient = str(recipients[0].get("id")) if recipients else (participant if sender == ig_account_id else ig_account_id)
            if not sender or not m.get("id"):
                continue
            _, created = store_message(
                db,
                ig_account_id=ig_account_id,
                message_id=str(m["id"]),
                sender_id=sender,
                recipient_id=recipient,
                text=m.get("message"),
                attachments=m.get("attachments"),
                created_time=parse_api_time(m.get("created_time")) or updated_time,
                raw=m,
                conversation_id=conversation.id,
            )
            stats["messages"] += 1
            if created:
                stats["new_messages"] += 1

        if backfill:
            # History pulled on first sight is not "new" to the business
            conversation.unread_count = 0
            db.commit()

    state = _sync_state(db, connection.business_location_id)
    state.last_inbox_sync_at = datetime.now(timezone.utc)
    state.last_sync_error = None
    db.commit()

    log_event("ig_inbox_sync_complete", business_location_id=connection.business_location_id, **stats)
    return stats

def _upsert_comment(db: Session, connection: InstagramConnection, media: dict, data: dict, parent_id: str | None) -> tuple[InstagramComment, bool]:
    comment = db.get(InstagramComment, str(data["id"]))
    created = comment is None
    if created:
        comment = InstagramComment(
            id=str(data["id"]),
            business_location_id=connection.business_location_id,
            ig_account_id=connection.instagram_user_id,
            media_id=str(media["id"]),
        )
        db.add(comment)
    comment.media_permalink = media.get("permalink")
    comment.parent_id = parent_id
    comment.text = data.get("text")
    comment.username = data.get("username")
    comment.timestamp = parse_api_time(data.get("timestamp"))
    comment.like_count = data.get("like_count")
    comment.raw = data
    return comment, created

def sync_comments(db: Session, connection: InstagramConnection, media_limit: int = 25) -> dict[str, int]:
    token = connection.access_token
    stats = {"media": 0, "comments": 0, "new_comments": 0}
    own_username = (connection.instagram_username or "").lower()

    for media in instagram_graph.list_recent_media(connection.instagram_user_id, token, limit=media_limit):
        stats["media"] += 1
        if not media.get("comments_count"):
            continue
        for data in instagram_graph.list_media_comments(str(media["id"]), token):
            parent, created = _upsert_comment(db, connection, media, data, None)
            if created:
                stats["new_comments"] += 1
            stats["comments"] += 1

            for reply in (data.get("replies") or {}).get("data", []):
                _, created = _upsert_comment(db, connection, media, reply, parent.id)
                if created:
                    stats["new_comments"] += 1
                stats["comments"] += 1
                # A reply from the business account counts as answering the thread
                if own_username and (reply.get("username") or "").lower() == own_username and not parent.replied:
                    parent.replied = True
                    parent.reply_text = reply.get("text")
                    parent.reply_id = str(reply["id"])
                    parent.replied_at = parse_api_time(reply.get("timestamp"))
        db.commit()

    state = _sync_state(db, connection.business_location_id)
    state.last_comments_sync_at = datetime.now(timezone.utc)
    db.commit()

    log_event("ig_comments_sync_complete", business_location_id=connection.business_location_id, **stats)
    return stats

def record_sync_error(db: Session, location_id: int, error: Exception) -> None:
    db.rollback()
    state = _sync_state(db, location_id)
    state.last_sync_error = str(error)[:500]
    db.commit()
