from datetime import datetime, timezone
from typing import Any
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import BusinessLocation, InstagramComment
from ..schemas import CommentOut, CommentReplyIn
from ..security.rbac import get_current_org_id, get_location, load_location
from ..services import instagram_graph
from ..services.inbox_sync import record_sync_error, sync_comments
from ..logging_setup import log_event
from .inbox import require_connection

router = APIRouter(prefix="/social/instagram/comments", tags=["comments"])

@router.get("", response_model=list[CommentOut])
def list_comments(
    unreplied: bool = Query(default=False),
    media_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
):
    query = db.query(InstagramComment).filter(InstagramComment.business_location_id == location.id)
    if media_id:
        query = query.filter(InstagramComment.media_id == media_id)
    if unreplied:
        query = query.filter(InstagramComment.parent_id.is_(None), InstagramComment.replied.is_(False))
        connection = location.instagram_connection
        if connection and connection.instagram_username:
            query = query.filter(or_(
                InstagramComment.username.is_(None),
                func.lower(InstagramComment.username) != connection.instagram_username.lower(),
            ))
    return query.order_by(InstagramComment.timestamp.desc()).limit(limit).all()

@router.post("/sync")
def sync(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    connection = require_connection(location)
    try:
        stats = sync_comments(db, connection)
    except instagram_graph.GraphAPIError as e:
        record_sync_error(db, location.id, e)
        raise
    return {"ok": True, **stats}

@router.post("/reply", response_model=CommentOut)
def reply(
    payload: CommentReplyIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
):
    location = load_location(db, org_id, payload.location_id)
    connection = require_connection(location)
    comment = db.query(InstagramComment).filter(
        InstagramComment.id == payload.comment_id,
        InstagramComment.business_location_id == location.id
    ).first()
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")

    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Reply message cannot be empty")

    result = instagram_graph.reply_to_comment(comment_id=comment.id, message=message, access_token=connection.access_token)
    comment.replied = True
    comment.reply_text = message
    comment.reply_id = str(result.get("id")) if result.get("id") else None
    comment.replied_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(comment)
    log_event("ig_comment_replied", business_location_id=location.id, comment_id=comment.id)
    return comment
