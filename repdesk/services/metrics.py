from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import (
    BusinessLocation,
    BusinessReview,
    InstagramComment,
    InstagramConversation,
    InstagramMessage,
)

def review_metrics(db: Session, location_id: int, since: datetime) -> dict[str, Any]:
    base = select(BusinessReview).where(BusinessReview.location_id == location_id).subquery()

    total, average = db.execute(select(func.count(base.c.id), func.avg(base.c.rating))).one()
    replied = db.execute(select(func.count(base.c.id)).where(base.c.reply_comment.isnot(None))).scalar_one()
    new_reviews = db.execute(select(func.count(base.c.id)).where(base.c.published_at >= since)).scalar_one()

    distribution = {str(star): 0 for star in range(1, 6)}
    for rating, count in db.execute(
        select(base.c.rating, func.count(base.c.id)).where(base.c.rating.isnot(None)).group_by(base.c.rating)
    ).all():
        distribution[str(rating)] = count

    return {
        "total": total,
        "average_rating": round(float(average), 2) if average is not None else None,
        "distribution": distribution,
        "replied": replied,
        "reply_rate": round(replied / total, 4) if total else 0.0,
        "new_in_window": new_reviews,
    }

def inbox_metrics(db: Session, ig_account_id: str | None, since: datetime) -> dict[str, Any]:
    if not ig_account_id:
        return {"conversations": 0, "unread_conversations": 0, "inbound_in_window": 0}

    conversations = db.execute(
        select(func.count(InstagramConversation.id)).where(InstagramConversation.ig_account_id == ig_account_id)
    ).scalar_one()
    unread = db.execute(
        select(func.count(InstagramConversation.id)).where(
            InstagramConversation.ig_account_id == ig_account_id,
            InstagramConversation.unread_count > 0,
        )
    ).scalar_one()
    inbound = db.execute(
        select(func.count(InstagramMessage.id)).where(
            InstagramMessage.ig_account_id == ig_account_id,
            InstagramMessage.direction == "inbound",
            InstagramMessage.created_time >= since,
        )
    ).scalar_one()
    return {"conversations": conversations, "unread_conversations": unread, "inbound_in_window": inbound}

def comment_metrics(db: Session, location_id: int, own_username: str | None) -> dict[str, Any]:
    # Replies in a thread and the business's own comments never need an answer
    stmt = select(func.count(InstagramComment.id)).where(
        InstagramComment.business_location_id == location_id,
        InstagramComment.parent_id.is_(None),
        InstagramComment.replied.is_(False),
    )
    if own_username:
        stmt = stmt.where(func.lower(func.coalesce(InstagramComment.username, "")) != own_username.lower())
    total = db.execute(
        select(func.count(InstagramComment.id)).where(InstagramComment.business_location_id == location_id)
    ).scalar_one()
    return {"total": total, "unreplied": db.execute(stmt).scalar_one()}

def overview(db: Session, location: BusinessLocation, days: int = 30) -> dict[str, Any]:
    """Dashboard numbers for one location over the trailing window of `days`."""
    now = datetime.now(timezone.utc)
    since = now - timedelta(days=days)
    connection = location.instagram_connection
    ig_account_id = connection.instagram_user_id if connection else None
    username = connection.instagram_username if connection else None

    return {
        "location_id": location.id,
        "days": days,
        "generated_at": now.isoformat(),
        "reviews": review_metrics(db, location.id, since),
        "inbox": inbox_metrics(db, ig_account_id, since),
        "comments": comment_metrics(db, location.id, username),
    }
