from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..logging_setup import log_event
from ..models import BusinessLocation, BusinessReview
from . import gbp
from .timestamps import parse_api_time

def review_fields(review: dict) -> dict:
    """Maps a GBP v4 review resource onto BusinessReview columns."""
    reviewer = review.get("reviewer") or {}
    reply = review.get("reply") or {}
    return {
        "review_id": review.get("reviewId") or (review.get("name") or "").split("/")[-1],
        "review_name": review.get("name"),
        "rating": gbp.STAR_RATINGS.get(review.get("starRating")),
        "review_text": review.get("comment"),
        "author_name": reviewer.get("displayName"),
        "author_photo_url": reviewer.get("profilePhotoUrl"),
        "published_at": parse_api_time(review.get("createTime")),
        "reply_comment": reply.get("comment"),
        "reply_updated_at": parse_api_time(reply.get("updateTime")),
        "raw_payload": review,
    }

def upsert_review(db: Session, location_id: int, source: str, fields: dict) -> tuple[BusinessReview, bool]:
    review = db.execute(
        select(BusinessReview).where(
            BusinessReview.location_id == location_id,
            BusinessReview.source == source,
            BusinessReview.review_id == fields["review_id"],
        )
    ).scalar_one_or_none()
    created = review is None
    if created:
        review = BusinessReview(location_id=location_id, source=source, review_id=fields["review_id"])
        db.add(review)
    for key, value in fields.items():
        if key == "review_id":
            continue
        setattr(review, key, value)
    return review, created

def sync_gbp_reviews(db: Session, location: BusinessLocation) -> dict[str, int]:
    account = gbp.find_connected_account(db, location.id)
    if not account:
        raise gbp.GBPSetupError("Google Business Profile is not connected for this location", status=404)
    if not location.google_location_name:
        raise gbp.GBPAPIError("No Google location selected for this business location", status=400)

    token = gbp.get_valid_access_token(db, account)
    stats = {"fetched": 0, "created": 0, "updated": 0}
    for raw in gbp.iter_reviews(token, location.google_location_name, account.account_name):
        fields = review_fields(raw)
        if not fields["review_id"]:
            continue
        _, created = upsert_review(db, location.id, "gbp", fields)
        stats["fetched"] += 1
        stats["created" if created else "updated"] += 1
    db.commit()

    log_event("gbp_reviews_sync_complete", business_location_id=location.id, **stats)
    return stats

def post_review_reply(db: Session, location: BusinessLocation, *, comment: str, review_name: str | None = None, review_id: str | None = None) -> BusinessReview | None:
    """Publishes a reply on Google and mirrors it onto the stored review when we have one."""
    account = gbp.find_connected_account(db, location.id)
    if not account:
        raise gbp.GBPSetupError("Google Business Profile is not connected for this location", status=404)
    token = gbp.get_valid_access_token(db, account)

    stored = None
    if review_id:
        stored = db.execute(
            select(BusinessReview).where(
                BusinessReview.location_id == location.id,
                BusinessReview.source == "gbp",
                BusinessReview.review_id == review_id.split("/")[-1],
            )
        ).scalar_one_or_none()

    if not review_name:
        review_name = (stored.review_name if stored else None) or gbp.build_review_name(location, review_id or "")
    if not review_name:
        raise gbp.GBPAPIError("Could not determine the review resource name", status=400)

    gbp.reply_to_review(token, review_name, comment)

    if stored is None:
        stored = db.execute(
            select(BusinessReview).where(BusinessReview.location_id == location.id, BusinessReview.review_name == review_name)
        ).scalar_one_or_none()
    if stored is not None:
        stored.reply_comment = comment
        stored.reply_updated_at = datetime.now(timezone.utc)
        db.commit()
    return stored
