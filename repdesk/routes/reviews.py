from typing import Any
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import BusinessLocation, BusinessReview
from ..schemas import ReviewOut, ReviewReplyIn, GenerateReplyIn, BulkReplyIn
from ..security.rbac import get_current_org_id, get_location, load_location
from ..services import llm
from ..services.reviews import post_review_reply, sync_gbp_reviews
from ..logging_setup import log_event

router = APIRouter(prefix="/reputation", tags=["reputation"])

@router.get("/reviews", response_model=list[ReviewOut])
def list_reviews(
    rating: int | None = Query(default=None, ge=1, le=5),
    replied: bool | None = Query(default=None),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
):
    """Stored reviews for a location, newest first."""
    query = db.query(BusinessReview).filter(BusinessReview.location_id == location.id)
    if rating is not None:
        query = query.filter(BusinessReview.rating == rating)
    if replied is True:
        query = query.filter(BusinessReview.reply_comment.isnot(None))
    elif replied is False:
        query = query.filter(BusinessReview.reply_comment.is_(None))
    if q:
        pattern = f"%{q.strip()}%"
        query = query.filter(or_(BusinessReview.review_text.ilike(pattern), BusinessReview.author_name.ilike(pattern)))
    return query.order_by(BusinessReview.published_at.desc(), BusinessReview.id.desc()).limit(limit).all()

@router.post("/reviews/sync")
def sync_reviews(
    location: BusinessLocation = Depends(get_location),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    stats = sync_gbp_reviews(db, location)
    return {"ok": True, **stats}

@router.post("/reviews/reply")
def reply_to_review(
    payload: ReviewReplyIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    comment = payload.comment.strip()
    if not comment:
        raise HTTPException(status_code=400, detail="Reply comment cannot be empty")
    if not payload.review_name and not payload.review_id:
        raise HTTPException(status_code=400, detail="review_name or review_id is required")

    location = load_location(db, org_id, payload.location_id)
    stored = post_review_reply(db, location, comment=comment, review_name=payload.review_name, review_id=payload.review_id)
    log_event("review_reply_posted", business_location_id=location.id, stored=stored is not None)
    return {
        "ok": True,
        "review": ReviewOut.model_validate(stored).model_dump(mode="json") if stored else None,
    }

@router.post("/generate-reply")
def generate_reply(
    payload: GenerateReplyIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    """Up to three distinct AI reply drafts for one review."""
    location = load_location(db, org_id, payload.location_id)
    replies = llm.generate_review_replies(payload.review.model_dump(), location, payload.tone, payload.length)
    return {"success": True, "replies": replies}

@router.post("/bulk-reply")
def bulk_reply(
    payload: BulkReplyIn,
    org_id: int = Depends(get_current_org_id),
    db: Session = Depends(get_db)
) -> dict[str, Any]:
    """One draft per stored review. Nothing is posted."""
    location = load_location(db, org_id, payload.location_id)
    stored = {
        r.review_id: r for r in db.query(BusinessReview).filter(
            BusinessReview.location_id == location.id,
            BusinessReview.review_id.in_(payload.review_ids)
        ).all()
    }

    reviews = []
    results = []
    for review_id in payload.review_ids:
        review = stored.get(review_id)
        if not review or not review.review_text:
            results.append({"review_id": review_id, "error": "Review not found or has no text"})
            continue
        reviews.append({
            "review_id": review.review_id,
            "text": review.review_text,
            "rating": review.rating,
            "author_name": review.author_name,
            "created_at": review.published_at.isoformat() if review.published_at else None,
        })

    if reviews:
        results.extend(llm.generate_bulk_replies(reviews, location, payload.tone, payload.length))
    return {"success": True, "drafts": results}
