from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import is_unique_violation
from ..logging_setup import log_event
from ..models import InstagramConnection, InstagramUserCache
from .instagram_graph import GraphAPIError, get_user_profile
from .timestamps import as_utc

CACHE_TTL = timedelta(days=7)
# Profiles that keep failing are retried less often
FAILURE_BACKOFF = timedelta(hours=6)
MAX_FAILURES = 5

def _is_fresh(entry: InstagramUserCache, now: datetime) -> bool:
    fetched = as_utc(entry.last_fetched_at)
    if fetched and now - fetched < CACHE_TTL:
        return True
    failed = as_utc(entry.last_failed_at)
    if entry.fail_count >= MAX_FAILURES and failed and now - failed < FAILURE_BACKOFF:
        return True
    return False

def resolve_participant(db: Session, connection: InstagramConnection, igsid: str, force: bool = False) -> InstagramUserCache:
    """Looks up a DM participant's public profile and caches it per business account."""
    now = datetime.now(timezone.utc)
    entry = db.query(InstagramUserCache).filter(
        InstagramUserCache.ig_account_id == connection.instagram_user_id,
        InstagramUserCache.ig_user_id == igsid,
    ).first()

    if entry and not force and _is_fresh(entry, now):
        return entry

    if not entry:
        entry = InstagramUserCache(ig_account_id=connection.instagram_user_id, ig_user_id=igsid, fail_count=0)
        db.add(entry)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            if not is_unique_violation(e):
                raise
            entry = db.query(InstagramUserCache).filter(
                InstagramUserCache.ig_account_id == connection.instagram_user_id,
                InstagramUserCache.ig_user_id == igsid,
            ).one()

    try:
        profile = get_user_profile(igsid, connection.access_token)
    except GraphAPIError as e:
        entry.fail_count = (entry.fail_count or 0) + 1
        entry.last_failed_at = now
        db.commit()
        log_event("ig_identity_fetch_failed", level="warning", igsid=igsid, meta_error_code=e.code, fail_count=entry.fail_count)
        return entry

    entry.username = profile.get("username")
    entry.name = profile.get("name")
    entry.profile_pic = profile.get("profile_pic")
    entry.follower_count = profile.get("follower_count")
    entry.is_user_follow_business = profile.get("is_user_follow_business")
    entry.last_fetched_at = now
    entry.fail_count = 0
    entry.raw = profile
    db.commit()
    return entry

def identities_for(db: Session, ig_account_id: str, igsids: list[str]) -> dict[str, InstagramUserCache]:
    if not igsids:
        return {}
    rows = db.query(InstagramUserCache).filter(
        InstagramUserCache.ig_account_id == ig_account_id,
        InstagramUserCache.ig_user_id.in_(igsids),
    ).all()
    return {row.ig_user_id: row for row in rows}
