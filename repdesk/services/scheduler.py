import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from ..config import settings
from ..logging_setup import log_event
from ..models import BusinessLocation, ConnectedAccount, InstagramConnection
from . import gbp, instagram_graph
from .inbox_sync import record_sync_error, sync_comments, sync_inbox
from .instagram_graph import GraphAPIError
from .reviews import sync_gbp_reviews
from .timestamps import as_utc

logger = logging.getLogger(__name__)

# Long-lived Instagram tokens last 60 days; refresh once fewer than this remain
TOKEN_REFRESH_WINDOW = timedelta(days=7)

def refresh_instagram_token(db: Session, connection: InstagramConnection) -> bool:
    expires_at = as_utc(connection.token_expires_at)
    if expires_at is None or expires_at - datetime.now(timezone.utc) > TOKEN_REFRESH_WINDOW:
        return False
    refreshed = instagram_graph.refresh_long_lived_token(connection.access_token)
    connection.access_token = refreshed["access_token"]
    connection.token_expires_at = refreshed["expires_at"]
    db.commit()
    log_event("ig_token_refreshed", business_location_id=connection.business_location_id)
    return True

def sync_all_instagram(db_factory: Callable[[], Session]) -> int:
    """
    Polls inbox and comments for every Instagram connection.
    A failing location is recorded in its sync state and the loop moves on.
    """
    db = db_factory()
    synced = 0
    try:
        connection_ids = [row[0] for row in db.query(InstagramConnection.id).all()]
        for connection_id in connection_ids:
            connection = db.get(InstagramConnection, connection_id)
            if not connection or not connection.access_token:
                continue
            location_id = connection.business_location_id
            try:
                refresh_instagram_token(db, connection)
                sync_inbox(db, connection)
                sync_comments(db, connection)
                synced += 1
            except GraphAPIError as e:
                log_event("scheduled_ig_sync_failed", level="warning", business_location_id=location_id, status=e.status, meta_error_code=e.code)
                record_sync_error(db, location_id, e)
            except Exception as e:
                logger.exception("Scheduled Instagram sync crashed for location %s", location_id)
                record_sync_error(db, location_id, e)
    finally:
        db.close()
    log_event("scheduled_ig_sync_complete", locations=synced)
    return synced

def sync_all_reviews(db_factory: Callable[[], Session]) -> int:
    db = db_factory()
    synced = 0
    try:
        location_ids = [
            row[0] for row in db.query(ConnectedAccount.business_location_id).filter(
                ConnectedAccount.provider == gbp.PROVIDER,
                ConnectedAccount.status == "connected",
            ).all()
        ]
        for location_id in location_ids:
            location = db.get(BusinessLocation, location_id)
            if not location or not location.google_location_name:
                continue
            try:
                sync_gbp_reviews(db, location)
                synced += 1
            except gbp.GBPAPIError as e:
                log_event("scheduled_review_sync_failed", level="warning", business_location_id=location_id, status=e.status, error=e.message)
                record_sync_error(db, location_id, e)
            except Exception as e:
                logger.exception("Scheduled review sync crashed for location %s", location_id)
                record_sync_error(db, location_id, e)
    finally:
        db.close()
    log_event("scheduled_review_sync_complete", locations=synced)
    return synced

_global_scheduler = None

def start_scheduler(db_factory: Callable[[], Session]) -> BackgroundScheduler:
    """Starts the polling jobs. Webhooks stay the primary feed; these fill gaps."""
    global _global_scheduler
    sched = BackgroundScheduler(timezone=pytz.timezone(settings.timezone))
    interval = max(1, settings.sync_interval_minutes)

    sched.add_job(
        sync_all_instagram,
        trigger="interval",
        minutes=interval,
        args=[db_factory],
        id="sync_instagram",
        replace_existing=True,
        max_instances=1,
    )
    sched.add_job(
        sync_all_reviews,
        trigger="interval",
        minutes=interval,
        args=[db_factory],
        id="sync_reviews",
        replace_existing=True,
        max_instances=1,
    )

    sched.start()
    _global_scheduler = sched
    log_event("scheduler_started", interval_minutes=interval)
    return sched

def stop_scheduler() -> None:
    global _global_scheduler
    if _global_scheduler:
        _global_scheduler.shutdown(wait=False)
        _global_scheduler = None
