"""Periodic maintenance: series extension, invitation expiry, vacuum."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, select

from .config import settings
from .database import engine, get_session
from .invitations import expire_lapsed_invitations
from .models import Event
from .recurrence import extend_series
from .utils import utcnow

# Use uvicorn's error logger so maintenance messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

SERIES_BATCH_SIZE = 200


def extend_all_series(*, now: datetime | None = None) -> dict:
    """Top up every open series to ``recurrence_extension_days`` from now."""
    stats = {"series_checked": 0, "series_extended": 0, "occurrences_created": 0}
    now = now or utcnow()
    logger.info(
        "Series extension started (horizon=%d days, cap=%d per run)",
        settings.recurrence_extension_days,
        settings.recurrence_max_instances,
    )
    with get_session() as session:
        last_seen: str | None = None
        while True:
            query = (
                select(Event)
                .where(and_(Event.is_recurring.is_(True), Event.parent_event_id.is_(None)))
                .order_by(Event.id)
            )
            if last_seen:
                query = query.where(Event.id > last_seen)
            batch = session.scalars(query.limit(SERIES_BATCH_SIZE)).all()
            if not batch:
                break
            for seed in batch:
                stats["series_checked"] += 1
                created = extend_series(session, seed, now=now)
                if created:
                    stats["series_extended"] += 1
                    stats["occurrences_created"] += len(created)
                    logger.debug(
                        "Extended series %s (%s) by %d occurrence(s)",
                        seed.id,
                        seed.name,
                        len(created),
                    )
            last_seen = batch[-1].id
            session.commit()

    logger.info(
        "Series extension finished: checked=%d, extended=%d, created=%d",
        stats["series_checked"],
        stats["series_extended"],
        stats["occurrences_created"],
    )
    return stats


def sweep_expired_invitations(*, now: datetime | None = None) -> int:
    with get_session() as session:
        expired = expire_lapsed_invitations(session, now=now)
    if expired:
        logger.info("Marked %d lapsed invitation(s) as expired", expired)
    return expired


def vacuum_database() -> None:
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
