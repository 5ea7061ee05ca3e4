"""Activity log sink for scheduling state changes."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Activity

logger = logging.getLogger(__name__)

EVENT_CREATED = "EVENT_CREATED"
EVENT_UPDATED = "EVENT_UPDATED"
EVENT_DELETED = "EVENT_DELETED"
SERIES_EXTENDED = "SERIES_EXTENDED"
MUSICIAN_ASSIGNED = "MUSICIAN_ASSIGNED"
MUSICIAN_SIGNED_UP = "MUSICIAN_SIGNED_UP"
MUSICIAN_REMOVED = "MUSICIAN_REMOVED"
ASSIGNMENT_ACCEPTED = "ASSIGNMENT_ACCEPTED"
ASSIGNMENT_DECLINED = "ASSIGNMENT_DECLINED"
GROUP_ASSIGNED = "GROUP_ASSIGNED"
GROUP_REMOVED = "GROUP_REMOVED"
MUSICIAN_INVITED = "MUSICIAN_INVITED"
INVITATION_ACCEPTED = "INVITATION_ACCEPTED"


def record_activity(
    session: Session,
    *,
    activity_type: str,
    description: str,
    church_id: str,
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Activity:
    """Append an activity row inside the caller's transaction."""
    activity = Activity(
        church_id=church_id,
        user_id=user_id,
        activity_type=activity_type,
        description=description,
        details=details or {},
    )
    session.add(activity)
    logger.info("%s: %s", activity_type, description)
    return activity


def recent_activities(
    session: Session, church_id: str, *, limit: int = 50
) -> list[Activity]:
    stmt = (
        select(Activity)
        .where(Activity.church_id == church_id)
        .order_by(Activity.created_at.desc())
        .limit(limit)
    )
    return list(session.scalars(stmt))
