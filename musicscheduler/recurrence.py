"""Recurring event expansion and scoped deletion.

Occurrences are computed in the church's local frame and anchored on the
seed: the k-th monthly instance is ``seed + k months`` rather than the
previous instance plus one month, so a series started on the 31st lands on
the last day of short months without drifting afterwards
(Jan 31, Feb 29, Mar 31, ...).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator, Sequence

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from . import activity
from .config import settings
from .errors import InvalidTimeInput, ValidationError
from .models import RECURRENCE_PATTERNS, Assignment, Event
from .timezones import from_local, local_date_of, to_local
from .utils import utcnow

logger = logging.getLogger(__name__)

DELETE_SCOPES = ("single", "future", "all")


@dataclass(frozen=True)
class RoleTemplate:
    role_name: str
    max_musicians: int = 1


@dataclass
class DeletionSummary:
    scope: str
    deleted_event_ids: list[str] = field(default_factory=list)
    orphaned_event_ids: list[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_event_ids)

    def as_dict(self) -> dict:
        return {
            "scope": self.scope,
            "deletedCount": self.deleted_count,
            "deletedEventIds": list(self.deleted_event_ids),
            "orphanedEventIds": list(self.orphaned_event_ids),
        }


def validate_pattern(pattern: str | None, interval_days: int | None = None):
    """Return a normalized ``(pattern, interval_days)`` pair."""
    if not pattern:
        raise ValidationError(
            "A recurrence pattern is required for recurring events",
            field="recurrencePattern",
        )
    normalized = pattern.strip().lower()
    if normalized not in RECURRENCE_PATTERNS:
        raise ValidationError(
            f"Unknown recurrence pattern '{pattern}'", field="recurrencePattern"
        )
    if normalized != "custom":
        return normalized, None
    if isinstance(interval_days, bool) or not isinstance(interval_days, int):
        raise ValidationError(
            "Custom recurrence needs an interval in days", field="recurrenceIntervalDays"
        )
    if interval_days < 1:
        raise ValidationError(
            "Custom recurrence interval must be at least one day",
            field="recurrenceIntervalDays",
        )
    return normalized, interval_days


def _offset_from_seed(pattern: str, index: int, interval_days: int | None):
    if pattern == "weekly":
        return timedelta(days=7 * index)
    if pattern == "biweekly":
        return timedelta(days=14 * index)
    if pattern == "monthly":
        return relativedelta(months=index)
    if pattern == "quarterly":
        return relativedelta(months=3 * index)
    return timedelta(days=interval_days * index)


def iter_occurrences(
    start: datetime,
    pattern: str,
    *,
    interval_days: int | None = None,
    offset_minutes: int = 0,
) -> Iterator[datetime]:
    """Yield the stored instants of a series, seed first, until the calendar runs out."""
    pattern, interval_days = validate_pattern(pattern, interval_days)
    local_start = to_local(start, offset_minutes)
    index = 0
    while True:
        try:
            local = local_start + _offset_from_seed(pattern, index, interval_days)
            instant = from_local(local, offset_minutes)
        except (OverflowError, ValueError, InvalidTimeInput):
            # Past year 9999.
            return
        yield instant
        index += 1


def expand_occurrences(
    start: datetime,
    pattern: str,
    *,
    until: date | None = None,
    interval_days: int | None = None,
    offset_minutes: int = 0,
    max_instances: int | None = None,
    after: datetime | None = None,
    horizon: date | None = None,
) -> list[datetime]:
    """Return occurrence instants in increasing order.

    ``until`` and ``horizon`` are inclusive local dates; ``after`` drops
    instants at or before it (the seed included when ``after == start``).
    At most ``max_instances`` instants are returned.
    """
    limit = settings.recurrence_max_instances if max_instances is None else max_instances
    bounds = [bound for bound in (until, horizon) if bound is not None]
    last_date = min(bounds) if bounds else None
    results: list[datetime] = []
    if limit <= 0:
        return results
    for instant in iter_occurrences(
        start, pattern, interval_days=interval_days, offset_minutes=offset_minutes
    ):
        if last_date is not None and local_date_of(instant, offset_minutes) > last_date:
            break
        if after is not None and instant <= after:
            continue
        results.append(instant)
        if len(results) >= limit:
            break
    return results


def church_offset(event: Event) -> int:
    if event.church is not None:
        return event.church.timezone_offset_minutes or 0
    return settings.default_timezone_offset_minutes


def role_template(event: Event) -> list[RoleTemplate]:
    """Role slots copied to new instances. Group slots are per-instance."""
    return [
        RoleTemplate(role_name=slot.role_name, max_musicians=slot.max_musicians or 1)
        for slot in event.assignments
        if not slot.is_group_slot
    ]


def _instantiate(
    session: Session, seed: Event, start: datetime, template: Sequence[RoleTemplate]
) -> Event:
    duration = seed.duration
    child = Event(
        church_id=seed.church_id,
        event_type_id=seed.event_type_id,
        name=seed.name,
        description=seed.description,
        location=seed.location,
        start_time=start,
        end_time=start + duration if duration is not None else None,
        status=seed.status,
        is_recurring=False,
        parent_event_id=seed.id,
    )
    for position, role in enumerate(template):
        child.assignments.append(
            Assignment(
                role_name=role.role_name,
                max_musicians=role.max_musicians,
                status="PENDING",
                position=position,
            )
        )
    session.add(child)
    return child


def materialize_series(
    session: Session,
    seed: Event,
    *,
    max_instances: int,
    after: datetime | None = None,
    horizon: date | None = None,
    template: Sequence[RoleTemplate] | None = None,
) -> list[Event]:
    """Create the children that fall after ``after`` and inside the bounds."""
    if not seed.is_seed:
        raise ValidationError("Only the first event of a series can be expanded")
    if seed.id is None:
        session.flush()
    template = role_template(seed) if template is None else list(template)
    after = after or seed.recurrence_generated_through or seed.start_time
    offset = church_offset(seed)
    starts = expand_occurrences(
        seed.start_time,
        seed.recurrence_pattern,
        until=seed.recurrence_end,
        interval_days=seed.recurrence_interval_days,
        offset_minutes=offset,
        max_instances=max_instances,
        after=after,
        horizon=horizon,
    )
    children = [_instantiate(session, seed, start, template) for start in starts]
    seed.recurrence_generated_through = starts[-1] if starts else after
    session.flush()
    if children:
        logger.info(
            "Materialized %d occurrence(s) of series %s (%s) through %s",
            len(children),
            seed.id,
            seed.recurrence_pattern,
            starts[-1].isoformat(),
        )
    return children


def configure_series(
    seed: Event,
    *,
    pattern: str | None,
    recurrence_end: date | None = None,
    interval_days: int | None = None,
) -> None:
    """Mark ``seed`` as the first event of a series after validating the rule."""
    if seed.parent_event_id:
        raise ValidationError(
            "An occurrence of a series cannot start its own series", field="isRecurring"
        )
    pattern, interval_days = validate_pattern(pattern, interval_days)
    if recurrence_end is not None:
        seed_date = local_date_of(seed.start_time, church_offset(seed))
        if recurrence_end < seed_date:
            raise ValidationError(
                "Recurrence end date is before the first event", field="recurrenceEnd"
            )
    seed.is_recurring = True
    seed.recurrence_pattern = pattern
    seed.recurrence_interval_days = interval_days
    seed.recurrence_end = recurrence_end


def create_series(
    session: Session,
    seed: Event,
    *,
    pattern: str | None,
    recurrence_end: date | None = None,
    interval_days: int | None = None,
    max_instances: int | None = None,
) -> list[Event]:
    """Turn ``seed`` into a series and materialize the first burst.

    The burst holds at most ``max_instances`` instances counting the seed.
    """
    configure_series(
        seed,
        pattern=pattern,
        recurrence_end=recurrence_end,
        interval_days=interval_days,
    )
    cap = settings.recurrence_max_instances if max_instances is None else max_instances
    seed.recurrence_generated_through = None
    session.flush()
    return materialize_series(
        session, seed, max_instances=cap - 1, after=seed.start_time
    )


def series_events(session: Session, event: Event) -> list[Event]:
    """Every instance of the series ``event`` belongs to, ordered by start."""
    root_id = event.series_root_id
    if root_id is None:
        return [event]
    stmt = (
        select(Event)
        .where(or_(Event.id == root_id, Event.parent_event_id == root_id))
        .order_by(Event.start_time, Event.id)
    )
    return list(session.scalars(stmt))


def children_of(session: Session, seed: Event) -> list[Event]:
    stmt = (
        select(Event)
        .where(Event.parent_event_id == seed.id)
        .order_by(Event.start_time, Event.id)
    )
    return list(session.scalars(stmt))


def regenerate_series(
    session: Session,
    seed: Event,
    *,
    now: datetime | None = None,
    max_instances: int | None = None,
) -> list[Event]:
    """Replace the upcoming children of ``seed`` after its rule changed.

    Past children are kept. Children that have not started yet are dropped
    and rebuilt from the seed's current rule and role template.
    """
    now = now or utcnow()
    cap = settings.recurrence_max_instances if max_instances is None else max_instances
    existing = children_of(session, seed)
    kept = [child for child in existing if child.start_time < now]
    for child in existing:
        if child.start_time >= now:
            session.delete(child)
    session.flush()
    watermark = max([seed.start_time, *(child.start_time for child in kept)])
    seed.recurrence_generated_through = watermark
    return materialize_series(
        session,
        seed,
        max_instances=max(cap - 1 - len(kept), 0),
        after=watermark,
    )


def end_series(session: Session, seed: Event) -> int:
    """Turn a seed back into a one-off event, deleting its children."""
    children = children_of(session, seed)
    for child in children:
        session.delete(child)
    seed.is_recurring = False
    seed.recurrence_pattern = None
    seed.recurrence_interval_days = None
    seed.recurrence_end = None
    seed.recurrence_generated_through = None
    session.flush()
    logger.info("Series %s stopped recurring; removed %d occurrence(s)", seed.id, len(children))
    return len(children)


def extend_series(
    session: Session,
    seed: Event,
    *,
    now: datetime | None = None,
    horizon_days: int | None = None,
    max_instances: int | None = None,
) -> list[Event]:
    """Materialize further occurrences of an open series up to the horizon."""
    if not seed.is_seed:
        return []
    now = now or utcnow()
    days = settings.recurrence_extension_days if horizon_days is None else horizon_days
    cap = settings.recurrence_max_instances if max_instances is None else max_instances
    offset = church_offset(seed)
    horizon = local_date_of(now + timedelta(days=days), offset)
    generated_through = seed.recurrence_generated_through or seed.start_time
    if seed.recurrence_end and local_date_of(generated_through, offset) >= seed.recurrence_end:
        return []
    children = materialize_series(
        session, seed, max_instances=cap, after=generated_through, horizon=horizon
    )
    if children:
        activity.record_activity(
            session,
            activity_type=activity.SERIES_EXTENDED,
            description=f"Added {len(children)} occurrence(s) of {seed.name}",
            church_id=seed.church_id,
            details={"eventId": seed.id, "count": len(children)},
        )
    return children


def delete_event(
    session: Session,
    event: Event,
    scope: str = "single",
    *,
    actor_id: str | None = None,
) -> DeletionSummary:
    """Delete ``event`` and, depending on ``scope``, its series siblings.

    Deleting a seed alone leaves its children as independent one-off events;
    no child is promoted to seed. Deleting the future of a series from a
    child also ends the seed's rule the day before, so later extension runs
    do not recreate the deleted occurrences.
    """
    scope = (scope or "single").strip().lower()
    if scope not in DELETE_SCOPES:
        raise ValidationError(
            f"Unknown delete scope '{scope}'; use single, future or all", field="scope"
        )
    root_id = event.series_root_id
    members = series_events(session, event) if root_id else [event]
    if root_id is None or scope == "single":
        targets = [event]
    elif scope == "future":
        targets = [member for member in members if member.start_time >= event.start_time]
    else:
        targets = members
    target_ids = {target.id for target in targets}
    summary = DeletionSummary(scope=scope)

    if root_id is not None and root_id in target_ids:
        for member in members:
            if member.parent_event_id == root_id and member.id not in target_ids:
                member.parent_event_id = None
                summary.orphaned_event_ids.append(member.id)

    if scope == "future" and root_id is not None and root_id not in target_ids:
        seed = next((member for member in members if member.id == root_id), None)
        if seed is not None:
            cutoff = local_date_of(event.start_time, church_offset(seed)) - timedelta(days=1)
            if seed.recurrence_end is None or seed.recurrence_end > cutoff:
                seed.recurrence_end = cutoff

    church_id = event.church_id
    name = event.name
    for target in targets:
        summary.deleted_event_ids.append(target.id)
        session.delete(target)
    session.flush()

    activity.record_activity(
        session,
        activity_type=activity.EVENT_DELETED,
        description=f"Deleted {summary.deleted_count} event(s) of {name} ({scope})",
        church_id=church_id,
        user_id=actor_id,
        details=summary.as_dict(),
    )
    return summary
