"""CRUD helpers for churches, musicians, events, and groups."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import activity, assignments, recurrence
from .errors import ConflictError, NotFoundError, ValidationError
from .models import EVENT_STATUSES, USER_ROLES, Church, Event, EventType, Group, GroupMember, User
from .recurrence import RoleTemplate
from .security import hash_password
from .timezones import validate_offset
from .utils import is_valid_email, normalize_email, utcnow

logger = logging.getLogger(__name__)

RECURRENCE_FIELDS = ("is_recurring", "recurrence_pattern", "recurrence_end", "recurrence_interval_days")


def get_church(session: Session, church_id: str) -> Church:
    church = session.get(Church, church_id)
    if church is None:
        raise NotFoundError("Church", church_id)
    return church


def create_church(
    session: Session, *, name: str, timezone_offset_minutes: int = 0
) -> Church:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Church name is required", field="name")
    church = Church(name=cleaned, timezone_offset_minutes=validate_offset(timezone_offset_minutes))
    session.add(church)
    session.flush()
    return church


def get_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("Musician", user_id)
    return user


def create_user(
    session: Session,
    *,
    church: Church,
    email: str,
    first_name: str,
    last_name: str,
    role: str = "MUSICIAN",
    is_verified: bool = True,
    phone: str | None = None,
    password: str | None = None,
) -> User:
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        raise ValidationError(f"Invalid email address '{email}'", field="email")
    if role not in USER_ROLES:
        raise ValidationError(f"Unknown role '{role}'", field="role")
    existing = session.scalars(
        select(User).where(User.email == normalized, User.church_id == church.id)
    ).first()
    if existing is not None:
        raise ConflictError(f"{normalized} is already a member of {church.name}")
    user = User(
        church_id=church.id,
        email=normalized,
        first_name=(first_name or "").strip(),
        last_name=(last_name or "").strip(),
        role=role,
        is_verified=is_verified,
        phone=phone,
        password_hash=hash_password(password) if password else None,
    )
    session.add(user)
    session.flush()
    return user


def list_musicians(
    session: Session, church_id: str, *, role: str | None = None
) -> Sequence[User]:
    stmt = (
        select(User)
        .where(User.church_id == church_id)
        .order_by(User.last_name, User.first_name, User.email)
    )
    if role:
        stmt = stmt.where(User.role == role.upper())
    return session.scalars(stmt).all()


def ensure_event_type(
    session: Session, *, church_id: str, name: str, color: str = "#3B82F6"
) -> EventType:
    """Return the church's event type with ``name``, creating it if needed."""
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Event type name is required", field="eventTypeName")
    event_type = session.scalars(
        select(EventType).where(EventType.church_id == church_id, EventType.name == cleaned)
    ).first()
    if event_type is None:
        event_type = EventType(church_id=church_id, name=cleaned, color=color)
        session.add(event_type)
        session.flush()
    return event_type


def get_event(session: Session, event_id: str, *, church_id: str | None = None) -> Event:
    event = session.get(Event, event_id)
    if event is None or (church_id is not None and event.church_id != church_id):
        raise NotFoundError("Event", event_id)
    return event


def list_events(
    session: Session,
    church_id: str,
    *,
    status: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> Sequence[Event]:
    """Events of a church ordered by start, optionally filtered by status and window."""
    stmt = (
        select(Event)
        .where(Event.church_id == church_id)
        .order_by(Event.start_time.asc(), Event.id.asc())
    )
    if status:
        stmt = stmt.where(Event.status == _clean_status(status))
    if start is not None:
        stmt = stmt.where(Event.start_time >= start)
    if end is not None:
        stmt = stmt.where(Event.start_time <= end)
    return session.scalars(stmt).all()


def _clean_status(status: str | None) -> str:
    cleaned = (status or "confirmed").strip().lower()
    if cleaned not in EVENT_STATUSES:
        raise ValidationError(f"Unknown event status '{status}'", field="status")
    return cleaned


def _check_times(start_time: datetime | None, end_time: datetime | None) -> None:
    if start_time is None:
        raise ValidationError("Start time is required", field="startTime")
    if end_time is not None and end_time < start_time:
        raise ValidationError("End time is before the start time", field="endTime")


def _check_event_type(session: Session, church_id: str, event_type_id: str | None) -> None:
    if event_type_id is None:
        return
    event_type = session.get(EventType, event_type_id)
    if event_type is None or event_type.church_id != church_id:
        raise NotFoundError("Event type", event_type_id)


def create_event(
    session: Session,
    *,
    church: Church,
    name: str,
    start_time: datetime,
    end_time: datetime | None = None,
    description: str | None = None,
    location: str | None = None,
    status: str | None = "confirmed",
    event_type_id: str | None = None,
    roles: Sequence[RoleTemplate] = (),
    group_ids: Iterable[str] = (),
    is_recurring: bool = False,
    recurrence_pattern: str | None = None,
    recurrence_end: date | None = None,
    recurrence_interval_days: int | None = None,
    forbid_duplicate_roles: bool = False,
    actor_id: str | None = None,
) -> tuple[Event, list[Event]]:
    """Create an event with its slots; a recurring one also gets its first occurrences."""
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise ValidationError("Event name is required", field="name")
    _check_times(start_time, end_time)
    _check_event_type(session, church.id, event_type_id)
    event = Event(
        church=church,
        name=cleaned_name,
        description=description,
        location=location,
        start_time=start_time,
        end_time=end_time,
        status=_clean_status(status),
        event_type_id=event_type_id,
    )
    session.add(event)
    session.flush()
    assignments.apply_role_template(
        session, event, roles, forbid_duplicates=forbid_duplicate_roles
    )
    group_ids = list(group_ids)
    if group_ids:
        assignments.set_event_groups(session, event, group_ids, actor_id=actor_id)

    children: list[Event] = []
    if is_recurring:
        children = recurrence.create_series(
            session,
            event,
            pattern=recurrence_pattern,
            recurrence_end=recurrence_end,
            interval_days=recurrence_interval_days,
        )
    activity.record_activity(
        session,
        activity_type=activity.EVENT_CREATED,
        description=(
            f"Created {cleaned_name}"
            + (f" with {len(children)} more occurrence(s)" if children else "")
        ),
        church_id=church.id,
        user_id=actor_id,
        details={"eventId": event.id, "occurrences": len(children) + 1},
    )
    return event, children


def update_event(
    session: Session,
    event: Event,
    changes: Mapping[str, Any],
    *,
    forbid_duplicate_roles: bool = False,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Event:
    """Apply a partial update.

    Changing the recurrence rule or the start of a series' first event
    rebuilds the occurrences that have not started yet. Turning recurrence
    off removes the occurrences.
    """
    now = now or utcnow()
    if "name" in changes:
        cleaned = (changes["name"] or "").strip()
        if not cleaned:
            raise ValidationError("Event name is required", field="name")
        event.name = cleaned
    if "status" in changes:
        event.status = _clean_status(changes["status"])
    if "event_type_id" in changes:
        _check_event_type(session, event.church_id, changes["event_type_id"])
        event.event_type_id = changes["event_type_id"]
    for key in ("description", "location"):
        if key in changes:
            setattr(event, key, changes[key])
    start_moved = "start_time" in changes and changes["start_time"] != event.start_time
    if "start_time" in changes:
        event.start_time = changes["start_time"]
    if "end_time" in changes:
        event.end_time = changes["end_time"]
    _check_times(event.start_time, event.end_time)

    if "roles" in changes and changes["roles"] is not None:
        assignments.apply_role_template(
            session, event, changes["roles"], forbid_duplicates=forbid_duplicate_roles
        )

    wants_recurring = changes.get("is_recurring", event.is_recurring)
    rule_changed = any(key in changes for key in RECURRENCE_FIELDS[1:])
    if wants_recurring:
        pattern = changes.get("recurrence_pattern", event.recurrence_pattern)
        if not pattern:
            raise ValidationError(
                "A recurrence pattern is required for recurring events",
                field="recurrencePattern",
            )
        if rule_changed or start_moved or not event.is_recurring:
            recurrence.configure_series(
                event,
                pattern=pattern,
                recurrence_end=changes.get("recurrence_end", event.recurrence_end),
                interval_days=changes.get(
                    "recurrence_interval_days", event.recurrence_interval_days
                ),
            )
            session.flush()
            recurrence.regenerate_series(session, event, now=now)
    elif event.is_seed:
        recurrence.end_series(session, event)

    session.flush()
    activity.record_activity(
        session,
        activity_type=activity.EVENT_UPDATED,
        description=f"Updated {event.name}",
        church_id=event.church_id,
        user_id=actor_id,
        details={"eventId": event.id, "fields": sorted(changes.keys())},
    )
    return event


def get_group(session: Session, group_id: str, *, church_id: str | None = None) -> Group:
    group = session.get(Group, group_id)
    if group is None or (church_id is not None and group.church_id != church_id):
        raise NotFoundError("Group", group_id)
    return group


def list_groups(session: Session, church_id: str) -> Sequence[Group]:
    stmt = select(Group).where(Group.church_id == church_id).order_by(Group.name.asc())
    return session.scalars(stmt).all()


def _check_group_name(session: Session, church_id: str, name: str, *, group_id: str | None = None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Group name is required", field="name")
    clash = session.scalars(
        select(Group).where(Group.church_id == church_id, Group.name == cleaned)
    ).first()
    if clash is not None and clash.id != group_id:
        raise ConflictError(f"A group named '{cleaned}' already exists")
    return cleaned


def set_group_members(session: Session, group: Group, member_ids: Iterable[str]) -> None:
    wanted = list(dict.fromkeys(member_ids))
    if wanted:
        users = session.scalars(
            select(User).where(User.id.in_(wanted), User.church_id == group.church_id)
        ).all()
        found = {user.id for user in users}
        missing = [user_id for user_id in wanted if user_id not in found]
        if missing:
            raise ValidationError(
                f"Musician {missing[0]} is not part of this church", field="memberIds"
            )
    current = {member.user_id: member for member in group.members}
    for user_id, member in current.items():
        if user_id not in wanted:
            group.members.remove(member)
    for user_id in wanted:
        if user_id not in current:
            group.members.append(GroupMember(user_id=user_id))
    session.flush()


def create_group(
    session: Session,
    *,
    church: Church,
    name: str,
    description: str | None = None,
    member_ids: Iterable[str] = (),
) -> Group:
    group = Group(
        church_id=church.id,
        name=_check_group_name(session, church.id, name),
        description=description,
    )
    session.add(group)
    session.flush()
    set_group_members(session, group, member_ids)
    logger.info("Created group %s with %d member(s)", group.name, len(group.members))
    return group


def update_group(
    session: Session,
    group: Group,
    *,
    name: str | None = None,
    description: str | None = None,
    member_ids: Iterable[str] | None = None,
) -> Group:
    if name is not None:
        group.name = _check_group_name(session, group.church_id, name, group_id=group.id)
    if description is not None:
        group.description = description
    if member_ids is not None:
        set_group_members(session, group, member_ids)
    session.flush()
    return group


def delete_group(session: Session, group: Group) -> None:
    """Delete a group with its memberships and every slot it holds. Members stay."""
    name = group.name
    released = len(group.assignments)
    session.delete(group)
    session.flush()
    logger.info("Deleted group %s, releasing %d event slot(s)", name, released)
