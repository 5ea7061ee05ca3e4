"""Role slot resolution for events.

A slot is open (no musician, no group), individually filled, or filled by
a group. A group slot is a single Assignment row carrying ``group_id`` and
the group's name as its role; the members who became holders when the
group was assigned are snapshotted in ``GroupAssignmentHolder`` rows and
released together with the slot.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import activity
from .errors import (
    AlreadyAssigned,
    ConcurrentModification,
    ConflictError,
    DuplicateRoleError,
    ForbiddenError,
    NotFoundError,
    SlotNotOpen,
    SlotOccupiedByGroup,
    ValidationError,
)
from .models import Assignment, Event, Group, GroupAssignmentHolder, User
from .recurrence import RoleTemplate
from .utils import utcnow

logger = logging.getLogger(__name__)

SIGNUP_CLOSED_STATUSES = {"tentative", "cancelled"}


def get_assignment(session: Session, assignment_id: str) -> Assignment:
    slot = session.get(Assignment, assignment_id)
    if slot is None:
        raise NotFoundError("Assignment", assignment_id)
    return slot


def _next_position(event: Event) -> int:
    return max((slot.position for slot in event.assignments), default=-1) + 1


def _clean_role(role_name: str | None, max_musicians: int | None) -> tuple[str, int]:
    name = (role_name or "").strip()
    if not name:
        raise ValidationError("Role name is required", field="roleName")
    if max_musicians is None:
        max_musicians = 1
    if isinstance(max_musicians, bool) or not isinstance(max_musicians, int):
        raise ValidationError("maxMusicians must be a whole number", field="maxMusicians")
    if max_musicians < 1:
        raise ValidationError("maxMusicians must be at least 1", field="maxMusicians")
    return name, max_musicians


def open_slot(
    session: Session,
    event: Event,
    role_name: str,
    *,
    max_musicians: int | None = 1,
    forbid_duplicates: bool = False,
    actor_id: str | None = None,
) -> Assignment:
    """Append an open slot to ``event``."""
    name, max_musicians = _clean_role(role_name, max_musicians)
    if forbid_duplicates and any(
        slot.role_name.lower() == name.lower()
        for slot in event.assignments
        if not slot.is_group_slot
    ):
        raise DuplicateRoleError(name)
    slot = Assignment(
        role_name=name,
        max_musicians=max_musicians,
        status="PENDING",
        position=_next_position(event),
    )
    event.assignments.append(slot)
    session.flush()
    logger.info("Opened role %s on event %s", name, event.id)
    return slot


def apply_role_template(
    session: Session,
    event: Event,
    roles: Sequence[RoleTemplate],
    *,
    forbid_duplicates: bool = False,
) -> None:
    """Make the event's open slots match ``roles``.

    Filled slots are never touched; a filled slot satisfies one template
    entry with the same role name.
    """
    if forbid_duplicates:
        seen: set[str] = set()
        for role in roles:
            key = role.role_name.strip().lower()
            if key in seen:
                raise DuplicateRoleError(role.role_name)
            seen.add(key)
    filled = [
        slot for slot in event.assignments if not slot.is_group_slot and not slot.is_open
    ]
    for slot in [slot for slot in event.assignments if slot.is_open]:
        event.assignments.remove(slot)
        session.delete(slot)
    unmatched = list(filled)
    for role in roles:
        name, max_musicians = _clean_role(role.role_name, role.max_musicians)
        match = next((slot for slot in unmatched if slot.role_name == name), None)
        if match is not None:
            unmatched.remove(match)
            match.max_musicians = max_musicians
            continue
        event.assignments.append(
            Assignment(
                role_name=name,
                max_musicians=max_musicians,
                status="PENDING",
                position=_next_position(event),
            )
        )
    session.flush()


def delete_slot(session: Session, slot: Assignment) -> None:
    event = slot.event
    event.assignments.remove(slot)
    if slot.group is not None and slot in slot.group.assignments:
        slot.group.assignments.remove(slot)
    session.delete(slot)
    session.flush()
    logger.info("Removed role %s from event %s", slot.role_name, event.id)


def group_holder_ids(event: Event) -> set[str]:
    """Musicians covered by a group on ``event``: past snapshot plus current members."""
    holders: set[str] = set()
    for slot in event.assignments:
        if not slot.is_group_slot:
            continue
        holders.update(holder.user_id for holder in slot.holders)
        if slot.group is not None:
            holders.update(slot.group.member_ids)
    return holders


def individual_holder_ids(event: Event) -> set[str]:
    return {slot.user_id for slot in event.assignments if slot.user_id}


def occupied_musicians(event: Event) -> set[str]:
    """Everyone who already fills a role on ``event``, directly or through a group."""
    return individual_holder_ids(event) | group_holder_ids(event)


def _load_groups(session: Session, church_id: str, group_ids: Iterable[str]) -> list[Group]:
    wanted = list(dict.fromkeys(group_ids))
    if not wanted:
        return []
    groups = {
        group.id: group
        for group in session.scalars(
            select(Group).where(Group.id.in_(wanted), Group.church_id == church_id)
        )
    }
    missing = [group_id for group_id in wanted if group_id not in groups]
    if missing:
        raise NotFoundError("Group", missing[0])
    return [groups[group_id] for group_id in wanted]


def eligible_individuals(
    session: Session,
    event: Event,
    pending_group_ids: Iterable[str] = (),
    *,
    allow_multi_role: bool = False,
) -> list[User]:
    """Church musicians who can still be given an individual role on ``event``.

    ``pending_group_ids`` is a transient selection that has not been saved;
    its members are excluded as if the groups were already assigned.
    """
    excluded = group_holder_ids(event)
    for group in _load_groups(session, event.church_id, pending_group_ids):
        excluded |= group.member_ids
    if not allow_multi_role:
        excluded |= individual_holder_ids(event)
    stmt = (
        select(User)
        .where(User.church_id == event.church_id)
        .order_by(User.last_name, User.first_name, User.email)
    )
    return [user for user in session.scalars(stmt) if user.id not in excluded]


def _check_can_fill(
    event: Event, slot: Assignment, musician: User, *, allow_multi_role: bool
) -> None:
    if musician.church_id != event.church_id:
        raise ValidationError("This musician belongs to another church", field="musicianId")
    if musician.id in group_holder_ids(event):
        raise AlreadyAssigned("This musician is already playing with a group on this event")
    if allow_multi_role:
        return
    if any(
        other.user_id == musician.id
        for other in event.assignments
        if other.id != slot.id
    ):
        raise AlreadyAssigned()


def _claim(
    session: Session,
    slot: Assignment,
    *,
    expected_user_id: str | None,
    user_id: str | None,
    status: str,
    now: datetime,
) -> None:
    """Compare-and-swap the slot holder; the row must still hold ``expected_user_id``."""
    session.flush()
    holder_matches = (
        Assignment.user_id.is_(None)
        if expected_user_id is None
        else Assignment.user_id == expected_user_id
    )
    stmt = (
        update(Assignment)
        .where(Assignment.id == slot.id, Assignment.group_id.is_(None), holder_matches)
        .values(
            user_id=user_id,
            status=status,
            assigned_at=now if user_id else None,
            responded_at=now if status == "ACCEPTED" else None,
        )
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.refresh(slot)
    if result.rowcount != 1:
        logger.warning("Lost the race for role %s (%s)", slot.id, slot.role_name)
        raise ConcurrentModification()


def assign_individual(
    session: Session,
    slot: Assignment,
    musician: User,
    *,
    status: str = "ACCEPTED",
    allow_multi_role: bool = False,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Assignment:
    """Give ``slot`` to ``musician``; a director may replace the current holder."""
    if status not in {"ACCEPTED", "PENDING"}:
        raise ValidationError("Assignments start as ACCEPTED or PENDING", field="status")
    if slot.is_group_slot:
        raise SlotOccupiedByGroup(slot.group.name if slot.group else None)
    if slot.user_id == musician.id:
        return slot
    event = slot.event
    _check_can_fill(event, slot, musician, allow_multi_role=allow_multi_role)
    _claim(
        session,
        slot,
        expected_user_id=slot.user_id,
        user_id=musician.id,
        status=status,
        now=now or utcnow(),
    )
    activity.record_activity(
        session,
        activity_type=activity.MUSICIAN_ASSIGNED,
        description=f"{musician.full_name} assigned as {slot.role_name} for {event.name}",
        church_id=event.church_id,
        user_id=actor_id,
        details={"eventId": event.id, "assignmentId": slot.id, "musicianId": musician.id},
    )
    session.flush()
    return slot


def remove_individual(
    session: Session, slot: Assignment, *, actor_id: str | None = None
) -> Assignment:
    """Reopen an individually filled slot. Open slots are left as they are."""
    if slot.is_group_slot:
        raise SlotOccupiedByGroup(slot.group.name if slot.group else None)
    if slot.is_open:
        return slot
    previous = slot.user
    slot.user = None
    slot.status = "PENDING"
    slot.assigned_at = None
    slot.responded_at = None
    session.flush()
    event = slot.event
    activity.record_activity(
        session,
        activity_type=activity.MUSICIAN_REMOVED,
        description=(
            f"{previous.full_name if previous else 'Musician'} removed from "
            f"{slot.role_name} for {event.name}"
        ),
        church_id=event.church_id,
        user_id=actor_id,
        details={"eventId": event.id, "assignmentId": slot.id},
    )
    return slot


def group_slot(event: Event, group_id: str) -> Assignment | None:
    return next((slot for slot in event.assignments if slot.group_id == group_id), None)


def assign_group(
    session: Session,
    event: Event,
    group: Group,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Assignment:
    """Put ``group`` on ``event``. Assigning the same group twice is a no-op."""
    if group.church_id != event.church_id:
        raise ValidationError("This group belongs to another church", field="groupId")
    existing = group_slot(event, group.id)
    if existing is not None:
        return existing
    now = now or utcnow()
    already_covered = occupied_musicians(event)
    slot = Assignment(
        role_name=group.name,
        status="ACCEPTED",
        max_musicians=max(len(group.members), 1),
        group=group,
        position=_next_position(event),
        assigned_at=now,
        responded_at=now,
    )
    for user_id in sorted(group.member_ids - already_covered):
        slot.holders.append(GroupAssignmentHolder(user_id=user_id))
    event.assignments.append(slot)
    session.flush()
    activity.record_activity(
        session,
        activity_type=activity.GROUP_ASSIGNED,
        description=f"{group.name} assigned to {event.name}",
        church_id=event.church_id,
        user_id=actor_id,
        details={
            "eventId": event.id,
            "groupId": group.id,
            "holderIds": [holder.user_id for holder in slot.holders],
        },
    )
    return slot


def remove_group(
    session: Session, event: Event, group: Group, *, actor_id: str | None = None
) -> bool:
    """Release every holder of ``group`` on ``event``. Returns False if it was not assigned."""
    slot = group_slot(event, group.id)
    if slot is None:
        return False
    event.assignments.remove(slot)
    if slot in group.assignments:
        group.assignments.remove(slot)
    session.delete(slot)
    session.flush()
    activity.record_activity(
        session,
        activity_type=activity.GROUP_REMOVED,
        description=f"{group.name} removed from {event.name}",
        church_id=event.church_id,
        user_id=actor_id,
        details={"eventId": event.id, "groupId": group.id},
    )
    return True


def set_event_groups(
    session: Session,
    event: Event,
    group_ids: Iterable[str],
    *,
    actor_id: str | None = None,
) -> list[Assignment]:
    """Replace the groups on ``event`` with ``group_ids``."""
    wanted = _load_groups(session, event.church_id, group_ids)
    wanted_ids = {group.id for group in wanted}
    for slot in [slot for slot in event.assignments if slot.is_group_slot]:
        if slot.group_id not in wanted_ids:
            remove_group(session, event, slot.group, actor_id=actor_id)
    for group in wanted:
        assign_group(session, event, group, actor_id=actor_id)
    return [slot for slot in event.assignments if slot.is_group_slot]


def signup(
    session: Session,
    slot: Assignment,
    musician: User,
    *,
    caller_id: str,
    now: datetime | None = None,
) -> Assignment:
    """Self-service fill of an open slot by the calling musician."""
    if caller_id != musician.id:
        raise ForbiddenError("Musicians can only sign themselves up")
    now = now or utcnow()
    event = slot.event
    if musician.church_id != event.church_id:
        raise ForbiddenError("This event belongs to another church")
    if (event.status or "").lower() in SIGNUP_CLOSED_STATUSES:
        raise SlotNotOpen("Signups are closed for tentative or cancelled events")
    if event.start_time <= now:
        raise SlotNotOpen("This event has already started")
    if slot.is_group_slot:
        raise SlotOccupiedByGroup(slot.group.name if slot.group else None)
    if slot.user_id == musician.id:
        return slot
    if slot.user_id is not None:
        raise SlotNotOpen()
    if musician.id in occupied_musicians(event):
        raise AlreadyAssigned("You are already signed up for this event")
    _claim(
        session,
        slot,
        expected_user_id=None,
        user_id=musician.id,
        status="ACCEPTED",
        now=now,
    )
    activity.record_activity(
        session,
        activity_type=activity.MUSICIAN_SIGNED_UP,
        description=f"{musician.full_name} signed up as {slot.role_name} for {event.name}",
        church_id=event.church_id,
        user_id=musician.id,
        details={"eventId": event.id, "assignmentId": slot.id},
    )
    session.flush()
    return slot


def _check_holder(slot: Assignment, musician_id: str | None) -> None:
    if musician_id is not None and slot.user_id != musician_id:
        raise ForbiddenError("Only the assigned musician can respond to this role")


def accept(
    session: Session,
    slot: Assignment,
    *,
    musician_id: str | None = None,
    now: datetime | None = None,
) -> Assignment:
    """Confirm a pending assignment. Accepting twice is a no-op."""
    if slot.is_group_slot:
        raise SlotOccupiedByGroup(slot.group.name if slot.group else None)
    if slot.is_open:
        raise ConflictError("Nobody holds this role yet, so there is nothing to accept")
    _check_holder(slot, musician_id)
    if slot.status == "ACCEPTED":
        return slot
    slot.status = "ACCEPTED"
    slot.responded_at = now or utcnow()
    session.flush()
    event = slot.event
    activity.record_activity(
        session,
        activity_type=activity.ASSIGNMENT_ACCEPTED,
        description=f"{slot.user.full_name} accepted {slot.role_name} for {event.name}",
        church_id=event.church_id,
        user_id=slot.user_id,
        details={"eventId": event.id, "assignmentId": slot.id},
    )
    return slot


def decline(
    session: Session,
    slot: Assignment,
    *,
    musician_id: str | None = None,
    now: datetime | None = None,
) -> Assignment:
    """Give the role back; the slot returns to open. Declining an open slot is a no-op."""
    if slot.is_group_slot:
        raise SlotOccupiedByGroup(slot.group.name if slot.group else None)
    if slot.is_open:
        return slot
    _check_holder(slot, musician_id)
    musician = slot.user
    slot.user = None
    slot.status = "PENDING"
    slot.assigned_at = None
    slot.responded_at = now or utcnow()
    session.flush()
    event = slot.event
    activity.record_activity(
        session,
        activity_type=activity.ASSIGNMENT_DECLINED,
        description=(
            f"{musician.full_name if musician else 'Musician'} declined "
            f"{slot.role_name} for {event.name}"
        ),
        church_id=event.church_id,
        user_id=musician.id if musician else None,
        details={"eventId": event.id, "assignmentId": slot.id},
    )
    return slot
