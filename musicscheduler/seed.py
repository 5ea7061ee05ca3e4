"""Development helpers for populating a fake church roster and schedule."""

from __future__ import annotations

import random
from datetime import date, datetime, time, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from . import assignments
from .crud import create_church, create_event, create_group, create_user
from .database import get_session
from .errors import ConflictError
from .models import Church, User
from .recurrence import RoleTemplate
from .storage import init_db
from .timezones import to_storage_instant

_service_names = [
    "Sunday Worship",
    "Evening Service",
    "Midweek Prayer",
    "Youth Night",
    "Choir Rehearsal",
]
_group_suffixes = ["Praise Team", "Choir", "Band", "Ensemble", "Singers"]
_roles = [
    RoleTemplate("Worship Leader"),
    RoleTemplate("Piano"),
    RoleTemplate("Guitar"),
    RoleTemplate("Bass"),
    RoleTemplate("Drums"),
    RoleTemplate("Vocals", max_musicians=3),
]
_patterns = ["weekly", "weekly", "biweekly", "monthly"]


def seed_fake_data(
    *,
    musician_count: int = 12,
    group_count: int = 2,
    event_count: int = 3,
    timezone_offset_minutes: int = -360,
    recurring_percentage: int = 50,
) -> dict[str, int]:
    """Populate the SQLite database with a synthetic church and its schedule."""
    if musician_count < 0:
        raise ValueError("musician_count must be >= 0")
    if group_count < 0:
        raise ValueError("group_count must be >= 0")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if not 0 <= recurring_percentage <= 100:
        raise ValueError("recurring_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    stats = {"churches": 1, "musicians": 0, "groups": 0, "events": 0, "assignments": 0}

    with get_session() as session:
        church = create_church(
            session,
            name=f"{fake.city()} Community Church",
            timezone_offset_minutes=timezone_offset_minutes,
        )
        director = _create_person(session, fake, church, role="DIRECTOR")
        musicians = [
            _create_person(session, fake, church) for _ in range(musician_count)
        ]
        stats["musicians"] = len(musicians)

        pool = list(musicians)
        random.shuffle(pool)
        for index in range(group_count):
            members = pool[index * 3 : index * 3 + random.randint(2, 3)]
            create_group(
                session,
                church=church,
                name=f"{fake.first_name()} {random.choice(_group_suffixes)} {index + 1}",
                member_ids=[member.id for member in members],
            )
            stats["groups"] += 1

        for _ in range(event_count):
            recurring = random.randint(1, 100) <= recurring_percentage
            event, children = create_event(
                session,
                church=church,
                name=random.choice(_service_names),
                description=fake.sentence(),
                location=fake.address().replace("\n", ", "),
                start_time=_random_start(church),
                end_time=None,
                roles=random.sample(_roles, k=random.randint(2, len(_roles))),
                is_recurring=recurring,
                recurrence_pattern=random.choice(_patterns) if recurring else None,
                recurrence_end=date.today() + timedelta(days=120) if recurring else None,
                actor_id=director.id,
            )
            stats["events"] += 1 + len(children)
            stats["assignments"] += _fill_some_slots(session, event, musicians)

    return stats


def _create_person(
    session: Session, fake: Faker, church: Church, *, role: str = "MUSICIAN"
) -> User:
    for _ in range(20):
        first_name = fake.first_name()
        last_name = fake.last_name()
        email = f"{first_name}.{last_name}.{random.randint(1, 9999)}@example.org".lower()
        try:
            return create_user(
                session,
                church=church,
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                phone=fake.phone_number()[:32],
            )
        except ConflictError:
            continue
    raise RuntimeError("Failed to create a unique musician email")


def _random_start(church: Church) -> datetime:
    day = date.today() + timedelta(days=random.randint(1, 21))
    local_time = time(hour=random.choice([9, 10, 11, 18, 19]))
    return to_storage_instant(day, local_time, church.timezone_offset_minutes)


def _fill_some_slots(session: Session, event, musicians: list[User]) -> int:
    filled = 0
    candidates = list(musicians)
    random.shuffle(candidates)
    for slot in event.assignments:
        if not slot.is_open or not candidates or random.random() < 0.4:
            continue
        musician = candidates.pop()
        assignments.assign_individual(
            session,
            slot,
            musician,
            status=random.choice(["ACCEPTED", "PENDING"]),
        )
        filled += 1
    return filled
