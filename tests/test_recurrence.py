from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select

from musicscheduler import crud, recurrence
from musicscheduler.errors import ValidationError
from musicscheduler.models import Activity, Event
from musicscheduler.recurrence import RoleTemplate, expand_occurrences
from musicscheduler.timezones import to_display, to_storage_instant

CENTRAL = -360


def _local_dates(instants, offset=CENTRAL):
    return [to_display(instant, offset).date for instant in instants]


def _make_series(session, church, *, pattern="weekly", end=date(2025, 1, 28), **kwargs):
    event, children = crud.create_event(
        session,
        church=church,
        name="Sunday Worship",
        start_time=to_storage_instant("2025-01-07", "19:00", CENTRAL),
        end_time=to_storage_instant("2025-01-07", "20:30", CENTRAL),
        roles=[RoleTemplate("Piano"), RoleTemplate("Vocals", max_musicians=2)],
        is_recurring=True,
        recurrence_pattern=pattern,
        recurrence_end=end,
        **kwargs,
    )
    session.commit()
    return event, children


def test_weekly_end_date_is_inclusive_in_church_frame():
    start = to_storage_instant("2025-01-07", "19:00", CENTRAL)
    instants = expand_occurrences(
        start, "weekly", until=date(2025, 1, 28), offset_minutes=CENTRAL
    )
    assert _local_dates(instants) == [
        date(2025, 1, 7),
        date(2025, 1, 14),
        date(2025, 1, 21),
        date(2025, 1, 28),
    ]
    # The last instance falls on Jan 29 in UTC and is still included.
    assert instants[-1] == datetime(2025, 1, 29, 1, 0)


def test_series_stops_at_the_end_of_the_calendar():
    start = to_storage_instant("9999-12-07", "19:00", CENTRAL)
    instants = expand_occurrences(start, "weekly", offset_minutes=CENTRAL, max_instances=52)
    assert _local_dates(instants) == [
        date(9999, 12, 7),
        date(9999, 12, 14),
        date(9999, 12, 21),
        date(9999, 12, 28),
    ]

    monthly = expand_occurrences(start, "monthly", offset_minutes=CENTRAL, max_instances=12)
    assert monthly == [start]


def test_monthly_is_anchored_on_the_first_event_in_local_frame():
    start = to_storage_instant("2025-01-30", "19:00", CENTRAL)
    instants = expand_occurrences(start, "monthly", offset_minutes=CENTRAL, max_instances=4)
    assert _local_dates(instants) == [
        date(2025, 1, 30),
        date(2025, 2, 28),
        date(2025, 3, 30),
        date(2025, 4, 30),
    ]
    assert all(to_display(instant, CENTRAL).time.hour == 19 for instant in instants)


def test_month_end_clamps_without_drifting():
    start = datetime(2024, 1, 31, 16, 0)
    instants = expand_occurrences(start, "monthly", max_instances=4)
    assert [instant.date() for instant in instants] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]


def test_quarterly_steps_three_calendar_months():
    start = datetime(2024, 11, 30, 15, 0)
    instants = expand_occurrences(start, "quarterly", max_instances=3)
    assert [instant.date() for instant in instants] == [
        date(2024, 11, 30),
        date(2025, 2, 28),
        date(2025, 5, 30),
    ]


def test_biweekly_and_custom_spacing():
    start = datetime(2025, 3, 2, 15, 0)
    biweekly = expand_occurrences(start, "biweekly", max_instances=3)
    custom = expand_occurrences(start, "custom", interval_days=10, max_instances=3)
    assert [b - a for a, b in zip(biweekly, biweekly[1:])] == [timedelta(days=14)] * 2
    assert [b - a for a, b in zip(custom, custom[1:])] == [timedelta(days=10)] * 2


def test_after_excludes_the_seed_and_earlier_instances():
    start = datetime(2025, 3, 2, 15, 0)
    instants = expand_occurrences(start, "weekly", after=start, max_instances=2)
    assert instants == [start + timedelta(days=7), start + timedelta(days=14)]


@pytest.mark.parametrize(
    "pattern, interval",
    [(None, None), ("daily", None), ("custom", None), ("custom", 0), ("custom", -3)],
)
def test_invalid_rules_are_rejected(pattern, interval):
    with pytest.raises(ValidationError):
        recurrence.validate_pattern(pattern, interval)


def test_create_series_materializes_children_with_open_roles(session, church):
    seed, children = _make_series(session, church)

    assert seed.is_seed
    assert len(children) == 3
    assert {child.parent_event_id for child in children} == {seed.id}
    assert _local_dates(child.start_time for child in children) == [
        date(2025, 1, 14),
        date(2025, 1, 21),
        date(2025, 1, 28),
    ]
    for child in children:
        assert not child.is_recurring
        assert child.end_time - child.start_time == timedelta(minutes=90)
        assert [(slot.role_name, slot.max_musicians) for slot in child.assignments] == [
            ("Piano", 1),
            ("Vocals", 2),
        ]
        assert all(slot.is_open for slot in child.assignments)
    assert seed.recurrence_generated_through == children[-1].start_time


def test_series_without_end_stops_at_instance_cap(session, church):
    seed, children = _make_series(session, church, end=None)
    assert len(children) + 1 == 104


def test_end_before_start_is_rejected(session, church):
    with pytest.raises(ValidationError) as excinfo:
        _make_series(session, church, end=date(2025, 1, 6))
    assert excinfo.value.field == "recurrenceEnd"


def test_delete_single_child_leaves_rest_of_series(session, church):
    seed, children = _make_series(session, church)
    summary = recurrence.delete_event(session, children[0], "single")
    session.commit()

    assert summary.deleted_event_ids == [children[0].id]
    remaining = recurrence.series_events(session, seed)
    assert [event.id for event in remaining] == [seed.id, children[1].id, children[2].id]


def test_delete_seed_alone_orphans_children(session, church):
    seed, children = _make_series(session, church)
    summary = recurrence.delete_event(session, seed, "single")
    session.commit()

    assert summary.as_dict() == {
        "scope": "single",
        "deletedCount": 1,
        "deletedEventIds": [seed.id],
        "orphanedEventIds": [child.id for child in children],
    }
    for child in children:
        refreshed = session.get(Event, child.id)
        assert refreshed.parent_event_id is None
        assert not refreshed.is_recurring
        assert len(refreshed.assignments) == 2


def test_delete_future_from_child_trims_the_rule(session, church):
    seed, children = _make_series(session, church)
    summary = recurrence.delete_event(session, children[1], "future")
    session.commit()

    assert summary.deleted_count == 2
    assert set(summary.deleted_event_ids) == {children[1].id, children[2].id}
    assert seed.recurrence_end == date(2025, 1, 20)
    remaining = recurrence.series_events(session, seed)
    assert [event.id for event in remaining] == [seed.id, children[0].id]


def test_delete_all_removes_every_instance(session, church):
    seed, children = _make_series(session, church)
    summary = recurrence.delete_event(session, children[2], "all")
    session.commit()

    assert summary.deleted_count == 4
    assert session.scalars(select(Event)).all() == []
    logged = session.scalars(
        select(Activity).where(Activity.activity_type == "EVENT_DELETED")
    ).one()
    assert logged.details["deletedCount"] == 4


def test_scope_on_one_off_event_only_deletes_it(session, church):
    event, _ = crud.create_event(
        session,
        church=church,
        name="Christmas Eve",
        start_time=datetime(2025, 12, 25, 0, 0),
    )
    other, _ = crud.create_event(
        session, church=church, name="Easter", start_time=datetime(2026, 4, 5, 15, 0)
    )
    summary = recurrence.delete_event(session, event, "all")
    session.commit()
    assert summary.deleted_event_ids == [event.id]
    assert session.get(Event, other.id) is not None


def test_unknown_delete_scope_is_rejected(session, church):
    seed, _ = _make_series(session, church)
    with pytest.raises(ValidationError):
        recurrence.delete_event(session, seed, "everything")


def test_extend_series_tops_up_to_horizon_once(session, church):
    seed, _ = crud.create_event(
        session,
        church=church,
        name="Choir Rehearsal",
        start_time=to_storage_instant("2025-01-07", "19:00", CENTRAL),
        roles=[RoleTemplate("Accompanist")],
    )
    initial = recurrence.create_series(session, seed, pattern="weekly", max_instances=3)
    session.commit()
    assert len(initial) == 2

    added = recurrence.extend_series(
        session, seed, now=seed.start_time, horizon_days=60
    )
    session.commit()
    assert _local_dates(event.start_time for event in added) == [
        date(2025, 1, 7) + timedelta(days=7 * week) for week in range(3, 9)
    ]
    assert all(event.assignments[0].role_name == "Accompanist" for event in added)

    again = recurrence.extend_series(session, seed, now=seed.start_time, horizon_days=60)
    assert again == []
    assert len(recurrence.children_of(session, seed)) == 8


def test_extend_series_respects_end_date(session, church):
    seed, children = _make_series(session, church)
    assert recurrence.extend_series(
        session, seed, now=seed.start_time, horizon_days=365
    ) == []
    assert len(recurrence.children_of(session, seed)) == len(children)


def test_changing_the_rule_rebuilds_upcoming_children(session, church):
    seed, children = _make_series(session, church, end=date(2025, 2, 28))
    assert len(children) == 7

    crud.update_event(
        session,
        seed,
        {"recurrence_pattern": "biweekly"},
        now=datetime(2025, 1, 1),
    )
    session.commit()
    rebuilt = recurrence.children_of(session, seed)
    assert _local_dates(event.start_time for event in rebuilt) == [
        date(2025, 1, 21),
        date(2025, 2, 4),
        date(2025, 2, 18),
    ]


def test_rule_change_keeps_children_that_already_started(session, church):
    seed, children = _make_series(session, church, end=date(2025, 2, 28))
    crud.update_event(
        session,
        seed,
        {"recurrence_end": date(2025, 2, 4)},
        now=children[1].start_time + timedelta(hours=1),
    )
    session.commit()
    kept_ids = {children[0].id, children[1].id}
    remaining = recurrence.children_of(session, seed)
    assert kept_ids <= {event.id for event in remaining}
    assert _local_dates(event.start_time for event in remaining) == [
        date(2025, 1, 14),
        date(2025, 1, 21),
        date(2025, 1, 28),
        date(2025, 2, 4),
    ]


def test_turning_recurrence_off_removes_children(session, church):
    seed, _ = _make_series(session, church)
    crud.update_event(session, seed, {"is_recurring": False})
    session.commit()
    assert not seed.is_recurring
    assert recurrence.children_of(session, seed) == []


def test_occurrence_cannot_start_its_own_series(session, church):
    _, children = _make_series(session, church)
    with pytest.raises(ValidationError):
        recurrence.configure_series(children[0], pattern="weekly")
