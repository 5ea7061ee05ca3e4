from __future__ import annotations

from datetime import date, datetime, timedelta

from sqlalchemy import create_engine, select

from musicscheduler import crud, invitations, maintenance, recurrence
from musicscheduler.models import Activity, Event, Invitation
from musicscheduler.recurrence import RoleTemplate
from musicscheduler.timezones import to_storage_instant

from conftest import RecordingDispatcher


def _short_series(session, church, *, end=None):
    seed, _ = crud.create_event(
        session,
        church=church,
        name="Sunday Worship",
        start_time=to_storage_instant("2025-01-07", "19:00", -360),
        roles=[RoleTemplate("Piano")],
    )
    recurrence.create_series(
        session, seed, pattern="weekly", recurrence_end=end, max_instances=3
    )
    session.commit()
    return seed.id, seed.start_time


def test_extend_all_series_tops_up_open_series(session, church):
    seed_id, start = _short_series(session, church)
    crud.create_event(session, church=church, name="One-off", start_time=start)
    session.commit()

    stats = maintenance.extend_all_series(now=start)

    assert stats == {"series_checked": 1, "series_extended": 1, "occurrences_created": 10}
    children = session.scalars(
        select(Event).where(Event.parent_event_id == seed_id).order_by(Event.start_time)
    ).all()
    assert len(children) == 12
    assert children[-1].start_time == start + timedelta(weeks=12)
    assert all(child.assignments[0].role_name == "Piano" for child in children)
    logged = session.scalars(
        select(Activity).where(Activity.activity_type == "SERIES_EXTENDED")
    ).one()
    assert logged.details == {"eventId": seed_id, "count": 10}

    again = maintenance.extend_all_series(now=start)
    assert again["occurrences_created"] == 0


def test_extend_all_series_skips_finished_series(session, church):
    _short_series(session, church, end=date(2025, 1, 21))
    stats = maintenance.extend_all_series(now=datetime(2025, 1, 1))
    assert stats["series_checked"] == 1
    assert stats["series_extended"] == 0


def test_sweep_expires_lapsed_invitations(session, church, director):
    invitations.invite_musician(
        session,
        church=church,
        inviter=director,
        record={"email": "late@example.org", "firstName": "Lee", "lastName": "Late"},
        dispatcher=RecordingDispatcher(),
        now=datetime(2025, 1, 1),
    )
    session.commit()

    assert maintenance.sweep_expired_invitations(now=datetime(2025, 1, 9)) == 1
    assert maintenance.sweep_expired_invitations(now=datetime(2025, 1, 9)) == 0
    status = session.scalars(select(Invitation.status)).one()
    assert status == "EXPIRED"


def test_vacuum_runs_on_file_database(monkeypatch, tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'vacuum.sqlite'}", future=True)
    monkeypatch.setattr(maintenance, "engine", engine)
    maintenance.vacuum_database()
    assert (tmp_path / "vacuum.sqlite").exists()
