from __future__ import annotations

import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from musicscheduler import crud, invitations
from musicscheduler.dispatch import DispatchError, DispatchPolicy
from musicscheduler.errors import (
    AlreadyElsewhere,
    AlreadyMember,
    DependencyError,
    InvitationPending,
    ValidationError,
)
from musicscheduler.models import Activity, Invitation, User
from musicscheduler.security import verify_password

from conftest import RecordingDispatcher

NOW = datetime(2025, 6, 1, 12, 0)


def _record(email="new.singer@example.org", first="Robin", last="Reyes", **extra):
    return {"email": email, "firstName": first, "lastName": last, **extra}


def _invite(session, church, director, dispatcher, record=None, **kwargs):
    kwargs.setdefault("now", NOW)
    result = invitations.invite_musician(
        session,
        church=church,
        inviter=director,
        record=record or _record(),
        dispatcher=dispatcher,
        **kwargs,
    )
    session.commit()
    return result


def _count(session, model, **filters):
    stmt = select(func.count()).select_from(model).filter_by(**filters)
    return session.scalar(stmt)


def test_invite_creates_unverified_account_and_sends_credentials(
    session, church, director, dispatcher
):
    result = _invite(session, church, director, dispatcher, _record(phone=" 555-0101 "))

    assert result.user.is_verified is False
    assert result.user.church_id == church.id
    assert result.user.phone == "555-0101"
    assert result.invitation.status == "PENDING"
    assert result.invitation.expires_at == NOW + timedelta(days=7)
    assert result.receipt.delivered and not result.receipt.simulated
    assert verify_password(result.temporary_password, result.user.password_hash)

    assert dispatcher.recipients == ["new.singer@example.org"]
    message = dispatcher.sent[0]
    assert message.temporary_password == result.temporary_password
    assert message.invite_link.endswith(f"/invitations/{result.invitation.token}")
    assert message.church_name == church.name
    assert message.inviter_name == director.full_name

    logged = session.scalars(
        select(Activity).where(Activity.activity_type == "MUSICIAN_INVITED")
    ).one()
    assert logged.details["email"] == "new.singer@example.org"


def test_email_is_normalized(session, church, director, dispatcher):
    result = _invite(
        session, church, director, dispatcher, _record(email="  New.Singer@Example.ORG ")
    )
    assert result.invitation.email == "new.singer@example.org"


def test_second_invite_in_same_church_is_pending(session, church, director, dispatcher):
    _invite(session, church, director, dispatcher)
    with pytest.raises(InvitationPending):
        _invite(session, church, director, dispatcher, now=NOW + timedelta(days=1))
    assert len(dispatcher.sent) == 1
    assert _count(session, User, email="new.singer@example.org") == 1


def test_same_email_in_another_church_succeeds(session, church, director, dispatcher):
    _invite(session, church, director, dispatcher)
    other = crud.create_church(session, name="Hope Fellowship", timezone_offset_minutes=-300)
    session.commit()

    result = _invite(session, other, None, dispatcher)

    assert result.user.church_id == other.id
    assert _count(session, User, email="new.singer@example.org") == 2
    assert dispatcher.sent[1].inviter_name == "Hope Fellowship"


def test_verified_account_elsewhere_is_rejected(session, church, director, dispatcher):
    first = _invite(session, church, director, dispatcher)
    invitations.accept_invitation(session, first.invitation.token, now=NOW)
    session.commit()
    other = crud.create_church(session, name="Hope Fellowship")
    session.commit()

    with pytest.raises(AlreadyElsewhere):
        _invite(session, other, None, dispatcher)


def test_existing_member_is_rejected(session, church, director, dispatcher, musicians):
    with pytest.raises(AlreadyMember) as excinfo:
        _invite(session, church, director, dispatcher, _record(email=musicians[0].email))
    assert excinfo.value.code == "AlreadyMember"
    assert dispatcher.sent == []


def test_lapsed_invitation_can_be_reissued(session, church, director, dispatcher):
    first = _invite(session, church, director, dispatcher)
    later = NOW + timedelta(days=8)

    second = _invite(session, church, director, dispatcher, now=later)

    assert second.reinvited is True
    assert second.user.id == first.user.id
    assert second.invitation.id != first.invitation.id
    session.refresh(first.invitation)
    assert first.invitation.status == "EXPIRED"
    assert verify_password(second.temporary_password, second.user.password_hash)
    assert not verify_password(first.temporary_password, second.user.password_hash)


def test_failed_delivery_leaves_nothing_behind(
    session, church, director, failing_dispatcher
):
    with pytest.raises(DependencyError) as excinfo:
        _invite(session, church, director, failing_dispatcher)
    session.commit()

    assert "nobody was added" in excinfo.value.reason
    assert excinfo.value.detail == "provider returned 500"
    assert _count(session, User, email="new.singer@example.org") == 0
    assert _count(session, Invitation) == 0


def test_sending_restriction_fails_under_strict_policy(
    session, church, director, restricted_dispatcher
):
    with pytest.raises(DependencyError):
        _invite(session, church, director, restricted_dispatcher)
    assert _count(session, Invitation) == 0


def test_sending_restriction_is_simulated_when_allowed(
    session, church, director, restricted_dispatcher
):
    result = _invite(
        session,
        church,
        director,
        restricted_dispatcher,
        policy=DispatchPolicy.SIMULATE_ON_RESTRICTION,
    )
    assert result.receipt.simulated is True
    assert result.receipt.delivered is False
    assert _count(session, Invitation, status="PENDING") == 1


def test_slow_delivery_times_out_as_failure(session, church, director):
    class SlowDispatcher(RecordingDispatcher):
        def send_invitation(self, message):
            time.sleep(0.3)
            return super().send_invitation(message)

    with pytest.raises(DependencyError):
        _invite(session, church, director, SlowDispatcher(), timeout=0.05)
    assert _count(session, User, email="new.singer@example.org") == 0


def test_invalid_records_are_rejected_before_any_write(session, church, director, dispatcher):
    with pytest.raises(ValidationError):
        _invite(session, church, director, dispatcher, _record(email="not-an-email"))
    with pytest.raises(ValidationError):
        _invite(session, church, director, dispatcher, _record(first=" "))
    assert dispatcher.sent == []


@pytest.mark.parametrize(
    "address", ["john@example..com", "john@-example.com", "john@example.com,"]
)
def test_undeliverable_addresses_are_rejected(session, church, director, dispatcher, address):
    with pytest.raises(ValidationError) as excinfo:
        _invite(session, church, director, dispatcher, _record(email=address))
    assert excinfo.value.field == "email"
    assert _count(session, User) == 1
    assert dispatcher.sent == []


def test_concurrent_pending_insert_becomes_invitation_pending(
    session, church, director, dispatcher, monkeypatch
):
    session.add(
        Invitation(
            church_id=church.id,
            email="new.singer@example.org",
            first_name="Robin",
            last_name="Reyes",
            token="issued-by-another-request",
            status="PENDING",
            expires_at=NOW + timedelta(days=7),
        )
    )
    session.commit()
    # The other request's row lands after our duplicate check ran.
    monkeypatch.setattr(invitations, "check_duplicates", lambda *args, **kwargs: None)

    with pytest.raises(InvitationPending):
        _invite(session, church, director, dispatcher)

    session.rollback()
    assert _count(session, User, email="new.singer@example.org") == 0
    assert _count(session, Invitation) == 1
    assert dispatcher.sent == []


def test_bulk_stops_when_the_database_is_unavailable(
    session, church, director, dispatcher, monkeypatch
):
    calls = []
    real_lookup = invitations.find_pending_invitation

    def flaky_lookup(*args, **kwargs):
        calls.append(args[1])
        if len(calls) > 1:
            raise OperationalError("SELECT invitations", {}, Exception("disk I/O error"))
        return real_lookup(*args, **kwargs)

    monkeypatch.setattr(invitations, "find_pending_invitation", flaky_lookup)

    with pytest.raises(DependencyError) as excinfo:
        invitations.invite_bulk(
            session,
            church=church,
            inviter=director,
            records=[
                _record(email="good@example.org"),
                _record(email="fine@example.org"),
                _record(email="never@example.org"),
            ],
            dispatcher=dispatcher,
            now=NOW,
        )

    assert excinfo.value.reason == "The database is unavailable; the invitation batch was stopped"
    assert "disk I/O error" in excinfo.value.detail
    assert calls == ["good@example.org", "fine@example.org"]


def test_bulk_invites_continue_past_failures(session, church, director, dispatcher):
    records = [
        _record(email="alex@example.org", first="Alex", last="Avila"),
        _record(email="ALEX@example.org", first="Alex", last="Again"),
        _record(email="not-an-email", first="Broken", last="Row"),
        "just a string",
        {"email": "sam@example.org", "first_name": "Sam", "last_name": "Soto"},
    ]

    batch = invitations.invite_bulk(
        session,
        church=church,
        inviter=director,
        records=records,
        dispatcher=dispatcher,
        now=NOW,
    )
    session.commit()

    assert batch.successful_count == 2
    assert batch.failed_count == 3
    assert [result.invitation.email for result in batch.successful] == [
        "alex@example.org",
        "sam@example.org",
    ]
    failures = [failure.as_dict() for failure in batch.failed]
    assert failures[0]["email"] == "alex@example.org"
    assert failures[0]["code"] == "InvitationPending"
    assert "earlier in this batch" in failures[0]["error"]
    assert failures[1]["code"] == "ValidationError"
    assert failures[1]["email"] == "not-an-email"
    assert failures[2]["code"] == "ValidationError"
    assert dispatcher.recipients == ["alex@example.org", "sam@example.org"]


def test_bulk_delivery_failure_only_drops_that_record(session, church, director):
    dispatcher = RecordingDispatcher(
        fail_with=DispatchError("mailbox unavailable"),
        fail_for={"bad@example.org"},
    )
    batch = invitations.invite_bulk(
        session,
        church=church,
        inviter=director,
        records=[
            _record(email="good@example.org"),
            _record(email="bad@example.org"),
            _record(email="fine@example.org"),
        ],
        dispatcher=dispatcher,
        now=NOW,
    )
    session.commit()

    assert batch.successful_count == 2
    assert [failure.code for failure in batch.failed] == ["DependencyError"]
    assert _count(session, User, email="bad@example.org") == 0
    assert _count(session, User, email="good@example.org") == 1
    assert _count(session, User, email="fine@example.org") == 1


def test_accepting_verifies_the_account(session, church, director, dispatcher):
    result = _invite(session, church, director, dispatcher)

    accepted = invitations.accept_invitation(
        session, result.invitation.token, now=NOW + timedelta(days=2)
    )
    session.commit()
    assert accepted.status == "ACCEPTED"
    assert accepted.user.is_verified is True

    again = invitations.accept_invitation(session, result.invitation.token)
    assert again.accepted_at == NOW + timedelta(days=2)


def test_expired_invitation_cannot_be_accepted(session, church, director, dispatcher):
    result = _invite(session, church, director, dispatcher)
    with pytest.raises(ValidationError):
        invitations.accept_invitation(
            session, result.invitation.token, now=NOW + timedelta(days=7)
        )


def test_listing_reports_lapsed_invitations_as_expired(session, church, director, dispatcher):
    _invite(session, church, director, dispatcher)
    later = NOW + timedelta(days=10)

    assert invitations.list_invitations(session, church.id, status="pending", now=later) == []
    expired = invitations.list_invitations(session, church.id, status="EXPIRED", now=later)
    assert len(expired) == 1
    with pytest.raises(ValidationError):
        invitations.list_invitations(session, church.id, status="lost")


def test_sweep_marks_lapsed_invitations(session, church, director, dispatcher):
    _invite(session, church, director, dispatcher)
    _invite(
        session,
        church,
        director,
        dispatcher,
        _record(email="fresh@example.org"),
        now=NOW + timedelta(days=5),
    )

    expired = invitations.expire_lapsed_invitations(session, now=NOW + timedelta(days=8))
    session.commit()
    session.expire_all()

    assert expired == 1
    assert _count(session, Invitation, status="EXPIRED") == 1
    assert _count(session, Invitation, status="PENDING") == 1


def test_records_accept_snake_or_camel_case():
    camel = invitations.validate_record(_record())
    snake = invitations.validate_record(
        {"email": "new.singer@example.org", "first_name": "Robin", "last_name": "Reyes"}
    )
    assert camel == snake
