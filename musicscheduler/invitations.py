"""Musician invitations: duplicate checks, single and bulk issue, acceptance.

Checks run in this order for an (email, church) pair:

1. a PENDING invitation that has not lapsed -> ``InvitationPending``
   (a lapsed one is marked EXPIRED on the way);
2. an account in the same church -> ``AlreadyMember``, unless the account
   never verified and its invitation lapsed, in which case it is re-invited;
3. a verified account in another church -> ``AlreadyElsewhere``.

Each invite runs inside a savepoint. The email is sent before the savepoint
is released, so a failed delivery leaves neither an account nor an
invitation behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from functools import reduce
from typing import Any, Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from . import activity
from .config import settings
from .dispatch import (
    DeliveryReceipt,
    DispatchError,
    Dispatcher,
    DispatchPolicy,
    InvitationMessage,
    deliver_invitation,
)
from .errors import (
    AlreadyElsewhere,
    AlreadyMember,
    ConflictError,
    DependencyError,
    InvitationPending,
    NotFoundError,
    ValidationError,
)
from .models import INVITATION_STATUSES, Church, Invitation, User
from .security import hash_password
from .utils import (
    generate_temporary_password,
    generate_token,
    is_valid_email,
    normalize_email,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InviteRecord:
    email: str
    first_name: str
    last_name: str
    phone: str | None = None

    @classmethod
    def from_mapping(cls, data: Any) -> "InviteRecord":
        if isinstance(data, InviteRecord):
            return data
        if not isinstance(data, Mapping):
            raise ValidationError("Each invitation must be an object with an email and name")
        return cls(
            email=str(data.get("email") or ""),
            first_name=str(data.get("firstName") or data.get("first_name") or ""),
            last_name=str(data.get("lastName") or data.get("last_name") or ""),
            phone=data.get("phone") or None,
        )


def validate_record(data: Any) -> InviteRecord:
    record = InviteRecord.from_mapping(data)
    email = normalize_email(record.email)
    if not email:
        raise ValidationError("Email is required", field="email")
    if not is_valid_email(email):
        raise ValidationError(f"Invalid email address '{record.email.strip()}'", field="email")
    first_name = record.first_name.strip()
    last_name = record.last_name.strip()
    if not first_name or not last_name:
        raise ValidationError("First and last name are required", field="firstName")
    phone = record.phone.strip() if isinstance(record.phone, str) else None
    return InviteRecord(email=email, first_name=first_name, last_name=last_name, phone=phone or None)


@dataclass(frozen=True)
class InvitationResult:
    invitation: Invitation
    user: User
    temporary_password: str
    receipt: DeliveryReceipt
    reinvited: bool = False


@dataclass(frozen=True)
class FailedInvite:
    email: str
    error: str
    code: str

    def as_dict(self) -> dict:
        return {"email": self.email, "error": self.error, "code": self.code}


@dataclass(frozen=True)
class BatchResult:
    successful: tuple[InvitationResult, ...] = ()
    failed: tuple[FailedInvite, ...] = ()

    @property
    def successful_count(self) -> int:
        return len(self.successful)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def invited_emails(self) -> set[str]:
        return {result.invitation.email for result in self.successful}

    def with_success(self, result: InvitationResult) -> "BatchResult":
        return replace(self, successful=self.successful + (result,))

    def with_failure(self, failure: FailedInvite) -> "BatchResult":
        return replace(self, failed=self.failed + (failure,))


def find_pending_invitation(
    session: Session, email: str, church_id: str, *, now: datetime | None = None
) -> Invitation | None:
    """Return the live PENDING invitation, marking a lapsed one EXPIRED."""
    stmt = select(Invitation).where(
        Invitation.email == email,
        Invitation.church_id == church_id,
        Invitation.status == "PENDING",
    )
    invitation = session.scalars(stmt).first()
    if invitation is None:
        return None
    if invitation.is_expired(now):
        invitation.status = "EXPIRED"
        session.flush()
        logger.info("Invitation %s for %s lapsed", invitation.id, email)
        return None
    return invitation


def _has_lapsed_invitation(session: Session, user: User) -> bool:
    stmt = select(Invitation.id).where(
        Invitation.user_id == user.id,
        Invitation.church_id == user.church_id,
        Invitation.status == "EXPIRED",
    )
    return session.scalars(stmt).first() is not None


def check_duplicates(
    session: Session, email: str, church_id: str, *, now: datetime | None = None
) -> User | None:
    """Raise the matching conflict, or return an account that may be re-invited."""
    if find_pending_invitation(session, email, church_id, now=now) is not None:
        raise InvitationPending(email)
    member = session.scalars(
        select(User).where(User.email == email, User.church_id == church_id)
    ).first()
    if member is not None:
        if not member.is_verified and _has_lapsed_invitation(session, member):
            return member
        raise AlreadyMember(email)
    elsewhere = session.scalars(
        select(User).where(
            User.email == email,
            User.church_id != church_id,
            User.is_verified.is_(True),
        )
    ).first()
    if elsewhere is not None:
        raise AlreadyElsewhere(email)
    return None


def invite_link(token: str, *, base_url: str | None = None) -> str:
    return f"{(base_url or settings.app_base_url).rstrip('/')}/invitations/{token}"


def invite_musician(
    session: Session,
    *,
    church: Church,
    inviter: User | None,
    record: Any,
    dispatcher: Dispatcher,
    policy: DispatchPolicy = DispatchPolicy.STRICT,
    now: datetime | None = None,
    timeout: float | None = None,
) -> InvitationResult:
    """Create an unverified account and a 7-day invitation, then email it."""
    record = validate_record(record)
    now = now or utcnow()
    with session.begin_nested():
        reusable = check_duplicates(session, record.email, church.id, now=now)
        temporary_password = generate_temporary_password(settings.temporary_password_length)
        password_hash = hash_password(temporary_password)
        if reusable is not None:
            user = reusable
            user.first_name = record.first_name
            user.last_name = record.last_name
            user.phone = record.phone or user.phone
            user.password_hash = password_hash
        else:
            user = User(
                church_id=church.id,
                email=record.email,
                first_name=record.first_name,
                last_name=record.last_name,
                phone=record.phone,
                role="MUSICIAN",
                is_verified=False,
                password_hash=password_hash,
                invited_via="invitation",
            )
            session.add(user)
        invitation = Invitation(
            church_id=church.id,
            invited_by_id=inviter.id if inviter else None,
            user=user,
            email=record.email,
            first_name=record.first_name,
            last_name=record.last_name,
            phone=record.phone,
            token=generate_token(),
            status="PENDING",
            expires_at=now + timedelta(days=settings.invitation_expiry_days),
            created_at=now,
        )
        session.add(invitation)
        try:
            session.flush()
        except IntegrityError as exc:
            logger.info("Concurrent invitation for %s lost the insert: %s", record.email, exc)
            raise InvitationPending(record.email) from exc

        message = InvitationMessage(
            to=record.email,
            recipient_name=f"{record.first_name} {record.last_name}",
            church_name=church.name,
            inviter_name=inviter.full_name if inviter else church.name,
            temporary_password=temporary_password,
            invite_link=invite_link(invitation.token),
            expires_at=invitation.expires_at,
        )
        try:
            receipt = deliver_invitation(dispatcher, message, policy=policy, timeout=timeout)
        except DispatchError as exc:
            raise DependencyError(
                "We could not send the invitation email; nobody was added", detail=str(exc)
            ) from exc

        activity.record_activity(
            session,
            activity_type=activity.MUSICIAN_INVITED,
            description=f"Invited {user.full_name} ({record.email})",
            church_id=church.id,
            user_id=inviter.id if inviter else None,
            details={
                "invitationId": invitation.id,
                "email": record.email,
                "reinvited": reusable is not None,
                "simulated": receipt.simulated,
            },
        )
    return InvitationResult(
        invitation=invitation,
        user=user,
        temporary_password=temporary_password,
        receipt=receipt,
        reinvited=reusable is not None,
    )


def _raw_email(data: Any) -> str:
    if isinstance(data, InviteRecord):
        return normalize_email(data.email)
    if isinstance(data, Mapping):
        return normalize_email(str(data.get("email") or ""))
    return ""


def invite_bulk(
    session: Session,
    *,
    church: Church,
    inviter: User | None,
    records: Iterable[Any],
    dispatcher: Dispatcher,
    policy: DispatchPolicy = DispatchPolicy.STRICT,
    now: datetime | None = None,
    timeout: float | None = None,
) -> BatchResult:
    """Invite every record independently and fold the outcomes.

    A rejected record lands in ``failed`` and the batch carries on. Losing
    the database aborts the batch with ``DependencyError``.
    """

    def step(batch: BatchResult, data: Any) -> BatchResult:
        email = _raw_email(data)
        if email and email in batch.invited_emails:
            failure = InvitationPending(
                email, "A pending invitation already exists for this email (earlier in this batch)"
            )
            return batch.with_failure(FailedInvite(email, failure.reason, failure.code))
        try:
            result = invite_musician(
                session,
                church=church,
                inviter=inviter,
                record=data,
                dispatcher=dispatcher,
                policy=policy,
                now=now,
                timeout=timeout,
            )
        except (ValidationError, ConflictError, DependencyError) as exc:
            logger.info("Bulk invitation for %s failed: %s", email or "<missing>", exc.reason)
            return batch.with_failure(FailedInvite(email, exc.reason, exc.code))
        return batch.with_success(result)

    try:
        batch = reduce(step, records, BatchResult())
    except OperationalError as exc:
        logger.error("Bulk invitation aborted, database unavailable: %s", exc)
        raise DependencyError(
            "The database is unavailable; the invitation batch was stopped", detail=str(exc)
        ) from exc
    logger.info(
        "Bulk invitation finished: %d sent, %d failed",
        batch.successful_count,
        batch.failed_count,
    )
    return batch


def get_invitation_by_token(session: Session, token: str) -> Invitation:
    invitation = session.scalars(
        select(Invitation).where(Invitation.token == (token or "").strip())
    ).first()
    if invitation is None:
        raise NotFoundError("Invitation", token)
    return invitation


def accept_invitation(
    session: Session, token: str, *, now: datetime | None = None
) -> Invitation:
    """Mark the invitation accepted and the account verified. Accepting twice is a no-op."""
    now = now or utcnow()
    invitation = get_invitation_by_token(session, token)
    if invitation.status == "ACCEPTED":
        return invitation
    if invitation.is_expired(now):
        raise ValidationError("This invitation has expired; ask for a new one", field="token")
    invitation.status = "ACCEPTED"
    invitation.accepted_at = now
    if invitation.user is not None:
        invitation.user.is_verified = True
    session.flush()
    activity.record_activity(
        session,
        activity_type=activity.INVITATION_ACCEPTED,
        description=f"{invitation.first_name} {invitation.last_name} accepted an invitation",
        church_id=invitation.church_id,
        user_id=invitation.user_id,
        details={"invitationId": invitation.id},
    )
    return invitation


def list_invitations(
    session: Session,
    church_id: str,
    *,
    status: str | None = None,
    now: datetime | None = None,
) -> list[Invitation]:
    """Invitations of a church, filtered on the status as read now."""
    if status is not None:
        status = status.upper()
        if status not in INVITATION_STATUSES:
            raise ValidationError(f"Unknown invitation status '{status}'", field="status")
    now = now or utcnow()
    stmt = (
        select(Invitation)
        .where(Invitation.church_id == church_id)
        .order_by(Invitation.created_at.desc())
    )
    invitations = session.scalars(stmt).all()
    if status is None:
        return list(invitations)
    return [item for item in invitations if item.effective_status(now) == status]


def expire_lapsed_invitations(session: Session, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    stmt = (
        update(Invitation)
        .where(Invitation.status == "PENDING", Invitation.expires_at <= now)
        .values(status="EXPIRED")
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount or 0
