"""FastAPI application for the music scheduler."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Annotated, Any, Literal, Union
import tomllib

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import assignments as slots
from . import crud, invitations, recurrence
from .activity import recent_activities
from .config import settings
from .database import SessionLocal
from .dispatch import Dispatcher, DispatchPolicy, default_dispatcher
from .errors import (
    DependencyError,
    ForbiddenError,
    InvalidTimeInput,
    NotFoundError,
    SchedulerError,
    ValidationError,
)
from .models import Assignment, Event, Group, Invitation, User
from .recurrence import RoleTemplate
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .timezones import (
    LocalWallClock,
    from_local,
    parse_local_date,
    to_display,
    to_storage_instant,
    validate_offset,
)
from .utils import to_naive_utc

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("musicscheduler")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Church Music Scheduler", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_dispatcher() -> Dispatcher:
    return default_dispatcher()


def get_current_user(
    x_user_id: Annotated[str | None, Header()] = None,
    db: Session = Depends(get_db),
) -> User:
    """Caller identity as asserted by the upstream session layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    user = db.get(User, x_user_id.strip())
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def require_manager(user: User) -> User:
    if not user.can_manage:
        raise ForbiddenError("Only directors and pastors can do this")
    return user


# -------- error handling --------


@app.exception_handler(SchedulerError)
async def scheduler_error_handler(request: Request, exc: SchedulerError):
    if isinstance(exc, DependencyError):
        logger.error(
            "Dependency failure on %s %s: %s",
            request.method,
            request.url.path,
            exc.detail or exc.reason,
        )
    payload: dict[str, Any] = {"error": exc.code, "detail": exc.reason}
    field = getattr(exc, "field", None)
    if field:
        payload["field"] = field
    return JSONResponse(payload, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
    return JSONResponse({"error": "DependencyError", "detail": detail}, status_code=503)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- payloads --------


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RolePayload(CamelModel):
    name: str
    max_musicians: int = Field(1, ge=1)


class EventCreatePayload(CamelModel):
    name: str
    description: str | None = None
    location: str | None = None
    date: str = Field(..., description="Church-local date, YYYY-MM-DD")
    start_time: str = Field(..., description="Church-local time, HH:MM")
    end_time: str | None = Field(None, description="Church-local time, HH:MM")
    timezone_offset_minutes: int | None = Field(
        None, description="Minutes east of UTC; defaults to the church's offset"
    )
    status: str = "confirmed"
    event_type_id: str | None = None
    roles: list[RolePayload] = Field(default_factory=list)
    group_ids: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    recurrence_end: str | None = None
    recurrence_interval_days: int | None = None


class EventUpdatePayload(CamelModel):
    name: str | None = None
    description: str | None = None
    location: str | None = None
    date: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    timezone_offset_minutes: int | None = None
    status: str | None = None
    event_type_id: str | None = None
    roles: list[RolePayload] | None = None
    is_recurring: bool | None = None
    recurrence_pattern: str | None = None
    recurrence_end: str | None = None
    recurrence_interval_days: int | None = None


class AssignmentCreatePayload(CamelModel):
    event_id: str
    role_name: str
    max_musicians: int | None = Field(1, ge=1)


class AssignmentUpdatePayload(CamelModel):
    musician_id: str | None = None
    action: Literal["accept", "decline"] | None = None
    status: Literal["ACCEPTED", "PENDING"] | None = None


class EventGroupsPayload(CamelModel):
    group_ids: list[str] = Field(default_factory=list)


class GroupCreatePayload(CamelModel):
    name: str
    description: str | None = None
    member_ids: list[str] = Field(default_factory=list)


class GroupUpdatePayload(CamelModel):
    name: str | None = None
    description: str | None = None
    member_ids: list[str] | None = None


class InviteData(CamelModel):
    email: str
    first_name: str
    last_name: str
    phone: str | None = None


class SingleInvitePayload(BaseModel):
    type: Literal["single"]
    data: InviteData


class BulkInvitePayload(BaseModel):
    type: Literal["bulk"]
    # Records stay loose so a malformed one fails on its own instead of the batch.
    data: list[Any]


InvitationRequest = Annotated[
    Union[SingleInvitePayload, BulkInvitePayload], Body(discriminator="type")
]


# -------- time helpers --------


def _offset_for(user: User, override: int | None = None) -> int:
    if override is not None:
        return validate_offset(override)
    return user.church.timezone_offset_minutes or 0


def _local_instants(
    local_date: str,
    start_time: str,
    end_time: str | None,
    offset: int,
) -> tuple[datetime, datetime | None]:
    start = to_storage_instant(local_date, start_time, offset)
    end = to_storage_instant(local_date, end_time, offset) if end_time else None
    return start, end


def _optional_date(raw: str | None, field: str) -> date | None:
    if not raw:
        return None
    try:
        return parse_local_date(raw)
    except InvalidTimeInput as exc:
        raise InvalidTimeInput(exc.reason, field=field) from exc


def _window_bound(raw: str | None, offset: int, *, end: bool) -> datetime | None:
    """Query bounds accept a local date, a local datetime, or an aware datetime."""
    if not raw:
        return None
    try:
        day = date.fromisoformat(raw)
    except ValueError:
        day = None
    if day is not None:
        return to_storage_instant(day, time.max if end else time.min, offset)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidTimeInput(
            f"Invalid {'end' if end else 'start'} bound {raw!r}; use ISO 8601",
            field="end" if end else "start",
        ) from exc
    if parsed.tzinfo is not None:
        return to_naive_utc(parsed)
    return from_local(parsed, offset)


# -------- serializers --------


def _iso(value: datetime | None) -> str | None:
    return f"{value.isoformat()}Z" if value else None


def _serialize_user(user: User | None) -> dict | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": user.role,
        "isVerified": user.is_verified,
        "phone": user.phone,
    }


def _serialize_assignment(slot: Assignment) -> dict:
    group = None
    if slot.group is not None:
        group = {
            "id": slot.group.id,
            "name": slot.group.name,
            "holderIds": sorted(holder.user_id for holder in slot.holders),
        }
    return {
        "id": slot.id,
        "eventId": slot.event_id,
        "roleName": slot.role_name,
        "status": slot.status,
        "maxMusicians": slot.max_musicians,
        "position": slot.position,
        "isOpen": slot.is_open,
        "user": _serialize_user(slot.user),
        "group": group,
        "assignedAt": _iso(slot.assigned_at),
        "respondedAt": _iso(slot.responded_at),
    }


def _serialize_local(instant: datetime | None, offset: int) -> LocalWallClock | None:
    return to_display(instant, offset) if instant else None


def _serialize_event(event: Event) -> dict:
    offset = recurrence.church_offset(event)
    start_local = _serialize_local(event.start_time, offset)
    end_local = _serialize_local(event.end_time, offset)
    event_type = None
    if event.event_type is not None:
        event_type = {
            "id": event.event_type.id,
            "name": event.event_type.name,
            "color": event.event_type.color,
        }
    return {
        "id": event.id,
        "name": event.name,
        "description": event.description,
        "location": event.location,
        "status": event.status,
        "startTime": _iso(event.start_time),
        "endTime": _iso(event.end_time),
        "local": {
            "date": start_local.date_str,
            "startTime": start_local.time_str,
            "endDate": end_local.date_str if end_local else None,
            "endTime": end_local.time_str if end_local else None,
            "timezoneOffsetMinutes": offset,
        },
        "eventType": event_type,
        "isRecurring": event.is_recurring,
        "recurrencePattern": event.recurrence_pattern,
        "recurrenceIntervalDays": event.recurrence_interval_days,
        "recurrenceEnd": event.recurrence_end.isoformat() if event.recurrence_end else None,
        "parentEventId": event.parent_event_id,
        "assignments": [_serialize_assignment(slot) for slot in event.assignments],
    }


def _serialize_invitation(invitation: Invitation) -> dict:
    return {
        "id": invitation.id,
        "email": invitation.email,
        "firstName": invitation.first_name,
        "lastName": invitation.last_name,
        "phone": invitation.phone,
        "status": invitation.effective_status(),
        "token": invitation.token,
        "expiresAt": _iso(invitation.expires_at),
        "createdAt": _iso(invitation.created_at),
        "acceptedAt": _iso(invitation.accepted_at),
        "userId": invitation.user_id,
        "invitedById": invitation.invited_by_id,
    }


def _serialize_group(group: Group) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "members": [
            _serialize_user(member.user)
            for member in sorted(group.members, key=lambda item: item.user.last_name)
        ],
    }


def _serialize_invite_result(result: invitations.InvitationResult) -> dict:
    return {
        "email": result.invitation.email,
        "invitationId": result.invitation.id,
        "userId": result.user.id,
        "temporaryPassword": result.temporary_password,
        "reinvited": result.reinvited,
        "simulated": result.receipt.simulated,
    }


# -------- JSON API (v1) --------


@app.get("/api/v1/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/v1/events")
def api_list_events(
    status: str | None = Query(None),
    start: str | None = Query(None),
    end: str | None = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    offset = _offset_for(user)
    start_dt = _window_bound(start, offset, end=False)
    end_dt = _window_bound(end, offset, end=True)
    if start_dt and end_dt and end_dt < start_dt:
        raise ValidationError("end must be after start", field="end")
    events = crud.list_events(db, user.church_id, status=status, start=start_dt, end=end_dt)
    return {"events": [_serialize_event(event) for event in events]}


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    offset = _offset_for(user, payload.timezone_offset_minutes)
    start, end = _local_instants(payload.date, payload.start_time, payload.end_time, offset)
    event, children = crud.create_event(
        db,
        church=user.church,
        name=payload.name,
        description=payload.description,
        location=payload.location,
        start_time=start,
        end_time=end,
        status=payload.status,
        event_type_id=payload.event_type_id,
        roles=[RoleTemplate(role.name, role.max_musicians) for role in payload.roles],
        group_ids=payload.group_ids,
        is_recurring=payload.is_recurring,
        recurrence_pattern=payload.recurrence_pattern,
        recurrence_end=_optional_date(payload.recurrence_end, "recurrenceEnd"),
        recurrence_interval_days=payload.recurrence_interval_days,
        forbid_duplicate_roles=settings.forbid_duplicate_roles,
        actor_id=user.id,
    )
    return {
        "event": _serialize_event(event),
        "occurrences": [_serialize_event(child) for child in children],
    }


@app.get("/api/v1/events/{event_id}")
def api_get_event(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = crud.get_event(db, event_id, church_id=user.church_id)
    return {"event": _serialize_event(event)}


@app.put("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    event = crud.get_event(db, event_id, church_id=user.church_id)
    data = payload.model_dump(exclude_unset=True)
    if data.get("is_recurring") and not (
        data.get("recurrence_pattern") or event.recurrence_pattern
    ):
        raise ValidationError(
            "A recurrence pattern is required for recurring events", field="recurrencePattern"
        )
    offset = _offset_for(user, data.pop("timezone_offset_minutes", None))
    changes: dict[str, Any] = {
        key: data[key]
        for key in (
            "name",
            "description",
            "location",
            "status",
            "event_type_id",
            "is_recurring",
            "recurrence_pattern",
            "recurrence_interval_days",
        )
        if key in data
    }
    if {"date", "start_time", "end_time"} & data.keys():
        current = to_display(event.start_time, offset)
        local_date = data.get("date") or current.date
        start_time = data.get("start_time") or current.time
        changes["start_time"] = to_storage_instant(local_date, start_time, offset)
        if "end_time" in data:
            end_time = data["end_time"]
        elif event.end_time is not None:
            end_time = to_display(event.end_time, offset).time
        else:
            end_time = None
        changes["end_time"] = (
            to_storage_instant(local_date, end_time, offset) if end_time else None
        )
    if "recurrence_end" in data:
        changes["recurrence_end"] = _optional_date(data["recurrence_end"], "recurrenceEnd")
    if data.get("roles") is not None:
        changes["roles"] = [
            RoleTemplate(role["name"], role.get("max_musicians") or 1) for role in data["roles"]
        ]
    event = crud.update_event(
        db,
        event,
        changes,
        forbid_duplicate_roles=settings.forbid_duplicate_roles,
        actor_id=user.id,
    )
    return {"event": _serialize_event(event)}


@app.delete("/api/v1/events/{event_id}")
def api_delete_event(
    event_id: str,
    scope: str = Query("single"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    event = crud.get_event(db, event_id, church_id=user.church_id)
    summary = recurrence.delete_event(db, event, scope, actor_id=user.id)
    return summary.as_dict()


@app.get("/api/v1/events/{event_id}/eligible-musicians")
def api_eligible_musicians(
    event_id: str,
    pending_group_ids: list[str] | None = Query(None, alias="pendingGroupIds"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    event = crud.get_event(db, event_id, church_id=user.church_id)
    pending = [
        group_id.strip()
        for raw in pending_group_ids or []
        for group_id in raw.split(",")
        if group_id.strip()
    ]
    musicians = slots.eligible_individuals(
        db, event, pending, allow_multi_role=settings.allow_multi_role
    )
    return {"musicians": [_serialize_user(musician) for musician in musicians]}


@app.put("/api/v1/events/{event_id}/groups")
def api_set_event_groups(
    event_id: str,
    payload: EventGroupsPayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    event = crud.get_event(db, event_id, church_id=user.church_id)
    slots.set_event_groups(db, event, payload.group_ids, actor_id=user.id)
    return {"event": _serialize_event(event)}


@app.post("/api/v1/events/{event_id}/groups/{group_id}", status_code=201)
def api_assign_group(
    event_id: str,
    group_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    event = crud.get_event(db, event_id, church_id=user.church_id)
    group = crud.get_group(db, group_id, church_id=user.church_id)
    slot = slots.assign_group(db, event, group, actor_id=user.id)
    return {"assignment": _serialize_assignment(slot)}


@app.delete("/api/v1/events/{event_id}/groups/{group_id}", status_code=204)
def api_remove_group(
    event_id: str,
    group_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    event = crud.get_event(db, event_id, church_id=user.church_id)
    group = crud.get_group(db, group_id, church_id=user.church_id)
    slots.remove_group(db, event, group, actor_id=user.id)
    return Response(status_code=204)


def _slot_for(db: Session, assignment_id: str, user: User) -> Assignment:
    slot = slots.get_assignment(db, assignment_id)
    if slot.event.church_id != user.church_id:
        raise NotFoundError("Assignment", assignment_id)
    return slot


@app.post("/api/v1/assignments", status_code=201)
def api_create_assignment(
    payload: AssignmentCreatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    event = crud.get_event(db, payload.event_id, church_id=user.church_id)
    slot = slots.open_slot(
        db,
        event,
        payload.role_name,
        max_musicians=payload.max_musicians,
        forbid_duplicates=settings.forbid_duplicate_roles,
        actor_id=user.id,
    )
    return {"assignment": _serialize_assignment(slot)}


@app.put("/api/v1/assignments/{assignment_id}")
def api_update_assignment(
    assignment_id: str,
    payload: AssignmentUpdatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    slot = _slot_for(db, assignment_id, user)
    if payload.action is not None:
        holder_check = None if user.can_manage else user.id
        if payload.action == "accept":
            slot = slots.accept(db, slot, musician_id=holder_check)
        else:
            slot = slots.decline(db, slot, musician_id=holder_check)
        return {"assignment": _serialize_assignment(slot)}
    if "musician_id" not in payload.model_fields_set:
        raise ValidationError("Provide musicianId or action", field="musicianId")
    require_manager(user)
    if payload.musician_id is None:
        slot = slots.remove_individual(db, slot, actor_id=user.id)
    else:
        musician = crud.get_user(db, payload.musician_id)
        slot = slots.assign_individual(
            db,
            slot,
            musician,
            status=payload.status or "ACCEPTED",
            allow_multi_role=settings.allow_multi_role,
            actor_id=user.id,
        )
    return {"assignment": _serialize_assignment(slot)}


@app.delete("/api/v1/assignments/{assignment_id}", status_code=204)
def api_delete_assignment(
    assignment_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    slot = _slot_for(db, assignment_id, user)
    slots.delete_slot(db, slot)
    return Response(status_code=204)


@app.post("/api/v1/assignments/{assignment_id}/signup")
def api_signup(
    assignment_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    slot = _slot_for(db, assignment_id, user)
    slot = slots.signup(db, slot, user, caller_id=user.id)
    return {"assignment": _serialize_assignment(slot)}


@app.get("/api/v1/invitations")
def api_list_invitations(
    status: str | None = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    items = invitations.list_invitations(db, user.church_id, status=status)
    return {"invitations": [_serialize_invitation(item) for item in items]}


@app.post("/api/v1/invitations", status_code=201)
def api_create_invitations(
    payload: InvitationRequest,
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    require_manager(user)
    policy = DispatchPolicy(settings.dispatch_policy)
    if isinstance(payload, SingleInvitePayload):
        result = invitations.invite_musician(
            db,
            church=user.church,
            inviter=user,
            record=payload.data.model_dump(),
            dispatcher=dispatcher,
            policy=policy,
        )
        return {
            "invitation": _serialize_invitation(result.invitation),
            "user": _serialize_user(result.user),
            "credentials": {
                "email": result.user.email,
                "temporaryPassword": result.temporary_password,
            },
            "delivery": {
                "delivered": result.receipt.delivered,
                "simulated": result.receipt.simulated,
            },
        }
    batch = invitations.invite_bulk(
        db,
        church=user.church,
        inviter=user,
        records=payload.data,
        dispatcher=dispatcher,
        policy=policy,
    )
    response.status_code = 200
    return {
        "successfulCount": batch.successful_count,
        "failedCount": batch.failed_count,
        "successful": [_serialize_invite_result(result) for result in batch.successful],
        "failed": [failure.as_dict() for failure in batch.failed],
    }


@app.post("/api/v1/invitations/{token}/accept")
def api_accept_invitation(token: str, db: Session = Depends(get_db)):
    invitation = invitations.accept_invitation(db, token)
    return {"invitation": _serialize_invitation(invitation)}


@app.get("/api/v1/groups")
def api_list_groups(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"groups": [_serialize_group(group) for group in crud.list_groups(db, user.church_id)]}


@app.post("/api/v1/groups", status_code=201)
def api_create_group(
    payload: GroupCreatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    group = crud.create_group(
        db,
        church=user.church,
        name=payload.name,
        description=payload.description,
        member_ids=payload.member_ids,
    )
    return {"group": _serialize_group(group)}


@app.put("/api/v1/groups/{group_id}")
def api_update_group(
    group_id: str,
    payload: GroupUpdatePayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    group = crud.get_group(db, group_id, church_id=user.church_id)
    group = crud.update_group(
        db,
        group,
        name=payload.name,
        description=payload.description,
        member_ids=payload.member_ids,
    )
    return {"group": _serialize_group(group)}


@app.delete("/api/v1/groups/{group_id}", status_code=204)
def api_delete_group(
    group_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    group = crud.get_group(db, group_id, church_id=user.church_id)
    crud.delete_group(db, group)
    return Response(status_code=204)


@app.get("/api/v1/musicians")
def api_list_musicians(
    role: str | None = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    musicians = crud.list_musicians(db, user.church_id, role=role)
    return {"musicians": [_serialize_user(musician) for musician in musicians]}


@app.get("/api/v1/activities")
def api_list_activities(
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    require_manager(user)
    items = recent_activities(db, user.church_id, limit=limit)
    return {
        "activities": [
            {
                "id": item.id,
                "type": item.activity_type,
                "description": item.description,
                "userId": item.user_id,
                "details": item.details or {},
                "createdAt": _iso(item.created_at),
            }
            for item in items
        ]
    }
