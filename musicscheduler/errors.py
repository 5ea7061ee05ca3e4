"""
Exceptions raised by the scheduling core.

Every error carries a short, human readable ``reason`` that is distinct from
the reasons of its siblings so callers can render specific guidance, and a
stable ``code`` that the HTTP layer puts next to it.
"""

from __future__ import annotations


class SchedulerError(Exception):
    """Base exception for scheduling core errors."""

    code = "SchedulerError"
    status_code = 500

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ValidationError(SchedulerError):
    """Missing or malformed input; always correctable by the client."""

    code = "ValidationError"
    status_code = 400

    def __init__(self, reason: str, field: str | None = None):
        self.field = field
        super().__init__(reason)


class InvalidTimeInput(ValidationError):
    code = "InvalidTimeInput"


class NotFoundError(SchedulerError):
    """Raised when a requested record does not exist."""

    code = "NotFound"
    status_code = 404

    def __init__(self, resource: str, identifier: object):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found")


class ForbiddenError(SchedulerError):
    code = "Forbidden"
    status_code = 403


class ConflictError(SchedulerError):
    """Raised when an operation conflicts with existing state."""

    code = "Conflict"
    status_code = 409


class AlreadyMember(ConflictError):
    code = "AlreadyMember"

    def __init__(self, email: str):
        self.email = email
        super().__init__("This person is already a member of your church")


class AlreadyElsewhere(ConflictError):
    code = "AlreadyElsewhere"

    def __init__(self, email: str):
        self.email = email
        super().__init__("This email is already registered with another church")


class InvitationPending(ConflictError):
    code = "InvitationPending"

    def __init__(self, email: str, reason: str | None = None):
        self.email = email
        super().__init__(reason or "A pending invitation already exists for this email")


class SlotOccupiedByGroup(ConflictError):
    code = "SlotOccupiedByGroup"

    def __init__(self, group_name: str | None = None):
        self.group_name = group_name
        label = f" '{group_name}'" if group_name else ""
        super().__init__(f"This role is filled by the group{label}")


class SlotNotOpen(ConflictError):
    code = "SlotNotOpen"

    def __init__(self, reason: str = "This role is no longer open"):
        super().__init__(reason)


class DuplicateRoleError(ConflictError):
    code = "DuplicateRoleError"

    def __init__(self, role_name: str):
        self.role_name = role_name
        super().__init__(f"The role '{role_name}' already exists on this event")


class AlreadyAssigned(ConflictError):
    code = "AlreadyAssigned"

    def __init__(self, reason: str = "This musician is already assigned to this event"):
        super().__init__(reason)


class ConcurrentModification(ConflictError):
    code = "ConcurrentModification"

    def __init__(self):
        super().__init__("Someone else changed this role at the same time; reload and try again")


class DependencyError(SchedulerError):
    """Dispatch or persistence failure. The detail is logged, not surfaced."""

    code = "DependencyError"
    status_code = 503

    def __init__(self, reason: str, detail: str | None = None):
        self.detail = detail
        super().__init__(reason)
