"""Invitation email delivery through Resend."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

import resend
from resend.http_client_requests import RequestsClient

from .config import settings

logger = logging.getLogger(__name__)

RESTRICTION_MARKERS = (
    "you can only send testing emails",
    "domain is not verified",
)

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="dispatch")


class DispatchPolicy(str, Enum):
    STRICT = "strict"
    SIMULATE_ON_RESTRICTION = "simulate-on-restriction"


class DispatchError(Exception):
    """Delivery failed."""


class SendingRestricted(DispatchError):
    """The sending account may not deliver to this address (sandbox, unverified domain)."""


@dataclass(frozen=True)
class InvitationMessage:
    to: str
    recipient_name: str
    church_name: str
    inviter_name: str
    temporary_password: str
    invite_link: str
    expires_at: datetime


@dataclass(frozen=True)
class DeliveryReceipt:
    delivered: bool
    simulated: bool = False
    message_id: str | None = None


class Dispatcher(Protocol):
    def send_invitation(self, message: InvitationMessage) -> str | None:
        """Send the message; return the provider's message id."""


def is_sending_restriction(detail: str) -> bool:
    lowered = (detail or "").lower()
    return any(marker in lowered for marker in RESTRICTION_MARKERS)


def render_invitation_text(message: InvitationMessage) -> str:
    return (
        f"Hello {message.recipient_name}!\n\n"
        f"{message.inviter_name} has invited you to join {message.church_name}'s "
        "music ministry.\n\n"
        "LOGIN CREDENTIALS:\n"
        f"Username: {message.to}\n"
        f"Temporary Password: {message.temporary_password}\n\n"
        "Please change your password after your first login.\n\n"
        f"Accept your invitation: {message.invite_link}\n\n"
        f"This invitation expires on {message.expires_at:%Y-%m-%d}. "
        f"If you have any questions, please contact {message.inviter_name}.\n"
    )


class ResendDispatcher:
    def __init__(self, *, api_key: str, sender: str, timeout: float | None = None):
        self.api_key = api_key
        self.sender = sender
        self.timeout = settings.dispatch_timeout_seconds if timeout is None else timeout

    def send_invitation(self, message: InvitationMessage) -> str | None:
        if not self.api_key:
            raise SendingRestricted("No Resend API key is configured")
        resend.api_key = self.api_key
        # The HTTP call itself must give up; a cancelled future keeps running.
        resend.default_http_client = RequestsClient(timeout=self.timeout)
        params = {
            "from": self.sender,
            "to": [message.to],
            "subject": f"You're invited to join {message.church_name}'s music ministry",
            "text": render_invitation_text(message),
        }
        try:
            response = resend.Emails.send(params)
        except Exception as exc:
            detail = str(exc)
            if is_sending_restriction(detail):
                raise SendingRestricted(detail) from exc
            raise DispatchError(detail) from exc
        return response.get("id") if isinstance(response, dict) else None


def default_dispatcher() -> Dispatcher:
    return ResendDispatcher(
        api_key=settings.resend_api_key,
        sender=settings.email_from,
        timeout=settings.dispatch_timeout_seconds,
    )


def deliver_invitation(
    dispatcher: Dispatcher,
    message: InvitationMessage,
    *,
    policy: DispatchPolicy = DispatchPolicy.STRICT,
    timeout: float | None = None,
) -> DeliveryReceipt:
    """Send ``message`` without blocking past ``timeout`` seconds.

    A timeout is a failure. A sending restriction is a failure under the
    strict policy and a simulated delivery otherwise.
    """
    timeout = settings.dispatch_timeout_seconds if timeout is None else timeout
    future = _executor.submit(dispatcher.send_invitation, message)
    try:
        message_id = future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        logger.error("Invitation email to %s timed out after %.1fs", message.to, timeout)
        raise DispatchError(f"Timed out after {timeout:.1f}s") from exc
    except SendingRestricted as exc:
        if DispatchPolicy(policy) is not DispatchPolicy.SIMULATE_ON_RESTRICTION:
            logger.error("Invitation email to %s refused: %s", message.to, exc)
            raise
        logger.warning(
            "Sending restricted (%s); simulated invitation to %s with temporary password %s",
            exc,
            message.to,
            message.temporary_password,
        )
        return DeliveryReceipt(delivered=False, simulated=True)
    except DispatchError as exc:
        logger.error("Invitation email to %s failed: %s", message.to, exc)
        raise
    logger.info("Invitation email sent to %s", message.to)
    return DeliveryReceipt(delivered=True, message_id=message_id)
