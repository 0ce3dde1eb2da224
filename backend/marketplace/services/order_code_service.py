# Overview: One-time codes authorizing sensitive admin actions on an order.

"""
Order Action Codes

WHY: Canceling an order is irreversible for the customer, so the admin
performing it must first prove control of their own phone/email. The code
is bound to (order, admin, purpose); a successful verify returns a
single-use code token that the action endpoint consumes in the same
transaction as the action itself.

Uses the same length, TTL, cooldown, attempt and lockout policy as delivery
codes.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import AuthorizationError, PreconditionError, RateLimitError
from ..models import OrderActionCode, User
from ..time_utils import to_utc_z, utcnow
from . import notification_service, one_time_code
from .access_service import Actor, require_admin
from .concurrency import lock_for_update
from .purchase_order_service import get_order


PURPOSE_CANCEL_ORDER = "CANCEL_ORDER"
PURPOSES = frozenset({PURPOSE_CANCEL_ORDER})


@dataclass
class IssuedOrderCode:
    row: OrderActionCode
    code: str
    channel_hint: str | None

    def to_dict(self) -> dict:
        return {
            "expires_at": to_utc_z(self.row.expires_at),
            "channel_hint": self.channel_hint,
        }


def _check_purpose(purpose: str) -> str:
    purpose = (purpose or "").strip().upper()
    if purpose not in PURPOSES:
        raise PreconditionError(f"Unknown code purpose {purpose!r}", code="INVALID_PURPOSE")
    return purpose


def _latest(session, order_id: int, user_id: int, purpose: str, *, for_update: bool = False):
    query = (
        session.query(OrderActionCode)
        .filter(
            OrderActionCode.order_id == order_id,
            OrderActionCode.user_id == user_id,
            OrderActionCode.purpose == purpose,
        )
        .order_by(OrderActionCode.created_at.desc(), OrderActionCode.id.desc())
    )
    if for_update:
        query = lock_for_update(query)
    return query.first()


def request_order_code(uow, order_id: int, actor: Actor, purpose: str = PURPOSE_CANCEL_ORDER) -> IssuedOrderCode:
    """
    Send a fresh action code to the requesting admin.

    Raises:
        AuthorizationError: Not an admin
        NotFoundError: Unknown order
        RateLimitError: Inside the cooldown window
        PreconditionError: Admin has no phone or email
    """
    require_admin(actor)
    purpose = _check_purpose(purpose)
    policy = one_time_code.current_policy()

    def _op(uow):
        session = uow.session
        order = get_order(session, order_id)
        now = utcnow()
        previous = _latest(session, order.id, actor.user_id, purpose, for_update=True)
        one_time_code.enforce_cooldown(previous.created_at if previous else None, now, policy.cooldown)

        admin = session.get(User, actor.user_id)
        if admin.phone:
            channel, recipient = notification_service.CHANNEL_SMS, admin.phone
        elif admin.email:
            channel, recipient = notification_service.CHANNEL_EMAIL, admin.email
        else:
            raise PreconditionError("No phone or email on file for this account", code="NO_ADMIN_CHANNEL")

        code = one_time_code.generate_code(policy.length)
        salt, code_hash = one_time_code.hash_code(code, policy.hash_rounds)
        row = OrderActionCode(
            order_id=order.id,
            user_id=actor.user_id,
            purpose=purpose,
            code_salt=salt,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + policy.ttl,
            attempts=0,
        )
        session.add(row)
        session.flush()

        notification_service.queue(
            uow,
            notification_service.OutboundMessage(
                channel=channel,
                recipient=recipient,
                subject="Order action code",
                body=f"Your code to {purpose.replace('_', ' ').lower()} #{order.id} is {code}.",
                payload={"order_id": order.id, "purpose": purpose},
            ),
            order_id=order.id,
        )
        return IssuedOrderCode(row=row, code=code, channel_hint=notification_service.mask_recipient(recipient))

    return uow.run(_op)


def verify_order_code(uow, order_id: int, actor: Actor, code, purpose: str = PURPOSE_CANCEL_ORDER) -> int:
    """
    Verify an action code; returns the code token (row id) for the action.

    Raises:
        PreconditionError: Bad format, not requested, expired, incorrect
        RateLimitError: Locked after too many wrong attempts
    """
    require_admin(actor)
    purpose = _check_purpose(purpose)
    policy = one_time_code.current_policy()
    normalized = one_time_code.normalize_code(code, policy.length)

    def _op(uow):
        session = uow.session
        row = _latest(session, order_id, actor.user_id, purpose, for_update=True)
        if row is None:
            raise PreconditionError("Code not requested", code="CODE_NOT_REQUESTED")
        if row.consumed_at is not None:
            raise PreconditionError("Code already used, request a new one", code="CODE_CONSUMED")
        if row.verified_at is not None:
            return row.id, None

        now = utcnow()
        until = one_time_code.locked_until(row, now)
        if until is not None:
            raise RateLimitError("Too many incorrect attempts, try again later", code="CODE_LOCKED", retry_at=until)
        if one_time_code.is_expired(row, now):
            raise PreconditionError("Code has expired, request a new one", code="CODE_EXPIRED")

        if not one_time_code.code_matches(normalized, row.code_hash):
            one_time_code.register_failed_attempt(row, now, policy)
            return None, PreconditionError(
                "Incorrect code",
                code="CODE_INCORRECT",
                attempts_remaining=max(0, policy.max_attempts - row.attempts),
            )

        row.verified_at = now
        return row.id, None

    token, error = uow.run(_op)
    if error is not None:
        raise error
    return token


def consume_order_code(session, order_id: int, actor: Actor, code_token, purpose: str = PURPOSE_CANCEL_ORDER) -> OrderActionCode:
    """
    Spend a verified code token inside the caller's transaction.

    Raises:
        AuthorizationError: Token missing, not verified, used, expired or
            bound to another order/admin/purpose
    """
    purpose = _check_purpose(purpose)
    try:
        token_id = int(code_token)
    except (TypeError, ValueError):
        raise AuthorizationError("A verified code token is required", code="CODE_TOKEN_REQUIRED")

    row = lock_for_update(session.query(OrderActionCode).filter(OrderActionCode.id == token_id)).first()
    now = utcnow()
    valid = (
        row is not None
        and row.order_id == order_id
        and row.user_id == actor.user_id
        and row.purpose == purpose
        and row.verified_at is not None
        and row.consumed_at is None
        and not one_time_code.is_expired(row, now)
    )
    if not valid:
        raise AuthorizationError("A verified code token is required", code="CODE_TOKEN_REQUIRED")
    row.consumed_at = now
    return row
