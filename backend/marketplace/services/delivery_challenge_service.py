# Overview: Delivery confirmation codes bound to purchase orders.

"""
Delivery Challenge Service

WHY: Supplier funds are released only after physical delivery is proven.
The customer receives a short numeric code; the supplier (or admin) enters
it at handover. A matching code is the only normal path to DELIVERED and
the only path to a releasable payout.

STATE (derived per PO from its newest challenge):
    NONE -> ISSUED -> VERIFIED | EXPIRED | LOCKED

RULES:
- Issue only while the PO is SHIPPED / OUT_FOR_DELIVERY, or DELIVERED with
  delivered_without_verification (repair of records missing a code)
- One issuance per cooldown window per PO; a new issuance supersedes the
  previous unverified challenge and starts with a zero attempt counter
- Verify checks, in order: active challenge, already verified (no-op
  success), lockout, expiry, then the bcrypt comparison
- Each wrong code increments attempts; reaching the maximum locks the
  challenge. Lock expiry does not reset the counter.
- verified_at is written once; DELIVERED and delivered_at are never undone
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import update

from ..errors import DomainError, NotFoundError, PreconditionError, RateLimitError
from ..models import DeliveryChallenge, Order, PaymentEvent, PurchaseOrder, SupplierPaymentAllocation, User
from ..models.common import dump_json
from ..states import AllocationStatus, ChallengeState, PurchaseOrderStatus, transition
from ..time_utils import as_naive_utc, utcnow
from . import activity_service, notification_service, one_time_code
from .access_service import Actor, require_supplier_or_admin
from .concurrency import lock_for_update
from .purchase_order_service import get_purchase_order, latest_paid_payment


ISSUABLE_STATUSES = frozenset({PurchaseOrderStatus.SHIPPED, PurchaseOrderStatus.OUT_FOR_DELIVERY})


@dataclass
class IssuedChallenge:
    """
    Result of an issuance.

    `code` is the plaintext code; it is handed to the notifier and to
    in-process callers only, never serialized into an API response.
    """
    challenge: DeliveryChallenge | None
    code: str | None
    channel_hint: str | None
    already_verified: bool = False

    def to_dict(self) -> dict:
        if self.already_verified:
            return {"already_verified": True}
        return {
            "already_verified": False,
            "expires_at": self.challenge.to_dict()["expires_at"],
            "channel_hint": self.channel_hint,
        }


@dataclass
class VerificationResult:
    purchase_order: PurchaseOrder
    challenge: DeliveryChallenge
    already_verified: bool

    def to_dict(self) -> dict:
        return {
            "verified": True,
            "already_verified": self.already_verified,
            "purchase_order": self.purchase_order.to_dict(),
            "verified_at": self.challenge.to_dict()["verified_at"],
        }


# =============================================================================
# HELPERS
# =============================================================================

def is_deliverable(po: PurchaseOrder) -> bool:
    if po.status in ISSUABLE_STATUSES:
        return True
    return po.status == PurchaseOrderStatus.DELIVERED and bool(po.delivered_without_verification)


def active_challenge(session, purchase_order_id: int, *, for_update: bool = False) -> DeliveryChallenge | None:
    query = (
        session.query(DeliveryChallenge)
        .filter(
            DeliveryChallenge.purchase_order_id == purchase_order_id,
            DeliveryChallenge.superseded_at.is_(None),
        )
        .order_by(DeliveryChallenge.created_at.desc(), DeliveryChallenge.id.desc())
    )
    if for_update:
        query = lock_for_update(query)
    return query.first()


def verified_challenge(session, purchase_order_id: int) -> DeliveryChallenge | None:
    """A challenge verified before it expired, if any."""
    for challenge in (
        session.query(DeliveryChallenge)
        .filter(
            DeliveryChallenge.purchase_order_id == purchase_order_id,
            DeliveryChallenge.verified_at.isnot(None),
        )
        .order_by(DeliveryChallenge.verified_at.desc())
        .all()
    ):
        if as_naive_utc(challenge.verified_at) <= as_naive_utc(challenge.expires_at):
            return challenge
    return None


def challenge_state(challenge: DeliveryChallenge | None, now: datetime | None = None) -> ChallengeState:
    if challenge is None:
        return ChallengeState.NONE
    now = now or utcnow()
    if challenge.verified_at is not None:
        return ChallengeState.VERIFIED
    if one_time_code.locked_until(challenge, now):
        return ChallengeState.LOCKED
    if one_time_code.is_expired(challenge, now):
        return ChallengeState.EXPIRED
    return ChallengeState.ISSUED


def get_challenge_summary(session, purchase_order_id: int, actor: Actor) -> dict:
    po = get_purchase_order(session, purchase_order_id)
    require_supplier_or_admin(actor, po.supplier_id)
    challenge = active_challenge(session, po.id)
    now = utcnow()
    summary = {
        "purchase_order_id": po.id,
        "state": challenge_state(challenge, now).value,
        "deliverable": is_deliverable(po),
    }
    if challenge is not None:
        summary.update(challenge.to_dict())
        summary["attempts_remaining"] = max(0, one_time_code.current_policy().max_attempts - (challenge.attempts or 0))
    return summary


def _customer_channel(customer: User, order: Order) -> tuple[str, str] | None:
    phone = customer.phone or order.ship_to_phone
    if phone:
        return notification_service.CHANNEL_SMS, phone
    if customer.email:
        return notification_service.CHANNEL_EMAIL, customer.email
    return None


# =============================================================================
# ISSUE
# =============================================================================

def issue_delivery_code(uow, purchase_order_id: int, actor: Actor) -> IssuedChallenge:
    """
    Issue a fresh delivery code for a PO and send it to the customer.

    Returns:
        IssuedChallenge (already_verified=True when a verified challenge exists)

    Raises:
        NotFoundError: Unknown PO
        AuthorizationError: Not admin or owning supplier
        PreconditionError: PO not in a deliverable state
        RateLimitError: Inside the reissue cooldown (carries retry_at)
    """
    policy = one_time_code.current_policy()

    def _op(uow):
        session = uow.session
        po = get_purchase_order(session, purchase_order_id, for_update=True)
        require_supplier_or_admin(actor, po.supplier_id)

        if verified_challenge(session, po.id) is not None:
            return IssuedChallenge(challenge=None, code=None, channel_hint=None, already_verified=True)
        if not is_deliverable(po):
            raise PreconditionError(
                f"Delivery code cannot be requested while purchase order is {po.status.value}",
                code="PO_NOT_DELIVERABLE",
            )

        now = utcnow()
        previous = active_challenge(session, po.id, for_update=True)
        one_time_code.enforce_cooldown(previous.created_at if previous else None, now, policy.cooldown)

        order = session.get(Order, po.order_id)
        customer = session.get(User, order.user_id)
        channel = _customer_channel(customer, order)
        if channel is None:
            raise PreconditionError("Customer has no phone or email for the delivery code", code="NO_CUSTOMER_CHANNEL")

        if previous is not None:
            previous.superseded_at = now

        code = one_time_code.generate_code(policy.length)
        salt, code_hash = one_time_code.hash_code(code, policy.hash_rounds)
        challenge = DeliveryChallenge(
            purchase_order_id=po.id,
            order_id=order.id,
            customer_id=customer.id,
            issued_by_user_id=actor.user_id,
            code_salt=salt,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + policy.ttl,
            attempts=0,
        )
        session.add(challenge)
        session.flush()

        channel_name, recipient = channel
        hint = notification_service.mask_recipient(recipient)
        activity_service.log_order_activity(
            session, order.id, activity_service.ACTIVITY_DELIVERY_CODE_SENT,
            f"Delivery code sent via {channel_name} to {hint}",
            supplier_id=po.supplier_id, purchase_order_id=po.id, actor_user_id=actor.user_id,
        )
        minutes = max(1, int(policy.ttl.total_seconds() // 60))
        notification_service.queue(
            uow,
            notification_service.OutboundMessage(
                channel=channel_name,
                recipient=recipient,
                subject="Your delivery code",
                body=(
                    f"Your delivery code for order {po.supplier_order_ref} is {code}. "
                    f"It expires in {minutes} minutes. Share it only when you have received your items."
                ),
                payload={"purchase_order_id": po.id},
            ),
            order_id=order.id,
            supplier_id=po.supplier_id,
            purchase_order_id=po.id,
        )
        return IssuedChallenge(challenge=challenge, code=code, channel_hint=hint)

    return uow.run(_op)


# =============================================================================
# VERIFY
# =============================================================================

@dataclass
class _Outcome:
    result: VerificationResult | None = None
    error: DomainError | None = None


def _confirm_delivery(uow, po: PurchaseOrder, challenge: DeliveryChallenge, actor: Actor, now: datetime) -> None:
    session = uow.session
    if po.status != PurchaseOrderStatus.DELIVERED:
        po.status = transition(po.status, PurchaseOrderStatus.DELIVERED)
        po.delivered_at = now
        po.delivered_by_user_id = actor.user_id
    # Repair path: keep the original delivered_at
    po.delivered_without_verification = False
    po.delivery_verified_at = now

    (
        session.query(SupplierPaymentAllocation)
        .filter(
            SupplierPaymentAllocation.purchase_order_id == po.id,
            SupplierPaymentAllocation.status == AllocationStatus.PENDING,
        )
        .update({SupplierPaymentAllocation.status: AllocationStatus.APPROVED}, synchronize_session="fetch")
    )

    payment = latest_paid_payment(session, po.order_id)
    if payment is not None:
        session.add(PaymentEvent(
            payment_id=payment.id,
            event_type="DELIVERY_CONFIRMED",
            data_json=dump_json({
                "purchase_order_id": po.id,
                "challenge_id": challenge.id,
                "verified_by_user_id": actor.user_id,
            }),
        ))

    activity_service.log_order_activity(
        session, po.order_id, activity_service.ACTIVITY_DELIVERED,
        f"Delivery confirmed for {po.supplier_order_ref}",
        supplier_id=po.supplier_id, purchase_order_id=po.id, actor_user_id=actor.user_id,
    )
    order = session.get(Order, po.order_id)
    notification_service.notify_user(
        uow, order.user_id, "ORDER_DELIVERED", "Delivery confirmed",
        data={"order_id": order.id, "purchase_order_id": po.id},
    )


def _mark_challenge_verified(session, challenge_id: int, actor_user_id: int | None, now: datetime) -> bool:
    """
    Conditional verified_at write; True only for the transaction that won.

    Two verifications that both read an unverified challenge cannot both
    confirm delivery.
    """
    stmt = (
        update(DeliveryChallenge)
        .where(
            DeliveryChallenge.id == challenge_id,
            DeliveryChallenge.verified_at.is_(None),
        )
        .values(verified_at=now, consumed_at=now, verified_by_user_id=actor_user_id)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def verify_delivery_code(uow, purchase_order_id: int, code, actor: Actor) -> VerificationResult:
    """
    Verify a delivery code and mark the PO delivered.

    Retrying against an already-verified challenge succeeds without side
    effects. A wrong code is committed (attempt counter, lockout) before the
    error is raised.

    Raises:
        PreconditionError: Bad format, no active challenge, expired, incorrect
        RateLimitError: Challenge locked (carries retry_at)
        NotFoundError / AuthorizationError: Unknown PO / wrong actor
    """
    policy = one_time_code.current_policy()
    normalized = one_time_code.normalize_code(code, policy.length)

    def _op(uow):
        session = uow.session
        po = get_purchase_order(session, purchase_order_id, for_update=True)
        require_supplier_or_admin(actor, po.supplier_id)
        challenge = active_challenge(session, po.id, for_update=True)
        if challenge is None:
            raise PreconditionError("No active delivery code for this purchase order", code="NO_ACTIVE_CHALLENGE")

        if challenge.verified_at is not None:
            return _Outcome(result=VerificationResult(po, challenge, already_verified=True))

        if not is_deliverable(po):
            raise PreconditionError(
                f"Purchase order is {po.status.value}; delivery cannot be confirmed",
                code="PO_NOT_DELIVERABLE",
            )

        now = utcnow()
        until = one_time_code.locked_until(challenge, now)
        if until is not None:
            raise RateLimitError("Too many incorrect attempts, try again later", code="CODE_LOCKED", retry_at=until)
        if one_time_code.is_expired(challenge, now):
            raise PreconditionError("Delivery code has expired, request a new one", code="CODE_EXPIRED")

        if not one_time_code.code_matches(normalized, challenge.code_hash):
            if one_time_code.register_failed_attempt(challenge, now, policy):
                current_app.logger.info("Delivery challenge %s locked after %s attempts", challenge.id, challenge.attempts)
            return _Outcome(error=PreconditionError(
                "Incorrect delivery code",
                code="CODE_INCORRECT",
                attempts_remaining=max(0, policy.max_attempts - challenge.attempts),
                locked_until=challenge.locked_until,
            ))

        if not _mark_challenge_verified(session, challenge.id, actor.user_id, now):
            # Another verification committed first
            session.refresh(challenge)
            if challenge.verified_at is not None:
                session.refresh(po)
                return _Outcome(result=VerificationResult(po, challenge, already_verified=True))
            raise PreconditionError("No active delivery code for this purchase order", code="NO_ACTIVE_CHALLENGE")
        session.refresh(challenge)
        _confirm_delivery(uow, po, challenge, actor, now)
        return _Outcome(result=VerificationResult(po, challenge, already_verified=False))

    outcome = uow.run(_op)
    if outcome.error is not None:
        raise outcome.error
    return outcome.result
