# Overview: Actor context and ownership checks shared by the fulfillment services.

from __future__ import annotations

from dataclasses import dataclass

from ..errors import AuthorizationError
from ..models import Supplier, User
from ..states import ADMIN_ROLES, UserRole


@dataclass(frozen=True)
class Actor:
    """
    Who is performing an operation.

    supplier_id is set only for SUPPLIER users with a linked supplier
    account.
    """
    user_id: int
    role: UserRole
    supplier_id: int | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_supplier(self) -> bool:
        return self.role == UserRole.SUPPLIER and self.supplier_id is not None


def actor_for_user(session, user: User) -> Actor:
    supplier_id = None
    if user.role == UserRole.SUPPLIER:
        supplier_id = session.query(Supplier.id).filter(Supplier.user_id == user.id).scalar()
    return Actor(user_id=user.id, role=UserRole(user.role), supplier_id=supplier_id)


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise AuthorizationError()


def require_supplier_or_admin(actor: Actor, supplier_id: int) -> None:
    """
    Allow admins, or the supplier that owns the record.

    The error never says whether the record belongs to someone else.
    """
    if actor.is_admin:
        return
    if actor.is_supplier and actor.supplier_id == supplier_id:
        return
    raise AuthorizationError()


def resolve_supplier_scope(actor: Actor, requested_supplier_id: int | None) -> int:
    """
    Supplier id a balance/history read applies to.

    Admins must name the supplier; suppliers always read their own account
    and cannot point at another one.
    """
    if actor.is_admin:
        if requested_supplier_id is None:
            raise AuthorizationError("Supplier context required", code="SUPPLIER_CONTEXT_REQUIRED")
        return int(requested_supplier_id)
    if actor.is_supplier:
        if requested_supplier_id is not None and int(requested_supplier_id) != actor.supplier_id:
            raise AuthorizationError()
        return actor.supplier_id
    raise AuthorizationError("Supplier access required", code="SUPPLIER_CONTEXT_REQUIRED")
