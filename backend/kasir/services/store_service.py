# Overview: Service-layer operations for stores and store membership.

"""
Store access & creation

WHY: Every store-scoped operation needs the same answer to "may this user act
on this store?". Owner or active member, nothing else.

Store creation has a single path. The caller computes an EntitlementDecision
(can_create_store) and hands it in. A negative decision is refused outright;
a positive one is re-checked under the owner's row lock, since the count it
was based on can change before the insert.
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Store, StoreMember, User
from ..models.tenancy import MEMBER_ROLE_CASHIER, VALID_MEMBER_ROLES
from ..validation import AccessDeniedError, ConflictError, NotFoundError, ValidationError, coerce_int, require_fields
from .concurrency import begin_immediate, lock_for_update, run_with_retry
from .subscription_service import EntitlementDecision, can_add_member, can_create_store


class StoreAccessError(AccessDeniedError):
    """Raised when a user is neither the owner nor an active member of a store."""


class EntitlementDeniedError(AccessDeniedError):
    """Raised when a creation is attempted against a negative entitlement decision."""

    def __init__(self, decision: EntitlementDecision):
        super().__init__(decision.reason or "Subscription limit reached", details=decision.to_dict())
        self.decision = decision


def get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if not store or not store.is_active:
        raise NotFoundError(f"Store {store_id} not found")
    return store


def user_has_store_access(store_id: int, user_id: int) -> bool:
    store = db.session.get(Store, store_id)
    if not store or not store.is_active:
        return False
    if store.owner_id == user_id:
        return True
    return (
        db.session.query(StoreMember.id)
        .filter_by(store_id=store_id, user_id=user_id, is_active=True)
        .first()
        is not None
    )


def require_store_access(store_id: int, user_id: int) -> Store:
    """
    Return the store if the user is its owner or an active member.

    Raises StoreAccessError otherwise (including for unknown stores, so
    store ids cannot be probed).
    """
    if not user_has_store_access(store_id, user_id):
        raise StoreAccessError("You do not have access to this store", details={"store_id": store_id})
    return db.session.get(Store, store_id)


def _lock_owner(owner_id: int) -> User:
    owner = lock_for_update(db.session.query(User).filter_by(id=owner_id)).first()
    if not owner:
        raise NotFoundError(f"User {owner_id} not found")
    return owner


def create_store(owner_id: int, data: dict, decision: EntitlementDecision) -> Store:
    """Create a store for owner_id if the entitlement decision allows it."""
    if not decision.allowed:
        raise EntitlementDeniedError(decision)

    require_fields(data, "name")
    name = str(data["name"]).strip()
    if not name:
        raise ValidationError("Store name is required")

    tax_rate_bps = coerce_int(data.get("tax_rate_bps", 0), "tax_rate_bps", minimum=0, maximum=10_000)

    def _op():
        begin_immediate()
        _lock_owner(owner_id)

        current = can_create_store(owner_id)
        if not current.allowed:
            raise EntitlementDeniedError(current)

        store = Store(
            owner_id=owner_id,
            name=name,
            store_type=data.get("store_type"),
            address=data.get("address"),
            whatsapp=data.get("whatsapp"),
            tax_rate_bps=tax_rate_bps,
            invoice_counter=0,
        )
        db.session.add(store)
        db.session.commit()
        return store

    try:
        return run_with_retry(_op)
    except IntegrityError:
        raise ConflictError(f"You already have a store named '{name}'")


def add_member(store_id: int, acting_user_id: int, member_user_id: int, role: str = MEMBER_ROLE_CASHIER) -> StoreMember:
    """
    Add (or reactivate) a member of a store. Only the owner may do this, and
    only within the owner's package member limit.
    """
    store = get_store(store_id)
    owner_id = store.owner_id
    if owner_id != acting_user_id:
        raise StoreAccessError("Only the store owner can add members", details={"store_id": store_id})

    role = (role or MEMBER_ROLE_CASHIER).upper()
    if role not in VALID_MEMBER_ROLES:
        raise ValidationError(f"role must be one of {', '.join(VALID_MEMBER_ROLES)}")

    if member_user_id == owner_id:
        raise ValidationError("The store owner cannot be added as a member")
    if not db.session.get(User, member_user_id):
        raise NotFoundError(f"User {member_user_id} not found")

    def _op():
        # Member count and limit are read under the owner lock
        begin_immediate()
        _lock_owner(owner_id)

        existing = db.session.query(StoreMember).filter_by(store_id=store_id, user_id=member_user_id).first()
        if existing and existing.is_active:
            raise ConflictError("User is already a member of this store")

        decision = can_add_member(store_id, acting_user_id)
        if not decision.allowed:
            raise EntitlementDeniedError(decision)

        if existing:
            existing.is_active = True
            existing.role = role
            member = existing
        else:
            member = StoreMember(store_id=store_id, user_id=member_user_id, role=role, is_active=True)
            db.session.add(member)
        db.session.commit()
        return member

    try:
        return run_with_retry(_op)
    except IntegrityError:
        raise ConflictError("User is already a member of this store")
