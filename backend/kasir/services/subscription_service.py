# Overview: Service-layer operations for subscriptions; encapsulates business logic and database work.

"""
Subscription Manager

WHY: Owns who may use the product and how much of it. A subscription is the
only thing that unlocks store creation and member invitations, and money
only turns into access through create_new_user_subscription.

INVARIANTS:
- At most one subscription per user is ACTIVE/TRIAL with end_date >= now.
  Creation re-checks this while holding a lock on the user row, so two
  concurrent activations for one user serialize and the second fails with
  AlreadySubscribedError.
- end_date > start_date (enforced by a CHECK constraint as well).
- Entitlement checks never raise for "not allowed"; they return an
  EntitlementDecision.

NEW USER PROMO: a user with zero subscription rows ever gets one bonus month
on top of the paid months (pay 1, get 2). Returning users get exactly what
they paid for.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from ..extensions import db
from ..models import Store, StoreMember, Subscription, SubscriptionPackage, User
from ..models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
)
from ..money import format_rupiah
from ..validation import AccessDeniedError, ConflictError, NotFoundError, ValidationError
from kasir.time_utils import to_utc_z, utcnow
from .concurrency import begin_immediate, lock_for_update, run_with_retry


DAYS_PER_MONTH = 30
NEW_USER_BONUS_MONTHS = 1
EXPIRING_THRESHOLD_DAYS = 7

UPGRADE_PATHS = {
    "STANDARD": ["PRO", "BUSINESS"],
    "PRO": ["BUSINESS"],
    "BUSINESS": [],
}


class PackageNotFoundError(NotFoundError):
    """Raised when a subscription package id does not resolve."""


class UserNotFoundError(NotFoundError):
    """Raised when a user id does not resolve."""


class AlreadySubscribedError(ConflictError):
    """Raised when a user already holds a live subscription."""


class NoActiveSubscriptionError(NotFoundError):
    """Raised by admin operations that need a live subscription."""


@dataclass
class EntitlementDecision:
    """Outcome of a store/member entitlement check."""
    allowed: bool
    reason: str | None = None
    current_count: int | None = None
    max_allowed: int | None = None
    suggested_upgrade: list[str] = field(default_factory=list)
    current_package: str | None = None

    @property
    def requires_upgrade(self) -> bool:
        return not self.allowed

    def to_dict(self) -> dict:
        data = asdict(self)
        data["requires_upgrade"] = self.requires_upgrade
        return data


# =============================================================================
# CATALOG & LOOKUPS
# =============================================================================

def get_all_packages() -> dict:
    """Active packages, plus the same list grouped by package name."""
    packages = (
        db.session.query(SubscriptionPackage)
        .filter_by(is_active=True)
        .order_by(SubscriptionPackage.price.asc(), SubscriptionPackage.duration_months.asc())
        .all()
    )
    grouped: dict[str, list[dict]] = {}
    for package in packages:
        grouped.setdefault(package.name, []).append(package.to_dict())

    return {
        "packages": [p.to_dict() for p in packages],
        "grouped": grouped,
    }


def get_package(package_id: int, *, active_only: bool = False) -> SubscriptionPackage:
    package = db.session.query(SubscriptionPackage).filter_by(id=package_id).first()
    if not package or (active_only and not package.is_active):
        raise PackageNotFoundError(f"Subscription package {package_id} not found")
    return package


def get_active_subscription(user_id: int, now: datetime | None = None) -> Subscription | None:
    """Most recent ACTIVE/TRIAL subscription whose window has not ended."""
    now = now or utcnow()
    return (
        db.session.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            Subscription.end_date >= now,
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def has_active_subscription(user_id: int) -> bool:
    return get_active_subscription(user_id) is not None


def get_suggested_upgrade(package_name: str | None) -> list[str]:
    return list(UPGRADE_PATHS.get(package_name or "", []))


def _lock_user(user_id: int) -> User:
    user = lock_for_update(db.session.query(User).filter_by(id=user_id)).first()
    if not user:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


# =============================================================================
# CREATION & RENEWAL
# =============================================================================

def _promotion_descriptor(package: SubscriptionPackage, is_new_user: bool) -> dict:
    paid = package.duration_months
    bonus = NEW_USER_BONUS_MONTHS if is_new_user else 0
    if is_new_user:
        message = (
            f"New user promo: pay {format_rupiah(package.price)} for {paid} month(s), "
            f"get {paid + bonus} months of full access"
        )
    else:
        message = f"Subscription {package.display_name} - {paid} month(s) of access"

    return {
        "is_new_user": is_new_user,
        "original_price": package.price,
        "paid_months": paid,
        "bonus_months": bonus,
        "total_access": f"{paid + bonus} month(s)",
        "message": message,
    }


def _create_new_user_subscription_locked(user_id: int, package_id: int) -> tuple[Subscription, dict]:
    package = get_package(package_id)
    _lock_user(user_id)

    now = utcnow()
    if get_active_subscription(user_id, now):
        raise AlreadySubscribedError(
            "User already has an active subscription",
            details={"user_id": user_id},
        )

    prior_count = db.session.query(Subscription).filter_by(user_id=user_id).count()
    is_new_user = prior_count == 0

    paid_months = package.duration_months
    bonus_months = NEW_USER_BONUS_MONTHS if is_new_user else 0
    total_months = paid_months + bonus_months

    subscription = Subscription(
        user_id=user_id,
        package_id=package.id,
        status=SUBSCRIPTION_ACTIVE,
        start_date=now,
        end_date=now + timedelta(days=total_months * DAYS_PER_MONTH),
        is_new_user_promo=is_new_user,
        paid_months=paid_months,
        bonus_months=bonus_months,
        total_months=total_months,
        auto_renew=True,
    )
    db.session.add(subscription)
    db.session.flush()

    return subscription, _promotion_descriptor(package, is_new_user)


def create_new_user_subscription(user_id: int, package_id: int, *, commit: bool = True) -> tuple[Subscription, dict]:
    """
    Activate a subscription for a user now.

    Returns (subscription, promotion). With commit=False the caller owns the
    surrounding transaction (the payment callback runs this inside a
    savepoint of its own locked unit).

    Raises:
        PackageNotFoundError: package id does not resolve
        UserNotFoundError: user id does not resolve
        AlreadySubscribedError: user holds a live subscription
    """
    if not commit:
        return _create_new_user_subscription_locked(user_id, package_id)

    def _op():
        begin_immediate()
        result = _create_new_user_subscription_locked(user_id, package_id)
        db.session.commit()
        return result

    return run_with_retry(_op)


def renew_subscription(user_id: int, package_id: int) -> tuple[Subscription, str]:
    """
    Replace the live subscription (if any) with a fresh one. No promo.

    The superseded row becomes CANCELLED with cancelled_at=now.
    """
    def _op():
        begin_immediate()
        package = get_package(package_id)
        _lock_user(user_id)

        now = utcnow()
        existing = get_active_subscription(user_id, now)
        if existing:
            existing.status = SUBSCRIPTION_CANCELLED
            existing.cancelled_at = now

        months = package.duration_months
        subscription = Subscription(
            user_id=user_id,
            package_id=package.id,
            status=SUBSCRIPTION_ACTIVE,
            start_date=now,
            end_date=now + timedelta(days=months * DAYS_PER_MONTH),
            is_new_user_promo=False,
            paid_months=months,
            bonus_months=0,
            total_months=months,
            auto_renew=True,
        )
        db.session.add(subscription)
        db.session.commit()
        return subscription, f"Subscription {package.display_name} renewed for {months} month(s)"

    return run_with_retry(_op)


def credit_paid_months(user_id: int, package_id: int) -> Subscription:
    """
    Add a paid package's months to the user's live subscription.

    Used to settle a payment that succeeded while the user was already
    subscribed. The caller owns the transaction and must hold the write lock.

    Raises:
        NoActiveSubscriptionError: nothing live to credit
    """
    package = get_package(package_id)
    _lock_user(user_id)

    subscription = get_active_subscription(user_id)
    if not subscription:
        raise NoActiveSubscriptionError("User has no active subscription")

    months = package.duration_months
    subscription.end_date = subscription.end_date + timedelta(days=months * DAYS_PER_MONTH)
    subscription.paid_months += months
    subscription.total_months += months
    db.session.flush()
    return subscription


# =============================================================================
# ENTITLEMENTS
# =============================================================================

def can_create_store(user_id: int) -> EntitlementDecision:
    """Whether the user's active package allows one more active store."""
    subscription = get_active_subscription(user_id)
    if not subscription:
        return EntitlementDecision(
            allowed=False,
            reason="No active subscription. Subscribe to create a store.",
        )

    package = subscription.package
    store_count = db.session.query(Store).filter_by(owner_id=user_id, is_active=True).count()

    if store_count >= package.max_stores:
        return EntitlementDecision(
            allowed=False,
            reason=(
                f"Package {package.display_name} allows only {package.max_stores} store(s). "
                "Upgrade to add more stores."
            ),
            current_count=store_count,
            max_allowed=package.max_stores,
            suggested_upgrade=get_suggested_upgrade(package.name),
            current_package=package.name,
        )

    return EntitlementDecision(
        allowed=True,
        current_count=store_count,
        max_allowed=package.max_stores,
        current_package=package.name,
    )


def can_add_member(store_id: int, user_id: int) -> EntitlementDecision:
    """Whether the user's active package allows one more active member in the store."""
    subscription = get_active_subscription(user_id)
    if not subscription:
        return EntitlementDecision(
            allowed=False,
            reason="No active subscription. Subscribe to add store members.",
        )

    package = subscription.package
    member_count = db.session.query(StoreMember).filter_by(store_id=store_id, is_active=True).count()

    if member_count >= package.max_members:
        return EntitlementDecision(
            allowed=False,
            reason=(
                f"Package {package.display_name} allows only {package.max_members} member(s). "
                "Upgrade to add more members."
            ),
            current_count=member_count,
            max_allowed=package.max_members,
            suggested_upgrade=get_suggested_upgrade(package.name),
            current_package=package.name,
        )

    return EntitlementDecision(
        allowed=True,
        current_count=member_count,
        max_allowed=package.max_members,
        current_package=package.name,
    )


def check_subscription_status(user_id: int) -> dict:
    """Access summary for the user: has_access, days_left, is_expiring."""
    now = utcnow()
    subscription = get_active_subscription(user_id, now)

    if not subscription:
        return {
            "is_active": False,
            "status": "NO_SUBSCRIPTION",
            "message": "No active subscription. Subscribe to access this feature.",
            "has_access": False,
            "days_left": 0,
            "is_expiring": False,
            "subscription": None,
        }

    days_left = math.ceil((subscription.end_date - now).total_seconds() / 86400)
    return {
        "is_active": True,
        "status": subscription.status,
        "has_access": True,
        "days_left": days_left,
        "is_expiring": days_left <= EXPIRING_THRESHOLD_DAYS,
        "subscription": subscription.to_dict(),
        "access_details": {
            "max_stores": subscription.package.max_stores,
            "max_members": subscription.package.max_members,
        },
    }


# =============================================================================
# ADMIN OPERATIONS
# =============================================================================

def _require_admin(admin_id: int) -> User:
    admin = db.session.query(User).filter_by(id=admin_id).first()
    if not admin or not admin.is_admin:
        raise AccessDeniedError("Only admins can modify subscriptions")
    return admin


def change_subscription_package(user_id: int, package_id: int, admin_id: int) -> dict:
    """Swap the package of a user's live subscription, keeping its window."""
    def _op():
        begin_immediate()
        _require_admin(admin_id)
        _lock_user(user_id)

        subscription = get_active_subscription(user_id)
        if not subscription:
            raise NoActiveSubscriptionError("User has no active subscription")

        new_package = get_package(package_id)
        previous_package = subscription.package

        subscription.previous_package_id = subscription.package_id
        subscription.package_id = new_package.id
        subscription.is_upgrade = True
        db.session.commit()

        return {
            "subscription": subscription.to_dict(),
            "previous_package": previous_package.display_name if previous_package else None,
            "new_package": new_package.display_name,
            "message": f"Subscription changed to {new_package.display_name}",
        }

    return run_with_retry(_op)


def extend_subscription(user_id: int, additional_days: int, admin_id: int) -> dict:
    """Push the end date of a user's live subscription out by additional_days."""
    if additional_days <= 0:
        raise ValidationError("additional_days must be positive")

    def _op():
        begin_immediate()
        _require_admin(admin_id)
        _lock_user(user_id)

        subscription = get_active_subscription(user_id)
        if not subscription:
            raise NoActiveSubscriptionError("User has no active subscription")

        old_end_date = subscription.end_date
        extra_months = (additional_days + DAYS_PER_MONTH // 2) // DAYS_PER_MONTH

        subscription.end_date = old_end_date + timedelta(days=additional_days)
        subscription.bonus_months += extra_months
        subscription.total_months += extra_months
        db.session.commit()

        return {
            "subscription": subscription.to_dict(),
            "old_end_date": to_utc_z(old_end_date),
            "new_end_date": to_utc_z(subscription.end_date),
            "additional_days": additional_days,
            "message": f"Subscription extended by {additional_days} day(s)",
        }

    return run_with_retry(_op)


# =============================================================================
# CATALOG SEED
# =============================================================================

DEFAULT_PACKAGES = [
    {
        "name": "STANDARD",
        "display_name": "Paket Standard",
        "price": 75000,
        "max_users": 1,
        "max_members": 3,
        "max_stores": 1,
        "features": {"invoice": True, "reports": True, "backup": False, "api_access": False},
    },
    {
        "name": "PRO",
        "display_name": "Paket Pro",
        "price": 150000,
        "max_users": 1,
        "max_members": 5,
        "max_stores": 3,
        "features": {"invoice": True, "reports": True, "backup": True, "api_access": False, "analytics": True},
    },
    {
        "name": "BUSINESS",
        "display_name": "Paket Bisnis",
        "price": 250000,
        "max_users": 1,
        "max_members": 7,
        "max_stores": 5,
        "features": {
            "invoice": True,
            "reports": True,
            "backup": True,
            "api_access": True,
            "analytics": True,
            "priority_support": True,
        },
    },
]


def seed_default_packages() -> list[SubscriptionPackage]:
    """Create the default one-month packages if missing. Existing rows are left untouched."""
    packages = []
    for definition in DEFAULT_PACKAGES:
        package = (
            db.session.query(SubscriptionPackage)
            .filter_by(name=definition["name"], duration_months=1)
            .first()
        )
        if not package:
            package = SubscriptionPackage(duration_months=1, is_active=True, **definition)
            db.session.add(package)
        packages.append(package)
    db.session.commit()
    return packages
