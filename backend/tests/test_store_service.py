"""Store creation and membership, gated by entitlement decisions."""

import pytest

from kasir.models import StoreMember
from kasir.services import store_service, subscription_service
from kasir.services.store_service import EntitlementDeniedError, StoreAccessError
from kasir.services.subscription_service import EntitlementDecision
from kasir.validation import ConflictError, ValidationError


def test_create_store_honors_decision(user, packages):
    subscription_service.create_new_user_subscription(user.id, packages["STANDARD"].id)

    decision = subscription_service.can_create_store(user.id)
    store = store_service.create_store(user.id, {"name": "Toko Satu", "tax_rate_bps": 1100}, decision)

    assert store.owner_id == user.id
    assert store.tax_rate_bps == 1100
    assert store.invoice_counter == 0

    decision = subscription_service.can_create_store(user.id)
    with pytest.raises(EntitlementDeniedError) as excinfo:
        store_service.create_store(user.id, {"name": "Toko Dua"}, decision)

    assert excinfo.value.status_code == 403
    assert excinfo.value.details["suggested_upgrade"] == ["PRO", "BUSINESS"]


def test_create_store_validation(user, packages):
    subscription_service.create_new_user_subscription(user.id, packages["PRO"].id)
    allowed = EntitlementDecision(allowed=True)

    with pytest.raises(ValidationError):
        store_service.create_store(user.id, {"name": "  "}, allowed)
    with pytest.raises(ValidationError):
        store_service.create_store(user.id, {"name": "Toko", "tax_rate_bps": 10001}, allowed)

    store_service.create_store(user.id, {"name": "Toko"}, allowed)
    with pytest.raises(ConflictError):
        store_service.create_store(user.id, {"name": "Toko"}, allowed)


def test_create_store_rechecks_stale_decision(user, packages):
    subscription_service.create_new_user_subscription(user.id, packages["STANDARD"].id)
    decision = subscription_service.can_create_store(user.id)

    store_service.create_store(user.id, {"name": "Toko Satu"}, decision)
    # Same decision reused after the only slot was taken
    with pytest.raises(EntitlementDeniedError) as excinfo:
        store_service.create_store(user.id, {"name": "Toko Dua"}, decision)

    assert excinfo.value.details["current_count"] == 1
    assert excinfo.value.details["max_allowed"] == 1


def test_create_store_requires_live_subscription(user):
    with pytest.raises(EntitlementDeniedError):
        store_service.create_store(user.id, {"name": "Toko"}, EntitlementDecision(allowed=True))


def test_add_member_within_limit(user, make_user, packages, make_store):
    subscription_service.create_new_user_subscription(user.id, packages["STANDARD"].id)
    store = make_store(user)

    members = [store_service.add_member(store.id, user.id, make_user().id) for _ in range(3)]
    assert all(m.role == "CASHIER" for m in members)

    with pytest.raises(EntitlementDeniedError):
        store_service.add_member(store.id, user.id, make_user().id)


def test_add_member_rules(user, make_user, packages, make_store):
    subscription_service.create_new_user_subscription(user.id, packages["STANDARD"].id)
    store = make_store(user)
    cashier = make_user()
    stranger = make_user()

    with pytest.raises(StoreAccessError):
        store_service.add_member(store.id, stranger.id, cashier.id)
    with pytest.raises(ValidationError):
        store_service.add_member(store.id, user.id, user.id)
    with pytest.raises(ValidationError):
        store_service.add_member(store.id, user.id, cashier.id, role="OWNER")

    member = store_service.add_member(store.id, user.id, cashier.id, role="manager")
    assert member.role == "MANAGER"
    with pytest.raises(ConflictError):
        store_service.add_member(store.id, user.id, cashier.id)


def test_deactivated_member_is_reactivated(user, make_user, packages, make_store, add_member, db_session):
    subscription_service.create_new_user_subscription(user.id, packages["STANDARD"].id)
    store = make_store(user)
    cashier = make_user()
    add_member(store, cashier, is_active=False)

    member = store_service.add_member(store.id, user.id, cashier.id)

    assert member.is_active is True
    assert db_session.query(StoreMember).filter_by(store_id=store.id, user_id=cashier.id).count() == 1


def test_require_store_access(user, make_user, make_store, add_member):
    store = make_store(user)
    member = make_user()
    add_member(store, member)

    assert store_service.require_store_access(store.id, user.id).id == store.id
    assert store_service.require_store_access(store.id, member.id).id == store.id
    with pytest.raises(StoreAccessError):
        store_service.require_store_access(store.id, make_user().id)
    with pytest.raises(StoreAccessError):
        store_service.require_store_access(999999, user.id)
