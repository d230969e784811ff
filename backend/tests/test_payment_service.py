"""
Payment orchestrator tests: creation, callback idempotency, partial-failure
policy and reconciliation.
"""

from datetime import timedelta

import pytest

from kasir.extensions import db
from kasir.models import Payment, PaymentEvent, Subscription
from kasir.models.billing import PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCESS
from kasir.payment_gateway import GatewayResult
from kasir.services import payment_service, subscription_service
from kasir.services.payment_service import (
    ALREADY_PROCESSED,
    EVENT_ACTIVATION_FAILED,
    EmailNotVerifiedError,
    InvalidCallbackError,
    InvalidSignatureError,
    PaymentGatewayError,
    PaymentNotFoundError,
)
from kasir.services.subscription_service import AlreadySubscribedError, PackageNotFoundError, UserNotFoundError
from kasir.time_utils import utcnow
from kasir.validation import ValidationError


def _create(user, package, gateway):
    return payment_service.create_subscription_payment(user.id, package.id, gateway=gateway)


# =============================================================================
# CREATION
# =============================================================================

def test_create_payment_persists_pending_row(user, packages, gateway):
    result = _create(user, packages["STANDARD"], gateway)

    payment = result["payment"]
    assert result["is_existing"] is False
    assert payment["status"] == PAYMENT_PENDING
    assert payment["payment_amount"] == 50000
    assert payment["payment_url"].endswith(payment["merchant_order_id"])
    assert payment["merchant_order_id"].startswith("SUB-")
    assert f"-{user.id}-" in payment["merchant_order_id"]
    assert payment["is_expired"] is False
    assert 0 < payment["time_remaining_ms"] <= 24 * 60 * 60 * 1000

    assert len(gateway.create_calls) == 1
    call = gateway.create_calls[0]
    assert call["email"] == user.email
    assert call["payment_amount"] == 50000
    assert call["expiry_period"] == 1440


def test_second_create_returns_existing_payment(user, packages, gateway):
    first = _create(user, packages["STANDARD"], gateway)
    second = _create(user, packages["PRO"], gateway)

    assert second["is_existing"] is True
    assert second["payment"]["merchant_order_id"] == first["payment"]["merchant_order_id"]
    assert len(gateway.create_calls) == 1
    assert db.session.query(Payment).filter_by(user_id=user.id).count() == 1


def test_expired_pending_payment_is_not_reused(user, packages, gateway):
    first = _create(user, packages["STANDARD"], gateway)
    payment = db.session.query(Payment).filter_by(merchant_order_id=first["payment"]["merchant_order_id"]).one()
    payment.expired_at = utcnow() - timedelta(minutes=1)
    db.session.commit()

    second = _create(user, packages["STANDARD"], gateway)

    assert second["is_existing"] is False
    assert second["payment"]["merchant_order_id"] != first["payment"]["merchant_order_id"]
    status = payment_service.get_payment_status(first["payment"]["merchant_order_id"])
    assert status["is_expired"] is True
    assert status["display_status"] == "EXPIRED"
    assert status["time_remaining_ms"] == 0


def test_create_payment_preconditions(make_user, packages, gateway):
    unverified = make_user(verified=False)
    with pytest.raises(EmailNotVerifiedError):
        _create(unverified, packages["STANDARD"], gateway)

    with pytest.raises(UserNotFoundError):
        payment_service.create_subscription_payment(999999, packages["STANDARD"].id, gateway=gateway)

    verified = make_user()
    with pytest.raises(PackageNotFoundError):
        payment_service.create_subscription_payment(verified.id, 999999, gateway=gateway)

    assert db.session.query(Payment).count() == 0


def test_gateway_failure_marks_payment_failed(user, packages, gateway):
    gateway.fail_next = {"message": "Gateway timeout", "type": "timeout"}

    with pytest.raises(PaymentGatewayError) as excinfo:
        _create(user, packages["STANDARD"], gateway)

    assert excinfo.value.status_code == 502
    payment = db.session.query(Payment).filter_by(user_id=user.id).one()
    db.session.refresh(payment)
    assert payment.status == PAYMENT_FAILED
    assert "Gateway timeout" in payment.status_message
    assert excinfo.value.details["merchant_order_id"] == payment.merchant_order_id

    # A failed attempt does not block a new one
    retry = _create(user, packages["STANDARD"], gateway)
    assert retry["is_existing"] is False


def test_gateway_crash_marks_payment_failed(user, packages, gateway, monkeypatch):
    def crash(**kwargs):
        raise AttributeError("'list' object has no attribute 'get'")

    monkeypatch.setattr(gateway, "create_payment", crash)
    with pytest.raises(PaymentGatewayError):
        _create(user, packages["STANDARD"], gateway)

    payment = db.session.query(Payment).filter_by(user_id=user.id).one()
    db.session.refresh(payment)
    assert payment.status == PAYMENT_FAILED
    assert payment.payment_url is None

    monkeypatch.undo()
    retry = _create(user, packages["STANDARD"], gateway)
    assert retry["is_existing"] is False
    assert retry["payment"]["payment_url"] is not None


def test_subscribed_user_cannot_start_payment(user, packages, gateway):
    subscription_service.create_new_user_subscription(user.id, packages["STANDARD"].id)

    with pytest.raises(AlreadySubscribedError) as excinfo:
        _create(user, packages["PRO"], gateway)

    assert excinfo.value.status_code == 409
    assert gateway.create_calls == []
    assert db.session.query(Payment).filter_by(user_id=user.id).count() == 0


# =============================================================================
# CALLBACKS
# =============================================================================

def test_success_callback_activates_subscription(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]

    outcome = payment_service.handle_payment_callback(
        gateway.signed_callback(order_id, 50000), gateway=gateway
    )

    assert outcome.status == PAYMENT_SUCCESS
    assert outcome.user_id == user.id
    assert outcome.replay is False
    assert outcome.subscription_id is not None

    payment = db.session.query(Payment).filter_by(merchant_order_id=order_id).one()
    assert payment.paid_at is not None
    assert payment.result_code == "00"
    assert payment.subscription_id == outcome.subscription_id

    subscription = db.session.get(Subscription, outcome.subscription_id)
    assert subscription.package_id == packages["STANDARD"].id
    assert subscription.end_date - subscription.start_date == timedelta(days=60)


def test_replayed_callback_creates_one_subscription(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    payload = gateway.signed_callback(order_id, 50000)

    first = payment_service.handle_payment_callback(dict(payload), gateway=gateway)
    second = payment_service.handle_payment_callback(dict(payload), gateway=gateway)

    assert first.status == PAYMENT_SUCCESS
    assert second.status == PAYMENT_SUCCESS
    assert second.message == ALREADY_PROCESSED
    assert second.replay is True
    assert second.subscription_id == first.subscription_id
    assert db.session.query(Subscription).filter_by(user_id=user.id).count() == 1


def test_failure_callback_marks_failed_without_subscription(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]

    outcome = payment_service.handle_payment_callback(
        gateway.signed_callback(order_id, 50000, result_code="02"), gateway=gateway
    )

    assert outcome.status == PAYMENT_FAILED
    assert db.session.query(Subscription).count() == 0

    # A late success for the same order cannot resurrect it
    late = payment_service.handle_payment_callback(
        gateway.signed_callback(order_id, 50000), gateway=gateway
    )
    assert late.status == PAYMENT_FAILED
    assert late.message == ALREADY_PROCESSED
    assert db.session.query(Subscription).count() == 0


def test_callback_missing_fields(gateway):
    with pytest.raises(InvalidCallbackError) as excinfo:
        payment_service.handle_payment_callback({"merchantCode": "X"}, gateway=gateway)

    assert set(excinfo.value.details["missing"]) == {"amount", "merchantOrderId", "resultCode"}


def test_bad_signature_rejected_in_strict_mode(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    payload = gateway.signed_callback(order_id, 50000, signature="0" * 32)

    with pytest.raises(InvalidSignatureError):
        payment_service.handle_payment_callback(payload, gateway=gateway, strict_signature=True)

    payment = db.session.query(Payment).filter_by(merchant_order_id=order_id).one()
    assert payment.status == PAYMENT_PENDING


def test_bad_signature_tolerated_when_relaxed(user, packages, gateway, caplog):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    payload = gateway.signed_callback(order_id, 50000, signature="0" * 32)

    with caplog.at_level("WARNING"):
        outcome = payment_service.handle_payment_callback(payload, gateway=gateway, strict_signature=False)

    assert outcome.status == PAYMENT_SUCCESS
    assert "strict verification is disabled" in caplog.text


def test_amount_mismatch_rejected(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]

    with pytest.raises(InvalidCallbackError) as excinfo:
        payment_service.handle_payment_callback(gateway.signed_callback(order_id, 1000), gateway=gateway)

    assert excinfo.value.details == {"expected": 50000, "received": 1000}
    payment = db.session.query(Payment).filter_by(merchant_order_id=order_id).one()
    assert payment.status == PAYMENT_PENDING


def test_decimal_amount_string_accepted(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]

    outcome = payment_service.handle_payment_callback(
        gateway.signed_callback(order_id, "50000.00"), gateway=gateway
    )

    assert outcome.status == PAYMENT_SUCCESS


def test_unknown_order_rejected(gateway):
    with pytest.raises(PaymentNotFoundError):
        payment_service.handle_payment_callback(gateway.signed_callback("SUB-0-0-ZZZZ", 50000), gateway=gateway)


def test_activation_failure_keeps_payment_success(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    # The user subscribes through another path before the callback arrives
    existing, _ = subscription_service.create_new_user_subscription(user.id, packages["PRO"].id)

    outcome = payment_service.handle_payment_callback(
        gateway.signed_callback(order_id, 50000), gateway=gateway
    )

    assert outcome.status == PAYMENT_SUCCESS
    assert outcome.subscription_id is None
    assert "activation failed" in outcome.message

    payment = db.session.query(Payment).filter_by(merchant_order_id=order_id).one()
    assert payment.status == PAYMENT_SUCCESS
    assert payment.subscription_id is None
    assert "activation failed" in payment.status_message
    assert db.session.query(Subscription).filter_by(user_id=user.id).count() == 1

    event_types = [e.event_type for e in db.session.query(PaymentEvent).filter_by(payment_id=payment.id)]
    assert EVENT_ACTIVATION_FAILED in event_types


def test_acknowledge_callback_never_raises(gateway):
    assert payment_service.acknowledge_callback({}, gateway=gateway) is None
    assert payment_service.acknowledge_callback(None, gateway=gateway) is None


def test_event_log_does_not_store_full_signature(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    payload = gateway.signed_callback(order_id, 50000)
    payment_service.handle_payment_callback(dict(payload), gateway=gateway)

    payment = db.session.query(Payment).filter_by(merchant_order_id=order_id).one()
    callback_event = [e for e in payment.events if e.event_type == "CALLBACK"][0]
    assert "signature" not in callback_event.payload
    assert callback_event.payload["signature_prefix"] == payload["signature"][:10]


# =============================================================================
# READS
# =============================================================================

def test_payment_status_hidden_from_other_users(user, make_user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    other = make_user()

    assert payment_service.get_payment_status(order_id, user_id=user.id)["merchant_order_id"] == order_id
    with pytest.raises(PaymentNotFoundError):
        payment_service.get_payment_status(order_id, user_id=other.id)


def test_payment_history_pagination(user, packages, gateway):
    for _ in range(3):
        gateway.fail_next = {"message": "down"}
        with pytest.raises(PaymentGatewayError):
            _create(user, packages["STANDARD"], gateway)

    history = payment_service.get_user_payment_history(user.id, page=1, limit=2)
    assert len(history["payments"]) == 2
    assert history["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
    assert all(p["status_label"] == "Failed" for p in history["payments"])

    with pytest.raises(ValidationError):
        payment_service.get_user_payment_history(user.id, page=1, limit=101)


# =============================================================================
# RECONCILIATION & SANDBOX
# =============================================================================

def test_reconcile_pending_applies_gateway_success(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    gateway.status_result = GatewayResult(True, data={
        "result_code": "00", "amount": "50000", "reference": "REF-X", "status_message": "SUCCESS",
    })

    result = payment_service.reconcile_payment(order_id, gateway=gateway)

    assert result["action"] == "applied"
    assert result["outcome"]["status"] == PAYMENT_SUCCESS
    assert gateway.status_calls == [order_id]
    assert db.session.query(Subscription).filter_by(user_id=user.id).count() == 1


def test_reconcile_pending_still_pending(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]

    result = payment_service.reconcile_payment(order_id, gateway=gateway)

    assert result["action"] == "none"
    assert result["payment"]["status"] == PAYMENT_PENDING


def test_reconcile_retries_failed_activation(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    blocking, _ = subscription_service.create_new_user_subscription(user.id, packages["PRO"].id)
    payment_service.handle_payment_callback(gateway.signed_callback(order_id, 50000), gateway=gateway)

    # Clear the blocker, then reconcile
    blocking.end_date = utcnow() - timedelta(seconds=1)
    blocking.start_date = blocking.end_date - timedelta(days=60)
    db.session.commit()

    result = payment_service.reconcile_payment(order_id, gateway=gateway)
    assert result["action"] == "activation_retried"
    assert result["subscription_id"] is not None

    again = payment_service.reconcile_payment(order_id, gateway=gateway)
    assert again["action"] == "none"
    assert db.session.query(Subscription).filter_by(user_id=user.id).count() == 2


def test_reconcile_credits_live_subscription(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]
    live, _ = subscription_service.create_new_user_subscription(user.id, packages["PRO"].id)
    original_end = live.end_date
    payment_service.handle_payment_callback(gateway.signed_callback(order_id, 50000), gateway=gateway)

    result = payment_service.reconcile_payment(order_id, gateway=gateway)

    assert result["action"] == "activation_retried"
    assert result["subscription_id"] == live.id
    db.session.refresh(live)
    assert live.end_date == original_end + timedelta(days=30)
    assert live.paid_months == 2

    payment = db.session.query(Payment).filter_by(merchant_order_id=order_id).one()
    assert payment.subscription_id == live.id
    assert db.session.query(Subscription).filter_by(user_id=user.id).count() == 1
    assert payment_service.reconcile_payment(order_id, gateway=gateway)["action"] == "none"


def test_simulate_callback_goes_through_pipeline(user, packages, gateway):
    order_id = _create(user, packages["STANDARD"], gateway)["payment"]["merchant_order_id"]

    outcome = payment_service.simulate_callback(order_id, gateway=gateway)

    assert outcome.status == PAYMENT_SUCCESS
    assert outcome.subscription_id is not None
