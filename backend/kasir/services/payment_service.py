# Overview: Service-layer operations for subscription payments; encapsulates business logic and database work.

"""
Payment Orchestrator

WHY: Turns money into access. A payment attempt is persisted before the
gateway is called, the gateway's callback moves it to a terminal state, and
a successful payment activates a subscription.

STATE MACHINE: PENDING -> SUCCESS | PENDING -> FAILED. Nothing else.
Expiry of a PENDING attempt is derived from expired_at at read time.

INVARIANTS:
- A user never holds two live (PENDING, not expired) payments. The
  check-then-insert runs under a lock on the user row.
- The PENDING row is committed before any gateway call. Gateway failure or
  timeout moves it to FAILED; it is never left dangling.
- Callbacks are idempotent. The payment row is locked, and a payment that is
  no longer PENDING returns its stored outcome without mutation.
- Activation runs in a SAVEPOINT. If it fails, the payment stays SUCCESS and
  the failure is recorded for reconciliation.
- No gateway call is made while a database transaction is open.
"""

from __future__ import annotations

import math
import secrets
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Payment, PaymentEvent, User
from ..models.billing import PAYMENT_EXPIRED, PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCESS
from ..payment_gateway import RESULT_CODE_PENDING, RESULT_CODE_SUCCESS, GatewayResult
from ..validation import (
    AccessDeniedError,
    ExternalServiceError,
    NotFoundError,
    ServiceError,
    ValidationError,
    coerce_int,
)
from kasir.time_utils import utcnow
from .concurrency import begin_immediate, lock_for_update, run_with_retry
from .subscription_service import (
    AlreadySubscribedError,
    UserNotFoundError,
    create_new_user_subscription,
    credit_paid_months,
    get_active_subscription,
    get_package,
)


REQUIRED_CALLBACK_FIELDS = ("merchantCode", "amount", "merchantOrderId", "resultCode")

ALREADY_PROCESSED = "already processed"

EVENT_CREATED = "CREATED"
EVENT_GATEWAY_ACCEPTED = "GATEWAY_ACCEPTED"
EVENT_GATEWAY_FAILED = "GATEWAY_FAILED"
EVENT_CALLBACK = "CALLBACK"
EVENT_REPLAY = "REPLAY"
EVENT_ACTIVATED = "ACTIVATED"
EVENT_ACTIVATION_FAILED = "ACTIVATION_FAILED"
EVENT_RECONCILED = "RECONCILED"

STATUS_LABELS = {
    PAYMENT_PENDING: "Waiting for payment",
    PAYMENT_SUCCESS: "Paid",
    PAYMENT_FAILED: "Failed",
    PAYMENT_EXPIRED: "Expired",
}


class EmailNotVerifiedError(AccessDeniedError):
    """Raised when an unverified user tries to pay."""


class PaymentNotFoundError(NotFoundError):
    """Raised when a merchant order id does not resolve (or is not visible to the caller)."""


class InvalidCallbackError(ValidationError):
    """Raised for malformed or inconsistent gateway callbacks."""


class InvalidSignatureError(InvalidCallbackError):
    """Raised when a callback signature does not verify under strict mode."""


class PaymentGatewayError(ExternalServiceError):
    """Raised when the gateway rejects, fails or times out on a request."""


@dataclass
class CallbackOutcome:
    merchant_order_id: str
    status: str
    user_id: int
    message: str
    subscription_id: int | None = None
    replay: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# HELPERS
# =============================================================================

def generate_merchant_order_id(user_id: int) -> str:
    """SUB-<epoch ms>-<user id>-<4 hex>; unique across all historical payments."""
    return f"SUB-{int(time.time() * 1000)}-{user_id}-{secrets.token_hex(2).upper()}"


def record_event(payment: Payment, event_type: str, message: str | None = None, payload: dict | None = None) -> PaymentEvent:
    """Append to the payment's event log. Caller commits."""
    event = PaymentEvent(
        payment_id=payment.id,
        event_type=event_type,
        message=message,
        payload=payload,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    return event


def _parse_amount(raw) -> int:
    """Gateway amounts arrive as strings ("75000" or "75000.00"); Rupiah has no subunit."""
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidCallbackError("Callback amount is not a number", details={"amount": raw})
    if value != value.to_integral_value() or value < 0:
        raise InvalidCallbackError("Callback amount is not a whole Rupiah amount", details={"amount": raw})
    return int(value)


def _safe_payload(payload: dict) -> dict:
    data = {k: v for k, v in payload.items() if k != "signature"}
    signature = payload.get("signature")
    if signature:
        data["signature_prefix"] = str(signature)[:10]
    return data


def _projection(payment: Payment, now=None) -> dict:
    now = now or utcnow()
    data = payment.to_dict()

    is_pending = payment.status == PAYMENT_PENDING
    is_expired = is_pending and payment.expired_at < now
    remaining_ms = 0
    if is_pending and not is_expired:
        remaining_ms = int((payment.expired_at - now).total_seconds() * 1000)

    display_status = PAYMENT_EXPIRED if is_expired else payment.status
    data.update({
        "is_expired": is_expired,
        "time_remaining_ms": remaining_ms,
        "display_status": display_status,
        "status_label": STATUS_LABELS.get(display_status, display_status),
        "package": payment.package.to_dict() if payment.package else None,
        "subscription": payment.subscription.to_dict() if payment.subscription else None,
    })
    return data


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def create_subscription_payment(user_id: int, package_id: int, *, gateway) -> dict:
    """
    Start (or resume) a subscription payment for a user.

    Returns {"payment": ..., "package": ..., "is_existing": bool}. A live
    PENDING payment is returned unchanged with is_existing=True.

    Raises:
        UserNotFoundError, EmailNotVerifiedError, PackageNotFoundError
        AlreadySubscribedError: user holds a live subscription
        PaymentGatewayError: gateway failed; the payment row is FAILED
    """
    user = db.session.get(User, user_id)
    if not user:
        raise UserNotFoundError(f"User {user_id} not found")
    if not user.is_email_verified:
        raise EmailNotVerifiedError("Verify your email before subscribing")

    package = get_package(package_id, active_only=True)
    expiry_minutes = int(current_app.config.get("PAYMENT_EXPIRY_MINUTES", 1440))

    def _reserve():
        begin_immediate()
        lock_for_update(db.session.query(User).filter_by(id=user_id)).first()

        now = utcnow()
        # A paid order for a subscribed user could never be activated
        if get_active_subscription(user_id, now):
            raise AlreadySubscribedError(
                "User already has an active subscription",
                details={"user_id": user_id},
            )

        existing = (
            db.session.query(Payment)
            .filter(
                Payment.user_id == user_id,
                Payment.status == PAYMENT_PENDING,
                Payment.expired_at >= now,
            )
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )
        if existing:
            db.session.commit()
            return existing, True

        payment = Payment(
            user_id=user_id,
            package_id=package.id,
            merchant_code=gateway.merchant_code,
            merchant_order_id=generate_merchant_order_id(user_id),
            payment_amount=package.price,
            product_detail=f"Subscription {package.display_name} - {package.duration_months} month(s)",
            status=PAYMENT_PENDING,
            expiry_period=expiry_minutes,
            expired_at=now + timedelta(minutes=expiry_minutes),
            callback_url=gateway.callback_url,
            return_url=gateway.return_url,
        )
        db.session.add(payment)
        db.session.flush()
        record_event(payment, EVENT_CREATED, payload={"package_id": package.id, "amount": package.price})
        db.session.commit()
        return payment, False

    payment, is_existing = run_with_retry(_reserve)

    if is_existing:
        current_app.logger.info(
            "Returning existing pending payment %s for user %s", payment.merchant_order_id, user_id
        )
        return {"payment": _projection(payment), "package": payment.package.to_dict(), "is_existing": True}

    # Transaction is closed here; the gateway call holds no locks
    try:
        result = gateway.create_payment(
            merchant_order_id=payment.merchant_order_id,
            payment_amount=payment.payment_amount,
            product_detail=payment.product_detail,
            email=user.email,
            customer_name=user.name,
            phone_number=user.phone,
            expiry_period=expiry_minutes,
        )
    except Exception as exc:
        # The PENDING row must not outlive a crashed inquiry
        current_app.logger.exception("Gateway call crashed for payment %s", payment.merchant_order_id)
        result = GatewayResult(False, error={"message": f"Gateway client error: {exc}", "type": "client"})

    if not result.success:
        error = result.error or {}
        current_app.logger.error(
            "Gateway failed for payment %s: %s", payment.merchant_order_id, error.get("message")
        )
        _mark_gateway_failed(payment.id, error)
        raise PaymentGatewayError(
            f"Payment gateway error: {error.get('message', 'unknown error')}",
            details={"merchant_order_id": payment.merchant_order_id, "gateway_error": error},
        )

    def _store_gateway_data():
        payment.reference = result.data.get("reference")
        payment.payment_url = result.data.get("payment_url")
        payment.payment_method = result.data.get("payment_method")
        payment.signature = result.data.get("signature")
        record_event(payment, EVENT_GATEWAY_ACCEPTED, payload={"reference": payment.reference})
        db.session.commit()

    run_with_retry(_store_gateway_data)

    current_app.logger.info(
        "Created payment %s for user %s package %s amount %s",
        payment.merchant_order_id, user_id, package.id, payment.payment_amount,
    )
    return {"payment": _projection(payment), "package": package.to_dict(), "is_existing": False}


def _mark_gateway_failed(payment_id: int, error: dict) -> None:
    message = f"Gateway error: {error.get('message', 'unknown error')}"

    def _op():
        # Conditional so a callback that already finalized the payment wins
        db.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
            .values(status=PAYMENT_FAILED, status_message=message, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        payment = db.session.get(Payment, payment_id)
        record_event(payment, EVENT_GATEWAY_FAILED, message=message, payload=error)
        db.session.commit()
        db.session.refresh(payment)

    run_with_retry(_op)


# =============================================================================
# CALLBACKS
# =============================================================================

def _activate(payment: Payment) -> tuple[str, int | None]:
    """
    Activate the subscription for a SUCCESS payment inside a savepoint.

    Any failure rolls back the savepoint only; the payment keeps SUCCESS.
    """
    try:
        with db.session.begin_nested():
            subscription, promotion = create_new_user_subscription(
                payment.user_id, payment.package_id, commit=False
            )
    except ServiceError as exc:
        reason = exc.message
        current_app.logger.warning(
            "Subscription activation failed for payment %s: %s", payment.merchant_order_id, reason
        )
    except Exception as exc:
        reason = str(exc) or exc.__class__.__name__
        current_app.logger.exception(
            "Subscription activation crashed for payment %s", payment.merchant_order_id
        )
    else:
        payment.subscription_id = subscription.id
        record_event(payment, EVENT_ACTIVATED, message=promotion["message"], payload={"subscription_id": subscription.id})
        return "Payment successful, subscription activated", subscription.id

    payment.status_message = f"Payment successful but subscription activation failed: {reason}"
    record_event(payment, EVENT_ACTIVATION_FAILED, message=reason)
    return "Payment successful, subscription activation failed", None


def _apply_gateway_result(
    merchant_order_id: str,
    result_code: str,
    *,
    amount: int | None,
    reference: str | None,
    payload: dict,
    event_type: str = EVENT_CALLBACK,
) -> CallbackOutcome:
    """Apply a final gateway result to a payment under a row lock."""
    def _op():
        begin_immediate()
        payment = lock_for_update(
            db.session.query(Payment).filter_by(merchant_order_id=merchant_order_id)
        ).first()
        if not payment:
            raise PaymentNotFoundError(
                f"Payment {merchant_order_id} not found",
                details={"merchant_order_id": merchant_order_id},
            )

        if amount is not None and amount != payment.payment_amount:
            raise InvalidCallbackError(
                "Callback amount does not match payment amount",
                details={"expected": payment.payment_amount, "received": amount},
            )

        if payment.status != PAYMENT_PENDING:
            record_event(payment, EVENT_REPLAY, message=ALREADY_PROCESSED, payload=payload)
            db.session.commit()
            return CallbackOutcome(
                merchant_order_id=payment.merchant_order_id,
                status=payment.status,
                user_id=payment.user_id,
                message=ALREADY_PROCESSED,
                subscription_id=payment.subscription_id,
                replay=True,
            )

        record_event(payment, event_type, payload=payload)
        payment.result_code = result_code
        if reference:
            payment.reference = reference

        subscription_id = None
        if result_code == RESULT_CODE_SUCCESS:
            payment.status = PAYMENT_SUCCESS
            payment.paid_at = utcnow()
            payment.status_message = "Payment successful"
            message, subscription_id = _activate(payment)
        else:
            payment.status = PAYMENT_FAILED
            payment.status_message = f"Payment failed (result code {result_code})"
            message = "Payment failed"

        db.session.commit()
        return CallbackOutcome(
            merchant_order_id=payment.merchant_order_id,
            status=payment.status,
            user_id=payment.user_id,
            message=message,
            subscription_id=subscription_id,
        )

    return run_with_retry(_op)


def handle_payment_callback(payload: dict | None, *, gateway, strict_signature: bool = True) -> CallbackOutcome:
    """
    Process one gateway callback.

    Raises:
        InvalidCallbackError: missing fields, merchant or amount mismatch
        InvalidSignatureError: bad signature while strict_signature is on
        PaymentNotFoundError: unknown merchantOrderId
    """
    payload = payload or {}
    missing = [f for f in REQUIRED_CALLBACK_FIELDS if payload.get(f) in (None, "")]
    if missing:
        raise InvalidCallbackError(
            f"Missing required callback fields: {', '.join(missing)}",
            details={"missing": missing},
        )

    merchant_code = str(payload["merchantCode"])
    raw_amount = str(payload["amount"])
    merchant_order_id = str(payload["merchantOrderId"])
    result_code = str(payload["resultCode"])

    if not gateway.verify_callback(merchant_code, raw_amount, merchant_order_id, payload.get("signature")):
        if strict_signature:
            raise InvalidSignatureError(
                "Invalid callback signature",
                details={"merchant_order_id": merchant_order_id},
            )
        current_app.logger.warning(
            "Accepting callback for %s with an invalid signature: strict verification is disabled",
            merchant_order_id,
        )

    if merchant_code != gateway.merchant_code:
        raise InvalidCallbackError(
            "Callback merchant code does not match",
            details={"merchant_order_id": merchant_order_id},
        )

    return _apply_gateway_result(
        merchant_order_id,
        result_code,
        amount=_parse_amount(raw_amount),
        reference=payload.get("reference"),
        payload=_safe_payload(payload),
    )


def acknowledge_callback(payload: dict | None, *, gateway, strict_signature: bool = True) -> CallbackOutcome | None:
    """
    Transport-facing wrapper around handle_payment_callback. Never raises.

    The gateway must always receive its acknowledgment, otherwise it retries
    without bound; failures are carried in the log instead.
    """
    try:
        outcome = handle_payment_callback(payload, gateway=gateway, strict_signature=strict_signature)
    except ServiceError as exc:
        current_app.logger.warning("Payment callback rejected: %s %s", exc.message, exc.details)
        return None
    except Exception:
        current_app.logger.exception("Payment callback processing failed")
        return None

    current_app.logger.info(
        "Payment callback processed: order=%s status=%s message=%s",
        outcome.merchant_order_id, outcome.status, outcome.message,
    )
    return outcome


# =============================================================================
# READS
# =============================================================================

def get_payment_status(merchant_order_id: str, *, user_id: int | None = None) -> dict:
    """
    Status projection for one payment. With user_id set, payments of other
    users are reported as not found.
    """
    payment = db.session.query(Payment).filter_by(merchant_order_id=merchant_order_id).first()
    if not payment or (user_id is not None and payment.user_id != user_id):
        raise PaymentNotFoundError(f"Payment {merchant_order_id} not found")
    return _projection(payment)


def get_user_payment_history(user_id: int, page=1, limit=10) -> dict:
    page = coerce_int(page, "page", minimum=1)
    limit = coerce_int(limit, "limit", minimum=1, maximum=100)

    query = (
        db.session.query(Payment)
        .filter(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
    )
    total = query.count()
    payments = query.offset((page - 1) * limit).limit(limit).all()

    now = utcnow()
    return {
        "payments": [_projection(p, now) for p in payments],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }


# =============================================================================
# RECONCILIATION & SANDBOX
# =============================================================================

def reconcile_payment(merchant_order_id: str, *, gateway) -> dict:
    """
    Bring one payment up to date out-of-band.

    PENDING: ask the gateway for the order status and apply a final result
    through the callback pipeline (trusted source, no signature).
    SUCCESS without subscription: credit the paid months to the live
    subscription if the user has one, otherwise retry activation.
    Anything else is left alone.
    """
    payment = db.session.query(Payment).filter_by(merchant_order_id=merchant_order_id).first()
    if not payment:
        raise PaymentNotFoundError(f"Payment {merchant_order_id} not found")

    if payment.status == PAYMENT_PENDING:
        result = gateway.check_transaction_status(merchant_order_id)
        if not result.success:
            error = result.error or {}
            raise PaymentGatewayError(
                f"Payment gateway error: {error.get('message', 'unknown error')}",
                details={"merchant_order_id": merchant_order_id, "gateway_error": error},
            )

        result_code = result.data.get("result_code")
        if not result_code or result_code == RESULT_CODE_PENDING:
            return {
                "action": "none",
                "message": "Payment is still pending at the gateway",
                "payment": _projection(payment),
            }

        raw_amount = result.data.get("amount")
        outcome = _apply_gateway_result(
            merchant_order_id,
            str(result_code),
            amount=_parse_amount(raw_amount) if raw_amount not in (None, "") else None,
            reference=result.data.get("reference"),
            payload={"source": "status_query", **result.data},
            event_type=EVENT_RECONCILED,
        )
        return {"action": "applied", "outcome": outcome.to_dict(), "payment": get_payment_status(merchant_order_id)}

    if payment.status == PAYMENT_SUCCESS and payment.subscription_id is None:
        def _op():
            begin_immediate()
            locked = lock_for_update(
                db.session.query(Payment).filter_by(merchant_order_id=merchant_order_id)
            ).first()
            if locked.subscription_id is not None:
                db.session.commit()
                return "Subscription already linked", locked.subscription_id
            if get_active_subscription(locked.user_id):
                subscription = credit_paid_months(locked.user_id, locked.package_id)
                locked.subscription_id = subscription.id
                locked.status_message = "Payment successful, credited to active subscription"
                record_event(locked, EVENT_RECONCILED, locked.status_message,
                             payload={"subscription_id": subscription.id})
                db.session.commit()
                return locked.status_message, subscription.id

            message, subscription_id = _activate(locked)
            if subscription_id:
                locked.status_message = "Payment successful"
            db.session.commit()
            return message, subscription_id

        message, subscription_id = run_with_retry(_op)
        current_app.logger.info(
            "Reconciled payment %s: %s", merchant_order_id, message
        )
        return {
            "action": "activation_retried",
            "message": message,
            "subscription_id": subscription_id,
            "payment": get_payment_status(merchant_order_id),
        }

    return {"action": "none", "message": "Nothing to reconcile", "payment": _projection(payment)}


def simulate_callback(merchant_order_id: str, result_code: str = RESULT_CODE_SUCCESS, *, gateway) -> CallbackOutcome:
    """Feed a correctly signed callback for a stored payment through the normal pipeline."""
    payment = db.session.query(Payment).filter_by(merchant_order_id=merchant_order_id).first()
    if not payment:
        raise PaymentNotFoundError(f"Payment {merchant_order_id} not found")

    amount = str(payment.payment_amount)
    payload = {
        "merchantCode": gateway.merchant_code,
        "amount": amount,
        "merchantOrderId": merchant_order_id,
        "resultCode": result_code,
        "reference": payment.reference or f"SIM-{merchant_order_id}",
        "productDetail": payment.product_detail,
        "signature": gateway.callback_signature(gateway.merchant_code, amount, merchant_order_id),
    }
    return handle_payment_callback(payload, gateway=gateway, strict_signature=True)
