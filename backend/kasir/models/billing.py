from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z

SUBSCRIPTION_ACTIVE = "ACTIVE"
SUBSCRIPTION_TRIAL = "TRIAL"
SUBSCRIPTION_EXPIRED = "EXPIRED"
SUBSCRIPTION_CANCELLED = "CANCELLED"
LIVE_SUBSCRIPTION_STATUSES = (SUBSCRIPTION_ACTIVE, SUBSCRIPTION_TRIAL)

PAYMENT_PENDING = "PENDING"
PAYMENT_SUCCESS = "SUCCESS"
PAYMENT_FAILED = "FAILED"
PAYMENT_EXPIRED = "EXPIRED"


class SubscriptionPackage(db.Model):
    """
    Catalog entry for a subscription plan.

    Rows referenced by subscriptions are never edited in place; retire a
    package with is_active=False.
    """
    __tablename__ = "subscription_packages"
    __table_args__ = (
        db.UniqueConstraint("name", "duration_months", name="uq_packages_name_duration"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(32), nullable=False)  # STANDARD, PRO, BUSINESS
    display_name = db.Column(db.String(120), nullable=False)
    price = db.Column(db.Integer, nullable=False)
    duration_months = db.Column(db.Integer, nullable=False, default=1)

    max_stores = db.Column(db.Integer, nullable=False, default=1)
    max_members = db.Column(db.Integer, nullable=False, default=0)
    max_users = db.Column(db.Integer, nullable=False, default=1)

    features = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "price": self.price,
            "duration_months": self.duration_months,
            "max_stores": self.max_stores,
            "max_members": self.max_members,
            "max_users": self.max_users,
            "features": self.features or {},
            "is_active": self.is_active,
        }


class Subscription(db.Model):
    """
    A user's access window to a package.

    At most one row per user may be ACTIVE/TRIAL with end_date >= now. Expiry
    is persisted by the expiry sweep; renewals mark the superseded row
    CANCELLED.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        db.Index("ix_subscriptions_user_status_end", "user_id", "status", "end_date"),
        db.CheckConstraint("end_date > start_date", name="ck_subscriptions_window"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey("subscription_packages.id"), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SUBSCRIPTION_ACTIVE, index=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_new_user_promo = db.Column(db.Boolean, nullable=False, default=False)
    paid_months = db.Column(db.Integer, nullable=False, default=1)
    bonus_months = db.Column(db.Integer, nullable=False, default=0)
    total_months = db.Column(db.Integer, nullable=False, default=1)
    auto_renew = db.Column(db.Boolean, nullable=False, default=True)

    # Admin package swaps
    is_upgrade = db.Column(db.Boolean, nullable=False, default=False)
    previous_package_id = db.Column(db.Integer, db.ForeignKey("subscription_packages.id"), nullable=True)

    first_reminder_sent = db.Column(db.Boolean, nullable=False, default=False)
    second_reminder_sent = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("subscriptions", lazy=True))
    package = db.relationship("SubscriptionPackage", foreign_keys=[package_id])
    previous_package = db.relationship("SubscriptionPackage", foreign_keys=[previous_package_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "package_id": self.package_id,
            "package": self.package.to_dict() if self.package else None,
            "status": self.status,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "is_new_user_promo": self.is_new_user_promo,
            "paid_months": self.paid_months,
            "bonus_months": self.bonus_months,
            "total_months": self.total_months,
            "auto_renew": self.auto_renew,
            "is_upgrade": self.is_upgrade,
            "previous_package_id": self.previous_package_id,
            "first_reminder_sent": self.first_reminder_sent,
            "second_reminder_sent": self.second_reminder_sent,
        }


class Payment(db.Model):
    """
    One subscription payment attempt through the gateway.

    Status only moves PENDING -> SUCCESS or PENDING -> FAILED. Expiry of a
    pending attempt is derived from expired_at at read time, never persisted.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("merchant_order_id", name="uq_payments_merchant_order_id"),
        db.Index("ix_payments_user_status_expiry", "user_id", "status", "expired_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    package_id = db.Column(db.Integer, db.ForeignKey("subscription_packages.id"), nullable=False)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True)

    merchant_code = db.Column(db.String(32), nullable=False)
    merchant_order_id = db.Column(db.String(64), nullable=False)
    reference = db.Column(db.String(128), nullable=True)

    payment_amount = db.Column(db.Integer, nullable=False)
    product_detail = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)
    status_message = db.Column(db.Text, nullable=True)
    result_code = db.Column(db.String(8), nullable=True)

    payment_url = db.Column(db.String(512), nullable=True)
    payment_method = db.Column(db.String(64), nullable=True)
    signature = db.Column(db.String(128), nullable=True)

    expiry_period = db.Column(db.Integer, nullable=False, default=1440)  # minutes
    expired_at = db.Column(db.DateTime(timezone=True), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    callback_url = db.Column(db.String(512), nullable=True)
    return_url = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    user = db.relationship("User", backref=db.backref("payments", lazy=True))
    package = db.relationship("SubscriptionPackage")
    subscription = db.relationship("Subscription")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "package_id": self.package_id,
            "subscription_id": self.subscription_id,
            "merchant_code": self.merchant_code,
            "merchant_order_id": self.merchant_order_id,
            "reference": self.reference,
            "payment_amount": self.payment_amount,
            "product_detail": self.product_detail,
            "status": self.status,
            "status_message": self.status_message,
            "result_code": self.result_code,
            "payment_url": self.payment_url,
            "payment_method": self.payment_method,
            "expiry_period": self.expiry_period,
            "expired_at": to_utc_z(self.expired_at),
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentEvent(db.Model):
    """
    Append-only log of everything that happened to a payment.

    WHY: Callbacks are retried by the gateway and activation can fail after
    the money arrived; reconciliation reads this trail.
    """
    __tablename__ = "payment_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    event_type = db.Column(db.String(32), nullable=False, index=True)
    message = db.Column(db.Text, nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)

    payment = db.relationship("Payment", backref=db.backref("events", lazy=True, order_by="PaymentEvent.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "event_type": self.event_type,
            "message": self.message,
            "payload": self.payload,
            "occurred_at": to_utc_z(self.occurred_at),
        }
