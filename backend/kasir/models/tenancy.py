from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z

MEMBER_ROLE_CASHIER = "CASHIER"
MEMBER_ROLE_MANAGER = "MANAGER"
VALID_MEMBER_ROLES = (MEMBER_ROLE_CASHIER, MEMBER_ROLE_MANAGER)


class Store(db.Model):
    """
    Store owned by exactly one user.

    The store exclusively owns its products, customers, tax setting and
    invoice counter. Staff reach the store through StoreMember rows.
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("owner_id", "name", name="uq_stores_owner_name"),
        db.CheckConstraint("invoice_counter >= 0", name="ck_stores_invoice_counter_nonneg"),
        db.CheckConstraint("tax_rate_bps >= 0 AND tax_rate_bps <= 10000", name="ck_stores_tax_rate_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    store_type = db.Column(db.String(64), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    whatsapp = db.Column(db.String(32), nullable=True)

    # Basis points (e.g., 1000 = 10%)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)

    # Last issued invoice number; only ever bumped with a SQL-side increment
    invoice_counter = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    owner = db.relationship("User", backref=db.backref("owned_stores", lazy=True))

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r} owner_id={self.owner_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "store_type": self.store_type,
            "address": self.address,
            "whatsapp": self.whatsapp,
            "tax_rate_bps": self.tax_rate_bps,
            "invoice_counter": self.invoice_counter,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class StoreMember(db.Model):
    """Staff membership (cashier/manager) of a store."""
    __tablename__ = "store_members"
    __table_args__ = (
        db.UniqueConstraint("store_id", "user_id", name="uq_store_members_store_user"),
        db.Index("ix_store_members_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    role = db.Column(db.String(16), nullable=False, default=MEMBER_ROLE_CASHIER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("members", lazy=True))
    user = db.relationship("User", backref=db.backref("store_memberships", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
