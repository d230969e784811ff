from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z


class Product(db.Model):
    """Catalog product; sellable units live on ProductVariant."""
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("products", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class ProductVariant(db.Model):
    """
    Sellable variant of a product (unit/size) with its own stock and price.

    Prices are integer Rupiah. Stock (`quantity`) is only decremented with a
    conditional SQL update so concurrent sales cannot drive it negative.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_variants_quantity_nonneg"),
        db.CheckConstraint("price >= 0", name="ck_variants_price_nonneg"),
        db.CheckConstraint("capital_price <= price", name="ck_variants_capital_le_price"),
        db.CheckConstraint(
            "NOT (discount_percent > 0 AND discount_rp > 0)",
            name="ck_variants_single_discount",
        ),
        db.CheckConstraint("discount_rp < price OR discount_rp = 0", name="ck_variants_discount_lt_price"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=True)
    sku = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    price = db.Column(db.Integer, nullable=False)
    capital_price = db.Column(db.Integer, nullable=False, default=0)
    discount_percent = db.Column(db.Integer, nullable=False, default=0)
    discount_rp = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("variants", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "price": self.price,
            "capital_price": self.capital_price,
            "discount_percent": self.discount_percent,
            "discount_rp": self.discount_rp,
        }
