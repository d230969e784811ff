from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z

PAYMENT_METHOD_CASH = "CASH"
PAYMENT_METHOD_CREDIT = "CREDIT"
VALID_PAYMENT_METHODS = (PAYMENT_METHOD_CASH, PAYMENT_METHOD_CREDIT)

TRANSACTION_STATUS_COMPLETED = "COMPLETED"


class Transaction(db.Model):
    """
    A completed point-of-sale transaction.

    Totals are integer Rupiah and satisfy total = subtotal + tax - discount.
    For CASH sales amount_paid >= total and change = amount_paid - total;
    CREDIT sales carry a customer and no amount_paid/change.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("store_id", "invoice_number", name="uq_transactions_store_invoice"),
        db.Index("ix_transactions_store_status_created", "store_id", "status", "created_at"),
        db.CheckConstraint("total = subtotal + tax - discount", name="ck_transactions_total"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # Post-increment value of Store.invoice_counter
    invoice_number = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=TRANSACTION_STATUS_COMPLETED, index=True)
    payment_method = db.Column(db.String(16), nullable=False, index=True)

    subtotal = db.Column(db.Integer, nullable=False)
    tax = db.Column(db.Integer, nullable=False, default=0)
    discount = db.Column(db.Integer, nullable=False, default=0)
    total = db.Column(db.Integer, nullable=False)
    amount_paid = db.Column(db.Integer, nullable=True)
    change = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    store = db.relationship("Store", backref=db.backref("transactions", lazy=True))
    cashier = db.relationship("User")
    customer = db.relationship("Customer")
    items = db.relationship(
        "TransactionItem",
        backref="transaction",
        lazy=True,
        order_by="TransactionItem.id",
    )

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "customer_id": self.customer_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "payment_method": self.payment_method,
            "subtotal": self.subtotal,
            "tax": self.tax,
            "discount": self.discount,
            "total": self.total,
            "amount_paid": self.amount_paid,
            "change": self.change,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "cashier": {"id": self.cashier.id, "name": self.cashier.name} if self.cashier else None,
            "customer": self.customer.to_dict() if self.customer else None,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class TransactionItem(db.Model):
    """
    Immutable line snapshot of a sale.

    name/price/subtotal are copied from the variant at sale time and are never
    updated when the product changes later.
    """
    __tablename__ = "transaction_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_transaction_items_quantity_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)

    name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=False)
    discount = db.Column(db.Integer, nullable=False, default=0)
    subtotal = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": self.price,
            "discount": self.discount,
            "subtotal": self.subtotal,
        }
