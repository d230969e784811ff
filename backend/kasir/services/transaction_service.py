# Overview: Service-layer operations for point-of-sale transactions; encapsulates business logic and database work.

"""
Transaction Engine

WHY: A sale touches three shared counters at once: variant stock, the store's
invoice sequence and the transaction ledger. They commit or roll back
together.

ATOMIC UNIT (create_transaction):
1. Lock the store row and the sold variant rows
2. Pre-check stock against the locked rows (error names the product)
3. Bump the invoice counter with a SQL-side increment
4. Insert the transaction and its item snapshots
5. Decrement stock with UPDATE ... WHERE quantity >= n; a miss aborts the unit

Prices always come from the variant row, never from the request. Item rows
are snapshots and are never updated afterwards.
"""

from __future__ import annotations

import math

from sqlalchemy import or_, select, update

from ..extensions import db
from ..models import Customer, ProductVariant, Store, Transaction, TransactionItem, User
from ..models.sales import PAYMENT_METHOD_CASH, PAYMENT_METHOD_CREDIT, TRANSACTION_STATUS_COMPLETED
from ..money import apply_rate_bps, format_rupiah
from ..validation import ConflictError, NotFoundError, ValidationError, coerce_int
from kasir.time_utils import utcnow
from .concurrency import begin_immediate, lock_for_update, run_with_retry
from .store_service import require_store_access


PAYMENT_METHOD_ALIASES = {
    "CASH": PAYMENT_METHOD_CASH,
    "TUNAI": PAYMENT_METHOD_CASH,
    "CREDIT": PAYMENT_METHOD_CREDIT,
    "KASBON": PAYMENT_METHOD_CREDIT,
}

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class InsufficientStockError(ConflictError):
    """Raised when a variant cannot cover the requested quantity."""


class InsufficientPaymentError(ValidationError):
    """Raised when a cash payment does not cover the total."""


def normalize_payment_method(value) -> str:
    method = PAYMENT_METHOD_ALIASES.get(str(value or "").strip().upper())
    if not method:
        raise ValidationError(
            "payment_method must be CASH or CREDIT",
            details={"payment_method": value},
        )
    return method


def _parse_items(raw_items) -> list[tuple[int, int]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("At least one item is required")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        variant_id = coerce_int(raw.get("variant_id"), f"items[{index}].variant_id", minimum=1)
        quantity = coerce_int(raw.get("quantity"), f"items[{index}].quantity", minimum=1)
        items.append((variant_id, quantity))
    return items


def _parse_customer(raw) -> dict | None:
    if not isinstance(raw, dict):
        return None
    name = str(raw.get("name") or "").strip()
    phone = str(raw.get("phone") or "").strip()
    if not name or not phone:
        return None
    return {
        "name": name,
        "phone": phone,
        "address": raw.get("address"),
        "company": raw.get("company"),
        "whatsapp": raw.get("whatsapp"),
    }


def _upsert_customer(store_id: int, info: dict) -> Customer:
    """Same (store, phone) reuses and refreshes the existing customer."""
    customer = db.session.query(Customer).filter_by(store_id=store_id, phone=info["phone"]).first()
    if customer:
        customer.name = info["name"]
        for key in ("address", "company", "whatsapp"):
            if info.get(key) is not None:
                setattr(customer, key, info[key])
    else:
        customer = Customer(store_id=store_id, **info)
        db.session.add(customer)
    db.session.flush()
    return customer


def create_transaction(data: dict, store_id: int, user_id: int) -> Transaction:
    """
    Record a completed sale.

    data: {items: [{variant_id, quantity}], payment_method, amount_paid?,
           customer?: {name, phone, address?, company?, whatsapp?}, notes?}

    Raises:
        ValidationError: bad input, unknown variant, CREDIT without customer
        StoreAccessError: user is not owner/member of the store
        InsufficientStockError: a variant cannot cover its quantity
        InsufficientPaymentError: CASH amount_paid < total
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    items = _parse_items(data.get("items"))
    payment_method = normalize_payment_method(data.get("payment_method"))
    customer_info = _parse_customer(data.get("customer"))

    if payment_method == PAYMENT_METHOD_CREDIT and not customer_info:
        raise ValidationError("Customer name and phone are required for CREDIT sales")

    amount_paid = None
    if payment_method == PAYMENT_METHOD_CASH:
        if data.get("amount_paid") in (None, ""):
            raise ValidationError("amount_paid is required for CASH sales")
        amount_paid = coerce_int(data.get("amount_paid"), "amount_paid", minimum=0)

    require_store_access(store_id, user_id)

    requested: dict[int, int] = {}
    for variant_id, quantity in items:
        requested[variant_id] = requested.get(variant_id, 0) + quantity

    def _op():
        begin_immediate()
        store = lock_for_update(db.session.query(Store).filter_by(id=store_id)).first()

        variants = lock_for_update(
            db.session.query(ProductVariant).filter(ProductVariant.id.in_(list(requested)))
        ).all()
        by_id = {variant.id: variant for variant in variants}

        for variant_id, quantity in requested.items():
            variant = by_id.get(variant_id)
            if not variant or variant.product.store_id != store_id or not variant.product.is_active:
                raise ValidationError(
                    f"Product variant {variant_id} not found in this store",
                    details={"variant_id": variant_id},
                )
            if variant.quantity < quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for {_display_name(variant)}: "
                    f"available {variant.quantity}, requested {quantity}",
                    details={
                        "variant_id": variant_id,
                        "product": variant.product.name,
                        "available": variant.quantity,
                        "requested": quantity,
                    },
                )

        lines = []
        subtotal = 0
        for variant_id, quantity in items:
            variant = by_id[variant_id]
            line_subtotal = variant.price * quantity
            subtotal += line_subtotal
            lines.append((variant, quantity, line_subtotal))

        tax = apply_rate_bps(subtotal, store.tax_rate_bps)
        discount = 0
        total = subtotal + tax - discount

        change = None
        if payment_method == PAYMENT_METHOD_CASH:
            if amount_paid < total:
                shortfall = total - amount_paid
                raise InsufficientPaymentError(
                    f"Insufficient payment: short by {format_rupiah(shortfall)}",
                    details={"total": total, "amount_paid": amount_paid, "shortfall": shortfall},
                )
            change = amount_paid - total

        customer = _upsert_customer(store_id, customer_info) if customer_info else None

        db.session.execute(
            update(Store)
            .where(Store.id == store_id)
            .values(invoice_counter=Store.invoice_counter + 1)
            .execution_options(synchronize_session=False)
        )
        invoice_number = db.session.execute(
            select(Store.invoice_counter).where(Store.id == store_id)
        ).scalar_one()

        now = utcnow()
        txn = Transaction(
            store_id=store_id,
            user_id=user_id,
            customer_id=customer.id if customer else None,
            invoice_number=invoice_number,
            status=TRANSACTION_STATUS_COMPLETED,
            payment_method=payment_method,
            subtotal=subtotal,
            tax=tax,
            discount=discount,
            total=total,
            amount_paid=amount_paid,
            change=change,
            notes=data.get("notes"),
            completed_at=now,
        )
        db.session.add(txn)
        db.session.flush()

        for variant, quantity, line_subtotal in lines:
            db.session.add(TransactionItem(
                transaction_id=txn.id,
                product_id=variant.product_id,
                variant_id=variant.id,
                name=_display_name(variant),
                quantity=quantity,
                price=variant.price,
                discount=0,
                subtotal=line_subtotal,
            ))

            result = db.session.execute(
                update(ProductVariant)
                .where(ProductVariant.id == variant.id, ProductVariant.quantity >= quantity)
                .values(quantity=ProductVariant.quantity - quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientStockError(
                    f"Insufficient stock for {_display_name(variant)}",
                    details={"variant_id": variant.id, "requested": quantity},
                )

        db.session.commit()
        return txn.id

    transaction_id = run_with_retry(_op)
    return db.session.get(Transaction, transaction_id)


def _display_name(variant: ProductVariant) -> str:
    if variant.name:
        return f"{variant.product.name} - {variant.name}"
    return variant.product.name


def get_history_all(store_id: int, user_id: int, filters: dict | None = None) -> dict:
    """Paginated transaction list for a store, newest first."""
    require_store_access(store_id, user_id)
    filters = filters or {}

    page = coerce_int(filters.get("page", 1), "page", minimum=1)
    limit = coerce_int(filters.get("limit", DEFAULT_PAGE_SIZE), "limit", minimum=1, maximum=MAX_PAGE_SIZE)

    query = (
        db.session.query(Transaction)
        .outerjoin(Customer, Transaction.customer_id == Customer.id)
        .join(User, Transaction.user_id == User.id)
        .filter(Transaction.store_id == store_id)
    )

    if filters.get("payment_method"):
        query = query.filter(Transaction.payment_method == normalize_payment_method(filters["payment_method"]))

    search = str(filters.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        clauses = [Customer.name.ilike(pattern), User.name.ilike(pattern)]
        if search.isdigit():
            clauses.append(Transaction.invoice_number == int(search))
        query = query.filter(or_(*clauses))

    total = query.count()
    transactions = (
        query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "transactions": [t.to_dict(include_items=False) for t in transactions],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }


def get_history_by_id(transaction_id: int, user_id: int) -> Transaction:
    """One transaction with items, visible to the store owner and members only."""
    txn = db.session.get(Transaction, transaction_id)
    if not txn:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    require_store_access(txn.store_id, user_id)
    return txn
