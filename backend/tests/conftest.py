"""
Pytest fixtures for Kasir backend tests.

Provides an in-memory app, per-test table wipe, entity factories, a fake
payment gateway and bearer-token helpers.
"""

import pytest

from kasir import create_app
from kasir.extensions import db
from kasir.models import Product, ProductVariant, Store, StoreMember, SubscriptionPackage, User
from kasir.models.auth import ROLE_ADMIN, ROLE_USER
from kasir.payment_gateway import DuitkuClient, GatewayResult
from kasir.services.auth_service import hash_password
from kasir.services import session_service


TEST_PASSWORD = "Password123!"
TEST_MERCHANT_CODE = "DTEST01"
TEST_API_KEY = "test-api-key"

# bcrypt at the default cost makes the suite crawl
_PASSWORD_HASH = None


def _password_hash():
    global _PASSWORD_HASH
    if _PASSWORD_HASH is None:
        _PASSWORD_HASH = hash_password(TEST_PASSWORD)
    return _PASSWORD_HASH


class FakeGateway(DuitkuClient):
    """
    DuitkuClient with the network calls replaced.

    Signatures are the real ones, so callbacks built with
    `signed_callback` verify exactly as production callbacks do.
    """

    def __init__(self):
        super().__init__(
            TEST_MERCHANT_CODE,
            TEST_API_KEY,
            callback_url="http://testserver/api/v1/payments/callback",
            return_url="http://testserver/payment/success",
        )
        self.create_calls = []
        self.status_calls = []
        self.fail_next = None
        self.status_result = GatewayResult(True, data={"result_code": "01"})

    def create_payment(self, **kwargs):
        self.create_calls.append(kwargs)
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            return GatewayResult(False, error=error)
        order = kwargs["merchant_order_id"]
        return GatewayResult(True, data={
            "payment_url": f"https://sandbox.example/pay/{order}",
            "reference": f"REF-{order}",
            "payment_method": "Virtual Account",
            "va_number": "8888000011112222",
            "signature": self.generate_signature(order, kwargs["payment_amount"]),
        })

    def check_transaction_status(self, merchant_order_id):
        self.status_calls.append(merchant_order_id)
        return self.status_result

    def signed_callback(self, merchant_order_id, amount, result_code="00", **extra):
        amount = str(amount)
        payload = {
            "merchantCode": self.merchant_code,
            "amount": amount,
            "merchantOrderId": merchant_order_id,
            "resultCode": result_code,
            "reference": f"REF-{merchant_order_id}",
            "signature": self.callback_signature(self.merchant_code, amount, merchant_order_id),
        }
        payload.update(extra)
        return payload


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ENVIRONMENT': 'test',
        'DUITKU_MERCHANT_CODE': TEST_MERCHANT_CODE,
        'DUITKU_API_KEY': TEST_API_KEY,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app):
    """Fake gateway installed as the app's payment gateway for this test."""
    original = app.extensions["payment_gateway"]
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    yield fake
    app.extensions["payment_gateway"] = original


@pytest.fixture(scope='function')
def make_user(db_session):
    counter = {"n": 0}

    def _make(name=None, *, verified=True, role=ROLE_USER, email=None):
        counter["n"] += 1
        user = User(
            name=name or f"User {counter['n']}",
            email=email or f"user{counter['n']}@kasir.test",
            password_hash=_password_hash(),
            is_email_verified=verified,
            role=role,
            is_active=True,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture(scope='function')
def user(make_user):
    return make_user("Owner")


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user("Admin", role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def packages(db_session):
    """STANDARD / PRO / BUSINESS one-month packages."""
    rows = [
        SubscriptionPackage(name="STANDARD", display_name="Paket Standard", price=50000,
                            duration_months=1, max_stores=1, max_members=3, max_users=1),
        SubscriptionPackage(name="PRO", display_name="Paket Pro", price=150000,
                            duration_months=1, max_stores=3, max_members=5, max_users=1),
        SubscriptionPackage(name="BUSINESS", display_name="Paket Bisnis", price=250000,
                            duration_months=1, max_stores=5, max_members=7, max_users=1),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {p.name: p for p in rows}


@pytest.fixture(scope='function')
def make_store(db_session):
    def _make(owner, name="Toko Maju", tax_rate_bps=0):
        store = Store(owner_id=owner.id, name=name, tax_rate_bps=tax_rate_bps)
        db_session.add(store)
        db_session.commit()
        return store

    return _make


@pytest.fixture(scope='function')
def make_variant(db_session):
    def _make(store, *, price=10000, quantity=10, name="Kopi Susu", variant_name=None):
        product = Product(store_id=store.id, name=name)
        db_session.add(product)
        db_session.flush()
        variant = ProductVariant(product_id=product.id, name=variant_name, price=price, quantity=quantity)
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture(scope='function')
def add_member(db_session):
    def _add(store, member, role="CASHIER", is_active=True):
        row = StoreMember(store_id=store.id, user_id=member.id, role=role, is_active=is_active)
        db_session.add(row)
        db_session.commit()
        return row

    return _add


@pytest.fixture(scope='function')
def token_for(db_session):
    def _token(user):
        _, token = session_service.create_session(user.id)
        return token

    return _token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
