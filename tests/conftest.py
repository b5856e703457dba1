from datetime import datetime, timedelta
from decimal import Decimal
import pytest
from perfume_store import create_app
from perfume_store.config import Config
from perfume_store.extensions import db as _db
from perfume_store.models import (
    AdminRole,
    Coupon,
    Fee,
    Permission,
    Product,
    User,
    UserRole,
)
from perfume_store.services.otp_service import get_cache
from perfume_store.services.pricing_service import CartLine


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    PAYOS_ENABLED = False
    MAIL_ENABLED = False
    DAILY_SPINS = 3


class FixedRandom:
    """Returns queued values from randint, for deterministic draws."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = []

    def randint(self, a, b):
        self.calls.append((a, b))
        value = self.values.pop(0)
        assert a <= value <= b
        return value


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        _db.create_all()
        get_cache().clear()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def fees(db):
    vat = Fee(name='VAT', value=Decimal('10'))
    shipping = Fee(
        name='Shipping',
        value=Decimal('30000'),
        threshold=Decimal('5000000'),
    )
    db.session.add_all([vat, shipping])
    db.session.commit()
    return vat, shipping


@pytest.fixture
def make_product(db):
    def _make(name='Dior Sauvage', price='2000000', warranty_months=12,
              published=True):
        product = Product(
            name=name,
            price=Decimal(price),
            stock=10,
            warranty_period_months=warranty_months,
            is_published=published,
        )
        db.session.add(product)
        db.session.commit()
        return product
    return _make


@pytest.fixture
def make_customer(db):
    def _make(email='khach@example.com', password='secret123', spins=3):
        user = User(
            email=email,
            name='Khách Hàng',
            phone='0901234567',
            role=UserRole.CUSTOMER,
            spin_number=spins,
        )
        if password:
            user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_admin(db):
    def _make(email='admin@example.com', password='admin123',
              permissions=None):
        role = AdminRole(name=f'role-{email}')
        for name in permissions or []:
            permission = Permission.query.filter_by(name=name).first()
            if permission is None:
                permission = Permission(name=name)
                db.session.add(permission)
            role.permissions.append(permission)
        admin = User(email=email, name='Admin', role=UserRole.ADMIN)
        admin.admin_role = role
        admin.set_password(password)
        db.session.add_all([role, admin])
        db.session.commit()
        return admin
    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code='GIFT50K', amount='50000', customer_id=None,
              expires_in_days=30, is_used=False):
        now = datetime.utcnow()
        coupon = Coupon(
            code=code,
            discount_amount=Decimal(amount),
            created_at=now,
            expiry_date=(
                now + timedelta(days=expires_in_days)
                if expires_in_days is not None else None
            ),
            customer_id=customer_id,
            is_used=is_used,
        )
        db.session.add(coupon)
        db.session.commit()
        return coupon
    return _make


@pytest.fixture
def login(client):
    def _login(email, password):
        response = client.post('/api/auth/login', json={
            'email': email,
            'password': password,
        })
        assert response.status_code == 200, response.get_json()
        return response
    return _login


@pytest.fixture
def line_for():
    def _line(product, quantity=1):
        return CartLine(
            product_id=product.id,
            name=product.name,
            unit_price=Decimal(product.price),
            quantity=quantity,
        )
    return _line


@pytest.fixture
def fixed_random():
    return FixedRandom
