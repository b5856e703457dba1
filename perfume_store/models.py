from perfume_store.extensions import db
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime
from sqlalchemy import CheckConstraint, text
import enum
import json


class UserRole(enum.Enum):
    CUSTOMER = 'CUSTOMER'
    ADMIN = 'ADMIN'


class OrderStatus(enum.Enum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    AWAITING_PAYMENT = 'AWAITING_PAYMENT'
    PAID = 'PAID'
    CONFIRMED = 'CONFIRMED'
    SHIPPING = 'SHIPPING'
    DELIVERED = 'DELIVERED'
    CANCELLED = 'CANCELLED'

    @property
    def label(self):
        return ORDER_STATUS_LABELS[self]

    @classmethod
    def parse(cls, raw):
        """Resolve a status from its name, its display label or a legacy
        alias. Returns None for anything unknown."""
        if isinstance(raw, cls):
            return raw
        value = (raw or '').strip()
        if not value:
            return None
        try:
            return cls[value.upper()]
        except KeyError:
            pass
        for status, label in ORDER_STATUS_LABELS.items():
            if label.lower() == value.lower():
                return status
        return ORDER_STATUS_ALIASES.get(value.lower())


ORDER_STATUS_LABELS = {
    OrderStatus.PENDING: 'Chờ xác nhận',
    OrderStatus.PROCESSING: 'Đang xử lý',
    OrderStatus.AWAITING_PAYMENT: 'Chờ thanh toán',
    OrderStatus.PAID: 'Đã thanh toán',
    OrderStatus.CONFIRMED: 'Đã xác nhận',
    OrderStatus.SHIPPING: 'Đang giao hàng',
    OrderStatus.DELIVERED: 'Đã giao hàng',
    OrderStatus.CANCELLED: 'Đã hủy',
}

# Free-text statuses found on older orders
ORDER_STATUS_ALIASES = {
    'chờ xử lý': OrderStatus.PENDING,
    'đang chờ xác nhận': OrderStatus.PENDING,
    'đã giao': OrderStatus.DELIVERED,
    'hoàn thành': OrderStatus.DELIVERED,
    'đang giao': OrderStatus.SHIPPING,
    'đã huỷ': OrderStatus.CANCELLED,
    'cancelled': OrderStatus.CANCELLED,
    'canceled': OrderStatus.CANCELLED,
}


class PaymentMethod(enum.Enum):
    COD = 'COD'
    BANK_TRANSFER = 'BANK_TRANSFER'
    E_WALLET = 'E_WALLET'
    CREDIT_CARD = 'CREDIT_CARD'

    @property
    def label(self):
        return PAYMENT_METHOD_LABELS[self]


PAYMENT_METHOD_LABELS = {
    PaymentMethod.COD: 'Thanh toán khi nhận hàng',
    PaymentMethod.BANK_TRANSFER: 'Chuyển khoản ngân hàng',
    PaymentMethod.E_WALLET: 'Ví điện tử',
    PaymentMethod.CREDIT_CARD: 'Thẻ tín dụng',
}


class WarrantyStatus(enum.Enum):
    ACTIVE = 'ACTIVE'
    EXPIRED = 'EXPIRED'
    VOID = 'VOID'


class ClaimStatus(enum.Enum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    COMPLETED = 'COMPLETED'
    REJECTED = 'REJECTED'


OPEN_CLAIM_STATUSES = (ClaimStatus.PENDING, ClaimStatus.PROCESSING)


admin_role_permissions = db.Table(
    'admin_role_permissions',
    db.Column(
        'admin_role_id',
        db.Integer,
        db.ForeignKey('admin_roles.id'),
        primary_key=True),
    db.Column(
        'permission_id',
        db.Integer,
        db.ForeignKey('permissions.id'),
        primary_key=True),
)


class Permission(db.Model):
    __tablename__ = 'permissions'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(255), nullable=True)

    def __repr__(self):
        return f'<Permission {self.name}>'


class AdminRole(db.Model):
    __tablename__ = 'admin_roles'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(255), nullable=True)

    permissions = db.relationship(
        'Permission',
        secondary=admin_role_permissions,
        lazy='selectin')

    def __repr__(self):
        return f'<AdminRole {self.name}>'


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(20), nullable=True)
    # Customers created at checkout have no password until they register.
    password_hash = db.Column(db.String(255), nullable=True)
    role = db.Column(
        db.Enum(UserRole),
        nullable=False,
        default=UserRole.CUSTOMER)
    admin_role_id = db.Column(
        db.Integer,
        db.ForeignKey('admin_roles.id'),
        nullable=True)
    spin_number = db.Column(db.Integer, nullable=False, default=3)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    last_login_at = db.Column(db.DateTime, nullable=True)

    admin_role = db.relationship('AdminRole')
    addresses = db.relationship(
        'ShippingAddress',
        backref='user',
        lazy='dynamic')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def has_permission(self, name):
        if self.role != UserRole.ADMIN or not self.admin_role:
            return False
        return any(p.name == name for p in self.admin_role.permissions)

    def __repr__(self):
        return f'<User {self.email}>'


class Product(db.Model):
    __tablename__ = 'products'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    stock = db.Column(db.Integer, nullable=False, default=0)
    warranty_period_months = db.Column(
        db.Integer,
        nullable=False,
        default=0)
    image_path = db.Column(db.String(255), nullable=True)
    is_published = db.Column(db.Boolean, nullable=False, default=True)
    # Created at checkout for cart lines with no catalog product
    is_placeholder = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    __table_args__ = (
        CheckConstraint('price >= 0', name='ck_products_price_nonneg'),
        CheckConstraint(
            'warranty_period_months >= 0',
            name='ck_products_warranty_nonneg'),
    )

    def __repr__(self):
        return f'<Product {self.name}>'


class ShippingAddress(db.Model):
    __tablename__ = 'shipping_addresses'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    recipient_name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    province = db.Column(db.String(100), nullable=True)
    district = db.Column(db.String(100), nullable=True)
    ward = db.Column(db.String(100), nullable=True)
    address_line = db.Column(db.String(255), nullable=False)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    @property
    def full_address(self):
        parts = [self.address_line, self.ward, self.district, self.province]
        return ', '.join(p for p in parts if p)

    def __repr__(self):
        return f'<ShippingAddress {self.id} user={self.user_id}>'


class Coupon(db.Model):
    __tablename__ = 'coupons'

    id = db.Column(db.Integer, primary_key=True)
    # Stored trimmed and uppercased, so uniqueness is case-insensitive.
    code = db.Column(db.String(30), unique=True, nullable=False, index=True)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    expiry_date = db.Column(db.DateTime, nullable=True)
    is_used = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime, nullable=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=True,
        index=True)

    customer = db.relationship('User')
    orders = db.relationship('Order', back_populates='coupon', lazy='dynamic')

    def is_expired(self, now=None):
        now = now or datetime.utcnow()
        return self.expiry_date is not None and self.expiry_date < now

    def __repr__(self):
        return f'<Coupon {self.code}>'


class Fee(db.Model):
    __tablename__ = 'fees'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    value = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    description = db.Column(db.String(255), nullable=True)
    threshold = db.Column(db.Numeric(12, 2), nullable=True)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<Fee {self.name}={self.value}>'


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    address_id = db.Column(
        db.Integer,
        db.ForeignKey('shipping_addresses.id'),
        nullable=True)
    coupon_id = db.Column(
        db.Integer,
        db.ForeignKey('coupons.id'),
        nullable=True)
    status = db.Column(
        db.Enum(OrderStatus),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True)
    # Totals are computed once at checkout and never recomputed.
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    vat_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    shipping_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_method = db.Column(
        db.Enum(PaymentMethod),
        nullable=False,
        default=PaymentMethod.COD)
    payment_note = db.Column(db.String(120), nullable=True)
    voucher_code = db.Column(db.String(30), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    customer = db.relationship('User')
    address = db.relationship('ShippingAddress')
    coupon = db.relationship('Coupon', back_populates='orders')
    details = db.relationship(
        'OrderDetail',
        back_populates='order',
        cascade='all, delete-orphan',
        order_by='OrderDetail.id')

    def __repr__(self):
        return f'<Order {self.id} {self.status.value}>'


class OrderDetail(db.Model):
    __tablename__ = 'order_details'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey('orders.id'),
        nullable=False,
        index=True)
    product_id = db.Column(
        db.Integer,
        db.ForeignKey('products.id'),
        nullable=False)
    product_name = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    # Price snapshot at order time
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    __table_args__ = (
        CheckConstraint(
            'quantity >= 1 AND quantity <= 10',
            name='ck_order_details_quantity_range'),
    )

    order = db.relationship('Order', back_populates='details')
    product = db.relationship('Product')
    warranty = db.relationship(
        'Warranty',
        back_populates='order_detail',
        uselist=False)

    def __repr__(self):
        return f'<OrderDetail {self.id} order={self.order_id}>'


class Warranty(db.Model):
    __tablename__ = 'warranties'

    id = db.Column(db.Integer, primary_key=True)
    # One warranty per order line
    order_detail_id = db.Column(
        db.Integer,
        db.ForeignKey('order_details.id'),
        unique=True,
        nullable=False)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    warranty_code = db.Column(db.String(40), unique=True, nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    period_months = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.Enum(WarrantyStatus),
        nullable=False,
        default=WarrantyStatus.ACTIVE)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    order_detail = db.relationship('OrderDetail', back_populates='warranty')
    customer = db.relationship('User')
    claims = db.relationship(
        'WarrantyClaim',
        back_populates='warranty',
        cascade='all, delete-orphan',
        order_by='WarrantyClaim.submitted_at.desc()')

    def is_expired(self, now=None):
        now = now or datetime.utcnow()
        return self.end_date < now

    def __repr__(self):
        return f'<Warranty {self.warranty_code}>'


class WarrantyClaim(db.Model):
    __tablename__ = 'warranty_claims'

    id = db.Column(db.Integer, primary_key=True)
    warranty_id = db.Column(
        db.Integer,
        db.ForeignKey('warranties.id'),
        nullable=False,
        index=True)
    claim_code = db.Column(db.String(40), unique=True, nullable=False)
    issue_type = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.Enum(ClaimStatus),
        nullable=False,
        default=ClaimStatus.PENDING)
    submitted_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    processed_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    resolution = db.Column(db.Text, nullable=True)
    resolution_type = db.Column(db.String(50), nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    processed_by = db.Column(db.String(120), nullable=True)

    # At most one open claim per warranty
    __table_args__ = (
        db.Index(
            'uq_warranty_claims_open_per_warranty',
            'warranty_id',
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'PROCESSING')"),
            postgresql_where=text("status IN ('PENDING', 'PROCESSING')")),
    )

    warranty = db.relationship('Warranty', back_populates='claims')

    def __repr__(self):
        return f'<WarrantyClaim {self.claim_code}>'


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=True)
    actor_role = db.Column(db.String(20), nullable=False)
    action = db.Column(db.String(100), nullable=False, index=True)
    target_type = db.Column(db.String(50), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    payload_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)

    def set_payload(self, data):
        self.payload_json = json.dumps(data, ensure_ascii=False, default=str)

    def get_payload(self):
        if self.payload_json:
            return json.loads(self.payload_json)
        return None

    def __repr__(self):
        return f'<AuditLog {self.action}>'
