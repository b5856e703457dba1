from datetime import datetime, timedelta
from decimal import Decimal
from perfume_store import create_app
from perfume_store.extensions import db
from perfume_store.cli import ensure_super_admin_role
from perfume_store.middleware import (
    VIEW_ORDERS,
    VIEW_WARRANTIES,
    VIEW_CUSTOMERS,
)
from perfume_store.models import (
    AdminRole,
    Permission,
    Coupon,
    Fee,
    Product,
    User,
    UserRole,
)

app = create_app()

with app.app_context():
    # Fees used by the cart and checkout totals
    fees_data = [
        {
            "name": "VAT",
            "value": Decimal("10"),
            "description": "Thuế giá trị gia tăng (%)",
            "threshold": None,
        },
        {
            "name": "Shipping",
            "value": Decimal("30000"),
            "description": "Phí vận chuyển tiêu chuẩn",
            "threshold": Decimal("5000000"),
        },
    ]
    for fee_data in fees_data:
        if not Fee.query.filter_by(name=fee_data["name"]).first():
            db.session.add(Fee(**fee_data))
            print(f"Created fee: {fee_data['name']}")

    # Admin roles
    super_admin = ensure_super_admin_role()
    viewer = AdminRole.query.filter_by(name="Viewer").first()
    if not viewer:
        viewer = AdminRole(name="Viewer", description="Read-only back office")
        viewer.permissions = Permission.query.filter(
            Permission.name.in_([VIEW_ORDERS, VIEW_WARRANTIES, VIEW_CUSTOMERS])
        ).all()
        db.session.add(viewer)
        print("Created admin role: Viewer")

    # Create admin account (if not exists)
    admin_email = "admin@example.com"
    admin = User.query.filter_by(email=admin_email).first()
    if not admin:
        admin = User(
            email=admin_email,
            name="Administrator",
            role=UserRole.ADMIN,
            admin_role=super_admin,
        )
        admin.set_password("admin123")
        db.session.add(admin)
        print(f"Created admin account: {admin_email} / admin123")

    # Demo customer
    customer_email = "customer@example.com"
    if not User.query.filter_by(email=customer_email).first():
        customer = User(
            email=customer_email,
            name="Nguyễn Văn A",
            phone="0901234567",
            role=UserRole.CUSTOMER,
            spin_number=app.config["DAILY_SPINS"],
        )
        customer.set_password("customer123")
        db.session.add(customer)
        print(f"Created customer account: {customer_email} / customer123")

    products_data = [
        {"name": "Chanel No.5 Eau de Parfum 100ml",
         "price": Decimal("3850000"), "stock": 25,
         "warranty_period_months": 12},
        {"name": "Dior Sauvage EDT 100ml",
         "price": Decimal("2950000"), "stock": 40,
         "warranty_period_months": 12},
        {"name": "Tom Ford Oud Wood 50ml",
         "price": Decimal("5200000"), "stock": 10,
         "warranty_period_months": 24},
        {"name": "Jo Malone Wood Sage & Sea Salt 30ml",
         "price": Decimal("1650000"), "stock": 30,
         "warranty_period_months": 6},
        {"name": "Versace Bright Crystal 5ml (mini)",
         "price": Decimal("350000"), "stock": 100,
         "warranty_period_months": 0},
    ]
    for product_data in products_data:
        if not Product.query.filter_by(name=product_data["name"]).first():
            db.session.add(Product(**product_data))
            print(f"Created product: {product_data['name']}")

    # Coupons for the spin wheel
    now = datetime.utcnow()
    coupons_data = [
        ("WELCOME50K", Decimal("50000")),
        ("SUMMER100K", Decimal("100000")),
        ("VIP200K", Decimal("200000")),
    ]
    for code, amount in coupons_data:
        if not Coupon.query.filter_by(code=code).first():
            db.session.add(Coupon(
                code=code,
                discount_amount=amount,
                created_at=now,
                expiry_date=now + timedelta(days=30),
            ))
            print(f"Created coupon: {code}")

    db.session.commit()
    print("Seed data ready")
