import os
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or (
        'dev-secret-key-change-in-production'
    )
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or (
        'sqlite:///perfume_store.db'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Pagination configuration
    ITEMS_PER_PAGE = 20

    # Cart and spin wheel
    CART_MAX_QUANTITY = 10
    DAILY_SPINS = int(os.environ.get('DAILY_SPINS', 3))

    # Coupons created on the fly for a voucher code
    COUPON_DEFAULT_VALID_DAYS = 30

    # Warranty issuance
    WARRANTY_CODE_MAX_ATTEMPTS = 10
    WARRANTY_EXPIRY_NOTICE_DAYS = 30

    # Password reset OTP
    OTP_TTL_MINUTES = 10
    OTP_CACHE_MINUTES = 30
    OTP_MAX_ATTEMPTS = 3
    OTP_COOLDOWN_MINUTES = 5
    OTP_LOCK_AFTER_FAILURES = 5

    # Outgoing mail. Disabled mail is written to the log only.
    MAIL_ENABLED = _env_flag('MAIL_ENABLED')
    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'localhost')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', 587))
    MAIL_USE_TLS = _env_flag('MAIL_USE_TLS', 'true')
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME', '')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD', '')
    MAIL_SENDER = os.environ.get('MAIL_SENDER', 'no-reply@perfume.local')

    # PayOS payment gateway.
    # When disabled, payment links point straight at the local callbacks.
    PAYOS_ENABLED = _env_flag('PAYOS_ENABLED')
    PAYOS_CLIENT_ID = os.environ.get('PAYOS_CLIENT_ID', '')
    PAYOS_API_KEY = os.environ.get('PAYOS_API_KEY', '')
    PAYOS_CHECKSUM_KEY = os.environ.get('PAYOS_CHECKSUM_KEY', '')
    PAYOS_API_URL = os.environ.get(
        'PAYOS_API_URL', 'https://api-merchant.payos.vn')
    PAYOS_TIMEOUT = 10
