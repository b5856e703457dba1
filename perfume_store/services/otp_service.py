"""Password reset codes.

Reset state lives in a per-process TTL cache keyed by email. Requests for
the same email are not serialized against each other, so two concurrent
wrong guesses may count once.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from flask import current_app
from perfume_store.extensions import db
from perfume_store.models import User
from perfume_store.services import email_service
from perfume_store.services.errors import (
    ValidationError,
    ConflictError,
    NotFoundError,
)
import logging
import secrets
import threading

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


@dataclass
class ResetEntry:
    email: str
    otp: str
    expires_at: datetime
    attempts: int = 0
    total_failures: int = 0
    resend_count: int = 0
    cooldown_until: Optional[datetime] = None
    is_locked: bool = False
    is_verified: bool = False
    is_consumed: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


class TTLCache:
    def __init__(self):
        self._items = {}
        self._lock = threading.Lock()

    def get(self, key, now=None):
        now = now or datetime.utcnow()
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= now:
                del self._items[key]
                return None
            return value

    def set(self, key, value, ttl, now=None):
        now = now or datetime.utcnow()
        with self._lock:
            self._items[key] = (value, now + ttl)

    def delete(self, key):
        with self._lock:
            self._items.pop(key, None)

    def clear(self):
        with self._lock:
            self._items.clear()


def get_cache() -> TTLCache:
    cache = current_app.extensions.get('otp_cache')
    if cache is None:
        cache = current_app.extensions.setdefault('otp_cache', TTLCache())
    return cache


def cache_key(email):
    return f'pwdreset:{(email or "").strip().lower()}'


def generate_otp():
    return f'{secrets.randbelow(1000000):06d}'


def _cache_ttl():
    return timedelta(minutes=current_app.config['OTP_CACHE_MINUTES'])


def _check_blocked(entry, now):
    if entry.is_locked:
        raise ConflictError(
            'Too many failed attempts. Please request a new code later.')
    if entry.cooldown_until and entry.cooldown_until > now:
        seconds = int((entry.cooldown_until - now).total_seconds())
        raise ConflictError(
            'Too many wrong codes. Try again later.',
            payload={'retry_after': max(seconds, 1)},
        )


def request_reset(email, now=None):
    now = now or datetime.utcnow()
    config = current_app.config
    normalized = (email or '').strip().lower()
    if not normalized:
        raise ValidationError('Email cannot be empty')

    user = User.query.filter(db.func.lower(User.email) == normalized).first()
    if user is None or not user.is_active:
        raise NotFoundError('No account found for this email')

    cache = get_cache()
    key = cache_key(normalized)
    previous = cache.get(key, now)
    if previous is not None:
        _check_blocked(previous, now)

    entry = ResetEntry(
        email=normalized,
        otp=generate_otp(),
        expires_at=now + timedelta(minutes=config['OTP_TTL_MINUTES']),
        created_at=now,
    )
    if previous is not None:
        entry.resend_count = previous.resend_count + 1
        entry.total_failures = previous.total_failures
    cache.set(key, entry, _cache_ttl(), now)

    email_service.send_password_reset_otp(
        user.email, entry.otp, config['OTP_TTL_MINUTES'])
    logger.info(
        "Password reset code issued for %s (resend %s)",
        normalized,
        entry.resend_count,
    )
    return entry


def verify_otp(email, otp, now=None):
    now = now or datetime.utcnow()
    config = current_app.config
    cache = get_cache()
    key = cache_key(email)
    entry = cache.get(key, now)
    if entry is None:
        raise ValidationError('Reset code has expired. Request a new one.')
    _check_blocked(entry, now)
    if entry.expires_at < now:
        raise ValidationError('Reset code has expired. Request a new one.')

    if not secrets.compare_digest(entry.otp, (otp or '').strip()):
        entry.attempts += 1
        entry.total_failures += 1
        if entry.total_failures >= config['OTP_LOCK_AFTER_FAILURES']:
            entry.is_locked = True
            logger.warning("Password reset locked for %s", entry.email)
        elif entry.attempts >= config['OTP_MAX_ATTEMPTS']:
            entry.cooldown_until = now + timedelta(
                minutes=config['OTP_COOLDOWN_MINUTES'])
            entry.attempts = 0
            logger.warning("Password reset cooldown for %s", entry.email)
        cache.set(key, entry, _cache_ttl(), now)
        raise ValidationError('Incorrect reset code')

    entry.is_verified = True
    cache.set(key, entry, _cache_ttl(), now)
    return entry


def reset_password(email, new_password, now=None):
    now = now or datetime.utcnow()
    if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f'Password must be at least {MIN_PASSWORD_LENGTH} characters')

    cache = get_cache()
    key = cache_key(email)
    entry = cache.get(key, now)
    if entry is None or not entry.is_verified or entry.is_consumed:
        raise ValidationError('Verify your reset code first')

    user = User.query.filter(
        db.func.lower(User.email) == entry.email).first()
    if user is None:
        raise NotFoundError('No account found for this email')

    user.set_password(new_password)
    db.session.commit()
    entry.is_consumed = True
    cache.delete(key)
    logger.info("Password reset completed for %s", entry.email)
    return user
