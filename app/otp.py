"""
OTPStore - short-lived one-time codes keyed by (purpose, email).

Codes for addresses that have no user record yet (pre-registration
verification) live here instead of on the users table. The store is bounded
and every entry expires; only SHA-256 hashes of the codes are kept.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .database import utcnow
from .security import generate_otp, hash_otp, verify_otp

logger = logging.getLogger(__name__)

OTP_PURPOSES = ("email_verification", "password_reset", "login")


@dataclass
class _Entry:
    code_hash: str
    expires_at: datetime
    attempts: int = 0


class OTPStore:
    def __init__(
        self,
        ttl: timedelta,
        max_entries: int = 10000,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self.max_attempts = max_attempts
        self._clock = clock
        self._codes: "OrderedDict[tuple, _Entry]" = OrderedDict()
        self._verified: "OrderedDict[tuple, datetime]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _key(purpose: str, email: str):
        return (purpose, email.strip().lower())

    def _evict(self, table: OrderedDict, now: datetime):
        expired = [k for k, v in table.items() if _expiry(v) <= now]
        for key in expired:
            del table[key]
        while len(table) > self.max_entries:
            table.popitem(last=False)

    def issue(self, email: str, purpose: str = "email_verification") -> str:
        """Create a fresh code, replacing any outstanding one. Returns the plain code."""
        if purpose not in OTP_PURPOSES:
            raise ValueError(f"Unknown OTP purpose: {purpose}")

        code = generate_otp()
        now = self._clock()
        key = self._key(purpose, email)
        with self._lock:
            self._codes.pop(key, None)
            self._codes[key] = _Entry(hash_otp(code), now + self.ttl)
            self._evict(self._codes, now)
        return code

    def verify(self, email: str, code: str, purpose: str = "email_verification") -> bool:
        """Consume the code if it matches. Too many wrong guesses burn the code."""
        now = self._clock()
        key = self._key(purpose, email)
        with self._lock:
            entry = self._codes.get(key)
            if entry is None or entry.expires_at <= now:
                self._codes.pop(key, None)
                return False

            if not verify_otp(code, entry.code_hash):
                entry.attempts += 1
                if entry.attempts >= self.max_attempts:
                    logger.warning("OTP for %s burned after %d failed attempts", key[1], entry.attempts)
                    del self._codes[key]
                return False

            del self._codes[key]
            if purpose == "email_verification":
                self._verified[key[1]] = now + self.ttl
                self._evict(self._verified, now)
            return True

    def is_verified(self, email: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._verified.get(email.strip().lower())
            return expires_at is not None and expires_at > now

    def consume_verification(self, email: str) -> bool:
        """Use up a verified-email marker (one registration per verification)."""
        now = self._clock()
        with self._lock:
            expires_at = self._verified.pop(email.strip().lower(), None)
            return expires_at is not None and expires_at > now

    def __len__(self):
        with self._lock:
            return len(self._codes)


def _expiry(value) -> Optional[datetime]:
    return value.expires_at if isinstance(value, _Entry) else value
