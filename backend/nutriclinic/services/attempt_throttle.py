"""Failed-login throttling with exponential lockout backoff.

State per (identity, client IP)::

    clear -> failing(n) -> locked(until T) -> clear

Failures older than the attempt window are forgotten. Reaching the failure
threshold locks the pair for ``base * 2**(lockouts - 1)`` seconds (capped),
so each repeated lockout inside the window doubles the cooldown.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nutriclinic.config import settings
from nutriclinic.core import metrics
from nutriclinic.core.clock import as_naive_utc, utcnow
from nutriclinic.core.redact import mask_email
from nutriclinic.models.security import LoginAttempt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockStatus:
    blocked: bool
    retry_after_sec: Optional[int] = None


@dataclass(frozen=True)
class AttemptResult:
    status: int
    retry_after_sec: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self.status == 429


def normalize_identity(identity: str) -> str:
    return (identity or "").strip().lower()


class AttemptThrottle:
    """Counter-based lockout keyed by (identity, client IP)."""

    def __init__(
        self,
        max_failures: int = 5,
        window_seconds: int = 900,
        lockout_base_seconds: int = 300,
        lockout_max_seconds: int = 3600,
    ) -> None:
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.lockout_base_seconds = lockout_base_seconds
        self.lockout_max_seconds = lockout_max_seconds

    def _get(self, db: Session, identity: str, client_ip: str) -> Optional[LoginAttempt]:
        return (
            db.query(LoginAttempt)
            .filter(LoginAttempt.identity == identity, LoginAttempt.client_ip == client_ip)
            .first()
        )

    def _cooldown_seconds(self, lockouts: int) -> int:
        return min(self.lockout_base_seconds * (2 ** max(0, lockouts - 1)), self.lockout_max_seconds)

    def check_locks(self, db: Session, identity: str, client_ip: str) -> LockStatus:
        """Report whether the pair is currently locked and for how long."""
        record = self._get(db, normalize_identity(identity), client_ip)
        if not record or not record.locked_until:
            return LockStatus(blocked=False)

        remaining = (as_naive_utc(record.locked_until) - utcnow()).total_seconds()
        if remaining <= 0:
            return LockStatus(blocked=False)
        return LockStatus(blocked=True, retry_after_sec=max(1, math.ceil(remaining)))

    def register_failed_attempt(self, db: Session, identity: str, client_ip: str) -> AttemptResult:
        """Count one failure; returns 429 when this failure trips a lockout."""
        identity = normalize_identity(identity)
        now = utcnow()
        record = self._get(db, identity, client_ip)

        if record is None:
            record = LoginAttempt(
                identity=identity,
                client_ip=client_ip,
                failures=0,
                lockouts=0,
                last_attempt_at=now,
            )
            db.add(record)
        elif (now - as_naive_utc(record.last_attempt_at)).total_seconds() > self.window_seconds:
            record.failures = 0
            record.lockouts = 0
            record.locked_until = None

        locked_until = as_naive_utc(record.locked_until)
        if locked_until and locked_until > now:
            # Already locked; keep the running cooldown.
            record.last_attempt_at = now
            db.commit()
            return AttemptResult(status=429, retry_after_sec=max(1, math.ceil((locked_until - now).total_seconds())))

        record.failures = (record.failures or 0) + 1
        record.last_attempt_at = now

        if record.failures >= self.max_failures:
            record.lockouts = (record.lockouts or 0) + 1
            record.failures = 0
            cooldown = self._cooldown_seconds(record.lockouts)
            record.locked_until = now + timedelta(seconds=cooldown)
            db.commit()
            metrics.LOCKOUTS.inc()
            logger.warning(
                "Login lockout #%d for identity=%s ip=%s (%ss)",
                record.lockouts,
                mask_email(identity),
                client_ip,
                cooldown,
            )
            return AttemptResult(status=429, retry_after_sec=cooldown)

        db.commit()
        return AttemptResult(status=200)

    def clear_attempts(self, db: Session, identity: str, client_ip: Optional[str]) -> None:
        """
        Forget failures for one (identity, client IP) pair after a successful
        auth-adjacent action from that IP. Locks held by other IPs stay.

        Best-effort: errors are logged and swallowed so the caller's primary
        flow never fails because of bookkeeping.
        """
        if not client_ip:
            return
        self._delete_attempts(
            db,
            LoginAttempt.identity == normalize_identity(identity),
            LoginAttempt.client_ip == client_ip,
        )

    def clear_all_attempts(self, db: Session, identity: str) -> None:
        """Forget failures for an identity from every IP (admin unlock)."""
        self._delete_attempts(db, LoginAttempt.identity == normalize_identity(identity))

    @staticmethod
    def _delete_attempts(db: Session, *criteria) -> None:
        try:
            db.query(LoginAttempt).filter(*criteria).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("clear_attempts failed (non-fatal): %s", exc)

    def purge_stale(self, db: Session) -> int:
        """Drop rows whose window has passed and that are not locked."""
        now = utcnow()
        cutoff = now - timedelta(seconds=self.window_seconds)
        count = (
            db.query(LoginAttempt)
            .filter(
                LoginAttempt.last_attempt_at <= cutoff,
                (LoginAttempt.locked_until.is_(None)) | (LoginAttempt.locked_until <= now),
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return count


attempt_throttle = AttemptThrottle(
    max_failures=settings.LOGIN_MAX_FAILED_ATTEMPTS,
    window_seconds=settings.LOGIN_ATTEMPT_WINDOW_SECONDS,
    lockout_base_seconds=settings.LOGIN_LOCKOUT_BASE_SECONDS,
    lockout_max_seconds=settings.LOGIN_LOCKOUT_MAX_SECONDS,
)
