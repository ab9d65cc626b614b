"""One-time verification artifacts (email confirmation, password reset).

Each artifact carries two secrets for the same purpose: a short numeric code
for manual entry and a long opaque token for links. Only their hashes are
stored. Issuing again for the same (user, purpose) replaces the previous
artifact, so at most one is live at a time.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from nutriclinic.config import settings
from nutriclinic.core.clock import as_naive_utc, utcnow
from nutriclinic.core.exceptions import InvalidVerificationError
from nutriclinic.core.security import (
    constant_time_equals,
    generate_numeric_code,
    generate_opaque_token,
    hash_opaque_token,
)
from nutriclinic.models.security import VerificationArtifact, VerificationPurpose

logger = logging.getLogger(__name__)

INVALID_TOKEN_MESSAGE = "Invalid or expired token"
INVALID_CODE_MESSAGE = "Invalid or expired code"


@dataclass
class IssuedArtifact:
    """Plaintext secrets, available only at issue time."""
    user_id: str
    purpose: VerificationPurpose
    code: str
    token: str
    expires_at: datetime


def code_digest(user_id: str, code: str) -> str:
    # Codes are short; binding them to the user keeps equal codes from
    # hashing to equal values across accounts.
    return hash_opaque_token(f"{user_id}:{code.strip()}")


class VerificationService:
    """Issue, consume and expire verification artifacts."""

    @staticmethod
    def get(db: Session, user_id: str, purpose: VerificationPurpose) -> Optional[VerificationArtifact]:
        return (
            db.query(VerificationArtifact)
            .filter(
                VerificationArtifact.user_id == user_id,
                VerificationArtifact.purpose == purpose.value,
            )
            .first()
        )

    @staticmethod
    def issue(
        db: Session,
        user_id: str,
        purpose: VerificationPurpose,
        commit: bool = True,
    ) -> IssuedArtifact:
        """Create or replace the artifact for (user, purpose)."""
        code = generate_numeric_code(settings.VERIFICATION_CODE_DIGITS)
        token = generate_opaque_token(32)
        now = utcnow()
        expires_at = now + timedelta(minutes=settings.VERIFICATION_TTL_MINUTES)

        record = VerificationService.get(db, user_id, purpose)
        if record is None:
            record = VerificationArtifact(user_id=user_id, purpose=purpose.value)
            db.add(record)

        record.code_hash = code_digest(user_id, code)
        record.token_hash = hash_opaque_token(token)
        record.expires_at = expires_at
        record.used = False
        record.used_at = None
        record.failed_attempts = 0
        record.created_at = now

        if commit:
            db.commit()
        else:
            db.flush()

        logger.info("Issued %s artifact for user_id=%s", purpose.value, user_id)
        return IssuedArtifact(user_id, purpose, code, token, expires_at)

    @staticmethod
    def delete(db: Session, user_id: str, purpose: VerificationPurpose, commit: bool = True) -> int:
        count = (
            db.query(VerificationArtifact)
            .filter(
                VerificationArtifact.user_id == user_id,
                VerificationArtifact.purpose == purpose.value,
            )
            .delete(synchronize_session=False)
        )
        if commit:
            db.commit()
        return count

    @staticmethod
    def cooldown_remaining(
        db: Session,
        user_id: str,
        purpose: VerificationPurpose,
        cooldown_seconds: int,
    ) -> int:
        """Seconds until a new artifact may be issued; 0 when allowed now."""
        record = VerificationService.get(db, user_id, purpose)
        if record is None or record.created_at is None:
            return 0
        elapsed = (utcnow() - as_naive_utc(record.created_at)).total_seconds()
        remaining = cooldown_seconds - elapsed
        return max(0, math.ceil(remaining))

    @staticmethod
    def _is_live(record: VerificationArtifact) -> bool:
        return not record.used and as_naive_utc(record.expires_at) > utcnow()

    @staticmethod
    def _mark_used(db: Session, record: VerificationArtifact, message: str) -> None:
        # Conditional update: of two concurrent consumers only one flips the flag.
        updated = (
            db.query(VerificationArtifact)
            .filter(VerificationArtifact.id == record.id, VerificationArtifact.used == False)  # noqa: E712
            .update(
                {VerificationArtifact.used: True, VerificationArtifact.used_at: utcnow()},
                synchronize_session=False,
            )
        )
        if updated != 1:
            raise InvalidVerificationError(message)

    @staticmethod
    def consume_token(db: Session, token: str, purpose: VerificationPurpose) -> VerificationArtifact:
        """
        Mark the artifact behind a link token as used. Does not commit.

        Raises:
            InvalidVerificationError: unknown, used or expired token
        """
        record = (
            db.query(VerificationArtifact)
            .filter(
                VerificationArtifact.token_hash == hash_opaque_token(token or ""),
                VerificationArtifact.purpose == purpose.value,
            )
            .first()
        )
        if record is None or not VerificationService._is_live(record):
            raise InvalidVerificationError(INVALID_TOKEN_MESSAGE)
        VerificationService._mark_used(db, record, INVALID_TOKEN_MESSAGE)
        return record

    @staticmethod
    def consume_code(
        db: Session,
        user_id: str,
        code: str,
        purpose: VerificationPurpose,
        max_attempts: Optional[int] = None,
    ) -> VerificationArtifact:
        """
        Mark the artifact as used when ``code`` matches. Does not commit on
        success.

        A wrong code is counted (and committed); reaching ``max_attempts``
        burns the artifact so the code can no longer be guessed.

        Raises:
            InvalidVerificationError: no live artifact or wrong code
        """
        max_attempts = max_attempts or settings.VERIFICATION_MAX_CODE_ATTEMPTS
        record = VerificationService.get(db, user_id, purpose)
        if record is None or not VerificationService._is_live(record):
            raise InvalidVerificationError(INVALID_CODE_MESSAGE)

        if not constant_time_equals(code_digest(user_id, code or ""), record.code_hash):
            record.failed_attempts = (record.failed_attempts or 0) + 1
            if record.failed_attempts >= max_attempts:
                record.used = True
                record.used_at = utcnow()
                logger.warning(
                    "Burned %s artifact for user_id=%s after %d wrong codes",
                    purpose.value,
                    user_id,
                    record.failed_attempts,
                )
            db.commit()
            raise InvalidVerificationError(INVALID_CODE_MESSAGE)

        VerificationService._mark_used(db, record, INVALID_CODE_MESSAGE)
        return record

    @staticmethod
    def purge_expired(db: Session) -> int:
        """Drop used artifacts and artifacts past expiry."""
        count = (
            db.query(VerificationArtifact)
            .filter(
                (VerificationArtifact.used == True)  # noqa: E712
                | (VerificationArtifact.expires_at <= utcnow())
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        return count


verification_service = VerificationService()
