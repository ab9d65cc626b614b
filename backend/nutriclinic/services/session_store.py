"""Refresh-token session persistence and rotation."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Tuple
import logging

from sqlalchemy.orm import Session

from nutriclinic.config import settings
from nutriclinic.core.clock import as_naive_utc, utcnow
from nutriclinic.core.security import generate_opaque_token, hash_opaque_token
from nutriclinic.models.security import UserSession

logger = logging.getLogger(__name__)


class SessionConflictError(Exception):
    """The session row changed under us (concurrent rotation or revocation)."""


class SessionStore:
    """Manage refresh-token sessions. Plaintext tokens are never stored."""

    @staticmethod
    def new_refresh_token() -> str:
        return generate_opaque_token(settings.REFRESH_TOKEN_BYTES)

    @staticmethod
    def default_expiry() -> datetime:
        return utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRATION_DAYS)

    @staticmethod
    def create(
        db: Session,
        user_id: str,
        plaintext_token: str,
        expires_at: datetime,
        commit: bool = True,
    ) -> UserSession:
        """Insert a session for one issued refresh token."""
        record = UserSession(
            user_id=user_id,
            refresh_token_hash=hash_opaque_token(plaintext_token),
            expires_at=as_naive_utc(expires_at),
            revoked=False,
        )
        db.add(record)
        if commit:
            db.commit()
            db.refresh(record)
        else:
            db.flush()
        return record

    @staticmethod
    def open_session(db: Session, user_id: str, commit: bool = True) -> Tuple[str, UserSession]:
        """Mint a refresh token and persist its session; returns the plaintext once."""
        plaintext = SessionStore.new_refresh_token()
        record = SessionStore.create(db, user_id, plaintext, SessionStore.default_expiry(), commit=commit)
        return plaintext, record

    @staticmethod
    def find_by_plaintext_token(db: Session, plaintext_token: str) -> Optional[UserSession]:
        if not plaintext_token:
            return None
        return (
            db.query(UserSession)
            .filter(UserSession.refresh_token_hash == hash_opaque_token(plaintext_token))
            .first()
        )

    @staticmethod
    def is_expired(record: UserSession) -> bool:
        expires_at = as_naive_utc(record.expires_at)
        return expires_at is None or expires_at <= utcnow()

    @staticmethod
    def revoke(db: Session, session_id: int) -> None:
        """Idempotent: revoking an already revoked or missing session is a no-op."""
        (
            db.query(UserSession)
            .filter(UserSession.id == session_id, UserSession.revoked == False)  # noqa: E712
            .update({UserSession.revoked: True, UserSession.updated_at: utcnow()}, synchronize_session=False)
        )
        db.commit()

    @staticmethod
    def revoke_all_for_user(db: Session, user_id: str, commit: bool = True) -> int:
        count = (
            db.query(UserSession)
            .filter(UserSession.user_id == user_id, UserSession.revoked == False)  # noqa: E712
            .update({UserSession.revoked: True, UserSession.updated_at: utcnow()}, synchronize_session=False)
        )
        if commit:
            db.commit()
        if count:
            logger.info("Revoked %d session(s) for user_id=%s", count, user_id)
        return count

    @staticmethod
    def rotate(
        db: Session,
        session_id: int,
        new_plaintext_token: str,
        new_expires_at: datetime,
        expected_hash: Optional[str] = None,
    ) -> None:
        """
        Replace the token hash (and expiry) of a live session in one statement.

        When ``expected_hash`` is given the update only applies if the row
        still carries it, so of two concurrent rotations with the same
        presented token exactly one wins; the loser gets SessionConflictError.
        """
        query = db.query(UserSession).filter(
            UserSession.id == session_id,
            UserSession.revoked == False,  # noqa: E712
        )
        if expected_hash is not None:
            query = query.filter(UserSession.refresh_token_hash == expected_hash)

        updated = query.update(
            {
                UserSession.refresh_token_hash: hash_opaque_token(new_plaintext_token),
                UserSession.expires_at: as_naive_utc(new_expires_at),
                UserSession.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
        if updated != 1:
            db.rollback()
            raise SessionConflictError(f"Session {session_id} was rotated or revoked concurrently")
        db.commit()

    @staticmethod
    def purge_expired(db: Session) -> int:
        """Drop sessions that are revoked or past expiry."""
        count = (
            db.query(UserSession)
            .filter((UserSession.revoked == True) | (UserSession.expires_at <= utcnow()))  # noqa: E712
            .delete(synchronize_session=False)
        )
        db.commit()
        return count


session_store = SessionStore()
