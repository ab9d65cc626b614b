"""Security-related persistence models."""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from nutriclinic.core.database import Base


class UserSession(Base):
    """Refresh-token session. Only the token hash is ever stored."""

    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    refresh_token_hash = Column(String(128), unique=True, nullable=False, index=True)
    revoked = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("idx_user_sessions_user_revoked", "user_id", "revoked"),
    )


class VerificationPurpose(str, enum.Enum):
    EMAIL_CONFIRMATION = "email_confirmation"
    PASSWORD_RESET = "password_reset"


class VerificationArtifact(Base):
    """One-time code/token pair; one live row per (user, purpose)."""

    __tablename__ = "verification_artifacts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    purpose = Column(String(32), nullable=False)
    code_hash = Column(String(128), nullable=False)
    token_hash = Column(String(128), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    failed_attempts = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "purpose", name="uq_verification_user_purpose"),
    )


class RevokedToken(Base):
    """Access-token jti revoked before its natural expiry."""

    __tablename__ = "revoked_tokens"

    jti = Column(String(128), primary_key=True)
    user_id = Column(String(36), nullable=True, index=True)
    reason = Column(String(40), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class LoginAttempt(Base):
    """Consecutive failed logins for an (identity, client IP) pair."""

    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True, index=True)
    identity = Column(String(255), nullable=False)
    client_ip = Column(String(64), nullable=False)
    failures = Column(Integer, default=0, nullable=False)
    lockouts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("identity", "client_ip", name="uq_login_attempts_identity_ip"),
        Index("idx_login_attempts_identity", "identity"),
    )
