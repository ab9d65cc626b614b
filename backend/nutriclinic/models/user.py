"""User model"""

import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Date, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from nutriclinic.core.database import Base


class UserRole(str, enum.Enum):
    """User role enumeration"""
    PATIENT = "patient"
    ADMIN = "admin"
    NUTRI = "nutri"


class AccountState(str, enum.Enum):
    """Account lifecycle: unconfirmed -> active <-> locked"""
    UNCONFIRMED = "unconfirmed"
    ACTIVE = "active"
    LOCKED = "locked"


def _new_user_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """User model for authentication and authorization"""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_user_id)
    email = Column(String(255), nullable=False)
    email_normalized = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), default=UserRole.PATIENT.value, nullable=False, index=True)
    state = Column(String(20), default=AccountState.UNCONFIRMED.value, nullable=False)
    session_version = Column(Integer, default=0, nullable=False)
    display_name = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_login_at = Column(DateTime(timezone=True))

    # Relationships
    profile = relationship("UserProfile", uselist=False, back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")
    verification_artifacts = relationship("VerificationArtifact", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_users_state', 'state'),
    )

    @property
    def email_confirmed(self) -> bool:
        return self.state != AccountState.UNCONFIRMED.value

    @property
    def is_locked(self) -> bool:
        return self.state == AccountState.LOCKED.value

    def __repr__(self):
        return f"<User(id={self.id}, role='{self.role}', state='{self.state}')>"

    def to_dict(self):
        """Convert to dictionary"""
        profile = self.profile
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "state": self.state,
            "email_confirmed": self.email_confirmed,
            "display_name": self.display_name,
            "full_name": profile.full_name if profile else None,
            "phone": profile.phone if profile else None,
            "birth_date": profile.birth_date.isoformat() if profile and profile.birth_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


class UserProfile(Base):
    """Personal data captured at registration"""

    __tablename__ = "user_profiles"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    full_name = Column(String(200), nullable=False)
    phone = Column(String(20), nullable=False)
    birth_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="profile")
