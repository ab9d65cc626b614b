"""Database models"""

from nutriclinic.models.user import User, UserProfile, UserRole, AccountState
from nutriclinic.models.security import (
    UserSession,
    VerificationArtifact,
    VerificationPurpose,
    RevokedToken,
    LoginAttempt,
)
from nutriclinic.models.audit import AuditEvent

__all__ = [
    "User", "UserProfile", "UserRole", "AccountState",
    "UserSession", "VerificationArtifact", "VerificationPurpose", "RevokedToken", "LoginAttempt",
    "AuditEvent",
]
