"""Early revocation of individual access tokens by jti."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from nutriclinic.core.clock import utcnow
from nutriclinic.models.security import RevokedToken


class RevocationService:
    """Registry of revoked access-token identifiers."""

    @staticmethod
    def revoke_jti(
        db: Session,
        jti: str,
        *,
        user_id: Optional[str],
        reason: str,
        expires_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> None:
        """Insert-or-ignore; revoking the same jti twice keeps the first row."""
        if not jti:
            return
        if db.get(RevokedToken, jti) is None:
            db.add(RevokedToken(jti=jti, user_id=user_id, reason=reason, expires_at=expires_at))
        if commit:
            db.commit()

    @staticmethod
    def revoke_claims(db: Session, claims: Dict[str, Any], reason: str, commit: bool = True) -> None:
        """Revoke the token described by verified claims (keeps its exp for cleanup)."""
        jti = claims.get("jti")
        if not jti:
            return
        exp = claims.get("exp")
        expires_at = datetime.utcfromtimestamp(exp) if isinstance(exp, (int, float)) else None
        RevocationService.revoke_jti(
            db, jti, user_id=claims.get("sub"), reason=reason, expires_at=expires_at, commit=commit
        )

    @staticmethod
    def is_revoked(db: Session, jti: Optional[str]) -> bool:
        if not jti:
            return False
        return db.get(RevokedToken, jti) is not None

    @staticmethod
    def purge_expired(db: Session) -> int:
        count = (
            db.query(RevokedToken)
            .filter(RevokedToken.expires_at.isnot(None), RevokedToken.expires_at <= utcnow())
            .delete(synchronize_session=False)
        )
        db.commit()
        return count


revocation_service = RevocationService()
