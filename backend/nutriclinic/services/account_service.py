"""Account service - registration, verification, login, sessions and passwords"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, contains_eager

from nutriclinic.config import settings
from nutriclinic.core import metrics
from nutriclinic.core.clock import as_naive_utc, utcnow
from nutriclinic.core.database import transaction
from nutriclinic.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    DatabaseError,
    EmailDeliveryError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidVerificationError,
    RateLimitExceededError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ValidationError,
)
from nutriclinic.core.redact import mask_email, short_token
from nutriclinic.core.security import burn_password_check, get_password_hash, verify_password
from nutriclinic.core.tokens import token_codec
from nutriclinic.models.security import VerificationPurpose
from nutriclinic.models.user import AccountState, User, UserProfile, UserRole
from nutriclinic.schemas.user import RegisterRequest, is_valid_email
from nutriclinic.services.attempt_throttle import attempt_throttle
from nutriclinic.services.audit_service import audit_service
from nutriclinic.services.email_service import email_service
from nutriclinic.services.revocation_service import revocation_service
from nutriclinic.services.saga import Saga
from nutriclinic.services.session_store import SessionConflictError, session_store
from nutriclinic.services.verification_service import INVALID_TOKEN_MESSAGE, verification_service

logger = logging.getLogger(__name__)
registration_logger = logging.getLogger("nutriclinic.registration")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


@dataclass
class AuthResult:
    """Outcome of a successful authentication step"""
    user: User
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


@dataclass
class RegistrationResult:
    user_id: str
    reregistered: bool = False


class AccountService:
    """Service for the account lifecycle"""

    # ------------------------------------------------------------------
    # Lookups and tokens
    # ------------------------------------------------------------------

    @staticmethod
    def get_by_email(db: Session, email: Optional[str]) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return db.query(User).filter(User.email_normalized == normalized).first()

    @staticmethod
    def get_by_id(db: Session, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        return db.get(User, str(user_id))

    @staticmethod
    def require_user(db: Session, user_id: str) -> User:
        user = AccountService.get_by_id(db, user_id)
        if user is None:
            raise ResourceNotFoundError("User")
        return user

    @staticmethod
    def build_access_claims(user: User) -> Dict[str, Any]:
        profile = user.profile
        return {
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "session_version": user.session_version or 0,
            "display_name": user.display_name,
            "full_name": profile.full_name if profile else None,
        }

    @staticmethod
    def issue_access_token(user: User) -> str:
        return token_codec.issue(AccountService.build_access_claims(user))

    @staticmethod
    def _auth_result(
        user: User,
        refresh_token: Optional[str] = None,
        refresh_expires_at: Optional[datetime] = None,
    ) -> AuthResult:
        return AuthResult(
            user=user,
            access_token=AccountService.issue_access_token(user),
            expires_in=token_codec.default_ttl_seconds,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
        )

    # ------------------------------------------------------------------
    # State transitions: unconfirmed -> active <-> locked
    # ------------------------------------------------------------------

    @staticmethod
    def confirm(user: User) -> bool:
        if user.state != AccountState.UNCONFIRMED.value:
            return False
        user.state = AccountState.ACTIVE.value
        return True

    @staticmethod
    def lock(user: User) -> bool:
        if user.state == AccountState.UNCONFIRMED.value:
            raise ValidationError("Only confirmed accounts can be locked")
        if user.state == AccountState.LOCKED.value:
            return False
        user.state = AccountState.LOCKED.value
        return True

    @staticmethod
    def unlock(user: User) -> bool:
        if user.state != AccountState.LOCKED.value:
            return False
        user.state = AccountState.ACTIVE.value
        return True

    @staticmethod
    def bump_session_version(user: User) -> None:
        # Evaluated in SQL so concurrent bumps never collapse into one.
        user.session_version = User.session_version + 1

    @staticmethod
    def revoke_credentials(db: Session, user: User) -> int:
        """Invalidate every outstanding access token and session. Does not commit."""
        AccountService.bump_session_version(user)
        return session_store.revoke_all_for_user(db, user.id, commit=False)

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    @staticmethod
    def _initial_role(email_normalized: str) -> str:
        if settings.INITIAL_ADMIN_EMAIL and normalize_email(settings.INITIAL_ADMIN_EMAIL) == email_normalized:
            return UserRole.ADMIN.value
        return UserRole.PATIENT.value

    @staticmethod
    def register(db: Session, data: RegisterRequest, client_ip: Optional[str] = None) -> RegistrationResult:
        """
        Register an account and send its confirmation email.

        Re-registering an unconfirmed email replaces its password, profile
        and verification artifact. The steps run as a saga: if sending the
        email fails, rows created by this call are removed again.

        Raises:
            ResourceAlreadyExistsError: email belongs to a confirmed account
            EmailDeliveryError: confirmation email could not be sent
            DatabaseError: persistence failed
        """
        email_normalized = normalize_email(data.email)
        existing = AccountService.get_by_email(db, email_normalized)
        if existing is not None and existing.email_confirmed:
            raise ResourceAlreadyExistsError("User")

        password_hash = get_password_hash(data.password)
        issued = {}
        saga = Saga("registration", registration_logger)

        if existing is None:
            user_id = str(uuid.uuid4())

            def persist_account():
                with transaction(db):
                    db.add(User(
                        id=user_id,
                        email=data.email,
                        email_normalized=email_normalized,
                        password_hash=password_hash,
                        role=AccountService._initial_role(email_normalized),
                        state=AccountState.UNCONFIRMED.value,
                        session_version=0,
                        display_name=data.display_name,
                    ))
                    db.add(UserProfile(
                        user_id=user_id,
                        full_name=data.full_name,
                        phone=data.phone,
                        birth_date=data.birth_date,
                    ))

            def remove_account():
                db.rollback()
                db.query(UserProfile).filter(UserProfile.user_id == user_id).delete(synchronize_session=False)
                db.query(User).filter(User.id == user_id).delete(synchronize_session=False)
                db.commit()
                db.expunge_all()

            saga.step("persist_account", persist_account, remove_account)
        else:
            user_id = existing.id

            def refresh_pending_account():
                with transaction(db):
                    existing.email = data.email
                    existing.password_hash = password_hash
                    existing.display_name = data.display_name
                    profile = existing.profile
                    if profile is None:
                        profile = UserProfile(user_id=user_id)
                        db.add(profile)
                    profile.full_name = data.full_name
                    profile.phone = data.phone
                    profile.birth_date = data.birth_date

            saga.step("persist_account", refresh_pending_account)

        def issue_verification():
            issued["artifact"] = verification_service.issue(db, user_id, VerificationPurpose.EMAIL_CONFIRMATION)

        def discard_verification():
            db.rollback()
            verification_service.delete(db, user_id, VerificationPurpose.EMAIL_CONFIRMATION)

        def send_email():
            artifact = issued["artifact"]
            email_service.send_verification_email(
                data.email, artifact.code, artifact.token, settings.VERIFICATION_TTL_MINUTES
            )

        saga.step("issue_verification", issue_verification, discard_verification)
        saga.step("send_email", send_email)

        try:
            saga.run()
        except IntegrityError:
            db.rollback()
            # Lost a race against a concurrent registration of the same email.
            raise ResourceAlreadyExistsError("User")
        except EmailDeliveryError:
            raise EmailDeliveryError("Could not send the verification email. Please try again later.")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Registration failed for {mask_email(email_normalized)}: {e}")
            raise DatabaseError("Could not complete registration")

        attempt_throttle.clear_attempts(db, email_normalized, client_ip)
        logger.info(
            "Registered %s user_id=%s%s",
            mask_email(email_normalized),
            user_id,
            " (re-registration)" if existing is not None else "",
        )
        return RegistrationResult(user_id=user_id, reregistered=existing is not None)

    @staticmethod
    def confirm_verification(
        db: Session,
        *,
        token: Optional[str] = None,
        email: Optional[str] = None,
        code: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> AuthResult:
        """
        Confirm an account with its link token or emailed code, then log in.

        Both variants consume the same artifact, activate the account and
        open a session in one transaction.

        Raises:
            InvalidVerificationError: artifact unknown, used, expired or wrong
            AccountLockedError: account was locked meanwhile
        """
        purpose = VerificationPurpose.EMAIL_CONFIRMATION
        with transaction(db):
            if token:
                artifact = verification_service.consume_token(db, token, purpose)
                user = AccountService.get_by_id(db, artifact.user_id)
                if user is None:
                    raise InvalidVerificationError(INVALID_TOKEN_MESSAGE)
            else:
                user = AccountService.get_by_email(db, email)
                if user is None:
                    raise InvalidVerificationError()
                verification_service.consume_code(db, user.id, code, purpose)

            if user.is_locked:
                raise AccountLockedError()
            AccountService.confirm(user)
            user.last_login_at = utcnow()
            refresh_token, session = session_store.open_session(db, user.id, commit=False)
            refresh_expires_at = session.expires_at

        audit_service.log_event(
            db,
            actor_id=user.id,
            action="user.email_confirmed",
            target_type="user",
            target_id=user.id,
            ip_address=client_ip,
            metadata={"variant": "token" if token else "code"},
        )
        attempt_throttle.clear_attempts(db, user.email_normalized, client_ip)
        metrics.LOGIN_OUTCOMES.labels(outcome="verified").inc()
        logger.info(f"Confirmed account user_id={user.id}")
        return AccountService._auth_result(user, refresh_token, refresh_expires_at)

    @staticmethod
    def resend_verification(db: Session, email: Optional[str]) -> None:
        """
        Re-issue the confirmation artifact. Unknown, invalid or already
        confirmed emails are ignored without telling the caller.

        Raises:
            RateLimitExceededError: within the resend cooldown
            EmailDeliveryError: email could not be sent
        """
        if not is_valid_email(email):
            return
        user = AccountService.get_by_email(db, email)
        if user is None or user.email_confirmed:
            logger.debug("Resend ignored for %s", mask_email(email))
            return

        purpose = VerificationPurpose.EMAIL_CONFIRMATION
        remaining = verification_service.cooldown_remaining(db, user.id, purpose, settings.RESEND_COOLDOWN_SECONDS)
        if remaining:
            raise RateLimitExceededError("Please wait before requesting another code.", retry_after=remaining)

        issued = verification_service.issue(db, user.id, purpose)
        try:
            email_service.send_verification_email(
                user.email, issued.code, issued.token, settings.VERIFICATION_TTL_MINUTES
            )
        except EmailDeliveryError:
            verification_service.delete(db, user.id, purpose)
            raise

    # ------------------------------------------------------------------
    # Login, refresh, logout
    # ------------------------------------------------------------------

    @staticmethod
    def login(
        db: Session,
        email: str,
        password: str,
        remember: bool = False,
        client_ip: str = "unknown",
    ) -> AuthResult:
        """
        Authenticate with email and password.

        Unknown emails and wrong passwords fail identically and both count
        towards the (email, IP) lockout. A refresh session is opened only
        when ``remember`` is set.

        Raises:
            RateLimitExceededError: pair is locked out
            EmailNotVerifiedError: account not confirmed yet
            InvalidCredentialsError: unknown email or wrong password
            AccountLockedError: account locked by an administrator
        """
        identity = normalize_email(email)
        lock_status = attempt_throttle.check_locks(db, identity, client_ip)
        if lock_status.blocked:
            metrics.LOGIN_OUTCOMES.labels(outcome="throttled").inc()
            raise RateLimitExceededError(retry_after=lock_status.retry_after_sec)

        user = AccountService.get_by_email(db, identity)
        if user is not None and not user.email_confirmed:
            metrics.LOGIN_OUTCOMES.labels(outcome="unconfirmed").inc()
            raise EmailNotVerifiedError()

        if user is None:
            burn_password_check(password)
            password_ok = False
        else:
            password_ok = verify_password(password, user.password_hash)

        if not password_ok:
            result = attempt_throttle.register_failed_attempt(db, identity, client_ip)
            metrics.LOGIN_OUTCOMES.labels(outcome="invalid").inc()
            logger.info("Failed login for %s from %s", mask_email(identity), client_ip)
            if result.locked:
                raise RateLimitExceededError(retry_after=result.retry_after_sec)
            raise InvalidCredentialsError()

        if user.is_locked:
            metrics.LOGIN_OUTCOMES.labels(outcome="locked").inc()
            raise AccountLockedError()

        attempt_throttle.clear_attempts(db, identity, client_ip)

        refresh_token = None
        refresh_expires_at = None
        with transaction(db):
            user.last_login_at = utcnow()
            if not user.display_name and user.profile is not None:
                user.display_name = user.profile.full_name.split(" ")[0]
            if remember:
                refresh_token, session = session_store.open_session(db, user.id, commit=False)
                refresh_expires_at = session.expires_at

        metrics.LOGIN_OUTCOMES.labels(outcome="success").inc()
        logger.info(f"User logged in: user_id={user.id} remember={remember}")
        return AccountService._auth_result(user, refresh_token, refresh_expires_at)

    @staticmethod
    def _reject_refresh(outcome: str, detail: str) -> None:
        metrics.REFRESH_OUTCOMES.labels(outcome=outcome).inc()
        logger.info(f"Refresh rejected ({outcome}): {detail}")
        raise InvalidRefreshTokenError()

    @staticmethod
    def refresh(db: Session, refresh_token: str, client_ip: Optional[str] = None) -> AuthResult:
        """
        Exchange a refresh token for a new access token and a rotated
        refresh token. The session keeps its expiry unless sliding
        expiration is enabled.

        Raises:
            InvalidRefreshTokenError: unknown, revoked, expired or raced token
            EmailNotVerifiedError / AccountLockedError: account no longer usable
        """
        record = session_store.find_by_plaintext_token(db, refresh_token)
        if record is None:
            AccountService._reject_refresh("not_found", f"token={short_token(refresh_token)}")
        if record.revoked:
            AccountService._reject_refresh("revoked", f"session_id={record.id} user_id={record.user_id}")
        if session_store.is_expired(record):
            AccountService._reject_refresh("expired", f"session_id={record.id}")

        user = AccountService.get_by_id(db, record.user_id)
        if user is None:
            AccountService._reject_refresh("orphaned", f"session_id={record.id}")
        if not user.email_confirmed:
            raise EmailNotVerifiedError()
        if user.is_locked:
            raise AccountLockedError()

        new_token = session_store.new_refresh_token()
        if settings.REFRESH_SLIDING_EXPIRATION:
            new_expires_at = session_store.default_expiry()
        else:
            new_expires_at = as_naive_utc(record.expires_at)

        try:
            session_store.rotate(
                db, record.id, new_token, new_expires_at, expected_hash=record.refresh_token_hash
            )
        except SessionConflictError as e:
            AccountService._reject_refresh("conflict", str(e))

        attempt_throttle.clear_attempts(db, user.email_normalized, client_ip)
        metrics.REFRESH_OUTCOMES.labels(outcome="success").inc()
        return AccountService._auth_result(user, new_token, new_expires_at)

    @staticmethod
    def logout(
        db: Session,
        refresh_token: str,
        access_claims: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> None:
        """
        Revoke the session behind ``refresh_token`` and, when given, the
        presented access token. Unknown or already revoked tokens are fine.
        """
        record = session_store.find_by_plaintext_token(db, refresh_token)
        if record is not None:
            if not record.revoked:
                session_store.revoke(db, record.id)
                logger.info(f"Session revoked on logout: session_id={record.id}")
            user = AccountService.get_by_id(db, record.user_id)
            if user is not None:
                attempt_throttle.clear_attempts(db, user.email_normalized, client_ip)

        if access_claims:
            revocation_service.revoke_claims(db, access_claims, reason="logout")

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    @staticmethod
    def change_password(
        db: Session,
        user: User,
        claims: Dict[str, Any],
        current_password: str,
        new_password: str,
        client_ip: Optional[str] = None,
    ) -> AuthResult:
        """
        Change the password of an authenticated user.

        Every session and access token issued before is invalidated; a
        fresh access token for the caller is returned.
        """
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        if new_password == current_password:
            raise ValidationError("New password must differ from the current password")

        new_hash = get_password_hash(new_password)
        with transaction(db):
            user.password_hash = new_hash
            revoked = AccountService.revoke_credentials(db, user)
            revocation_service.revoke_claims(db, claims, reason="password_change", commit=False)
            audit_service.log_event(
                db,
                actor_id=user.id,
                action="user.password_changed",
                target_type="user",
                target_id=user.id,
                ip_address=client_ip,
                metadata={"sessions_revoked": revoked},
                commit=False,
            )

        attempt_throttle.clear_attempts(db, user.email_normalized, client_ip)
        logger.info(f"Password changed for user_id={user.id}; {revoked} session(s) revoked")
        return AccountService._auth_result(user)

    @staticmethod
    def request_password_reset(db: Session, email: Optional[str]) -> None:
        """
        Email a reset code and link. The caller learns nothing about whether
        the email exists: unknown addresses and cooldown hits are silent.
        """
        if not is_valid_email(email):
            return
        user = AccountService.get_by_email(db, email)
        if user is None:
            logger.info("Password reset requested for unknown email %s", mask_email(email))
            return

        purpose = VerificationPurpose.PASSWORD_RESET
        if verification_service.cooldown_remaining(db, user.id, purpose, settings.RESEND_COOLDOWN_SECONDS):
            logger.info(f"Password reset cooldown active for user_id={user.id}")
            return

        issued = verification_service.issue(db, user.id, purpose)
        try:
            email_service.send_password_reset_email(
                user.email, issued.code, issued.token, settings.VERIFICATION_TTL_MINUTES
            )
        except EmailDeliveryError:
            verification_service.delete(db, user.id, purpose)
            raise

    @staticmethod
    def reset_password(
        db: Session,
        *,
        new_password: str,
        token: Optional[str] = None,
        email: Optional[str] = None,
        code: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> None:
        """
        Set a new password using a reset token or code. All sessions and
        access tokens of the account are invalidated.

        Raises:
            InvalidVerificationError: artifact unknown, used, expired or wrong
        """
        purpose = VerificationPurpose.PASSWORD_RESET
        new_hash = get_password_hash(new_password)
        with transaction(db):
            if token:
                artifact = verification_service.consume_token(db, token, purpose)
                user = AccountService.get_by_id(db, artifact.user_id)
                if user is None:
                    raise InvalidVerificationError(INVALID_TOKEN_MESSAGE)
            else:
                user = AccountService.get_by_email(db, email)
                if user is None:
                    raise InvalidVerificationError()
                verification_service.consume_code(db, user.id, code, purpose)

            user.password_hash = new_hash
            revoked = AccountService.revoke_credentials(db, user)
            audit_service.log_event(
                db,
                actor_id=user.id,
                action="user.password_reset",
                target_type="user",
                target_id=user.id,
                ip_address=client_ip,
                metadata={"sessions_revoked": revoked},
                commit=False,
            )

        attempt_throttle.clear_attempts(db, user.email_normalized, client_ip)
        logger.info(f"Password reset for user_id={user.id}; {revoked} session(s) revoked")

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @staticmethod
    def list_users(
        db: Session,
        page: int = 1,
        page_size: int = 20,
        q: Optional[str] = None,
    ) -> Tuple[List[User], int]:
        """Page through users, newest first, optionally filtered by email or name."""
        query = db.query(User).outerjoin(User.profile).options(contains_eager(User.profile))
        if q and q.strip():
            pattern = f"%{q.strip().lower()}%"
            query = query.filter(
                or_(
                    User.email_normalized.like(pattern),
                    func.lower(UserProfile.full_name).like(pattern),
                )
            )
        total = query.count()
        users = (
            query.order_by(User.created_at.desc(), User.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return users, total

    @staticmethod
    def force_logout(db: Session, target_id: str, actor: User, client_ip: Optional[str] = None) -> int:
        user = AccountService.require_user(db, target_id)
        with transaction(db):
            revoked = AccountService.revoke_credentials(db, user)
            audit_service.log_event(
                db,
                actor_id=actor.id,
                action="admin.force_logout",
                target_type="user",
                target_id=user.id,
                ip_address=client_ip,
                metadata={"sessions_revoked": revoked},
                commit=False,
            )
        logger.warning(f"Admin {actor.id} forced logout of user_id={user.id} ({revoked} session(s))")
        return revoked

    @staticmethod
    def change_role(
        db: Session,
        target_id: str,
        role: UserRole,
        actor: User,
        client_ip: Optional[str] = None,
    ) -> User:
        user = AccountService.require_user(db, target_id)
        if user.id == actor.id:
            raise ValidationError("Administrators cannot change their own role")
        if user.role == role.value:
            return user

        previous = user.role
        with transaction(db):
            user.role = role.value
            # Tokens carry the role claim; old ones must stop working.
            AccountService.revoke_credentials(db, user)
            audit_service.log_event(
                db,
                actor_id=actor.id,
                action="admin.role_changed",
                target_type="user",
                target_id=user.id,
                ip_address=client_ip,
                metadata={"from": previous, "to": role.value},
                commit=False,
            )
        logger.warning(f"Admin {actor.id} changed role of user_id={user.id}: {previous} -> {role.value}")
        return user

    @staticmethod
    def lock_account(db: Session, target_id: str, actor: User, client_ip: Optional[str] = None) -> User:
        user = AccountService.require_user(db, target_id)
        if user.id == actor.id:
            raise ValidationError("Administrators cannot lock their own account")
        if not AccountService.lock(user):
            return user

        with transaction(db):
            revoked = AccountService.revoke_credentials(db, user)
            audit_service.log_event(
                db,
                actor_id=actor.id,
                action="admin.account_locked",
                target_type="user",
                target_id=user.id,
                ip_address=client_ip,
                metadata={"sessions_revoked": revoked},
                commit=False,
            )
        logger.warning(f"Admin {actor.id} locked user_id={user.id}")
        return user

    @staticmethod
    def unlock_account(db: Session, target_id: str, actor: User, client_ip: Optional[str] = None) -> User:
        user = AccountService.require_user(db, target_id)
        if not AccountService.unlock(user):
            return user

        with transaction(db):
            audit_service.log_event(
                db,
                actor_id=actor.id,
                action="admin.account_unlocked",
                target_type="user",
                target_id=user.id,
                ip_address=client_ip,
                commit=False,
            )
        attempt_throttle.clear_all_attempts(db, user.email_normalized)
        logger.info(f"Admin {actor.id} unlocked user_id={user.id}")
        return user

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    @staticmethod
    def purge_expired(db: Session) -> Dict[str, int]:
        """Delete dead sessions, revocations, artifacts and stale attempt rows."""
        return {
            "sessions": session_store.purge_expired(db),
            "revoked_tokens": revocation_service.purge_expired(db),
            "verification_artifacts": verification_service.purge_expired(db),
            "login_attempts": attempt_throttle.purge_stale(db),
        }


account_service = AccountService()
