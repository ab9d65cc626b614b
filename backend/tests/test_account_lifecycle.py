import logging
from datetime import timedelta

import pytest

from nutriclinic.api.deps import resolve_token
from nutriclinic.core.clock import utcnow
from nutriclinic.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    EmailDeliveryError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidVerificationError,
    RateLimitExceededError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    TokenInvalidError,
    TokenOutdatedError,
    ValidationError,
)
from nutriclinic.core.tokens import token_codec
from nutriclinic.models.audit import AuditEvent
from nutriclinic.models.security import UserSession, VerificationArtifact, VerificationPurpose
from nutriclinic.models.user import AccountState, User, UserProfile, UserRole
from nutriclinic.schemas.user import RegisterRequest
from nutriclinic.services import account_service as account_module
from nutriclinic.services.account_service import account_service
from nutriclinic.services.attempt_throttle import attempt_throttle
from nutriclinic.services.email_service import email_service
from nutriclinic.services.session_store import session_store

from conftest import STRONG_PASSWORD

IP = "203.0.113.10"


def _registration(email="user@example.com", password=STRONG_PASSWORD):
    return RegisterRequest(
        email=email,
        password=password,
        full_name="Joana Souza",
        phone="(11) 98765-4321",
        birth_date="1990-05-17",
    )


def _register_and_confirm(db, outbox, email="user@example.com"):
    result = account_service.register(db, _registration(email), client_ip=IP)
    code = outbox[-1]["code"]
    auth = account_service.confirm_verification(db, email=email, code=code, client_ip=IP)
    return result, auth


def test_register_creates_unconfirmed_account_and_sends_code(db_session, outbox):
    result = account_service.register(db_session, _registration(), client_ip=IP)

    user = db_session.get(User, result.user_id)
    assert user.state == AccountState.UNCONFIRMED.value
    assert not user.email_confirmed
    assert user.role == UserRole.PATIENT.value
    assert user.session_version == 0
    assert user.display_name == "Joana"
    assert user.password_hash != STRONG_PASSWORD
    assert user.profile.phone == "+5511987654321"

    assert len(outbox) == 1
    assert outbox[0]["kind"] == "verification"
    assert outbox[0]["to"] == "user@example.com"
    artifact = db_session.query(VerificationArtifact).filter_by(user_id=user.id).one()
    assert artifact.purpose == VerificationPurpose.EMAIL_CONFIRMATION.value
    assert artifact.code_hash != outbox[0]["code"]


def test_initial_admin_email_registers_as_admin(db_session, outbox):
    result = account_service.register(db_session, _registration("Owner@Example.com"))
    assert db_session.get(User, result.user_id).role == UserRole.ADMIN.value


def test_reregistering_pending_account_replaces_credentials(db_session, outbox):
    first = account_service.register(db_session, _registration())
    second = account_service.register(db_session, _registration(password="N3w!Password"))

    assert second.user_id == first.user_id
    assert second.reregistered
    assert db_session.query(User).count() == 1
    assert db_session.query(VerificationArtifact).count() == 1

    with pytest.raises(InvalidVerificationError):
        account_service.confirm_verification(db_session, token=outbox[0]["token"])
    account_service.confirm_verification(db_session, token=outbox[1]["token"])
    assert account_service.login(db_session, "user@example.com", "N3w!Password", client_ip=IP).access_token


def test_registering_confirmed_email_conflicts(db_session, outbox):
    _register_and_confirm(db_session, outbox)
    with pytest.raises(ResourceAlreadyExistsError) as exc_info:
        account_service.register(db_session, _registration("USER@example.com"))
    assert exc_info.value.message == "User already exists"
    assert exc_info.value.status_code == 409


def test_email_failure_rolls_registration_back(db_session, monkeypatch, caplog):
    def failing_send(*args, **kwargs):
        raise EmailDeliveryError()

    monkeypatch.setattr(email_service, "send_verification_email", failing_send)
    caplog.set_level(logging.ERROR, logger="nutriclinic.registration")

    with pytest.raises(EmailDeliveryError):
        account_service.register(db_session, _registration())

    assert db_session.query(User).count() == 0
    assert db_session.query(UserProfile).count() == 0
    assert db_session.query(VerificationArtifact).count() == 0
    compensations = [r for r in caplog.records if "saga_compensation" in r.getMessage()]
    assert {r.name for r in compensations} == {"nutriclinic.registration"}
    assert len(compensations) == 2


def test_confirm_with_code_activates_and_logs_in(db_session, outbox):
    result, auth = _register_and_confirm(db_session, outbox)

    user = db_session.get(User, result.user_id)
    assert user.state == AccountState.ACTIVE.value
    assert auth.refresh_token
    claims = token_codec.verify(auth.access_token).payload
    assert claims["sub"] == result.user_id
    assert claims["session_version"] == 0
    assert claims["full_name"] == "Joana Souza"
    assert db_session.query(AuditEvent).filter_by(action="user.email_confirmed").count() == 1


def test_confirm_with_token_is_single_use(db_session, outbox):
    account_service.register(db_session, _registration())
    token = outbox[0]["token"]

    auth = account_service.confirm_verification(db_session, token=token)
    assert auth.user.email_confirmed

    with pytest.raises(InvalidVerificationError) as exc_info:
        account_service.confirm_verification(db_session, token=token)
    assert exc_info.value.message == "Invalid or expired token"


def test_wrong_codes_burn_the_artifact(db_session, outbox):
    account_service.register(db_session, _registration())
    code = outbox[0]["code"]
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(5):
        with pytest.raises(InvalidVerificationError):
            account_service.confirm_verification(db_session, email="user@example.com", code=wrong)

    with pytest.raises(InvalidVerificationError):
        account_service.confirm_verification(db_session, email="user@example.com", code=code)


def test_expired_code_is_rejected(db_session, outbox):
    account_service.register(db_session, _registration())
    artifact = db_session.query(VerificationArtifact).one()
    artifact.expires_at = utcnow() - timedelta(seconds=1)
    db_session.commit()

    with pytest.raises(InvalidVerificationError):
        account_service.confirm_verification(db_session, email="user@example.com", code=outbox[0]["code"])


def test_resend_respects_cooldown(db_session, outbox):
    account_service.register(db_session, _registration())

    with pytest.raises(RateLimitExceededError) as exc_info:
        account_service.resend_verification(db_session, "user@example.com")
    assert 0 < exc_info.value.retry_after <= 60

    artifact = db_session.query(VerificationArtifact).one()
    artifact.created_at = utcnow() - timedelta(seconds=61)
    db_session.commit()

    account_service.resend_verification(db_session, "user@example.com")
    assert len(outbox) == 2


@pytest.mark.parametrize("email", [None, "not-an-email", "nobody@example.com"])
def test_resend_ignores_unknown_or_invalid_email(db_session, outbox, email):
    account_service.resend_verification(db_session, email)
    assert outbox == []


def test_login_requires_confirmed_email(db_session, outbox):
    account_service.register(db_session, _registration())
    with pytest.raises(EmailNotVerifiedError):
        account_service.login(db_session, "user@example.com", STRONG_PASSWORD, client_ip=IP)


def test_unknown_email_and_wrong_password_look_the_same(db_session, make_user, monkeypatch):
    make_user(email="user@example.com")
    burned = []
    monkeypatch.setattr(account_module, "burn_password_check", lambda password: burned.append(password))

    with pytest.raises(InvalidCredentialsError) as unknown:
        account_service.login(db_session, "ghost@example.com", STRONG_PASSWORD, client_ip=IP)
    with pytest.raises(InvalidCredentialsError) as wrong:
        account_service.login(db_session, "user@example.com", "Wr0ng!Pass", client_ip=IP)

    assert unknown.value.message == wrong.value.message == "Invalid credentials"
    assert burned == [STRONG_PASSWORD]


def test_login_without_remember_opens_no_session(db_session, make_user):
    user = make_user()
    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, client_ip=IP)
    assert auth.refresh_token is None
    assert db_session.query(UserSession).count() == 0
    assert db_session.get(User, user.id).last_login_at is not None


def test_login_with_remember_opens_session(db_session, make_user):
    user = make_user()
    auth = account_service.login(db_session, user.email.upper(), STRONG_PASSWORD, remember=True, client_ip=IP)
    assert auth.refresh_token
    assert session_store.find_by_plaintext_token(db_session, auth.refresh_token).user_id == user.id


def test_refresh_rotates_and_keeps_expiry(db_session, make_user):
    user = make_user()
    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)

    refreshed = account_service.refresh(db_session, auth.refresh_token)
    assert refreshed.refresh_token != auth.refresh_token
    assert refreshed.refresh_expires_at == auth.refresh_expires_at
    assert token_codec.verify(refreshed.access_token).payload["sub"] == user.id

    with pytest.raises(InvalidRefreshTokenError):
        account_service.refresh(db_session, auth.refresh_token)


def test_refresh_rejects_revoked_and_expired_sessions(db_session, make_user):
    user = make_user()
    revoked = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)
    account_service.logout(db_session, revoked.refresh_token)
    with pytest.raises(InvalidRefreshTokenError):
        account_service.refresh(db_session, revoked.refresh_token)

    expired = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)
    record = session_store.find_by_plaintext_token(db_session, expired.refresh_token)
    record.expires_at = utcnow() - timedelta(seconds=1)
    db_session.commit()
    with pytest.raises(InvalidRefreshTokenError):
        account_service.refresh(db_session, expired.refresh_token)


def test_logout_is_idempotent_and_revokes_access_token(db_session, make_user):
    user = make_user()
    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)
    claims = token_codec.verify(auth.access_token).payload

    account_service.logout(db_session, auth.refresh_token, access_claims=claims)
    account_service.logout(db_session, auth.refresh_token, access_claims=claims)
    account_service.logout(db_session, "never-issued")

    with pytest.raises(TokenInvalidError):
        resolve_token(db_session, auth.access_token)


def test_change_password_invalidates_everything_before(db_session, make_user):
    user = make_user()
    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)
    context = resolve_token(db_session, auth.access_token)

    changed = account_service.change_password(
        db_session, context.user, context.claims, STRONG_PASSWORD, "An0ther!Pass", client_ip=IP
    )

    assert db_session.get(User, user.id).session_version == 1
    assert token_codec.verify(changed.access_token).payload["session_version"] == 1
    assert resolve_token(db_session, changed.access_token).user.id == user.id
    with pytest.raises(AuthenticationError):
        resolve_token(db_session, auth.access_token)
    with pytest.raises(InvalidRefreshTokenError):
        account_service.refresh(db_session, auth.refresh_token)
    assert db_session.query(AuditEvent).filter_by(action="user.password_changed").count() == 1


def test_change_password_checks_current_password(db_session, make_user):
    user = make_user()
    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, client_ip=IP)
    context = resolve_token(db_session, auth.access_token)

    with pytest.raises(AuthenticationError):
        account_service.change_password(db_session, context.user, context.claims, "Wr0ng!Pass", "An0ther!Pass")
    with pytest.raises(ValidationError):
        account_service.change_password(db_session, context.user, context.claims, STRONG_PASSWORD, STRONG_PASSWORD)


def test_password_reset_with_code(db_session, make_user, outbox):
    user = make_user()
    old = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)

    account_service.request_password_reset(db_session, user.email)
    assert outbox[-1]["kind"] == "reset"

    account_service.reset_password(
        db_session, new_password="R3set!Pass", email=user.email, code=outbox[-1]["code"], client_ip=IP
    )

    with pytest.raises(InvalidRefreshTokenError):
        account_service.refresh(db_session, old.refresh_token)
    with pytest.raises(InvalidCredentialsError):
        account_service.login(db_session, user.email, STRONG_PASSWORD, client_ip=IP)
    assert account_service.login(db_session, user.email, "R3set!Pass", client_ip=IP).access_token


def test_password_reset_token_is_single_use(db_session, make_user, outbox):
    user = make_user()
    account_service.request_password_reset(db_session, user.email)
    token = outbox[-1]["token"]

    account_service.reset_password(db_session, new_password="R3set!Pass", token=token)
    with pytest.raises(InvalidVerificationError):
        account_service.reset_password(db_session, new_password="Ag4in!Pass", token=token)


def test_reset_request_is_silent_for_unknown_email_and_cooldown(db_session, make_user, outbox):
    user = make_user()
    account_service.request_password_reset(db_session, "ghost@example.com")
    assert outbox == []

    account_service.request_password_reset(db_session, user.email)
    account_service.request_password_reset(db_session, user.email)
    assert len(outbox) == 1


def test_lock_and_unlock(db_session, make_user):
    admin = make_user(email="admin@example.com", role=UserRole.ADMIN)
    user = make_user()
    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)

    account_service.lock_account(db_session, user.id, admin)
    with pytest.raises(AccountLockedError):
        account_service.login(db_session, user.email, STRONG_PASSWORD, client_ip=IP)
    with pytest.raises(InvalidRefreshTokenError):
        account_service.refresh(db_session, auth.refresh_token)

    account_service.unlock_account(db_session, user.id, admin)
    assert account_service.login(db_session, user.email, STRONG_PASSWORD, client_ip=IP).access_token


def test_unconfirmed_account_cannot_be_locked(db_session, make_user):
    admin = make_user(email="admin@example.com", role=UserRole.ADMIN)
    pending = make_user(email="pending@example.com", state=AccountState.UNCONFIRMED)
    with pytest.raises(ValidationError):
        account_service.lock_account(db_session, pending.id, admin)


def test_force_logout_makes_tokens_outdated(db_session, make_user):
    admin = make_user(email="admin@example.com", role=UserRole.ADMIN)
    user = make_user()
    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)

    assert account_service.force_logout(db_session, user.id, admin) == 1
    with pytest.raises(TokenOutdatedError):
        resolve_token(db_session, auth.access_token)
    assert db_session.query(AuditEvent).filter_by(action="admin.force_logout", target_id=user.id).count() == 1


def test_change_role(db_session, make_user):
    admin = make_user(email="admin@example.com", role=UserRole.ADMIN)
    user = make_user()

    updated = account_service.change_role(db_session, user.id, UserRole.NUTRI, admin)
    assert updated.role == UserRole.NUTRI.value
    assert updated.session_version == 1

    with pytest.raises(ValidationError):
        account_service.change_role(db_session, admin.id, UserRole.PATIENT, admin)
    with pytest.raises(ResourceNotFoundError):
        account_service.change_role(db_session, "missing", UserRole.PATIENT, admin)


def test_list_users_filters_and_pages(db_session, make_user):
    make_user(email="ana@example.com", full_name="Ana Lima")
    make_user(email="bruno@example.com", full_name="Bruno Costa")
    make_user(email="carla@clinic.test", full_name="Carla Lima")

    users, total = account_service.list_users(db_session, q="lima")
    assert total == 2
    assert {u.email for u in users} == {"ana@example.com", "carla@clinic.test"}

    users, total = account_service.list_users(db_session, page=2, page_size=2)
    assert total == 3
    assert len(users) == 1


def test_purge_expired_reports_counts(db_session, make_user):
    user = make_user()
    _, record = session_store.open_session(db_session, user.id)
    session_store.revoke(db_session, record.id)

    counts = account_service.purge_expired(db_session)
    assert counts["sessions"] == 1
    assert set(counts) == {"sessions", "revoked_tokens", "verification_artifacts", "login_attempts"}


def test_refresh_and_logout_only_clear_the_callers_ip(db_session, make_user):
    user = make_user()
    attacker_ip = "198.51.100.66"
    for _ in range(5):
        attempt_throttle.register_failed_attempt(db_session, user.email, attacker_ip)
    assert attempt_throttle.check_locks(db_session, user.email, attacker_ip).blocked

    auth = account_service.login(db_session, user.email, STRONG_PASSWORD, remember=True, client_ip=IP)
    refreshed = account_service.refresh(db_session, auth.refresh_token, client_ip=IP)
    assert attempt_throttle.check_locks(db_session, user.email, attacker_ip).blocked

    account_service.logout(db_session, refreshed.refresh_token, client_ip=IP)
    assert attempt_throttle.check_locks(db_session, user.email, attacker_ip).blocked


def test_admin_unlock_clears_every_ip(db_session, make_user):
    admin = make_user(email="admin@example.com", role=UserRole.ADMIN)
    user = make_user(email="patient@example.com")
    for _ in range(5):
        attempt_throttle.register_failed_attempt(db_session, user.email, "198.51.100.66")
    account_service.lock_account(db_session, user.id, admin, client_ip=IP)

    account_service.unlock_account(db_session, user.id, admin, client_ip=IP)
    assert not attempt_throttle.check_locks(db_session, user.email, "198.51.100.66").blocked
