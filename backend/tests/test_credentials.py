import pytest
from pydantic import ValidationError

from nutriclinic.core.security import (
    generate_numeric_code,
    generate_opaque_token,
    get_password_hash,
    hash_opaque_token,
    verify_password,
)
from nutriclinic.schemas.user import (
    RegisterRequest,
    ResetPasswordRequest,
    ConfirmVerificationRequest,
    normalize_phone,
    validate_password_policy,
)


def test_password_hash_is_salted_and_verifies():
    first = get_password_hash("Str0ng!Pass")
    second = get_password_hash("Str0ng!Pass")
    assert first != second
    assert first.startswith("$2")
    assert verify_password("Str0ng!Pass", first)
    assert not verify_password("Str0ng!Pasz", first)


def test_verify_password_with_corrupt_hash_is_false():
    assert verify_password("Str0ng!Pass", "not-a-bcrypt-hash") is False


def test_opaque_token_hash_is_deterministic_and_not_plaintext():
    token = generate_opaque_token(64)
    assert len(token) >= 86
    assert hash_opaque_token(token) == hash_opaque_token(token)
    assert hash_opaque_token(token) != token
    assert "=" not in hash_opaque_token(token)


def test_opaque_token_requires_entropy():
    with pytest.raises(ValueError):
        generate_opaque_token(8)


def test_numeric_code_is_zero_padded():
    for _ in range(50):
        code = generate_numeric_code(6)
        assert len(code) == 6
        assert code.isdigit()


@pytest.mark.parametrize("password", ["Str0ng!Pass", "Aa1!aaaa", "Xy9_zzzzzzzz"])
def test_password_policy_accepts(password):
    assert validate_password_policy(password) == password


@pytest.mark.parametrize(
    "password",
    [
        "Sh0rt!",
        "alllowercase1!",
        "ALLUPPERCASE1!",
        "NoDigits!!",
        "NoSymbols123",
        "Aa1!" + "a" * 61,
        "Aa1!" + "é" * 35,
    ],
)
def test_password_policy_rejects(password):
    with pytest.raises(ValueError):
        validate_password_policy(password)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(11) 98765-4321", "+5511987654321"),
        ("11 3456-7890", "+551134567890"),
        ("+1 415 555 0100", "+14155550100"),
        ("0044 20 7946 0958", "+442079460958"),
    ],
)
def test_phone_normalization(raw, expected):
    assert normalize_phone(raw, "55") == expected


@pytest.mark.parametrize("raw", ["123", "", "+0 123 456 789", "abc"])
def test_phone_normalization_rejects(raw):
    with pytest.raises(ValueError):
        normalize_phone(raw, "55")


def test_register_request_normalizes_fields():
    data = RegisterRequest(
        email="  User@Example.com ",
        password="Str0ng!Pass",
        full_name="  Maria   da  Silva ",
        phone="(11) 98765-4321",
    )
    assert data.email == "User@Example.com"
    assert data.full_name == "Maria da Silva"
    assert data.display_name == "Maria"
    assert data.phone == "+5511987654321"


def test_register_request_rejects_bad_email():
    with pytest.raises(ValidationError) as exc_info:
        RegisterRequest(email="not-an-email", password="Str0ng!Pass", full_name="A", phone="11987654321")
    assert "Invalid email format" in str(exc_info.value)


def test_confirm_request_needs_token_or_email_and_code():
    assert ConfirmVerificationRequest(token="abc").token == "abc"
    assert ConfirmVerificationRequest(email="a@b.co", code="123456").code == "123456"
    with pytest.raises(ValidationError):
        ConfirmVerificationRequest(email="a@b.co")


def test_reset_request_enforces_policy():
    with pytest.raises(ValidationError):
        ResetPasswordRequest(token="abc", new_password="weak")
