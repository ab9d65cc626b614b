"""Access token codec - issue and verify signed JWTs.

Every handler and dependency goes through :func:`verify_token` (usually via
the module-level :data:`token_codec`); nothing else parses JWTs.

Two signing modes are supported:

* ``HS256`` - HMAC-SHA256 with a shared secret.
* ``RS256`` - RSA signature with the active private key, identified by a
  ``kid`` header so several public keys can be published (JWKS) and accepted
  during key rotation.

The verifier picks the verification key strictly from the algorithm the
server enabled. A token declaring any other algorithm (``none``, ``HS512``,
or ``HS256`` when only RSA is enabled) is rejected before any signature
check, which closes the classic RS256 -> HS256 key-confusion hole.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from jose import jwk, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from nutriclinic.config import Settings, settings

HS256 = "HS256"
RS256 = "RS256"

_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


class TokenFailure(str, Enum):
    """Structured verification failure reasons"""
    MISSING_TOKEN = "missing_token"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    BAD_ISSUER = "bad_issuer"
    BAD_AUDIENCE = "bad_audience"


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    payload: Optional[Dict[str, Any]] = None
    reason: Optional[TokenFailure] = None

    @classmethod
    def failed(cls, reason: TokenFailure) -> "TokenVerification":
        return cls(valid=False, reason=reason)


@dataclass
class VerificationContext:
    """
    What the server accepts.

    ``hmac_secret`` enables HS256. ``rsa_public_keys`` (kid -> PEM) enables
    RS256. ``issuer`` / ``audience`` are checked only when set.
    """
    hmac_secret: Optional[str] = None
    rsa_public_keys: Dict[str, str] = field(default_factory=dict)
    issuer: Optional[str] = None
    audience: Optional[str] = None

    def enabled_algorithms(self) -> set:
        enabled = set()
        if self.hmac_secret:
            enabled.add(HS256)
        if self.rsa_public_keys:
            enabled.add(RS256)
        return enabled


def issue_token(
    claims: Mapping[str, Any],
    key: str,
    ttl_seconds: int,
    algorithm: str = HS256,
    kid: Optional[str] = None,
) -> str:
    """
    Sign ``claims`` into a compact JWT.

    ``exp`` and ``iat`` are always computed here; any caller-supplied
    ``exp`` is discarded. A ``jti`` is added unless one is given.
    """
    if algorithm not in (HS256, RS256):
        raise ValueError(f"Unsupported signing algorithm: {algorithm}")
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")

    now = int(time.time())
    payload = {k: v for k, v in claims.items() if v is not None and k not in ("exp", "iat")}
    if "sub" in payload:
        payload["sub"] = str(payload["sub"])
    payload.setdefault("jti", uuid.uuid4().hex)
    payload["iat"] = now
    payload["exp"] = now + int(ttl_seconds)

    headers = {"kid": kid} if kid else None
    return jwt.encode(payload, key, algorithm=algorithm, headers=headers)


def _is_compact(token: str) -> bool:
    parts = token.split(".")
    return len(parts) == 3 and all(_SEGMENT.match(part) for part in parts)


def verify_token(token: Optional[str], context: VerificationContext) -> TokenVerification:
    """
    Verify a compact JWT. Never raises on bad input.

    Checks, in order: presence, structure, declared algorithm against the
    enabled set, signature, expiry, then issuer and audience.
    """
    if not token or not isinstance(token, str) or not token.strip():
        return TokenVerification.failed(TokenFailure.MISSING_TOKEN)
    token = token.strip()
    if not _is_compact(token):
        return TokenVerification.failed(TokenFailure.MALFORMED)

    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        return TokenVerification.failed(TokenFailure.MALFORMED)

    algorithm = header.get("alg")
    if algorithm not in context.enabled_algorithms():
        return TokenVerification.failed(TokenFailure.BAD_SIGNATURE)

    if algorithm == HS256:
        key = context.hmac_secret
    else:
        kid = header.get("kid")
        if kid:
            key = context.rsa_public_keys.get(kid)
        elif len(context.rsa_public_keys) == 1:
            key = next(iter(context.rsa_public_keys.values()))
        else:
            key = None
        if not key:
            return TokenVerification.failed(TokenFailure.BAD_SIGNATURE)

    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            options={"verify_aud": False, "verify_iss": False, "require_exp": True},
        )
    except ExpiredSignatureError:
        return TokenVerification.failed(TokenFailure.EXPIRED)
    except JWTClaimsError:
        return TokenVerification.failed(TokenFailure.MALFORMED)
    except JWTError:
        return TokenVerification.failed(TokenFailure.BAD_SIGNATURE)

    if context.issuer and payload.get("iss") != context.issuer:
        return TokenVerification.failed(TokenFailure.BAD_ISSUER)
    if context.audience:
        aud = payload.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if context.audience not in audiences:
            return TokenVerification.failed(TokenFailure.BAD_AUDIENCE)

    return TokenVerification(valid=True, payload=payload)


def public_pem_from_private(private_key_pem: str) -> str:
    public = jwk.construct(private_key_pem, RS256).public_key().to_pem()
    return public.decode("utf-8") if isinstance(public, bytes) else public


class TokenCodec:
    """Server-configured token issuance and verification."""

    def __init__(
        self,
        *,
        hmac_secret: Optional[str] = None,
        private_key_pem: Optional[str] = None,
        active_kid: Optional[str] = None,
        public_keys: Optional[Dict[str, str]] = None,
        accept_hs256: bool = False,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        default_ttl_seconds: int = 3600,
    ) -> None:
        self.hmac_secret = hmac_secret or None
        self.private_key_pem = private_key_pem or None
        self.active_kid = active_kid or "k1"
        self.issuer = issuer
        self.audience = audience
        self.default_ttl_seconds = default_ttl_seconds

        keys = dict(public_keys or {})
        if self.private_key_pem and self.active_kid not in keys:
            keys[self.active_kid] = public_pem_from_private(self.private_key_pem)
        self.public_keys = keys

        if not self.private_key_pem and not self.hmac_secret:
            raise ValueError("TokenCodec needs an HMAC secret or an RSA private key")

        self.context = VerificationContext(
            hmac_secret=self.hmac_secret if (accept_hs256 or not self.private_key_pem) else None,
            rsa_public_keys=self.public_keys,
            issuer=issuer,
            audience=audience,
        )

    @classmethod
    def from_settings(cls, config: Settings) -> "TokenCodec":
        public_keys = dict(config.JWT_ADDITIONAL_PUBLIC_KEYS)
        if config.JWT_PUBLIC_KEY_PEM:
            public_keys[config.JWT_JWKS_KID] = config.JWT_PUBLIC_KEY_PEM
        return cls(
            hmac_secret=config.JWT_SECRET,
            private_key_pem=config.JWT_PRIVATE_KEY_PEM,
            active_kid=config.JWT_JWKS_KID,
            public_keys=public_keys,
            accept_hs256=config.JWT_ACCEPT_HS256,
            issuer=config.get_token_issuer(),
            audience=config.get_token_audience(),
            default_ttl_seconds=config.JWT_EXPIRATION_SEC,
        )

    @property
    def signing_algorithm(self) -> str:
        return RS256 if self.private_key_pem else HS256

    def issue(self, claims: Mapping[str, Any], ttl_seconds: Optional[int] = None) -> str:
        payload = dict(claims)
        if self.issuer:
            payload.setdefault("iss", self.issuer)
        if self.audience:
            payload.setdefault("aud", self.audience)
        ttl = ttl_seconds or self.default_ttl_seconds
        if self.private_key_pem:
            return issue_token(payload, self.private_key_pem, ttl, RS256, kid=self.active_kid)
        return issue_token(payload, self.hmac_secret, ttl, HS256)

    def verify(self, token: Optional[str]) -> TokenVerification:
        return verify_token(token, self.context)

    def jwks(self) -> Dict[str, Any]:
        """Public RSA keys as a JWK set; empty when only HS256 is in use."""
        keys = []
        for kid, pem in self.public_keys.items():
            entry = jwk.construct(pem, RS256).to_dict()
            entry["kid"] = kid
            entry["use"] = "sig"
            entry["alg"] = RS256
            keys.append(entry)
        return {"keys": keys}


token_codec = TokenCodec.from_settings(settings)
