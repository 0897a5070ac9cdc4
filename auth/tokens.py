"""
auth/tokens.py -- JWT issuance/verification and password hashing utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with BEARER_SECRET and carry
       the username, email, roles, audience, issuer and expiry. Verification
       returns None on any failure -- the dependency layer turns that into a 401.

  BearerConfig: the signing secret, lifetime, audience and issuer are read once
       from Settings into a frozen dataclass and injected into TokenIssuer.
       Nothing mutates it after startup, so no locking is needed.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization when a username does not exist, so response time does not
       reveal whether an account is registered.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import DEFAULT_BEARER_LIFETIME_MINUTES

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("flexflow.auth")

_ALGORITHM = "HS256"


class MisconfigurationError(RuntimeError):
    """Raised at startup when the bearer token configuration is unusable."""


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes; the API layer caps passwords at
    255 characters via the Pydantic field.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB; treat as a mismatch rather than a 500.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("flexflow_timing_dummy")


def token_fingerprint(token: str) -> str:
    """Short, non-reversible identifier for a token, safe to write to logs."""
    if not token:
        return "-"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Bearer configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BearerConfig:
    secret: str
    audience: str
    issuer: str
    lifetime_minutes: int = DEFAULT_BEARER_LIFETIME_MINUTES

    @classmethod
    def from_settings(cls, settings: Settings) -> BearerConfig:
        return cls(
            secret=settings.bearer_secret,
            audience=settings.bearer_audience,
            issuer=settings.bearer_issuer,
            lifetime_minutes=settings.bearer_lifetime_minutes,
        )

    @property
    def lifetime(self) -> timedelta:
        return timedelta(minutes=self.lifetime_minutes)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Process-wide token factory and verifier.

    Usage:
        issuer = TokenIssuer(BearerConfig.from_settings(get_settings()))
        token = issuer.issue("admin", "admin@localhost", ["Admin"])
        claims = issuer.decode(token)   # dict, or None if invalid/expired
    """

    def __init__(self, config: BearerConfig) -> None:
        if not config.secret:
            raise MisconfigurationError("Bearer signing secret is not configured.")
        if config.lifetime_minutes <= 0:
            config = BearerConfig(
                secret=config.secret,
                audience=config.audience,
                issuer=config.issuer,
            )
        self.config = config

    @property
    def lifetime(self) -> timedelta:
        return self.config.lifetime

    def issue(self, username: str, email: str, roles=()) -> str:
        """Encode a signed JWT carrying the user's identity and roles.

        Every role becomes one entry of the "role" claim list. A random jti
        keeps two tokens minted within the same second distinct, so
        blacklisting one session never logs out another.
        """
        if not username:
            raise ValueError("username must be a non-empty string")
        if not email:
            raise ValueError("email must be a non-empty string")

        now = datetime.now(timezone.utc)
        claims = {
            "sub": username,
            "name": username,
            "email": email,
            "role": list(roles),
            "iat": now,
            "nbf": now,
            "exp": now + self.lifetime,
            "aud": self.config.audience,
            "iss": self.config.issuer,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(claims, self.config.secret, algorithm=_ALGORITHM)
        logger.debug("Issued token %s for %s", token_fingerprint(token), username)
        return token

    def decode(self, token: str) -> dict | None:
        """Verify signature, expiry, audience and issuer. Returns the claims or None."""
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.config.secret,
                algorithms=[_ALGORITHM],
                audience=self.config.audience,
                issuer=self.config.issuer,
            )
        except JWTError as exc:
            logger.debug("Rejected token %s: %s", token_fingerprint(token), exc)
            return None
        if not payload.get("sub"):
            return None
        return payload
