"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
sign-in orchestrator do the work; these only own the shape.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class User:
    """A FlexFlow account.

    hashed_password is a bcrypt hash. two_factor_secret is a base32 TOTP
    secret and is only consulted when two_factor_enabled is set; two-factor
    cannot be enabled on an account whose email is unconfirmed.

    access_failed_count / lockout_end implement the lockout policy: after
    LOCKOUT_MAX_FAILED_ATTEMPTS consecutive failures the account is locked
    until lockout_end (ISO 8601, UTC).
    """

    username: str
    email: str
    display_name: str
    id: int | None = None
    hashed_password: str | None = None
    email_confirmed: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    access_failed_count: int = 0
    lockout_end: str | None = None
    created_at: str | None = None
    roles: list[str] = field(default_factory=list)


class SignInState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AWAITING_TWO_FACTOR = "awaiting_two_factor"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass
class SignInAttempt:
    """Ephemeral state of one login request. Never persisted.

    remember_me / remember_machine are accepted for client compatibility.
    Bearer tokens carry no server-side session, so neither changes the
    token lifetime.
    """

    username: str
    password: str
    two_factor_code: str | None = None
    remember_me: bool = False
    remember_machine: bool = False
    state: SignInState = SignInState.AWAITING_CREDENTIALS
    two_factor_required: bool = False
    two_factor_satisfied: bool = False
    failed_stage: str | None = None  # "lookup", "password", "two_factor"
    user: User | None = None


@dataclass(frozen=True)
class SignInResult:
    """Outcome handed back to the route layer.

    Only AUTHENTICATED results carry a token. AWAITING_TWO_FACTOR and
    REJECTED results are deliberately empty so a rejected response has the
    same shape whether the username existed or not.
    """

    state: SignInState
    user_id: int | None = None
    display_name: str | None = None
    token: str | None = None
    requires_email_validation: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is SignInState.AUTHENTICATED


@dataclass(frozen=True)
class PasswordError:
    """One reason a password change was refused."""

    code: str
    description: str
