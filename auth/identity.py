"""
auth/identity.py -- Identity capability consumed by the sign-in orchestrator.

IdentityProvider is the seam between the sign-in state machine and the
account database. The orchestrator only needs four capabilities:
find_user_by_name, verify_password, verify_two_factor_code, get_roles.
Tests substitute a fake; production uses StoreIdentityProvider.

StoreIdentityProvider adds the account policy that lives beside the data:
  Lockout: LOCKOUT_MAX_FAILED_ATTEMPTS consecutive password or two-factor
      failures lock the account for LOCKOUT_MINUTES. A locked account fails
      verification even with the right password. Success resets the counter;
      for two-factor accounts only the code check counts as success.
  Two-factor: RFC 6238 TOTP via pyotp, one step of clock drift tolerated.
  Password policy: change_password() returns a list of PasswordError reasons
      instead of raising, so the route can surface every violation at once.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Protocol

import pyotp

from auth.models import PasswordError, User
from auth.store import UserStore
from auth.tokens import DUMMY_HASH, hash_password, verify_password

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("flexflow.auth")


class IdentityProvider(Protocol):
    def find_user_by_name(self, username: str) -> User | None: ...

    def verify_password(self, user: User | None, password: str) -> bool:
        """Check a password. user=None must still do comparable work and return False."""
        ...

    def verify_two_factor_code(self, user: User, code: str) -> bool: ...

    def get_roles(self, user: User) -> list[str]: ...


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 1
    require_digit: bool = False
    require_uppercase: bool = False
    require_non_alphanumeric: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> PasswordPolicy:
        return cls(
            min_length=settings.password_min_length,
            require_digit=settings.password_require_digit,
            require_uppercase=settings.password_require_uppercase,
            require_non_alphanumeric=settings.password_require_non_alphanumeric,
        )

    def validate(self, password: str) -> list[PasswordError]:
        errors: list[PasswordError] = []
        if len(password) < max(self.min_length, 1):
            errors.append(
                PasswordError(
                    "PasswordTooShort",
                    f"Passwords must be at least {max(self.min_length, 1)} characters.",
                )
            )
        if self.require_digit and not any(c.isdigit() for c in password):
            errors.append(PasswordError("PasswordRequiresDigit", "Passwords must have at least one digit ('0'-'9')."))
        if self.require_uppercase and not any(c.isupper() for c in password):
            errors.append(
                PasswordError("PasswordRequiresUpper", "Passwords must have at least one uppercase ('A'-'Z').")
            )
        if self.require_non_alphanumeric and all(c.isalnum() for c in password):
            errors.append(
                PasswordError(
                    "PasswordRequiresNonAlphanumeric",
                    "Passwords must have at least one non alphanumeric character.",
                )
            )
        return errors


class StoreIdentityProvider:
    """IdentityProvider backed by UserStore, bcrypt and pyotp."""

    def __init__(
        self,
        store: UserStore,
        *,
        max_failed_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=10),
        policy: PasswordPolicy | None = None,
    ) -> None:
        self.store = store
        self.max_failed_attempts = max_failed_attempts
        self.lockout = lockout
        self.policy = policy or PasswordPolicy()

    @classmethod
    def from_settings(cls, store: UserStore, settings: Settings) -> StoreIdentityProvider:
        return cls(
            store,
            max_failed_attempts=settings.lockout_max_failed_attempts,
            lockout=timedelta(minutes=settings.lockout_minutes),
            policy=PasswordPolicy.from_settings(settings),
        )

    # ------------------------------------------------------------------
    # IdentityProvider
    # ------------------------------------------------------------------

    def find_user_by_name(self, username: str) -> User | None:
        if not username:
            return None
        return self.store.get_by_username(username)

    def verify_password(self, user: User | None, password: str) -> bool:
        if user is None or not user.hashed_password:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_password(password, DUMMY_HASH)
            return False
        if self.is_locked_out(user):
            verify_password(password, DUMMY_HASH)
            logger.info("Password check for %s refused: account locked out", user.username)
            return False
        if not verify_password(password, user.hashed_password):
            self._record_failure(user)
            return False
        # With two-factor on, only a good code clears the counter.
        if not user.two_factor_enabled:
            self._reset_failures(user)
        return True

    def verify_two_factor_code(self, user: User, code: str) -> bool:
        if not user.two_factor_enabled or not user.two_factor_secret:
            return False
        if self.is_locked_out(user):
            logger.info("Two-factor check for %s refused: account locked out", user.username)
            return False
        code = code.replace(" ", "").replace("-", "")
        if not pyotp.TOTP(user.two_factor_secret).verify(code, valid_window=1):
            self._record_failure(user)
            return False
        self._reset_failures(user)
        return True

    def get_roles(self, user: User) -> list[str]:
        return self.store.get_roles(user.id)

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def is_locked_out(self, user: User) -> bool:
        if not user.lockout_end:
            return False
        return datetime.fromisoformat(user.lockout_end) > datetime.now(timezone.utc)

    def _record_failure(self, user: User) -> None:
        count = self.store.record_failed_access(user.id)
        user.access_failed_count = count
        if count >= self.max_failed_attempts:
            until = (datetime.now(timezone.utc) + self.lockout).isoformat()
            self.store.set_lockout(user.id, until)
            user.lockout_end = until
            user.access_failed_count = 0
            logger.warning("User %s locked out until %s after %d failed attempts", user.username, until, count)

    def _reset_failures(self, user: User) -> None:
        if user.access_failed_count or user.lockout_end:
            self.store.set_lockout(user.id, None)
            user.access_failed_count = 0
            user.lockout_end = None

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def change_password(self, user: User, old_password: str, new_password: str) -> list[PasswordError]:
        """Replace the user's password. Returns [] on success, otherwise every reason it was refused.

        The old password is checked without touching the lockout counter --
        the caller is already authenticated.
        """
        if not user.hashed_password or not verify_password(old_password, user.hashed_password):
            return [PasswordError("PasswordMismatch", "Incorrect password.")]
        errors = self.policy.validate(new_password)
        if errors:
            return errors
        self.store.update_user(user.id, hashed_password=hash_password(new_password))
        logger.info("Password changed for %s", user.username)
        return []

    def enable_two_factor(self, user: User, secret: str | None = None) -> str:
        """Turn on TOTP for a confirmed account and return the base32 secret.

        Provisioning helper for operators and fixtures. No HTTP route calls it.
        """
        if not user.email_confirmed:
            raise ValueError("Two-factor authentication requires a confirmed email address.")
        secret = secret or pyotp.random_base32()
        self.store.update_user(user.id, two_factor_enabled=True, two_factor_secret=secret)
        user.two_factor_enabled = True
        user.two_factor_secret = secret
        return secret


def seed_admin(store: UserStore, email: str, roles: tuple[str, ...] = ("Admin", "User")) -> int | None:
    """Create the built-in roles and the `admin` account if it does not exist.

    The seeded account has password "admin", a confirmed email and the
    Admin role. Returns the new user id, or None when it already existed.
    """
    for role in roles:
        store.ensure_role(role)
    if store.get_by_username("admin") is not None:
        logger.info("Administrator user already exists, no need to create.")
        return None
    logger.info("Administrator user does not exist. Creating it...")
    user_id = store.create_user(
        User(
            username="admin",
            email=email,
            display_name="Administrator",
            hashed_password=hash_password("admin"),
            email_confirmed=True,
            roles=["Admin"],
        )
    )
    logger.info("Administrator user created (id=%d).", user_id)
    return user_id
