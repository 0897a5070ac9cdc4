"""
auth/signin.py -- Sign-in state machine.

    AWAITING_CREDENTIALS --(no user / bad password)--> REJECTED
    AWAITING_CREDENTIALS --(password ok, no 2FA)-----> AUTHENTICATED
    AWAITING_CREDENTIALS --(password ok, 2FA on)-----> AWAITING_TWO_FACTOR
    AWAITING_TWO_FACTOR  --(code ok)-----------------> AUTHENTICATED
    AWAITING_TWO_FACTOR  --(code wrong)--------------> REJECTED

The two-factor code travels in the same request as the password. When the
account needs one and the request has none, sign_in() stops in
AWAITING_TWO_FACTOR and the route answers 428 so the client re-submits with
a code.

"No such user" and "wrong password" both end in REJECTED with an empty
result. Callers cannot tell them apart, which prevents username enumeration.
The failing stage is kept on the SignInAttempt for audit logging only.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging

from auth.identity import IdentityProvider
from auth.models import SignInAttempt, SignInResult, SignInState
from auth.tokens import TokenIssuer

logger = logging.getLogger("flexflow.auth")


class SignInOrchestrator:
    def __init__(self, identity: IdentityProvider, issuer: TokenIssuer) -> None:
        self.identity = identity
        self.issuer = issuer

    def sign_in(self, attempt: SignInAttempt) -> SignInResult:
        """Drive `attempt` from AWAITING_CREDENTIALS to a resting state and return the result."""
        self._check_credentials(attempt)

        if attempt.state is SignInState.AWAITING_TWO_FACTOR and attempt.two_factor_code:
            self._check_two_factor(attempt)

        if attempt.state is SignInState.AUTHENTICATED:
            return self._authenticated(attempt)
        if attempt.state is SignInState.AWAITING_TWO_FACTOR:
            logger.info("User %s login requires a two-factor code", attempt.username)
            return SignInResult(state=SignInState.AWAITING_TWO_FACTOR)

        logger.info("Login rejected for %r at stage %s", attempt.username, attempt.failed_stage)
        return SignInResult(state=SignInState.REJECTED)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _check_credentials(self, attempt: SignInAttempt) -> None:
        user = self.identity.find_user_by_name(attempt.username)
        if user is None:
            # Run a throwaway password check so unknown users cost the same time.
            self.identity.verify_password(None, attempt.password)
            self._reject(attempt, "lookup")
            return

        attempt.user = user
        if not self.identity.verify_password(user, attempt.password):
            self._reject(attempt, "password")
            return

        logger.info(
            "User %s password accepted. Email confirmed: %s. Requires two-factor: %s.",
            user.username,
            user.email_confirmed,
            user.two_factor_enabled,
        )
        if user.two_factor_enabled:
            attempt.two_factor_required = True
            attempt.state = SignInState.AWAITING_TWO_FACTOR
        else:
            attempt.state = SignInState.AUTHENTICATED

    def _check_two_factor(self, attempt: SignInAttempt) -> None:
        if self.identity.verify_two_factor_code(attempt.user, attempt.two_factor_code):
            attempt.two_factor_satisfied = True
            attempt.state = SignInState.AUTHENTICATED
        else:
            self._reject(attempt, "two_factor")

    def _authenticated(self, attempt: SignInAttempt) -> SignInResult:
        user = attempt.user
        roles = self.identity.get_roles(user)
        token = self.issuer.issue(user.username, user.email, roles)
        # Two-factor cannot be enabled on an unconfirmed email, so a 2FA login
        # never needs the advisory flag.
        requires_validation = False if attempt.two_factor_satisfied else not user.email_confirmed
        logger.info("User %s authenticated (roles=%s)", user.username, ",".join(roles) or "-")
        return SignInResult(
            state=SignInState.AUTHENTICATED,
            user_id=user.id,
            display_name=user.display_name,
            token=token,
            requires_email_validation=requires_validation,
        )

    @staticmethod
    def _reject(attempt: SignInAttempt, stage: str) -> None:
        attempt.state = SignInState.REJECTED
        attempt.failed_stage = stage
