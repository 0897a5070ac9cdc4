"""
auth/current_token.py -- Per-request view of the token blacklist.

CurrentTokenResolver binds a TokenBlacklist to the bearer token of one
inbound request. The blacklist middleware uses it to reject revoked tokens
and the logout route uses it to revoke the caller's own token.

The token is the last whitespace-delimited segment of the Authorization
header ("Bearer abc123" -> "abc123"). A missing or empty header resolves to
"", which the stores never report as blacklisted: a request without a token
was never authenticated, so there is nothing to revoke.
"""

from __future__ import annotations

from collections.abc import Mapping

from auth.blacklist import TokenBlacklist


def extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        return ""
    parts = authorization.split()
    return parts[-1] if parts else ""


class CurrentTokenResolver:
    def __init__(self, headers: Mapping[str, str], blacklist: TokenBlacklist) -> None:
        self._blacklist = blacklist
        self.token = extract_bearer_token(headers.get("Authorization"))

    def is_blacklisted(self) -> bool:
        return self._blacklist.is_blacklisted(self.token)

    def blacklist(self) -> None:
        self._blacklist.blacklist(self.token)
