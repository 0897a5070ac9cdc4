"""
tests/test_auth_routes.py -- Integration tests for the auth endpoints and blacklist middleware.

These tests exercise the full stack: FastAPI routing -> middleware -> dependency
injection -> SignInOrchestrator/UserStore -> response serialization.

Fixtures used (from conftest.py):
  - api_client: ApiContext(client, store, blacklist). Seeded users:
      admin / admin      -- id 1, "Administrator", email confirmed, role Admin
      carol / carolpass  -- email NOT confirmed
      tfa   / tfapass    -- two-factor enabled (TOTP secret stored on the user)
"""

from __future__ import annotations

import pyotp

from auth.models import User
from auth.tokens import hash_password


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_admin_login(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/login", json={"username": "admin", "password": "admin"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["userId"] == 1
        assert data["displayName"] == "Administrator"
        assert data["requiresEmailValidation"] is False
        assert data["token"]
        assert resp.headers["Cache-Control"] == "no-store"
        claims = api_client.client.app.state.token_issuer.decode(data["token"])
        assert claims["sub"] == "admin"
        assert claims["role"] == ["Admin"]

    def test_wrong_password_is_401(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/login", json={"username": "admin", "password": "wrong"})
        assert resp.status_code == 401
        assert "token" not in resp.json()

    def test_unknown_user_identical_to_wrong_password(self, api_client) -> None:
        unknown = api_client.client.post("/api/auth/login", json={"username": "ghost", "password": "admin"})
        wrong = api_client.client.post("/api/auth/login", json={"username": "carol", "password": "wrong"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"]["code"] == "unauthorized"

    def test_unconfirmed_email_flag(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/auth/login", json={"username": "carol", "password": "carolpass", "rememberMe": True}
        )
        assert resp.status_code == 200
        assert resp.json()["requiresEmailValidation"] is True

    def test_missing_fields_is_422(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/login", json={"username": "admin"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestTwoFactorLogin:
    def _code(self, api_client) -> str:
        return pyotp.TOTP(api_client.store.get_by_username("tfa").two_factor_secret).now()

    def test_missing_code_is_428(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/login", json={"username": "tfa", "password": "tfapass"})
        assert resp.status_code == 428
        assert resp.json()["error"]["code"] == "two_factor_required"

    def test_wrong_password_with_two_factor_is_401_not_428(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/login", json={"username": "tfa", "password": "wrong"})
        assert resp.status_code == 401

    def test_valid_code_logs_in(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/auth/login",
            json={
                "username": "tfa",
                "password": "tfapass",
                "twoFactorToken": self._code(api_client),
                "twoFactorRememberMachine": True,
            },
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["requiresEmailValidation"] is False

    def test_invalid_code_is_401(self, api_client) -> None:
        bad = "000000" if self._code(api_client) != "000000" else "111111"
        resp = api_client.client.post(
            "/api/auth/login", json={"username": "tfa", "password": "tfapass", "twoFactorToken": bad}
        )
        assert resp.status_code == 401


class TestLogout:
    def test_logout_revokes_token(self, api_client) -> None:
        token = api_client.login()
        assert api_client.client.get("/api/auth/me", headers=_auth(token)).status_code == 200

        resp = api_client.client.post("/api/auth/logout", headers=_auth(token))
        assert resp.status_code == 200
        assert api_client.blacklist.is_blacklisted(token)

        again = api_client.client.get("/api/auth/me", headers=_auth(token))
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "token_revoked"

    def test_revoked_token_rejected_everywhere(self, api_client) -> None:
        token = api_client.login()
        api_client.client.post("/api/auth/logout", headers=_auth(token))
        assert api_client.client.get("/api/test", headers=_auth(token)).status_code == 401
        assert api_client.client.post("/api/auth/logout", headers=_auth(token)).status_code == 401

    def test_other_sessions_survive_logout(self, api_client) -> None:
        first = api_client.login()
        second = api_client.login()
        api_client.client.post("/api/auth/logout", headers=_auth(first))
        assert api_client.client.get("/api/auth/me", headers=_auth(second)).status_code == 200

    def test_logout_requires_auth(self, api_client) -> None:
        resp = api_client.client.post("/api/auth/logout")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_garbage_token_is_401(self, api_client) -> None:
        resp = api_client.client.get("/api/auth/me", headers=_auth("not-a-jwt"))
        assert resp.status_code == 401


class TestMe:
    def test_me(self, api_client) -> None:
        token = api_client.login()
        data = api_client.client.get("/api/auth/me", headers=_auth(token)).json()
        assert data == {
            "userId": 1,
            "username": "admin",
            "displayName": "Administrator",
            "email": "admin@flexflow.test",
            "roles": ["Admin"],
        }


class TestChangePassword:
    def _make_user(self, api_client, username: str) -> str:
        api_client.store.create_user(
            User(
                username=username,
                email=f"{username}@flexflow.test",
                display_name=username.title(),
                hashed_password=hash_password("original"),
                email_confirmed=True,
            )
        )
        return api_client.login(username, "original")

    def test_change_password(self, api_client) -> None:
        token = self._make_user(api_client, "erin")
        resp = api_client.client.post(
            "/api/auth/changepassword",
            json={"oldPassword": "original", "newPassword": "replacement"},
            headers=_auth(token),
        )
        assert resp.status_code == 200, resp.text
        api_client.login("erin", "replacement")
        old = api_client.client.post("/api/auth/login", json={"username": "erin", "password": "original"})
        assert old.status_code == 401

    def test_wrong_old_password_is_400(self, api_client) -> None:
        token = self._make_user(api_client, "frank")
        resp = api_client.client.post(
            "/api/auth/changepassword",
            json={"oldPassword": "guess", "newPassword": "replacement"},
            headers=_auth(token),
        )
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["code"] == "PasswordMismatch"

    def test_policy_violation_is_400(self, api_client) -> None:
        token = self._make_user(api_client, "grace")
        resp = api_client.client.post(
            "/api/auth/changepassword",
            json={"oldPassword": "original", "newPassword": ""},
            headers=_auth(token),
        )
        assert resp.status_code == 400
        assert [e["code"] for e in resp.json()["errors"]] == ["PasswordTooShort"]

    def test_requires_auth(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/auth/changepassword", json={"oldPassword": "admin", "newPassword": "replacement"}
        )
        assert resp.status_code == 401


class TestLockout:
    """Default policy: 5 consecutive failures lock the account for 10 minutes."""

    def _make_user(self, api_client, username: str, two_factor: bool = False) -> str | None:
        api_client.store.create_user(
            User(
                username=username,
                email=f"{username}@flexflow.test",
                display_name=username.title(),
                hashed_password=hash_password("rightpass"),
                email_confirmed=True,
            )
        )
        if two_factor:
            identity = api_client.client.app.state.identity
            return identity.enable_two_factor(identity.find_user_by_name(username))
        return None

    def test_locked_account_looks_like_wrong_password(self, api_client) -> None:
        self._make_user(api_client, "henry")
        for _ in range(5):
            wrong = api_client.client.post("/api/auth/login", json={"username": "henry", "password": "nope"})
            assert wrong.status_code == 401

        locked = api_client.client.post("/api/auth/login", json={"username": "henry", "password": "rightpass"})
        assert locked.status_code == 401
        assert locked.json() == wrong.json()
        assert api_client.store.get_by_username("henry").lockout_end is not None

    def test_wrong_codes_lock_two_factor_account(self, api_client) -> None:
        totp = pyotp.TOTP(self._make_user(api_client, "ivy", two_factor=True))
        wrong = "000000" if totp.now() != "000000" else "111111"
        for _ in range(5):
            resp = api_client.client.post(
                "/api/auth/login", json={"username": "ivy", "password": "rightpass", "twoFactorToken": wrong}
            )
            assert resp.status_code == 401

        resp = api_client.client.post(
            "/api/auth/login", json={"username": "ivy", "password": "rightpass", "twoFactorToken": totp.now()}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
