import types
import sys
from unittest.mock import MagicMock

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from storefront.auth.service import determine_role, get_user_from_token
from storefront.utils.security import COOKIE_NAME, get_current_user, require_admin


def _make_app():
    app = FastAPI()

    @app.get("/me")
    def me(user=Depends(get_current_user)):
        return user

    @app.get("/admin")
    def admin(user=Depends(require_admin)):
        return {"ok": True}

    return app


def _fake_auth(monkeypatch, user):
    fake = types.SimpleNamespace(get_user_from_token=lambda token: user)
    monkeypatch.setitem(sys.modules, "storefront.auth.service", fake)


def test_determine_role():
    assert determine_role({"role": "ADMIN"}) == "admin"
    assert determine_role({"role": "scanner"}) == "user"
    assert determine_role(None) == "user"


def test_get_user_from_token_normalizes_supabase_user(monkeypatch):
    supabase = MagicMock()
    supabase.auth.get_user.return_value = types.SimpleNamespace(
        user=types.SimpleNamespace(id="u1", email="a@b.c", user_metadata={"role": "admin"})
    )
    monkeypatch.setattr("storefront.infra.supabase_client.get_supabase", lambda: supabase)

    principal = get_user_from_token("tok")

    assert principal == {"id": "u1", "email": "a@b.c", "metadata": {"role": "admin"}, "role": "admin", "token": "tok"}
    supabase.auth.get_user.assert_called_once_with("tok")


def test_bearer_then_cookie(monkeypatch):
    _fake_auth(monkeypatch, {"id": "u1", "role": "user"})
    client = TestClient(_make_app())

    assert client.get("/me", headers={"Authorization": "Bearer tok"}).json()["id"] == "u1"
    client.cookies.set(COOKIE_NAME, "cookie-token")
    assert client.get("/me").status_code == 200


def test_missing_token_is_401(monkeypatch):
    _fake_auth(monkeypatch, {"id": "u1"})
    r = TestClient(_make_app()).get("/me")

    assert r.status_code == 401
    assert "Non authentifié" in r.text


def test_unresolvable_token_is_401(monkeypatch):
    def _boom(token):
        raise RuntimeError("jwt expired")

    monkeypatch.setitem(sys.modules, "storefront.auth.service", types.SimpleNamespace(get_user_from_token=_boom))
    r = TestClient(_make_app()).get("/me", headers={"Authorization": "Bearer tok"})

    assert r.status_code == 401
    assert "Session expirée" in r.text


def test_require_admin(monkeypatch):
    client = TestClient(_make_app())

    _fake_auth(monkeypatch, {"id": "u1", "role": "user"})
    assert client.get("/admin", headers={"Authorization": "Bearer tok"}).status_code == 403

    _fake_auth(monkeypatch, {"id": "u1", "role": "admin"})
    assert client.get("/admin", headers={"Authorization": "Bearer tok"}).json() == {"ok": True}
