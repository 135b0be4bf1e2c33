from __future__ import annotations

import base64
import hashlib
import json
import time
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
import requests
from fastapi.testclient import TestClient

from gatehouse.api.server import create_app
from gatehouse.auth.oidc import (
    ProviderProfile,
    build_authorize_url,
    pkce_challenge,
    profile_from_tokens,
    random_token,
    sanitize_next_path,
    validate_id_token,
)

_DISCOVERY = {
    "issuer": "https://accounts.example.com",
    "authorization_endpoint": "https://accounts.example.com/authorize",
    "token_endpoint": "https://accounts.example.com/token",
    "jwks_uri": "https://accounts.example.com/jwks",
}


@pytest.fixture
def discovery():
    with patch("gatehouse.auth.oidc._get_discovery", return_value=_DISCOVERY) as m:
        yield m


@pytest.fixture
def client(store, oidc_config) -> TestClient:
    return TestClient(create_app(store=store, auth_config=oidc_config), follow_redirects=False)


def _start_login(c: TestClient, next_path: str = "/account") -> dict:
    r = c.get("/api/auth/login/oidc", params={"next": next_path})
    assert r.status_code == 302
    return {k: c.cookies.get(k) for k in ("gatehouse_oauth_state", "gatehouse_oauth_nonce", "gatehouse_oauth_verifier")}


def _finish_login(c: TestClient, state: str, *, sub: str = "sub-123", access_token: str = "at-1"):
    tokens = {"id_token": "header.payload.sig", "access_token": access_token}
    claims = {"sub": sub, "name": "Alice Example", "preferred_username": "alice"}
    with patch("gatehouse.auth.oidc.exchange_code_for_tokens", return_value=tokens) as ex, patch(
        "gatehouse.auth.oidc.validate_id_token", return_value=claims
    ) as val:
        r = c.get("/api/auth/callback/oidc", params={"code": "the-code", "state": state})
    return r, ex, val


def test_pkce_and_tokens() -> None:
    verifier = random_token(32)
    assert len(verifier) >= 43
    assert "=" not in verifier
    assert random_token(32) != verifier

    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    expected = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    assert pkce_challenge(verifier) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, "/"),
        ("", "/"),
        ("/account", "/account"),
        ("https://evil.example", "/"),
        ("//evil.example", "/"),
        ("/\\evil.example", "/"),
        ("/a\r\nSet-Cookie: x=1", "/aSet-Cookie: x=1"),
    ],
)
def test_sanitize_next_path(raw, expected) -> None:
    assert sanitize_next_path(raw) == expected


def test_profile_from_tokens() -> None:
    profile = profile_from_tokens({"access_token": "at"}, {"sub": "s1", "nickname": "ally"})
    assert profile == ProviderProfile(provider_id="s1", token="at", display_name="ally", username="ally")

    with pytest.raises(ValueError):
        profile_from_tokens({"access_token": "at"}, {"name": "No Subject"})
    with pytest.raises(ValueError):
        profile_from_tokens({}, {"sub": "s1"})


def test_build_authorize_url(oidc_config, discovery) -> None:
    url = build_authorize_url(
        oidc_config, redirect_uri="http://testserver/api/auth/callback/oidc", state="st", nonce="nn", code_challenge="cc"
    )
    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == _DISCOVERY["authorization_endpoint"]
    q = parse_qs(parsed.query)
    assert q["client_id"] == ["test-client-id"]
    assert q["state"] == ["st"]
    assert q["nonce"] == ["nn"]
    assert q["code_challenge"] == ["cc"]
    assert q["code_challenge_method"] == ["S256"]
    assert q["response_type"] == ["code"]


def test_oidc_login_disabled_without_provider(store, auth_config) -> None:
    c = TestClient(create_app(store=store, auth_config=auth_config), follow_redirects=False)
    assert c.get("/api/auth/login/oidc").status_code == 403
    assert c.get("/api/auth/callback/oidc", params={"code": "c", "state": "s"}).status_code == 403


def test_oidc_login_redirects_with_pkce_cookies(client, discovery) -> None:
    r = client.get("/api/auth/login/oidc", params={"next": "https://evil.example"})

    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith(_DISCOVERY["authorization_endpoint"])
    q = parse_qs(urlparse(location).query)
    assert q["redirect_uri"] == ["http://testserver/api/auth/callback/oidc"]

    state = client.cookies.get("gatehouse_oauth_state")
    verifier = client.cookies.get("gatehouse_oauth_verifier")
    assert q["state"] == [state]
    assert q["code_challenge"] == [pkce_challenge(verifier)]

    # The off-site `next` was replaced by "/", which is where the callback lands.
    r, _, _ = _finish_login(client, state)
    assert r.status_code == 302
    assert r.headers["location"] == "/"


def test_oidc_callback_creates_user_then_reuses_it(client, store, discovery) -> None:
    cookies = _start_login(client)

    r, ex, val = _finish_login(client, cookies["gatehouse_oauth_state"])

    assert r.status_code == 302
    assert r.headers["location"] == "/account"
    assert ex.call_args.kwargs["code"] == "the-code"
    assert ex.call_args.kwargs["code_verifier"] == cookies["gatehouse_oauth_verifier"]
    assert val.call_args.kwargs["expected_nonce"] == cookies["gatehouse_oauth_nonce"]
    assert len(store) == 1
    user = store.users()[0]
    assert user.third_party.provider_id == "sub-123"
    assert user.third_party.token == "at-1"
    assert user.third_party.display_name == "Alice Example"

    me = client.get("/api/auth/me").json()["user"]
    assert me == {"id": user.id, "provider": "oidc", "username": "alice", "displayName": "Alice Example"}

    # Second login for the same subject: same user, token not refreshed.
    client.cookies.clear()
    cookies = _start_login(client)
    r, _, _ = _finish_login(client, cookies["gatehouse_oauth_state"], access_token="at-2")
    assert r.status_code == 302
    assert len(store) == 1
    assert store.users()[0].third_party.token == "at-1"


def test_oidc_callback_rejects_state_mismatch(client, store, discovery) -> None:
    _start_login(client)

    r, ex, _ = _finish_login(client, "forged-state")

    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid OAuth state"
    ex.assert_not_called()
    assert len(store) == 0


def test_oidc_callback_provider_denial_is_400(client, store, discovery) -> None:
    cookies = _start_login(client)
    state = cookies["gatehouse_oauth_state"]

    with patch("gatehouse.auth.oidc.exchange_code_for_tokens") as ex:
        denied = client.get("/api/auth/callback/oidc", params={"error": "access_denied", "state": state})
        missing = client.get("/api/auth/callback/oidc", params={"state": state})

    for r in (denied, missing):
        assert r.status_code == 400
        assert r.json()["detail"] == "OIDC login failed"
    ex.assert_not_called()
    assert len(store) == 0


def test_oidc_callback_maps_provider_errors(client, store, discovery) -> None:
    cookies = _start_login(client)
    state = cookies["gatehouse_oauth_state"]

    with patch("gatehouse.auth.oidc.exchange_code_for_tokens", side_effect=ValueError("Token exchange failed")):
        r = client.get("/api/auth/callback/oidc", params={"code": "c", "state": state})
    assert r.status_code == 400

    with patch("gatehouse.auth.oidc.exchange_code_for_tokens", side_effect=requests.ConnectionError("down")):
        r = client.get("/api/auth/callback/oidc", params={"code": "c", "state": state})
    assert r.status_code == 502
    assert len(store) == 0


@pytest.fixture(scope="module")
def signing_key():
    from cryptography.hazmat.primitives.asymmetric import rsa

    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _id_token(key, **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": _DISCOVERY["issuer"],
        "aud": "test-client-id",
        "sub": "sub-123",
        "iat": now,
        "exp": now + 300,
        "nonce": "n-1",
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": "k1"})


def test_validate_id_token(oidc_config, discovery, signing_key) -> None:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk["kid"] = "k1"

    with patch("gatehouse.auth.oidc._get_jwks", return_value={"keys": [jwk]}):
        claims = validate_id_token(oidc_config, id_token=_id_token(signing_key), expected_nonce="n-1")
        assert claims["sub"] == "sub-123"

        with pytest.raises(ValueError, match="Nonce"):
            validate_id_token(oidc_config, id_token=_id_token(signing_key), expected_nonce="other")
        with pytest.raises(ValueError):
            validate_id_token(oidc_config, id_token=_id_token(signing_key, aud="someone-else"), expected_nonce="n-1")
        with pytest.raises(ValueError):
            validate_id_token(oidc_config, id_token=_id_token(signing_key, exp=int(time.time()) - 60), expected_nonce="n-1")
        with pytest.raises(ValueError):
            validate_id_token(oidc_config, id_token="not-a-jwt", expected_nonce="n-1")
