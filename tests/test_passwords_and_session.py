from __future__ import annotations

from dataclasses import replace

from itsdangerous import URLSafeTimedSerializer

from gatehouse.auth.local import hash_password, verify_password
from gatehouse.auth.models import LocalCredentials, User
from gatehouse.auth.session import (
    SESSION_SALT,
    clear_session_cookie_kwargs,
    decode_session,
    encode_session,
    session_cookie_kwargs,
    session_cookie_name,
)


def test_hash_is_salted_and_verifies() -> None:
    h1 = hash_password("secret1", rounds=4)
    h2 = hash_password("secret1", rounds=4)

    assert h1 != "secret1"
    assert h1 != h2
    assert verify_password("secret1", h1)
    assert verify_password("secret1", h2)
    assert not verify_password("secret2", h1)


def test_verify_password_tolerates_bad_hashes() -> None:
    assert verify_password("secret1", "") is False
    assert verify_password("secret1", "not-a-bcrypt-hash") is False


def test_user_valid_password_requires_local_credentials() -> None:
    user = User(local=LocalCredentials(username="alice", password_hash=User.generate_hash("pw", rounds=4)))
    assert user.valid_password("pw")
    assert not user.valid_password("nope")
    assert not User().valid_password("pw")


def test_session_round_trip(auth_config) -> None:
    value = encode_session(auth_config, "user-123")
    assert value
    assert decode_session(auth_config, value) == "user-123"


def test_session_rejects_tampering_and_foreign_secret(auth_config) -> None:
    value = encode_session(auth_config, "user-123")
    assert decode_session(auth_config, value + "x") is None
    assert decode_session(replace(auth_config, session_secret="another-secret"), value) is None
    assert decode_session(auth_config, None) is None
    assert decode_session(auth_config, "") is None


def test_session_without_uid_is_invalid(auth_config) -> None:
    s = URLSafeTimedSerializer(secret_key=auth_config.session_secret, salt=SESSION_SALT)
    assert decode_session(auth_config, s.dumps('{"uid":""}')) is None
    assert decode_session(auth_config, s.dumps("[1, 2]")) is None


def test_session_disabled_without_secret(auth_config) -> None:
    cfg = replace(auth_config, session_secret=None)
    assert encode_session(cfg, "user-123") is None
    assert decode_session(cfg, "anything") is None


def test_cookie_kwargs(auth_config) -> None:
    assert session_cookie_name(auth_config) == "gatehouse_session"
    assert session_cookie_name(replace(auth_config, cookie_secure=True)) == "__Host-gatehouse_session"

    kw = session_cookie_kwargs(auth_config, "v")
    assert kw["httponly"] is True
    assert kw["max_age"] == auth_config.session_ttl_seconds
    assert kw["path"] == "/"

    cleared = clear_session_cookie_kwargs(auth_config)
    assert cleared["value"] == ""
    assert cleared["max_age"] == 0
