from learn.services.auth import (
    RequestContext,
    SessionUser,
    hash_password,
    normalize_role,
    verify_password,
)


def test_hash_password_is_salted_and_verifiable() -> None:
    first = hash_password("correct horse")
    second = hash_password("correct horse")

    assert first != second
    assert first.startswith("pbkdf2_sha256$")
    assert verify_password("correct horse", first)
    assert not verify_password("wrong", first)


def test_verify_password_rejects_malformed_hashes() -> None:
    assert not verify_password("x", None)
    assert not verify_password("x", "plaintext")
    assert not verify_password("x", "md5$1$salt$abc")


def test_session_user_round_trip_and_roles() -> None:
    user = SessionUser(id=3, name="Ada", email="ada@example.com", role="admin")

    restored = SessionUser.from_session(user.to_session())

    assert restored == user
    assert restored.is_admin
    assert SessionUser.from_session({"id": "x"}) is None
    assert SessionUser.from_session(None) is None
    assert normalize_role("ADMIN") == "admin"
    assert normalize_role("owner") == "student"


def test_request_context_authenticated_flag() -> None:
    assert not RequestContext(request_id="r1", user=None).authenticated
    user = SessionUser(id=1, name="A", email="a@example.com", role="student")
    assert RequestContext(request_id="r2", user=user).authenticated
