"""Password hashing and the request-scoped authentication context."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import asdict, dataclass
from typing import Any, Dict, Literal, Mapping, Optional


Role = Literal["admin", "student"]
ROLES = ("admin", "student")

_ALGORITHM = "pbkdf2_sha256"
_ITERATIONS = 260_000


def hash_password(password: str, *, salt: Optional[str] = None, iterations: int = _ITERATIONS) -> str:
    """Return an encoded PBKDF2 hash for *password*."""

    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations
    )
    return f"{_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: Optional[str]) -> bool:
    """Return ``True`` when *password* matches the *encoded* hash."""

    if not encoded:
        return False
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if algorithm != _ALGORITHM:
        return False
    candidate = hash_password(password, salt=salt, iterations=rounds)
    return hmac.compare_digest(candidate.rsplit("$", 1)[1], expected)


def normalize_role(value: Optional[str]) -> Role:
    role = (value or "").strip().lower()
    return role if role in ROLES else "student"  # type: ignore[return-value]


@dataclass(frozen=True)
class SessionUser:
    """The subset of a user row kept in the signed session cookie."""

    id: int
    name: str
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_session(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_session(cls, payload: Any) -> Optional["SessionUser"]:
        if not isinstance(payload, Mapping):
            return None
        try:
            return cls(
                id=int(payload["id"]),
                name=str(payload["name"]),
                email=str(payload["email"]),
                role=normalize_role(payload.get("role")),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class RequestContext:
    """Per-request state handed to route handlers."""

    request_id: Optional[str]
    user: Optional[SessionUser]

    @property
    def authenticated(self) -> bool:
        return self.user is not None


__all__ = [
    "ROLES",
    "RequestContext",
    "Role",
    "SessionUser",
    "hash_password",
    "normalize_role",
    "verify_password",
]
