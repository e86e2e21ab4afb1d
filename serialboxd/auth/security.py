import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import jwt, JWTError

from serialboxd.config import settings

# bcrypt ignores input past 72 bytes; newer releases reject it outright
BCRYPT_MAX_PASSWORD_BYTES = 72

_DUMMY_HASH: bytes | None = None


class TokenError(Exception):
    pass


class InvalidSignature(TokenError):
    pass


class Expired(TokenError):
    pass


def hash_password(password: str, rounds: int | None = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def burn_password_check(password: str) -> None:
    """Spend a bcrypt round for an unknown account so timing matches a real check."""
    global _DUMMY_HASH
    if _DUMMY_HASH is None:
        _DUMMY_HASH = bcrypt.hashpw(b"serialboxd-dummy", bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS))
    try:
        bcrypt.checkpw(password.encode("utf-8"), _DUMMY_HASH)
    except ValueError:
        pass


def password_too_long(password: str) -> bool:
    return len(password.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """
    Mints and verifies the access/refresh JWT pair.

    Access and refresh tokens are signed with different secrets. Expiry is
    checked here rather than by the JWT library so the boundary is exact:
    a token is expired from its ``exp`` second onwards.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ):
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh tokens must be signed with different secrets")
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock = clock

    @classmethod
    def from_settings(cls, config=settings, **kwargs) -> "TokenIssuer":
        return cls(
            config.ACCESS_TOKEN_SECRET,
            config.REFRESH_TOKEN_SECRET,
            algorithm=config.ALGORITHM,
            access_ttl=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS),
            **kwargs,
        )

    def _encode(self, claims: dict[str, Any], secret: str, ttl: timedelta) -> str:
        issued_at = int(self.clock().timestamp())
        to_encode = {**claims, "iat": issued_at, "exp": issued_at + int(ttl.total_seconds())}
        return jwt.encode(to_encode, secret, algorithm=self.algorithm)

    def issue_access_token(self, user_id: int, username: str) -> str:
        return self._encode(
            {"userId": user_id, "username": username, "type": "access"},
            self.access_secret,
            self.access_ttl,
        )

    def issue_refresh_token(self, user_id: int) -> str:
        return self._encode(
            {"userId": user_id, "type": "refresh", "jti": uuid.uuid4().hex},
            self.refresh_secret,
            self.refresh_ttl,
        )

    def verify(self, token: str, secret: str, *, token_type: str, verify_exp: bool = True) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidSignature("Token signature is invalid") from exc

        user_id = payload.get("userId")
        exp = payload.get("exp")
        if payload.get("type") != token_type or not isinstance(user_id, int) or not isinstance(exp, int):
            raise InvalidSignature("Token claims are malformed")
        if verify_exp and self.clock().timestamp() >= exp:
            raise Expired("Token has expired")
        return payload

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.access_secret, token_type="access")

    def verify_refresh_token(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        return self.verify(token, self.refresh_secret, token_type="refresh", verify_exp=verify_exp)
