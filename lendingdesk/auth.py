"""Password hashing and JWT issuing/verification.

Access and refresh tokens are signed with separate secrets and carry the
user id in ``sub``. Expiry is checked against the clock handed to
``TokenService`` so callers can control time explicitly.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import bcrypt
import jwt

from .config import Settings
from .exceptions import AccessTokenError, RefreshTokenError

ACCESS = "access"
REFRESH = "refresh"
SALT_ROUNDS = 10


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(SALT_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Principal:
    user_id: str


class TokenExpired(Exception):
    pass


class TokenInvalid(Exception):
    pass


class TokenService:
    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utc_clock):
        self.settings = settings
        self.clock = clock

    def _secret(self, token_type: str) -> str:
        if token_type == ACCESS:
            return self.settings.access_token_secret
        return self.settings.refresh_token_secret

    def _issue(self, user_id: str, token_type: str, ttl_seconds: int) -> str:
        issued_at = self.clock()
        payload = {
            "sub": user_id,
            "type": token_type,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + timedelta(seconds=ttl_seconds)).timestamp()),
        }
        return jwt.encode(
            payload, self._secret(token_type), algorithm=self.settings.jwt_algorithm
        )

    def create_access_token(self, user_id: str) -> str:
        return self._issue(user_id, ACCESS, self.settings.access_token_ttl_seconds)

    def create_refresh_token(self, user_id: str) -> str:
        return self._issue(user_id, REFRESH, self.settings.refresh_token_ttl_seconds)

    def _decode(self, token: str, token_type: str) -> dict:
        try:
            payload = jwt.decode(
                token,
                self._secret(token_type),
                algorithms=[self.settings.jwt_algorithm],
                options={
                    "require": ["sub", "exp"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as e:
            raise TokenInvalid(str(e)) from e

        if payload.get("type") != token_type:
            raise TokenInvalid(f"expected a {token_type} token")
        if payload["exp"] <= self.clock().timestamp():
            raise TokenExpired()
        return payload

    def verify_access_token(self, token: Optional[str]) -> Principal:
        if not token:
            raise AccessTokenError("Access token not found")
        try:
            payload = self._decode(token, ACCESS)
        except TokenExpired:
            raise AccessTokenError("Access token expired!")
        except TokenInvalid:
            raise AccessTokenError("Invalid access token")
        return Principal(user_id=payload["sub"])

    def verify_refresh_token(self, token: Optional[str]) -> Principal:
        if not token:
            raise RefreshTokenError("Refresh token missing")
        try:
            payload = self._decode(token, REFRESH)
        except TokenExpired:
            raise RefreshTokenError("Refresh token expired")
        except TokenInvalid:
            raise RefreshTokenError("Invalid refresh token")
        return Principal(user_id=payload["sub"])
