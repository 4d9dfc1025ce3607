import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from src.tagonlink.config import Settings, get_settings
from src.tagonlink.errors import ApiError

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


@lru_cache
def _pwd_context(rounds: int) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


# PUBLIC_INTERFACE
def hash_password(password: str) -> str:
    """Hash a plaintext password."""
    return _pwd_context(get_settings().bcrypt_rounds).hash(password)


# PUBLIC_INTERFACE
def verify_password(password: str, password_hash: str) -> bool:
    """Verify a plaintext password against a stored hash."""
    try:
        return _pwd_context(get_settings().bcrypt_rounds).verify(password, password_hash)
    except ValueError:
        # Stored value is not a recognizable hash.
        logger.warning("Unrecognized password hash format")
        return False


class TokenCodec:
    """Signs and validates identity tokens carrying a single user id claim."""

    def __init__(self, secret: str, algorithm: str = "HS256", lifetime: timedelta = timedelta(days=7)):
        self.secret = secret
        self.algorithm = algorithm
        self.lifetime = lifetime

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            lifetime=timedelta(minutes=settings.jwt_expires_minutes),
        )

    def issue(self, user_id: int, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (expires_delta if expires_delta is not None else self.lifetime)
        return jwt.encode({"sub": str(user_id), "exp": expire}, self.secret, algorithm=self.algorithm)

    def validate(self, token: str) -> Optional[int]:
        """Return the embedded user id, or None for any kind of invalid token."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
            return int(payload["sub"])
        except (JWTError, KeyError, TypeError, ValueError):
            return None


# PUBLIC_INTERFACE
def get_token_codec() -> TokenCodec:
    """Dependency returning the codec built from process settings."""
    return _codec_for(get_settings())


@lru_cache
def _codec_for(settings: Settings) -> TokenCodec:
    return TokenCodec.from_settings(settings)


# PUBLIC_INTERFACE
def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    codec: TokenCodec = Depends(get_token_codec),
) -> int:
    """Dependency resolving the bearer token to a user id.

    No database lookup happens here; a deleted user's token still resolves.
    """
    if credentials is None or not credentials.credentials:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "No credentials provided.", code="NO_TOKEN")

    user_id = codec.validate(credentials.credentials)
    if user_id is None:
        raise ApiError(status.HTTP_403_FORBIDDEN, "Invalid or expired token.", code="INVALID_TOKEN")
    return user_id
