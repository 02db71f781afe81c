"""JWT verification for tokens issued by the identity service."""

from datetime import datetime, timedelta, timezone

from jose import jwt

from paygate.config import settings

DEFAULT_TOKEN_TTL = timedelta(minutes=30)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create an access token signed with the shared secret.

    The identity service issues tokens in production; this is used by
    operational scripts and tests.

    Args:
        data: Payload data. Must include ``sub`` (user UUID as string).
        expires_delta: Custom expiration duration. Defaults to 30 minutes.

    Returns:
        Encoded JWT string.
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or DEFAULT_TOKEN_TTL)
    to_encode.update({"exp": expire, "iat": now, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jose.JWTError: If the token is invalid, expired, or malformed.
    """
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
