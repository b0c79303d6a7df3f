"""
Bearer tokens. The engine does not log anyone in; it only verifies access
tokens minted with the shared secret and reads who is acting from them.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from worklog.settings import get_settings

settings = get_settings()


@dataclass(frozen=True)
class TokenClaims:
    user_id: uuid.UUID
    tenant_id: uuid.UUID


def create_access_token(user_id: uuid.UUID, tenant_id: uuid.UUID) -> str:
    expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(user_id),
        "tenant_id": str(tenant_id),
        "type": "access",
        "iss": settings.JWT_ISSUER,
        "exp": expires,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    payload = jwt.decode(
        token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM], issuer=settings.JWT_ISSUER,
    )
    if payload.get("type") != "access":
        raise JWTError("Wrong token type")
    return payload


def read_access_token(token: str) -> TokenClaims:
    """Raises JWTError for anything that is not a usable access token."""
    payload = decode_access_token(token)
    try:
        return TokenClaims(user_id=uuid.UUID(payload["sub"]), tenant_id=uuid.UUID(payload["tenant_id"]))
    except (KeyError, ValueError) as exc:
        raise JWTError("Malformed token claims") from exc
