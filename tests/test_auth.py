import uuid

import pytest
from jose import JWTError, jwt

from worklog.core.auth.security import create_access_token, decode_access_token, read_access_token
from worklog.settings import get_settings


def test_access_token_roundtrip():
    user_id, tenant_id = uuid.uuid4(), uuid.uuid4()
    token = create_access_token(user_id, tenant_id)
    payload = decode_access_token(token)
    assert payload["sub"] == str(user_id)
    assert payload["tenant_id"] == str(tenant_id)


def test_refresh_token_is_not_an_access_token():
    settings = get_settings()
    claims = {"sub": str(uuid.uuid4()), "type": "refresh", "iss": settings.JWT_ISSUER}
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(JWTError):
        decode_access_token(token)


def test_tampered_token_is_rejected():
    token = create_access_token(uuid.uuid4(), uuid.uuid4())
    with pytest.raises(JWTError):
        decode_access_token(token[:-4] + "abcd")


def test_claims_are_parsed_into_ids():
    user_id, tenant_id = uuid.uuid4(), uuid.uuid4()
    claims = read_access_token(create_access_token(user_id, tenant_id))
    assert claims.user_id == user_id
    assert claims.tenant_id == tenant_id


def test_foreign_issuer_is_rejected():
    settings = get_settings()
    claims = {"sub": str(uuid.uuid4()), "tenant_id": str(uuid.uuid4()), "type": "access", "iss": "someone-else"}
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(JWTError):
        read_access_token(token)
