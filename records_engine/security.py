from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Header

from records_engine.errors import AuthenticationError
from records_engine.settings import get_settings


@dataclass(slots=True, frozen=True)
class RequestContext:
    owner_id: str
    tenant_id: str

    def slot_key(self, slot: str) -> str:
        return f"{self.tenant_id}:{self.owner_id}:{slot}"


def create_access_token(
    *,
    owner_id: str,
    tenant_id: str,
    expires_delta: timedelta | None = None,
    secret: str | None = None,
) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    payload = {"sub": owner_id, "tenant_id": tenant_id, "exp": expire}
    return jwt.encode(payload, secret or settings.auth_secret, algorithm=settings.auth_algorithm)


def decode_access_token(token: str) -> RequestContext:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.auth_secret, algorithms=[settings.auth_algorithm])
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError() from exc

    owner_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if not owner_id or not tenant_id:
        raise AuthenticationError("Token is missing subject or tenant")
    return RequestContext(owner_id=str(owner_id), tenant_id=str(tenant_id))


def require_request_context(authorization: str | None = Header(default=None)) -> RequestContext:
    if not authorization:
        raise AuthenticationError("Missing bearer token")
    scheme, _, raw_token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not raw_token:
        raise AuthenticationError("Invalid authorization header")
    return decode_access_token(raw_token)


def optional_request_context(authorization: str | None = Header(default=None)) -> RequestContext | None:
    if not authorization:
        return None
    return require_request_context(authorization)
