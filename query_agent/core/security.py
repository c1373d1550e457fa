import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Any, Dict, Union

from jose import jwt, JWTError

from query_agent.core.errors import AuthError
from query_agent.core.settings import settings

# ALGORITHM is pulled from settings to ensure consistency
ALGORITHM = settings.auth.algorithm
ACCESS_TOKEN_EXPIRE_MINUTES = settings.auth.access_token_expire_minutes


@dataclass(frozen=True)
class TenantContext:
    user_id: str
    tenant_id: str
    role: Optional[str] = None


def _signing_key() -> Union[str, bytes]:
    # Secrets shared with other services are base64 encoded
    try:
        return base64.b64decode(settings.auth.secret_key, validate=True)
    except (binascii.Error, ValueError):
        return settings.auth.secret_key


def create_access_token(
    subject: Union[str, Any],
    tenant_id: str,
    role: Optional[str] = "member",
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode: Dict[str, Any] = {"exp": expire, "sub": str(subject), "tenant_id": tenant_id}
    if role:
        to_encode["role"] = role
    return jwt.encode(to_encode, _signing_key(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> TenantContext:
    """Validates the token and returns the caller's tenant context."""
    try:
        payload = jwt.decode(token, _signing_key(), algorithms=[ALGORITHM])
    except JWTError as e:
        raise AuthError("Could not validate credentials") from e

    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if not user_id:
        raise AuthError("Could not validate credentials")
    if not tenant_id:
        raise AuthError("No active organization", status_code=403, code="NO_TENANT")
    return TenantContext(user_id=str(user_id), tenant_id=str(tenant_id), role=payload.get("role"))
