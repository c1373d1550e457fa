import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from query_agent.core.errors import AuthError
from query_agent.core.security import TenantContext, decode_access_token
from query_agent.core.security_rules import AI_ALLOWED_ROLES
from query_agent.core.settings import settings
from query_agent.services.chat_handler import ChatHandler

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

DEV_BYPASS_PREFIX = "dev-token-bypass"


async def get_tenant_context(token: Annotated[str, Depends(oauth2_scheme)]) -> TenantContext:
    # DEV BYPASS, format: "dev-token-bypass" or "dev-token-bypass:<tenant_id>"
    if settings.auth.allow_dev_bypass and token.startswith(DEV_BYPASS_PREFIX):
        parts = token.split(":", 1)
        tenant_id = parts[1] if len(parts) > 1 and parts[1] else settings.ai.mock_tenant_id
        logger.warning("Dev token bypass used")
        return TenantContext(user_id="dev-user", tenant_id=tenant_id, role="admin")

    try:
        return decode_access_token(token)
    except AuthError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"} if e.status_code == status.HTTP_401_UNAUTHORIZED else None,
        ) from e


async def require_ai_access(
    tenant: Annotated[TenantContext, Depends(get_tenant_context)],
) -> TenantContext:
    if settings.ai.enforce_rbac and (tenant.role or "").lower() not in AI_ALLOWED_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role for AI chat")
    return tenant


def get_chat_handler(request: Request) -> ChatHandler:
    return request.app.state.chat_handler
