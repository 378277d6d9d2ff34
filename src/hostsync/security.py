from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status


async def require_agent_token(
    request: Request,
    x_agent_token: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    expected = request.app.state.ctx.settings.agent_auth_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Agent token is not configured")

    token = x_agent_token.strip() if x_agent_token else None
    if not token and authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip() or None

    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing agent token")
    if not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid agent token")
