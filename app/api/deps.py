from __future__ import annotations

from collections.abc import Callable
from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from app.domain.permissions import Actor, Role, actor_from_claims
from app.infra.auth import decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=True)


def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    try:
        actor = actor_from_claims(decode_access_token(token))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    structlog.contextvars.bind_contextvars(actor_id=actor.id, actor_role=actor.role.value)
    return actor


def require_role(role: Role) -> Callable[[Actor], Actor]:
    def _checker(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {role.value}",
            )
        return actor

    return _checker
