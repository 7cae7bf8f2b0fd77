from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, status
from itsdangerous import BadSignature
from pydantic import BaseModel
from sqlmodel import Session

from .db import get_session
from .lifecycle import Actor, ActorType
from .models import User
from .utils import read_token


class OperatorContext(BaseModel):
    tenant_id: int
    user_id: int

    @property
    def actor(self) -> Actor:
        return Actor(ActorType.operator, id=self.user_id)


def resolve_operator(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
) -> OperatorContext:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    try:
        data = read_token(candidate)
        context = OperatorContext(tenant_id=int(data["tenant_id"]), user_id=int(data["user_id"]))
    except (BadSignature, KeyError, TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token")
    user = session.get(User, context.user_id)
    if not user or user.tenant_id != context.tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token")
    return context
