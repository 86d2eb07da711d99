from typing import Optional
from fastapi import Header, HTTPException, Query, status
from pydantic import BaseModel

from .config import ADMIN_ACCESS_TOKEN
from .utils import tokens_equal


class AccessContext(BaseModel):
    role: str


def require_admin_access(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
) -> AccessContext:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    if ADMIN_ACCESS_TOKEN and tokens_equal(candidate, ADMIN_ACCESS_TOKEN):
        return AccessContext(role="admin")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")
