"""Shared-secret admin authorization"""
import secrets
from typing import Optional

from fastapi import HTTPException, Request
from starlette.requests import HTTPConnection

from fightcard import state
from fightcard.core.errors import Unauthorized


def extract_token(request: HTTPConnection) -> Optional[str]:
    """Token from ?token=, 'Authorization: Bearer ...' or the x-admin-password header"""
    token = request.query_params.get("token")
    if token:
        return token
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:]
    return request.headers.get("x-admin-password")


def is_admin_token(token: Optional[str]) -> bool:
    if not token or not isinstance(token, str):
        return False
    return secrets.compare_digest(token.encode("utf-8"), state.SETTINGS.admin_token.encode("utf-8"))


def check_admin(token: Optional[str]) -> None:
    """Raise Unauthorized unless the token matches the shared admin secret exactly"""
    if not is_admin_token(token):
        raise Unauthorized("unauthorized")


async def require_admin(request: Request) -> None:
    """FastAPI dependency: reject requests without the admin token"""
    try:
        check_admin(extract_token(request))
    except Unauthorized as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
