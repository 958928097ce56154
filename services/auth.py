import os
import logging
from typing import Optional

import jwt
from dotenv import load_dotenv
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models.booking import Caller, CallerRole
from services.errors import Forbidden, Unauthorized

load_dotenv()

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def decode_caller(token: str, secret: Optional[str] = None, algorithm: Optional[str] = None) -> Caller:
    """
    Verify a bearer token and turn its claims into a Caller.

    Tokens are issued elsewhere; only `role` (admin|user) and `email` are read.
    """
    secret = secret or os.getenv("JWT_SECRET")
    algorithm = algorithm or os.getenv("JWT_ALGORITHM", "HS256")
    if not secret:
        logger.error("JWT_SECRET is not configured; rejecting bearer token")
        raise Unauthorized("Authentication is not configured")

    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.info("Rejected bearer token: %s", e)
        raise Unauthorized("Invalid token")

    role = claims.get("role")
    if role not in (CallerRole.ADMIN.value, CallerRole.USER.value):
        raise Unauthorized("Token has no valid role")
    email = claims.get("email")
    return Caller(role=role, email=email.strip().lower() if isinstance(email, str) else None)


async def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Caller:
    """Caller for routes open to guests"""
    if credentials is None:
        return Caller()
    return decode_caller(credentials.credentials)


async def require_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Caller:
    if credentials is None:
        raise Unauthorized("Missing bearer token")
    return decode_caller(credentials.credentials)


async def require_admin(caller: Caller = Depends(require_user)) -> Caller:
    if not caller.is_admin:
        raise Forbidden("Admin access required")
    return caller
