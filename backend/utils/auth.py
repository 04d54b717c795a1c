"""
Authentication utilities

Identity comes from a bearer JWT (HS256) issued by the identity provider:
``sub`` is the user id, ``email`` the address used for checkout.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional
import os

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ai_billing.errors import AuthError
from utils.environment import is_production

security = HTTPBearer(auto_error=False)
JWT_ALGORITHM = "HS256"
DEV_JWT_SECRET = "appforge-dev-secret-change-in-production"


def get_jwt_secret() -> str:
    secret = os.environ.get("JWT_SECRET")
    if secret:
        return secret
    if is_production():
        raise RuntimeError("JWT_SECRET must be set in production")
    return DEV_JWT_SECRET


def create_token(user_id: str, email: Optional[str] = None, expires_in: timedelta = timedelta(days=7)) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "exp": datetime.now(timezone.utc) + expires_in
    }
    return jwt.encode(payload, get_jwt_secret(), algorithm=JWT_ALGORITHM)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    """Verify the bearer token and return {"id", "email"}"""
    if credentials is None or not credentials.credentials:
        raise AuthError()

    try:
        payload = jwt.decode(credentials.credentials, get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token")

    return {"id": user_id, "email": payload.get("email")}
