import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User


# Tokens are issued by the practice's identity service; this API only verifies them
http_bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, ttl_seconds: Optional[int] = None) -> str:
    """Sign a short-lived access token for ``user_id`` (used by scripts and tests)."""
    issued = datetime.now(tz=timezone.utc)
    expires = issued + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)
    claims = {
        "sub": str(user_id),
        "type": "access",
        "iat": int(issued.timestamp()),
        "exp": int(expires.timestamp()),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def token_subject(token: str) -> uuid.UUID:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")
    if claims.get("type", "access") != "access":
        raise _unauthorized("Not an access token")
    try:
        return uuid.UUID(str(claims.get("sub")))
    except ValueError:
        raise _unauthorized("Invalid subject")


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise _unauthorized("Not authenticated")
    user = db.query(User).filter(User.id == token_subject(creds.credentials)).first()
    if user is None or not user.is_active:
        raise _unauthorized("User not active")
    return user
