from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi.security import HTTPBearer
from pydantic import BaseModel
from enum import Enum
from functools import wraps

from .config import settings
from .errors import AuthorizationError

# JWT Security
security = HTTPBearer(auto_error=False)

class UserRole(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"
    STAFF = "staff"
    MANAGER = "manager"

# Roles allowed to act on behalf of a patient
PRIVILEGED_ROLES = (UserRole.STAFF, UserRole.ADMIN)

class TokenPayload(BaseModel):
    sub: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    exp: Optional[int] = None
    token_type: Optional[str] = None  # only "access" tokens are accepted

# JWT utilities
def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token.

    Token issuance belongs to the identity service; this helper exists for
    trusted issuers sharing the signing key and for tests.
    """
    to_encode = data.copy()

    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode.update({
        "exp": expire,
        "token_type": "access"
    })

    encoded_jwt = jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )
    return encoded_jwt

def verify_token(token: str) -> Optional[TokenPayload]:
    """Verify and decode JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )

        return TokenPayload(**payload)

    except JWTError:
        return None

# Role-based access control
def require_roles(*allowed_roles: UserRole):
    """Declare the roles allowed to run a core command.

    The decorated method must take the acting ``User`` as its first argument
    after ``self``; the role is checked before the command body runs.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(self, actor, *args, **kwargs):
            if actor is None or actor.role not in allowed_roles:
                raise AuthorizationError(
                    f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
                )
            return func(self, actor, *args, **kwargs)
        wrapper.required_roles = allowed_roles
        return wrapper
    return decorator
