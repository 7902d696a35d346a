from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Callable, List, Optional

from ..core.config import settings
from ..core.database import get_db, get_redis
from ..core.errors import AuthenticationError, AuthorizationError, RateLimitError
from ..core.security import security, verify_token, UserRole, TokenPayload
from ..models.user import User
from ..services.payment_authority import PaymentAuthority, get_payment_authority

def get_current_user_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    token_payload = verify_token(credentials.credentials)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    return token_payload

def get_current_user(
    token_payload: TokenPayload = Depends(get_current_user_token),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user from database."""
    try:
        user_id = int(token_payload.sub)
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token payload")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("User account is deactivated")

    return user

# Role-based access control dependencies
def require_role(allowed_roles: List[UserRole]):
    """Create a dependency that requires specific user roles."""
    def role_checker(
        current_user: User = Depends(get_current_user)
    ) -> User:
        if current_user.role not in allowed_roles:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return current_user

    return role_checker

# Rate limiting dependency
def booking_rate_limit(
    current_user: User = Depends(get_current_user),
    redis_client = Depends(get_redis)
) -> None:
    """Limit how many bookings one user can attempt per hour."""
    key = f"rate_limit:booking:{current_user.id}"

    attempts = redis_client.incr(key)
    if attempts == 1:
        redis_client.expire(key, 3600)
    if attempts > settings.BOOKING_RATE_LIMIT_PER_HOUR:
        raise RateLimitError()

# Collaborators, overridable in tests
def get_authority() -> PaymentAuthority:
    return get_payment_authority()

def get_clock() -> Callable[[], datetime]:
    return datetime.now
