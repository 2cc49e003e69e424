from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .database import get_db_session
from .models import User, UserRole
from .security import AuthError, decode_access_token


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _bearer_token(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("Invalid auth scheme")
    return token.strip()


def _user_from_token(db: Session, token: str) -> User:
    try:
        claims = decode_access_token(token)
    except AuthError as exc:
        raise _unauthorized(str(exc)) from exc

    user = db.get(User, int(claims["sub"]))
    if user is None or not user.is_active:
        raise _unauthorized("Invalid user")
    return user


def get_current_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db_session),
) -> User:
    if not authorization:
        raise _unauthorized("Missing Authorization header")
    return _user_from_token(db, _bearer_token(authorization))


def get_optional_user(
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db_session),
) -> User | None:
    """Like ``get_current_user`` but anonymous requests resolve to ``None``.

    A header that is present but invalid is still rejected.
    """
    if not authorization:
        return None
    return _user_from_token(db, _bearer_token(authorization))


def require_roles(*allowed_roles: UserRole) -> Callable:
    permitted = {UserRole.SUPER_ADMIN, *allowed_roles}

    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in permitted:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role privileges")
        return current_user

    return dependency
