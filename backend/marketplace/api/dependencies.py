from fastapi import Depends, HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session
from jose import JWTError, jwt

from ..database import get_db
from ..models.user import User, UserRole
from ..utils.auth import normalize_email
from ..utils.errors import ForbiddenError
from .auth import oauth2_scheme, SECRET_KEY, ALGORITHM


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db.query(User).filter(func.lower(User.email) == normalize_email(email)).first()
    if user is None:
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Inactive user")
    return user


def require_roles(*roles: UserRole):
    """Dependency factory admitting only users holding one of ``roles``.

    Super admins pass every admin gate.
    """

    def _dep(current_user: User = Depends(get_current_user)) -> User:
        role = UserRole(current_user.role)
        if role in roles or (role == UserRole.SUPER_ADMIN and UserRole.ADMIN in roles):
            return current_user
        raise ForbiddenError("Insufficient role for this action")

    return _dep


get_current_client = require_roles(UserRole.CLIENT)
get_current_professional = require_roles(UserRole.PROFESSIONAL)
get_current_admin = require_roles(UserRole.ADMIN, UserRole.SUPER_ADMIN)
