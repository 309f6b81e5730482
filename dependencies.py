from fastapi.security import OAuth2PasswordBearer
from fastapi import Depends, HTTPException, status, APIRouter
from sqlalchemy.orm import Session
from db import get_db
from models import User, UserRole
from auth import decode_access_token
from schemas import UserOut
import logging

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    """
    Validate JWT token and return the active user it was issued to.

    The role claim must still match the stored role, so a role change
    invalidates tokens issued before it.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_access_token(token)
    email: str = payload.get("sub")
    role: str = payload.get("role")
    if email is None or role is None:
        logger.warning("Invalid token payload: missing sub or role")
        raise credentials_exception

    user = db.query(User).filter(User.email == email).first()
    if user is None or not user.is_active:
        logger.warning(f"User not found or inactive: {email}")
        raise credentials_exception

    if user.role != role:
        logger.warning(f"Role mismatch for user {email}: token={role}, db={user.role}")
        raise credentials_exception

    return user


class RoleChecker:
    def __init__(self, allowed_roles):
        self.allowed_roles = {UserRole(r).value for r in allowed_roles}

    def __call__(self, user: User = Depends(get_current_user)):
        if user.role not in self.allowed_roles:
            logger.warning(f"Unauthorized access attempt: {user.email} tried to access role={self.allowed_roles}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted",
            )
        return True


allow_manager = RoleChecker([UserRole.MANAGER, UserRole.ADMIN])

router = APIRouter()


@router.get("/users/me", response_model=UserOut)
def read_users_me(current_user: User = Depends(get_current_user)):
    """Get current user's profile"""
    return current_user
