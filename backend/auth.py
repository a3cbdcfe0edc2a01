"""
Authentication and authorization for the license administration API.

Admins (ADMIN_ROLES) manage licenses and are never locked out by the
license gate; every other account needs a valid license to log in.
"""
import logging
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from config import JWT_SECRET_FILE, ADMIN_ROLES, get_or_create_secret
from models import User, get_db, utcnow

logger = logging.getLogger(__name__)

MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION_MINUTES = 15

SECRET_KEY = get_or_create_secret("JWT_SECRET_KEY", JWT_SECRET_FILE)
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

security = HTTPBearer(auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def token_claims(user: User) -> dict:
    return {"user_id": user.id, "username": user.username, "role": user.role}


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    claims = dict(data, exp=utcnow() + (expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)))
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Claims of a valid token, None for a forged or expired one"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None


def is_admin(user: Optional[User]) -> bool:
    return user is not None and user.role in ADMIN_ROLES


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """The active user behind the bearer token, if any"""
    payload = decode_token(credentials.credentials) if credentials else None
    user_id = payload.get("user_id") if payload else None
    if not user_id:
        return None
    return db.query(User).filter(User.id == user_id, User.is_active == True).first()


def require_auth(user: Optional[User] = Depends(get_current_user)) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未登录或登录已过期",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_admin(user: User = Depends(require_auth)) -> User:
    """License administration is admin-only; anyone else gets 403"""
    if not is_admin(user):
        logger.warning(f"Admin-only action refused for user {user.username} (role={user.role})")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="权限不足")
    return user


# ---------------------------
# Login attempts
# ---------------------------
def lockout_message(user: User) -> Optional[str]:
    """Message for a locked account, None when the account may log in"""
    now = utcnow()
    if not user.locked_until or user.locked_until <= now:
        return None
    minutes = (user.locked_until - now).seconds // 60 + 1
    return f"账户已锁定，请 {minutes} 分钟后重试"


def record_login_attempt(db: Session, user: User, succeeded: bool):
    if succeeded:
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = utcnow()
    else:
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= MAX_LOGIN_ATTEMPTS:
            user.locked_until = utcnow() + timedelta(minutes=LOCKOUT_DURATION_MINUTES)
            logger.warning(f"Account {user.username} locked after {user.failed_login_attempts} failed attempts")
    db.commit()


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
    """
    User for a correct username/password pair, None otherwise.

    Raises 429 while the account is locked; MAX_LOGIN_ATTEMPTS consecutive
    failures lock it for LOCKOUT_DURATION_MINUTES.
    """
    user = db.query(User).filter(User.username == username).first()
    if user is None:
        return None

    message = lockout_message(user)
    if message:
        logger.warning(f"Login attempt on locked account: {username}")
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=message)

    if not verify_password(password, user.password_hash):
        record_login_attempt(db, user, succeeded=False)
        return None
    if not user.is_active:
        return None

    record_login_attempt(db, user, succeeded=True)
    return user


def create_default_admin(db: Session):
    """First start: seed admin/admin so licenses can be issued at all"""
    if db.query(User).count() > 0:
        return
    db.add(User(
        username="admin",
        password_hash=get_password_hash("admin"),
        role="admin",
        full_name="Administrator",
        must_change_password=True,
    ))
    db.commit()
    logger.info("Created default admin user (username: admin, password: admin)")
    logger.warning("*** PLEASE CHANGE THE ADMIN PASSWORD AFTER FIRST LOGIN ***")
