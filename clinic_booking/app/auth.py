# auth.py
from inspect import iscoroutinefunction
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from .dependencies import UserRole
import os
import logging

ALGORITHM = "HS256"

# Tokens are issued by the identity service; this one only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


@dataclass(frozen=True)
class Actor:
    ref: str
    role: str

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN.value


def secret_key():
    key = os.getenv("JWT_SECRET_KEY")
    if not key:
        raise RuntimeError("JWT_SECRET_KEY is not set")
    return key


def access_token_expire_minutes():
    return int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))


def create_access_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=access_token_expire_minutes())
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, secret_key(), algorithm=ALGORITHM)
    return encoded_jwt


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, secret_key(), algorithms=[ALGORITHM])
        ref: str = payload.get("sub")
        role: str = payload.get("role")
        if ref is None or role not in {r.value for r in UserRole}:
            raise credentials_exception
    except JWTError as e:
        logging.error(f"JWTError: {str(e)}")
        raise credentials_exception
    return Actor(ref=ref, role=role)


def role_required(required_roles):
    def check(current_actor: Actor):
        if current_actor.role not in required_roles and not current_actor.is_admin:
            raise HTTPException(status_code=403, detail="User does not have the required role")

    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, current_actor: Actor = Depends(get_current_actor), **kwargs):
            check(current_actor)
            return await func(*args, current_actor=current_actor, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, current_actor: Actor = Depends(get_current_actor), **kwargs):
            check(current_actor)
            return func(*args, current_actor=current_actor, **kwargs)

        if iscoroutinefunction(func):
            return async_wrapper
        else:
            return sync_wrapper

    return decorator


def ensure_owner(current_actor: Actor, *refs):
    """Allow the call when the actor is one of ``refs`` (or an admin)."""
    if current_actor.is_admin or current_actor.ref in refs:
        return
    raise HTTPException(status_code=403, detail="Not authorized to access this appointment")
