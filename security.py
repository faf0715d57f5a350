from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext

import roles
from config import JWT_SECRET, JWT_EXPIRES_MIN, is_org_email
from database import db, ensure_db, oid, utcnow
from errors import AuthenticationError, AuthorizationError, ValidationError

# Use pbkdf2_sha256 to avoid bcrypt build/runtime issues
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
auth_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_token(sub: str, role: str, email: str) -> str:
    now = utcnow()
    payload = {
        "sub": sub,
        "email": email,
        "role": role,
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.PyJWTError:
        raise AuthenticationError("Invalid token")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme)) -> dict:
    if credentials is None:
        raise AuthenticationError("Please sign in to continue")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    ensure_db()
    try:
        _id = oid(user_id)
    except ValidationError:
        raise AuthenticationError("Invalid token")
    user = db["user"].find_one({"_id": _id})
    if not user:
        raise AuthenticationError("User not found")
    return user


def require_admin(current: dict = Depends(get_current_user)) -> dict:
    if not roles.is_admin(current.get("email"), current):
        raise AuthorizationError("Admin access required")
    return current


def require_org_admin(current: dict = Depends(require_admin)) -> dict:
    # User management is reserved to admins on the organization's own domain
    if not is_org_email(current.get("email", "")):
        raise AuthorizationError("User management is restricted to organization administrators")
    return current
