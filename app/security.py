import hashlib
import hmac
import secrets
from datetime import timedelta

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    ALGORITHM,
    SECRET_KEY,
)
from .database import get_db, utcnow
from .models import User, UserRole

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str):
    return pwd_context.hash(password)

def verify_password(password: str, hashed: str):
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)

def is_admin_credentials(email: str, password: str):
    # an empty ADMIN_PASSWORD disables the built-in admin login
    return bool(ADMIN_PASSWORD) and email == ADMIN_EMAIL and password == ADMIN_PASSWORD

def create_access_token(data: dict):
    expire = utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {**data, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def decode_access_token(token: str) -> dict:
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

def token_for_user(user: User):
    return create_access_token({
        "user_id": user.id,
        "email": user.email,
        "role": user.role,
    })


def generate_otp(digits: int = 6):
    return "".join(secrets.choice("0123456789") for _ in range(digits))

def hash_otp(otp: str):
    return hashlib.sha256(otp.encode()).hexdigest()

def verify_otp(plain_otp: str, hashed_otp: str):
    return hmac.compare_digest(hash_otp(plain_otp), hashed_otp)


def _bearer_payload(authorization: str) -> dict:
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    try:
        return decode_access_token(parts[1])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_token_payload(authorization: str = Header(None)):
    return _bearer_payload(authorization)


def get_current_user(authorization: str = Header(None), db: Session = Depends(get_db)):
    """Extract user from JWT token in Authorization header"""
    payload = _bearer_payload(authorization)
    user_id = payload.get("user_id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found")
    return user

def get_current_admin(authorization: str = Header(None)):
    payload = _bearer_payload(authorization)
    role = payload.get("role")
    if role != UserRole.ADMIN.value:
        raise HTTPException(status_code=403, detail="Admin access required")

    return {"email": payload.get("email"), "role": role}

def token_claims(token: str) -> dict:
    """Claims of a valid token, {} for anything else."""
    if not token:
        return {}
    try:
        return decode_access_token(token)
    except JWTError:
        return {}
