from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import os
from models import Identity, User, UserRole

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return encoded_jwt

def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except JWTError:
        return None

def create_user_token(user: User) -> str:
    """Token carrying the identity triple (sub, email, role)."""
    return create_access_token({
        "sub": user.user_id,
        "email": user.email,
        "role": user.role.value,
    })

def identity_from_payload(payload: Optional[Dict]) -> Optional[Identity]:
    """Build an Identity from decoded claims; None when claims are incomplete."""
    if not payload or not payload.get("sub") or not payload.get("email"):
        return None
    try:
        role = UserRole(payload.get("role", UserRole.USER.value))
    except ValueError:
        role = UserRole.USER
    return Identity(owner_id=payload["sub"], email=payload["email"], role=role)
