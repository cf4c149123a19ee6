from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import os

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
IMPERSONATION_MINUTES = 15

def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token. ``sub`` must carry the profile id."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(hours=JWT_EXPIRATION_HOURS)

    to_encode.update({"exp": expire})
    to_encode.setdefault("iat", int(now.timestamp()))
    encoded_jwt = jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return encoded_jwt

def create_impersonation_token(target_user_id: str, actor_id: str) -> Dict:
    """Short-lived token that acts as ``target_user_id``; the actor is kept in the claims."""
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=IMPERSONATION_MINUTES)
    token = create_access_token(
        {"sub": target_user_id, "impersonated_by": actor_id},
        expires_delta=timedelta(minutes=IMPERSONATION_MINUTES),
    )
    return {"token": token, "expiresAt": expires_at.isoformat()}

def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except JWTError:
        return None
