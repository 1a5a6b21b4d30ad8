"""
Bearer token handling

Tokens are issued by the platform's identity service; this service only
verifies them. The subject claim is the caller's organization id.
"""
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt, JWTError
from sqlalchemy.orm import Session

from bloodchain.config import Settings
from bloodchain.models import Organization


def create_access_token(subject: str, settings: Settings, expires_minutes: int = 60) -> str:
    """Sign a token for an organization (used by tooling and tests)"""
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes)
    payload = {"sub": subject, "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def resolve_organization(db: Session, token: Optional[str], settings: Settings) -> Optional[Organization]:
    """Organization named by a valid token, or None"""
    if not token:
        return None
    payload = decode_access_token(token, settings)
    if payload is None or not payload.get("sub"):
        return None
    return db.query(Organization).filter(Organization.id == payload["sub"]).first()
