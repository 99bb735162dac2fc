"""
Profiles and the API keys that authenticate them.
A key resolves to its owning profile; that profile owns every link managed with it.
"""

import hashlib
import secrets
from typing import Optional, Tuple

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .database import get_db
from .logging_config import get_logger
from .models import ApiKey, Profile
from .utils import utc_now

logger = get_logger(__name__)

API_KEY_PREFIX = "wrx_"
TIERS = ("free", "pro", "enterprise")


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def validate_api_key(db: Session, key: str) -> Optional[ApiKey]:
    """
    Resolve a plaintext key to its active ApiKey row, stamping last_used_at.
    Unknown or deactivated keys, and keys without the wrx_ prefix, resolve to None.
    """
    key = (key or "").strip()
    if not key.startswith(API_KEY_PREFIX):
        return None

    api_key = (
        db.query(ApiKey)
        .join(ApiKey.owner)
        .filter(ApiKey.key_hash == hash_api_key(key), ApiKey.is_active.is_(True))
        .first()
    )
    if api_key is None:
        return None

    api_key.last_used_at = utc_now()
    db.commit()
    logger.debug(f"Profile {api_key.user_id} authenticated with key {api_key.id}")
    return api_key


def extract_api_key(request: Request) -> Optional[str]:
    """Read the key from X-API-Key or a Bearer Authorization header."""
    header = request.headers.get("X-API-Key") or request.headers.get("Authorization")
    if header and header.startswith("Bearer "):
        header = header[7:]
    return header


def require_api_key(request: Request, db: Session = Depends(get_db)) -> ApiKey:
    api_key = validate_api_key(db, extract_api_key(request) or "")
    if api_key is None:
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected management request from {client}")
        raise HTTPException(
            status_code=401,
            detail="Valid API key required. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"}
        )
    return api_key


def get_current_profile(api_key: ApiKey = Depends(require_api_key)) -> Profile:
    """The profile that owns the authenticated key."""
    return api_key.owner


def create_profile(db: Session, email: str, tier: str = "free") -> Profile:
    if tier not in TIERS:
        raise ValueError(f"Unknown tier: {tier}")
    profile = Profile(email=email.strip().lower(), tier=tier)
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info(f"Created profile {profile.id} ({tier})")
    return profile


def issue_api_key(
    db: Session,
    profile: Profile,
    name: Optional[str] = None,
    rate_limit: int = 1000
) -> Tuple[str, ApiKey]:
    """
    Issue a key for profile. Returns (plaintext, row); only the hash is stored,
    so the plaintext cannot be recovered later.
    """
    plaintext = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
    api_key = ApiKey(
        key_hash=hash_api_key(plaintext),
        name=name,
        user_id=profile.id,
        created_at=utc_now(),
        rate_limit=rate_limit,
        is_active=True
    )
    db.add(api_key)
    db.commit()
    db.refresh(api_key)
    logger.info(f"Issued key {api_key.id} ({name or 'unnamed'}) for profile {profile.id}")
    return plaintext, api_key


def revoke_api_key(db: Session, key_id: int) -> bool:
    api_key = db.get(ApiKey, key_id)
    if api_key is None:
        return False
    api_key.is_active = False
    db.commit()
    logger.info(f"Revoked key {key_id} of profile {api_key.user_id}")
    return True
