"""
Access-token verification. Tokens are issued by the main platform; this
service only checks signature, issuer, audience and expiry.
"""

import json
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from jose import JWTError, jwt

JWT_SECRET = os.environ.get("JWT_SECRET")
JWT_PRIVATE_KEY = os.environ.get("JWT_PRIVATE_KEY")
JWT_PRIVATE_KEY_ID = os.environ.get("JWT_PRIVATE_KEY_ID", "current")
JWT_PUBLIC_KEYS_RAW = os.environ.get("JWT_PUBLIC_KEYS")

JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM") or (
    "RS256" if (JWT_PRIVATE_KEY or JWT_PUBLIC_KEYS_RAW) else "HS256"
)
JWT_ISSUER = os.environ.get("JWT_ISSUER", "school-platform-api")
JWT_AUDIENCE = os.environ.get("JWT_AUDIENCE", "school-platform-web")
JWT_EXPIRE_MINUTES = int(os.environ.get("JWT_EXPIRE_MINUTES", "15"))

_PUBLIC_KEYS: Dict[str, str] = {}
if JWT_ALGORITHM.startswith("RS"):
    if JWT_PUBLIC_KEYS_RAW:
        try:
            parsed = json.loads(JWT_PUBLIC_KEYS_RAW)
            if not isinstance(parsed, dict):
                raise ValueError("JWT_PUBLIC_KEYS must be a JSON object mapping kid to public key PEM.")
            _PUBLIC_KEYS = {str(k): v for k, v in parsed.items()}
        except Exception as exc:  # pragma: no cover - parse guard
            raise RuntimeError(f"Failed to parse JWT_PUBLIC_KEYS: {exc}") from exc
    if not _PUBLIC_KEYS and not JWT_PRIVATE_KEY:
        raise RuntimeError("RS256 needs JWT_PUBLIC_KEYS or JWT_PRIVATE_KEY.")
else:
    if not JWT_SECRET:
        raise RuntimeError("JWT_SECRET env var is required for HS256 or provide JWT_PUBLIC_KEYS for RS256.")
    if len(JWT_SECRET) < 32:
        raise RuntimeError("JWT_SECRET must be at least 32 characters for HS256.")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    user_id: str, email: str, role: str, expires_minutes: Optional[int] = None
) -> str:
    """
    Sign an access token with the local key. Used by tooling and tests; the
    platform's auth service issues the real ones.
    """
    now = _utcnow()
    expire = now + timedelta(minutes=expires_minutes or JWT_EXPIRE_MINUTES)
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": expire,
        "jti": secrets.token_hex(16),
        "token_type": "access",
    }
    headers = {}
    key = JWT_SECRET
    if JWT_ALGORITHM.startswith("RS"):
        if not JWT_PRIVATE_KEY:
            raise RuntimeError("JWT_PRIVATE_KEY is required for RS256 signing.")
        headers["kid"] = JWT_PRIVATE_KEY_ID
        key = JWT_PRIVATE_KEY
    return jwt.encode(to_encode, key, algorithm=JWT_ALGORITHM, headers=headers)


def decode_token(token: str, expected_type: str = "access") -> Optional[dict]:
    try:
        key = _resolve_decode_key(token)
        if key is None:
            return None
        payload = jwt.decode(
            token,
            key,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
            options={"require": ["exp", "iat", "sub", "token_type"]},
        )
        if payload.get("token_type") != expected_type:
            return None
        return payload
    except JWTError:
        return None


def _resolve_decode_key(token: str) -> Optional[str]:
    if JWT_ALGORITHM.startswith("RS"):
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return None
        kid = header.get("kid")
        if kid and kid in _PUBLIC_KEYS:
            return _PUBLIC_KEYS[kid]
        if JWT_PRIVATE_KEY and (kid is None or kid == JWT_PRIVATE_KEY_ID):
            return JWT_PRIVATE_KEY
        return None
    return JWT_SECRET
