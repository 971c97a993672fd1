import logging
import os

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from kb_api.infrastructure.security import auth as security
from kb_api.interfaces.api.schemas import UserPublic

router = APIRouter()
bearer_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger("auth")

KB_ADMIN_ROLES = {
    role.strip()
    for role in os.environ.get("KB_ADMIN_ROLES", "admin,super_admin").split(",")
    if role.strip()
}


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> UserPublic:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token required."
        )

    payload = security.decode_token(credentials.credentials, expected_type="access")
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token."
        )

    return UserPublic(
        user_id=str(payload["sub"]),
        email=payload.get("email"),
        role=payload.get("role") or "user",
    )


def require_admin(current_user: UserPublic = Depends(get_current_user)) -> UserPublic:
    if current_user.role not in KB_ADMIN_ROLES:
        logger.warning("User %s (%s) denied knowledge-base admin access", current_user.user_id, current_user.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Knowledge-base management requires an admin role.",
        )
    return current_user


@router.get("/auth/me", response_model=UserPublic)
def me(current_user: UserPublic = Depends(get_current_user)) -> UserPublic:
    return current_user
