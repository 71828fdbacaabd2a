# backend/dealdesk/api/deps.py
from typing import List, Set, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..core.config import SessionLocal
from ..models import User, Role
from ..core.security import decode_access_token

# single Bearer field under Swagger's "Authorize"
auth_scheme = HTTPBearer(auto_error=True)

# ---------------------------
# DB Session Dependency
# ---------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# ---------------------------
# Current User DTO
# ---------------------------
class CurrentUser:
    def __init__(self, id: int, organization_id: Optional[int], email: str, role_name: str):
        self.id = id
        self.organization_id = organization_id
        self.email = email
        self.role_name = role_name

# ---------------------------
# AuthN: Token → CurrentUser
# ---------------------------
async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    db: Session = Depends(get_db),
) -> CurrentUser:
    token = credentials.credentials
    try:
        claims = decode_access_token(token)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = (
        db.query(User)
        .filter(
            User.id == claims.user_id,
            User.organization_id == claims.organization_id,
            User.is_active.is_(True),
        )
        .first()
    )
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # fall back to the stored role when the token carries none
    role_name = claims.role_name or user.role_name or ""

    return CurrentUser(id=user.id, organization_id=user.organization_id, email=user.email, role_name=role_name)

# ---------------------------
# AuthZ: Permission Check
# ---------------------------

# Role defaults (applied even when the DB row is empty)
DEFAULT_ROLE_PERMS = {
    "admin": {"*"},
    "member": {
        "deals:close",
        "contracts:read",
    },
}

def _resolve_permissions(db_perms_raw: Optional[str], role_name: str) -> Set[str]:
    """
    Parses the comma separated permissions stored on the role and merges
    them with DEFAULT_ROLE_PERMS.
    """
    perms: Set[str] = set()
    if db_perms_raw:
        perms |= {p.strip() for p in db_perms_raw.split(",") if p.strip()}
    perms |= DEFAULT_ROLE_PERMS.get(role_name or "", set())
    return perms

def _perm_allows(perms: Set[str], needed: str) -> bool:
    """
    Matching rules:
      - exact: needed ∈ perms
      - global wildcard: "*" ∈ perms
      - resource wildcard: "resource:*" ∈ perms  ↔  "resource:action" needed
    """
    if needed in perms or "*" in perms:
        return True
    if ":" in needed:
        resource, _ = needed.split(":", 1)
        return f"{resource}:*" in perms
    return False

def require_permissions(required: List[str]):
    """
    Usage:
      dependencies=[Depends(require_permissions(["deals:close"]))]

    Any one of the required permissions is enough.
    """
    required_set: Set[str] = set(required)

    def checker(
        current: CurrentUser = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> CurrentUser:
        role = (
            db.query(Role)
            .filter(Role.organization_id == current.organization_id, Role.name == current.role_name)
            .first()
        )

        role_name = role.name if role else current.role_name
        perms = _resolve_permissions(role.permissions if role else None, role_name)

        if role_name == "admin" or "*" in perms:
            return current

        if any(_perm_allows(perms, r) for r in required_set):
            return current

        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permission denied")

    return checker
