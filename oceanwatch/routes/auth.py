"""
auth.py — Authentication routes and role dependencies.

Routes:
  POST /auth/register  — create new account (rate-limited)
  POST /auth/login     — exchange credentials for JWT (rate-limited)
  GET  /auth/me        — return current user (requires valid JWT)
  POST /auth/refresh   — issue a fresh JWT for the current user

Dependencies re-exported for other routers:
  CurrentUser  — any authenticated user
  StaffUser    — analyst or admin
  AdminUser    — admin only

MongoDB operations use Motor's async driver via the get_db() dependency.
Passwords are hashed with bcrypt; tokens are HS256 JWTs.

All errors use HTTPException so FastAPI serialises them as:
  { "detail": "..." }
"""

from datetime import datetime, timezone
from typing import Annotated, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import DuplicateKeyError

from oceanwatch.core.config import settings
from oceanwatch.core.database import get_db
from oceanwatch.core.rate_limit import limiter
from oceanwatch.core.security import (
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from oceanwatch.models.user import STAFF_ROLES, LoginRequest, Token, UserCreate, UserOut

router = APIRouter(prefix="/auth", tags=["auth"])

# Reusable bearer extractor (does NOT auto-raise on missing token)
_bearer = HTTPBearer(auto_error=False)
CredDep = Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)]


# ── Helpers ───────────────────────────────────────────────────────────────────

def doc_to_user_out(doc: dict) -> UserOut:
    """Convert a raw MongoDB document to a UserOut Pydantic model."""
    return UserOut(
        id=str(doc["_id"]),
        name=doc.get("name", ""),
        email=doc["email"],
        role=doc.get("role", "citizen"),
        created_at=doc.get("created_at", datetime.now(tz=timezone.utc)),
    )


async def find_user(db, user_id: str) -> Optional[UserOut]:
    """Load an active user by id; None for unknown or malformed ids."""
    try:
        oid = ObjectId(user_id)
    except (InvalidId, TypeError):
        return None
    doc = await db["users"].find_one({"_id": oid, "is_active": True})
    return doc_to_user_out(doc) if doc else None


async def _get_current_user(credentials: CredDep, db=Depends(get_db)) -> UserOut:
    """
    FastAPI dependency — extracts and validates the Bearer token,
    then fetches the user from MongoDB.

    Raises 401 if the token is missing, invalid, or the user no longer exists.
    """
    cred_error = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not credentials:
        raise cred_error

    user_id = decode_access_token(credentials.credentials)
    if not user_id:
        raise cred_error

    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")

    user = await find_user(db, user_id)
    if user is None:
        raise cred_error
    return user


CurrentUser = Annotated[UserOut, Depends(_get_current_user)]


def require_roles(*roles: str):
    """Dependency factory: 403 unless the current user has one of *roles*."""

    async def _check(current_user: CurrentUser) -> UserOut:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions (requires one of: {', '.join(roles)})",
            )
        return current_user

    return _check


StaffUser = Annotated[UserOut, Depends(require_roles(*STAFF_ROLES))]
AdminUser = Annotated[UserOut, Depends(require_roles("admin"))]


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post("/register", response_model=Token, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.auth_rate_limit)
async def register(request: Request, payload: UserCreate, db=Depends(get_db)):
    """Register a new user and return a JWT."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")

    conflict = HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="An account with this email already exists",
    )

    existing = await db["users"].find_one({"email": payload.email})
    if existing:
        raise conflict

    now = datetime.now(tz=timezone.utc)
    user_doc = {
        "name": payload.name,
        "email": payload.email,
        "hashed_password": hash_password(payload.password),
        "role": payload.role,
        "created_at": now,
        "updated_at": now,
        "is_active": True,
    }
    try:
        result = await db["users"].insert_one(user_doc)
    except DuplicateKeyError:
        raise conflict
    user_doc["_id"] = result.inserted_id

    user_out = doc_to_user_out(user_doc)
    token = create_access_token(user_out.id, role=user_out.role)
    return Token(access_token=token, user=user_out)


@router.post("/login", response_model=Token)
@limiter.limit(settings.auth_rate_limit)
async def login(request: Request, payload: LoginRequest, db=Depends(get_db)):
    """Authenticate with email + password and return a JWT."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")

    _cred_err = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Incorrect email or password",
        headers={"WWW-Authenticate": "Bearer"},
    )

    doc = await db["users"].find_one({"email": payload.email, "is_active": True})
    if not doc:
        raise _cred_err

    if not verify_password(payload.password, doc["hashed_password"]):
        raise _cred_err

    user_out = doc_to_user_out(doc)
    token = create_access_token(user_out.id, role=user_out.role)
    return Token(access_token=token, user=user_out)


@router.get("/me", response_model=UserOut)
async def me(current_user: CurrentUser):
    """Return the currently authenticated user's profile."""
    return current_user


@router.post("/refresh", response_model=Token)
async def refresh(current_user: CurrentUser):
    """Issue a new token with a fresh expiry."""
    token = create_access_token(current_user.id, role=current_user.role)
    return Token(access_token=token, user=current_user)
