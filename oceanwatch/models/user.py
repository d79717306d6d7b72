"""
user.py — Pydantic schemas for user-related request / response bodies.

Separation of concerns:
  UserCreate   — what the client sends to register
  UserOut      — what the API returns (never includes hashed_password)
  UserProfile  — minimal identity pushed over the realtime channel
  UserInDB     — internal representation stored in MongoDB
  Token        — JWT response from /auth/login and /auth/register
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["citizen", "analyst", "admin"]

# Roles allowed to triage reports and read dashboard aggregates
STAFF_ROLES: tuple[str, ...] = ("analyst", "admin")


# ── User ──────────────────────────────────────────────────────────────────────

class UserCreate(BaseModel):
    """Payload for POST /auth/register."""
    name: str = Field(min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(min_length=6, max_length=128)
    role: Role = "citizen"


class UserProfile(BaseModel):
    """Identity carried by an authenticated realtime connection."""
    id: str
    name: str
    email: EmailStr
    role: Role


class UserOut(UserProfile):
    """Safe user representation — no secrets."""
    created_at: datetime


class UserInDB(BaseModel):
    """Full document as stored in MongoDB (includes hashed_password)."""
    id: Optional[str] = None
    name: str
    email: EmailStr
    hashed_password: str
    role: Role = "citizen"
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    is_active: bool = True


class RoleUpdate(BaseModel):
    """Payload for PATCH /users/{user_id}/role."""
    role: Role


# ── Auth tokens ───────────────────────────────────────────────────────────────

class Token(BaseModel):
    """Response body for successful login / register / refresh."""
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class LoginRequest(BaseModel):
    """Payload for POST /auth/login."""
    email: EmailStr
    password: str
