"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from the registry's dataclasses so
the API surface can evolve independently.
"""

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


# ── Auth ─────────────────────────────────────────────────────────────
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    session_id: str
    token_type: str = "bearer"
    user_id: str
    role: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class RefreshTokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    session_id: str
    token_type: str = "bearer"


# ── Sessions ─────────────────────────────────────────────────────────
class SessionOut(BaseModel):
    session_id: str
    user_id: str
    email: str
    role: str
    ip_address: str
    user_agent: str
    created_at: datetime
    last_activity: datetime
    current: bool = False

    model_config = {"from_attributes": True}


class SessionStatsOut(BaseModel):
    total_active_sessions: int
    unique_users: int
    average_sessions_per_user: float
    max_sessions_per_user: int


class SessionsTerminatedResponse(BaseModel):
    detail: str
    session_count: int


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
