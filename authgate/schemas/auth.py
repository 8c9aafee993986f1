"""Pydantic schemas for authentication endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field


class SignUpRequest(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(min_length=1, max_length=256)
    username: str | None = None


class EmailSignInRequest(BaseModel):
    email: EmailStr
    password: str


class UsernameSignInRequest(BaseModel):
    username: str
    password: str


class SocialSignInRequest(BaseModel):
    provider: str
    code: str


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str
    revoke_other_sessions: bool = False


class ChangeEmailRequest(BaseModel):
    new_email: EmailStr


class DeleteUserRequest(BaseModel):
    token: str | None = None


class UpdateUsernameRequest(BaseModel):
    username: str


class RevokeSessionRequest(BaseModel):
    session_id: str


class PasswordRequest(BaseModel):
    password: str


class OtpCodeRequest(BaseModel):
    code: str


class ChallengeRequest(BaseModel):
    challenge_id: str


class TwoFactorVerifyRequest(BaseModel):
    challenge_id: str
    code: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    username: str | None = None
    display_username: str | None = None
    image: str | None = None
    email_verified: bool
    two_factor_enabled: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class SessionResponse(BaseModel):
    id: str
    expires_at: datetime
    created_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    token: str
    expires_at: datetime
    user: UserResponse


class ChallengeResponse(BaseModel):
    challenge_id: str
    expires_at: datetime


class SignInResponse(BaseModel):
    success: bool = True
    status: Literal["authenticated", "two_factor_required"]
    session: TokenResponse | None = None
    challenge: ChallengeResponse | None = None


class SignUpResponse(BaseModel):
    success: bool = True
    user: UserResponse
    session: TokenResponse | None = None


class CurrentSessionResponse(BaseModel):
    success: bool = True
    user: UserResponse
    session: SessionResponse


class SessionListResponse(BaseModel):
    success: bool = True
    sessions: list[SessionResponse]


class StatusResponse(BaseModel):
    success: bool = True
    message: str
    status: str | None = None


class TotpUriResponse(BaseModel):
    success: bool = True
    totp_uri: str


class BackupCodesResponse(BaseModel):
    success: bool = True
    message: str
    status: str | None = None
    backup_codes: list[str]
