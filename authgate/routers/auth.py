"""Authentication API endpoints."""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from authgate.database import get_db
from authgate.dependencies import CurrentUser, clear_auth_cookie, client_info, get_current_user, set_auth_cookie
from authgate.errors import ValidationError
from authgate.rate_limit import ACCOUNT, EMAIL, PASSWORD, SIGN_IN, SIGN_UP, rate_limit
from authgate.schemas.auth import (
    ChallengeResponse,
    ChangeEmailRequest,
    ChangePasswordRequest,
    CurrentSessionResponse,
    DeleteUserRequest,
    EmailRequest,
    EmailSignInRequest,
    ResetPasswordRequest,
    RevokeSessionRequest,
    SessionListResponse,
    SessionResponse,
    SignInResponse,
    SignUpRequest,
    SignUpResponse,
    SocialSignInRequest,
    StatusResponse,
    TokenResponse,
    UpdateUsernameRequest,
    UserResponse,
    UsernameSignInRequest,
)
from authgate.services.auth import IdentityService, IssuedSession, SignInResult, get_identity_service

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

RESET_REQUESTED = "If an account exists with that email, a password reset link has been sent."


def token_response(issued: IssuedSession) -> TokenResponse:
    return TokenResponse(
        token=issued.token,
        expires_at=issued.expires_at,
        user=UserResponse.model_validate(issued.user),
    )


def sign_in_response(result: SignInResult, response: Response) -> SignInResponse:
    """Translate a workflow result, setting the session cookie when a session was issued."""
    if result.session is not None:
        set_auth_cookie(response, result.session.token)
        return SignInResponse(status="authenticated", session=token_response(result.session))
    return SignInResponse(
        status="two_factor_required",
        challenge=ChallengeResponse(challenge_id=result.challenge.challenge_id, expires_at=result.challenge.expires_at),
    )


# --- Sign up / sign in ---


@router.post("/sign-up/email", response_model=SignUpResponse, dependencies=[Depends(rate_limit(SIGN_UP))])
def sign_up(
    request: Request,
    body: SignUpRequest,
    response: Response,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> SignUpResponse:
    """Register with email and password. A verification link is emailed."""
    result = service.sign_up(db, body.email, body.password, body.name, body.username, client=client_info(request))
    session = None
    if result.session is not None:
        set_auth_cookie(response, result.session.token)
        session = token_response(result.session)
    return SignUpResponse(user=UserResponse.model_validate(result.user), session=session)


@router.post("/sign-in/email", response_model=SignInResponse, dependencies=[Depends(rate_limit(SIGN_IN))])
def sign_in_email(
    request: Request,
    body: EmailSignInRequest,
    response: Response,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> SignInResponse:
    """Sign in with email and password. May answer with a two-factor challenge instead of a session."""
    result = service.sign_in(db, body.email, body.password, client=client_info(request))
    return sign_in_response(result, response)


@router.post("/sign-in/username", response_model=SignInResponse, dependencies=[Depends(rate_limit(SIGN_IN))])
def sign_in_username(
    request: Request,
    body: UsernameSignInRequest,
    response: Response,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> SignInResponse:
    """Sign in with username and password."""
    if "@" in body.username:
        raise ValidationError.for_field("username", "Use /sign-in/email to sign in with an email address")
    service.plugin("username")  # NotFoundError when usernames are disabled
    result = service.sign_in(db, body.username, body.password, client=client_info(request))
    return sign_in_response(result, response)


@router.post("/sign-in/social", response_model=SignInResponse, dependencies=[Depends(rate_limit(SIGN_IN))])
def sign_in_social(
    request: Request,
    body: SocialSignInRequest,
    response: Response,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> SignInResponse:
    """Sign in or sign up with an authorization code from a federated provider."""
    result = service.sign_in_federated(db, body.provider, body.code, client=client_info(request))
    return sign_in_response(result, response)


@router.post("/sign-out", response_model=StatusResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def sign_out(
    response: Response,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Revoke the current session."""
    service.sign_out(db, current.session)
    clear_auth_cookie(response)
    return StatusResponse(message="Signed out")


# --- Sessions ---


@router.get("/get-session", response_model=CurrentSessionResponse)
def get_session(current: CurrentUser = Depends(get_current_user)) -> CurrentSessionResponse:
    """Return the caller's user and session."""
    return CurrentSessionResponse(
        user=UserResponse.model_validate(current.user),
        session=SessionResponse.model_validate(current.session),
    )


@router.get("/list-sessions", response_model=SessionListResponse)
def list_sessions(
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> SessionListResponse:
    """List the caller's live sessions."""
    sessions = service.list_sessions(db, current.user)
    return SessionListResponse(sessions=[SessionResponse.model_validate(s) for s in sessions])


@router.post("/revoke-session", response_model=StatusResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def revoke_session(
    body: RevokeSessionRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Revoke one of the caller's sessions."""
    service.revoke_session(db, current.user, body.session_id)
    return StatusResponse(message="Session revoked")


# --- Email verification ---


@router.get(
    "/verify-email", response_model=StatusResponse | SignInResponse, dependencies=[Depends(rate_limit(EMAIL))]
)
def verify_email(
    request: Request,
    token: str,
    response: Response,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse | SignInResponse:
    """Consume an email verification link."""
    result = service.verify_email(db, token, client=client_info(request))
    if result is not None:
        return sign_in_response(result, response)
    return StatusResponse(message="Email verified", status="verified")


@router.post("/send-verification-email", response_model=StatusResponse, dependencies=[Depends(rate_limit(EMAIL))])
def send_verification_email(
    body: EmailRequest,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Re-send the verification link."""
    service.send_verification_email(db, body.email)
    return StatusResponse(message="If the email needs verification, a new link has been sent.")


# --- Passwords ---


@router.post("/request-password-reset", response_model=StatusResponse, dependencies=[Depends(rate_limit(PASSWORD))])
def request_password_reset(
    body: EmailRequest,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Request a reset link. The answer is the same whether or not the email is registered."""
    service.request_password_reset(db, body.email)
    return StatusResponse(message=RESET_REQUESTED)


@router.post("/reset-password", response_model=StatusResponse, dependencies=[Depends(rate_limit(PASSWORD))])
def reset_password(
    body: ResetPasswordRequest,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Set a new password from a reset link. Every existing session is signed out."""
    service.reset_password(db, body.token, body.new_password)
    return StatusResponse(message="Password has been reset. Please sign in again.")


@router.post("/change-password", response_model=StatusResponse, dependencies=[Depends(rate_limit(PASSWORD))])
def change_password(
    body: ChangePasswordRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Change the password of the signed-in user."""
    service.change_password(
        db,
        current.user,
        body.current_password,
        body.new_password,
        revoke_other_sessions=body.revoke_other_sessions,
        current_session_id=current.session.id,
    )
    return StatusResponse(message="Password changed")


# --- Email change ---


@router.post("/change-email", response_model=StatusResponse, dependencies=[Depends(rate_limit(EMAIL))])
def change_email(
    body: ChangeEmailRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Change the account email, directly or after the new address is confirmed."""
    status = service.change_email(db, current.user, body.new_email)
    if status == "updated":
        return StatusResponse(message="Email updated", status=status)
    return StatusResponse(message="A confirmation link has been sent to the new email address", status=status)


@router.get("/confirm-email-change", response_model=StatusResponse, dependencies=[Depends(rate_limit(EMAIL))])
def confirm_email_change(
    token: str,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Consume an email-change link and apply the new address."""
    service.confirm_email_change(db, token)
    return StatusResponse(message="Email updated", status="updated")


# --- Username ---


@router.post("/update-username", response_model=UserResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def update_username(
    body: UpdateUsernameRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> UserResponse:
    """Set or change the caller's username."""
    user = service.plugin("username").update_username(db, current.user, body.username)
    return UserResponse.model_validate(user)


# --- Deletion ---


@router.post("/delete-user", response_model=StatusResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def delete_user(
    body: DeleteUserRequest,
    response: Response,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Delete the caller's account, or email a confirmation link first when configured."""
    if body.token:
        service.delete_user(db, current.user, token=body.token)
        status = "deleted"
    else:
        status = service.request_user_deletion(db, current.user)
    if status == "deleted":
        clear_auth_cookie(response)
        return StatusResponse(message="Account deleted", status=status)
    return StatusResponse(message="A confirmation link has been sent to your email", status=status)


@router.get("/delete-user/callback", response_model=StatusResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def delete_user_callback(
    token: str,
    response: Response,
    db: Session = Depends(get_db),
    service: IdentityService = Depends(get_identity_service),
) -> StatusResponse:
    """Consume an account-deletion link."""
    service.delete_user(db, token=token)
    clear_auth_cookie(response)
    return StatusResponse(message="Account deleted", status="deleted")
