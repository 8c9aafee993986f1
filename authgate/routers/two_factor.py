"""Two-factor authentication endpoints."""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from authgate.database import get_db
from authgate.dependencies import CurrentUser, client_info, get_current_user, set_auth_cookie
from authgate.plugins.two_factor import TwoFactorPlugin
from authgate.rate_limit import ACCOUNT, TWO_FACTOR, rate_limit
from authgate.routers.auth import token_response
from authgate.schemas.auth import (
    BackupCodesResponse,
    ChallengeRequest,
    OtpCodeRequest,
    PasswordRequest,
    SignInResponse,
    StatusResponse,
    TotpUriResponse,
    TwoFactorVerifyRequest,
)
from authgate.services.auth import IdentityService, get_identity_service

router = APIRouter(prefix="/api/auth/two-factor", tags=["Two-Factor"])


def get_two_factor(service: IdentityService = Depends(get_identity_service)) -> TwoFactorPlugin:
    return service.plugin("two-factor")  # type: ignore[return-value]


@router.post("/enable", response_model=TotpUriResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def enable(
    body: PasswordRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    two_factor: TwoFactorPlugin = Depends(get_two_factor),
) -> TotpUriResponse:
    """Start 2FA enrollment. Scan the returned URI, then confirm with a code."""
    uri = two_factor.enable(db, current.user, body.password)
    return TotpUriResponse(totp_uri=uri)


@router.post("/confirm", response_model=BackupCodesResponse, dependencies=[Depends(rate_limit(TWO_FACTOR))])
def confirm(
    body: OtpCodeRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    two_factor: TwoFactorPlugin = Depends(get_two_factor),
) -> BackupCodesResponse:
    """Finish enrollment with the first code from the authenticator app. Backup codes are returned once."""
    codes = two_factor.confirm(db, current.user, body.code)
    return BackupCodesResponse(message="Two-factor authentication enabled", status="enabled", backup_codes=codes)


@router.post("/generate-backup-codes", response_model=BackupCodesResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def generate_backup_codes(
    body: PasswordRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    two_factor: TwoFactorPlugin = Depends(get_two_factor),
) -> BackupCodesResponse:
    """Replace the backup codes. The previous set stops working."""
    codes = two_factor.regenerate_backup_codes(db, current.user, body.password)
    return BackupCodesResponse(message="New backup codes generated", backup_codes=codes)


@router.post("/disable", response_model=StatusResponse, dependencies=[Depends(rate_limit(ACCOUNT))])
def disable(
    body: PasswordRequest,
    current: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    two_factor: TwoFactorPlugin = Depends(get_two_factor),
) -> StatusResponse:
    """Turn 2FA off. Requires the account password."""
    two_factor.disable(db, current.user, body.password)
    return StatusResponse(message="Two-factor authentication disabled", status="disabled")


@router.post("/send-otp", response_model=StatusResponse, dependencies=[Depends(rate_limit(TWO_FACTOR))])
def send_otp(
    body: ChallengeRequest,
    db: Session = Depends(get_db),
    two_factor: TwoFactorPlugin = Depends(get_two_factor),
) -> StatusResponse:
    """Email a one-time code for a pending challenge."""
    two_factor.send_otp(db, body.challenge_id)
    return StatusResponse(message="A verification code has been sent to your email")


@router.post("/verify", response_model=SignInResponse, dependencies=[Depends(rate_limit(TWO_FACTOR))])
def verify(
    request: Request,
    body: TwoFactorVerifyRequest,
    response: Response,
    db: Session = Depends(get_db),
    two_factor: TwoFactorPlugin = Depends(get_two_factor),
) -> SignInResponse:
    """Answer a pending challenge with a TOTP or emailed code to receive a session."""
    issued = two_factor.verify(db, body.challenge_id, body.code, client=client_info(request))
    set_auth_cookie(response, issued.token)
    return SignInResponse(status="authenticated", session=token_response(issued))
