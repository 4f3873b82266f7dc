"""
Brand Response API - public, reply-token gated.

Nobody is logged in on these routes; the reply token in the path is the
only credential. Error bodies stay neutral and never echo ids.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from collabdesk.core.client_info import get_request_context
from collabdesk.core.config import settings
from collabdesk.core.dependencies import get_clock, get_dispatcher, get_email_client
from collabdesk.core.errors import CollabDeskError
from collabdesk.core.logging import get_logger
from collabdesk.core.timeutil import Clock
from collabdesk.db.models import SignerRole
from collabdesk.db.session import get_db
from collabdesk.services.brand_response import BrandResponseService, DealViewResponse, DecisionResult
from collabdesk.services.email_client import EmailClient
from collabdesk.services.otp import OtpService
from collabdesk.services.reply_tokens import TokenValidator
from collabdesk.services.signatures import SignatureService, SignatureView, SignBrandRequest
from collabdesk.workers.jobs import JobDispatcher

logger = get_logger(__name__)

router = APIRouter(prefix="/api/brand-response", tags=["Brand Response"])


# ============= SCHEMAS =============

class DecisionRequest(BaseModel):
    status: str
    message: Optional[str] = None
    brand_team_name: Optional[str] = None


class OtpSendRequest(BaseModel):
    email: str


class OtpVerifyRequest(BaseModel):
    otp: str


class BrandSignBody(BaseModel):
    deal_id: Optional[str] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    contract_version_id: Optional[str] = None
    contract_snapshot_html: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None


# ============= ENDPOINTS =============

@router.get("/debug/{token}")
def debug_token(
    token: str,
    db: Session = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
):
    """Development-only token diagnostics."""
    if settings.is_production:
        raise CollabDeskError("Debug endpoint disabled in production", code="FORBIDDEN", status_code=403)
    return BrandResponseService(db, dispatcher, clock).inspect_token(token)


@router.get("/{token}", response_model=DealViewResponse)
def get_brand_response_view(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
):
    """Deal terms and requested changes for the brand."""
    service = BrandResponseService(db, dispatcher, clock)
    return service.get_deal_view(token, get_request_context(request))


@router.post("/{token}", response_model=DecisionResult)
def submit_brand_response(
    token: str,
    body: DecisionRequest,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
):
    """Accept, negotiate or reject. Resubmission is recorded as an updated response."""
    service = BrandResponseService(db, dispatcher, clock)
    return service.submit_decision(
        token,
        body.status,
        message=body.message,
        brand_team_name=body.brand_team_name,
        context=get_request_context(request),
    )


@router.post("/{token}/otp/send")
def send_brand_otp(
    token: str,
    body: OtpSendRequest,
    db: Session = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
    clock: Clock = Depends(get_clock),
):
    check = TokenValidator(db, clock).require_usable(token, action="otp_send")
    otp = OtpService(db, email_client, clock).send(check.deal_id, SignerRole.BRAND, body.email)
    return {"success": True, "message": "OTP sent successfully", "expires_at": otp.expires_at}


@router.post("/{token}/otp/verify")
def verify_brand_otp(
    token: str,
    body: OtpVerifyRequest,
    db: Session = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
    clock: Clock = Depends(get_clock),
):
    check = TokenValidator(db, clock).require_usable(token, action="otp_verify")
    verified_at = OtpService(db, email_client, clock).verify(check.deal_id, SignerRole.BRAND, body.otp)
    return {"success": True, "message": "OTP verified successfully", "verified_at": verified_at}


@router.post("/{token}/sign")
def sign_as_brand(
    token: str,
    body: BrandSignBody,
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    email_client: EmailClient = Depends(get_email_client),
    clock: Clock = Depends(get_clock),
):
    """
    Sign the contract as the brand.

    OTP state is read server-side; the client cannot claim verification.
    """
    check = TokenValidator(db, clock).require_usable(token, action="contract_sign")
    verification = OtpService(db, email_client, clock).latest_verification(check.deal_id, SignerRole.BRAND)
    context = get_request_context(request)

    signature = SignatureService(db, dispatcher, clock).sign_as_brand(
        SignBrandRequest(
            deal_id=body.deal_id or check.deal_id,
            otp_verified=verification is not None,
            otp_verified_at=verification.verified_at if verification else None,
            verified_email=verification.email if verification else None,
            signer_name=body.signer_name,
            signer_email=body.signer_email,
            signer_phone=body.signer_phone,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            device_info=body.device_info,
            contract_version_id=body.contract_version_id,
            contract_snapshot_html=body.contract_snapshot_html,
        ),
        bound_deal_id=check.deal_id,
    )
    return {"success": True, "signature": SignatureView.model_validate(signature)}


@router.get("/{token}/signature")
def get_brand_signature(
    token: str,
    db: Session = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
):
    check = TokenValidator(db, clock).require_usable(token, action="signature_lookup")
    signature = SignatureService(db, dispatcher, clock).get_signature(check.deal_id, SignerRole.BRAND)
    return {
        "success": True,
        "signature": SignatureView.model_validate(signature) if signature else None,
    }
