"""
Creator Deals API - authenticated (Bearer JWT, ``sub`` = creator id).

Creators countersign, look up signatures, manage reply links and read the
brand reply audit trail of their own deals.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from collabdesk.core import errors
from collabdesk.core.client_info import get_request_context
from collabdesk.core.config import settings
from collabdesk.core.dependencies import get_clock, get_dispatcher, get_email_client
from collabdesk.core.logging import get_logger
from collabdesk.core.security import get_current_creator_id
from collabdesk.core.timeutil import Clock
from collabdesk.db.models import Deal, SignerRole
from collabdesk.db.session import get_db
from collabdesk.services.audit_trail import AuditTrail
from collabdesk.services.email_client import EmailClient
from collabdesk.services.otp import OtpService
from collabdesk.services.reply_tokens import ReplyTokenService
from collabdesk.services.signatures import SignatureService, SignatureView, SignCreatorRequest
from collabdesk.workers.jobs import JobDispatcher

logger = get_logger(__name__)

router = APIRouter(prefix="/api/deals", tags=["Deals"])


# ============= SCHEMAS =============

class OtpSendRequest(BaseModel):
    email: str


class OtpVerifyRequest(BaseModel):
    otp: str


class CreatorSignBody(BaseModel):
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    contract_version_id: Optional[str] = None
    contract_snapshot_html: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None


class ReplyTokenCreate(BaseModel):
    ttl_days: Optional[int] = Field(default=None, ge=1, le=365)


class ReplyTokenResponse(BaseModel):
    id: str
    deal_id: str
    url: str
    is_active: bool
    expires_at: Optional[datetime]
    revoked_at: Optional[datetime]


class AuditEntryResponse(BaseModel):
    action_type: str
    action_timestamp: datetime
    action_source: str
    decision_version: Optional[int]
    response_status: Optional[str]
    brand_team_name: Optional[str]
    optional_comment: Optional[str]
    ip_address_partial: Optional[str]
    user_agent: Optional[str]

    model_config = ConfigDict(from_attributes=True)


# ============= HELPERS =============

def get_owned_deal(db: Session, deal_id: str, creator_id: str) -> Deal:
    deal = db.get(Deal, deal_id)
    if deal is None:
        raise errors.deal_not_found()
    if deal.creator_id != creator_id:
        raise errors.forbidden()
    return deal


def _token_response(token) -> ReplyTokenResponse:
    return ReplyTokenResponse(
        id=token.id,
        deal_id=token.deal_id,
        url=f"{settings.FRONTEND_URL}/brand-reply/{token.id}",
        is_active=token.is_active,
        expires_at=token.expires_at,
        revoked_at=token.revoked_at,
    )


# ============= SIGNING =============

@router.post("/{deal_id}/otp/send")
def send_creator_otp(
    deal_id: str,
    body: OtpSendRequest,
    creator_id: str = Depends(get_current_creator_id),
    db: Session = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
    clock: Clock = Depends(get_clock),
):
    get_owned_deal(db, deal_id, creator_id)
    otp = OtpService(db, email_client, clock).send(deal_id, SignerRole.CREATOR, body.email)
    return {"success": True, "message": "OTP sent successfully", "expires_at": otp.expires_at}


@router.post("/{deal_id}/otp/verify")
def verify_creator_otp(
    deal_id: str,
    body: OtpVerifyRequest,
    creator_id: str = Depends(get_current_creator_id),
    db: Session = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
    clock: Clock = Depends(get_clock),
):
    get_owned_deal(db, deal_id, creator_id)
    verified_at = OtpService(db, email_client, clock).verify(deal_id, SignerRole.CREATOR, body.otp)
    return {"success": True, "message": "OTP verified successfully", "verified_at": verified_at}


@router.post("/{deal_id}/sign-creator")
def sign_as_creator(
    deal_id: str,
    body: CreatorSignBody,
    request: Request,
    creator_id: str = Depends(get_current_creator_id),
    db: Session = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    email_client: EmailClient = Depends(get_email_client),
    clock: Clock = Depends(get_clock),
):
    """Countersign a contract the brand has already signed."""
    verification = OtpService(db, email_client, clock).latest_verification(deal_id, SignerRole.CREATOR)
    context = get_request_context(request)

    signature = SignatureService(db, dispatcher, clock).sign_as_creator(
        SignCreatorRequest(
            deal_id=deal_id,
            creator_id=creator_id,
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
        )
    )
    return {"success": True, "signature": SignatureView.model_validate(signature)}


@router.get("/{deal_id}/signatures/{role}")
def get_signature(
    deal_id: str,
    role: SignerRole,
    creator_id: str = Depends(get_current_creator_id),
    db: Session = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
):
    get_owned_deal(db, deal_id, creator_id)
    signature = SignatureService(db, dispatcher, clock).get_signature(deal_id, role)
    return {
        "success": True,
        "signature": SignatureView.model_validate(signature) if signature else None,
    }


# ============= REPLY LINKS =============

@router.post("/{deal_id}/reply-tokens", response_model=ReplyTokenResponse)
def issue_reply_token(
    deal_id: str,
    body: ReplyTokenCreate,
    creator_id: str = Depends(get_current_creator_id),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Create a new brand reply link for a deal."""
    get_owned_deal(db, deal_id, creator_id)
    token = ReplyTokenService(db, clock).issue(deal_id, body.ttl_days or settings.REPLY_TOKEN_TTL_DAYS)
    return _token_response(token)


@router.post("/{deal_id}/reply-tokens/{token_id}/revoke", response_model=ReplyTokenResponse)
def revoke_reply_token(
    deal_id: str,
    token_id: str,
    creator_id: str = Depends(get_current_creator_id),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    get_owned_deal(db, deal_id, creator_id)
    token = ReplyTokenService(db, clock).revoke(token_id, deal_id=deal_id)
    return _token_response(token)


@router.get("/{deal_id}/audit-log", response_model=List[AuditEntryResponse])
def get_audit_log(
    deal_id: str,
    creator_id: str = Depends(get_current_creator_id),
    db: Session = Depends(get_db),
):
    """Everything the brand did through reply links, oldest first."""
    get_owned_deal(db, deal_id, creator_id)
    return AuditTrail(db).history(deal_id)
