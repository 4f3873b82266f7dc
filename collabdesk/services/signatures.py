"""
Signature Service.

One signature per (deal, signer role); each role moves UNSIGNED -> SIGNED
exactly once. The brand signs first, the creator countersigns.

Hard rejections (checked before any write):
- OTP_REQUIRED          caller has not verified an OTP
- DEAL_NOT_FOUND        no deal and nothing to materialize it from
- DEAL_MISMATCH         the deal being signed is not the deal the link is bound to
- FORBIDDEN             creator signing someone else's deal
- BRAND_MUST_SIGN_FIRST creator signing before the brand
- EMAIL_MISMATCH        signer email differs from the OTP-verified email
- SIGNER_EMAIL_REQUIRED no signer email given and none on record
- ALREADY_SIGNED        role already signed (also raised on a unique-constraint race)

Deal status updates, analytics and confirmation emails after the signature
is stored are best-effort: the stored signature is the legal fact.
"""
import json
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from collabdesk.core import errors
from collabdesk.core.client_info import get_device_info
from collabdesk.core.logging import get_logger, security_logger
from collabdesk.core.side_effects import best_effort
from collabdesk.core.timeutil import Clock, utcnow
from collabdesk.db.models import (
    BrandResponseStatus,
    ContractSignature,
    Creator,
    Deal,
    DealStage,
    DealSubmission,
    ExecutionStatus,
    SignerRole,
)
from collabdesk.services import analytics
from collabdesk.workers.jobs import JobDispatcher

logger = get_logger(__name__)

DEFAULT_CONTRACT_VERSION = "v3"


# ============= REQUESTS / VIEWS =============

class SignatureRequest(BaseModel):
    deal_id: Optional[str] = None
    otp_verified: bool = False
    otp_verified_at: Optional[datetime] = None
    # Address the OTP was delivered to and verified for
    verified_email: Optional[str] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None
    contract_version_id: Optional[str] = None
    contract_snapshot_html: Optional[str] = None


class SignBrandRequest(SignatureRequest):
    # Deferred deal creation: sign against a submission that has no deal yet
    submission_id: Optional[str] = None


class SignCreatorRequest(SignatureRequest):
    creator_id: str


class SignatureView(BaseModel):
    """Public projection of a signature. Never carries the signer IP."""
    deal_id: str
    signer_role: str
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    otp_verified: bool
    otp_verified_at: Optional[datetime] = None
    signed: bool
    signed_at: Optional[datetime] = None
    contract_version_id: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


# ============= SERVICE =============

class SignatureService:
    def __init__(self, db: Session, dispatcher: JobDispatcher, clock: Clock = utcnow):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock

    def sign_as_brand(self, request: SignBrandRequest, bound_deal_id: Optional[str] = None) -> ContractSignature:
        """
        Record the brand's signature.

        ``bound_deal_id`` is the deal the authorizing link belongs to; when
        given, ``request.deal_id`` must name the same deal.
        """
        self._require_otp(request, SignerRole.BRAND, bound_deal_id or request.deal_id)

        deal = self._get_deal(bound_deal_id or request.deal_id)
        if deal is None and request.submission_id:
            deal = self.materialize_deal_from_submission(request.submission_id)
            if deal is not None:
                request = request.model_copy(update={"deal_id": deal.id})
        if deal is None:
            raise errors.deal_not_found()

        if request.deal_id and deal.id != request.deal_id:
            security_logger.log("contract_sign", "DEAL_MISMATCH", deal_id=deal.id, signer_role=SignerRole.BRAND.value)
            raise errors.deal_mismatch()

        request = self._resolve_signer(deal, SignerRole.BRAND, request)
        signature = self._store_signature(deal, SignerRole.BRAND, request)

        best_effort("brand_deal_status", self._mark_brand_signed, deal.id)
        self._after_signing(deal, signature)
        best_effort("brand_signed_emails", self.dispatcher.enqueue_brand_signed_emails, deal.id)
        return signature

    def sign_as_creator(self, request: SignCreatorRequest) -> ContractSignature:
        self._require_otp(request, SignerRole.CREATOR, request.deal_id)

        deal = self._get_deal(request.deal_id)
        if deal is None:
            raise errors.deal_not_found()

        if deal.creator_id != request.creator_id:
            security_logger.log("contract_sign", "FORBIDDEN", deal_id=deal.id, signer_role=SignerRole.CREATOR.value)
            raise errors.forbidden()

        brand_signature = self.get_signature(deal.id, SignerRole.BRAND)
        if brand_signature is None or not brand_signature.signed:
            raise errors.brand_must_sign_first()

        request = self._resolve_signer(deal, SignerRole.CREATOR, request)
        signature = self._store_signature(deal, SignerRole.CREATOR, request)

        best_effort("creator_deal_status", self._mark_fully_executed, deal.id)
        self._after_signing(deal, signature)
        best_effort("creator_signed_emails", self.dispatcher.enqueue_creator_signed_emails, deal.id)
        return signature

    def get_signature(self, deal_id: str, role: SignerRole) -> Optional[ContractSignature]:
        return (
            self.db.query(ContractSignature)
            .filter(
                ContractSignature.deal_id == deal_id,
                ContractSignature.signer_role == SignerRole(role).value,
            )
            .first()
        )

    def materialize_deal_from_submission(self, submission_id: str) -> Optional[Deal]:
        """
        Create the deal for a submission on first brand signature.

        Returns the already-linked deal if the submission was materialized
        before, or None when there is no usable submission.
        """
        submission = self.db.get(DealSubmission, submission_id)
        if submission is None or not submission.form_data:
            return None
        if submission.deal_id:
            return self.db.get(Deal, submission.deal_id)

        form = submission.form_data
        if not isinstance(form, dict):
            logger.warning("Submission form data is not an object", extra={"entity_type": "deal_submission", "entity_id": submission_id})
            return None
        today = self.clock().date().isoformat()
        deal_type = form.get("dealType") or "paid"
        deal = Deal(
            creator_id=submission.creator_id,
            brand_name=form.get("brandName") or "Brand",
            deal_amount=_parse_amount(form.get("paymentAmount")) if deal_type == "paid" else 0,
            deliverables=json.dumps(form.get("deliverables") or []),
            due_date=form.get("deadline") or today,
            deal_type=deal_type,
            brand_address=form.get("companyAddress"),
            brand_email=form.get("companyEmail"),
            created_via="deal_details_form",
            brand_response_status=BrandResponseStatus.PENDING.value,
            created_at=self.clock(),
        )
        self.db.add(deal)
        self.db.flush()
        submission.deal_id = deal.id
        self.db.commit()
        logger.info(f"Materialized deal {deal.id} from submission", extra={"deal_id": deal.id})
        return deal

    # ============= INTERNALS =============

    def _require_otp(self, request: SignatureRequest, role: SignerRole, deal_id: Optional[str]) -> None:
        if not request.otp_verified:
            security_logger.log("contract_sign", "OTP_REQUIRED", deal_id=deal_id, signer_role=role.value)
            raise errors.otp_required()

    def _get_deal(self, deal_id: Optional[str]) -> Optional[Deal]:
        if not deal_id:
            return None
        return self.db.get(Deal, deal_id)

    def _resolve_signer(self, deal: Deal, role: SignerRole, request: SignatureRequest) -> SignatureRequest:
        """
        Fill the signer identity from the verified OTP and the deal record.

        The stored email is the one the OTP was verified for; a different
        email in the request is rejected.
        """
        signer_email = (request.signer_email or "").strip() or None
        verified_email = (request.verified_email or "").strip() or None
        if verified_email:
            if signer_email and signer_email.lower() != verified_email.lower():
                security_logger.log("contract_sign", "EMAIL_MISMATCH", deal_id=deal.id, signer_role=role.value)
                raise errors.email_mismatch()
            signer_email = verified_email

        signer_name = (request.signer_name or "").strip() or None
        signer_phone = request.signer_phone
        if role == SignerRole.BRAND:
            signer_name = signer_name or deal.brand_name or "Brand"
            signer_email = signer_email or deal.brand_email
            signer_phone = signer_phone or deal.brand_phone
        else:
            creator = self.db.get(Creator, deal.creator_id)
            if creator is not None:
                signer_name = signer_name or creator.display_name
                signer_email = signer_email or creator.email

        if not signer_email:
            raise errors.RequestValidationError("Signer email is required", code="SIGNER_EMAIL_REQUIRED")

        return request.model_copy(
            update={"signer_name": signer_name, "signer_email": signer_email, "signer_phone": signer_phone}
        )

    def _store_signature(self, deal: Deal, role: SignerRole, request: SignatureRequest) -> ContractSignature:
        existing = self.get_signature(deal.id, role)
        if existing is not None and existing.signed:
            raise errors.already_signed(role.value)

        now = self.clock()
        snapshot = request.contract_snapshot_html or deal.contract_html
        if not snapshot and deal.contract_file_url:
            snapshot = f"Contract URL: {deal.contract_file_url}\nSigned at: {now.isoformat()}"

        signature = existing or ContractSignature(deal_id=deal.id, signer_role=role.value)
        signature.signer_name = request.signer_name
        signature.signer_email = request.signer_email
        signature.signer_phone = request.signer_phone
        signature.ip_address = request.ip_address
        signature.user_agent = request.user_agent
        signature.device_info = request.device_info or get_device_info(request.user_agent)
        signature.otp_verified = True
        signature.otp_verified_at = request.otp_verified_at or now
        signature.signed = True
        signature.signed_at = now
        signature.contract_version_id = request.contract_version_id or deal.contract_version or DEFAULT_CONTRACT_VERSION
        signature.contract_snapshot_html = snapshot
        signature.updated_at = now

        if existing is None:
            self.db.add(signature)
        try:
            self.db.commit()
        except IntegrityError as e:
            # Concurrent signer for the same role won the insert
            self.db.rollback()
            raise errors.already_signed(role.value) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Storing signature failed: {e}", exc_info=True, extra={"deal_id": deal.id})
            raise errors.InfrastructureError() from e

        self.db.refresh(signature)
        logger.info(
            f"Contract signed by {role.value}",
            extra={"deal_id": deal.id, "signer_role": role.value},
        )
        return signature

    def _mark_brand_signed(self, deal_id: str) -> None:
        deal = self.db.get(Deal, deal_id)
        now = self.clock()
        deal.brand_response_status = BrandResponseStatus.ACCEPTED_VERIFIED.value
        deal.brand_response_at = now
        deal.status = DealStage.SIGNED_BY_BRAND.value
        deal.updated_at = now
        self._commit_or_rollback()

    def _mark_fully_executed(self, deal_id: str) -> None:
        deal = self.db.get(Deal, deal_id)
        deal.status = DealStage.FULLY_EXECUTED.value
        deal.deal_execution_status = ExecutionStatus.COMPLETED.value
        deal.updated_at = self.clock()
        self._commit_or_rollback()

    def _after_signing(self, deal: Deal, signature: ContractSignature) -> None:
        best_effort(
            "contract_signed_event",
            analytics.record_event,
            self.db,
            analytics.CONTRACT_SIGNED,
            signature.deal_id,
            creator_id=deal.creator_id,
            metadata={
                "signer_role": signature.signer_role,
                "signature_id": signature.id,
                "device_type": (signature.device_info or {}).get("type", "unknown"),
            },
            clock=self.clock,
        )

    def _commit_or_rollback(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise


def _parse_amount(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
