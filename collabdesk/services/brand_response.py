"""
Brand Response Handler.

Public, token-gated operations used by the brand-facing page:

- ``get_deal_view``: what the brand sees when opening a reply link.
- ``submit_decision``: accept / negotiate / reject, resubmission allowed.

Rules:
- Every call is authorized by the reply token; failures surface as the
  neutral link errors and never carry deal or token ids.
- The view degrades instead of failing: full column set, then a minimal
  one, then a placeholder deal.
- Audit entries, analytics, the clarification flag, contract generation and
  invoice generation are side effects. None of them can fail a request.
"""
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from collabdesk.core.client_info import RequestContext
from collabdesk.core.errors import (
    InfrastructureError,
    LinkUnavailableError,
    RequestValidationError,
    LINK_INVALID_MESSAGE,
)
from collabdesk.core.logging import get_logger
from collabdesk.core.side_effects import best_effort
from collabdesk.core.timeutil import Clock, utcnow
from collabdesk.db.models import (
    AnalysisReport,
    AuditAction,
    BrandResponseStatus,
    Deal,
    DealStage,
    ExecutionStatus,
    ProtectionIssue,
    ReplyToken,
)
from collabdesk.services import analytics
from collabdesk.services.audit_trail import AuditMetadata, AuditTrail
from collabdesk.services.reply_tokens import TokenValidator, is_valid_token_format
from collabdesk.workers.jobs import JobDispatcher

logger = get_logger(__name__)

DECISION_STATUSES = (
    BrandResponseStatus.ACCEPTED.value,
    BrandResponseStatus.ACCEPTED_VERIFIED.value,
    BrandResponseStatus.NEGOTIATING.value,
    BrandResponseStatus.REJECTED.value,
)

_ACCEPTED = {BrandResponseStatus.ACCEPTED.value, BrandResponseStatus.ACCEPTED_VERIFIED.value}

_ACTION_FOR_STATUS = {
    BrandResponseStatus.ACCEPTED.value: AuditAction.ACCEPTED,
    BrandResponseStatus.ACCEPTED_VERIFIED.value: AuditAction.ACCEPTED,
    BrandResponseStatus.NEGOTIATING.value: AuditAction.NEGOTIATION_REQUESTED,
    BrandResponseStatus.REJECTED.value: AuditAction.REJECTED,
}

_STAGE_FOR_STATUS = {
    BrandResponseStatus.ACCEPTED.value: DealStage.APPROVED,
    BrandResponseStatus.ACCEPTED_VERIFIED.value: DealStage.APPROVED,
    BrandResponseStatus.NEGOTIATING.value: DealStage.NEGOTIATING,
    BrandResponseStatus.REJECTED.value: DealStage.REJECTED,
}

# Issues shown to the brand as requested changes, most severe first
REQUESTED_CHANGE_SEVERITIES = {"high": 0, "medium": 1, "warning": 2}

CRITICAL_KEY_TERMS = ("usageRights", "exclusivity", "paymentSchedule", "termination")
NOT_SPECIFIED = "Not specified"
VAGUE_PAYMENT_TERMS = {NOT_SPECIFIED, "Unclear"}

AWAITING_CLARIFICATION = "AwaitingClarification"

# Column sets for the degraded view read
FULL_VIEW_COLUMNS = (
    Deal.brand_name,
    Deal.brand_response_status,
    Deal.brand_response_message,
    Deal.brand_response_at,
    Deal.deal_amount,
    Deal.deliverables,
    Deal.signed_contract_url,
    Deal.deal_execution_status,
    Deal.analysis_report_id,
)
SAFE_VIEW_COLUMNS = (
    Deal.brand_name,
    Deal.brand_response_status,
    Deal.brand_response_message,
    Deal.brand_response_at,
    Deal.deal_amount,
    Deal.deliverables,
)


# ============= DTOS =============

class DealView(BaseModel):
    brand_name: Optional[str] = None
    response_status: str = BrandResponseStatus.PENDING.value
    response_message: Optional[str] = None
    response_at: Optional[datetime] = None
    deal_amount: Optional[float] = None
    deliverables: Optional[str] = None
    signed_contract_url: Optional[str] = None
    deal_execution_status: Optional[str] = None


PLACEHOLDER_DEAL = DealView(brand_name="Collaboration")


class RequestedChange(BaseModel):
    title: str
    severity: str
    category: Optional[str] = None
    description: Optional[str] = None


class DealViewResponse(BaseModel):
    success: bool = True
    deal: DealView
    requested_changes: List[RequestedChange] = []
    analysis_data: Optional[Dict[str, Any]] = None
    requires_confirmation: bool = True


class DecisionResult(BaseModel):
    success: bool = True
    message: str = "Brand response saved successfully"
    status: str
    requires_confirmation: bool


# ============= SERVICE =============

class BrandResponseService:
    def __init__(
        self,
        db: Session,
        dispatcher: JobDispatcher,
        clock: Clock = utcnow,
        audit: Optional[AuditTrail] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock
        self.validator = TokenValidator(db, clock)
        self.audit = audit or AuditTrail(db, clock)

    def get_deal_view(self, token_id: str, context: RequestContext) -> DealViewResponse:
        check = self.validator.require_usable(token_id, action="brand_response_view")
        self.audit.record(check.token_id, check.deal_id, AuditAction.VIEWED.value, context)

        row = self._load_view_row(check.deal_id)
        if row is None:
            return DealViewResponse(
                deal=PLACEHOLDER_DEAL,
                requires_confirmation=self.requires_confirmation(check.deal_id),
            )

        report_id = row.get("analysis_report_id")
        requested_changes: List[RequestedChange] = []
        analysis_data = None
        if report_id:
            requested_changes = self._optional_read("requested_changes", self._requested_changes, report_id) or []
            analysis_data = self._optional_read("analysis_data", self._analysis_json, report_id)

        return DealViewResponse(
            deal=DealView(
                brand_name=row.get("brand_name"),
                response_status=row.get("brand_response_status") or BrandResponseStatus.PENDING.value,
                response_message=row.get("brand_response_message"),
                response_at=row.get("brand_response_at"),
                deal_amount=row.get("deal_amount"),
                deliverables=row.get("deliverables"),
                signed_contract_url=row.get("signed_contract_url"),
                deal_execution_status=row.get("deal_execution_status"),
            ),
            requested_changes=requested_changes,
            analysis_data=analysis_data,
            requires_confirmation=self.requires_confirmation(check.deal_id),
        )

    def submit_decision(
        self,
        token_id: str,
        status: str,
        message: Optional[str] = None,
        brand_team_name: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> DecisionResult:
        context = context or RequestContext()
        if status not in DECISION_STATUSES:
            raise RequestValidationError(
                f"Invalid status. Must be one of: {', '.join(DECISION_STATUSES)}",
                code="INVALID_STATUS",
            )

        check = self.validator.require_usable(token_id, action="brand_response_submit")

        try:
            deal = self.db.get(Deal, check.deal_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Deal lookup failed: {e}", exc_info=True, extra={"deal_id": check.deal_id})
            raise InfrastructureError() from e
        if deal is None:
            raise LinkUnavailableError(LINK_INVALID_MESSAGE, code="DEAL_NOT_FOUND", status_code=404)

        # Decided on the state the brand was looking at, before this update
        requires_confirmation = self.requires_confirmation(deal.id)
        action = self.audit_action_for(deal.brand_response_status, status)

        message = (message or "").strip() or None
        brand_team_name = (brand_team_name or "").strip() or None
        self._apply_decision(deal, status, message, brand_team_name, context)

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Saving brand response failed: {e}", exc_info=True, extra={"deal_id": deal.id})
            raise InfrastructureError() from e

        logger.info(
            f"Brand responded '{status}' on deal {deal.id}",
            extra={"deal_id": deal.id, "action": action.value},
        )

        self.audit.record(
            check.token_id,
            deal.id,
            action.value,
            context,
            AuditMetadata(
                response_status=status,
                brand_team_name=brand_team_name,
                optional_comment=message,
            ),
        )

        if requires_confirmation:
            best_effort(
                "contract_alignment_event",
                analytics.record_event,
                self.db,
                analytics.CONTRACT_ALIGNMENT_REQUIRED,
                deal.id,
                creator_id=deal.creator_id,
                metadata={"status": status, "requires_confirmation": True},
                clock=self.clock,
            )
            best_effort("awaiting_clarification", self._flag_awaiting_clarification, deal)
        elif status in _ACCEPTED:
            best_effort("contract_generation", self.dispatcher.enqueue_contract_generation, deal.id)

        if status == BrandResponseStatus.ACCEPTED_VERIFIED.value:
            best_effort("invoice_generation", self.dispatcher.enqueue_invoice_generation, deal.id)

        return DecisionResult(status=status, requires_confirmation=requires_confirmation)

    def inspect_token(self, token_id: str) -> dict:
        """Raw token/deal diagnostics for the development-only debug route."""
        token_id = (token_id or "").strip()
        result = {"token": token_id, "valid_format": is_valid_token_format(token_id), "token_data": None, "deal": None}
        if not result["valid_format"]:
            return result

        token = self.db.get(ReplyToken, token_id)
        if token is None:
            return result
        result["token_data"] = {
            "id": token.id,
            "deal_id": token.deal_id,
            "is_active": token.is_active,
            "expires_at": token.expires_at.isoformat() if token.expires_at else None,
            "revoked_at": token.revoked_at.isoformat() if token.revoked_at else None,
            "created_at": token.created_at.isoformat() if token.created_at else None,
        }
        result["validation"] = self.validator.validate(token_id).reason.value

        deal = self.db.get(Deal, token.deal_id)
        if deal is not None:
            result["deal"] = {"id": deal.id, "brand_name": deal.brand_name, "status": deal.status}
        return result

    # ============= DECISION RULES =============

    @staticmethod
    def audit_action_for(previous_status: Optional[str], status: str) -> AuditAction:
        if previous_status and previous_status != BrandResponseStatus.PENDING.value:
            return AuditAction.UPDATED_RESPONSE
        return _ACTION_FOR_STATUS[status]

    def _apply_decision(
        self,
        deal: Deal,
        status: str,
        message: Optional[str],
        brand_team_name: Optional[str],
        context: RequestContext,
    ) -> None:
        now = self.clock()
        deal.brand_response_status = status
        deal.brand_response_at = now
        deal.brand_response_ip = context.ip_address
        deal.updated_at = now
        if message:
            deal.brand_response_message = message
        if brand_team_name:
            deal.brand_team_name = brand_team_name

        stage = _STAGE_FOR_STATUS[status].value
        if deal.status != stage:
            deal.status = stage
        if status in _ACCEPTED and not deal.deal_execution_status:
            deal.deal_execution_status = ExecutionStatus.PENDING_SIGNATURE.value

    def requires_confirmation(self, deal_id: str) -> bool:
        """
        Whether the brand must confirm terms before a contract is generated.

        Anything that cannot be evaluated counts as "yes".
        """
        try:
            return self._needs_confirmation(deal_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Could not evaluate confirmation rules: {e}", extra={"deal_id": deal_id})
            return True
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Could not evaluate confirmation rules: {e}", extra={"deal_id": deal_id})
            return True

    def _needs_confirmation(self, deal_id: str) -> bool:
        deal = self.db.get(Deal, deal_id)
        if deal is None:
            return True

        if deal.creator_requested_clarifications:
            logger.debug("Confirmation required: creator requested clarifications", extra={"deal_id": deal_id})
            return True

        if deal.analysis_report_id:
            important_issue = (
                self.db.query(ProtectionIssue.id)
                .filter(
                    ProtectionIssue.report_id == deal.analysis_report_id,
                    ProtectionIssue.severity.in_(("high", "medium")),
                )
                .first()
            )
            if important_issue is not None:
                return True

            analysis = self._analysis_json(deal.analysis_report_id)
            if analysis:
                key_terms = analysis.get("keyTerms") or {}
                for term in CRITICAL_KEY_TERMS:
                    value = key_terms.get(term)
                    if not value or value == NOT_SPECIFIED:
                        return True
                issues = analysis.get("issues")
                if isinstance(issues, list) and any(
                    isinstance(issue, dict) and issue.get("severity") in ("high", "medium")
                    for issue in issues
                ):
                    return True

        if deal.deal_schema and _has_payment_risk(deal.deal_schema):
            return True

        return (
            deal.status == DealStage.NEGOTIATING.value
            or deal.brand_response_status == BrandResponseStatus.NEGOTIATING.value
        )

    def _flag_awaiting_clarification(self, deal: Deal) -> None:
        deal.contract_status = AWAITING_CLARIFICATION
        deal.updated_at = self.clock()
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    # ============= READS =============

    def _load_view_row(self, deal_id: str) -> Optional[dict]:
        for columns in (FULL_VIEW_COLUMNS, SAFE_VIEW_COLUMNS):
            try:
                return self._select_deal(deal_id, columns)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(
                    f"Deal view read failed with {len(columns)} columns: {e}",
                    extra={"deal_id": deal_id},
                )
        logger.error("Deal view unavailable, serving placeholder", extra={"deal_id": deal_id})
        return None

    def _select_deal(self, deal_id: str, columns) -> Optional[dict]:
        row = self.db.query(*columns).filter(Deal.id == deal_id).first()
        return dict(row._mapping) if row is not None else None

    def _requested_changes(self, report_id: str) -> List[RequestedChange]:
        severity_rank = case(REQUESTED_CHANGE_SEVERITIES, value=ProtectionIssue.severity)
        issues = (
            self.db.query(ProtectionIssue)
            .filter(
                ProtectionIssue.report_id == report_id,
                ProtectionIssue.severity.in_(tuple(REQUESTED_CHANGE_SEVERITIES)),
            )
            .order_by(severity_rank, ProtectionIssue.created_at)
            .all()
        )
        return [
            RequestedChange(
                title=issue.title,
                severity=issue.severity,
                category=issue.category,
                description=issue.description,
            )
            for issue in issues
        ]

    def _analysis_json(self, report_id: str) -> Optional[dict]:
        report = self.db.get(AnalysisReport, report_id)
        if report is None or not isinstance(report.analysis_json, dict):
            return None
        return report.analysis_json

    def _optional_read(self, label: str, fn: Callable, *args):
        try:
            return fn(*args)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Optional read '{label}' failed: {e}")
            return None


def _has_payment_risk(deal_schema) -> bool:
    schema = deal_schema
    if isinstance(schema, str):
        schema = json.loads(schema)
    if not isinstance(schema, dict):
        return False
    method = schema.get("payment_method") or schema.get("paymentMethod")
    terms = schema.get("payment_terms") or schema.get("paymentTerms")
    return not method or not terms or terms in VAGUE_PAYMENT_TERMS
