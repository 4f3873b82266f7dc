"""
SQLAlchemy ORM models for CollabDesk.

Primary keys are UUID strings (reply tokens double as unguessable link ids).
Uniqueness that the services rely on is enforced here, at the storage
layer; service-level checks are only a fast path.
"""
import enum
import uuid

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from collabdesk.db.session import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ============= ENUMS =============
# Stored as plain strings; the enums are the vocabulary used in code.

class BrandResponseStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ACCEPTED_VERIFIED = "accepted_verified"
    NEGOTIATING = "negotiating"
    REJECTED = "rejected"


class AuditAction(str, enum.Enum):
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    NEGOTIATION_REQUESTED = "negotiation_requested"
    REJECTED = "rejected"
    UPDATED_RESPONSE = "updated_response"


class SignerRole(str, enum.Enum):
    BRAND = "brand"
    CREATOR = "creator"


class DealStage(str, enum.Enum):
    APPROVED = "Approved"
    NEGOTIATING = "Negotiating"
    REJECTED = "Rejected"
    SIGNED_BY_BRAND = "SIGNED_BY_BRAND"
    FULLY_EXECUTED = "FULLY_EXECUTED"


class ExecutionStatus(str, enum.Enum):
    PENDING_SIGNATURE = "pending_signature"
    COMPLETED = "completed"


# ============= PEOPLE & DEALS =============

class Creator(Base):
    """Creator account (the authenticated party)."""
    __tablename__ = "creators"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, index=True)
    first_name = Column(String(255))
    last_name = Column(String(255))
    business_name = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    deals = relationship("Deal", back_populates="creator")

    @property
    def display_name(self) -> str:
        if self.business_name:
            return self.business_name
        full = f"{self.first_name or ''} {self.last_name or ''}".strip()
        if full:
            return full
        if self.email:
            return self.email.split("@")[0]
        return "Creator"


class Deal(Base):
    """Brand/creator collaboration record."""
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(String(36), ForeignKey("creators.id"), nullable=False, index=True)

    brand_name = Column(String(255))
    brand_email = Column(String(255))
    brand_phone = Column(String(50))
    brand_address = Column(Text)
    brand_team_name = Column(String(255))

    brand_response_status = Column(String(32), default=BrandResponseStatus.PENDING.value)
    brand_response_message = Column(Text)
    brand_response_at = Column(DateTime(timezone=True))
    brand_response_ip = Column(String(64))

    status = Column(String(50))
    deal_execution_status = Column(String(50))
    contract_status = Column(String(50))
    creator_requested_clarifications = Column(Boolean, default=False)

    deal_amount = Column(Float)
    deal_type = Column(String(20), default="paid")  # paid, barter
    deliverables = Column(Text)  # JSON-encoded list or free text
    due_date = Column(String(20))
    deal_schema = Column(JSON)

    analysis_report_id = Column(String(36), ForeignKey("analysis_reports.id"), nullable=True)
    contract_file_url = Column(Text)
    signed_contract_url = Column(Text)
    contract_version = Column(String(50))
    contract_html = Column(Text)  # generated contract snapshot
    contract_generated_at = Column(DateTime(timezone=True))
    invoice_number = Column(String(50))
    created_via = Column(String(50))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    creator = relationship("Creator", back_populates="deals")
    analysis_report = relationship("AnalysisReport")
    signatures = relationship("ContractSignature", back_populates="deal")


class DealSubmission(Base):
    """Brand-submitted deal details that have not necessarily become a Deal yet."""
    __tablename__ = "deal_submissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(String(36), ForeignKey("creators.id"), nullable=False)
    form_data = Column(JSON, nullable=False, default=dict)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ============= CONTRACT ANALYSIS =============

class AnalysisReport(Base):
    """Contract-analysis report attached to a deal."""
    __tablename__ = "analysis_reports"

    id = Column(String(36), primary_key=True, default=_uuid)
    analysis_json = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    issues = relationship("ProtectionIssue", back_populates="report")


class ProtectionIssue(Base):
    """A single issue flagged by contract analysis."""
    __tablename__ = "protection_issues"

    id = Column(String(36), primary_key=True, default=_uuid)
    report_id = Column(String(36), ForeignKey("analysis_reports.id"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    severity = Column(String(20), nullable=False)  # high, medium, warning, low
    category = Column(String(100))
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    report = relationship("AnalysisReport", back_populates="issues")


# ============= BRAND REPLY LINKS =============

class ReplyToken(Base):
    """Unguessable capability link authorizing access to exactly one deal."""
    __tablename__ = "brand_reply_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class BrandReplyAuditLog(Base):
    """Append-only ledger of actions taken through a reply link."""
    __tablename__ = "brand_reply_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reply_token_id = Column(String(36), ForeignKey("brand_reply_tokens.id"), nullable=False)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False)
    action_type = Column(String(32), nullable=False)
    action_timestamp = Column(DateTime(timezone=True), nullable=False)
    action_source = Column(String(50), nullable=False)
    user_agent = Column(Text)
    ip_address_hash = Column(String(16))
    ip_address_partial = Column(String(32))
    optional_comment = Column(Text)
    response_status = Column(String(32))
    brand_team_name = Column(String(255))
    decision_version = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint('deal_id', 'decision_version', name='uq_audit_deal_decision_version'),
        Index('ix_audit_token_action_ts', 'reply_token_id', 'action_type', 'action_timestamp'),
    )


# ============= SIGNING =============

class ContractSignature(Base):
    """One party's execution of a deal contract."""
    __tablename__ = "contract_signatures"

    id = Column(String(36), primary_key=True, default=_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False)
    signer_role = Column(String(20), nullable=False)
    signer_name = Column(String(255))
    signer_email = Column(String(255))
    signer_phone = Column(String(50))
    ip_address = Column(String(64))
    user_agent = Column(Text)
    device_info = Column(JSON)
    otp_verified = Column(Boolean, nullable=False, default=False)
    otp_verified_at = Column(DateTime(timezone=True))
    signed = Column(Boolean, nullable=False, default=False)
    signed_at = Column(DateTime(timezone=True))
    contract_version_id = Column(String(50))
    contract_snapshot_html = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    deal = relationship("Deal", back_populates="signatures")

    __table_args__ = (
        UniqueConstraint('deal_id', 'signer_role', name='uq_signature_deal_role'),
    )


class SigningOtp(Base):
    """One-time code proving control of the signer's email address."""
    __tablename__ = "signing_otps"

    id = Column(String(36), primary_key=True, default=_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False)
    signer_role = Column(String(20), nullable=False)
    email = Column(String(255), nullable=False)
    otp_hash = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    verified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('ix_signing_otps_deal_role_created', 'deal_id', 'signer_role', 'created_at'),
    )


# ============= SIDE RECORDS =============

class AnalyticsEvent(Base):
    """Best-effort product analytics."""
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(100), nullable=False, index=True)
    deal_id = Column(String(36), index=True)
    creator_id = Column(String(36))
    meta_data = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Invoice(Base):
    """Invoice generated once a deal is OTP-verified."""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, unique=True)
    invoice_number = Column(String(50), nullable=False)
    amount = Column(Float, default=0)
    html = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
