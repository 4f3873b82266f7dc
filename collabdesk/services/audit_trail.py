"""
Brand reply audit trail.

Append-only record of what happened through a reply link: views, accept /
negotiate / reject decisions and later changes of mind. Entries are never
updated or deleted.

Rules:
- A "viewed" entry is skipped when the same token already has a "viewed"
  entry younger than the dedup window (60 minutes by default).
- Every other action carries ``decision_version = max(version for deal) + 1``,
  starting at 1. "viewed" never carries a version.
- The (deal_id, decision_version) unique constraint is the real ordering
  guarantee; a collision from a concurrent writer is retried with a fresh
  version.
- Recording is best-effort. Any failure is logged and swallowed so the
  calling operation still succeeds; the trail is therefore not guaranteed
  complete.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from collabdesk.core.client_info import RequestContext, hash_ip_address
from collabdesk.core.config import settings
from collabdesk.core.logging import get_logger
from collabdesk.core.side_effects import best_effort
from collabdesk.core.timeutil import Clock, ensure_utc, utcnow
from collabdesk.db.models import AuditAction, BrandReplyAuditLog

logger = get_logger(__name__)

ACTION_SOURCE = "brand_reply_link"
MAX_VERSION_ATTEMPTS = 3


@dataclass(frozen=True)
class AuditMetadata:
    response_status: Optional[str] = None
    brand_team_name: Optional[str] = None
    optional_comment: Optional[str] = None


class AuditTrail:
    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        dedup_window: Optional[timedelta] = None,
    ):
        self.db = db
        self.clock = clock
        self.dedup_window = dedup_window or timedelta(minutes=settings.VIEW_DEDUP_MINUTES)

    def record(
        self,
        token_id: str,
        deal_id: str,
        action_type: str,
        context: RequestContext,
        metadata: Optional[AuditMetadata] = None,
    ) -> None:
        """Append an entry. Never raises."""
        best_effort(
            "audit_log",
            self._write_or_rollback,
            token_id,
            deal_id,
            action_type,
            context,
            metadata or AuditMetadata(),
        )

    def history(self, deal_id: str) -> List[BrandReplyAuditLog]:
        """All entries for a deal in the order they were written."""
        return (
            self.db.query(BrandReplyAuditLog)
            .filter(BrandReplyAuditLog.deal_id == deal_id)
            .order_by(BrandReplyAuditLog.action_timestamp, BrandReplyAuditLog.id)
            .all()
        )

    # ============= INTERNALS =============

    def _write_or_rollback(self, *args) -> Optional[BrandReplyAuditLog]:
        # Leave the session usable for the caller whatever happened here
        try:
            return self._write(*args)
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _write(
        self,
        token_id: str,
        deal_id: str,
        action_type: str,
        context: RequestContext,
        metadata: AuditMetadata,
    ) -> Optional[BrandReplyAuditLog]:
        action = AuditAction(action_type)
        now = self.clock()

        if action is AuditAction.VIEWED:
            last_viewed = self._last_view_at(token_id)
            if last_viewed is not None and now - last_viewed < self.dedup_window:
                logger.debug(f"Skipping duplicate view for deal {deal_id}", extra={"deal_id": deal_id})
                return None

        ip_hash, ip_partial = hash_ip_address(context.ip_address)

        for attempt in range(1, MAX_VERSION_ATTEMPTS + 1):
            version = None if action is AuditAction.VIEWED else self._next_decision_version(deal_id)
            entry = BrandReplyAuditLog(
                reply_token_id=token_id,
                deal_id=deal_id,
                action_type=action.value,
                action_timestamp=now,
                action_source=ACTION_SOURCE,
                user_agent=context.user_agent,
                ip_address_hash=ip_hash,
                ip_address_partial=ip_partial,
                optional_comment=metadata.optional_comment,
                response_status=metadata.response_status,
                brand_team_name=metadata.brand_team_name,
                decision_version=version,
            )
            self.db.add(entry)
            try:
                self.db.commit()
                return entry
            except IntegrityError:
                self.db.rollback()
                if version is None or attempt == MAX_VERSION_ATTEMPTS:
                    raise
                logger.warning(
                    f"decision_version {version} already taken for deal {deal_id}, retrying",
                    extra={"deal_id": deal_id, "action": action.value},
                )
        return None

    def _last_view_at(self, token_id: str):
        row = (
            self.db.query(BrandReplyAuditLog.action_timestamp)
            .filter(
                BrandReplyAuditLog.reply_token_id == token_id,
                BrandReplyAuditLog.action_type == AuditAction.VIEWED.value,
            )
            .order_by(desc(BrandReplyAuditLog.action_timestamp))
            .first()
        )
        return ensure_utc(row[0]) if row else None

    def _next_decision_version(self, deal_id: str) -> int:
        current = (
            self.db.query(func.max(BrandReplyAuditLog.decision_version))
            .filter(
                BrandReplyAuditLog.deal_id == deal_id,
                BrandReplyAuditLog.decision_version.isnot(None),
            )
            .scalar()
        )
        return (current or 0) + 1
