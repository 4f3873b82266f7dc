"""
Brand reply tokens: validation and lifecycle.

A reply token is an unguessable UUID-v4 link id that authorizes access to
exactly one deal. It is usable iff it is active, not revoked and not past
``expires_at``. Rejections share one neutral public message, except expiry,
which tells the brand to ask for a new link.
"""
import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from collabdesk.core.errors import (
    InfrastructureError,
    LinkUnavailableError,
    NotFoundError,
    LINK_EXPIRED_MESSAGE,
    LINK_INVALID_MESSAGE,
)
from collabdesk.core.logging import get_logger, security_logger
from collabdesk.core.timeutil import Clock, ensure_utc, utcnow
from collabdesk.db.models import Deal, ReplyToken

logger = get_logger(__name__)

UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class TokenReason(str, Enum):
    VALID = "VALID"
    INVALID_FORMAT = "INVALID_FORMAT"
    NOT_FOUND = "NOT_FOUND"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


# reason -> (http status, public message)
_REJECTIONS = {
    TokenReason.INVALID_FORMAT: (400, LINK_INVALID_MESSAGE),
    TokenReason.NOT_FOUND: (404, LINK_INVALID_MESSAGE),
    TokenReason.REVOKED: (403, LINK_INVALID_MESSAGE),
    TokenReason.EXPIRED: (403, LINK_EXPIRED_MESSAGE),
}


@dataclass(frozen=True)
class TokenCheck:
    token_id: Optional[str]
    deal_id: Optional[str]
    usable: bool
    reason: TokenReason

    def to_error(self) -> LinkUnavailableError:
        status_code, message = _REJECTIONS[self.reason]
        return LinkUnavailableError(message, code=self.reason.value, status_code=status_code)


def is_valid_token_format(token_id) -> bool:
    return isinstance(token_id, str) and bool(UUID_V4_PATTERN.match(token_id.strip()))


class TokenValidator:
    """Pure read: looks a token up by primary key and classifies it."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def validate(self, token_id: str) -> TokenCheck:
        if not is_valid_token_format(token_id):
            return TokenCheck(None, None, False, TokenReason.INVALID_FORMAT)

        token_id = token_id.strip()
        try:
            token = self.db.get(ReplyToken, token_id)
        except SQLAlchemyError as e:
            logger.error(f"Reply token lookup failed: {e}", exc_info=True)
            raise InfrastructureError() from e

        if token is None:
            return TokenCheck(token_id, None, False, TokenReason.NOT_FOUND)

        if not token.is_active or token.revoked_at is not None:
            return TokenCheck(token.id, token.deal_id, False, TokenReason.REVOKED)

        expires_at = ensure_utc(token.expires_at)
        if expires_at is not None and self.clock() > expires_at:
            return TokenCheck(token.id, token.deal_id, False, TokenReason.EXPIRED)

        return TokenCheck(token.id, token.deal_id, True, TokenReason.VALID)

    def require_usable(self, token_id: str, action: str = "reply_link") -> TokenCheck:
        """Validate and raise the neutral public error when the token is unusable."""
        check = self.validate(token_id)
        if not check.usable:
            security_logger.log(action, check.reason.value, deal_id=check.deal_id)
            raise check.to_error()
        return check


class ReplyTokenService:
    """Issues and revokes reply links. Tokens are never deleted."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def issue(self, deal_id: str, ttl_days: Optional[int] = None) -> ReplyToken:
        if self.db.get(Deal, deal_id) is None:
            raise NotFoundError("Deal not found", code="DEAL_NOT_FOUND")

        now = self.clock()
        token = ReplyToken(
            id=str(uuid.uuid4()),
            deal_id=deal_id,
            is_active=True,
            expires_at=now + timedelta(days=ttl_days) if ttl_days else None,
            created_at=now,
        )
        self.db.add(token)
        self.db.commit()
        self.db.refresh(token)
        logger.info(f"Issued reply token for deal {deal_id}", extra={"deal_id": deal_id})
        return token

    def revoke(self, token_id: str, deal_id: Optional[str] = None) -> ReplyToken:
        token = self.db.get(ReplyToken, token_id) if is_valid_token_format(token_id) else None
        if token is None or (deal_id is not None and token.deal_id != deal_id):
            raise NotFoundError("Reply token not found", code="TOKEN_NOT_FOUND")

        if token.revoked_at is None:
            token.revoked_at = self.clock()
        token.is_active = False
        self.db.commit()
        self.db.refresh(token)
        logger.info(f"Revoked reply token for deal {token.deal_id}", extra={"deal_id": token.deal_id})
        return token
