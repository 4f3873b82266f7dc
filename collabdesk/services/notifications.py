"""
Signing confirmation emails.

Each notify_* method sends to every party it can address and reports per
recipient; one failed email never stops the next.
"""
import html
from typing import Dict, Optional

from sqlalchemy.orm import Session

from collabdesk.core.config import settings
from collabdesk.core.logging import get_logger
from collabdesk.db.models import ContractSignature, Creator, Deal, SignerRole
from collabdesk.services.email_client import EmailClient, EmailResult

logger = get_logger(__name__)

SIGNED_SUBJECT = "Agreement Signed Successfully"
EXECUTED_SUBJECT = "Agreement Fully Executed"


class SigningNotifier:
    def __init__(self, db: Session, email_client: Optional[EmailClient] = None):
        self.db = db
        self.email_client = email_client or EmailClient()

    def notify_brand_signed(self, deal_id: str) -> Dict[str, EmailResult]:
        """Brand signed: confirm to the brand signer, ask the creator to countersign."""
        deal, creator, signature = self._load(deal_id, SignerRole.BRAND)
        if deal is None or signature is None:
            logger.warning(f"Nothing to notify for deal {deal_id}", extra={"deal_id": deal_id})
            return {}

        brand_name = deal.brand_name or "Brand"
        creator_name = creator.display_name if creator else "Creator"
        results = {}

        if signature.signer_email:
            results["brand"] = self._send(
                signature.signer_email,
                SIGNED_SUBJECT,
                f"<p>Hi {html.escape(signature.signer_name or brand_name)},</p>"
                f"<p>You signed the collaboration agreement with "
                f"{html.escape(creator_name)}{self._amount_line(deal)}.</p>"
                f"<p>Signed at: {self._format_time(signature.signed_at)}</p>"
                f"<p>{html.escape(creator_name)} will countersign shortly.</p>",
            )

        if creator and creator.email:
            results["creator"] = self._send(
                creator.email,
                SIGNED_SUBJECT,
                f"<p>Hi {html.escape(creator_name)},</p>"
                f"<p>{html.escape(brand_name)} signed your collaboration agreement"
                f"{self._amount_line(deal)}.</p>"
                f"<p><a href=\"{settings.FRONTEND_URL}/deals/{deal.id}\">Review and countersign</a></p>",
            )
        return results

    def notify_creator_signed(self, deal_id: str) -> Dict[str, EmailResult]:
        """Creator countersigned: the agreement is fully executed."""
        deal, creator, signature = self._load(deal_id, SignerRole.CREATOR)
        if deal is None or signature is None:
            logger.warning(f"Nothing to notify for deal {deal_id}", extra={"deal_id": deal_id})
            return {}

        creator_name = creator.display_name if creator else "Creator"
        body = (
            f"<p>The agreement between {html.escape(deal.brand_name or 'Brand')} and "
            f"{html.escape(creator_name)}{self._amount_line(deal)} is now fully executed.</p>"
            f"<p>Countersigned at: {self._format_time(signature.signed_at)}</p>"
        )

        results = {}
        if signature.signer_email:
            results["creator"] = self._send(signature.signer_email, EXECUTED_SUBJECT, body)
        if deal.brand_email:
            results["brand"] = self._send(deal.brand_email, EXECUTED_SUBJECT, body)
        return results

    # ============= HELPERS =============

    def _load(self, deal_id: str, role: SignerRole):
        deal = self.db.get(Deal, deal_id)
        if deal is None:
            return None, None, None
        creator = self.db.get(Creator, deal.creator_id)
        signature = (
            self.db.query(ContractSignature)
            .filter(
                ContractSignature.deal_id == deal_id,
                ContractSignature.signer_role == role.value,
                ContractSignature.signed.is_(True),
            )
            .first()
        )
        return deal, creator, signature

    def _send(self, to: str, subject: str, body: str) -> EmailResult:
        result = self.email_client.send_email(to, subject, f"<html><body>{body}</body></html>")
        if not result.success:
            logger.error(f"Signing email to recipient failed: {result.error}")
        return result

    @staticmethod
    def _amount_line(deal: Deal) -> str:
        if deal.deal_type == "barter" or not deal.deal_amount:
            return ""
        return f" worth {deal.deal_amount:,.2f}"

    @staticmethod
    def _format_time(value) -> str:
        return value.strftime("%d %B %Y, %H:%M UTC") if value else "just now"
