"""
Contract generation for accepted deals.

When a brand accepts and nothing needs clarifying, the contract is rendered
from the deal terms in the background. Generation is idempotent: a deal that
already has a contract keeps it.
"""
import html

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from collabdesk.core.config import settings
from collabdesk.core.errors import deal_not_found
from collabdesk.core.logging import get_logger
from collabdesk.core.side_effects import best_effort
from collabdesk.core.timeutil import Clock, utcnow
from collabdesk.db.models import Creator, Deal
from collabdesk.services import analytics
from collabdesk.services.invoices import parse_deliverables
from collabdesk.services.signatures import DEFAULT_CONTRACT_VERSION

logger = get_logger(__name__)


def contract_url_for(deal_id: str) -> str:
    return f"{settings.FRONTEND_URL}/deals/{deal_id}/contract"


class ContractService:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def generate_contract(self, deal_id: str) -> Deal:
        """Render and store the contract. Returns the deal, generated or not."""
        deal = self.db.get(Deal, deal_id)
        if deal is None:
            raise deal_not_found()

        if deal.contract_html:
            logger.info(f"Contract already generated for deal {deal_id}", extra={"deal_id": deal_id})
            return deal

        creator = self.db.get(Creator, deal.creator_id)
        now = self.clock()
        version = deal.contract_version or DEFAULT_CONTRACT_VERSION

        deal.contract_html = self._render(deal, creator, version, now)
        deal.contract_version = version
        deal.contract_file_url = deal.contract_file_url or contract_url_for(deal.id)
        deal.contract_generated_at = now
        deal.updated_at = now
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info(f"Generated contract {version} for deal {deal.id}", extra={"deal_id": deal.id})
        best_effort(
            "contract_generated_event",
            analytics.record_event,
            self.db,
            analytics.CONTRACT_AUTO_GENERATED,
            deal.id,
            creator_id=deal.creator_id,
            metadata={"contract_version": version},
            clock=self.clock,
        )
        return deal

    def _render(self, deal: Deal, creator, version: str, issued_at) -> str:
        creator_name = creator.display_name if creator else "Creator"
        brand_name = deal.brand_name or "Brand"
        items = "".join(
            f"<li>{html.escape(item)}</li>" for item in parse_deliverables(deal.deliverables)
        ) or "<li>As agreed between the parties</li>"

        if deal.deal_type == "barter" or not deal.deal_amount:
            compensation = "Product exchange (barter), no cash payment"
        else:
            compensation = f"{deal.deal_amount:,.2f}"

        return (
            "<html><body>"
            f"<h1>Collaboration Agreement ({html.escape(version)})</h1>"
            f"<p>Date: {issued_at.date().isoformat()}</p>"
            f"<p>Between {html.escape(brand_name)} (the Brand) and "
            f"{html.escape(creator_name)} (the Creator).</p>"
            f"<h2>Deliverables</h2><ul>{items}</ul>"
            f"<p>Due date: {html.escape(deal.due_date or 'To be agreed')}</p>"
            f"<p>Compensation: {html.escape(compensation)}</p>"
            "<p>Both parties sign electronically after verifying their email "
            "address with a one-time code.</p>"
            "</body></html>"
        )
