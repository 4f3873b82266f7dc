"""
Invoice generation for OTP-verified deals.

Generation is idempotent: a deal has at most one invoice, and asking again
returns the stored one.
"""
import html
import json
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collabdesk.core.errors import deal_not_found
from collabdesk.core.logging import get_logger
from collabdesk.core.timeutil import Clock, utcnow
from collabdesk.db.models import Creator, Deal, Invoice

logger = get_logger(__name__)


def invoice_number_for(deal_id: str, year: int) -> str:
    return f"INV-{year}-{deal_id[:8].upper()}"


def parse_deliverables(raw) -> List[str]:
    """Deliverables are stored either as a JSON list or as free text."""
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(item) for item in raw]
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return [str(raw)]
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [str(parsed)]


class InvoiceService:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def generate_invoice(self, deal_id: str) -> Invoice:
        existing = self.db.query(Invoice).filter(Invoice.deal_id == deal_id).first()
        if existing:
            logger.info(f"Invoice already exists for deal {deal_id}", extra={"deal_id": deal_id})
            return existing

        deal = self.db.get(Deal, deal_id)
        if deal is None:
            raise deal_not_found()

        creator = self.db.get(Creator, deal.creator_id)
        now = self.clock()
        number = invoice_number_for(deal.id, now.year)

        invoice = Invoice(
            deal_id=deal.id,
            invoice_number=number,
            amount=deal.deal_amount or 0,
            html=self._render(deal, creator, number, now),
            created_at=now,
        )
        self.db.add(invoice)
        deal.invoice_number = number
        try:
            self.db.commit()
        except IntegrityError:
            # Another worker generated it first
            self.db.rollback()
            return self.db.query(Invoice).filter(Invoice.deal_id == deal_id).one()

        self.db.refresh(invoice)
        logger.info(f"Generated invoice {number}", extra={"deal_id": deal_id})
        return invoice

    def _render(self, deal: Deal, creator, number: str, issued_at) -> str:
        creator_name = creator.display_name if creator else "Creator"
        items = "".join(
            f"<li>{html.escape(item)}</li>" for item in parse_deliverables(deal.deliverables)
        ) or "<li>As per agreement</li>"
        amount = deal.deal_amount or 0

        return (
            "<html><body>"
            f"<h1>Invoice {html.escape(number)}</h1>"
            f"<p>Date: {issued_at.date().isoformat()}</p>"
            f"<p>From: {html.escape(creator_name)}</p>"
            f"<p>Bill to: {html.escape(deal.brand_name or 'Brand')}</p>"
            f"<h2>Deliverables</h2><ul>{items}</ul>"
            f"<p><strong>Total: {amount:,.2f}</strong></p>"
            "<p>This invoice is generated automatically after contract acceptance "
            "via OTP verification.</p>"
            "</body></html>"
        )
