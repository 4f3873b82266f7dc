"""
Background job definitions.
"""
from redis import Redis
from rq import Queue

from collabdesk.core.config import settings
from collabdesk.core.logging import get_logger

logger = get_logger(__name__)


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


# ============= JOB FUNCTIONS =============

def generate_invoice_job(deal_id: str):
    """Background job to generate the invoice for an OTP-verified deal."""
    from collabdesk.db.session import get_db_context
    from collabdesk.services.invoices import InvoiceService

    logger.info(f"Generating invoice for deal {deal_id}", extra={"deal_id": deal_id})
    with get_db_context() as db:
        invoice = InvoiceService(db).generate_invoice(deal_id)
        return invoice.invoice_number


def generate_contract_job(deal_id: str):
    """Background job to render the contract for an accepted deal."""
    from collabdesk.db.session import get_db_context
    from collabdesk.services.contracts import ContractService

    logger.info(f"Generating contract for deal {deal_id}", extra={"deal_id": deal_id})
    with get_db_context() as db:
        deal = ContractService(db).generate_contract(deal_id)
        return deal.contract_version


def send_brand_signed_emails_job(deal_id: str):
    """Background job to send confirmations after the brand signs."""
    from collabdesk.db.session import get_db_context
    from collabdesk.services.notifications import SigningNotifier

    logger.info(f"Sending brand-signed emails for deal {deal_id}", extra={"deal_id": deal_id})
    with get_db_context() as db:
        results = SigningNotifier(db).notify_brand_signed(deal_id)
        return {recipient: result.success for recipient, result in results.items()}


def send_creator_signed_emails_job(deal_id: str):
    """Background job to send confirmations after the creator countersigns."""
    from collabdesk.db.session import get_db_context
    from collabdesk.services.notifications import SigningNotifier

    logger.info(f"Sending creator-signed emails for deal {deal_id}", extra={"deal_id": deal_id})
    with get_db_context() as db:
        results = SigningNotifier(db).notify_creator_signed(deal_id)
        return {recipient: result.success for recipient, result in results.items()}


# ============= QUEUE HELPERS =============

class JobDispatcher:
    """
    Enqueues follow-up work for the services.

    Services receive a dispatcher at construction so tests can substitute a
    recording fake. Callers wrap these in best_effort; a Redis outage must
    not fail a brand response or a signature.
    """

    def enqueue_invoice_generation(self, deal_id: str):
        """Queue invoice generation."""
        return get_queue("default").enqueue(generate_invoice_job, deal_id)

    def enqueue_contract_generation(self, deal_id: str):
        """Queue contract generation."""
        return get_queue("default").enqueue(generate_contract_job, deal_id)

    def enqueue_brand_signed_emails(self, deal_id: str):
        """Queue brand-signed confirmation emails."""
        return get_queue("high").enqueue(send_brand_signed_emails_job, deal_id)

    def enqueue_creator_signed_emails(self, deal_id: str):
        """Queue creator-signed confirmation emails."""
        return get_queue("high").enqueue(send_creator_signed_emails_job, deal_id)
