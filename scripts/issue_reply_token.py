"""
Mint a brand reply link for an existing deal.
Run: python -m scripts.issue_reply_token <deal_id> [ttl_days]
"""
import sys

from collabdesk.core.config import settings
from collabdesk.services.reply_tokens import ReplyTokenService
from collabdesk.db.session import SessionLocal


def issue_reply_token(deal_id: str, ttl_days: int):
    """Create a reply token and print the brand-facing URL."""
    db = SessionLocal()

    try:
        token = ReplyTokenService(db).issue(deal_id, ttl_days)
        expires = token.expires_at.isoformat() if token.expires_at else "never"
        print(f"✅ Reply token created for deal {deal_id}")
        print(f"   Link:    {settings.FRONTEND_URL}/brand-reply/{token.id}")
        print(f"   Expires: {expires}")
        return token
    except Exception as e:
        db.rollback()
        print(f"❌ Error: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    ttl = int(sys.argv[2]) if len(sys.argv) > 2 else settings.REPLY_TOKEN_TTL_DAYS
    issue_reply_token(sys.argv[1], ttl)
