"""
Signing OTPs.

A signer proves control of their email address before signing. Codes are
6 digits, stored only as SHA-256 hashes, and expire after OTP_TTL_MINUTES.
Send rate limits are counted from persisted rows so they hold across
workers.
"""
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from collabdesk.core.config import settings
from collabdesk.core.errors import CollabDeskError, RequestValidationError, SigningError, deal_not_found
from collabdesk.core.logging import get_logger, security_logger
from collabdesk.core.timeutil import Clock, ensure_utc, utcnow
from collabdesk.db.models import Creator, Deal, SignerRole, SigningOtp
from collabdesk.services.email_client import EmailClient, is_valid_email

logger = get_logger(__name__)

OTP_EMAIL_SUBJECT = "Your signing verification code"


def generate_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class OtpService:
    def __init__(
        self,
        db: Session,
        email_client: EmailClient,
        clock: Clock = utcnow,
        code_factory: Callable[[], str] = generate_code,
    ):
        self.db = db
        self.email_client = email_client
        self.clock = clock
        self.code_factory = code_factory

    def send(self, deal_id: str, role: SignerRole, email: Optional[str]) -> SigningOtp:
        """Issue a code for (deal, role) and email it to the authorized signer."""
        email = (email or "").strip()
        if not is_valid_email(email):
            raise RequestValidationError("A valid email address is required", code="EMAIL_REQUIRED")

        deal = self.db.get(Deal, deal_id)
        if deal is None:
            raise deal_not_found()

        expected = self._authorized_email(deal, role)
        if not expected or expected.lower() != email.lower():
            security_logger.log("otp_send", "EMAIL_MISMATCH", deal_id=deal_id, signer_role=role.value)
            raise SigningError("Email does not match authorized signer", code="EMAIL_MISMATCH", status_code=403)

        now = self.clock()
        self._check_send_rate(deal_id, role, now)

        code = self.code_factory()
        otp = SigningOtp(
            deal_id=deal_id,
            signer_role=role.value,
            email=email,
            otp_hash=hash_code(code),
            expires_at=now + timedelta(minutes=settings.OTP_TTL_MINUTES),
            attempts=0,
            created_at=now,
        )
        self.db.add(otp)
        self.db.commit()

        result = self.email_client.send_email(email, OTP_EMAIL_SUBJECT, self._render(code))
        if not result.success:
            self.db.delete(otp)
            self.db.commit()
            logger.error(f"OTP email failed: {result.error}", extra={"deal_id": deal_id, "signer_role": role.value})
            raise CollabDeskError("Failed to send OTP email", code="OTP_SEND_FAILED", status_code=502)

        logger.info("OTP sent", extra={"deal_id": deal_id, "signer_role": role.value})
        return otp

    def verify(self, deal_id: str, role: SignerRole, code: Optional[str]) -> datetime:
        """Check ``code`` against the latest OTP. Returns the verification time."""
        code = (code or "").strip()
        if not code:
            raise RequestValidationError("OTP is required", code="OTP_REQUIRED")

        otp = (
            self.db.query(SigningOtp)
            .filter(SigningOtp.deal_id == deal_id, SigningOtp.signer_role == role.value)
            .order_by(desc(SigningOtp.created_at))
            .first()
        )
        if otp is None:
            raise SigningError("No OTP found. Please request a new one.", code="OTP_NOT_FOUND")

        now = self.clock()
        if now > ensure_utc(otp.expires_at):
            raise SigningError("OTP has expired. Please request a new one.", code="OTP_EXPIRED")

        if otp.verified_at is not None:
            raise SigningError("OTP has already been used. Please request a new one.", code="OTP_ALREADY_USED")

        if otp.attempts >= settings.OTP_MAX_ATTEMPTS:
            security_logger.log("otp_verify", "OTP_ATTEMPTS_EXCEEDED", deal_id=deal_id, signer_role=role.value)
            raise SigningError(
                "Too many failed attempts. Please request a new OTP.",
                code="OTP_ATTEMPTS_EXCEEDED",
                status_code=429,
            )

        if not hmac.compare_digest(otp.otp_hash, hash_code(code)):
            otp.attempts += 1
            self.db.commit()
            remaining = max(settings.OTP_MAX_ATTEMPTS - otp.attempts, 0)
            raise SigningError(
                f"Invalid OTP. Please try again. {remaining} attempt(s) remaining.",
                code="OTP_INVALID",
            )

        otp.verified_at = now
        self.db.commit()
        logger.info("OTP verified", extra={"deal_id": deal_id, "signer_role": role.value})
        return now

    def latest_verification(self, deal_id: str, role: SignerRole) -> Optional[SigningOtp]:
        """Most recently verified OTP row for (deal, role), if any."""
        return (
            self.db.query(SigningOtp)
            .filter(
                SigningOtp.deal_id == deal_id,
                SigningOtp.signer_role == role.value,
                SigningOtp.verified_at.isnot(None),
            )
            .order_by(desc(SigningOtp.verified_at))
            .first()
        )

    def verified_at(self, deal_id: str, role: SignerRole) -> Optional[datetime]:
        otp = self.latest_verification(deal_id, role)
        return ensure_utc(otp.verified_at) if otp is not None else None

    # ============= HELPERS =============

    def _authorized_email(self, deal: Deal, role: SignerRole) -> Optional[str]:
        if role is SignerRole.BRAND:
            return deal.brand_email
        creator = self.db.get(Creator, deal.creator_id)
        return creator.email if creator else None

    def _check_send_rate(self, deal_id: str, role: SignerRole, now: datetime) -> None:
        recent = (
            self.db.query(SigningOtp.created_at)
            .filter(
                SigningOtp.deal_id == deal_id,
                SigningOtp.signer_role == role.value,
                SigningOtp.created_at >= now - timedelta(minutes=settings.OTP_SEND_WINDOW_MINUTES),
            )
            .order_by(desc(SigningOtp.created_at))
            .all()
        )
        if not recent:
            return

        last_sent = ensure_utc(recent[0][0])
        if now - last_sent < timedelta(seconds=settings.OTP_SEND_COOLDOWN_SECONDS):
            raise SigningError(
                "Please wait before requesting another OTP.",
                code="OTP_RATE_LIMITED",
                status_code=429,
            )
        if len(recent) >= settings.OTP_SEND_MAX_PER_WINDOW:
            raise SigningError(
                "Too many OTP requests. Please try again later.",
                code="OTP_RATE_LIMITED",
                status_code=429,
            )

    @staticmethod
    def _render(code: str) -> str:
        return (
            "<html><body>"
            "<p>Use this code to verify your email before signing the agreement:</p>"
            f"<p style=\"font-size:24px;letter-spacing:4px\"><strong>{code}</strong></p>"
            f"<p>The code expires in {settings.OTP_TTL_MINUTES} minutes. "
            "If you did not request it, you can ignore this email.</p>"
            "</body></html>"
        )
