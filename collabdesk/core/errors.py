"""
Error taxonomy shared by services and API routes.

Services raise these; `collabdesk.main` renders them as
``{"success": false, "error": <message>}`` with the carried status code.
"""
from typing import Optional

GENERIC_ERROR_MESSAGE = "An error occurred. Please try again later."
LINK_INVALID_MESSAGE = "This link is no longer valid. Please contact the creator."
LINK_EXPIRED_MESSAGE = "This request has expired. Please ask the creator to resend."


class CollabDeskError(Exception):
    """Base error with a stable code, a public message and an HTTP status."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class RequestValidationError(CollabDeskError):
    """Malformed input, rejected before any lookup."""

    status_code = 400
    code = "VALIDATION_ERROR"


class LinkUnavailableError(CollabDeskError):
    """Token not found, revoked, malformed or expired. Message is always neutral."""

    status_code = 404
    code = "NOT_FOUND"


class NotFoundError(CollabDeskError):
    status_code = 404
    code = "NOT_FOUND"


class SigningError(CollabDeskError):
    """Integrity/state violation in the signing workflow (specific message)."""

    status_code = 400
    code = "SIGNING_ERROR"


class InfrastructureError(CollabDeskError):
    """Datastore or collaborator failure. Detail stays in server logs."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = GENERIC_ERROR_MESSAGE):
        super().__init__(message)


# ============= SIGNING ERROR CONSTRUCTORS =============

def otp_required() -> SigningError:
    return SigningError("OTP verification is required before signing", code="OTP_REQUIRED", status_code=400)


def already_signed(role: str) -> SigningError:
    suffix = "" if role == "brand" else f" by {role}"
    return SigningError(f"Contract has already been signed{suffix}", code="ALREADY_SIGNED", status_code=409)


def brand_must_sign_first() -> SigningError:
    return SigningError("Brand must sign the contract first", code="BRAND_MUST_SIGN_FIRST", status_code=409)


def forbidden() -> SigningError:
    return SigningError("You can only sign contracts for your own deals", code="FORBIDDEN", status_code=403)


def deal_mismatch() -> SigningError:
    return SigningError("Deal ID mismatch", code="DEAL_MISMATCH", status_code=400)


def deal_not_found() -> NotFoundError:
    return NotFoundError("Deal not found", code="DEAL_NOT_FOUND")


def email_mismatch() -> SigningError:
    return SigningError(
        "Signer email does not match the verified email",
        code="EMAIL_MISMATCH",
        status_code=403,
    )
