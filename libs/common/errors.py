"""Domain error taxonomy for the commerce ledger.

Every error is an ``HTTPException`` so the service layer can raise it the same
way it raises plain HTTP errors, and the HTTP layer needs no translation.
"""

from typing import Optional

from fastapi import HTTPException, status


class CommerceError(HTTPException):
    """Base class for ledger errors. ``detail`` is the user-facing message."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request could not be processed."

    def __init__(self, detail: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(
            status_code=status_code or self.status_code,
            detail=detail or self.default_detail,
        )

    def __str__(self) -> str:
        return str(self.detail)


class ValidationError(CommerceError):
    """Bad input shape or range. No state change."""

    default_detail = "Invalid request."


class NotFoundError(CommerceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found."


class InsufficientStock(CommerceError):
    """Stock check failed under the variant row lock."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Insufficient stock."


class CouponIneligible(CommerceError):
    default_detail = "This coupon cannot be applied."


class InsufficientPoints(CommerceError):
    default_detail = "Insufficient loyalty points."


class GatewayFailure(CommerceError):
    """External payment call failed or returned non-2xx."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment gateway request failed."


class PersistenceFailure(CommerceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Unable to save changes right now."
