from __future__ import annotations

from typing import Dict, Optional


class FulfillmentError(Exception):
    """Raised when a fulfillment operation fails."""

    status_code = 400

    def __init__(
        self,
        message: str,
        code: str = "fulfillment_error",
        errors: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.code = code
        self.errors = errors or {}
        super().__init__(message)

    def as_payload(self) -> Dict[str, object]:
        errors = dict(self.errors) or {self.code: self.message}
        return {"errors": errors, "code": self.code}


class ValidationError(FulfillmentError):
    status_code = 400

    def __init__(self, errors: Dict[str, str], message: str = "Invalid input."):
        super().__init__(message, code="validation_error", errors=errors)


class NotFoundError(FulfillmentError):
    status_code = 404

    def __init__(self, message: str = "Not found.", field: str = "id"):
        super().__init__(message, code="not_found", errors={field: message})


class ConflictError(FulfillmentError):
    status_code = 409


class DuplicateContribution(ConflictError):
    def __init__(self, message: str = "Supplier has already contributed to this request."):
        super().__init__(message, code="duplicate_contribution")


class FundingExceeded(ConflictError):
    def __init__(self, remaining: int):
        self.remaining = remaining
        super().__init__(
            f"Contribution exceeds remaining funding ({remaining}% available).",
            code="funding_exceeded",
        )


class InsufficientQuantity(ConflictError):
    def __init__(self, message: str = "Insufficient donation quantity remaining."):
        super().__init__(message, code="insufficient_quantity")


class DonationUnavailable(ConflictError):
    def __init__(self, message: str = "Donation is not available for allocation."):
        super().__init__(message, code="donation_unavailable")


class TransientStoreError(FulfillmentError):
    """Persistence failed; the transaction was rolled back and may be retried."""

    status_code = 503

    def __init__(self, message: str = "Storage temporarily unavailable. Please retry."):
        super().__init__(message, code="store_unavailable")
