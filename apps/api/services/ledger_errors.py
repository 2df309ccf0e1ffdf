"""Error taxonomy for the credits and subscription ledger."""

from typing import Optional

from fastapi import HTTPException


class InsufficientCreditsError(HTTPException):
    """Terminal rejection: the user has no credits and no active subscription."""

    def __init__(self, credits: int = 0):
        super().__init__(
            status_code=402,
            detail={
                "error": "insufficient_credits",
                "message": "You need more credits",
                "credits": int(credits),
            },
        )


class LedgerNotFoundError(HTTPException):
    """A user or project reference did not resolve."""

    def __init__(self, resource: str, reference: Optional[str] = None):
        self.resource = resource
        self.reference = reference
        super().__init__(
            status_code=404,
            detail={
                "error": f"{resource}_not_found",
                "message": f"{resource.capitalize()} not found",
            },
        )


class InvalidEventPayloadError(HTTPException):
    def __init__(self, message: str = "Invalid event payload"):
        super().__init__(status_code=400, detail={"error": "invalid_payload", "message": message})


class SignatureVerificationFailedError(HTTPException):
    def __init__(self, message: str = "Invalid signature"):
        super().__init__(status_code=400, detail={"error": "invalid_signature", "message": message})


class WebhookNotConfiguredError(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=503,
            detail={"error": "webhook_not_configured", "message": "Webhook secret is not configured."},
        )


class PersistenceConflictError(Exception):
    """A compare-and-set ledger update lost a race against a concurrent write."""
