from typing import Any

from app.models.payment_verification_log import PaymentVerificationLog
from app.schemas.payments import VerificationOutcome, VerificationStep


class VerificationLogService:
    """Append-only verification trail; entries are never updated or removed."""

    def __init__(self, repository) -> None:
        self.repository = repository

    async def add_entry(
        self,
        payment_request_id: str,
        step: VerificationStep | str,
        outcome: VerificationOutcome | str,
        details: dict[str, Any] | None = None,
        error: str | None = None,
        processed_by: str | None = None,
    ) -> PaymentVerificationLog:
        return await self.repository.add_verification_log(
            payment_request_id,
            VerificationStep(step).value,
            VerificationOutcome(outcome).value,
            details or {},
            error_message=error,
            processed_by=processed_by,
        )
