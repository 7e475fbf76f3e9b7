"""
PaymentService: orchestrates out-of-band purchases of books and bundles.

Responsibilities:
- Creating payment requests and the wallet deep link
- Collecting evidence (manual transaction id, receipt OCR)
- Running auto-matching and recording each pass in the verification log
- Admin approval / rejection, library grant and approval email
- Cancellation, read-only queries and the admin review listing

Every public operation returns ServiceResult; PaymentError subclasses become
success=False with a readable message. OCR and matching failures degrade the
result instead of failing the operation.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings as app_settings
from app.schemas.payments import (
    NON_TERMINAL_STATUSES,
    AutoMatchResult,
    CreatePaymentRequestData,
    OCROptions,
    PaymentConfirmationResult,
    PaymentFilters,
    PaymentInitiationResult,
    PaymentListPage,
    PaymentSortField,
    PaymentStatus,
    ReceiptProcessingResult,
    ServiceResult,
    VerificationMethod,
    VerificationOutcome,
    VerificationStep,
)
from app.services.audit.service import VerificationLogService
from app.services.errors import (
    ConflictError,
    NotFoundError,
    PaymentError,
    PersistenceError,
    ValidationError,
)
from app.services.matching import AutoMatchingEngine, stored_result
from app.services.notifications.service import NotificationService
from app.services.ocr import OCRPipeline
from app.services.payments.repository import PaymentRepository
from app.utils.metrics import auto_match_total, library_grant_failures_total, payment_events_total

logger = logging.getLogger(__name__)

# Source states each transition may start from
CLICKABLE_STATUSES = frozenset({
    PaymentStatus.CREATED.value,
    PaymentStatus.PAYMENT_INITIATED.value,
})
EVIDENCE_STATUSES = NON_TERMINAL_STATUSES
VERIFIABLE_STATUSES = NON_TERMINAL_STATUSES
CANCELLABLE_STATUSES = NON_TERMINAL_STATUSES

ADMIN_METHODS = frozenset({
    VerificationMethod.MANUAL.value,
    VerificationMethod.BANK_STATEMENT.value,
    VerificationMethod.SMS_VERIFICATION.value,
})

APPROVAL_EMAIL_SUBJECT = "Your purchase has been approved"
MAX_PAGE_SIZE = 100


def build_deep_link(template: str, payment_request: Any) -> str:
    """Substitute {amount}, {reference} and {currency} in a wallet deep link template."""
    return (
        template
        .replace("{amount}", str(payment_request.amount))
        .replace("{reference}", str(payment_request.id))
        .replace("{currency}", str(payment_request.currency))
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    def __init__(
        self,
        repository: PaymentRepository | None = None,
        ocr_pipeline: OCRPipeline | None = None,
        matching_engine: AutoMatchingEngine | None = None,
        notifications: NotificationService | None = None,
        settings=None,
    ) -> None:
        self.settings = settings or app_settings
        self.repository = repository or PaymentRepository()
        self.ocr_pipeline = ocr_pipeline or OCRPipeline.from_settings(self.settings)
        self.matching_engine = matching_engine or AutoMatchingEngine.from_settings(
            self.settings, self.repository.get_auto_matching_rules
        )
        self.notifications = notifications or NotificationService(self.settings)
        self.verification_log = VerificationLogService(self.repository)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initiate_payment(
        self,
        user_id: str,
        data: CreatePaymentRequestData | dict[str, Any],
    ) -> ServiceResult[PaymentInitiationResult]:
        try:
            if not isinstance(data, CreatePaymentRequestData):
                try:
                    data = CreatePaymentRequestData.model_validate(data)
                except PydanticValidationError as e:
                    raise ValidationError(f"Invalid payment request: {e.errors(include_url=False)}") from e

            item_type = data.item_type.value
            if await self.repository.has_existing_payment_request(user_id, item_type, data.item_id):
                raise ConflictError(
                    "You already have a pending payment request for this item",
                    detail={"user_id": user_id, "item_id": data.item_id},
                )

            payment_request = await self.repository.create_payment_request(
                user_id,
                item_type=item_type,
                item_id=data.item_id,
                amount=Decimal(str(data.amount)),
                currency=data.currency or self.settings.default_currency,
                selected_wallet_id=data.selected_wallet_id,
                status=PaymentStatus.CREATED.value,
            )
        except PaymentError as e:
            return self._fail("initiate_payment", e, user_id=user_id)

        wallet_config = None
        deep_link_url = None
        if data.selected_wallet_id:
            wallet_config = await self._find_wallet(data.selected_wallet_id)
            if wallet_config is not None:
                deep_link_url = build_deep_link(wallet_config.deep_link_template, payment_request)

        payment_events_total.labels(event="initiated").inc()
        logger.info(
            "payment_initiated",
            extra={
                "payment_request_id": payment_request.id,
                "user_id": user_id,
                "item_type": item_type,
                "item_id": data.item_id,
            },
        )
        return ServiceResult.ok(
            PaymentInitiationResult(
                payment_request=payment_request,
                wallet_config=wallet_config,
                deep_link_url=deep_link_url,
            )
        )

    async def record_deep_link_click(self, payment_request_id: str) -> ServiceResult[bool]:
        try:
            await self.repository.update_payment_request(
                payment_request_id,
                {
                    "deep_link_clicked_at": _now(),
                    "status": PaymentStatus.PAYMENT_INITIATED.value,
                },
                allowed_statuses=CLICKABLE_STATUSES,
            )
            await self.verification_log.add_entry(
                payment_request_id,
                VerificationStep.AUTO_MATCH,
                VerificationOutcome.SUCCESS,
                {"action": "deep_link_clicked"},
            )
        except PaymentError as e:
            return self._fail("record_deep_link_click", e, payment_request_id=payment_request_id)

        payment_events_total.labels(event="deep_link_clicked").inc()
        logger.info("deep_link_clicked", extra={"payment_request_id": payment_request_id})
        return ServiceResult.ok(True)

    async def submit_transaction_id(
        self,
        payment_request_id: str,
        tx_id: str,
        amount: float | None = None,
    ) -> ServiceResult[PaymentConfirmationResult]:
        try:
            tx_id = (tx_id or "").strip()
            if not tx_id:
                raise ValidationError("Transaction ID is required")
            if amount is not None and amount <= 0:
                raise ValidationError("Amount must be greater than zero")

            updates: dict[str, Any] = {
                "manual_tx_id": tx_id,
                # Tentative; a non-match leaves it for manual verification
                "status": PaymentStatus.PAYMENT_VERIFIED.value,
            }
            if amount is not None:
                updates["manual_amount"] = Decimal(str(amount))

            payment_request = await self.repository.update_payment_request(
                payment_request_id,
                updates,
                allowed_statuses=EVIDENCE_STATUSES,
            )
        except PaymentError as e:
            return self._fail("submit_transaction_id", e, payment_request_id=payment_request_id)

        payment_events_total.labels(event="tx_submitted").inc()
        match = await self._run_auto_matching(payment_request)

        if match.matched:
            message = f"Payment automatically verified with {match.confidence * 100:.0f}% confidence"
        else:
            message = "Payment submitted for manual verification"

        return ServiceResult.ok(
            PaymentConfirmationResult(
                auto_matched=match.matched,
                confidence=match.confidence,
                requires_manual_verification=not match.matched,
                message=message,
            )
        )

    async def process_receipt_upload(
        self,
        payment_request_id: str,
        image: bytes,
    ) -> ServiceResult[ReceiptProcessingResult]:
        try:
            if not image:
                raise ValidationError("Receipt image is empty")

            payment_request = await self._get_request(payment_request_id)
            if payment_request.status not in EVIDENCE_STATUSES:
                raise ValidationError(
                    f"Payment request is {payment_request.status}",
                    detail={"payment_request_id": payment_request_id, "status": payment_request.status},
                )

            ocr = await self.ocr_pipeline.extract(
                image,
                OCROptions(expected_amount=float(payment_request.amount)),
            )

            payment_request = await self.repository.update_payment_request(
                payment_request_id,
                {
                    "ocr_processed_at": _now(),
                    "ocr_extracted_tx_id": ocr.extracted_tx_id,
                    "ocr_extracted_amount": (
                        Decimal(str(ocr.extracted_amount)) if ocr.extracted_amount is not None else None
                    ),
                    "ocr_confidence_score": ocr.confidence_score,
                    "ocr_raw_text": ocr.raw_text,
                },
                allowed_statuses=EVIDENCE_STATUSES,
            )
        except PaymentError as e:
            return self._fail("process_receipt_upload", e, payment_request_id=payment_request_id)

        payment_events_total.labels(event="receipt_processed").inc()
        logger.info(
            "receipt_processed",
            extra={
                "payment_request_id": payment_request_id,
                "provider": ocr.provider,
                "confidence": ocr.confidence_score,
                "latency_ms": ocr.processing_time_ms,
            },
        )

        auto_matched = False
        if ocr.extracted_tx_id or ocr.extracted_amount is not None:
            match = await self._run_auto_matching(payment_request)
            auto_matched = match.matched

        return ServiceResult.ok(ReceiptProcessingResult(ocr=ocr, auto_matched=auto_matched))

    async def admin_verify_payment(
        self,
        payment_request_id: str,
        admin_id: str,
        verification_method: VerificationMethod | str,
        approve: bool,
        notes: str | None = None,
    ) -> ServiceResult[Any]:
        method = getattr(verification_method, "value", verification_method)
        try:
            if method not in ADMIN_METHODS:
                raise ValidationError(f"Unsupported verification method: {method}")

            status = PaymentStatus.COMPLETED.value if approve else PaymentStatus.FAILED.value
            payment_request = await self.repository.update_payment_request(
                payment_request_id,
                {
                    "status": status,
                    "admin_verified_at": _now(),
                    "admin_verified_by": admin_id,
                    "admin_notes": notes,
                    "verification_method": method,
                },
                allowed_statuses=VERIFIABLE_STATUSES,
            )
        except PaymentError as e:
            return self._fail("admin_verify_payment", e, payment_request_id=payment_request_id)

        grant_error = None
        if approve:
            grant_error = await self._grant_purchase(payment_request)
            await self._send_approval_email(payment_request)

        try:
            await self.verification_log.add_entry(
                payment_request_id,
                VerificationStep.ADMIN_VERIFICATION,
                VerificationOutcome.SUCCESS if approve else VerificationOutcome.FAILED,
                {
                    "verification_method": method,
                    "admin_user_id": admin_id,
                    "notes": notes,
                },
                error=grant_error,
                processed_by=admin_id,
            )
        except PersistenceError as e:
            logger.error(
                "admin_verification_log_failed",
                extra={"payment_request_id": payment_request_id, "admin_id": admin_id, "error": e.message},
            )

        event = "approved" if approve else "rejected"
        payment_events_total.labels(event=event).inc()
        logger.info(
            f"payment_{event}",
            extra={"payment_request_id": payment_request_id, "admin_id": admin_id, "status": status},
        )
        return ServiceResult.ok(payment_request, message=f"Payment {event}")

    async def cancel_payment_request(self, payment_request_id: str) -> ServiceResult[bool]:
        try:
            await self.repository.update_payment_request(
                payment_request_id,
                {"status": PaymentStatus.CANCELLED.value},
                allowed_statuses=CANCELLABLE_STATUSES,
            )
            await self.verification_log.add_entry(
                payment_request_id,
                VerificationStep.AUTO_MATCH,
                VerificationOutcome.SUCCESS,
                {"action": "payment_cancelled"},
            )
        except PaymentError as e:
            return self._fail("cancel_payment_request", e, payment_request_id=payment_request_id)

        payment_events_total.labels(event="cancelled").inc()
        logger.info("payment_cancelled", extra={"payment_request_id": payment_request_id})
        return ServiceResult.ok(True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_payment_request(self, payment_request_id: str) -> ServiceResult[Any]:
        try:
            return ServiceResult.ok(await self._get_request(payment_request_id))
        except PaymentError as e:
            return self._fail("get_payment_request", e, payment_request_id=payment_request_id)

    async def get_user_payment_requests(self, user_id: str, limit: int = 20) -> ServiceResult[list]:
        try:
            return ServiceResult.ok(await self.repository.get_user_payment_requests(user_id, limit))
        except PaymentError as e:
            return self._fail("get_user_payment_requests", e, user_id=user_id)

    async def list_payment_requests(
        self,
        filters: PaymentFilters | dict[str, Any] | None = None,
        sort_by: str = PaymentSortField.CREATED_AT.value,
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> ServiceResult[PaymentListPage]:
        """Admin review listing: filters, sort and 1-based pagination."""
        try:
            if filters is not None and not isinstance(filters, PaymentFilters):
                try:
                    filters = PaymentFilters.model_validate(filters)
                except PydanticValidationError as e:
                    raise ValidationError(f"Invalid filters: {e.errors(include_url=False)}") from e
            try:
                sort_field = PaymentSortField(sort_by)
            except ValueError as e:
                raise ValidationError(f"Cannot sort by {sort_by}") from e
            if sort_order not in ("asc", "desc"):
                raise ValidationError("sort_order must be 'asc' or 'desc'")
            if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
                raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")

            offset = (page - 1) * limit
            items, total = await self.repository.get_payment_requests(
                filters,
                sort_by=sort_field,
                descending=sort_order == "desc",
                offset=offset,
                limit=limit,
            )
        except PaymentError as e:
            return self._fail("list_payment_requests", e)

        return ServiceResult.ok(
            PaymentListPage(
                items=items,
                total=total,
                page=page,
                limit=limit,
                has_more=total > offset + limit,
            )
        )

    async def get_verification_queue(self, page: int = 1, limit: int = 20) -> ServiceResult[PaymentListPage]:
        """Requests waiting for an admin decision, oldest first."""
        return await self.list_payment_requests(
            PaymentFilters(statuses=[PaymentStatus.PAYMENT_VERIFIED]),
            sort_by=PaymentSortField.CREATED_AT.value,
            sort_order="asc",
            page=page,
            limit=limit,
        )

    async def get_active_wallets(self) -> ServiceResult[list]:
        try:
            return ServiceResult.ok(await self.repository.get_active_wallet_configs())
        except PaymentError as e:
            return self._fail("get_active_wallets", e)

    async def get_payment_stats(self) -> ServiceResult[Any]:
        try:
            return ServiceResult.ok(await self.repository.get_payment_stats())
        except PaymentError as e:
            return self._fail("get_payment_stats", e)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_request(self, payment_request_id: str):
        payment_request = await self.repository.get_payment_request_by_id(payment_request_id)
        if payment_request is None:
            raise NotFoundError(
                "Payment request not found",
                detail={"payment_request_id": payment_request_id},
            )
        return payment_request

    async def _find_wallet(self, wallet_id: str):
        try:
            wallets = await self.repository.get_active_wallet_configs()
        except PersistenceError as e:
            logger.warning("wallet_lookup_failed", extra={"error": e.message})
            return None
        return next((w for w in wallets if str(w.id) == str(wallet_id)), None)

    async def _run_auto_matching(self, payment_request) -> AutoMatchResult:
        """
        One auto-matching pass over the request's current evidence.

        An already matched request returns its stored result with no writes.
        Otherwise the outcome is persisted (on match) and appended to the
        verification log. Never raises.
        """
        payment_request_id = payment_request.id
        if payment_request.auto_matched_at is not None:
            auto_match_total.labels(outcome="already_matched").inc()
            return stored_result(payment_request)

        try:
            history = await self.repository.get_user_payment_requests(
                payment_request.user_id, self.matching_engine.history_limit
            )
            context = self.matching_engine.build_context(payment_request, history)
            result = await self.matching_engine.evaluate(context)
            if result.matched:
                await self.repository.update_payment_request(
                    payment_request_id,
                    {
                        "auto_matched_at": _now(),
                        "auto_match_confidence": result.confidence,
                        "auto_match_reason": result.reason,
                        "auto_match_rule_id": result.rule_id,
                        "status": PaymentStatus.PAYMENT_VERIFIED.value,
                        "verification_method": VerificationMethod.AUTO.value,
                    },
                    allowed_statuses=EVIDENCE_STATUSES,
                )
        except Exception as e:
            logger.exception("auto_match_failed", extra={"payment_request_id": payment_request_id})
            auto_match_total.labels(outcome="error").inc()
            result = AutoMatchResult(matched=False, confidence=0.0, reason=f"Error: {e}")
        else:
            auto_match_total.labels(outcome="matched" if result.matched else "unmatched").inc()

        try:
            await self.verification_log.add_entry(
                payment_request_id,
                VerificationStep.AUTO_MATCH,
                VerificationOutcome.SUCCESS if result.matched else VerificationOutcome.FAILED,
                {
                    "confidence": result.confidence,
                    "rule_id": result.rule_id,
                    "reason": result.reason,
                },
                error=None if result.matched else result.reason,
            )
        except PersistenceError as e:
            logger.error("auto_match_log_failed", extra={"payment_request_id": payment_request_id, "error": e.message})

        logger.info(
            "auto_match_evaluated",
            extra={
                "payment_request_id": payment_request_id,
                "matched": result.matched,
                "confidence": result.confidence,
                "rule_id": result.rule_id,
                "reason": result.reason,
            },
        )
        return result

    async def _grant_purchase(self, payment_request) -> str | None:
        """Library grant after approval. Returns the error message on failure; approval stands."""
        try:
            await self.repository.grant_purchase_to_user(payment_request.id)
        except PaymentError as e:
            library_grant_failures_total.inc()
            logger.error(
                "library_grant_failed",
                extra={
                    "payment_request_id": payment_request.id,
                    "user_id": payment_request.user_id,
                    "error": e.message,
                },
            )
            return e.message
        return None

    async def _send_approval_email(self, payment_request) -> None:
        try:
            email = await self.repository.get_user_email(payment_request.user_id)
        except PersistenceError as e:
            logger.warning(
                "approval_email_skipped",
                extra={"payment_request_id": payment_request.id, "error": e.message},
            )
            return
        body = (
            f"Your payment for {payment_request.item_type} {payment_request.item_id} has been approved "
            f"and access granted. Request ID: {payment_request.id}"
        )
        await self.notifications.send_email_notification(email, APPROVAL_EMAIL_SUBJECT, body)

    def _fail(self, operation: str, error: PaymentError, **context: Any) -> ServiceResult:
        level = logging.ERROR if isinstance(error, PersistenceError) else logging.WARNING
        logger.log(level, f"{operation}_failed", extra={**context, "error": error.message})
        return ServiceResult.fail(error.message)
