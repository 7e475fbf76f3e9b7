"""
PaymentRepository: async SQLAlchemy access to payment requests, wallets, rules,
the verification log and the buyer library.

Every method opens its own short session and commits before returning; ORM objects
come back detached (expire_on_commit=False). SQLAlchemyError is surfaced as
PersistenceError, a unique-index violation on insert as ConflictError.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.auto_matching_rule import AutoMatchingRule
from app.models.library_entry import LibraryEntry
from app.models.payment_request import PaymentRequest
from app.models.payment_verification_log import PaymentVerificationLog
from app.models.user import User
from app.models.wallet_config import WalletConfig
from app.schemas.payments import (
    NON_TERMINAL_STATUSES,
    PaymentFilters,
    PaymentSortField,
    PaymentStats,
    PaymentStatus,
)
from app.services.errors import ConflictError, NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

# Fields an automatic pass may write only while auto_matched_at is still empty
AUTO_MATCH_FIELDS = frozenset({
    "auto_matched_at",
    "auto_match_confidence",
    "auto_match_reason",
    "auto_match_rule_id",
})

PROCESSING_TIME_SAMPLE = 100

SORT_COLUMNS = {
    PaymentSortField.CREATED_AT: PaymentRequest.created_at,
    PaymentSortField.AMOUNT: PaymentRequest.amount,
    PaymentSortField.STATUS: PaymentRequest.status,
    PaymentSortField.AUTO_MATCH_CONFIDENCE: PaymentRequest.auto_match_confidence,
}


def payment_filter_conditions(filters: PaymentFilters) -> list:
    """WHERE clauses for a review-queue listing. wallet_types needs the wallet_config join."""
    conditions = []
    if filters.statuses:
        conditions.append(PaymentRequest.status.in_([s.value for s in filters.statuses]))
    if filters.wallet_types:
        conditions.append(WalletConfig.wallet_type.in_(filters.wallet_types))
    if filters.verification_methods:
        conditions.append(
            PaymentRequest.verification_method.in_([m.value for m in filters.verification_methods])
        )
    if filters.created_from is not None:
        conditions.append(PaymentRequest.created_at >= filters.created_from)
    if filters.created_to is not None:
        conditions.append(PaymentRequest.created_at <= filters.created_to)
    if filters.min_amount is not None:
        conditions.append(PaymentRequest.amount >= filters.min_amount)
    if filters.max_amount is not None:
        conditions.append(PaymentRequest.amount <= filters.max_amount)
    if filters.auto_matched is True:
        conditions.append(PaymentRequest.auto_matched_at.is_not(None))
    elif filters.auto_matched is False:
        conditions.append(PaymentRequest.auto_matched_at.is_(None))
    if filters.search_query:
        pattern = f"%{filters.search_query}%"
        conditions.append(
            or_(
                PaymentRequest.manual_tx_id.ilike(pattern),
                PaymentRequest.ocr_extracted_tx_id.ilike(pattern),
            )
        )
    return conditions


class PaymentRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from app.db.session import get_session_maker

            session_factory = get_session_maker()
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Payment requests
    # ------------------------------------------------------------------

    async def create_payment_request(self, user_id: str, **fields: Any) -> PaymentRequest:
        request = PaymentRequest(user_id=user_id, **fields)
        try:
            async with self._session_factory() as db:
                db.add(request)
                await db.commit()
        except IntegrityError as e:
            raise ConflictError(
                "You already have a pending payment request for this item",
                detail={"user_id": user_id, "item_id": fields.get("item_id")},
            ) from e
        except SQLAlchemyError as e:
            logger.exception("payment_request_create_failed", extra={"user_id": user_id})
            raise PersistenceError("Failed to create payment request") from e
        return request

    async def update_payment_request(
        self,
        payment_request_id: str,
        updates: dict[str, Any],
        *,
        allowed_statuses: Iterable[str] | None = None,
    ) -> PaymentRequest:
        """
        Apply updates under a row lock.

        allowed_statuses: the request must currently be in one of these, otherwise
        ValidationError (illegal transition). Auto-match fields are dropped once
        auto_matched_at is set.
        """
        try:
            async with self._session_factory() as db:
                request = await db.get(PaymentRequest, payment_request_id, with_for_update=True)
                if request is None:
                    raise NotFoundError(
                        "Payment request not found",
                        detail={"payment_request_id": payment_request_id},
                    )
                if allowed_statuses is not None and request.status not in set(allowed_statuses):
                    raise ValidationError(
                        f"Payment request is {request.status}",
                        detail={"payment_request_id": payment_request_id, "status": request.status},
                    )

                if request.auto_matched_at is not None:
                    dropped = AUTO_MATCH_FIELDS.intersection(updates)
                    if dropped:
                        logger.warning(
                            "auto_match_overwrite_ignored",
                            extra={"payment_request_id": payment_request_id},
                        )
                    updates = {k: v for k, v in updates.items() if k not in AUTO_MATCH_FIELDS}

                for key, value in updates.items():
                    setattr(request, key, value)
                await db.commit()
                return request
        except SQLAlchemyError as e:
            logger.exception("payment_request_update_failed", extra={"payment_request_id": payment_request_id})
            raise PersistenceError("Failed to update payment request") from e

    async def get_payment_request_by_id(self, payment_request_id: str) -> PaymentRequest | None:
        try:
            async with self._session_factory() as db:
                return await db.get(PaymentRequest, payment_request_id)
        except SQLAlchemyError as e:
            logger.exception("payment_request_get_failed", extra={"payment_request_id": payment_request_id})
            raise PersistenceError("Failed to fetch payment request") from e

    async def get_user_payment_requests(self, user_id: str, limit: int = 20) -> list[PaymentRequest]:
        stmt = (
            select(PaymentRequest)
            .where(PaymentRequest.user_id == user_id)
            .order_by(PaymentRequest.created_at.desc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as db:
                return list((await db.scalars(stmt)).all())
        except SQLAlchemyError as e:
            logger.exception("user_payment_requests_get_failed", extra={"user_id": user_id})
            raise PersistenceError("Failed to fetch payment requests") from e

    async def get_payment_requests(
        self,
        filters: PaymentFilters | None = None,
        sort_by: PaymentSortField = PaymentSortField.CREATED_AT,
        descending: bool = True,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[PaymentRequest], int]:
        """Filtered, sorted page of payment requests plus the total match count."""
        filters = filters or PaymentFilters()
        stmt = select(PaymentRequest)
        if filters.wallet_types:
            stmt = stmt.join(WalletConfig, PaymentRequest.selected_wallet_id == WalletConfig.id)
        stmt = stmt.where(*payment_filter_conditions(filters))

        column = SORT_COLUMNS[PaymentSortField(sort_by)]
        page_stmt = (
            stmt.order_by(column.desc() if descending else column.asc(), PaymentRequest.id)
            .offset(offset)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(stmt.subquery())
        try:
            async with self._session_factory() as db:
                total = await db.scalar(count_stmt)
                rows = list((await db.scalars(page_stmt)).all())
        except SQLAlchemyError as e:
            logger.exception("payment_requests_list_failed")
            raise PersistenceError("Failed to fetch payment requests") from e
        return rows, int(total or 0)

    async def has_existing_payment_request(self, user_id: str, item_type: str, item_id: str) -> bool:
        stmt = (
            select(PaymentRequest.id)
            .where(
                PaymentRequest.user_id == user_id,
                PaymentRequest.item_type == item_type,
                PaymentRequest.item_id == item_id,
                PaymentRequest.status.in_(NON_TERMINAL_STATUSES),
            )
            .limit(1)
        )
        try:
            async with self._session_factory() as db:
                return (await db.scalar(stmt)) is not None
        except SQLAlchemyError as e:
            logger.exception("existing_payment_request_check_failed", extra={"user_id": user_id})
            raise PersistenceError("Failed to check existing payment requests") from e

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_active_wallet_configs(self) -> list[WalletConfig]:
        stmt = (
            select(WalletConfig)
            .where(WalletConfig.is_active.is_(True))
            .order_by(WalletConfig.display_order, WalletConfig.wallet_name)
        )
        try:
            async with self._session_factory() as db:
                return list((await db.scalars(stmt)).all())
        except SQLAlchemyError as e:
            logger.exception("wallet_configs_get_failed")
            raise PersistenceError("Failed to fetch wallet configurations") from e

    async def get_auto_matching_rules(self) -> list[AutoMatchingRule]:
        stmt = (
            select(AutoMatchingRule)
            .where(AutoMatchingRule.is_active.is_(True))
            .order_by(AutoMatchingRule.priority.desc(), AutoMatchingRule.created_at)
        )
        try:
            async with self._session_factory() as db:
                return list((await db.scalars(stmt)).all())
        except SQLAlchemyError as e:
            logger.exception("auto_matching_rules_get_failed")
            raise PersistenceError("Failed to fetch auto-matching rules") from e

    # ------------------------------------------------------------------
    # Verification log / library / profiles
    # ------------------------------------------------------------------

    async def add_verification_log(
        self,
        payment_request_id: str,
        verification_type: str,
        status: str,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
        processed_by: str | None = None,
    ) -> PaymentVerificationLog:
        entry = PaymentVerificationLog(
            payment_request_id=payment_request_id,
            verification_type=verification_type,
            status=status,
            details=details or {},
            error_message=error_message,
            processed_by=processed_by,
        )
        try:
            async with self._session_factory() as db:
                db.add(entry)
                await db.commit()
        except SQLAlchemyError as e:
            logger.exception("verification_log_add_failed", extra={"payment_request_id": payment_request_id})
            raise PersistenceError("Failed to add verification log") from e
        return entry

    async def grant_purchase_to_user(self, payment_request_id: str) -> LibraryEntry:
        """Add the purchased item to the buyer's library. Idempotent per payment request."""
        try:
            async with self._session_factory() as db:
                existing = await db.scalar(
                    select(LibraryEntry).where(LibraryEntry.payment_request_id == payment_request_id)
                )
                if existing is not None:
                    return existing

                request = await db.get(PaymentRequest, payment_request_id)
                if request is None:
                    raise NotFoundError(
                        "Payment request not found",
                        detail={"payment_request_id": payment_request_id},
                    )
                if request.status != PaymentStatus.COMPLETED.value:
                    raise ValidationError(
                        "Only completed payments can be granted",
                        detail={"payment_request_id": payment_request_id, "status": request.status},
                    )

                entry = LibraryEntry(
                    user_id=request.user_id,
                    item_type=request.item_type,
                    item_id=request.item_id,
                    payment_request_id=payment_request_id,
                )
                db.add(entry)
                try:
                    await db.commit()
                except IntegrityError:
                    # Concurrent grant for the same request won
                    await db.rollback()
                    existing = await db.scalar(
                        select(LibraryEntry).where(LibraryEntry.payment_request_id == payment_request_id)
                    )
                    if existing is None:
                        raise
                    return existing
                return entry
        except SQLAlchemyError as e:
            logger.exception("library_grant_failed", extra={"payment_request_id": payment_request_id})
            raise PersistenceError("Failed to grant purchase") from e

    async def get_user_email(self, user_id: str) -> str | None:
        try:
            async with self._session_factory() as db:
                return await db.scalar(select(User.email).where(User.id == user_id))
        except SQLAlchemyError as e:
            logger.exception("user_email_get_failed", extra={"user_id": user_id})
            raise PersistenceError("Failed to fetch user email") from e

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_payment_stats(self) -> PaymentStats:
        completed = PaymentRequest.status == PaymentStatus.COMPLETED.value
        try:
            async with self._session_factory() as db:
                status_rows = (
                    await db.execute(
                        select(PaymentRequest.status, func.count()).group_by(PaymentRequest.status)
                    )
                ).all()
                auto_matched = await db.scalar(
                    select(func.count()).where(PaymentRequest.auto_matched_at.is_not(None))
                )
                manual_verified = await db.scalar(
                    select(func.count()).where(PaymentRequest.admin_verified_at.is_not(None))
                )
                total_amount = await db.scalar(
                    select(func.coalesce(func.sum(PaymentRequest.amount), 0)).where(completed)
                )
                sample = (
                    await db.execute(
                        select(
                            PaymentRequest.created_at,
                            PaymentRequest.admin_verified_at,
                            PaymentRequest.auto_matched_at,
                        )
                        .where(completed)
                        .order_by(PaymentRequest.updated_at.desc())
                        .limit(PROCESSING_TIME_SAMPLE)
                    )
                ).all()
        except SQLAlchemyError as e:
            logger.exception("payment_stats_failed")
            raise PersistenceError("Failed to fetch payment statistics") from e

        status_counts = {status: int(count) for status, count in status_rows}
        return PaymentStats(
            total_requests=sum(status_counts.values()),
            status_counts=status_counts,
            auto_matched_requests=int(auto_matched or 0),
            manual_verified_requests=int(manual_verified or 0),
            total_amount=float(total_amount or 0),
            average_processing_time_hours=average_processing_hours(sample),
        )


def average_processing_hours(rows: Iterable[tuple[datetime, datetime | None, datetime | None]]) -> float:
    """Mean of (verified_at - created_at) in hours; rows without a positive duration are ignored."""
    hours = []
    for created_at, admin_verified_at, auto_matched_at in rows:
        finished_at = admin_verified_at or auto_matched_at
        if not finished_at or not created_at:
            continue
        elapsed = (_as_aware(finished_at) - _as_aware(created_at)).total_seconds() / 3600
        if elapsed > 0:
            hours.append(elapsed)
    return sum(hours) / len(hours) if hours else 0.0


def _as_aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
