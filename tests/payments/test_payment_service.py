"""Tests for PaymentService: lifecycle, evidence, auto-matching, admin decisions."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from app.schemas.payments import CreatePaymentRequestData, ItemType, OCROptions, OCRResult


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _tx_rule(rule_factory, base_confidence=0.8, **kwargs):
    return rule_factory(
        "tx_id_pattern",
        {"pattern": r"^TXN\d{8}$", "base_confidence": base_confidence},
        rule_name="Telebirr TX",
        **kwargs,
    )


class TestInitiatePayment:
    @pytest.mark.asyncio
    async def test_creates_request_with_deep_link(self, service, repository, wallet_factory):
        wallet = wallet_factory(id="w1")
        repository.wallets = [wallet]
        data = CreatePaymentRequestData(item_type=ItemType.BOOK, item_id="book-9", amount=150, selected_wallet_id="w1")

        result = await service.initiate_payment("user-1", data)

        assert result.success is True
        pr = result.data.payment_request
        assert pr.status == "created"
        assert pr.currency == "ETB"
        assert result.data.wallet_config is wallet
        assert result.data.deep_link_url == f"telebirr://pay?amount=150.0&ref={pr.id}&cur=ETB"

    @pytest.mark.asyncio
    async def test_accepts_dict_payload(self, service):
        result = await service.initiate_payment(
            "user-1", {"item_type": "bundle", "item_id": "bundle-1", "amount": 300, "currency": "USD"}
        )
        assert result.success is True
        assert result.data.payment_request.currency == "USD"
        assert result.data.deep_link_url is None

    @pytest.mark.asyncio
    async def test_invalid_payload(self, service, repository):
        result = await service.initiate_payment("user-1", {"item_type": "book", "item_id": "b", "amount": 0})
        assert result.success is False
        assert repository.requests == {}

    @pytest.mark.asyncio
    async def test_duplicate_open_request_conflicts(self, service, repository):
        data = {"item_type": "book", "item_id": "book-1", "amount": 100}
        first = await service.initiate_payment("user-1", data)
        second = await service.initiate_payment("user-1", data)

        assert first.success is True
        assert second.success is False
        assert second.error == "You already have a pending payment request for this item"
        assert len(repository.requests) == 1

    @pytest.mark.asyncio
    async def test_new_request_allowed_after_terminal(self, service, repository):
        repository.add_request(user_id="user-1", item_id="book-1", status="cancelled")
        result = await service.initiate_payment("user-1", {"item_type": "book", "item_id": "book-1", "amount": 100})
        assert result.success is True

    @pytest.mark.asyncio
    async def test_unknown_wallet_no_deep_link(self, service):
        result = await service.initiate_payment(
            "user-1", {"item_type": "book", "item_id": "book-1", "amount": 100, "selected_wallet_id": "missing"}
        )
        assert result.success is True
        assert result.data.wallet_config is None
        assert result.data.deep_link_url is None


class TestDeepLinkClick:
    @pytest.mark.asyncio
    async def test_records_click(self, service, repository):
        pr = repository.add_request()

        result = await service.record_deep_link_click(pr.id)

        assert result.success is True
        assert pr.status == "payment_initiated"
        assert pr.deep_link_clicked_at is not None
        assert [log.details for log in repository.logs] == [{"action": "deep_link_clicked"}]
        assert repository.logs[0].verification_type == "auto_match"

    @pytest.mark.asyncio
    async def test_click_on_completed_rejected(self, service, repository):
        pr = repository.add_request(status="completed")

        result = await service.record_deep_link_click(pr.id)

        assert result.success is False
        assert pr.status == "completed"
        assert repository.logs == []

    @pytest.mark.asyncio
    async def test_unknown_request(self, service):
        result = await service.record_deep_link_click("nope")
        assert result.success is False
        assert result.error == "Payment request not found"

    @pytest.mark.asyncio
    async def test_persistence_failure(self, service, repository):
        pr = repository.add_request()
        repository.fail_updates = True

        result = await service.record_deep_link_click(pr.id)

        assert result.success is False
        assert result.error == "Failed to update payment request"


class TestSubmitTransactionId:
    @pytest.mark.asyncio
    async def test_auto_matched(self, service, repository, rule_factory):
        repository.rules = [_tx_rule(rule_factory, id="rule-tx")]
        pr = repository.add_request(status="payment_initiated")

        result = await service.submit_transaction_id(pr.id, " TXN12345678 ", 100)

        assert result.success is True
        assert result.data.auto_matched is True
        assert result.data.requires_manual_verification is False
        assert result.data.confidence == pytest.approx(0.8)
        assert result.data.message == "Payment automatically verified with 80% confidence"
        assert pr.manual_tx_id == "TXN12345678"
        assert float(pr.manual_amount) == 100.0
        assert pr.status == "payment_verified"
        assert pr.verification_method == "auto"
        assert pr.auto_matched_at is not None
        assert pr.auto_match_rule_id == "rule-tx"
        assert pr.auto_match_reason.startswith("Telebirr TX: ")
        assert len(repository.logs) == 1
        assert repository.logs[0].status == "success"

    @pytest.mark.asyncio
    async def test_no_match_keeps_tentative_status(self, service, repository, rule_factory):
        repository.rules = [_tx_rule(rule_factory)]
        pr = repository.add_request(status="payment_initiated")

        result = await service.submit_transaction_id(pr.id, "something-else")

        assert result.success is True
        assert result.data.auto_matched is False
        assert result.data.requires_manual_verification is True
        assert result.data.message == "Payment submitted for manual verification"
        assert pr.status == "payment_verified"
        assert pr.auto_matched_at is None
        assert pr.manual_amount is None
        assert repository.logs[0].status == "failed"
        assert repository.logs[0].error_message.startswith("Confidence 0.00")

    @pytest.mark.asyncio
    async def test_empty_tx_id(self, service, repository):
        pr = repository.add_request()
        result = await service.submit_transaction_id(pr.id, "   ")
        assert result.success is False
        assert repository.update_calls == []

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, service, repository):
        pr = repository.add_request()
        result = await service.submit_transaction_id(pr.id, "TXN12345678", -5)
        assert result.success is False
        assert repository.update_calls == []

    @pytest.mark.asyncio
    async def test_terminal_request_rejected(self, service, repository):
        pr = repository.add_request(status="cancelled")
        result = await service.submit_transaction_id(pr.id, "TXN12345678")
        assert result.success is False
        assert pr.manual_tx_id is None

    @pytest.mark.asyncio
    async def test_engine_error_degrades(self, service, repository, matching_engine):
        pr = repository.add_request()
        matching_engine.evaluate = AsyncMock(side_effect=RuntimeError("rules unavailable"))

        result = await service.submit_transaction_id(pr.id, "TXN12345678")

        assert result.success is True
        assert result.data.auto_matched is False
        assert repository.logs[0].details["reason"] == "Error: rules unavailable"


class TestAutoMatchingIdempotency:
    @pytest.mark.asyncio
    async def test_already_matched_no_writes(self, service, repository, rule_factory):
        repository.rules = [_tx_rule(rule_factory)]
        pr = repository.add_request(
            manual_tx_id="TXN12345678",
            auto_matched_at=T0,
            auto_match_confidence=0.9,
            auto_match_reason="Earlier: match",
            auto_match_rule_id="rule-old",
        )

        result = await service._run_auto_matching(pr)

        assert result.matched is True
        assert result.confidence == 0.9
        assert result.rule_id == "rule-old"
        assert result.reason == "Earlier: match"
        assert repository.logs == []
        assert repository.update_calls == []

    @pytest.mark.asyncio
    async def test_resubmission_keeps_first_match(self, service, repository, rule_factory):
        repository.rules = [_tx_rule(rule_factory, id="rule-tx")]
        pr = repository.add_request()

        await service.submit_transaction_id(pr.id, "TXN12345678")
        matched_at = pr.auto_matched_at
        second = await service.submit_transaction_id(pr.id, "TXN87654321")

        assert second.data.auto_matched is True
        assert pr.auto_matched_at == matched_at
        assert len(repository.logs) == 1


class TestReceiptUpload:
    @pytest.mark.asyncio
    async def test_ocr_fields_persisted_and_matched(self, service, repository, ocr_pipeline, rule_factory):
        repository.rules = [_tx_rule(rule_factory)]
        pr = repository.add_request(amount=100.0)
        ocr_pipeline.extract.return_value = OCRResult(
            extracted_tx_id="TXN12345678",
            extracted_amount=100.0,
            confidence_score=0.95,
            raw_text="Transaction: TXN12345678 Amount: 100.00",
            provider="google_vision",
        )

        result = await service.process_receipt_upload(pr.id, b"\xff\xd8\xff")

        assert result.success is True
        assert result.data.auto_matched is True
        assert result.data.ocr.provider == "google_vision"
        ocr_pipeline.extract.assert_awaited_once_with(b"\xff\xd8\xff", OCROptions(expected_amount=100.0))
        assert pr.ocr_processed_at is not None
        assert pr.ocr_extracted_tx_id == "TXN12345678"
        assert float(pr.ocr_extracted_amount) == 100.0
        assert pr.ocr_confidence_score == 0.95
        assert pr.ocr_raw_text.startswith("Transaction")

    @pytest.mark.asyncio
    async def test_nothing_extracted_skips_matching(self, service, repository):
        pr = repository.add_request()

        result = await service.process_receipt_upload(pr.id, b"\xff\xd8\xff")

        assert result.success is True
        assert result.data.auto_matched is False
        assert result.data.ocr.confidence_score == 0.1
        assert pr.ocr_processed_at is not None
        assert repository.logs == []

    @pytest.mark.asyncio
    async def test_empty_image(self, service, repository, ocr_pipeline):
        pr = repository.add_request()
        result = await service.process_receipt_upload(pr.id, b"")
        assert result.success is False
        ocr_pipeline.extract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_request(self, service):
        result = await service.process_receipt_upload("nope", b"\xff\xd8\xff")
        assert result.success is False
        assert result.error == "Payment request not found"


class TestAdminVerification:
    @pytest.mark.asyncio
    async def test_approve(self, service, repository, notifications):
        pr = repository.add_request(status="payment_verified")
        repository.emails["user-1"] = "reader@example.com"

        result = await service.admin_verify_payment(pr.id, "admin-1", "manual", True, notes="bank ok")

        assert result.success is True
        assert pr.status == "completed"
        assert pr.admin_verified_by == "admin-1"
        assert pr.admin_notes == "bank ok"
        assert pr.verification_method == "manual"
        assert repository.grant_calls == [pr.id]
        assert list(repository.library) == [pr.id]
        assert len(repository.logs) == 1
        log = repository.logs[0]
        assert log.verification_type == "admin_verification"
        assert log.status == "success"
        assert log.processed_by == "admin-1"
        assert log.error_message is None
        assert log.details == {"verification_method": "manual", "admin_user_id": "admin-1", "notes": "bank ok"}
        notifications.send_email_notification.assert_awaited_once()
        to, subject, body = notifications.send_email_notification.await_args.args
        assert to == "reader@example.com"
        assert subject == "Your purchase has been approved"
        assert pr.id in body

    @pytest.mark.asyncio
    async def test_second_approval_rejected(self, service, repository):
        pr = repository.add_request(status="payment_verified")

        await service.admin_verify_payment(pr.id, "admin-1", "manual", True)
        second = await service.admin_verify_payment(pr.id, "admin-2", "manual", True)

        assert second.success is False
        assert repository.grant_calls == [pr.id]
        assert len(repository.library) == 1
        assert len(repository.logs) == 1

    @pytest.mark.asyncio
    async def test_grant_failure_does_not_block_approval(self, service, repository):
        pr = repository.add_request(status="payment_verified")
        repository.fail_grant = True

        result = await service.admin_verify_payment(pr.id, "admin-1", "bank_statement", True)

        assert result.success is True
        assert pr.status == "completed"
        assert repository.logs[0].error_message == "Failed to grant purchase"

    @pytest.mark.asyncio
    async def test_reject(self, service, repository, notifications):
        pr = repository.add_request(status="payment_verified")

        result = await service.admin_verify_payment(pr.id, "admin-1", "sms_verification", False, notes="no such tx")

        assert result.success is True
        assert pr.status == "failed"
        assert repository.grant_calls == []
        assert repository.library == {}
        assert repository.logs[0].status == "failed"
        notifications.send_email_notification.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_auto_is_not_an_admin_method(self, service, repository):
        pr = repository.add_request(status="payment_verified")
        result = await service.admin_verify_payment(pr.id, "admin-1", "auto", True)
        assert result.success is False
        assert pr.status == "payment_verified"


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel(self, service, repository):
        pr = repository.add_request(status="payment_initiated")

        result = await service.cancel_payment_request(pr.id)

        assert result.success is True
        assert pr.status == "cancelled"
        assert repository.logs[0].details == {"action": "payment_cancelled"}

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, service, repository):
        pr = repository.add_request(status="completed")
        result = await service.cancel_payment_request(pr.id)
        assert result.success is False
        assert pr.status == "completed"


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_payment_request(self, service, repository):
        pr = repository.add_request()
        assert (await service.get_payment_request(pr.id)).data is pr
        missing = await service.get_payment_request("nope")
        assert missing.success is False

    @pytest.mark.asyncio
    async def test_get_user_payment_requests(self, service, repository):
        for i in range(3):
            repository.add_request(item_id=f"book-{i}")
        repository.add_request(user_id="someone-else")

        result = await service.get_user_payment_requests("user-1", limit=2)

        assert len(result.data) == 2

    @pytest.mark.asyncio
    async def test_get_active_wallets(self, service, repository, wallet_factory):
        repository.wallets = [
            wallet_factory(id="b", display_order=2),
            wallet_factory(id="a", display_order=1),
            wallet_factory(id="off", is_active=False),
        ]
        result = await service.get_active_wallets()
        assert [w.id for w in result.data] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_get_payment_stats(self, service, repository):
        repository.add_request(status="completed", amount=100.0, admin_verified_at=T0)
        repository.add_request(status="created", item_id="book-2")

        result = await service.get_payment_stats()

        assert result.data.total_requests == 2
        assert result.data.status_counts == {"completed": 1, "created": 1}
        assert result.data.manual_verified_requests == 1
        assert result.data.total_amount == 100.0


class TestReviewListing:
    @pytest.mark.asyncio
    async def test_verification_queue_oldest_first(self, service, repository):
        newer = repository.add_request(status="payment_verified", item_id="book-1", created_at=T0 + timedelta(hours=2))
        older = repository.add_request(status="payment_verified", item_id="book-2", created_at=T0)
        repository.add_request(status="created", item_id="book-3", created_at=T0 - timedelta(hours=1))
        repository.add_request(status="completed", item_id="book-4", created_at=T0 - timedelta(hours=1))

        result = await service.get_verification_queue()

        assert result.success is True
        assert [pr.id for pr in result.data.items] == [older.id, newer.id]
        assert result.data.total == 2
        assert result.data.has_more is False

    @pytest.mark.asyncio
    async def test_pagination(self, service, repository):
        for i in range(5):
            repository.add_request(status="payment_verified", item_id=f"book-{i}", created_at=T0 + timedelta(minutes=i))

        first = await service.list_payment_requests({"statuses": ["payment_verified"]}, page=1, limit=2)
        last = await service.list_payment_requests({"statuses": ["payment_verified"]}, page=3, limit=2)

        assert first.data.total == 5
        assert first.data.has_more is True
        assert [pr.item_id for pr in first.data.items] == ["book-4", "book-3"]
        assert last.data.has_more is False
        assert [pr.item_id for pr in last.data.items] == ["book-0"]
        assert repository.list_calls[-1]["offset"] == 4

    @pytest.mark.asyncio
    async def test_filters_from_dict(self, service, repository):
        repository.add_request(status="payment_verified", manual_tx_id="TXN-AAA-1", item_id="book-1")
        match = repository.add_request(status="payment_verified", ocr_extracted_tx_id="TXN-BBB-2", item_id="book-2")

        result = await service.list_payment_requests({"search_query": " bbb ", "auto_matched": False})

        assert [pr.id for pr in result.data.items] == [match.id]
        filters = repository.list_calls[-1]["filters"]
        assert filters.search_query == "bbb"
        assert filters.auto_matched is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"sort_by": "user_id"},
            {"sort_order": "sideways"},
            {"page": 0},
            {"limit": 0},
            {"limit": 101},
            {"filters": {"statuses": ["lost"]}},
            {"filters": {"min_amount": 50, "max_amount": 10}},
            {"filters": {"unknown": True}},
        ],
    )
    async def test_invalid_arguments(self, service, repository, kwargs):
        result = await service.list_payment_requests(**kwargs)

        assert result.success is False
        assert repository.list_calls == []
