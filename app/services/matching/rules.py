"""
Auto-matching rule evaluators.

Each evaluator is a pure function (rule, context) -> AutoMatchResult with confidence
in [0, 1]. Rules are compiled once at load time: conditions are validated against the
schema of their rule_type and tx_id patterns are pre-compiled.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from pydantic import ValidationError as PydanticValidationError

from app.schemas.payments import (
    RULE_CONDITION_SCHEMAS,
    AmountMatchConditions,
    AutoMatchResult,
    PaymentStatus,
    RuleType,
    TimeWindowConditions,
    TxIdPatternConditions,
    UserHistoryConditions,
)
from app.services.errors import RuleConfigurationError

logger = logging.getLogger("matching.rules")


@dataclass(frozen=True)
class MatchingContext:
    payment_request: Any
    user_history: Sequence[Any] = ()
    time_window_minutes: float = 30.0
    amount_tolerance_percentage: float = 5.0
    now: datetime | None = None

    def current_time(self) -> datetime:
        return self.now or datetime.now(timezone.utc)


@dataclass(frozen=True)
class CompiledRule:
    id: str
    name: str
    rule_type: str
    priority: int
    conditions: Any
    pattern: re.Pattern[str] | None = field(default=None, compare=False)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _no_match(reason: str) -> AutoMatchResult:
    return AutoMatchResult(matched=False, confidence=0.0, reason=reason)


def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _as_aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _tx_id(payment_request: Any) -> str | None:
    return payment_request.manual_tx_id or payment_request.ocr_extracted_tx_id


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


def evaluate_amount_match(rule: CompiledRule, context: MatchingContext) -> AutoMatchResult:
    conditions: AmountMatchConditions = rule.conditions
    pr = context.payment_request

    manual_amount = _as_float(pr.manual_amount)
    if not manual_amount:
        return _no_match("No manual amount provided")

    amount_to_check = _as_float(pr.ocr_extracted_amount) or manual_amount
    expected = _as_float(pr.amount) or 0.0
    if expected <= 0:
        return _no_match("Expected amount is not positive")

    tolerance = conditions.tolerance_percentage or context.amount_tolerance_percentage
    diff_pct = abs(amount_to_check - expected) / expected * 100

    if diff_pct <= tolerance:
        tolerance_factor = max(0.0, (tolerance - diff_pct) / tolerance)
        confidence = conditions.base_confidence * (0.5 + 0.5 * tolerance_factor)
        return AutoMatchResult(
            matched=True,
            confidence=_clamp(confidence),
            reason=f"Amount match: {amount_to_check:.2f} vs {expected:.2f} ({diff_pct:.1f}% difference)",
        )

    return _no_match(f"Amount mismatch: {amount_to_check:.2f} vs {expected:.2f} ({diff_pct:.1f}% difference)")


def evaluate_tx_id_pattern(rule: CompiledRule, context: MatchingContext) -> AutoMatchResult:
    conditions: TxIdPatternConditions = rule.conditions
    tx_id = _tx_id(context.payment_request)
    if not tx_id:
        return _no_match("No transaction ID provided")

    regex = rule.pattern
    if regex is None:
        try:
            regex = re.compile(conditions.pattern, re.IGNORECASE)
        except re.error:
            return _no_match(f"Invalid regex pattern: {conditions.pattern}")

    if regex.search(tx_id):
        return AutoMatchResult(
            matched=True,
            confidence=_clamp(conditions.base_confidence),
            reason=f"TX ID pattern match: {tx_id} matches {conditions.pattern}",
        )
    return _no_match(f"TX ID pattern mismatch: {tx_id} does not match {conditions.pattern}")


def evaluate_time_window(rule: CompiledRule, context: MatchingContext) -> AutoMatchResult:
    conditions: TimeWindowConditions = rule.conditions
    pr = context.payment_request

    if not pr.deep_link_clicked_at:
        return _no_match("No deep link click timestamp")

    max_minutes = conditions.max_minutes or context.time_window_minutes
    elapsed = (_as_aware(context.current_time()) - _as_aware(pr.deep_link_clicked_at)).total_seconds() / 60
    elapsed = max(elapsed, 0.0)

    if elapsed > max_minutes:
        return _no_match(f"Time window exceeded: {elapsed:.1f} minutes > {max_minutes:g} minutes")
    if not _tx_id(pr):
        return _no_match(f"Time window open ({elapsed:.1f} minutes) but no transaction ID provided")

    time_factor = max(0.0, (max_minutes - elapsed) / max_minutes)
    confidence = conditions.base_confidence * (0.3 + 0.7 * time_factor)
    return AutoMatchResult(
        matched=True,
        confidence=_clamp(confidence),
        reason=f"Time window match: {elapsed:.1f} minutes elapsed, TX ID provided",
    )


def evaluate_user_history(rule: CompiledRule, context: MatchingContext) -> AutoMatchResult:
    conditions: UserHistoryConditions = rule.conditions
    current_id = getattr(context.payment_request, "id", None)
    completed = [
        p for p in context.user_history
        if p.status == PaymentStatus.COMPLETED.value and getattr(p, "id", None) != current_id
    ]
    if completed:
        return AutoMatchResult(
            matched=True,
            confidence=_clamp(conditions.base_confidence),
            reason=f"Returning user: {len(completed)} previous completed payments",
        )
    return _no_match("New user: no previous completed payments")


RULE_EVALUATORS: dict[str, Callable[[CompiledRule, MatchingContext], AutoMatchResult]] = {
    RuleType.AMOUNT_MATCH.value: evaluate_amount_match,
    RuleType.TX_ID_PATTERN.value: evaluate_tx_id_pattern,
    RuleType.TIME_WINDOW.value: evaluate_time_window,
    RuleType.USER_HISTORY.value: evaluate_user_history,
}


def evaluate_rule(rule: CompiledRule, context: MatchingContext) -> AutoMatchResult:
    evaluator = RULE_EVALUATORS.get(rule.rule_type)
    if evaluator is None:
        return _no_match(f"Unknown rule type: {rule.rule_type}")
    return evaluator(rule, context)


# ---------------------------------------------------------------------------
# Load-time validation
# ---------------------------------------------------------------------------


def compile_rule(row: Any) -> CompiledRule:
    """Validate one stored rule. Raises RuleConfigurationError."""
    rule_type = (row.rule_type or "").strip()
    schema = RULE_CONDITION_SCHEMAS.get(rule_type)
    if schema is None:
        raise RuleConfigurationError(
            f"Unknown rule type: {rule_type}",
            detail={"rule_id": row.id},
        )
    try:
        conditions = schema.model_validate(row.conditions or {})
    except PydanticValidationError as e:
        raise RuleConfigurationError(
            f"Invalid conditions for {rule_type} rule {row.id}: {e.errors(include_url=False)}",
            detail={"rule_id": row.id, "rule_type": rule_type},
        ) from e

    pattern = None
    if isinstance(conditions, TxIdPatternConditions):
        pattern = re.compile(conditions.pattern, re.IGNORECASE)

    return CompiledRule(
        id=str(row.id),
        name=getattr(row, "rule_name", None) or rule_type,
        rule_type=rule_type,
        priority=int(row.priority or 0),
        conditions=conditions,
        pattern=pattern,
    )


def compile_rules(rows: Iterable[Any], strict: bool = False) -> tuple[list[CompiledRule], list[str]]:
    """
    Compile active rules, highest priority first (stable for equal priorities).
    Returns (rules, skipped_rule_ids). With strict=True the first invalid rule raises.
    """
    compiled: list[CompiledRule] = []
    skipped: list[str] = []
    for row in rows:
        if not getattr(row, "is_active", True):
            continue
        try:
            compiled.append(compile_rule(row))
        except RuleConfigurationError as e:
            if strict:
                raise
            skipped.append(str(row.id))
            logger.error(
                "auto_match_rule_invalid",
                extra={"rule_id": str(row.id), "rule_type": row.rule_type, "error": e.message},
            )
    compiled.sort(key=lambda r: r.priority, reverse=True)
    return compiled, skipped
