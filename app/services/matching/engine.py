"""
AutoMatchingEngine: evaluates configured rules against a payment's evidence.

The rule set is the only shared mutable state: it is loaded by initialize()/refresh()
under a lock and replaced as a whole tuple, never mutated in place. Evaluation reads
one snapshot of that tuple and needs no locking.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Sequence

from app.schemas.payments import AutoMatchResult
from app.services.matching.rules import CompiledRule, MatchingContext, compile_rules, evaluate_rule

logger = logging.getLogger("matching.engine")

RuleLoader = Callable[[], Awaitable[Iterable[Any]]]


def stored_result(payment_request: Any) -> AutoMatchResult:
    """Result previously recorded on an auto-matched request, returned verbatim."""
    return AutoMatchResult(
        matched=True,
        confidence=float(payment_request.auto_match_confidence or 0.0),
        rule_id=payment_request.auto_match_rule_id,
        reason=payment_request.auto_match_reason,
    )


def apply_rules(
    rules: Sequence[CompiledRule],
    context: MatchingContext,
    min_confidence: float,
) -> AutoMatchResult:
    """Best matching rule wins; ties keep the earlier (higher priority) rule."""
    best: AutoMatchResult | None = None

    for rule in rules:
        try:
            result = evaluate_rule(rule, context)
        except Exception as e:
            logger.warning(
                "auto_match_rule_failed",
                extra={"rule_id": rule.id, "rule_type": rule.rule_type, "error": f"{type(e).__name__}: {e}"},
            )
            continue
        if result.matched and (best is None or result.confidence > best.confidence):
            best = AutoMatchResult(
                matched=True,
                confidence=result.confidence,
                rule_id=rule.id,
                reason=f"{rule.name}: {result.reason}",
            )

    confidence = best.confidence if best else 0.0
    if best is not None and confidence >= min_confidence:
        return best

    return AutoMatchResult(
        matched=False,
        confidence=confidence,
        rule_id=best.rule_id if best else None,
        reason=f"Confidence {confidence:.2f} below threshold {min_confidence}",
    )


class AutoMatchingEngine:
    def __init__(
        self,
        rule_loader: RuleLoader,
        *,
        min_confidence: float = 0.7,
        time_window_minutes: float = 30.0,
        amount_tolerance_percentage: float = 5.0,
        history_limit: int = 50,
        strict_rules: bool = False,
    ) -> None:
        self._rule_loader = rule_loader
        self.min_confidence = min_confidence
        self.time_window_minutes = time_window_minutes
        self.amount_tolerance_percentage = amount_tolerance_percentage
        self.history_limit = history_limit
        self.strict_rules = strict_rules
        self._rules: tuple[CompiledRule, ...] = ()
        self._ready = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, rule_loader: RuleLoader) -> "AutoMatchingEngine":
        return cls(
            rule_loader,
            min_confidence=settings.matching_min_confidence,
            time_window_minutes=settings.matching_time_window_minutes,
            amount_tolerance_percentage=settings.matching_amount_tolerance_percentage,
            history_limit=settings.matching_history_limit,
            strict_rules=settings.matching_strict_rules,
        )

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def rules(self) -> tuple[CompiledRule, ...]:
        return self._rules

    async def initialize(self) -> None:
        """Load rules once; concurrent callers wait for the same load."""
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            await self._load()

    async def refresh(self) -> None:
        """Reload rules and swap the whole set."""
        async with self._lock:
            await self._load()

    async def _load(self) -> None:
        rows = await self._rule_loader()
        compiled, skipped = compile_rules(rows, strict=self.strict_rules)
        self._rules = tuple(compiled)
        self._ready = True
        logger.info("auto_match_rules_loaded", extra={"count": len(compiled), "skipped": len(skipped)})

    def build_context(
        self,
        payment_request: Any,
        user_history: Sequence[Any] = (),
        now: datetime | None = None,
    ) -> MatchingContext:
        return MatchingContext(
            payment_request=payment_request,
            user_history=tuple(user_history)[: self.history_limit],
            time_window_minutes=self.time_window_minutes,
            amount_tolerance_percentage=self.amount_tolerance_percentage,
            now=now,
        )

    async def evaluate(self, context: MatchingContext) -> AutoMatchResult:
        payment_request = context.payment_request
        if payment_request.auto_matched_at is not None:
            return stored_result(payment_request)

        if not self._ready:
            await self.initialize()

        return apply_rules(self._rules, context, self.min_confidence)
