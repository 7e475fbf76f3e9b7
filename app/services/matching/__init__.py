"""
Rule-based auto-matching of payment evidence.
"""
from .engine import AutoMatchingEngine, apply_rules, stored_result
from .rules import CompiledRule, MatchingContext, compile_rule, compile_rules, evaluate_rule

__all__ = [
    "AutoMatchingEngine",
    "apply_rules",
    "stored_result",
    "CompiledRule",
    "MatchingContext",
    "compile_rule",
    "compile_rules",
    "evaluate_rule",
]
