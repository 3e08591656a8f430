"""
Order validation rules run before any fill.
"""

from oif_solver.rules.allow_block import AllowBlockListRule, is_allowed_intent
from oif_solver.rules.balance import BalanceReader, BalanceRule, ChainBalanceReader
from oif_solver.rules.engine import Rule, RuleResult, RulesEngine
from oif_solver.rules.profitability import ProfitabilityRule

__all__ = [
    "AllowBlockListRule",
    "BalanceReader",
    "BalanceRule",
    "ChainBalanceReader",
    "ProfitabilityRule",
    "Rule",
    "RuleResult",
    "RulesEngine",
    "is_allowed_intent",
]
