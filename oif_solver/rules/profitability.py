"""
ProfitabilityRule: minReceived must beat maxSpent plus expected fees.

All amounts are summed as if denominated in the same token; no price
oracle is consulted. That approximation is the rule's documented limit.
"""

from __future__ import annotations

from oif_solver.rules.engine import Rule, RuleResult
from oif_solver.types import ParsedArgs

# Margin is reported in percent with two decimals
_MARGIN_SCALE = 10000


class ProfitabilityRule(Rule):
    name = "ProfitabilityCheck"

    def __init__(self, expected_fees: int = 0, min_profit_threshold: int = 0) -> None:
        if expected_fees < 0 or min_profit_threshold < 0:
            raise ValueError("expected_fees and min_profit_threshold must be >= 0")
        self.expected_fees = expected_fees
        self.min_profit_threshold = min_profit_threshold

    async def evaluate(self, args: ParsedArgs) -> RuleResult:
        order = args.resolved_order
        if not order.max_spent or not order.min_received:
            return RuleResult(False, "Missing MaxSpent or MinReceived data", code="NotProfitable")

        total_cost = sum(o.amount for o in order.max_spent)
        total_revenue = sum(o.amount for o in order.min_received)
        total_with_fees = total_cost + self.expected_fees

        if total_revenue <= total_with_fees:
            return RuleResult(
                False,
                f"Order not profitable: MinReceived ({total_revenue}) <= "
                f"TotalCosts ({total_cost} + {self.expected_fees} fees)",
                code="NotProfitable",
            )

        gross_profit = total_revenue - total_cost
        net_profit = total_revenue - total_with_fees
        if net_profit < self.min_profit_threshold:
            return RuleResult(
                False,
                f"Order profit below threshold: NetProfit ({net_profit}) < MinThreshold ({self.min_profit_threshold})",
                code="NotProfitable",
            )

        margin = (gross_profit * _MARGIN_SCALE // total_cost) / 100 if total_cost else 0.0
        return RuleResult(
            True,
            f"Order profitable: NetProfit={net_profit}, GrossProfit={gross_profit} ({margin:.2f}% margin)",
        )
