"""
Tests for the rules engine and the default rules.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from oif_solver.rules.allow_block import AllowBlockListRule, is_allowed_intent
from oif_solver.rules.balance import BalanceReadError, BalanceRule
from oif_solver.rules.engine import Rule, RuleResult, RulesEngine
from oif_solver.rules.profitability import ProfitabilityRule
from oif_solver.types import (
    AllowBlockListItem,
    AllowBlockLists,
    FillInstruction,
    Output,
    ParsedArgs,
    Recipient,
    ResolvedCrossChainOrder,
)

TOKEN = "0x" + "00" * 12 + "02" * 20
SENDER = "0x" + "aa" * 20


def make_args(spent=(1000,), received=(1050,), token=TOKEN, sender=SENDER, chain_name="Base") -> ParsedArgs:
    order = ResolvedCrossChainOrder(
        user=sender,
        origin_chain_id=8453,
        open_deadline=0,
        fill_deadline=0,
        order_id=b"\x01" * 32,
        max_spent=[Output(token=token, amount=a, recipient="0x" + "bb" * 32, chain_id=10) for a in spent],
        min_received=[Output(token=TOKEN, amount=a, recipient="0x" + "00" * 32, chain_id=8453) for a in received],
        fill_instructions=[FillInstruction(10, "0x" + "cc" * 32, b"")],
    )
    return ParsedArgs(
        order_id="0x" + "01" * 32,
        sender_address=sender,
        recipients=[Recipient(chain_name, "*")],
        resolved_order=order,
    )


class StaticRule(Rule):
    def __init__(self, name, passed):
        self.name = name
        self.passed = passed
        self.calls = 0

    async def evaluate(self, args):
        self.calls += 1
        return RuleResult(self.passed, f"{self.name} says {self.passed}")


class TestProfitabilityRule:
    @pytest.mark.asyncio
    async def test_profitable_order_passes(self):
        result = await ProfitabilityRule().evaluate(make_args(spent=(1000,), received=(1050,)))
        assert result.passed
        assert "NetProfit=50" in result.reason
        assert "5.00% margin" in result.reason

    @pytest.mark.asyncio
    async def test_unprofitable_order_fails(self):
        result = await ProfitabilityRule().evaluate(make_args(spent=(1000,), received=(990,)))
        assert not result.passed
        assert result.code == "NotProfitable"

    @pytest.mark.asyncio
    async def test_break_even_fails(self):
        result = await ProfitabilityRule().evaluate(make_args(spent=(1000,), received=(1000,)))
        assert not result.passed

    @pytest.mark.asyncio
    async def test_expected_fees_added_to_cost(self):
        result = await ProfitabilityRule(expected_fees=50).evaluate(make_args(spent=(1000,), received=(1050,)))
        assert not result.passed
        assert "50 fees" in result.reason

    @pytest.mark.asyncio
    async def test_threshold(self):
        rule = ProfitabilityRule(min_profit_threshold=60)
        assert not (await rule.evaluate(make_args(spent=(1000,), received=(1050,)))).passed
        assert (await rule.evaluate(make_args(spent=(1000,), received=(1061,)))).passed

    @pytest.mark.asyncio
    async def test_amounts_are_summed(self):
        result = await ProfitabilityRule().evaluate(make_args(spent=(500, 500), received=(600, 450)))
        assert result.passed
        assert "NetProfit=50" in result.reason

    @pytest.mark.asyncio
    async def test_missing_outputs_fail(self):
        result = await ProfitabilityRule().evaluate(make_args(spent=(), received=(1050,)))
        assert not result.passed

    def test_negative_config_rejected(self):
        with pytest.raises(ValueError):
            ProfitabilityRule(expected_fees=-1)


class TestBalanceRule:
    @pytest.mark.asyncio
    async def test_enough_balance_passes(self):
        reader = MagicMock()
        reader.balance_of = AsyncMock(return_value=1000)
        result = await BalanceRule(reader).evaluate(make_args())
        assert result.passed
        reader.balance_of.assert_awaited_once_with(10, TOKEN)

    @pytest.mark.asyncio
    async def test_insufficient_balance_fails(self):
        reader = MagicMock()
        reader.balance_of = AsyncMock(return_value=999)
        result = await BalanceRule(reader).evaluate(make_args())
        assert not result.passed
        assert result.code == "InsufficientBalance"
        assert "have 999, need 1000" in result.reason

    @pytest.mark.asyncio
    async def test_native_token_skipped(self):
        reader = MagicMock()
        reader.balance_of = AsyncMock(return_value=0)
        for native in ("", "0x0", "0x" + "00" * 32):
            result = await BalanceRule(reader).evaluate(make_args(token=native))
            assert result.passed
        reader.balance_of.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_read_error_fails_rule(self):
        reader = MagicMock()
        reader.balance_of = AsyncMock(side_effect=BalanceReadError("rpc down"))
        result = await BalanceRule(reader).evaluate(make_args())
        assert not result.passed
        assert "rpc down" in result.reason


class TestAllowBlockLists:
    def test_empty_lists_allow_everything(self):
        assert is_allowed_intent(AllowBlockLists(), make_args())

    def test_block_list_wins(self):
        lists = AllowBlockLists(
            allow_list=[AllowBlockListItem()],
            block_list=[AllowBlockListItem(sender_address=SENDER.upper().replace("0X", "0x"))],
        )
        assert not is_allowed_intent(lists, make_args())

    def test_allow_list_restricts(self):
        lists = AllowBlockLists(allow_list=[AllowBlockListItem(destination_domain="Optimism")])
        assert not is_allowed_intent(lists, make_args(chain_name="Base"))
        assert is_allowed_intent(lists, make_args(chain_name="Optimism"))

    def test_recipient_pattern(self):
        lists = AllowBlockLists(block_list=[AllowBlockListItem(recipient_address="0xdead")])
        # listener recipients are wildcards, so a concrete address never matches
        assert is_allowed_intent(lists, make_args())

    @pytest.mark.asyncio
    async def test_rule_reports_blocked(self):
        rule = AllowBlockListRule(AllowBlockLists(block_list=[AllowBlockListItem()]))
        result = await rule.evaluate(make_args())
        assert not result.passed
        assert result.code == "Blocked"


class TestRulesEngine:
    @pytest.mark.asyncio
    async def test_runs_in_order_and_short_circuits(self):
        first = StaticRule("first", True)
        second = StaticRule("second", False)
        third = StaticRule("third", True)
        events = []
        engine = RulesEngine([first, second, third], log_event=lambda event, **kw: events.append((event, kw["rule"])))

        result = await engine.evaluate_all(make_args())

        assert not result.passed
        assert result.rule == "second"
        assert (first.calls, second.calls, third.calls) == (1, 1, 0)
        assert events == [("rule_passed", "first"), ("rule_failed", "second")]

    @pytest.mark.asyncio
    async def test_all_pass(self):
        engine = RulesEngine([StaticRule("a", True)], log_event=lambda *a, **k: None)
        engine.add_rule(StaticRule("b", True))
        result = await engine.evaluate_all(make_args())
        assert result.passed
        assert [r.name for r in engine.rules] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_raising_rule_is_a_failure(self):
        class Broken(Rule):
            name = "Broken"

            async def evaluate(self, args):
                raise RuntimeError("boom")

        engine = RulesEngine([Broken()], log_event=lambda *a, **k: None)
        result = await engine.evaluate_all(make_args())
        assert not result.passed
        assert result.code == "RuleError"
        assert result.rule == "Broken"

    @pytest.mark.asyncio
    async def test_log_carries_both_chains(self):
        events = []
        engine = RulesEngine([StaticRule("a", True)], log_event=lambda event, **kw: events.append(kw))
        await engine.evaluate_all(make_args())
        assert events[0]["origin_chain"] == 8453
        assert events[0]["destination_chain"] == 10
