"""
RulesEngine: ordered go/no-go checks run before any fill is attempted.

Rules run in registration order and evaluation stops at the first failure.
Every rule outcome is logged with the order's origin and destination chain
so rejections can be traced across chains. Rules hold no per-order state,
so one engine is shared by every listener.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from oif_solver.core.json_utils import dumps
from oif_solver.types import ParsedArgs

log = logging.getLogger("oifsolver")


@dataclass(frozen=True)
class RuleResult:
    passed: bool
    reason: str = ""
    rule: Optional[str] = None
    code: Optional[str] = None  # InsufficientBalance, NotProfitable, Blocked, ...


class Rule(ABC):
    name: str = "Rule"

    @abstractmethod
    async def evaluate(self, args: ParsedArgs) -> RuleResult:
        """Return a passed/failed result; must not raise for a bad order."""


def _destination_chain(args: ParsedArgs) -> Optional[int]:
    fis = args.resolved_order.fill_instructions
    return fis[0].destination_chain_id if fis else None


class RulesEngine:
    def __init__(
        self,
        rules: Optional[Sequence[Rule]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._rules: List[Rule] = list(rules or [])
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    def add_rule(self, rule: Rule) -> None:
        self._rules.append(rule)

    async def evaluate_all(self, args: ParsedArgs) -> RuleResult:
        origin = args.resolved_order.origin_chain_id
        destination = _destination_chain(args)
        for rule in self._rules:
            try:
                result = await rule.evaluate(args)
            except Exception as exc:
                result = RuleResult(False, f"rule raised {type(exc).__name__}: {exc}", code="RuleError")
            if result.rule is None:
                result = RuleResult(result.passed, result.reason, rule=rule.name, code=result.code)
            self._log(
                "rule_passed" if result.passed else "rule_failed",
                rule=rule.name,
                order_id=args.order_id,
                origin_chain=origin,
                destination_chain=destination,
                reason=result.reason,
            )
            if not result.passed:
                return result
        return RuleResult(True, "all rules passed")
