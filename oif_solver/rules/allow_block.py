"""
Allow/block list matching.

The block list is checked first; any match rejects. An empty allow list
allows everything, otherwise at least one allow entry must match. ``*``
matches any value in every field; destination_domain is compared with
the recipient's destination chain name.
"""

from __future__ import annotations

from oif_solver.rules.engine import Rule, RuleResult
from oif_solver.types import AllowBlockListItem, AllowBlockLists, ParsedArgs

WILDCARD = "*"


def _field_matches(pattern: str, value: str) -> bool:
    if pattern == WILDCARD:
        return True
    if pattern.startswith("0x") and value.startswith("0x"):
        return pattern.lower() == value.lower()
    return pattern == value


def matches_item(item: AllowBlockListItem, args: ParsedArgs) -> bool:
    if not _field_matches(item.sender_address, args.sender_address):
        return False
    for recipient in args.recipients:
        if not _field_matches(item.destination_domain, recipient.destination_chain_name):
            continue
        if not _field_matches(item.recipient_address, recipient.recipient_address):
            continue
        return True
    return False


def is_allowed_intent(lists: AllowBlockLists, args: ParsedArgs) -> bool:
    if any(matches_item(item, args) for item in lists.block_list):
        return False
    if not lists.allow_list:
        return True
    return any(matches_item(item, args) for item in lists.allow_list)


class AllowBlockListRule(Rule):
    name = "AllowBlockList"

    def __init__(self, lists: AllowBlockLists) -> None:
        self.lists = lists

    async def evaluate(self, args: ParsedArgs) -> RuleResult:
        if is_allowed_intent(self.lists, args):
            return RuleResult(True, "Order allowed by allow/block lists")
        return RuleResult(False, "Order blocked by allow/block lists", code="Blocked")
