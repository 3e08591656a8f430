"""
BalanceRule: the solver must already hold every token it will spend.

For each maxSpent output (what the solver provides on the destination
chain) the solver's balance of that token on that chain is read through a
BalanceReader. Native-asset outputs are skipped.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Protocol

from oif_solver.config.networks import NetworkRegistry
from oif_solver.infra.evm_rpc import EvmRpcClient, RPCError, erc20_balance
from oif_solver.infra.starknet_rpc import StarknetRpcClient, to_felt
from oif_solver.protocol.codec import bytes32_to_evm_address
from oif_solver.rules.engine import Rule, RuleResult
from oif_solver.types import ParsedArgs, is_native_token


class BalanceReader(Protocol):
    async def balance_of(self, chain_id: int, token: str) -> int: ...


class BalanceReadError(Exception):
    pass


class ChainBalanceReader:
    """Reads the solver's own ERC20 balances over RPC, EVM or Starknet by chain id."""

    def __init__(
        self,
        networks: NetworkRegistry,
        evm_client_for: Callable[[int], EvmRpcClient],
        starknet_client_for: Callable[[int], StarknetRpcClient],
        evm_owner: Optional[str],
        starknet_owners: Dict[int, str],
    ) -> None:
        self.networks = networks
        self._evm_client_for = evm_client_for
        self._starknet_client_for = starknet_client_for
        self.evm_owner = evm_owner
        self.starknet_owners = starknet_owners

    async def balance_of(self, chain_id: int, token: str) -> int:
        net = self.networks.by_chain_id(chain_id)
        if net is None:
            raise BalanceReadError(f"no network config found for chain id {chain_id}")
        try:
            if net.is_starknet:
                owner = self.starknet_owners.get(chain_id)
                if not owner:
                    raise BalanceReadError(f"{net.name} solver address not set")
                return await self._starknet_client_for(chain_id).erc20_balance(to_felt(token), owner)
            if not self.evm_owner:
                raise BalanceReadError("solver EVM address not set")
            return await erc20_balance(self._evm_client_for(chain_id), bytes32_to_evm_address(token), self.evm_owner)
        except RPCError as exc:
            raise BalanceReadError(str(exc)) from exc


class BalanceRule(Rule):
    name = "BalanceCheck"

    def __init__(self, reader: BalanceReader) -> None:
        self.reader = reader

    async def evaluate(self, args: ParsedArgs) -> RuleResult:
        max_spent = args.resolved_order.max_spent
        if not max_spent:
            return RuleResult(True, "No tokens to spend")

        for output in max_spent:
            if is_native_token(output.token):
                continue
            try:
                balance = await self.reader.balance_of(output.chain_id, output.token)
            except BalanceReadError as exc:
                return RuleResult(
                    False,
                    f"Failed to check balance for token {output.token}: {exc}",
                    code="InsufficientBalance",
                )
            if balance < output.amount:
                return RuleResult(
                    False,
                    f"Insufficient balance for token {output.token}: have {balance}, need {output.amount}",
                    code="InsufficientBalance",
                )
        return RuleResult(True, "Balance check passed")
