"""
Starknet ChainHandler: fill and settle against the Cairo Hyperlane7683.

Same flow as the EVM handler with Cairo encodings:
    order id      -> u256 (low, high) felts
    origin data   -> Cairo Bytes (size, word count, u128 words)
    filler data   -> empty Bytes (0, 0)
    order_status  -> felt holding the ASCII status ("FILLED" = 0x46494c4c4544)

Transactions go through the injected StarknetAccount; reads go straight
to the node. The settle gas quote is paid in ETH, so the settler must be
approved to pull it before settle().
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, Optional

from oif_solver.config.networks import NetworkRegistry
from oif_solver.handlers.base import (
    STATUS_FILLED,
    STATUS_SETTLED,
    STATUS_UNKNOWN,
    ChainHandler,
    ChainHandlerError,
    ChainHandlerFactory,
    OrderAction,
)
from oif_solver.infra.evm_rpc import RPCError
from oif_solver.infra.starknet_rpc import (
    StarknetAccount,
    StarknetCall,
    StarknetRpcClient,
    encode_cairo_bytes,
    get_selector_from_name,
    join_u256,
    receipt_succeeded,
    split_u256,
    to_felt,
)
from oif_solver.types import ParsedArgs, is_native_token

STARKNET_ETH_ADDRESS = 0x49D36570D4E46F48E99674BD3FCC84644DDD6B96F7C741B1562B82F9E004DC7

FELT_FILLED = int.from_bytes(b"FILLED", "big")
FELT_SETTLED = int.from_bytes(b"SETTLED", "big")


def interpret_status_felt(value: int) -> str:
    if value == 0:
        return STATUS_UNKNOWN
    if value == FELT_FILLED:
        return STATUS_FILLED
    if value == FELT_SETTLED:
        return STATUS_SETTLED
    return hex(value)


class StarknetChainHandler(ChainHandler):
    chain_type = "Starknet"

    def __init__(
        self,
        chain_id: int,
        client: StarknetRpcClient,
        account: Optional[StarknetAccount],
        networks: NetworkRegistry,
        approval_delay: float = 1.0,
        fee_token: int = STARKNET_ETH_ADDRESS,
        skip_settle_origin_domains: Iterable[int] = (),
        **kwargs,
    ) -> None:
        super().__init__(chain_id, **kwargs)
        self.client = client
        self.account = account
        self.networks = networks
        self.approval_delay = approval_delay
        self.fee_token = fee_token
        self.skip_settle_origin_domains = set(skip_settle_origin_domains)

    def _require_account(self) -> StarknetAccount:
        if self.account is None:
            raise ChainHandlerError(f"no Starknet account configured for chain {self.chain_id}")
        return self.account

    def _order_id_felts(self, args: ParsedArgs):
        return split_u256(int.from_bytes(self._order_id_bytes(args), "big"))

    async def _invoke(self, account: StarknetAccount, call: StarknetCall, what: str) -> dict:
        try:
            tx_hash = await account.execute([call])
            receipt = await self.client.wait_for_receipt(tx_hash)
        except RPCError as exc:
            raise ChainHandlerError(f"starknet {what} failed: {exc}") from exc
        if not receipt_succeeded(receipt):
            raise ChainHandlerError(f"starknet {what} reverted: {receipt.get('revert_reason', tx_hash)}")
        return receipt

    async def get_order_status(self, args: ParsedArgs) -> str:
        settler = to_felt(self._instruction(args).destination_settler)
        low, high = self._order_id_felts(args)
        try:
            result = await self.client.call(settler, get_selector_from_name("order_status"), [low, high])
        except RPCError as exc:
            raise ChainHandlerError(f"order_status call failed: {exc}") from exc
        if not result:
            return STATUS_UNKNOWN
        return interpret_status_felt(result[0])

    async def fill(self, args: ParsedArgs) -> OrderAction:
        async with self._lock:
            instruction = self._instruction(args)
            settler = to_felt(instruction.destination_settler)

            status = await self.get_order_status(args)
            if status == STATUS_FILLED:
                self._log("fill_skipped", order_id=args.order_id, status=status)
                return OrderAction.SETTLE
            if status == STATUS_SETTLED:
                self._log("fill_skipped", order_id=args.order_id, status=status)
                return OrderAction.COMPLETE

            account = self._require_account()
            await self._setup_approvals(args, settler, account)

            low, high = self._order_id_felts(args)
            calldata = [low, high, *encode_cairo_bytes(instruction.origin_data), 0, 0]
            receipt = await self._invoke(
                account, StarknetCall(settler, get_selector_from_name("fill"), calldata), "fill"
            )
            self._log("order_filled", order_id=args.order_id, tx_hash=receipt.get("transaction_hash"))
            return OrderAction.SETTLE

    async def _setup_approvals(self, args: ParsedArgs, settler: int, account: StarknetAccount) -> None:
        max_spent = args.resolved_order.max_spent
        if not max_spent:
            return
        destination = self._instruction(args).destination_chain_id
        for output in max_spent:
            if is_native_token(output.token):
                continue
            if output.chain_id != destination:
                self._log(
                    "approval_skipped",
                    token=output.token,
                    output_chain=output.chain_id,
                    destination_chain=destination,
                )
                continue
            await self._ensure_allowance(to_felt(output.token), settler, output.amount, account)
        await self._sleep(self.approval_delay)

    async def _ensure_allowance(self, token: int, spender: int, amount: int, account: StarknetAccount) -> None:
        try:
            current = await self.client.erc20_allowance(token, account.address, spender)
        except RPCError as exc:
            raise ChainHandlerError(f"allowance call failed for {hex(token)}: {exc}") from exc
        except IndexError as exc:
            raise ChainHandlerError(f"allowance for {hex(token)} returned fewer than 2 felts") from exc
        if current >= amount:
            return
        low, high = split_u256(amount)
        await self._invoke(
            account,
            StarknetCall(token, get_selector_from_name("approve"), [spender, low, high]),
            "approve",
        )
        self._log("token_approved", token=hex(token), spender=hex(spender), amount=amount)

    async def settle(self, args: ParsedArgs) -> None:
        async with self._lock:
            instruction = self._instruction(args)
            settler = to_felt(instruction.destination_settler)

            status = await self.wait_for_order_status(args, STATUS_FILLED)
            if status != STATUS_FILLED:
                raise ChainHandlerError(f"order status must be FILLED to settle, got: {status}")

            origin_chain = args.resolved_order.origin_chain_id
            origin_domain = self.networks.chain_id_to_domain(origin_chain)
            if origin_domain is None:
                raise ChainHandlerError(f"no domain found for origin chain id {origin_chain}")
            if origin_domain in self.skip_settle_origin_domains:
                self._log("settle_skipped", order_id=args.order_id, origin_domain=origin_domain)
                return

            account = self._require_account()
            try:
                quote = await self.client.call(settler, get_selector_from_name("quote_gas_payment"), [origin_domain])
            except RPCError as exc:
                raise ChainHandlerError(f"quote_gas_payment call failed: {exc}") from exc
            if len(quote) < 2:
                raise ChainHandlerError(f"quote_gas_payment returned {len(quote)} felts, expected 2")
            gas_payment = join_u256(quote[0], quote[1])

            await self._ensure_allowance(self.fee_token, settler, gas_payment, account)

            low, high = self._order_id_felts(args)
            gas_low, gas_high = split_u256(gas_payment)
            receipt = await self._invoke(
                account,
                StarknetCall(settler, get_selector_from_name("settle"), [1, low, high, gas_low, gas_high]),
                "settle",
            )
            self._log(
                "order_settle_dispatched",
                order_id=args.order_id,
                origin_domain=origin_domain,
                gas_payment=gas_payment,
                tx_hash=receipt.get("transaction_hash"),
            )


class StarknetHandlerFactory(ChainHandlerFactory):
    chain_type = "Starknet"

    def __init__(
        self,
        networks: NetworkRegistry,
        client_for: Callable[[int], StarknetRpcClient],
        account_for: Callable[[int], Optional[StarknetAccount]],
        **handler_kwargs,
    ) -> None:
        super().__init__()
        self.networks = networks
        self._client_for = client_for
        self._account_for = account_for
        self._handler_kwargs: Dict = handler_kwargs

    def supports_chain(self, chain_id: int) -> bool:
        return self.networks.is_starknet(chain_id)

    def _build(self, chain_id: int) -> ChainHandler:
        return StarknetChainHandler(
            chain_id,
            client=self._client_for(chain_id),
            account=self._account_for(chain_id),
            networks=self.networks,
            **self._handler_kwargs,
        )
