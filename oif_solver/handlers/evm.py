"""
EVM ChainHandler: fill and settle against a Hyperlane7683 settler contract.

Fill flow:
    1. orderStatus(orderId) on the destination settler; FILLED -> SETTLE,
       SETTLED -> COMPLETE (someone already did the work)
    2. approve the settler for every ERC20 in maxSpent on this chain
    3. fill(orderId, originData, fillerData="") with msg.value equal to the
       first maxSpent amount when that output is the native asset
    4. wait for the receipt; status 1 -> SETTLE

Settle flow:
    1. poll orderStatus until FILLED (bounded exponential back-off)
    2. quoteGasPayment(originDomain)
    3. settle([orderId]) paying the quote as msg.value
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, Optional

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

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
from oif_solver.infra.evm_rpc import (
    EvmRpcClient,
    EvmTransactor,
    RPCError,
    encode_call,
    erc20_allowance,
    receipt_succeeded,
)
from oif_solver.protocol.codec import bytes32_to_evm_address
from oif_solver.protocol.types import OrderStatus
from oif_solver.types import ParsedArgs, is_native_token

_STATUS_NAMES = {
    OrderStatus.UNKNOWN.value: STATUS_UNKNOWN,
    OrderStatus.FILLED.value: STATUS_FILLED,
    OrderStatus.SETTLED.value: STATUS_SETTLED,
}


def interpret_status_word(word: bytes) -> str:
    """Map an ``orderStatus`` bytes32 to its name, or its hex if unrecognised."""
    return _STATUS_NAMES.get(bytes(word), "0x" + bytes(word).hex())


class EVMChainHandler(ChainHandler):
    chain_type = "EVM"

    def __init__(
        self,
        chain_id: int,
        client: EvmRpcClient,
        transactor: Optional[EvmTransactor],
        networks: NetworkRegistry,
        approval_delay: float = 1.0,
        skip_settle_origin_domains: Iterable[int] = (),
        **kwargs,
    ) -> None:
        super().__init__(chain_id, **kwargs)
        self.client = client
        self.transactor = transactor
        self.networks = networks
        self.approval_delay = approval_delay
        self.skip_settle_origin_domains = set(skip_settle_origin_domains)

    def _require_transactor(self) -> EvmTransactor:
        if self.transactor is None:
            raise ChainHandlerError(f"no EVM signer configured for chain {self.chain_id}")
        return self.transactor

    async def get_order_status(self, args: ParsedArgs) -> str:
        instruction = self._instruction(args)
        settler = bytes32_to_evm_address(instruction.destination_settler)
        data = encode_call("orderStatus(bytes32)", ["bytes32"], [self._order_id_bytes(args)])
        try:
            result = await self.client.call(settler, data)
        except RPCError as exc:
            raise ChainHandlerError(f"orderStatus call failed: {exc}") from exc
        if len(result) < 32:
            raise ChainHandlerError(f"invalid orderStatus result length: {len(result)}")
        return interpret_status_word(result[:32])

    async def fill(self, args: ParsedArgs) -> OrderAction:
        async with self._lock:
            instruction = self._instruction(args)
            settler = bytes32_to_evm_address(instruction.destination_settler)

            status = await self.get_order_status(args)
            if status == STATUS_FILLED:
                self._log("fill_skipped", order_id=args.order_id, status=status)
                return OrderAction.SETTLE
            if status == STATUS_SETTLED:
                self._log("fill_skipped", order_id=args.order_id, status=status)
                return OrderAction.COMPLETE

            transactor = self._require_transactor()
            await self._setup_approvals(args, settler, transactor)

            max_spent = args.resolved_order.max_spent
            value = max_spent[0].amount if max_spent and is_native_token(max_spent[0].token) else 0
            data = encode_call(
                "fill(bytes32,bytes,bytes)",
                ["bytes32", "bytes", "bytes"],
                [self._order_id_bytes(args), instruction.origin_data, b""],
            )
            try:
                receipt = await transactor.transact(settler, data, value)
            except RPCError as exc:
                raise ChainHandlerError(f"fill transaction failed: {exc}") from exc
            if not receipt_succeeded(receipt):
                raise ChainHandlerError(f"fill transaction reverted: {receipt.get('transactionHash')}")

            self._log(
                "order_filled",
                order_id=args.order_id,
                tx_hash=receipt.get("transactionHash"),
                value=value,
            )
            return OrderAction.SETTLE

    async def _setup_approvals(self, args: ParsedArgs, settler: str, transactor: EvmTransactor) -> None:
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
            await self._ensure_allowance(bytes32_to_evm_address(output.token), settler, output.amount, transactor)
        await self._sleep(self.approval_delay)

    async def _ensure_allowance(self, token: str, spender: str, amount: int, transactor: EvmTransactor) -> None:
        try:
            current = await erc20_allowance(self.client, token, transactor.address, spender)
        except RPCError as exc:
            raise ChainHandlerError(f"allowance call failed for {token}: {exc}") from exc
        if current >= amount:
            return
        data = encode_call("approve(address,uint256)", ["address", "uint256"], [spender, amount])
        try:
            receipt = await transactor.transact(token, data)
        except RPCError as exc:
            raise ChainHandlerError(f"approve failed for {token}: {exc}") from exc
        if not receipt_succeeded(receipt):
            raise ChainHandlerError(f"approve transaction reverted for {token}")
        self._log("token_approved", token=token, spender=spender, amount=amount)

    async def settle(self, args: ParsedArgs) -> None:
        async with self._lock:
            instruction = self._instruction(args)
            settler = bytes32_to_evm_address(instruction.destination_settler)

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

            transactor = self._require_transactor()
            try:
                raw = await self.client.call(
                    settler, encode_call("quoteGasPayment(uint32)", ["uint32"], [origin_domain])
                )
                gas_payment = abi_decode(["uint256"], raw)[0]
            except RPCError as exc:
                raise ChainHandlerError(f"quoteGasPayment failed on {settler}: {exc}") from exc
            except DecodingError as exc:
                raise ChainHandlerError(f"invalid quoteGasPayment result on {settler}: {exc}") from exc

            data = encode_call("settle(bytes32[])", ["bytes32[]"], [[self._order_id_bytes(args)]])
            try:
                receipt = await transactor.transact(settler, data, gas_payment)
            except RPCError as exc:
                raise ChainHandlerError(f"settle transaction failed on {settler}: {exc}") from exc
            if not receipt_succeeded(receipt):
                raise ChainHandlerError(f"settle transaction reverted on {settler}")

            self._log(
                "order_settle_dispatched",
                order_id=args.order_id,
                origin_domain=origin_domain,
                gas_payment=gas_payment,
                tx_hash=receipt.get("transactionHash"),
            )


class EVMHandlerFactory(ChainHandlerFactory):
    chain_type = "EVM"

    def __init__(
        self,
        networks: NetworkRegistry,
        client_for: Callable[[int], EvmRpcClient],
        transactor_for: Callable[[int], Optional[EvmTransactor]],
        **handler_kwargs,
    ) -> None:
        super().__init__()
        self.networks = networks
        self._client_for = client_for
        self._transactor_for = transactor_for
        self._handler_kwargs: Dict = handler_kwargs

    def supports_chain(self, chain_id: int) -> bool:
        return self.networks.is_evm(chain_id)

    def _build(self, chain_id: int) -> ChainHandler:
        return EVMChainHandler(
            chain_id,
            client=self._client_for(chain_id),
            transactor=self._transactor_for(chain_id),
            networks=self.networks,
            **self._handler_kwargs,
        )
