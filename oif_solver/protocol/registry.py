"""
OrderRegistry: per-domain order status store and lifecycle state machine.

One registry models the settler deployed on one domain. On the origin
domain it escrows the user's input tokens at ``open``/``open_for`` and
releases them when a settle or refund message arrives through
``handle``. On the destination domain it records fills, pays the
recipient and sends settle/refund messages through the dispatcher.

State Diagram (per order id, per domain):

    UNKNOWN ──open/open_for──> OPENED ──settle msg──> SETTLED
       │                          └─────refund msg──> REFUNDED
       ├──fill──> FILLED
       └──refund (after fill deadline)──> REFUNDED

Every mutation validates first, performs its side effect (token
movement or message dispatch) second and commits the status change
last, so a failing side effect leaves no trace. Terminal states never
change again.

Thread Safety:
    Mutations are serialized with an RLock (re-entrant because an
    in-memory mailbox may deliver back into the same registry).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from oif_solver.core.event_bus import EventBus, EventType
from oif_solver.core.json_utils import dumps
from oif_solver.protocol.codec import (
    ORDER_DATA_TYPE_HASH,
    UINT32_MAX,
    bytes32_to_hex,
    decode_filler_data,
    decode_message,
    decode_order_data,
    encode_filler_data,
    encode_order_data,
    order_id as compute_order_id,
    to_bytes32,
)
from oif_solver.protocol.dispatcher import SettlementDispatcher
from oif_solver.protocol.errors import (
    InvalidNativeAmount,
    InvalidNonce,
    InvalidOrderDomain,
    InvalidOrderId,
    InvalidOrderStatus,
    InvalidOrderType,
    InvalidOriginDomain,
    InvalidSettler,
    InvalidSignature,
    MessageDecodeError,
    OrderFillExpired,
    OrderFillNotExpired,
    OrderOpenExpired,
    UnauthorizedRouter,
)
from oif_solver.protocol.signatures import is_valid_gasless_signature
from oif_solver.protocol.tokens import NATIVE_TOKEN, TokenLedger
from oif_solver.protocol.types import (
    FilledOrder,
    GaslessCrossChainOrder,
    OnchainCrossChainOrder,
    OrderData,
    OrderStatus,
)
from oif_solver.types import FillInstruction, Output, ResolvedCrossChainOrder

log = logging.getLogger("oifsolver")


VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.UNKNOWN: [
        OrderStatus.OPENED,      # open / open_for on origin
        OrderStatus.FILLED,      # fill on destination
        OrderStatus.REFUNDED,    # refund on destination after deadline
    ],
    OrderStatus.OPENED: [
        OrderStatus.SETTLED,     # settle message from destination
        OrderStatus.REFUNDED,    # refund message from destination
    ],
    # Terminal on this domain
    OrderStatus.FILLED: [],
    OrderStatus.SETTLED: [],
    OrderStatus.REFUNDED: [],
}


class OrderRegistry:
    """
    Usage:
        registry = OrderRegistry(
            local_domain=1,
            address=settler,
            ledger=TokenLedger(),
            dispatcher=SettlementDispatcher(1, settler, mailbox),
        )
        registry.open(order, caller=user)
        registry.fill(order_id, origin_data, filler_data, caller=solver)
        registry.settle([order_id], caller=solver, value=fee)
    """

    def __init__(
        self,
        local_domain: int,
        address: bytes,
        ledger: TokenLedger,
        dispatcher: SettlementDispatcher,
        chain_id: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
        event_bus: Optional[EventBus] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.local_domain = local_domain
        self.chain_id = chain_id if chain_id is not None else local_domain
        self.address = to_bytes32(address)
        self.ledger = ledger
        self.dispatcher = dispatcher
        self._clock = clock or (lambda: int(time.time()))
        self._bus = event_bus
        self._log_event = log_event or self._default_log

        self._status: Dict[bytes, OrderStatus] = {}
        self._open_orders: Dict[bytes, bytes] = {}
        self._filled_orders: Dict[bytes, FilledOrder] = {}
        self._used_nonces: Set[Tuple[bytes, int]] = set()
        self._lock = threading.RLock()

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(dumps({"event": event, "domain": self.local_domain, **kwargs}))

    def _emit(self, event_type: EventType, **data) -> None:
        if self._bus is not None:
            self._bus.emit_sync(event_type, source=f"domain:{self.local_domain}", **data)

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def order_status(self, order_id: bytes) -> OrderStatus:
        return self._status.get(to_bytes32(order_id), OrderStatus.UNKNOWN)

    def open_orders(self, order_id: bytes) -> Optional[bytes]:
        return self._open_orders.get(to_bytes32(order_id))

    def filled_orders(self, order_id: bytes) -> Optional[FilledOrder]:
        return self._filled_orders.get(to_bytes32(order_id))

    def is_valid_nonce(self, owner: bytes, nonce: int) -> bool:
        return (to_bytes32(owner), nonce) not in self._used_nonces

    def quote_gas_payment(self, destination_domain: int) -> int:
        return self.dispatcher.quote_gas_payment(destination_domain)

    def resolve(self, order: OnchainCrossChainOrder, user: Optional[bytes] = None) -> ResolvedCrossChainOrder:
        od = self._decode_order(order.order_data_type, order.order_data)
        return self._resolved(od, user if user is not None else od.sender, UINT32_MAX)

    def resolve_for(self, order: GaslessCrossChainOrder, origin_filler_data: bytes = b"") -> ResolvedCrossChainOrder:
        od = self._decode_order(order.order_data_type, order.order_data)
        return self._resolved(od, order.user, order.open_deadline)

    def _decode_order(self, order_data_type: bytes, order_data: bytes) -> OrderData:
        if to_bytes32(order_data_type) != ORDER_DATA_TYPE_HASH:
            raise InvalidOrderType(f"unexpected order data type {bytes32_to_hex(order_data_type)}")
        return decode_order_data(order_data)

    def _resolved(self, od: OrderData, user: bytes, open_deadline: int) -> ResolvedCrossChainOrder:
        return ResolvedCrossChainOrder(
            user=bytes32_to_hex(user),
            origin_chain_id=self.chain_id,
            open_deadline=open_deadline,
            fill_deadline=od.fill_deadline,
            order_id=compute_order_id(od),
            max_spent=[Output(
                token=bytes32_to_hex(od.output_token),
                amount=od.amount_out,
                recipient=bytes32_to_hex(od.recipient),
                chain_id=od.destination_domain,
            )],
            min_received=[Output(
                token=bytes32_to_hex(od.input_token),
                amount=od.amount_in,
                recipient=bytes32_to_hex(b""),
                chain_id=od.origin_domain,
            )],
            fill_instructions=[FillInstruction(
                destination_chain_id=od.destination_domain,
                destination_settler=bytes32_to_hex(od.destination_settler),
                origin_data=encode_order_data(od),
            )],
        )

    # -------------------------------------------------------------------------
    # Internal state transitions
    # -------------------------------------------------------------------------

    def _require_status(self, order_id: bytes, expected: OrderStatus) -> None:
        current = self.order_status(order_id)
        if current is not expected:
            raise InvalidOrderStatus(
                f"order {bytes32_to_hex(order_id)} is {current.name}, expected {expected.name}"
            )

    def _set_status(self, order_id: bytes, to_status: OrderStatus) -> None:
        current = self.order_status(order_id)
        if to_status not in VALID_TRANSITIONS[current]:
            raise InvalidOrderStatus(
                f"order {bytes32_to_hex(order_id)}: {current.name} -> {to_status.name} not allowed"
            )
        self._status[order_id] = to_status

    def _require_unused_nonce(self, owner: bytes, nonce: int) -> None:
        if (owner, nonce) in self._used_nonces:
            raise InvalidNonce(f"nonce {nonce} already used by {bytes32_to_hex(owner)}")

    # -------------------------------------------------------------------------
    # Origin domain
    # -------------------------------------------------------------------------

    def open(self, order: OnchainCrossChainOrder, caller: bytes, value: int = 0) -> bytes:
        """Open an order paid for by ``caller``. Returns the order id."""
        caller = to_bytes32(caller)
        with self._lock:
            od = self._decode_order(order.order_data_type, order.order_data)
            if od.origin_domain != self.local_domain:
                raise InvalidOriginDomain(f"origin domain {od.origin_domain} != {self.local_domain}")
            oid = compute_order_id(od)
            self._require_status(oid, OrderStatus.UNKNOWN)
            self._require_unused_nonce(caller, od.sender_nonce)

            self._pull_input(od, caller, value)

            self._used_nonces.add((caller, od.sender_nonce))
            self._commit_open(oid, od, self._resolved(od, caller, UINT32_MAX))
            return oid

    def open_for(
        self,
        order: GaslessCrossChainOrder,
        signature: bytes,
        origin_filler_data: bytes = b"",
        caller: Optional[bytes] = None,
    ) -> bytes:
        """Open on behalf of ``order.user``, authorized by their EIP-712 signature."""
        with self._lock:
            if self._clock() >= order.open_deadline:
                raise OrderOpenExpired(f"open deadline {order.open_deadline} passed")
            if to_bytes32(order.origin_settler) != self.address:
                raise InvalidSettler(f"origin settler {bytes32_to_hex(order.origin_settler)} is not this registry")
            if order.origin_chain_id != self.chain_id:
                raise InvalidOriginDomain(f"origin chain {order.origin_chain_id} != {self.chain_id}")

            od = self._decode_order(order.order_data_type, order.order_data)
            if od.origin_domain != self.local_domain:
                raise InvalidOriginDomain(f"origin domain {od.origin_domain} != {self.local_domain}")
            oid = compute_order_id(od)
            self._require_status(oid, OrderStatus.UNKNOWN)
            user = to_bytes32(order.user)
            self._require_unused_nonce(user, order.nonce)
            if not is_valid_gasless_signature(order, signature):
                raise InvalidSignature(f"signature does not match user {bytes32_to_hex(user)}")
            if to_bytes32(od.input_token) == NATIVE_TOKEN:
                raise InvalidNativeAmount("gasless orders cannot escrow the native asset")

            # Signature stands in for an allowance
            self.ledger.transfer(od.input_token, user, self.address, od.amount_in)

            self._used_nonces.add((user, order.nonce))
            self._commit_open(oid, od, self._resolved(od, user, order.open_deadline))
            return oid

    def _pull_input(self, od: OrderData, payer: bytes, value: int) -> None:
        if to_bytes32(od.input_token) == NATIVE_TOKEN:
            if value != od.amount_in:
                raise InvalidNativeAmount(f"value {value} != amount in {od.amount_in}")
            self.ledger.transfer(NATIVE_TOKEN, payer, self.address, value)
        else:
            if value != 0:
                raise InvalidNativeAmount("native value sent with an ERC20 order")
            self.ledger.transfer_from(od.input_token, self.address, payer, self.address, od.amount_in)

    def _commit_open(self, oid: bytes, od: OrderData, resolved: ResolvedCrossChainOrder) -> None:
        self._set_status(oid, OrderStatus.OPENED)
        self._open_orders[oid] = encode_order_data(od)
        self._log_event(
            "order_opened",
            order_id=bytes32_to_hex(oid),
            destination=od.destination_domain,
            amount_in=od.amount_in,
            amount_out=od.amount_out,
        )
        self._emit(EventType.ORDER_OPENED, order_id=bytes32_to_hex(oid), resolved_order=resolved)

    def invalidate_nonces(self, nonce: int, caller: bytes) -> None:
        caller = to_bytes32(caller)
        with self._lock:
            self._require_unused_nonce(caller, nonce)
            self._used_nonces.add((caller, nonce))
        self._log_event("nonce_invalidated", owner=bytes32_to_hex(caller), nonce=nonce)
        self._emit(EventType.NONCE_INVALIDATED, owner=bytes32_to_hex(caller), nonce=nonce)

    def handle(self, origin_domain: int, sender: bytes, message: bytes) -> None:
        """
        Inbound settle/refund message from the router of ``origin_domain``
        (the domain the orders were filled or refunded on).

        Ids that are not OPENED here, or whose destination is a different
        domain, are skipped rather than rejected.
        """
        router = self.dispatcher.router_for(origin_domain)
        if router is None or router != to_bytes32(sender):
            raise UnauthorizedRouter(f"sender {bytes32_to_hex(sender)} is not the router for domain {origin_domain}")

        settle, order_ids, filler_data = decode_message(message)
        if settle and len(filler_data) != len(order_ids):
            raise MessageDecodeError(
                f"settle message has {len(order_ids)} ids but {len(filler_data)} filler entries"
            )

        with self._lock:
            # Decode the whole batch before moving any funds
            releases = []
            for i, oid in enumerate(order_ids):
                receiver = decode_filler_data(filler_data[i]) if settle else None
                if self.order_status(oid) is not OrderStatus.OPENED:
                    self._log_event("handle_skip_status", order_id=bytes32_to_hex(oid), status=self.order_status(oid).name)
                    continue
                od = decode_order_data(self._open_orders[oid])
                if od.destination_domain != origin_domain:
                    self._log_event("handle_skip_domain", order_id=bytes32_to_hex(oid), sender_domain=origin_domain)
                    continue
                releases.append((oid, od, receiver))

            for oid, od, receiver in releases:
                if settle:
                    self._release_settled(oid, od, receiver)
                else:
                    self._release_refunded(oid, od)

    def _release_settled(self, oid: bytes, od: OrderData, receiver: bytes) -> None:
        self.ledger.transfer(od.input_token, self.address, receiver, od.amount_in)
        self._set_status(oid, OrderStatus.SETTLED)
        self._log_event("order_settled", order_id=bytes32_to_hex(oid), receiver=bytes32_to_hex(receiver))
        self._emit(EventType.ORDER_SETTLED, order_id=bytes32_to_hex(oid), receiver=bytes32_to_hex(receiver))

    def _release_refunded(self, oid: bytes, od: OrderData) -> None:
        self.ledger.transfer(od.input_token, self.address, od.sender, od.amount_in)
        self._set_status(oid, OrderStatus.REFUNDED)
        self._log_event("order_refunded", order_id=bytes32_to_hex(oid), receiver=bytes32_to_hex(od.sender))
        self._emit(EventType.ORDER_REFUNDED, order_id=bytes32_to_hex(oid), receiver=bytes32_to_hex(od.sender))

    # -------------------------------------------------------------------------
    # Destination domain
    # -------------------------------------------------------------------------

    def fill(
        self,
        order_id: bytes,
        origin_data: bytes,
        filler_data: bytes,
        caller: bytes,
        value: int = 0,
    ) -> None:
        """
        Deliver the order's output to its recipient. Empty ``filler_data``
        names the caller as the origin-side receiver.
        """
        order_id = to_bytes32(order_id)
        caller = to_bytes32(caller)
        with self._lock:
            self._require_status(order_id, OrderStatus.UNKNOWN)
            od = decode_order_data(origin_data)
            if compute_order_id(od) != order_id:
                raise InvalidOrderId(f"origin data does not hash to {bytes32_to_hex(order_id)}")
            if self._clock() >= od.fill_deadline:
                raise OrderFillExpired(f"fill deadline {od.fill_deadline} passed")
            if od.destination_domain != self.local_domain:
                raise InvalidOrderDomain(f"destination domain {od.destination_domain} != {self.local_domain}")

            if to_bytes32(od.output_token) == NATIVE_TOKEN:
                if value != od.amount_out:
                    raise InvalidNativeAmount(f"value {value} != amount out {od.amount_out}")
                self.ledger.transfer(NATIVE_TOKEN, caller, od.recipient, value)
            else:
                if value != 0:
                    raise InvalidNativeAmount("native value sent with an ERC20 fill")
                self.ledger.transfer_from(od.output_token, self.address, caller, od.recipient, od.amount_out)

            filler_data = bytes(filler_data) or encode_filler_data(caller)
            self._set_status(order_id, OrderStatus.FILLED)
            self._filled_orders[order_id] = FilledOrder(origin_data=bytes(origin_data), filler_data=filler_data)

        self._log_event("order_filled", order_id=bytes32_to_hex(order_id), filler=bytes32_to_hex(caller))
        self._emit(
            EventType.ORDER_FILLED,
            order_id=bytes32_to_hex(order_id),
            origin_data=bytes(origin_data),
            filler_data=filler_data,
        )

    def settle(self, order_ids: Sequence[bytes], caller: Optional[bytes] = None, value: int = 0) -> bytes:
        """
        Send a settle message for filled orders. The batch is routed by the
        first order's origin domain; orders from another origin are ignored
        there and can be settled again in a later batch.
        """
        if not order_ids:
            raise ValueError("settle needs at least one order id")
        order_ids = [to_bytes32(oid) for oid in order_ids]
        with self._lock:
            for oid in order_ids:
                self._require_status(oid, OrderStatus.FILLED)
            filled = [self._filled_orders[oid] for oid in order_ids]
            origin_domain = decode_order_data(filled[0].origin_data).origin_domain
            message_id = self.dispatcher.dispatch_settle(
                origin_domain, order_ids, [f.filler_data for f in filled], value
            )

        ids_hex = [bytes32_to_hex(oid) for oid in order_ids]
        self._log_event("orders_settle", order_ids=ids_hex, origin=origin_domain)
        self._emit(EventType.ORDERS_SETTLING, order_ids=ids_hex, filler_data=[f.filler_data for f in filled])
        return message_id

    def refund(self, orders: Sequence[OnchainCrossChainOrder], caller: Optional[bytes] = None, value: int = 0) -> bytes:
        """Refund never-filled orders once their fill deadline has passed."""
        return self._refund([(o.order_data_type, o.order_data) for o in orders], value)

    def refund_gasless(self, orders: Sequence[GaslessCrossChainOrder], caller: Optional[bytes] = None, value: int = 0) -> bytes:
        return self._refund([(o.order_data_type, o.order_data) for o in orders], value)

    def _refund(self, payloads: List[Tuple[bytes, bytes]], value: int) -> bytes:
        if not payloads:
            raise ValueError("refund needs at least one order")
        with self._lock:
            now = self._clock()
            decoded: List[Tuple[bytes, OrderData]] = []
            for order_data_type, order_data in payloads:
                od = self._decode_order(order_data_type, order_data)
                oid = compute_order_id(od)
                self._require_status(oid, OrderStatus.UNKNOWN)
                if any(oid == seen for seen, _ in decoded):
                    raise InvalidOrderStatus(f"order {bytes32_to_hex(oid)} listed twice")
                if now < od.fill_deadline:
                    raise OrderFillNotExpired(f"fill deadline {od.fill_deadline} not reached (now {now})")
                decoded.append((oid, od))

            order_ids = [oid for oid, _ in decoded]
            origin_domain = decoded[0][1].origin_domain
            message_id = self.dispatcher.dispatch_refund(origin_domain, order_ids, value)
            for oid in order_ids:
                self._set_status(oid, OrderStatus.REFUNDED)

        ids_hex = [bytes32_to_hex(oid) for oid in order_ids]
        self._log_event("orders_refund", order_ids=ids_hex, origin=origin_domain)
        self._emit(EventType.ORDERS_REFUNDING, order_ids=ids_hex)
        return message_id
