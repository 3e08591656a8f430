"""
Tests for the order lifecycle across an origin and a destination registry
wired together through the in-memory mailbox.
"""

import pytest
from eth_account import Account

from oif_solver.core.event_bus import EventBus, EventType
from oif_solver.protocol.codec import (
    ORDER_DATA_TYPE_HASH,
    encode_filler_data,
    encode_message,
    encode_order_data,
    order_id,
    to_bytes32,
)
from oif_solver.protocol.dispatcher import InMemoryMailbox, SettlementDispatcher
from oif_solver.protocol.errors import (
    InsufficientGasPayment,
    InsufficientTokenBalance,
    InvalidNativeAmount,
    InvalidNonce,
    InvalidOrderDomain,
    InvalidOrderId,
    InvalidOrderStatus,
    InvalidOrderType,
    InvalidOriginDomain,
    InvalidSignature,
    MessageDecodeError,
    OrderFillExpired,
    OrderFillNotExpired,
    OrderOpenExpired,
    UnauthorizedRouter,
    UnroutableDomain,
)
from oif_solver.protocol.registry import OrderRegistry
from oif_solver.protocol.signatures import sign_gasless_order
from oif_solver.protocol.tokens import NATIVE_TOKEN, TokenLedger
from oif_solver.protocol.types import GaslessCrossChainOrder, OnchainCrossChainOrder, OrderData, OrderStatus

ORIGIN = 1
DEST = 2
FEE = 5
FILL_DEADLINE = 2000

ORIGIN_SETTLER = to_bytes32("0x" + "0a" * 20)
DEST_SETTLER = to_bytes32("0x" + "0b" * 20)
USER = to_bytes32("0x" + "aa" * 20)
RECIPIENT = to_bytes32("0x" + "bb" * 20)
SOLVER = to_bytes32("0x" + "cc" * 20)
INPUT_TOKEN = to_bytes32("0x" + "01" * 20)
OUTPUT_TOKEN = to_bytes32("0x" + "02" * 20)

USER_KEY = "0x" + "11" * 32


class Clock:
    def __init__(self, now: int = 1000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class Network:
    """Origin and destination registries sharing one mailbox and clock."""

    def __init__(self) -> None:
        self.clock = Clock()
        self.bus = EventBus()
        self.mailbox = InMemoryMailbox(fees={ORIGIN: FEE, DEST: FEE})
        self.origin_ledger = TokenLedger()
        self.dest_ledger = TokenLedger()
        self.origin = OrderRegistry(
            ORIGIN,
            ORIGIN_SETTLER,
            self.origin_ledger,
            SettlementDispatcher(ORIGIN, ORIGIN_SETTLER, self.mailbox, routers={DEST: DEST_SETTLER}),
            clock=self.clock,
            event_bus=self.bus,
        )
        self.dest = OrderRegistry(
            DEST,
            DEST_SETTLER,
            self.dest_ledger,
            SettlementDispatcher(DEST, DEST_SETTLER, self.mailbox, routers={ORIGIN: ORIGIN_SETTLER}),
            clock=self.clock,
            event_bus=self.bus,
        )
        self.mailbox.register(ORIGIN, ORIGIN_SETTLER, self.origin)
        self.mailbox.register(DEST, DEST_SETTLER, self.dest)

    def order_data(self, sender: bytes = USER, **overrides) -> OrderData:
        fields = dict(
            sender=sender,
            recipient=RECIPIENT,
            input_token=INPUT_TOKEN,
            output_token=OUTPUT_TOKEN,
            amount_in=1050,
            amount_out=1000,
            sender_nonce=1,
            origin_domain=ORIGIN,
            destination_domain=DEST,
            destination_settler=DEST_SETTLER,
            fill_deadline=FILL_DEADLINE,
            data=b"",
        )
        fields.update(overrides)
        return OrderData(**fields)

    def onchain(self, od: OrderData) -> OnchainCrossChainOrder:
        return OnchainCrossChainOrder(od.fill_deadline, ORDER_DATA_TYPE_HASH, encode_order_data(od))

    def fund_user(self, amount: int = 1050, user: bytes = USER) -> None:
        self.origin_ledger.mint(INPUT_TOKEN, user, amount)
        self.origin_ledger.approve(INPUT_TOKEN, user, ORIGIN_SETTLER, amount)

    def fund_solver(self, amount: int = 1000) -> None:
        self.dest_ledger.mint(OUTPUT_TOKEN, SOLVER, amount)
        self.dest_ledger.approve(OUTPUT_TOKEN, SOLVER, DEST_SETTLER, amount)

    def open(self, od: OrderData) -> bytes:
        self.fund_user(od.amount_in)
        return self.origin.open(self.onchain(od), caller=USER)

    def fill(self, od: OrderData) -> bytes:
        self.fund_solver(od.amount_out)
        oid = order_id(od)
        self.dest.fill(oid, encode_order_data(od), encode_filler_data(SOLVER), caller=SOLVER)
        return oid


@pytest.fixture
def net():
    return Network()


class TestOpen:
    def test_open_escrows_input_and_marks_opened(self, net):
        od = net.order_data()
        oid = net.open(od)
        assert oid == order_id(od)
        assert net.origin.order_status(oid) is OrderStatus.OPENED
        assert net.origin_ledger.balance_of(INPUT_TOKEN, USER) == 0
        assert net.origin_ledger.balance_of(INPUT_TOKEN, ORIGIN_SETTLER) == 1050
        assert net.origin.open_orders(oid) == encode_order_data(od)

    def test_open_emits_resolved_order(self, net):
        od = net.order_data()
        oid = net.open(od)
        (event,) = net.bus.get_history(EventType.ORDER_OPENED)
        resolved = event.data["resolved_order"]
        assert resolved.order_id == oid
        assert resolved.max_spent[0].amount == 1000
        assert resolved.max_spent[0].chain_id == DEST
        assert resolved.min_received[0].amount == 1050
        assert resolved.fill_instructions[0].origin_data == encode_order_data(od)
        assert resolved.open_deadline == 2**32 - 1

    def test_wrong_order_type_rejected(self, net):
        od = net.order_data()
        net.fund_user()
        bad = OnchainCrossChainOrder(od.fill_deadline, b"\x01" * 32, encode_order_data(od))
        with pytest.raises(InvalidOrderType):
            net.origin.open(bad, caller=USER)

    def test_wrong_origin_domain_rejected(self, net):
        od = net.order_data(origin_domain=DEST)
        net.fund_user()
        with pytest.raises(InvalidOriginDomain):
            net.origin.open(net.onchain(od), caller=USER)

    def test_same_order_twice_rejected(self, net):
        od = net.order_data()
        net.open(od)
        net.fund_user()
        with pytest.raises(InvalidOrderStatus):
            net.origin.open(net.onchain(od), caller=USER)

    def test_missing_allowance_leaves_no_trace(self, net):
        od = net.order_data()
        net.origin_ledger.mint(INPUT_TOKEN, USER, 1050)
        with pytest.raises(InsufficientTokenBalance):
            net.origin.open(net.onchain(od), caller=USER)
        assert net.origin.order_status(order_id(od)) is OrderStatus.UNKNOWN
        assert net.origin.is_valid_nonce(USER, od.sender_nonce)

    def test_native_input_needs_exact_value(self, net):
        od = net.order_data(input_token=NATIVE_TOKEN)
        net.origin_ledger.mint(NATIVE_TOKEN, USER, 5000)
        with pytest.raises(InvalidNativeAmount):
            net.origin.open(net.onchain(od), caller=USER, value=1)
        oid = net.origin.open(net.onchain(od), caller=USER, value=1050)
        assert net.origin.order_status(oid) is OrderStatus.OPENED
        assert net.origin_ledger.balance_of(NATIVE_TOKEN, ORIGIN_SETTLER) == 1050


class TestNonces:
    def test_nonce_consumed_once_by_open(self, net):
        net.open(net.order_data(amount_in=1050))
        second = net.order_data(amount_in=2000)
        net.fund_user(2000)
        with pytest.raises(InvalidNonce):
            net.origin.open(net.onchain(second), caller=USER)

    def test_invalidate_then_open_fails(self, net):
        net.origin.invalidate_nonces(1, caller=USER)
        assert not net.origin.is_valid_nonce(USER, 1)
        net.fund_user()
        with pytest.raises(InvalidNonce):
            net.origin.open(net.onchain(net.order_data()), caller=USER)

    def test_invalidate_twice_fails(self, net):
        net.origin.invalidate_nonces(4, caller=USER)
        with pytest.raises(InvalidNonce):
            net.origin.invalidate_nonces(4, caller=USER)
        assert len(net.bus.get_history(EventType.NONCE_INVALIDATED)) == 1

    def test_nonces_are_per_owner(self, net):
        net.origin.invalidate_nonces(1, caller=USER)
        assert net.origin.is_valid_nonce(SOLVER, 1)


class TestGasless:
    def _order(self, net, key=USER_KEY, nonce=3, **overrides) -> GaslessCrossChainOrder:
        user = to_bytes32(Account.from_key(key).address)
        od = net.order_data(sender=user, sender_nonce=nonce)
        fields = dict(
            origin_settler=ORIGIN_SETTLER,
            user=user,
            nonce=nonce,
            origin_chain_id=ORIGIN,
            open_deadline=net.clock.now + 100,
            fill_deadline=FILL_DEADLINE,
            order_data_type=ORDER_DATA_TYPE_HASH,
            order_data=encode_order_data(od),
        )
        fields.update(overrides)
        return GaslessCrossChainOrder(**fields)

    def test_open_for_with_user_signature(self, net):
        order = self._order(net)
        net.origin_ledger.mint(INPUT_TOKEN, order.user, 1050)
        oid = net.origin.open_for(order, sign_gasless_order(order, USER_KEY), caller=SOLVER)
        assert net.origin.order_status(oid) is OrderStatus.OPENED
        assert net.origin_ledger.balance_of(INPUT_TOKEN, ORIGIN_SETTLER) == 1050
        assert not net.origin.is_valid_nonce(order.user, 3)

    def test_signature_from_someone_else_rejected(self, net):
        order = self._order(net)
        net.origin_ledger.mint(INPUT_TOKEN, order.user, 1050)
        with pytest.raises(InvalidSignature):
            net.origin.open_for(order, sign_gasless_order(order, "0x" + "22" * 32))
        assert net.origin_ledger.balance_of(INPUT_TOKEN, order.user) == 1050

    def test_expired_open_deadline(self, net):
        order = self._order(net, open_deadline=net.clock.now)
        with pytest.raises(OrderOpenExpired):
            net.origin.open_for(order, sign_gasless_order(order, USER_KEY))

    def test_wrong_chain_rejected(self, net):
        order = self._order(net, origin_chain_id=99)
        with pytest.raises(InvalidOriginDomain):
            net.origin.open_for(order, sign_gasless_order(order, USER_KEY))


class TestFill:
    def test_fill_pays_recipient(self, net):
        od = net.order_data()
        net.open(od)
        oid = net.fill(od)
        assert net.dest.order_status(oid) is OrderStatus.FILLED
        assert net.dest_ledger.balance_of(OUTPUT_TOKEN, RECIPIENT) == 1000
        assert net.dest.filled_orders(oid).filler_data == encode_filler_data(SOLVER)

    def test_empty_filler_data_defaults_to_caller(self, net):
        od = net.order_data()
        net.fund_solver()
        oid = order_id(od)
        net.dest.fill(oid, encode_order_data(od), b"", caller=SOLVER)
        assert net.dest.filled_orders(oid).filler_data == encode_filler_data(SOLVER)

    def test_mismatched_order_id(self, net):
        od = net.order_data()
        net.fund_solver()
        with pytest.raises(InvalidOrderId):
            net.dest.fill(b"\x01" * 32, encode_order_data(od), b"", caller=SOLVER)

    def test_fill_after_deadline(self, net):
        od = net.order_data()
        net.fund_solver()
        net.clock.now = FILL_DEADLINE
        with pytest.raises(OrderFillExpired):
            net.dest.fill(order_id(od), encode_order_data(od), b"", caller=SOLVER)

    def test_fill_on_wrong_domain(self, net):
        od = net.order_data()
        with pytest.raises(InvalidOrderDomain):
            net.origin.fill(order_id(od), encode_order_data(od), b"", caller=SOLVER)

    def test_double_fill_rejected(self, net):
        od = net.order_data()
        net.fill(od)
        net.fund_solver()
        with pytest.raises(InvalidOrderStatus):
            net.dest.fill(order_id(od), encode_order_data(od), b"", caller=SOLVER)


class TestSettle:
    def test_settle_releases_input_to_filler(self, net):
        od = net.order_data()
        oid = net.open(od)
        net.fill(od)
        net.dest.settle([oid], caller=SOLVER, value=FEE)
        assert net.origin.order_status(oid) is OrderStatus.SETTLED
        assert net.origin_ledger.balance_of(INPUT_TOKEN, SOLVER) == 1050
        assert net.origin_ledger.balance_of(INPUT_TOKEN, ORIGIN_SETTLER) == 0
        # destination keeps its own record
        assert net.dest.order_status(oid) is OrderStatus.FILLED
        assert net.mailbox.deliveries[-1].delivered
        assert len(net.bus.get_history(EventType.ORDER_SETTLED)) == 1

    def test_underpaid_gas_rejected(self, net):
        od = net.order_data()
        oid = net.open(od)
        net.fill(od)
        with pytest.raises(InsufficientGasPayment):
            net.dest.settle([oid], caller=SOLVER, value=FEE - 1)
        assert net.origin.order_status(oid) is OrderStatus.OPENED

    def test_settle_requires_fill(self, net):
        oid = net.open(net.order_data())
        with pytest.raises(InvalidOrderStatus):
            net.dest.settle([oid], caller=SOLVER, value=FEE)

    def test_unroutable_origin(self, net):
        od = net.order_data()
        net.fill(od)
        net.dest.dispatcher.unenroll_remote_router(ORIGIN)
        with pytest.raises(UnroutableDomain):
            net.dest.settle([order_id(od)], caller=SOLVER, value=FEE)

    def test_quote_gas_payment(self, net):
        assert net.dest.quote_gas_payment(ORIGIN) == FEE
        with pytest.raises(UnroutableDomain):
            net.dest.quote_gas_payment(77)


class TestRefund:
    def test_refund_before_deadline_fails(self, net):
        od = net.order_data()
        net.open(od)
        net.clock.now = FILL_DEADLINE - 1
        with pytest.raises(OrderFillNotExpired):
            net.dest.refund([net.onchain(od)], value=FEE)

    def test_refund_after_deadline_returns_input(self, net):
        od = net.order_data()
        oid = net.open(od)
        assert net.dest.order_status(oid) is OrderStatus.UNKNOWN
        net.clock.now = FILL_DEADLINE
        net.dest.refund([net.onchain(od)], value=FEE)
        assert net.dest.order_status(oid) is OrderStatus.REFUNDED
        assert net.origin.order_status(oid) is OrderStatus.REFUNDED
        assert net.origin_ledger.balance_of(INPUT_TOKEN, USER) == 1050

    def test_refund_of_filled_order_fails(self, net):
        od = net.order_data()
        net.open(od)
        net.fill(od)
        net.clock.now = FILL_DEADLINE
        with pytest.raises(InvalidOrderStatus):
            net.dest.refund([net.onchain(od)], value=FEE)


class TestTerminalStates:
    def test_nothing_succeeds_after_settled(self, net):
        od = net.order_data()
        oid = net.open(od)
        net.fill(od)
        net.dest.settle([oid], caller=SOLVER, value=FEE)
        net.clock.now = FILL_DEADLINE
        with pytest.raises(InvalidOrderStatus):
            net.origin.fill(oid, encode_order_data(od), b"", caller=SOLVER)
        with pytest.raises(InvalidOrderStatus):
            net.origin.settle([oid], caller=SOLVER, value=FEE)
        with pytest.raises(InvalidOrderStatus):
            net.origin.refund([net.onchain(od)], value=FEE)

    def test_nothing_succeeds_after_refunded(self, net):
        od = net.order_data()
        oid = net.open(od)
        net.clock.now = FILL_DEADLINE
        net.dest.refund([net.onchain(od)], value=FEE)
        net.fund_solver()
        for registry in (net.origin, net.dest):
            with pytest.raises(InvalidOrderStatus):
                registry.settle([oid], caller=SOLVER, value=FEE)
            with pytest.raises(InvalidOrderStatus):
                registry.refund([net.onchain(od)], value=FEE)
        with pytest.raises(InvalidOrderStatus):
            net.dest.fill(oid, encode_order_data(od), b"", caller=SOLVER)

    def test_repeated_settle_message_is_ignored(self, net):
        od = net.order_data()
        oid = net.open(od)
        net.fill(od)
        net.dest.settle([oid], caller=SOLVER, value=FEE)
        net.dest.settle([oid], caller=SOLVER, value=FEE)
        assert net.origin.order_status(oid) is OrderStatus.SETTLED
        assert net.origin_ledger.balance_of(INPUT_TOKEN, SOLVER) == 1050


class TestHandle:
    def test_unknown_sender_rejected(self, net):
        msg = encode_message(False, [b"\x01" * 32], [])
        with pytest.raises(UnauthorizedRouter):
            net.origin.handle(DEST, b"\x99" * 32, msg)

    def test_unknown_domain_rejected(self, net):
        msg = encode_message(False, [b"\x01" * 32], [])
        with pytest.raises(UnauthorizedRouter):
            net.origin.handle(42, DEST_SETTLER, msg)

    def test_order_for_other_destination_skipped(self, net):
        od = net.order_data(destination_domain=3)
        oid = net.open(od)
        net.origin.handle(DEST, DEST_SETTLER, encode_message(False, [oid], []))
        assert net.origin.order_status(oid) is OrderStatus.OPENED

    def test_batch_routes_by_first_order(self, net):
        first = net.order_data(sender_nonce=1)
        second = net.order_data(sender_nonce=2)
        ids = [net.open(first), net.open(second)]
        net.fill(first)
        net.fill(second)
        net.dest.settle(ids, caller=SOLVER, value=FEE)
        assert all(net.origin.order_status(oid) is OrderStatus.SETTLED for oid in ids)
        assert net.origin_ledger.balance_of(INPUT_TOKEN, SOLVER) == 2100

    def test_batch_with_other_origin_settles_later(self, net):
        first = net.order_data(sender_nonce=1)
        other = net.order_data(sender_nonce=2, origin_domain=3)
        first_id = net.open(first)
        net.fill(first)
        other_id = net.fill(other)

        net.dest.settle([first_id, other_id], caller=SOLVER, value=FEE)

        assert net.origin.order_status(first_id) is OrderStatus.SETTLED
        assert net.origin.order_status(other_id) is OrderStatus.UNKNOWN
        assert net.dest.order_status(other_id) is OrderStatus.FILLED
        assert net.origin_ledger.balance_of(INPUT_TOKEN, SOLVER) == 1050

    def test_bad_filler_entry_rejects_whole_batch(self, net):
        first = net.order_data(sender_nonce=1)
        second = net.order_data(sender_nonce=2)
        ids = [net.open(first), net.open(second)]
        msg = encode_message(True, ids, [encode_filler_data(SOLVER), b"\x01"])

        with pytest.raises(MessageDecodeError):
            net.origin.handle(DEST, DEST_SETTLER, msg)

        assert all(net.origin.order_status(oid) is OrderStatus.OPENED for oid in ids)
        assert net.origin_ledger.balance_of(INPUT_TOKEN, SOLVER) == 0
        assert net.origin_ledger.balance_of(INPUT_TOKEN, ORIGIN_SETTLER) == 2100
