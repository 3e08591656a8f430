"""
Tests for the order data and settlement message codec.
"""

import pytest
from eth_utils import keccak

from oif_solver.protocol.codec import (
    ORDER_DATA_TYPE_HASH,
    bytes32_to_evm_address,
    bytes32_to_hex,
    decode_filler_data,
    decode_message,
    decode_order_data,
    encode_filler_data,
    encode_message,
    encode_order_data,
    encode_refund,
    order_id,
    order_id_from_le_digest,
    to_bytes32,
)
from oif_solver.protocol.errors import MessageDecodeError
from oif_solver.protocol.types import OrderData


def make_order(**overrides) -> OrderData:
    fields = dict(
        sender=to_bytes32("0x" + "aa" * 20),
        recipient=to_bytes32("0x" + "bb" * 20),
        input_token=to_bytes32("0x" + "01" * 20),
        output_token=to_bytes32("0x" + "02" * 20),
        amount_in=1050,
        amount_out=1000,
        sender_nonce=7,
        origin_domain=1,
        destination_domain=2,
        destination_settler=to_bytes32("0x" + "cc" * 20),
        fill_deadline=1_700_000_000,
        data=b"",
    )
    fields.update(overrides)
    return OrderData(**fields)


class TestBytes32Helpers:
    def test_address_is_left_padded(self):
        raw = to_bytes32("0x" + "ab" * 20)
        assert len(raw) == 32
        assert raw[:12] == b"\x00" * 12
        assert raw[12:] == b"\xab" * 20

    def test_int_and_odd_length_hex(self):
        assert to_bytes32(1) == b"\x00" * 31 + b"\x01"
        assert to_bytes32("0x1") == b"\x00" * 31 + b"\x01"

    def test_too_long_rejected(self):
        with pytest.raises(ValueError):
            to_bytes32(b"\x01" * 33)
        with pytest.raises(ValueError):
            to_bytes32(1 << 256)

    def test_evm_address_from_bytes32(self):
        addr = bytes32_to_evm_address(to_bytes32("0x" + "ab" * 20))
        assert addr.lower() == "0x" + "ab" * 20

    def test_hex_rendering(self):
        assert bytes32_to_hex(b"\x01") == "0x" + "00" * 31 + "01"

    def test_little_endian_digest_is_reversed(self):
        digest = bytes(range(32))
        assert order_id_from_le_digest(digest) == bytes(reversed(range(32)))
        with pytest.raises(ValueError):
            order_id_from_le_digest(b"\x00" * 31)


class TestOrderData:
    def test_round_trip(self):
        order = make_order()
        assert decode_order_data(encode_order_data(order)) == order

    def test_round_trip_with_payload(self):
        order = make_order(data=b"\x01\x02\x03" * 20)
        assert decode_order_data(encode_order_data(order)) == order

    def test_layout_starts_with_tuple_offset(self):
        raw = encode_order_data(make_order())
        assert int.from_bytes(raw[:32], "big") == 0x20
        # offset word + 12 head words + empty data length word
        assert len(raw) == 32 * 14

    def test_order_id_is_keccak_of_encoding(self):
        order = make_order()
        assert order_id(order) == keccak(encode_order_data(order))
        assert order_id(encode_order_data(order)) == order_id(order)

    def test_order_id_changes_with_nonce(self):
        assert order_id(make_order(sender_nonce=1)) != order_id(make_order(sender_nonce=2))

    def test_type_hash_is_keccak_of_type_string(self):
        assert len(ORDER_DATA_TYPE_HASH) == 32

    def test_garbage_raises_decode_error(self):
        with pytest.raises(MessageDecodeError):
            decode_order_data(b"\x00" * 10)


class TestMessage:
    def test_settle_round_trip(self):
        ids = [to_bytes32(1), to_bytes32(2)]
        fillers = [encode_filler_data("0x" + "dd" * 20), b"\x05" * 40]
        assert decode_message(encode_message(True, ids, fillers)) == (True, ids, fillers)

    def test_refund_round_trip(self):
        ids = [to_bytes32(9)]
        assert decode_message(encode_refund(ids)) == (False, ids, [])

    def test_empty_batch(self):
        assert decode_message(encode_message(True, [], [])) == (True, [], [])

    def test_truncated_buffer_raises(self):
        msg = encode_message(True, [to_bytes32(1)], [b"\x01" * 32])
        for cut in (0, 31, 95, 130, len(msg) - 1):
            with pytest.raises(MessageDecodeError):
                decode_message(msg[:cut])

    def test_huge_length_field_raises(self):
        msg = bytearray(encode_message(False, [to_bytes32(1)], []))
        msg[96:128] = (2**200).to_bytes(32, "big")
        with pytest.raises(MessageDecodeError):
            decode_message(bytes(msg))

    def test_invalid_bool_word(self):
        msg = bytearray(encode_message(True, [], []))
        msg[31] = 2
        with pytest.raises(MessageDecodeError):
            decode_message(bytes(msg))


class TestFillerData:
    def test_receiver_round_trip(self):
        receiver = to_bytes32("0x" + "ee" * 20)
        assert decode_filler_data(encode_filler_data(receiver)) == receiver

    def test_short_filler_data_rejected(self):
        with pytest.raises(MessageDecodeError):
            decode_filler_data(b"\x01" * 31)
