"""
Wire codec for Hyperlane 7683 orders and settlement messages.

OrderData is encoded exactly like Solidity ``abi.encode(orderData)`` on a
struct with a dynamic member: a leading offset word (0x20), twelve head
words (the ``data`` slot holding its offset inside the tuple) and a tail
with the length-prefixed ``data`` bytes. Every domain must hash this
exact layout so order ids agree across chains.

Settle/refund messages are ``abi.encode(bool, bytes32[], bytes[])``.
Encoding goes through eth_abi; decoding is a sequential reader that
ignores the offset words and checks every length field against the
bytes that remain, so a truncated buffer raises ``MessageDecodeError``
instead of an IndexError.

Usage:
    raw = encode_order_data(order)
    oid = order_id(order)
    msg = encode_message(True, [oid], [encode_filler_data(receiver)])
    settle, ids, fillers = decode_message(msg)
"""

from __future__ import annotations

from typing import List, Sequence, Tuple, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from oif_solver.protocol.errors import MessageDecodeError
from oif_solver.protocol.types import OrderData


ORDER_DATA_TYPE = (
    "OrderData(bytes32 sender,bytes32 recipient,bytes32 inputToken,bytes32 outputToken,"
    "uint256 amountIn,uint256 amountOut,uint256 senderNonce,uint32 originDomain,"
    "uint32 destinationDomain,bytes32 destinationSettler,uint32 fillDeadline,bytes data)"
)
ORDER_DATA_TYPE_HASH = keccak(text=ORDER_DATA_TYPE)

ORDER_DATA_ABI = (
    "(bytes32,bytes32,bytes32,bytes32,uint256,uint256,uint256,uint32,uint32,bytes32,uint32,bytes)"
)
MESSAGE_ABI = ["bool", "bytes32[]", "bytes[]"]

WORD = 32
UINT32_MAX = 2**32 - 1

HexOrBytes = Union[str, bytes, bytearray, int]


# -----------------------------------------------------------------------------
# bytes32 helpers
# -----------------------------------------------------------------------------

def to_bytes32(value: HexOrBytes) -> bytes:
    """Left-pad an address, felt, int or hex string to 32 bytes."""
    if isinstance(value, int):
        if value < 0 or value >= 1 << 256:
            raise ValueError(f"value out of bytes32 range: {value}")
        return value.to_bytes(WORD, "big")
    if isinstance(value, str):
        hex_part = value[2:] if value.lower().startswith("0x") else value
        if len(hex_part) % 2:
            hex_part = "0" + hex_part
        value = bytes.fromhex(hex_part)
    raw = bytes(value)
    if len(raw) > WORD:
        raise ValueError(f"value longer than 32 bytes: {len(raw)}")
    return raw.rjust(WORD, b"\x00")


def bytes32_to_hex(value: bytes) -> str:
    return "0x" + to_bytes32(value).hex()


def bytes32_to_evm_address(value: HexOrBytes) -> str:
    """Take the low 20 bytes of a bytes32 as a checksummed EVM address."""
    return to_checksum_address(to_bytes32(value)[12:])


def reverse_bytes(raw: bytes) -> bytes:
    return bytes(raw)[::-1]


def order_id_from_le_digest(digest: bytes) -> bytes:
    """
    Normalize a keccak digest produced in little-endian word order (as on
    Cairo) to the big-endian id used everywhere else.
    """
    if len(digest) != WORD:
        raise ValueError("digest must be 32 bytes")
    return reverse_bytes(digest)


# -----------------------------------------------------------------------------
# OrderData
# -----------------------------------------------------------------------------

def _order_tuple(order: OrderData) -> tuple:
    return (
        to_bytes32(order.sender),
        to_bytes32(order.recipient),
        to_bytes32(order.input_token),
        to_bytes32(order.output_token),
        order.amount_in,
        order.amount_out,
        order.sender_nonce,
        order.origin_domain,
        order.destination_domain,
        to_bytes32(order.destination_settler),
        order.fill_deadline,
        bytes(order.data),
    )


def encode_order_data(order: OrderData) -> bytes:
    return abi_encode([ORDER_DATA_ABI], [_order_tuple(order)])


def decode_order_data(raw: bytes) -> OrderData:
    try:
        (fields,) = abi_decode([ORDER_DATA_ABI], bytes(raw))
    except (DecodingError, ValueError, TypeError) as exc:
        raise MessageDecodeError(f"invalid order data: {exc}") from exc
    return OrderData(
        sender=fields[0],
        recipient=fields[1],
        input_token=fields[2],
        output_token=fields[3],
        amount_in=fields[4],
        amount_out=fields[5],
        sender_nonce=fields[6],
        origin_domain=fields[7],
        destination_domain=fields[8],
        destination_settler=fields[9],
        fill_deadline=fields[10],
        data=fields[11],
    )


def order_id(order: Union[OrderData, bytes]) -> bytes:
    """keccak256 of the canonical OrderData encoding."""
    raw = encode_order_data(order) if isinstance(order, OrderData) else bytes(order)
    return keccak(raw)


# -----------------------------------------------------------------------------
# Settle / refund messages
# -----------------------------------------------------------------------------

def encode_message(settle: bool, order_ids: Sequence[bytes], filler_data: Sequence[bytes]) -> bytes:
    return abi_encode(
        MESSAGE_ABI,
        [bool(settle), [to_bytes32(oid) for oid in order_ids], [bytes(fd) for fd in filler_data]],
    )


def encode_settle(order_ids: Sequence[bytes], filler_data: Sequence[bytes]) -> bytes:
    return encode_message(True, order_ids, filler_data)


def encode_refund(order_ids: Sequence[bytes]) -> bytes:
    return encode_message(False, order_ids, [])


class _Reader:
    """Forward-only word reader over an ABI buffer."""

    def __init__(self, buf: bytes) -> None:
        self._buf = bytes(buf)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._buf) - self._pos

    def take(self, n: int) -> bytes:
        if n < 0 or n > self.remaining:
            raise MessageDecodeError(
                f"truncated message: need {n} bytes at offset {self._pos}, have {self.remaining}"
            )
        chunk = self._buf[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def word(self) -> bytes:
        return self.take(WORD)

    def uint(self) -> int:
        return int.from_bytes(self.word(), "big")

    def length(self, element_size: int) -> int:
        """Read an array/bytes length and check it fits in what is left."""
        n = self.uint()
        if n * element_size > self.remaining:
            raise MessageDecodeError(
                f"length {n} exceeds remaining buffer ({self.remaining} bytes)"
            )
        return n


def decode_message(message: bytes) -> Tuple[bool, List[bytes], List[bytes]]:
    reader = _Reader(message)

    settle_word = reader.uint()
    if settle_word > 1:
        raise MessageDecodeError(f"invalid bool word: {settle_word}")
    reader.word()  # offset to order ids
    reader.word()  # offset to filler data

    ids_len = reader.length(WORD)
    order_ids = [reader.word() for _ in range(ids_len)]

    fillers_len = reader.length(WORD)
    for _ in range(fillers_len):
        reader.word()  # per-element offset
    filler_data: List[bytes] = []
    for _ in range(fillers_len):
        size = reader.length(1)
        padded = -(-size // WORD) * WORD
        if padded > reader.remaining:
            raise MessageDecodeError(f"filler data padding truncated (size {size})")
        filler_data.append(reader.take(padded)[:size])

    return settle_word == 1, order_ids, filler_data


# -----------------------------------------------------------------------------
# Filler data
# -----------------------------------------------------------------------------

def encode_filler_data(receiver: HexOrBytes) -> bytes:
    """Filler data carries the origin-side receiver as one bytes32 word."""
    return abi_encode(["bytes32"], [to_bytes32(receiver)])


def decode_filler_data(filler_data: bytes) -> bytes:
    if len(filler_data) < WORD:
        raise MessageDecodeError(f"filler data too short: {len(filler_data)} bytes")
    return bytes(filler_data[:WORD])
