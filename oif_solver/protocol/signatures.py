"""
EIP-712 authorization for gasless (``openFor``) orders.

The user signs the GaslessCrossChainOrder under the origin settler's
domain; the registry recovers the signer and only moves the user's
input tokens when it matches ``order.user``.
"""

from __future__ import annotations

from typing import Any, Dict

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data

from oif_solver.protocol.codec import bytes32_to_evm_address, to_bytes32
from oif_solver.protocol.types import GaslessCrossChainOrder


DOMAIN_NAME = "Hyperlane7683"
DOMAIN_VERSION = "1"

GASLESS_ORDER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "GaslessCrossChainOrder": [
        {"name": "originSettler", "type": "address"},
        {"name": "user", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "originChainId", "type": "uint256"},
        {"name": "openDeadline", "type": "uint32"},
        {"name": "fillDeadline", "type": "uint32"},
        {"name": "orderDataType", "type": "bytes32"},
        {"name": "orderData", "type": "bytes"},
    ],
}


def gasless_order_typed_data(order: GaslessCrossChainOrder) -> Dict[str, Any]:
    settler = bytes32_to_evm_address(order.origin_settler)
    return {
        "types": GASLESS_ORDER_TYPES,
        "primaryType": "GaslessCrossChainOrder",
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": order.origin_chain_id,
            "verifyingContract": settler,
        },
        "message": {
            "originSettler": settler,
            "user": bytes32_to_evm_address(order.user),
            "nonce": order.nonce,
            "originChainId": order.origin_chain_id,
            "openDeadline": order.open_deadline,
            "fillDeadline": order.fill_deadline,
            "orderDataType": to_bytes32(order.order_data_type),
            "orderData": bytes(order.order_data),
        },
    }


def signable_gasless_order(order: GaslessCrossChainOrder) -> SignableMessage:
    return encode_typed_data(full_message=gasless_order_typed_data(order))


def sign_gasless_order(order: GaslessCrossChainOrder, private_key: str) -> bytes:
    signed = Account.sign_message(signable_gasless_order(order), private_key=private_key)
    return bytes(signed.signature)


def recover_gasless_signer(order: GaslessCrossChainOrder, signature: bytes) -> str:
    """Checksummed address that produced ``signature`` over ``order``."""
    return Account.recover_message(signable_gasless_order(order), signature=signature)


def is_valid_gasless_signature(order: GaslessCrossChainOrder, signature: bytes) -> bool:
    try:
        signer = recover_gasless_signer(order, signature)
    except Exception:  # malformed signature bytes / bad recovery id
        return False
    return signer.lower() == bytes32_to_evm_address(order.user).lower()
