"""
Exception taxonomy for the intent settlement protocol.

Protocol violations are raised synchronously by the call that triggers
them and are never retried. Dispatch errors surface transport problems
(missing route, underpaid fee) to the caller of settle/refund.
"""

from __future__ import annotations


class ProtocolError(Exception):
    """Base class for all order lifecycle violations."""


class InvalidOrderType(ProtocolError):
    pass


class InvalidOriginDomain(ProtocolError):
    pass


class InvalidOrderStatus(ProtocolError):
    pass


class InvalidNonce(ProtocolError):
    pass


class InvalidOrderId(ProtocolError):
    pass


class InvalidOrderDomain(ProtocolError):
    pass


class OrderOpenExpired(ProtocolError):
    pass


class OrderFillExpired(ProtocolError):
    pass


class OrderFillNotExpired(ProtocolError):
    pass


class InvalidSettler(ProtocolError):
    pass


class InvalidSignature(ProtocolError):
    pass


class InvalidNativeAmount(ProtocolError):
    pass


class InsufficientTokenBalance(ProtocolError):
    """Token ledger refused a debit (balance or allowance too low)."""


class UnauthorizedRouter(ProtocolError):
    """Inbound message came from a sender that is not the enrolled router."""


class DispatchError(Exception):
    """Base class for outbound message failures."""


class UnroutableDomain(DispatchError):
    pass


class InsufficientGasPayment(DispatchError):
    def __init__(self, required: int, provided: int) -> None:
        super().__init__(f"gas payment {provided} below quote {required}")
        self.required = required
        self.provided = provided


class MessageDecodeError(ValueError):
    """Malformed or truncated wire buffer."""
