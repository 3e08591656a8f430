"""
SettlementDispatcher: outbound settle/refund messages.

Architecture:
    The registry on the destination domain hands batches of order ids to
    the dispatcher, which encodes them with the message codec and sends
    them through a Mailbox to the router enrolled for the origin domain.
    The dispatcher keeps no per-message state; every failure (no route,
    fee not covered) is raised to the caller synchronously.

    InMemoryMailbox wires several in-process registries together so the
    full open -> fill -> settle -> release cycle runs without a chain.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from eth_utils import keccak

from oif_solver.core.json_utils import dumps
from oif_solver.protocol.codec import bytes32_to_hex, encode_refund, encode_settle, to_bytes32
from oif_solver.protocol.errors import InsufficientGasPayment, UnroutableDomain

log = logging.getLogger("oifsolver")


class MessageRecipient(Protocol):
    def handle(self, origin_domain: int, sender: bytes, message: bytes) -> None: ...


class Mailbox(ABC):
    """Cross-domain transport."""

    @abstractmethod
    def quote_dispatch(self, destination_domain: int, message: bytes) -> int:
        """Native fee required to deliver ``message`` to ``destination_domain``."""

    @abstractmethod
    def dispatch(
        self,
        origin_domain: int,
        sender: bytes,
        destination_domain: int,
        recipient: bytes,
        message: bytes,
        value: int,
    ) -> bytes:
        """Send ``message``; returns the message id."""


@dataclass
class DeliveryRecord:
    message_id: bytes
    origin_domain: int
    destination_domain: int
    recipient: bytes
    message: bytes
    delivered: bool = False
    error: Optional[str] = None


@dataclass
class InMemoryMailbox(Mailbox):
    """
    Synchronous in-process transport.

    Recipients register per (domain, address). A delivery failure on the
    receiving side is recorded on the DeliveryRecord and logged; it does
    not undo the dispatch, just as a failed remote handle does not revert
    the sending transaction.
    """
    fees: Dict[int, int] = field(default_factory=dict)
    auto_deliver: bool = True
    log_event: Optional[Callable[..., None]] = None

    def __post_init__(self) -> None:
        self._recipients: Dict[tuple, MessageRecipient] = {}
        self._nonce = 0
        self.deliveries: List[DeliveryRecord] = []
        self._pending: List[tuple] = []
        self._log = self.log_event or (lambda event, **kw: log.info(dumps({"event": event, **kw})))

    def register(self, domain: int, address: bytes, recipient: MessageRecipient) -> None:
        self._recipients[(domain, to_bytes32(address))] = recipient

    def quote_dispatch(self, destination_domain: int, message: bytes) -> int:
        return self.fees.get(destination_domain, 0)

    def dispatch(
        self,
        origin_domain: int,
        sender: bytes,
        destination_domain: int,
        recipient: bytes,
        message: bytes,
        value: int,
    ) -> bytes:
        recipient = to_bytes32(recipient)
        if (destination_domain, recipient) not in self._recipients:
            raise UnroutableDomain(
                f"no recipient {bytes32_to_hex(recipient)} on domain {destination_domain}"
            )
        required = self.quote_dispatch(destination_domain, message)
        if value < required:
            raise InsufficientGasPayment(required, value)

        self._nonce += 1
        message_id = keccak(
            self._nonce.to_bytes(32, "big") + origin_domain.to_bytes(4, "big") + to_bytes32(sender) + message
        )
        record = DeliveryRecord(
            message_id=message_id,
            origin_domain=origin_domain,
            destination_domain=destination_domain,
            recipient=recipient,
            message=bytes(message),
        )
        self.deliveries.append(record)
        self._pending.append((record, to_bytes32(sender)))
        self._log(
            "mailbox_dispatch",
            message_id=bytes32_to_hex(message_id),
            origin=origin_domain,
            destination=destination_domain,
            value=value,
        )
        if self.auto_deliver:
            self.deliver_pending()
        return message_id

    def deliver_pending(self) -> int:
        """Hand every queued message to its recipient. Returns deliveries attempted."""
        pending, self._pending = self._pending, []
        for record, sender in pending:
            target = self._recipients[(record.destination_domain, record.recipient)]
            try:
                target.handle(record.origin_domain, sender, record.message)
                record.delivered = True
            except Exception as exc:
                record.error = f"{type(exc).__name__}: {exc}"
                self._log(
                    "mailbox_delivery_failed",
                    message_id=bytes32_to_hex(record.message_id),
                    destination=record.destination_domain,
                    error=record.error,
                )
        return len(pending)


class SettlementDispatcher:
    """
    Sends settle/refund messages from this domain back to order origins.

    Usage:
        dispatcher = SettlementDispatcher(local_domain=2, address=router, mailbox=mailbox)
        dispatcher.enroll_remote_router(1, origin_router)
        fee = dispatcher.quote_gas_payment(1)
        dispatcher.dispatch_settle(1, [order_id], [filler_data], value=fee)
    """

    def __init__(
        self,
        local_domain: int,
        address: bytes,
        mailbox: Mailbox,
        routers: Optional[Dict[int, bytes]] = None,
    ) -> None:
        self.local_domain = local_domain
        self.address = to_bytes32(address)
        self._mailbox = mailbox
        self._routers: Dict[int, bytes] = {d: to_bytes32(r) for d, r in (routers or {}).items()}

    def enroll_remote_router(self, domain: int, router: bytes) -> None:
        self._routers[domain] = to_bytes32(router)

    def unenroll_remote_router(self, domain: int) -> None:
        self._routers.pop(domain, None)

    def router_for(self, domain: int) -> Optional[bytes]:
        return self._routers.get(domain)

    def domains(self) -> List[int]:
        return sorted(self._routers)

    def _route(self, domain: int) -> bytes:
        router = self._routers.get(domain)
        if router is None:
            raise UnroutableDomain(f"no router enrolled for domain {domain}")
        return router

    def quote_gas_payment(self, destination_domain: int) -> int:
        self._route(destination_domain)
        # Fee depends only on destination in every supported transport
        return self._mailbox.quote_dispatch(destination_domain, b"")

    def dispatch_settle(
        self,
        origin_domain: int,
        order_ids: Sequence[bytes],
        filler_data: Sequence[bytes],
        value: int,
    ) -> bytes:
        router = self._route(origin_domain)
        message = encode_settle(order_ids, filler_data)
        return self._mailbox.dispatch(self.local_domain, self.address, origin_domain, router, message, value)

    def dispatch_refund(self, origin_domain: int, order_ids: Sequence[bytes], value: int) -> bytes:
        router = self._route(origin_domain)
        message = encode_refund(order_ids)
        return self._mailbox.dispatch(self.local_domain, self.address, origin_domain, router, message, value)
