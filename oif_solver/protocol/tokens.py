"""
In-memory token ledger used by the protocol model.

Tracks ERC20-style balances and allowances keyed by bytes32 token and
account ids. The zero token id is the domain's native asset; native
value attached to a call is credited to the callee by the caller before
the registry runs, exactly like ``msg.value``.

Every mutating method checks first and writes second, so a failed call
leaves the ledger unchanged.
"""

from __future__ import annotations

import threading
from typing import Dict, Tuple

from oif_solver.protocol.codec import to_bytes32
from oif_solver.protocol.errors import InsufficientTokenBalance
from oif_solver.protocol.types import BYTES32_ZERO


NATIVE_TOKEN = BYTES32_ZERO


class TokenLedger:
    """Balances and allowances for every token on one domain."""

    def __init__(self) -> None:
        self._balances: Dict[Tuple[bytes, bytes], int] = {}
        self._allowances: Dict[Tuple[bytes, bytes, bytes], int] = {}
        self._lock = threading.Lock()

    def balance_of(self, token, account) -> int:
        return self._balances.get((to_bytes32(token), to_bytes32(account)), 0)

    def allowance(self, token, owner, spender) -> int:
        return self._allowances.get((to_bytes32(token), to_bytes32(owner), to_bytes32(spender)), 0)

    def mint(self, token, account, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        key = (to_bytes32(token), to_bytes32(account))
        with self._lock:
            self._balances[key] = self._balances.get(key, 0) + amount

    def approve(self, token, owner, spender, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        with self._lock:
            self._allowances[(to_bytes32(token), to_bytes32(owner), to_bytes32(spender))] = amount

    def transfer(self, token, sender, recipient, amount: int) -> None:
        token, sender, recipient = to_bytes32(token), to_bytes32(sender), to_bytes32(recipient)
        with self._lock:
            self._debit_locked(token, sender, amount)
            self._credit_locked(token, recipient, amount)

    def transfer_from(self, token, spender, owner, recipient, amount: int) -> None:
        """Spend ``owner``'s tokens on behalf of ``spender`` (allowance-checked)."""
        token, spender = to_bytes32(token), to_bytes32(spender)
        owner, recipient = to_bytes32(owner), to_bytes32(recipient)
        key = (token, owner, spender)
        with self._lock:
            allowed = self._allowances.get(key, 0)
            if allowed < amount:
                raise InsufficientTokenBalance(
                    f"allowance {allowed} < {amount} for spender 0x{spender.hex()}"
                )
            self._debit_locked(token, owner, amount)
            self._credit_locked(token, recipient, amount)
            self._allowances[key] = allowed - amount

    def _debit_locked(self, token: bytes, account: bytes, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        key = (token, account)
        balance = self._balances.get(key, 0)
        if balance < amount:
            raise InsufficientTokenBalance(
                f"balance {balance} < {amount} for account 0x{account.hex()}"
            )
        self._balances[key] = balance - amount

    def _credit_locked(self, token: bytes, account: bytes, amount: int) -> None:
        key = (token, account)
        self._balances[key] = self._balances.get(key, 0) + amount
