# evledger/funds/__init__.py
"""
Value-transfer boundary for charging-session settlement.
The ledger only computes amounts; a gateway moves them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List


class FundsGateway(ABC):
    """Host-side mover of value attached to charging-session calls."""

    @abstractmethod
    def settle(self, payer: str, supplied: int, refund: int) -> None:
        """
        Take `supplied` from `payer` and hand `refund` straight back.
        Must either move both amounts or raise without moving anything.
        Runs inside the storage transaction, before its commit.
        """
        pass

    @abstractmethod
    def reverse(self, payer: str, supplied: int, refund: int) -> None:
        """
        Undo a settle() whose ledger transaction then failed to commit:
        return `supplied - refund` to `payer`.
        """
        pass


@dataclass(frozen=True)
class Payment:
    payer: str
    supplied: int
    refund: int

    @property
    def net(self) -> int:
        return self.supplied - self.refund


class InMemoryFunds(FundsGateway):
    """Records every settlement; keeps the retained value as `held`."""

    def __init__(self):
        self.payments: List[Payment] = []
        self.held = 0

    def settle(self, payer: str, supplied: int, refund: int) -> None:
        if refund < 0 or refund > supplied:
            raise ValueError(f"Refund {refund} out of range for supplied {supplied}")
        self.payments.append(Payment(payer, supplied, refund))
        self.held += supplied - refund

    def reverse(self, payer: str, supplied: int, refund: int) -> None:
        payment = Payment(payer, supplied, refund)
        for i in range(len(self.payments) - 1, -1, -1):
            if self.payments[i] == payment:
                del self.payments[i]
                self.held -= payment.net
                return
        raise ValueError(f"No settlement to reverse for {payer}")

    def net_paid(self, payer: str) -> int:
        """Total value that left `payer` after refunds."""
        return sum(p.net for p in self.payments if p.payer == payer)

    def refunded(self, payer: str) -> int:
        return sum(p.refund for p in self.payments if p.payer == payer)

    def totals(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for p in self.payments:
            out[p.payer] = out.get(p.payer, 0) + p.net
        return out


__all__ = ["FundsGateway", "InMemoryFunds", "Payment"]
