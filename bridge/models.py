"""
Data models for the deposit and mint pipelines. Pure data, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from client.chain import to_hex_hash

Side = Literal["yes", "no"]
SIDES: tuple[str, ...] = ("yes", "no")

USDC_DECIMALS = 6
SHARE_DECIMALS = 18


@dataclass(frozen=True, slots=True)
class TransferEvent:
    """A USDC Transfer log to the custodial deposit address. Identity = tx_hash."""
    tx_hash: str
    from_address: str
    to_address: str
    amount: int  # USDC base units (6 decimals)
    block_number: int
    log_index: int = 0

    @classmethod
    def from_log(cls, log: Any) -> TransferEvent:
        """Build from a decoded web3 event log (AttributeDict or plain dict)."""
        args = log["args"]
        return cls(
            tx_hash=to_hex_hash(log["transactionHash"]),
            from_address=args["from"],
            to_address=args["to"],
            amount=int(args["value"]),
            block_number=int(log["blockNumber"]),
            log_index=int(log.get("logIndex", 0) or 0),
        )

    @property
    def amount_usdc(self) -> float:
        return self.amount / 10 ** USDC_DECIMALS

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": str(self.amount),
            "block_number": self.block_number,
            "log_index": self.log_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TransferEvent:
        return cls(
            tx_hash=data["tx_hash"],
            from_address=data["from_address"],
            to_address=data["to_address"],
            amount=int(data["amount"]),
            block_number=int(data["block_number"]),
            log_index=int(data.get("log_index", 0)),
        )


@dataclass(frozen=True, slots=True)
class CreditIntent:
    """creditDeposit(recipient, amount) call derived from a transfer."""
    recipient: str
    amount: int

    @classmethod
    def from_transfer(cls, event: TransferEvent) -> CreditIntent:
        return cls(recipient=event.from_address, amount=event.amount)


@dataclass(frozen=True, slots=True)
class MintIntent:
    """mint(recipient, count * 10**18) on the share token for `side`."""
    recipient: str
    side: str
    count: int

    def __post_init__(self) -> None:
        if self.side not in SIDES:
            raise ValueError(f"side must be 'yes' or 'no', got {self.side!r}")
        if self.count <= 0:
            raise ValueError(f"count must be positive, got {self.count}")

    @property
    def amount(self) -> int:
        return shares_to_base_units(self.count)


def shares_to_base_units(count: int) -> int:
    """Contract count -> share token base units (18 decimals)."""
    return int(count) * 10 ** SHARE_DECIMALS
