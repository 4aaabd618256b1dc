"""Typed records exchanged with the custody ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum


class DrugStatus(IntEnum):
    MANUFACTURED = 0
    DISTRIBUTED = 1
    RETAILED = 2
    SOLD = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, label: str) -> "DrugStatus":
        return cls[label.upper()]


@dataclass(frozen=True)
class LedgerDrugRecord:
    """Canonical state of a batch as reported by the ledger."""

    batch_id: str
    name: str
    manufacturer: str
    manufacture_date: datetime
    expiry_date: datetime
    status: DrugStatus
    manufacturer_id: str
    distributor_id: str | None
    retailer_id: str | None
    consumer_id: str | None
    is_temperature_compliant: bool
    min_temp: float
    max_temp: float
    is_authentic: bool = True
    # monotonic per-batch counter, bumped by every accepted ledger write
    version: int = 0
    tx_hash: str | None = None

    def custody_id_for(self, status: DrugStatus) -> str | None:
        return {
            DrugStatus.MANUFACTURED: self.manufacturer_id,
            DrugStatus.DISTRIBUTED: self.distributor_id,
            DrugStatus.RETAILED: self.retailer_id,
            DrugStatus.SOLD: self.consumer_id,
        }[status]

    def is_expired(self, now: datetime) -> bool:
        return now > self.expiry_date


@dataclass(frozen=True)
class LedgerReceipt:
    """Confirmation of a mutating ledger call."""

    tx_hash: str
    batch_id: str
    operation: str
    block_number: int | None = None
    confirmed: bool = True
    # set when the receipt was reconstructed from canonical state after a timeout
    recovered: bool = False


@dataclass
class LedgerHealth:
    connected: bool
    backend: str
    block_number: int | None = None
    network: str | None = None
    contract_address: str | None = None
    detail: dict = field(default_factory=dict)
