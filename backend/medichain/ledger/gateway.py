"""
Ledger Gateway Protocol

Defines the interface the custody core consumes from the authoritative ledger.
"""

from datetime import datetime
from typing import Protocol

from .models import LedgerDrugRecord, LedgerHealth, LedgerReceipt


class LedgerGateway(Protocol):
    """Protocol for the append-only custody ledger.

    Mutating calls block until the transition is confirmed or raise. The
    gateway performs the state check and the write atomically, so two
    concurrent submissions against the same source state cannot both succeed.
    Implementations translate their native failures into ``medichain.errors``.
    """

    backend: str

    # --- Reads ---

    def get_drug_details(self, batch_id: str) -> LedgerDrugRecord:
        """
        Return canonical state for a batch.

        Raises:
            BatchNotFound: the ledger has no such batch
            LedgerUnavailable: transport failure or timeout
        """
        ...

    def verify_drug(self, batch_id: str) -> bool:
        """Return True when the batch was manufactured on the ledger."""
        ...

    def is_drug_expired(self, batch_id: str) -> bool:
        """Return the ledger's own expiry check for the batch."""
        ...

    def health(self) -> LedgerHealth:
        """Report connectivity for status endpoints."""
        ...

    # --- Custody transitions ---

    def manufacture_drug(
        self,
        caller: str,
        batch_id: str,
        name: str,
        manufacturer: str,
        expiry_date: datetime,
        min_temp: float,
        max_temp: float,
    ) -> LedgerReceipt:
        """
        Create a batch in the Manufactured state owned by ``caller``.

        Raises:
            DuplicateBatch, PartyNotAuthorized, LedgerUnavailable
        """
        ...

    def distribute_drug(self, caller: str, batch_id: str) -> LedgerReceipt:
        """Manufactured -> Distributed, recording ``caller`` as distributor."""
        ...

    def retail_drug(self, caller: str, batch_id: str) -> LedgerReceipt:
        """Distributed -> Retailed, recording ``caller`` as retailer."""
        ...

    def sell_drug(self, caller: str, batch_id: str, consumer_id: str) -> LedgerReceipt:
        """Retailed -> Sold, recording ``consumer_id`` as the buyer."""
        ...

    def log_temperature(
        self,
        caller: str,
        batch_id: str,
        reading: float,
        recorded_at: datetime,
    ) -> LedgerReceipt:
        """Record an out-of-range reading and clear the batch's compliance flag."""
        ...

    # --- Roles ---

    def register_party(self, caller: str, address: str, role: str) -> LedgerReceipt:
        """Grant a custody role to ``address``; only the ledger owner may call this."""
        ...

    def close(self) -> None:
        """Release transport resources."""
        ...
