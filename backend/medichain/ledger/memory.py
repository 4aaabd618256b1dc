"""In-process custody ledger used for development and tests."""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable

from ..errors import (
    BatchNotFound,
    DuplicateBatch,
    InvalidTransition,
    PartyNotAuthorized,
)
from .models import DrugStatus, LedgerDrugRecord, LedgerHealth, LedgerReceipt

logger = logging.getLogger(__name__)

# purpose: mirror the custody contract's rules in memory with atomic check-and-set submissions
# status: active

_ROLE_FOR_OPERATION = {
    "manufacture_drug": "manufacturer",
    "distribute_drug": "distributor",
    "retail_drug": "retailer",
    "sell_drug": "retailer",
}

_SOURCE_STATUS = {
    "distribute_drug": DrugStatus.MANUFACTURED,
    "retail_drug": DrugStatus.DISTRIBUTED,
    "sell_drug": DrugStatus.RETAILED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryLedger:
    """Thread-safe ledger with the same rules as the deployed custody contract."""

    backend = "memory"

    def __init__(
        self,
        owner: str,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.owner = owner
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, LedgerDrugRecord] = {}
        self._roles: dict[str, set[str]] = {}
        self._block_number = 0
        self._faults: dict[str, list[tuple[Exception, bool]]] = {}
        self.transactions: list[dict] = []
        self.temperature_logs: list[dict] = []

    # --- Fault injection ---

    def inject_fault(self, operation: str, error: Exception, *, apply: bool = False) -> None:
        """Make the next ``operation`` call raise ``error``.

        With ``apply=True`` the write lands before the error is raised, which is
        how a confirmation timeout looks from the caller's side.
        """

        with self._lock:
            self._faults.setdefault(operation, []).append((error, apply))

    def _take_fault(self, operation: str) -> tuple[Exception, bool] | None:
        queue = self._faults.get(operation)
        if not queue:
            return None
        return queue.pop(0)

    # --- Reads ---

    def get_drug_details(self, batch_id: str) -> LedgerDrugRecord:
        with self._lock:
            fault = self._take_fault("get_drug_details")
        if fault:
            raise fault[0]
        record = self._records.get(batch_id)
        if record is None:
            raise BatchNotFound("Drug does not exist", batch_id=batch_id)
        return record

    def verify_drug(self, batch_id: str) -> bool:
        return batch_id in self._records

    def is_drug_expired(self, batch_id: str) -> bool:
        return self.get_drug_details(batch_id).is_expired(self._clock())

    def health(self) -> LedgerHealth:
        return LedgerHealth(
            connected=True,
            backend=self.backend,
            block_number=self._block_number,
            network="in-memory",
            detail={"batches": len(self._records), "owner": self.owner},
        )

    def has_role(self, address: str, role: str) -> bool:
        return role in self._roles.get(address, set())

    # --- Writes ---

    def register_party(self, caller: str, address: str, role: str) -> LedgerReceipt:
        if role not in {"manufacturer", "distributor", "retailer"}:
            raise ValueError(f"Unknown custody role: {role}")
        with self._lock:
            if caller != self.owner:
                raise PartyNotAuthorized("Only the ledger owner can register parties")
            self._roles.setdefault(address, set()).add(role)
            return self._append_transaction("register_party", address, {"role": role})

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
        def apply() -> LedgerReceipt:
            self._require_role(caller, "manufacture_drug")
            if batch_id in self._records:
                raise DuplicateBatch("Drug already exists", batch_id=batch_id)
            receipt = self._append_transaction("manufacture_drug", batch_id, {"caller": caller})
            self._records[batch_id] = LedgerDrugRecord(
                batch_id=batch_id,
                name=name,
                manufacturer=manufacturer,
                manufacture_date=self._clock(),
                expiry_date=expiry_date,
                status=DrugStatus.MANUFACTURED,
                manufacturer_id=caller,
                distributor_id=None,
                retailer_id=None,
                consumer_id=None,
                is_temperature_compliant=True,
                min_temp=float(min_temp),
                max_temp=float(max_temp),
                version=1,
                tx_hash=receipt.tx_hash,
            )
            return receipt

        return self._submit("manufacture_drug", apply)

    def distribute_drug(self, caller: str, batch_id: str) -> LedgerReceipt:
        return self._advance("distribute_drug", caller, batch_id, distributor_id=caller)

    def retail_drug(self, caller: str, batch_id: str) -> LedgerReceipt:
        return self._advance("retail_drug", caller, batch_id, retailer_id=caller)

    def sell_drug(self, caller: str, batch_id: str, consumer_id: str) -> LedgerReceipt:
        return self._advance("sell_drug", caller, batch_id, consumer_id=consumer_id)

    def log_temperature(
        self,
        caller: str,
        batch_id: str,
        reading: float,
        recorded_at: datetime,
    ) -> LedgerReceipt:
        def apply() -> LedgerReceipt:
            if caller != self.owner and not self._roles.get(caller):
                raise PartyNotAuthorized("Only registered parties can log temperature", batch_id=batch_id)
            record = self._records.get(batch_id)
            if record is None:
                raise BatchNotFound("Drug does not exist", batch_id=batch_id)
            receipt = self._append_transaction(
                "log_temperature",
                batch_id,
                {"reading": reading, "recorded_at": recorded_at.isoformat()},
            )
            self.temperature_logs.append(
                {
                    "batch_id": batch_id,
                    "reading": reading,
                    "recorded_at": recorded_at,
                    "tx_hash": receipt.tx_hash,
                }
            )
            self._records[batch_id] = replace(
                record,
                is_temperature_compliant=False,
                version=record.version + 1,
                tx_hash=receipt.tx_hash,
            )
            return receipt

        return self._submit("log_temperature", apply)

    def close(self) -> None:
        logger.debug("In-memory ledger closed with %d batches", len(self._records))

    # --- Internals ---

    def _advance(self, operation: str, caller: str, batch_id: str, **custody) -> LedgerReceipt:
        expected = _SOURCE_STATUS[operation]

        def apply() -> LedgerReceipt:
            self._require_role(caller, operation)
            record = self._records.get(batch_id)
            if record is None:
                raise BatchNotFound("Drug does not exist", batch_id=batch_id)
            if record.status != expected:
                raise InvalidTransition(
                    f"Drug must be in {expected.label} state",
                    batch_id=batch_id,
                    current_status=record.status.label,
                )
            receipt = self._append_transaction(operation, batch_id, {"caller": caller, **custody})
            self._records[batch_id] = replace(
                record,
                status=DrugStatus(expected + 1),
                version=record.version + 1,
                tx_hash=receipt.tx_hash,
                **custody,
            )
            return receipt

        return self._submit(operation, apply)

    def _submit(self, operation: str, apply: Callable[[], LedgerReceipt]) -> LedgerReceipt:
        with self._lock:
            fault = self._take_fault(operation)
            if fault and not fault[1]:
                raise fault[0]
            receipt = apply()
        if fault:
            raise fault[0]
        return receipt

    def _require_role(self, caller: str, operation: str) -> None:
        role = _ROLE_FOR_OPERATION[operation]
        if not self.has_role(caller, role):
            raise PartyNotAuthorized(f"Only registered {role}s can call this function")

    def _append_transaction(self, operation: str, subject: str, payload: dict) -> LedgerReceipt:
        self._block_number += 1
        digest = hashlib.sha256(
            f"{operation}:{subject}:{self._block_number}".encode("utf-8")
        ).hexdigest()
        tx_hash = f"0x{digest}"
        self.transactions.append(
            {
                "tx_hash": tx_hash,
                "operation": operation,
                "subject": subject,
                "block_number": self._block_number,
                "payload": payload,
                "timestamp": self._clock(),
            }
        )
        return LedgerReceipt(
            tx_hash=tx_hash,
            batch_id=subject,
            operation=operation,
            block_number=self._block_number,
        )


__all__ = ["InMemoryLedger"]
