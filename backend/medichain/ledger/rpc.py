"""JSON-RPC client for a remote custody ledger node."""

from __future__ import annotations

import itertools
import logging
import time
from datetime import datetime, timezone
from typing import Any

import requests

from ..errors import (
    BatchNotFound,
    DuplicateBatch,
    InvalidTransition,
    LedgerTimeout,
    LedgerUnavailable,
    PartyNotAuthorized,
    SupplyChainError,
)
from .models import DrugStatus, LedgerDrugRecord, LedgerHealth, LedgerReceipt

logger = logging.getLogger(__name__)

# purpose: speak to the custody contract relay with bounded latency and typed failures
# inputs: relay URL, contract address, timeouts
# outputs: LedgerDrugRecord / LedgerReceipt values, medichain.errors on failure
# status: pilot

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# revert reasons emitted by the custody contract, matched case-insensitively
_REVERT_TRANSLATIONS: tuple[tuple[str, type[SupplyChainError]], ...] = (
    ("does not exist", BatchNotFound),
    ("already exists", DuplicateBatch),
    ("only registered", PartyNotAuthorized),
    ("only owner", PartyNotAuthorized),
    ("must be in", InvalidTransition),
    ("invalid state", InvalidTransition),
)

_REGISTER_METHODS = {
    "manufacturer": "registerManufacturer",
    "distributor": "registerDistributor",
    "retailer": "registerRetailer",
}


def _optional_address(value: str | None) -> str | None:
    if not value or value.lower() == ZERO_ADDRESS:
        return None
    return value


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value, 16) if isinstance(value, str) else int(value)


def _record_version(raw: dict[str, Any]) -> int:
    """Contract version when exposed, else the block the relay read the struct at; 0 when neither is known."""

    if raw.get("version") is not None:
        return int(raw["version"])
    return _as_int(raw.get("blockNumber")) or 0


def translate_revert(message: str, batch_id: str | None = None) -> SupplyChainError:
    """Map a contract revert reason onto the domain error taxonomy."""

    lowered = message.lower()
    for needle, error_cls in _REVERT_TRANSLATIONS:
        if needle in lowered:
            return error_cls(message, batch_id=batch_id)
    return LedgerUnavailable(f"Ledger rejected call: {message}", batch_id=batch_id)


class JsonRpcLedger:
    """Ledger gateway backed by a JSON-RPC relay in front of the custody contract."""

    backend = "rpc"

    def __init__(
        self,
        url: str,
        *,
        contract_address: str | None = None,
        timeout: float = 10.0,
        confirmation_timeout: float = 60.0,
        poll_interval: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.contract_address = contract_address
        self.timeout = timeout
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    # --- Transport ---

    def _call(self, method: str, params: list[Any], *, batch_id: str | None = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        if self.contract_address:
            payload["contract"] = self.contract_address
        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as exc:
            raise LedgerTimeout(f"Ledger call {method} timed out", batch_id=batch_id) from exc
        except (requests.RequestException, ValueError) as exc:
            raise LedgerUnavailable(f"Ledger call {method} failed: {exc}", batch_id=batch_id) from exc

        error = body.get("error")
        if error:
            message = error.get("message") or str(error)
            data = error.get("data")
            if isinstance(data, dict) and data.get("reason"):
                message = data["reason"]
            raise translate_revert(message, batch_id=batch_id)
        return body.get("result")

    def _transact(self, method: str, params: list[Any], *, caller: str, batch_id: str) -> LedgerReceipt:
        tx_hash = self._call(method, [caller, *params], batch_id=batch_id)
        receipt = self._await_receipt(tx_hash, batch_id=batch_id)
        if not receipt.get("status", 1):
            raise translate_revert(receipt.get("revertReason") or "transaction reverted", batch_id=batch_id)
        block = receipt.get("blockNumber")
        return LedgerReceipt(
            tx_hash=tx_hash,
            batch_id=batch_id,
            operation=method,
            block_number=_as_int(block),
        )

    def _await_receipt(self, tx_hash: str, *, batch_id: str) -> dict[str, Any]:
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            receipt = self._call("eth_getTransactionReceipt", [tx_hash], batch_id=batch_id)
            if receipt:
                return receipt
            if time.monotonic() >= deadline:
                raise LedgerTimeout(
                    f"Transaction {tx_hash} not confirmed within {self.confirmation_timeout}s",
                    batch_id=batch_id,
                )
            time.sleep(self.poll_interval)

    # --- Reads ---

    def get_drug_details(self, batch_id: str) -> LedgerDrugRecord:
        raw = self._call("getDrugDetails", [batch_id], batch_id=batch_id)
        if not raw:
            raise BatchNotFound("Drug does not exist", batch_id=batch_id)
        is_authentic = bool(self._call("verifyDrug", [batch_id], batch_id=batch_id))
        return LedgerDrugRecord(
            batch_id=batch_id,
            name=raw["name"],
            manufacturer=raw["manufacturer"],
            manufacture_date=_from_timestamp(raw["manufactureDate"]),
            expiry_date=_from_timestamp(raw["expiryDate"]),
            status=DrugStatus(int(raw["status"])),
            manufacturer_id=raw["manufacturerId"],
            distributor_id=_optional_address(raw.get("distributorId")),
            retailer_id=_optional_address(raw.get("retailerId")),
            consumer_id=_optional_address(raw.get("consumerId")),
            is_temperature_compliant=bool(raw.get("isTemperatureCompliant", True)),
            min_temp=float(raw["minTemp"]),
            max_temp=float(raw["maxTemp"]),
            is_authentic=is_authentic,
            version=_record_version(raw),
            tx_hash=raw.get("txHash"),
        )

    def verify_drug(self, batch_id: str) -> bool:
        return bool(self._call("verifyDrug", [batch_id], batch_id=batch_id))

    def is_drug_expired(self, batch_id: str) -> bool:
        return bool(self._call("isDrugExpired", [batch_id], batch_id=batch_id))

    def health(self) -> LedgerHealth:
        try:
            block = self._call("eth_blockNumber", [])
            chain = self._call("eth_chainId", [])
        except LedgerUnavailable as exc:
            return LedgerHealth(
                connected=False,
                backend=self.backend,
                contract_address=self.contract_address,
                detail={"error": exc.message},
            )
        return LedgerHealth(
            connected=True,
            backend=self.backend,
            block_number=_as_int(block),
            network=str(chain),
            contract_address=self.contract_address,
        )

    # --- Writes ---

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
        return self._transact(
            "manufactureDrug",
            [batch_id, name, manufacturer, int(expiry_date.timestamp()), min_temp, max_temp],
            caller=caller,
            batch_id=batch_id,
        )

    def distribute_drug(self, caller: str, batch_id: str) -> LedgerReceipt:
        return self._transact("distributeDrug", [batch_id], caller=caller, batch_id=batch_id)

    def retail_drug(self, caller: str, batch_id: str) -> LedgerReceipt:
        return self._transact("retailDrug", [batch_id], caller=caller, batch_id=batch_id)

    def sell_drug(self, caller: str, batch_id: str, consumer_id: str) -> LedgerReceipt:
        return self._transact("sellDrug", [batch_id, consumer_id], caller=caller, batch_id=batch_id)

    def log_temperature(
        self,
        caller: str,
        batch_id: str,
        reading: float,
        recorded_at: datetime,
    ) -> LedgerReceipt:
        return self._transact(
            "logTemperature",
            [batch_id, reading, int(recorded_at.timestamp())],
            caller=caller,
            batch_id=batch_id,
        )

    def register_party(self, caller: str, address: str, role: str) -> LedgerReceipt:
        method = _REGISTER_METHODS.get(role)
        if method is None:
            raise ValueError(f"Unknown custody role: {role}")
        return self._transact(method, [address], caller=caller, batch_id=address)

    def close(self) -> None:
        self._session.close()
