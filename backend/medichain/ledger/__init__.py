"""Ledger gateway implementations and the process-level factory."""

from __future__ import annotations

import os

from fastapi import Request

from .gateway import LedgerGateway
from .memory import InMemoryLedger
from .models import DrugStatus, LedgerDrugRecord, LedgerHealth, LedgerReceipt
from .rpc import JsonRpcLedger

LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")
LEDGER_RPC_URL = os.getenv("LEDGER_RPC_URL", "http://127.0.0.1:8545")
LEDGER_CONTRACT_ADDRESS = os.getenv("LEDGER_CONTRACT_ADDRESS")
LEDGER_OWNER_ADDRESS = os.getenv("LEDGER_OWNER_ADDRESS", "0x00000000000000000000000000000000000000aa")
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "10"))
LEDGER_CONFIRMATION_TIMEOUT_SECONDS = float(os.getenv("LEDGER_CONFIRMATION_TIMEOUT_SECONDS", "60"))
LEDGER_POLL_INTERVAL_SECONDS = float(os.getenv("LEDGER_POLL_INTERVAL_SECONDS", "1"))


def build_ledger_gateway(backend: str | None = None) -> LedgerGateway:
    """Construct the configured gateway; callers own its lifetime and must close it."""

    selected = (backend or LEDGER_BACKEND).lower()
    if selected == "memory":
        return InMemoryLedger(owner=LEDGER_OWNER_ADDRESS)
    if selected == "rpc":
        return JsonRpcLedger(
            LEDGER_RPC_URL,
            contract_address=LEDGER_CONTRACT_ADDRESS,
            timeout=LEDGER_TIMEOUT_SECONDS,
            confirmation_timeout=LEDGER_CONFIRMATION_TIMEOUT_SECONDS,
            poll_interval=LEDGER_POLL_INTERVAL_SECONDS,
        )
    raise ValueError(f"Unsupported LEDGER_BACKEND: {selected}")


def get_ledger(request: Request) -> LedgerGateway:
    """FastAPI dependency returning the gateway created in the application lifespan."""

    return request.app.state.ledger


__all__ = [
    "DrugStatus",
    "InMemoryLedger",
    "JsonRpcLedger",
    "LedgerDrugRecord",
    "LedgerGateway",
    "LedgerHealth",
    "LedgerReceipt",
    "LEDGER_OWNER_ADDRESS",
    "build_ledger_gateway",
    "get_ledger",
]
