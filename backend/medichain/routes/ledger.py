"""Direct views onto the custody ledger."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status

from .. import schemas
from ..auth import require_admin
from ..ledger import LEDGER_OWNER_ADDRESS, LedgerGateway, get_ledger

router = APIRouter(prefix="/api/ledger", tags=["ledger"])


@router.get("/status")
def ledger_status(ledger: LedgerGateway = Depends(get_ledger)) -> dict:
    health = ledger.health()
    return {
        "connected": health.connected,
        "backend": health.backend,
        "block_number": health.block_number,
        "network": health.network,
        "contract_address": health.contract_address,
        "detail": health.detail,
    }


@router.get("/batches/{batch_id}", response_model=schemas.LedgerRecordOut)
def ledger_batch(batch_id: str, ledger: LedgerGateway = Depends(get_ledger)) -> schemas.LedgerRecordOut:
    record = ledger.get_drug_details(batch_id)
    return schemas.LedgerRecordOut(
        batch_id=record.batch_id,
        name=record.name,
        manufacturer=record.manufacturer,
        manufacture_date=record.manufacture_date,
        expiry_date=record.expiry_date,
        status=record.status.label,
        manufacturer_id=record.manufacturer_id,
        distributor_id=record.distributor_id,
        retailer_id=record.retailer_id,
        consumer_id=record.consumer_id,
        is_temperature_compliant=record.is_temperature_compliant,
        min_temp=record.min_temp,
        max_temp=record.max_temp,
        is_authentic=record.is_authentic,
        is_expired=record.is_expired(datetime.now(timezone.utc)),
        version=record.version,
        tx_hash=record.tx_hash,
    )


@router.post(
    "/parties",
    response_model=schemas.ReceiptOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def register_party(
    payload: schemas.PartyRegistration,
    ledger: LedgerGateway = Depends(get_ledger),
) -> schemas.ReceiptOut:
    receipt = ledger.register_party(LEDGER_OWNER_ADDRESS, payload.address, payload.role)
    return schemas.ReceiptOut(
        tx_hash=receipt.tx_hash,
        operation=receipt.operation,
        block_number=receipt.block_number,
        confirmed=receipt.confirmed,
    )
