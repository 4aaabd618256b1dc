"""Reconciliation endpoints: copy ledger state into the store on demand."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import require_admin
from ..database import get_db
from ..ledger import LedgerGateway, get_ledger
from ..services import reconciliation

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/batches/{batch_id}", response_model=schemas.BatchSyncOut)
def sync_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
) -> schemas.BatchSyncOut:
    result = reconciliation.sync_batch(db, ledger, batch_id)
    db.commit()
    return schemas.BatchSyncOut(
        batch_id=result.batch_id,
        created=result.created,
        changed_fields=result.changed_fields,
        stale=result.stale,
    )


@router.post("/all", response_model=schemas.SyncSummaryOut, dependencies=[Depends(require_admin)])
def sync_all(
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
) -> schemas.SyncSummaryOut:
    summary = reconciliation.sync_all(db, ledger)
    return schemas.SyncSummaryOut(**summary.as_dict())


@router.get("/status")
def sync_status(
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
) -> dict:
    return reconciliation.sync_status(db, ledger)
