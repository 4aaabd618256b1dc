"""Batch custody and cold-chain API routes."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import models, pubsub, record_store, schemas
from ..auth import get_caller_address, require_admin
from ..database import get_db
from ..ledger import LedgerGateway, get_ledger
from ..services import compliance, custody, verification

router = APIRouter(prefix="/api/batches", tags=["batches"])


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _get_batch_or_404(db: Session, batch_id: str) -> models.DrugBatch:
    batch = record_store.get_batch(db, batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return batch


def _serialize_batch(batch: models.DrugBatch | None) -> schemas.BatchOut | None:
    if batch is None:
        return None
    return schemas.BatchOut(**record_store.batch_to_dict(batch, _now()))


def _serialize_transition(result: custody.TransitionResult) -> schemas.TransitionOut:
    receipt = result.receipt
    return schemas.TransitionOut(
        batch_id=result.batch_id,
        status=result.status.label,
        receipt=schemas.ReceiptOut(
            tx_hash=receipt.tx_hash,
            operation=receipt.operation,
            block_number=receipt.block_number,
            confirmed=receipt.confirmed,
            recovered=receipt.recovered,
        ),
        batch=_serialize_batch(result.batch),
    )


def _transition_event(result: custody.TransitionResult, caller: str) -> dict:
    return {
        "type": "custody_transition",
        "batch_id": result.batch_id,
        "status": result.status.label,
        "caller": caller,
        "tx_hash": result.receipt.tx_hash,
        "at": _now(),
    }


@router.post("", response_model=schemas.TransitionOut, status_code=status.HTTP_201_CREATED)
def manufacture_batch(
    payload: schemas.BatchCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
    caller: str = Depends(get_caller_address),
) -> schemas.TransitionOut:
    try:
        result = custody.manufacture(db, ledger, caller, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    background_tasks.add_task(pubsub.publish_batch_event, result.batch_id, _transition_event(result, caller))
    return _serialize_transition(result)


@router.get("", response_model=schemas.BatchPage)
def list_batches(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    manufacturer: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
) -> schemas.BatchPage:
    items, total = record_store.list_batches(
        db,
        page=page,
        limit=limit,
        status=status_filter,
        manufacturer=manufacturer,
        search=search,
    )
    now = _now()
    return schemas.BatchPage(
        items=[schemas.BatchOut(**record_store.batch_to_dict(b, now)) for b in items],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/{batch_id}")
def get_batch(batch_id: str, db: Session = Depends(get_db)) -> dict:
    batch = _get_batch_or_404(db, batch_id)
    history = verification.list_history(db, batch_id, limit=10)
    return {
        "batch": _serialize_batch(batch),
        "verification_history": [schemas.VerificationEventOut.model_validate(e) for e in history],
    }


@router.post("/{batch_id}/distribute", response_model=schemas.TransitionOut)
def distribute_batch(
    batch_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
    caller: str = Depends(get_caller_address),
) -> schemas.TransitionOut:
    result = custody.distribute(db, ledger, caller, batch_id)
    background_tasks.add_task(pubsub.publish_batch_event, batch_id, _transition_event(result, caller))
    return _serialize_transition(result)


@router.post("/{batch_id}/retail", response_model=schemas.TransitionOut)
def retail_batch(
    batch_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
    caller: str = Depends(get_caller_address),
) -> schemas.TransitionOut:
    result = custody.retail(db, ledger, caller, batch_id)
    background_tasks.add_task(pubsub.publish_batch_event, batch_id, _transition_event(result, caller))
    return _serialize_transition(result)


@router.post("/{batch_id}/sell", response_model=schemas.TransitionOut)
def sell_batch(
    batch_id: str,
    payload: schemas.SellRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
    caller: str = Depends(get_caller_address),
) -> schemas.TransitionOut:
    result = custody.sell(db, ledger, caller, batch_id, payload.consumer_id)
    background_tasks.add_task(pubsub.publish_batch_event, batch_id, _transition_event(result, caller))
    return _serialize_transition(result)


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_admin)])
def delete_batch(batch_id: str, db: Session = Depends(get_db)) -> None:
    """Remove the store copy only; the ledger record is untouched and a later sync restores it."""

    if not record_store.delete_batch(db, batch_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    db.commit()


@router.post("/{batch_id}/temperature", response_model=schemas.TemperatureEvaluationOut)
def record_temperature(
    batch_id: str,
    payload: schemas.TemperatureReadingIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
    caller: str = Depends(get_caller_address),
) -> schemas.TemperatureEvaluationOut:
    evaluation = compliance.evaluate(
        db,
        ledger,
        batch_id,
        payload.reading,
        payload.recorded_at,
        reported_by=caller,
    )
    violation = evaluation.violation
    if violation is not None:
        background_tasks.add_task(
            pubsub.publish_batch_event,
            batch_id,
            {
                "type": "temperature_violation",
                "batch_id": batch_id,
                "reading": evaluation.reading,
                "min_temp": evaluation.min_temp,
                "max_temp": evaluation.max_temp,
                "violation_id": violation.id,
                "at": _now(),
            },
        )
    return schemas.TemperatureEvaluationOut(
        batch_id=batch_id,
        reading=evaluation.reading,
        min_temp=evaluation.min_temp,
        max_temp=evaluation.max_temp,
        compliant=evaluation.compliant,
        range_source=evaluation.range_source,
        violation_id=violation.id if violation is not None else None,
        ledger_status=violation.ledger_status if violation is not None else None,
        ledger_tx_hash=violation.ledger_tx_hash if violation is not None else None,
    )


@router.get("/{batch_id}/violations", response_model=list[schemas.TemperatureViolationOut])
def list_violations(batch_id: str, db: Session = Depends(get_db)) -> list[schemas.TemperatureViolationOut]:
    rows = compliance.list_violations(db, batch_id)
    return [schemas.TemperatureViolationOut.model_validate(v) for v in rows]
