"""Custody state machine: manufacture, distribute, retail and sell through the ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, record_store, schemas
from ..errors import (
    BatchNotFound,
    DuplicateBatch,
    InvalidTransition,
    LedgerTimeout,
    LedgerUnavailable,
    SupplyChainError,
)
from ..ledger import DrugStatus, LedgerDrugRecord, LedgerGateway, LedgerReceipt
from . import reconciliation

logger = logging.getLogger(__name__)

_UTC_NOW = datetime.now


def _utcnow() -> datetime:
    return _UTC_NOW(timezone.utc)


# purpose: advance batches Manufactured -> Distributed -> Retailed -> Sold with ledger-first writes
# inputs: session, ledger gateway, caller address, batch identifiers
# outputs: TransitionResult carrying the ledger receipt and the reconciled store row
# status: active
# depends_on: medichain.ledger, medichain.services.reconciliation

_TRANSITIONS = {
    "distribute": (DrugStatus.MANUFACTURED, DrugStatus.DISTRIBUTED),
    "retail": (DrugStatus.DISTRIBUTED, DrugStatus.RETAILED),
    "sell": (DrugStatus.RETAILED, DrugStatus.SOLD),
}


@dataclass
class TransitionResult:
    batch_id: str
    status: DrugStatus
    receipt: LedgerReceipt
    record: LedgerDrugRecord | None = None
    batch: models.DrugBatch | None = None


def _read_canonical(ledger: LedgerGateway, batch_id: str) -> LedgerDrugRecord | None:
    try:
        return ledger.get_drug_details(batch_id)
    except BatchNotFound:
        return None


def _recover_after_timeout(
    ledger: LedgerGateway,
    exc: LedgerTimeout,
    *,
    batch_id: str,
    operation: str,
    target: DrugStatus,
    custodian: str,
) -> tuple[LedgerReceipt, LedgerDrugRecord]:
    """Re-query canonical state instead of resubmitting a timed-out transition."""

    try:
        record = _read_canonical(ledger, batch_id)
    except LedgerUnavailable as probe_exc:
        raise LedgerUnavailable(
            f"{operation} outcome unknown; ledger unreachable after timeout: {probe_exc.message}",
            batch_id=batch_id,
        ) from exc
    if record is not None and record.status >= target and record.custody_id_for(target) == custodian:
        logger.warning("%s of %s timed out but is visible on the ledger; treating as confirmed", operation, batch_id)
        receipt = LedgerReceipt(
            tx_hash=record.tx_hash or "",
            batch_id=batch_id,
            operation=operation,
            confirmed=True,
            recovered=True,
        )
        return receipt, record
    raise LedgerUnavailable(
        f"{operation} of {batch_id} was not confirmed by the ledger",
        batch_id=batch_id,
    ) from exc


def _reconcile_quietly(db: Session, record: LedgerDrugRecord) -> models.DrugBatch | None:
    """Copy confirmed ledger state into the store; a failure here is logged only."""

    try:
        result = reconciliation.sync_record(db, record)
        db.commit()
    except (SQLAlchemyError, SupplyChainError) as exc:
        db.rollback()
        logger.warning("Store reconciliation after confirmed transition of %s failed: %s", record.batch_id, exc)
        return None
    return result.batch


def _refresh_after_submit(
    ledger: LedgerGateway,
    batch_id: str,
    fallback: LedgerDrugRecord | None,
) -> LedgerDrugRecord | None:
    try:
        return ledger.get_drug_details(batch_id)
    except SupplyChainError as exc:
        logger.warning("Could not re-read %s after confirmation: %s", batch_id, exc)
        return fallback


def manufacture(
    db: Session,
    ledger: LedgerGateway,
    caller: str,
    payload: schemas.BatchCreate,
    *,
    now: datetime | None = None,
) -> TransitionResult:
    """Create a new batch on the ledger owned by ``caller``.

    Raises DuplicateBatch when the id is already known to the ledger and
    ValueError when the expiry does not lie after the manufacture time.
    """

    now = now or _utcnow()
    expiry = record_store.as_utc(payload.expiry_date)
    if expiry <= now:
        raise ValueError("expiry_date must be after the manufacture date")
    if payload.min_temp > payload.max_temp:
        raise ValueError("min_temp must not exceed max_temp")

    if _read_canonical(ledger, payload.batch_id) is not None:
        raise DuplicateBatch("Drug already exists", batch_id=payload.batch_id)

    try:
        receipt = ledger.manufacture_drug(
            caller,
            payload.batch_id,
            payload.name,
            payload.manufacturer,
            expiry,
            payload.min_temp,
            payload.max_temp,
        )
        record = _refresh_after_submit(ledger, payload.batch_id, None)
    except LedgerTimeout as exc:
        receipt, record = _recover_after_timeout(
            ledger,
            exc,
            batch_id=payload.batch_id,
            operation="manufacture_drug",
            target=DrugStatus.MANUFACTURED,
            custodian=caller,
        )
    logger.info("Batch %s manufactured by %s (tx %s)", payload.batch_id, caller, receipt.tx_hash)

    batch = None
    if record is not None:
        batch = _reconcile_quietly(db, record)
        if batch is not None:
            # catalogue text is not carried by the ledger
            record_store.update_batch_fields(
                batch,
                {
                    "description": payload.description,
                    "dosage": payload.dosage,
                    "side_effects": payload.side_effects,
                },
            )
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.warning("Could not store catalogue details for %s: %s", payload.batch_id, exc)
    return TransitionResult(
        batch_id=payload.batch_id,
        status=DrugStatus.MANUFACTURED,
        receipt=receipt,
        record=record,
        batch=batch,
    )


def _advance(
    db: Session,
    ledger: LedgerGateway,
    action: str,
    caller: str,
    batch_id: str,
    *,
    consumer_id: str | None = None,
) -> TransitionResult:
    source, target = _TRANSITIONS[action]
    current = ledger.get_drug_details(batch_id)
    if current.status != source:
        raise InvalidTransition(
            f"Drug must be in {source.label} state",
            batch_id=batch_id,
            current_status=current.status.label,
        )

    custodian = consumer_id if action == "sell" else caller
    operation = f"{action}_drug"
    try:
        if action == "distribute":
            receipt = ledger.distribute_drug(caller, batch_id)
        elif action == "retail":
            receipt = ledger.retail_drug(caller, batch_id)
        else:
            receipt = ledger.sell_drug(caller, batch_id, consumer_id)
        record = _refresh_after_submit(ledger, batch_id, None)
    except LedgerTimeout as exc:
        receipt, record = _recover_after_timeout(
            ledger,
            exc,
            batch_id=batch_id,
            operation=operation,
            target=target,
            custodian=custodian,
        )
    logger.info("Batch %s moved to %s by %s (tx %s)", batch_id, target.label, caller, receipt.tx_hash)

    batch = _reconcile_quietly(db, record) if record is not None else None
    return TransitionResult(
        batch_id=batch_id,
        status=target,
        receipt=receipt,
        record=record,
        batch=batch,
    )


def distribute(db: Session, ledger: LedgerGateway, caller: str, batch_id: str) -> TransitionResult:
    return _advance(db, ledger, "distribute", caller, batch_id)


def retail(db: Session, ledger: LedgerGateway, caller: str, batch_id: str) -> TransitionResult:
    return _advance(db, ledger, "retail", caller, batch_id)


def sell(
    db: Session,
    ledger: LedgerGateway,
    caller: str,
    batch_id: str,
    consumer_id: str,
) -> TransitionResult:
    """Hand a retailed batch to ``consumer_id``; the consumer, not the caller, becomes custodian."""

    if not consumer_id:
        raise ValueError("consumer_id is required")
    return _advance(db, ledger, "sell", caller, batch_id, consumer_id=consumer_id)


def get_drug_details(ledger: LedgerGateway, batch_id: str) -> LedgerDrugRecord:
    return ledger.get_drug_details(batch_id)
