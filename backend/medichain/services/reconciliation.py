"""Copy canonical ledger state into the Record Store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, record_store
from ..errors import LedgerUnavailable, ReconciliationPartialFailure, SupplyChainError
from ..ledger import DrugStatus, LedgerDrugRecord, LedgerGateway
from . import directory

logger = logging.getLogger(__name__)

_UTC_NOW = datetime.now


def _utcnow() -> datetime:
    return _UTC_NOW(timezone.utc)


# purpose: keep the Record Store eventually consistent with the ledger via idempotent upserts
# inputs: session, ledger gateway, batch identifiers
# outputs: BatchSyncResult / SyncSummary values
# status: active
# depends_on: medichain.record_store, medichain.services.directory


@dataclass
class BatchSyncResult:
    batch_id: str
    created: bool = False
    changed_fields: list[str] = field(default_factory=list)
    stale: bool = False
    batch: models.DrugBatch | None = None

    @property
    def changed(self) -> bool:
        return self.created or bool(self.changed_fields)


@dataclass
class SyncSummary:
    processed: int = 0
    total: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "total": self.total,
            "failed": self.failed,
            "errors": dict(self.errors),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def _authoritative_fields(record: LedgerDrugRecord) -> dict[str, Any]:
    return {
        "name": record.name,
        "manufacturer": record.manufacturer,
        "manufacture_date": record_store.as_utc(record.manufacture_date),
        "expiry_date": record_store.as_utc(record.expiry_date),
        "status": record.status.label,
        "is_authentic": record.is_authentic,
        "manufacturer_id": record.manufacturer_id,
        "distributor_id": record.distributor_id,
        "retailer_id": record.retailer_id,
        "consumer_id": record.consumer_id,
        "min_temp": record.min_temp,
        "max_temp": record.max_temp,
        "ledger_tx_hash": record.tx_hash,
        "ledger_version": record.version,
    }


_CUSTODY_FIELDS = ("manufacturer_id", "distributor_id", "retailer_id", "consumer_id")


def _is_stale(batch: models.DrugBatch, record: LedgerDrugRecord) -> bool:
    """Order snapshots by ledger version, or by custody progress when the ledger reports none."""

    if (batch.ledger_version or 0) > record.version:
        return True
    if not record.version:
        return record.status < DrugStatus.from_label(batch.status)
    return False


def apply_ledger_record(db: Session, record: LedgerDrugRecord) -> BatchSyncResult:
    """Upsert ledger truth for one batch; repeated calls with unchanged input are no-ops."""

    result = BatchSyncResult(batch_id=record.batch_id)
    fields = _authoritative_fields(record)
    batch = record_store.get_batch(db, record.batch_id)
    if batch is None:
        now = _utcnow()
        batch = record_store.insert_batch(
            db,
            {
                "batch_id": record.batch_id,
                **fields,
                "is_temperature_compliant": record.is_temperature_compliant,
                "ledger_synced_at": now,
                "created_at": now,
                "updated_at": now,
            },
        )
        if batch is not None:
            result.created = True
            result.batch = batch
            return result
        batch = record_store.get_batch(db, record.batch_id)

    result.batch = batch
    if _is_stale(batch, record):
        # the store already holds a more recent ledger state
        result.stale = True
        return result
    if not record.version:
        # an unversioned snapshot never clears a custody identifier
        for key in _CUSTODY_FIELDS:
            if fields[key] is None and getattr(batch, key) is not None:
                del fields[key]

    # the flag is monotonic: a store-side violation survives a ledger that has not caught up
    fields["is_temperature_compliant"] = bool(
        batch.is_temperature_compliant and record.is_temperature_compliant
    )
    result.changed_fields = record_store.update_batch_fields(batch, fields)
    if result.changed_fields:
        batch.ledger_synced_at = _utcnow()
    return result


def sync_record(db: Session, record: LedgerDrugRecord) -> BatchSyncResult:
    """Apply a ledger record and provision its custody parties."""

    result = apply_ledger_record(db, record)
    directory.provision_parties(db, record)
    db.flush()
    return result


def sync_batch(db: Session, ledger: LedgerGateway, batch_id: str) -> BatchSyncResult:
    """Fetch canonical state for ``batch_id`` and upsert it.

    Raises BatchNotFound when the ledger has no such batch and
    LedgerUnavailable when the ledger cannot be reached.
    """

    record = ledger.get_drug_details(batch_id)
    result = sync_record(db, record)
    if result.changed:
        logger.info(
            "Synced batch %s from ledger (created=%s, fields=%s)",
            batch_id,
            result.created,
            ",".join(result.changed_fields),
        )
    return result


def sync_all(
    db: Session,
    ledger: LedgerGateway,
    *,
    raise_on_failure: bool = False,
) -> SyncSummary:
    """Re-sync every local batch with at least one custody identifier.

    Each batch commits on its own; a failing batch is rolled back, recorded in
    the summary and the loop continues.
    """

    summary = SyncSummary(started_at=_utcnow())
    summary.total = db.query(sa.func.count(models.DrugBatch.id)).scalar() or 0
    candidates = [
        row.batch_id
        for row in db.query(models.DrugBatch.batch_id)
        .filter(
            sa.or_(
                models.DrugBatch.manufacturer_id.isnot(None),
                models.DrugBatch.distributor_id.isnot(None),
                models.DrugBatch.retailer_id.isnot(None),
            )
        )
        .order_by(models.DrugBatch.id.asc())
        .all()
    ]
    for batch_id in candidates:
        try:
            sync_batch(db, ledger, batch_id)
            db.commit()
        except (SupplyChainError, SQLAlchemyError) as exc:
            db.rollback()
            summary.failed += 1
            summary.errors[batch_id] = str(exc)
            logger.warning("Sync of batch %s failed: %s", batch_id, exc)
            continue
        summary.processed += 1
    summary.finished_at = _utcnow()
    if summary.failed:
        logger.warning(
            "Reconciliation finished with %d/%d failures", summary.failed, len(candidates)
        )
        if raise_on_failure:
            raise ReconciliationPartialFailure(
                f"{summary.failed} of {len(candidates)} batches failed to sync",
                summary=summary,
            )
    return summary


def sync_status(db: Session, ledger: LedgerGateway) -> dict[str, Any]:
    """Summarize the Record Store next to the ledger's health."""

    try:
        health = ledger.health()
    except LedgerUnavailable as exc:
        health = None
        ledger_detail: dict[str, Any] = {"connected": False, "error": exc.message}
    if health is not None:
        ledger_detail = {
            "connected": health.connected,
            "backend": health.backend,
            "block_number": health.block_number,
            "network": health.network,
            "contract_address": health.contract_address,
        }
    recent_batches = (
        db.query(models.DrugBatch)
        .order_by(models.DrugBatch.created_at.desc(), models.DrugBatch.id.desc())
        .limit(5)
        .all()
    )
    recent_companies = (
        db.query(models.Company).order_by(models.Company.created_at.desc()).limit(5).all()
    )
    pending_violations = (
        db.query(sa.func.count(models.TemperatureViolation.id))
        .filter(models.TemperatureViolation.ledger_status != "logged")
        .scalar()
        or 0
    )
    return {
        "store": {
            "total_batches": db.query(sa.func.count(models.DrugBatch.id)).scalar() or 0,
            "total_companies": db.query(sa.func.count(models.Company.id)).scalar() or 0,
            "unlogged_violations": pending_violations,
            "recent_batches": [
                {"batch_id": b.batch_id, "name": b.name, "created_at": record_store.as_utc(b.created_at)}
                for b in recent_batches
            ],
            "recent_companies": [
                {"name": c.name, "role": c.role, "address": c.address} for c in recent_companies
            ],
        },
        "ledger": ledger_detail,
    }
