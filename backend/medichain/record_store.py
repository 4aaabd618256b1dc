"""Keyed persistence helpers for batch records and the verification log."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models

# purpose: CRUD over the read-optimized cache of ledger state; no custody rules live here
# inputs: SQLAlchemy session, batch identifiers, field mappings
# outputs: DrugBatch / VerificationEvent rows
# status: active


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (SQLite hands back naive values)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _values_equal(current: Any, incoming: Any) -> bool:
    if isinstance(current, datetime) and isinstance(incoming, datetime):
        return as_utc(current) == as_utc(incoming)
    if isinstance(current, float) or isinstance(incoming, float):
        if current is None or incoming is None:
            return current is incoming
        return float(current) == float(incoming)
    return current == incoming


def get_batch(db: Session, batch_id: str) -> models.DrugBatch | None:
    return (
        db.query(models.DrugBatch)
        .filter(models.DrugBatch.batch_id == batch_id)
        .one_or_none()
    )


def list_batches(
    db: Session,
    *,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    manufacturer: str | None = None,
    search: str | None = None,
) -> tuple[Sequence[models.DrugBatch], int]:
    """Return one page of batches plus the total matching count."""

    query = db.query(models.DrugBatch)
    if status:
        query = query.filter(models.DrugBatch.status == status)
    if manufacturer:
        query = query.filter(models.DrugBatch.manufacturer.ilike(f"%{manufacturer}%"))
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            sa.or_(
                models.DrugBatch.name.ilike(pattern),
                models.DrugBatch.batch_id.ilike(pattern),
                models.DrugBatch.manufacturer.ilike(pattern),
            )
        )
    total = query.count()
    items = (
        query.order_by(models.DrugBatch.created_at.desc(), models.DrugBatch.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def insert_batch(db: Session, fields: dict[str, Any]) -> models.DrugBatch | None:
    """Insert a batch inside a savepoint; return None when another writer won the insert."""

    batch = models.DrugBatch(**fields)
    try:
        with db.begin_nested():
            db.add(batch)
    except IntegrityError:
        return None
    return batch


def update_batch_fields(batch: models.DrugBatch, fields: dict[str, Any]) -> list[str]:
    """Assign only the fields whose values differ and return their names."""

    changed: list[str] = []
    for key, value in fields.items():
        if _values_equal(getattr(batch, key), value):
            continue
        setattr(batch, key, value)
        changed.append(key)
    return changed


def mark_noncompliant(db: Session, batch_id: str) -> models.DrugBatch | None:
    batch = get_batch(db, batch_id)
    if batch is not None and batch.is_temperature_compliant:
        batch.is_temperature_compliant = False
    return batch


def record_verification(db: Session, batch: models.DrugBatch, verified_at: datetime) -> None:
    """Increment the counter in SQL so concurrent verifications are all counted."""

    db.execute(
        sa.update(models.DrugBatch)
        .where(models.DrugBatch.id == batch.id)
        .values(
            verification_count=sa.func.coalesce(models.DrugBatch.verification_count, 0) + 1,
            last_verified_at=verified_at,
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(batch, ["verification_count", "last_verified_at"])


def delete_batch(db: Session, batch_id: str) -> bool:
    batch = get_batch(db, batch_id)
    if batch is None:
        return False
    db.delete(batch)
    return True


def batch_to_dict(batch: models.DrugBatch, now: datetime) -> dict[str, Any]:
    """Serialize a batch with ``is_expired`` derived from ``now``."""

    expiry = as_utc(batch.expiry_date)
    return {
        "batch_id": batch.batch_id,
        "name": batch.name,
        "manufacturer": batch.manufacturer,
        "manufacture_date": as_utc(batch.manufacture_date),
        "expiry_date": expiry,
        "description": batch.description or "",
        "dosage": batch.dosage or "",
        "side_effects": batch.side_effects or "",
        "status": batch.status,
        "is_authentic": batch.is_authentic,
        "is_expired": now > expiry,
        "manufacturer_id": batch.manufacturer_id,
        "distributor_id": batch.distributor_id,
        "retailer_id": batch.retailer_id,
        "consumer_id": batch.consumer_id,
        "min_temp": batch.min_temp,
        "max_temp": batch.max_temp,
        "is_temperature_compliant": batch.is_temperature_compliant,
        "verification_count": batch.verification_count or 0,
        "last_verified_at": as_utc(batch.last_verified_at),
        "ledger_tx_hash": batch.ledger_tx_hash,
        "ledger_version": batch.ledger_version or 0,
        "ledger_synced_at": as_utc(batch.ledger_synced_at),
        "created_at": as_utc(batch.created_at),
        "updated_at": as_utc(batch.updated_at),
    }


def append_verification_event(
    db: Session,
    *,
    batch_id: str,
    verification_result: str,
    verification_method: str,
    response_time_ms: float,
    verifier_address: str | None = None,
    error_message: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    meta: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> models.VerificationEvent:
    """Append one immutable verification attempt."""

    if verification_result not in models.VERIFICATION_RESULTS:
        raise ValueError(f"Unknown verification result: {verification_result}")
    if verification_method not in models.VERIFICATION_METHODS:
        raise ValueError(f"Unknown verification method: {verification_method}")
    event = models.VerificationEvent(
        batch_id=batch_id,
        verifier_address=verifier_address,
        verification_result=verification_result,
        verification_method=verification_method,
        response_time_ms=response_time_ms,
        error_message=error_message,
        ip_address=ip_address,
        user_agent=user_agent,
        meta=meta or {},
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(event)
    db.flush()
    return event


def list_verification_events(
    db: Session,
    batch_id: str,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
) -> Sequence[models.VerificationEvent]:
    query = db.query(models.VerificationEvent).filter(
        models.VerificationEvent.batch_id == batch_id
    )
    if since is not None:
        query = query.filter(models.VerificationEvent.created_at >= as_utc(since))
    if until is not None:
        query = query.filter(models.VerificationEvent.created_at <= as_utc(until))
    return (
        query.order_by(
            models.VerificationEvent.created_at.desc(),
            models.VerificationEvent.id.desc(),
        )
        .limit(limit)
        .all()
    )


def count_verification_events(db: Session, batch_id: str) -> int:
    return (
        db.query(sa.func.count(models.VerificationEvent.id))
        .filter(models.VerificationEvent.batch_id == batch_id)
        .scalar()
        or 0
    )
