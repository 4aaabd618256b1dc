"""Read-only aggregates over the Record Store."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from .. import models, record_store

_UTC_NOW = datetime.now


def _utcnow() -> datetime:
    return _UTC_NOW(timezone.utc)


TIMEFRAMES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
EXPIRING_SOON_WINDOW = timedelta(days=30)


def overview(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or _utcnow()
    status_rows = (
        db.query(models.DrugBatch.status, func.count(models.DrugBatch.id))
        .group_by(models.DrugBatch.status)
        .all()
    )
    result_rows = (
        db.query(models.VerificationEvent.verification_result, func.count(models.VerificationEvent.id))
        .group_by(models.VerificationEvent.verification_result)
        .all()
    )
    return {
        "overview": {
            "total_batches": db.query(func.count(models.DrugBatch.id)).scalar() or 0,
            "total_companies": db.query(func.count(models.Company.id))
            .filter(models.Company.is_active.is_(True))
            .scalar()
            or 0,
            "total_verifications": db.query(func.count(models.VerificationEvent.id)).scalar() or 0,
            "recent_verifications": db.query(func.count(models.VerificationEvent.id))
            .filter(models.VerificationEvent.created_at >= now - timedelta(hours=24))
            .scalar()
            or 0,
            "noncompliant_batches": db.query(func.count(models.DrugBatch.id))
            .filter(models.DrugBatch.is_temperature_compliant.is_(False))
            .scalar()
            or 0,
        },
        "status_distribution": [{"status": s, "count": c} for s, c in status_rows],
        "verification_results": [{"result": r, "count": c} for r, c in result_rows],
    }


def verification_stats(db: Session, timeframe: str = "7d", *, now: datetime | None = None) -> dict[str, Any]:
    """Per-result counts and mean latency plus daily trends for ``timeframe``."""

    if timeframe not in TIMEFRAMES:
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    now = now or _utcnow()
    start = now - TIMEFRAMES[timeframe]
    stats = (
        db.query(
            models.VerificationEvent.verification_result,
            func.count(models.VerificationEvent.id),
            func.avg(models.VerificationEvent.response_time_ms),
        )
        .filter(models.VerificationEvent.created_at >= start)
        .group_by(models.VerificationEvent.verification_result)
        .all()
    )
    # daily buckets in UTC
    trend_start = now - max(TIMEFRAMES[timeframe], timedelta(days=1))
    buckets: dict[tuple[str, str], int] = defaultdict(int)
    rows = (
        db.query(models.VerificationEvent.created_at, models.VerificationEvent.verification_result)
        .filter(models.VerificationEvent.created_at >= trend_start)
        .all()
    )
    for created_at, result in rows:
        day = record_store.as_utc(created_at).strftime("%Y-%m-%d")
        buckets[(day, result)] += 1
    return {
        "timeframe": timeframe,
        "stats": [
            {
                "result": result,
                "count": count,
                "avg_response_time_ms": round(float(avg or 0.0), 3),
            }
            for result, count, avg in stats
        ],
        "trends": [
            {"date": day, "result": result, "count": count}
            for (day, result), count in sorted(buckets.items())
        ],
    }


def batch_stats(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or _utcnow()
    soon = now + EXPIRING_SOON_WINDOW
    by_manufacturer = (
        db.query(
            models.DrugBatch.manufacturer,
            func.count(models.DrugBatch.id).label("count"),
            func.sum(case((models.DrugBatch.expiry_date < now, 1), else_=0)).label("expired"),
        )
        .group_by(models.DrugBatch.manufacturer)
        .order_by(func.count(models.DrugBatch.id).desc())
        .limit(10)
        .all()
    )

    def _count(*criteria) -> int:
        return db.query(func.count(models.DrugBatch.id)).filter(*criteria).scalar() or 0

    most_verified = (
        db.query(models.DrugBatch)
        .order_by(models.DrugBatch.verification_count.desc(), models.DrugBatch.id.asc())
        .limit(10)
        .all()
    )
    return {
        "by_manufacturer": [
            {"manufacturer": row.manufacturer, "count": row.count, "expired": int(row.expired or 0)}
            for row in by_manufacturer
        ],
        "expiry": {
            "expired": _count(models.DrugBatch.expiry_date < now),
            "expiring_soon": _count(
                models.DrugBatch.expiry_date >= now,
                models.DrugBatch.expiry_date <= soon,
            ),
            "valid": _count(models.DrugBatch.expiry_date > soon),
        },
        "most_verified": [
            {
                "batch_id": batch.batch_id,
                "name": batch.name,
                "manufacturer": batch.manufacturer,
                "verification_count": batch.verification_count or 0,
                "last_verified_at": record_store.as_utc(batch.last_verified_at),
            }
            for batch in most_verified
        ],
    }


def company_stats(db: Session) -> dict[str, Any]:
    rows = (
        db.query(
            models.Company.role,
            func.count(models.Company.id),
            func.sum(case((models.Company.is_verified.is_(True), 1), else_=0)),
            func.sum(case((models.Company.is_active.is_(True), 1), else_=0)),
        )
        .group_by(models.Company.role)
        .all()
    )
    recent = db.query(models.Company).order_by(models.Company.created_at.desc()).limit(10).all()
    return {
        "by_role": [
            {"role": role, "total": total, "verified": int(verified or 0), "active": int(active or 0)}
            for role, total, verified, active in rows
        ],
        "recent_registrations": [
            {
                "name": company.name,
                "role": company.role,
                "address": company.address,
                "is_verified": company.is_verified,
                "created_at": record_store.as_utc(company.created_at),
            }
            for company in recent
        ],
    }
