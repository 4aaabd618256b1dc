"""Cold-chain compliance: range checks and durable logging of temperature violations."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from prometheus_client import Counter
from sqlalchemy.orm import Session

from .. import models, notify, record_store
from ..errors import (
    ComplianceLogFailed,
    LedgerUnavailable,
    SupplyChainError,
)
from ..ledger import LEDGER_OWNER_ADDRESS, LedgerGateway, LedgerReceipt

logger = logging.getLogger(__name__)

_UTC_NOW = datetime.now


def _utcnow() -> datetime:
    return _UTC_NOW(timezone.utc)


# purpose: detect excursions and make sure each one reaches the ledger or an operator
# inputs: session, ledger gateway, batch id, reading value, reading timestamp
# outputs: TemperatureEvaluation values, temperature_violations rows, operator emails
# status: active
# depends_on: medichain.ledger, medichain.notify

COMPLIANCE_LOG_MAX_ATTEMPTS = int(os.getenv("COMPLIANCE_LOG_MAX_ATTEMPTS", "3"))
COMPLIANCE_LOG_RETRY_SECONDS = float(os.getenv("COMPLIANCE_LOG_RETRY_SECONDS", "0.5"))

TEMPERATURE_VIOLATIONS = Counter(
    "temperature_violations_total",
    "Temperature readings outside a batch's safe range",
    ["ledger_status"],
)

_sleep = time.sleep


@dataclass
class TemperatureEvaluation:
    batch_id: str
    reading: float
    min_temp: float
    max_temp: float
    compliant: bool
    range_source: str
    violation: models.TemperatureViolation | None = None


def is_within_range(reading: float, min_temp: float, max_temp: float) -> bool:
    """Both bounds are inclusive."""

    return min_temp <= reading <= max_temp


def _resolve_range(
    db: Session,
    ledger: LedgerGateway,
    batch_id: str,
) -> tuple[float, float, str]:
    try:
        record = ledger.get_drug_details(batch_id)
        return record.min_temp, record.max_temp, "ledger"
    except LedgerUnavailable as exc:
        batch = record_store.get_batch(db, batch_id)
        if batch is None:
            raise
        logger.warning("Ledger unavailable for %s range lookup, using store copy: %s", batch_id, exc)
        return batch.min_temp, batch.max_temp, "store"


def _submit_violation(
    ledger: LedgerGateway,
    violation: models.TemperatureViolation,
    *,
    caller: str,
    max_attempts: int,
) -> LedgerReceipt:
    """Submit one violation with linear backoff; raise the last error when attempts run out."""

    recorded_at = record_store.as_utc(violation.recorded_at)
    last_exc: SupplyChainError | None = None
    for attempt in range(1, max_attempts + 1):
        violation.attempts = (violation.attempts or 0) + 1
        try:
            return ledger.log_temperature(caller, violation.batch_id, violation.reading, recorded_at)
        except LedgerUnavailable as exc:
            last_exc = exc
            violation.last_error = exc.message
            logger.warning(
                "log_temperature for %s failed (attempt %d/%d): %s",
                violation.batch_id,
                attempt,
                max_attempts,
                exc,
            )
            if attempt < max_attempts:
                _sleep(COMPLIANCE_LOG_RETRY_SECONDS * attempt)
        except SupplyChainError as exc:
            # rejections other than transport failures will not succeed on retry
            violation.last_error = exc.message
            raise
    raise last_exc


def _escalate(violation: models.TemperatureViolation) -> None:
    subject = f"[MediChain] Unlogged temperature violation for batch {violation.batch_id}"
    message = (
        f"A temperature reading of {violation.reading} for batch {violation.batch_id} "
        f"(safe range {violation.min_temp} to {violation.max_temp}) recorded at "
        f"{record_store.as_utc(violation.recorded_at).isoformat()} could not be logged on the ledger "
        f"after {violation.attempts} attempts.\n\nLast error: {violation.last_error}\n"
        f"Violation id: {violation.id}"
    )
    notify.notify_operators(subject, message)


def evaluate(
    db: Session,
    ledger: LedgerGateway,
    batch_id: str,
    reading: float,
    recorded_at: datetime | None = None,
    *,
    reported_by: str | None = None,
    max_attempts: int | None = None,
) -> TemperatureEvaluation:
    """Check ``reading`` against the batch's safe range.

    An in-range reading has no durable effect. An excursion is persisted as a
    pending violation and the batch is marked noncompliant before the ledger
    submission starts, so the detection survives a ledger outage. When every
    attempt fails the violation is marked failed, operators are emailed and
    ComplianceLogFailed is raised.
    """

    min_temp, max_temp, source = _resolve_range(db, ledger, batch_id)
    if is_within_range(reading, min_temp, max_temp):
        return TemperatureEvaluation(
            batch_id=batch_id,
            reading=reading,
            min_temp=min_temp,
            max_temp=max_temp,
            compliant=True,
            range_source=source,
        )

    recorded_at = record_store.as_utc(recorded_at) if recorded_at else _utcnow()
    violation = models.TemperatureViolation(
        batch_id=batch_id,
        reading=reading,
        min_temp=min_temp,
        max_temp=max_temp,
        recorded_at=recorded_at,
        reported_by=reported_by,
        ledger_status="pending",
        attempts=0,
    )
    db.add(violation)
    record_store.mark_noncompliant(db, batch_id)
    db.commit()
    logger.warning(
        "Temperature violation on %s: %.2f outside [%.2f, %.2f]",
        batch_id,
        reading,
        min_temp,
        max_temp,
    )

    evaluation = TemperatureEvaluation(
        batch_id=batch_id,
        reading=reading,
        min_temp=min_temp,
        max_temp=max_temp,
        compliant=False,
        range_source=source,
        violation=violation,
    )
    attempts = max_attempts or COMPLIANCE_LOG_MAX_ATTEMPTS
    try:
        receipt = _submit_violation(ledger, violation, caller=LEDGER_OWNER_ADDRESS, max_attempts=attempts)
    except SupplyChainError as exc:
        violation.ledger_status = "failed"
        db.commit()
        TEMPERATURE_VIOLATIONS.labels("failed").inc()
        logger.error("Violation %s for %s could not be logged on the ledger: %s", violation.id, batch_id, exc)
        _escalate(violation)
        raise ComplianceLogFailed(
            f"Temperature violation detected but not logged on the ledger: {exc.message}",
            batch_id=batch_id,
            violation_id=violation.id,
        ) from exc

    violation.ledger_status = "logged"
    violation.ledger_tx_hash = receipt.tx_hash
    violation.last_error = None
    db.commit()
    TEMPERATURE_VIOLATIONS.labels("logged").inc()
    return evaluation


def retry_failed_violations(
    db: Session,
    ledger: LedgerGateway,
    *,
    limit: int = 100,
) -> dict[str, int]:
    """Resubmit pending and failed violations once each; used by the periodic job."""

    rows = (
        db.query(models.TemperatureViolation)
        .filter(models.TemperatureViolation.ledger_status.in_(("pending", "failed")))
        .order_by(models.TemperatureViolation.recorded_at.asc(), models.TemperatureViolation.id.asc())
        .limit(limit)
        .all()
    )
    summary = {"attempted": 0, "logged": 0, "failed": 0}
    for violation in rows:
        summary["attempted"] += 1
        try:
            receipt = _submit_violation(ledger, violation, caller=LEDGER_OWNER_ADDRESS, max_attempts=1)
        except SupplyChainError:
            violation.ledger_status = "failed"
            summary["failed"] += 1
        else:
            violation.ledger_status = "logged"
            violation.ledger_tx_hash = receipt.tx_hash
            violation.last_error = None
            summary["logged"] += 1
        db.commit()
    if summary["attempted"]:
        logger.info(
            "Violation retry pass: %d attempted, %d logged, %d failed",
            summary["attempted"],
            summary["logged"],
            summary["failed"],
        )
    return summary


def list_violations(db: Session, batch_id: str) -> Sequence[models.TemperatureViolation]:
    return (
        db.query(models.TemperatureViolation)
        .filter(models.TemperatureViolation.batch_id == batch_id)
        .order_by(models.TemperatureViolation.recorded_at.desc(), models.TemperatureViolation.id.desc())
        .all()
    )
