"""Batch verification: ledger-first lookup, store fallback and the append-only event log."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, record_store
from ..errors import BatchNotFound, LedgerUnavailable
from ..ledger import LedgerGateway
from . import reconciliation

logger = logging.getLogger(__name__)

_UTC_NOW = datetime.now


def _utcnow() -> datetime:
    return _UTC_NOW(timezone.utc)


# purpose: answer "is this batch genuine, unexpired and compliant?" and log every attempt
# inputs: session, ledger gateway, batch id, verifier identity, request metadata
# outputs: VerificationOutcome values, verification_events rows
# status: active
# depends_on: medichain.services.reconciliation, medichain.record_store

VERIFICATION_RESULTS = Counter(
    "verification_results_total",
    "Verification outcomes by result and source",
    ["result", "source"],
)
VERIFICATION_EVENT_WRITE_FAILURES = Counter(
    "verification_event_write_failures_total",
    "Verification events that could not be persisted",
)


@dataclass
class VerificationOutcome:
    batch_id: str
    result: str
    is_authentic: bool
    is_expired: bool
    method: str
    verified_at: datetime
    response_time_ms: float = 0.0
    # "ledger" or "store"; None when the batch was not found
    source: str | None = None
    ledger_available: bool = True
    error: str | None = None
    event_id: int | None = None
    batch: dict[str, Any] | None = None


def classify(is_authentic: bool, is_expired: bool) -> str:
    """Counterfeit outranks expired, which outranks authentic."""

    if not is_authentic:
        return "counterfeit"
    if is_expired:
        return "expired"
    return "authentic"


def _resolve(
    db: Session,
    ledger: LedgerGateway,
    batch_id: str,
    now: datetime,
) -> VerificationOutcome:
    ledger_available = True
    try:
        record = ledger.get_drug_details(batch_id)
    except BatchNotFound:
        record = None
    except LedgerUnavailable as exc:
        logger.warning("Ledger unavailable while verifying %s, falling back to store: %s", batch_id, exc)
        record = None
        ledger_available = False

    if record is not None:
        # ledger truth is written through before answering
        sync = reconciliation.sync_record(db, record)
        batch = sync.batch
        expired = record.is_expired(now)
        result = classify(record.is_authentic, expired)
        source = "ledger"
    else:
        batch = record_store.get_batch(db, batch_id)
        if batch is None:
            return VerificationOutcome(
                batch_id=batch_id,
                result="not_found",
                is_authentic=False,
                is_expired=False,
                method="api",
                verified_at=now,
                ledger_available=ledger_available,
            )
        expired = now > record_store.as_utc(batch.expiry_date)
        result = classify(batch.is_authentic, expired)
        source = "store"

    record_store.record_verification(db, batch, now)
    db.commit()
    return VerificationOutcome(
        batch_id=batch_id,
        result=result,
        is_authentic=result != "counterfeit",
        is_expired=expired,
        method="ledger" if source == "ledger" else "api",
        verified_at=now,
        source=source,
        ledger_available=ledger_available,
        batch=record_store.batch_to_dict(batch, now),
    )


def _append_event(
    db: Session,
    outcome: VerificationOutcome,
    *,
    verifier: str | None,
    ip_address: str | None,
    user_agent: str | None,
) -> int | None:
    try:
        event = record_store.append_verification_event(
            db,
            batch_id=outcome.batch_id,
            # internal errors are recorded as not_found with the error text
            verification_result="not_found" if outcome.result == "error" else outcome.result,
            verification_method=outcome.method,
            response_time_ms=outcome.response_time_ms,
            verifier_address=verifier,
            error_message=outcome.error,
            ip_address=ip_address,
            user_agent=user_agent,
            meta={"source": outcome.source, "ledger_available": outcome.ledger_available},
            created_at=outcome.verified_at,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        VERIFICATION_EVENT_WRITE_FAILURES.inc()
        logger.exception("Failed to persist verification event for %s", outcome.batch_id)
        return None
    return event.id


def verify(
    db: Session,
    ledger: LedgerGateway,
    batch_id: str,
    verifier: str | None = None,
    *,
    method: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> VerificationOutcome:
    """Verify ``batch_id`` and append exactly one verification event.

    Never raises: unexpected failures come back with ``result == "error"``.
    """

    started = time.perf_counter()
    now = now or _utcnow()
    try:
        if method is not None and method not in models.VERIFICATION_METHODS:
            raise ValueError(f"Unknown verification method: {method}")
        outcome = _resolve(db, ledger, batch_id, now)
    except Exception as exc:
        db.rollback()
        logger.exception("Verification of %s failed", batch_id)
        outcome = VerificationOutcome(
            batch_id=batch_id,
            result="error",
            is_authentic=False,
            is_expired=False,
            method="api",
            verified_at=now,
            error=str(exc) or exc.__class__.__name__,
        )
    if method in models.VERIFICATION_METHODS:
        outcome.method = method
    outcome.response_time_ms = round((time.perf_counter() - started) * 1000, 3)
    outcome.event_id = _append_event(
        db,
        outcome,
        verifier=verifier,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    VERIFICATION_RESULTS.labels(outcome.result, outcome.source or "none").inc()
    return outcome


def list_history(
    db: Session,
    batch_id: str,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
) -> Sequence[models.VerificationEvent]:
    return record_store.list_verification_events(db, batch_id, since=since, until=until, limit=limit)
