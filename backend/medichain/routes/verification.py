"""Public verification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_optional_caller
from ..database import get_db
from ..ledger import LedgerGateway, get_ledger
from ..services import verification

router = APIRouter(prefix="/api/verify", tags=["verification"])


@router.post("/{batch_id}", response_model=schemas.VerificationOut)
def verify_batch(
    batch_id: str,
    request: Request,
    payload: Optional[schemas.VerificationRequest] = None,
    db: Session = Depends(get_db),
    ledger: LedgerGateway = Depends(get_ledger),
    caller: Optional[str] = Depends(get_optional_caller),
) -> schemas.VerificationOut:
    outcome = verification.verify(
        db,
        ledger,
        batch_id,
        caller,
        method=payload.method if payload else None,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return schemas.VerificationOut(
        batch_id=outcome.batch_id,
        result=outcome.result,
        is_authentic=outcome.is_authentic,
        is_expired=outcome.is_expired,
        source=outcome.source,
        ledger_available=outcome.ledger_available,
        method=outcome.method,
        response_time_ms=outcome.response_time_ms,
        verified_at=outcome.verified_at,
        error=outcome.error,
        event_id=outcome.event_id,
        batch=schemas.BatchOut(**outcome.batch) if outcome.batch else None,
    )


@router.get("/{batch_id}/history", response_model=list[schemas.VerificationEventOut])
def verification_history(
    batch_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[schemas.VerificationEventOut]:
    events = verification.list_history(db, batch_id, since=since, until=until, limit=limit)
    return [schemas.VerificationEventOut.model_validate(e) for e in events]
