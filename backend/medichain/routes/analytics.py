from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..services import analytics

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.get("/overview")
def analytics_overview(db: Session = Depends(get_db)):
    return analytics.overview(db)


@router.get("/verifications")
def analytics_verifications(
    timeframe: str = Query("7d"),
    db: Session = Depends(get_db),
):
    try:
        return analytics.verification_stats(db, timeframe)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/batches")
def analytics_batches(db: Session = Depends(get_db)):
    return analytics.batch_stats(db)


@router.get("/companies")
def analytics_companies(db: Session = Depends(get_db)):
    return analytics.company_stats(db)
