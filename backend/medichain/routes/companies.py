"""Party directory routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import models, schemas
from ..auth import require_admin
from ..database import get_db
from ..services import directory

router = APIRouter(prefix="/api/companies", tags=["companies"])


def _get_company_or_404(db: Session, address: str) -> models.Company:
    company = directory.get_company(db, address)
    if company is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")
    return company


@router.get("", response_model=schemas.CompanyPage)
def list_companies(
    role: Optional[schemas.PartyRole] = None,
    verified: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
) -> schemas.CompanyPage:
    items, total = directory.list_companies(db, role=role, verified=verified, page=page, limit=limit)
    return schemas.CompanyPage(
        items=[schemas.CompanyOut.model_validate(c) for c in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("", response_model=schemas.CompanyOut, status_code=status.HTTP_201_CREATED)
def register_company(payload: schemas.CompanyCreate, db: Session = Depends(get_db)) -> schemas.CompanyOut:
    try:
        company = directory.register_company(db, payload)
    except directory.CompanyExists as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    db.commit()
    db.refresh(company)
    return schemas.CompanyOut.model_validate(company)


@router.get("/{address}", response_model=schemas.CompanyOut)
def get_company(address: str, db: Session = Depends(get_db)) -> schemas.CompanyOut:
    return schemas.CompanyOut.model_validate(_get_company_or_404(db, address))


@router.post("/{address}/verify", response_model=schemas.CompanyOut, dependencies=[Depends(require_admin)])
def verify_company(
    address: str,
    verifier: str = Query("admin", min_length=1),
    db: Session = Depends(get_db),
) -> schemas.CompanyOut:
    company = directory.verify_company(db, _get_company_or_404(db, address), verifier=verifier)
    db.commit()
    db.refresh(company)
    return schemas.CompanyOut.model_validate(company)


@router.post("/{address}/deactivate", response_model=schemas.CompanyOut, dependencies=[Depends(require_admin)])
def deactivate_company(address: str, db: Session = Depends(get_db)) -> schemas.CompanyOut:
    company = directory.deactivate_company(db, _get_company_or_404(db, address))
    db.commit()
    db.refresh(company)
    return schemas.CompanyOut.model_validate(company)
