"""Party directory: registration, lookup and auto-provisioning of custody companies."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models, schemas
from ..ledger import LedgerDrugRecord

logger = logging.getLogger(__name__)

_UTC_NOW = datetime.now


def _utcnow() -> datetime:
    return _UTC_NOW(timezone.utc)


# purpose: keep one role-bearing company record per ledger address
# status: active
# depends_on: medichain.models.Company

_PROVISIONED_NAMES = {
    "manufacturer": (
        "PharmaCorp Industries",
        "MediTech Solutions",
        "HealthPharma Ltd",
        "BioMed Manufacturing",
        "Global Pharmaceuticals",
        "Advanced Drug Systems",
    ),
    "distributor": (
        "MediDistribute Co.",
        "PharmaLogistics Inc.",
        "HealthSupply Chain",
        "MedTransport Ltd",
        "Global Med Distribution",
        "Pharma Connect",
    ),
    "retailer": (
        "HealthMart Pharmacy",
        "CityMed Drugstore",
        "WellCare Pharmacy",
        "MediPlus Store",
        "Community Health Pharmacy",
        "Express Medical Store",
    ),
}


class CompanyExists(Exception):
    """Raised when registering an address or licence that is already on file."""


def get_company(db: Session, address: str) -> models.Company | None:
    return db.query(models.Company).filter(models.Company.address == address).one_or_none()


def list_companies(
    db: Session,
    *,
    role: str | None = None,
    verified: bool | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[Sequence[models.Company], int]:
    query = db.query(models.Company).filter(models.Company.is_active.is_(True))
    if role:
        query = query.filter(models.Company.role == role)
    if verified is not None:
        query = query.filter(models.Company.is_verified.is_(verified))
    total = query.count()
    items = (
        query.order_by(models.Company.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def register_company(db: Session, payload: schemas.CompanyCreate) -> models.Company:
    """Create a company record; an existing address or licence is rejected."""

    if get_company(db, payload.address) is not None:
        raise CompanyExists(f"Company with address {payload.address} already exists")
    now = _utcnow()
    company = models.Company(
        address=payload.address,
        name=payload.name,
        role=payload.role,
        email=payload.email,
        phone=payload.phone,
        postal_address=dict(payload.postal_address or {}),
        license_number=payload.license_number,
        is_verified=False,
        is_active=True,
        meta=dict(payload.meta or {}),
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(company)
    except IntegrityError as exc:
        raise CompanyExists("Company address or licence number already registered") from exc
    return company


def verify_company(db: Session, company: models.Company, *, verifier: str) -> models.Company:
    company.is_verified = True
    company.verification_date = _utcnow()
    company.verified_by = verifier
    db.flush()
    return company


def deactivate_company(db: Session, company: models.Company) -> models.Company:
    company.is_active = False
    db.flush()
    return company


def _provisioned_name(address: str, role: str) -> str:
    names = _PROVISIONED_NAMES[role]
    try:
        index = int(address[-4:], 16) % len(names)
    except ValueError:
        index = sum(ord(ch) for ch in address) % len(names)
    return names[index]


def ensure_party(db: Session, address: str, role: str) -> models.Company:
    """Return the company for ``address``, creating a placeholder when none exists.

    Existing records are returned untouched so provisioning never overwrites
    identity fields entered by an administrator.
    """

    existing = get_company(db, address)
    if existing is not None:
        return existing
    name = _provisioned_name(address, role)
    slug = re.sub(r"[^a-z0-9]", "", name.lower())
    now = _utcnow()
    company = models.Company(
        address=address,
        name=name,
        role=role,
        email=f"{slug}@smartmedichain.com",
        license_number=f"{role.upper()}-AUTO-{address.lower()}",
        is_verified=True,
        verification_date=now,
        verified_by="ledger-auto-sync",
        is_active=True,
        meta={"provisioned": True},
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(company)
    except IntegrityError:
        # a concurrent sync provisioned the same address first
        return get_company(db, address)
    logger.info("Provisioned %s company %s for %s", role, name, address)
    return company


def provision_parties(db: Session, record: LedgerDrugRecord) -> list[models.Company]:
    """Ensure a company record exists for every custody party named on the ledger."""

    parties = []
    for address, role in (
        (record.manufacturer_id, "manufacturer"),
        (record.distributor_id, "distributor"),
        (record.retailer_id, "retailer"),
    ):
        if address:
            parties.append(ensure_party(db, address, role))
    return parties
