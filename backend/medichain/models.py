import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    JSON,
    Integer,
    Text,
    Float,
)
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


BATCH_STATUSES = ("Manufactured", "Distributed", "Retailed", "Sold")
VERIFICATION_RESULTS = ("authentic", "counterfeit", "expired", "not_found")
VERIFICATION_METHODS = ("ledger", "api", "qr_scan")
PARTY_ROLES = ("manufacturer", "distributor", "retailer")


class DrugBatch(Base):
    __tablename__ = "drug_batches"
    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    manufacturer = Column(String, nullable=False)
    manufacture_date = Column(DateTime(timezone=True), nullable=False)
    expiry_date = Column(DateTime(timezone=True), nullable=False, index=True)
    description = Column(Text, default="")
    dosage = Column(String, default="")
    side_effects = Column(Text, default="")
    status = Column(String, nullable=False, default="Manufactured")
    is_authentic = Column(Boolean, nullable=False, default=True)
    # purpose: custody identifiers written only by reconciliation from ledger truth
    manufacturer_id = Column(String, index=True)
    distributor_id = Column(String, index=True)
    retailer_id = Column(String, index=True)
    consumer_id = Column(String, index=True)
    min_temp = Column(Float, nullable=False)
    max_temp = Column(Float, nullable=False)
    is_temperature_compliant = Column(Boolean, nullable=False, default=True)
    verification_count = Column(Integer, nullable=False, default=0)
    last_verified_at = Column(DateTime(timezone=True))
    ledger_tx_hash = Column(String)
    ledger_version = Column(Integer, nullable=False, default=0)
    ledger_synced_at = Column(DateTime(timezone=True))
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    violations = relationship(
        "TemperatureViolation",
        primaryjoin="DrugBatch.batch_id == foreign(TemperatureViolation.batch_id)",
        order_by="TemperatureViolation.recorded_at.desc()",
        viewonly=True,
    )

    __table_args__ = (
        sa.Index("ix_drug_batches_status_batch", "batch_id", "status"),
        sa.Index("ix_drug_batches_manufacturer_status", "manufacturer_id", "status"),
    )


class VerificationEvent(Base):
    __tablename__ = "verification_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # no foreign key: not_found attempts are logged as well
    batch_id = Column(String, nullable=False, index=True)
    verifier_address = Column(String, index=True)
    verification_result = Column(String, nullable=False)
    verification_method = Column(String, nullable=False, default="api")
    response_time_ms = Column(Float, nullable=False, default=0.0)
    error_message = Column(Text)
    ip_address = Column(String)
    user_agent = Column(String)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    __table_args__ = (
        sa.Index("ix_verification_events_batch_created", "batch_id", "created_at"),
        sa.Index("ix_verification_events_result_created", "verification_result", "created_at"),
    )


class Company(Base):
    __tablename__ = "companies"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    address = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)
    phone = Column(String)
    postal_address = Column(JSON, default=dict)
    license_number = Column(String, unique=True, nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    verification_date = Column(DateTime(timezone=True))
    verified_by = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (sa.Index("ix_companies_role_verified", "role", "is_verified"),)


class TemperatureViolation(Base):
    __tablename__ = "temperature_violations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String, nullable=False, index=True)
    reading = Column(Float, nullable=False)
    min_temp = Column(Float, nullable=False)
    max_temp = Column(Float, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    reported_by = Column(String)
    # purpose: track durable ledger logging of a detected excursion
    # status: pending -> logged | failed
    ledger_status = Column(String, nullable=False, default="pending", index=True)
    ledger_tx_hash = Column(String)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
