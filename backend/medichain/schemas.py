"""Pydantic schemas for the custody, verification and directory APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

PartyRole = Literal["manufacturer", "distributor", "retailer"]
VerificationMethod = Literal["ledger", "api", "qr_scan"]


class BatchCreate(BaseModel):
    batch_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1)
    manufacturer: str = Field(min_length=1)
    expiry_date: datetime
    min_temp: float
    max_temp: float
    description: str = ""
    dosage: str = ""
    side_effects: str = ""

    @model_validator(mode="after")
    def check_range(self):
        if self.min_temp > self.max_temp:
            raise ValueError("min_temp must not exceed max_temp")
        return self


class SellRequest(BaseModel):
    consumer_id: str = Field(min_length=1)


class BatchOut(BaseModel):
    batch_id: str
    name: str
    manufacturer: str
    manufacture_date: datetime
    expiry_date: datetime
    description: str = ""
    dosage: str = ""
    side_effects: str = ""
    status: str
    is_authentic: bool
    is_expired: bool
    manufacturer_id: Optional[str] = None
    distributor_id: Optional[str] = None
    retailer_id: Optional[str] = None
    consumer_id: Optional[str] = None
    min_temp: float
    max_temp: float
    is_temperature_compliant: bool
    verification_count: int = 0
    last_verified_at: Optional[datetime] = None
    ledger_tx_hash: Optional[str] = None
    ledger_version: int = 0
    ledger_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BatchPage(BaseModel):
    items: list[BatchOut]
    total: int
    page: int
    limit: int
    pages: int


class ReceiptOut(BaseModel):
    tx_hash: str
    operation: str
    block_number: Optional[int] = None
    confirmed: bool = True
    recovered: bool = False


class TransitionOut(BaseModel):
    batch_id: str
    status: str
    receipt: ReceiptOut
    batch: Optional[BatchOut] = None


class LedgerRecordOut(BaseModel):
    batch_id: str
    name: str
    manufacturer: str
    manufacture_date: datetime
    expiry_date: datetime
    status: str
    manufacturer_id: str
    distributor_id: Optional[str] = None
    retailer_id: Optional[str] = None
    consumer_id: Optional[str] = None
    is_temperature_compliant: bool
    min_temp: float
    max_temp: float
    is_authentic: bool
    is_expired: bool
    version: int
    tx_hash: Optional[str] = None


class VerificationEventOut(BaseModel):
    id: int
    batch_id: str
    verifier_address: Optional[str] = None
    verification_result: str
    verification_method: str
    response_time_ms: float
    error_message: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VerificationRequest(BaseModel):
    method: Optional[VerificationMethod] = None


class VerificationOut(BaseModel):
    batch_id: str
    result: str
    is_authentic: bool
    is_expired: bool
    source: Optional[str] = None
    ledger_available: bool = True
    method: str
    response_time_ms: float
    verified_at: datetime
    error: Optional[str] = None
    event_id: Optional[int] = None
    batch: Optional[BatchOut] = None


class TemperatureReadingIn(BaseModel):
    reading: float
    recorded_at: Optional[datetime] = None


class TemperatureEvaluationOut(BaseModel):
    batch_id: str
    reading: float
    min_temp: float
    max_temp: float
    compliant: bool
    range_source: str
    violation_id: Optional[int] = None
    ledger_status: Optional[str] = None
    ledger_tx_hash: Optional[str] = None


class TemperatureViolationOut(BaseModel):
    id: int
    batch_id: str
    reading: float
    min_temp: float
    max_temp: float
    recorded_at: datetime
    reported_by: Optional[str] = None
    ledger_status: str
    ledger_tx_hash: Optional[str] = None
    attempts: int
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PartyRegistration(BaseModel):
    address: str = Field(min_length=1)
    role: PartyRole


class CompanyCreate(BaseModel):
    address: str = Field(min_length=1)
    name: str = Field(min_length=1)
    role: PartyRole
    email: EmailStr
    phone: Optional[str] = None
    postal_address: dict[str, Any] = Field(default_factory=dict)
    license_number: str = Field(min_length=1)
    meta: dict[str, Any] = Field(default_factory=dict)


class CompanyOut(BaseModel):
    id: str
    address: str
    name: str
    role: str
    email: str
    phone: Optional[str] = None
    postal_address: dict[str, Any] = Field(default_factory=dict)
    license_number: str
    is_verified: bool
    verification_date: Optional[datetime] = None
    verified_by: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CompanyPage(BaseModel):
    items: list[CompanyOut]
    total: int
    page: int
    limit: int


class BatchSyncOut(BaseModel):
    batch_id: str
    created: bool
    changed_fields: list[str]
    stale: bool


class SyncSummaryOut(BaseModel):
    processed: int
    total: int
    failed: int
    errors: dict[str, str] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
