"""Typed failures raised by the custody, compliance and reconciliation services."""

from __future__ import annotations

from typing import Any

# purpose: give every write-path failure a distinct type so routes never fold it into success
# status: active


class SupplyChainError(Exception):
    """Base class for domain failures."""

    code = "supply_chain_error"

    def __init__(self, message: str, *, batch_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.batch_id = batch_id

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.batch_id is not None:
            detail["batch_id"] = self.batch_id
        return detail


class DuplicateBatch(SupplyChainError):
    code = "duplicate_batch"


class InvalidTransition(SupplyChainError):
    code = "invalid_transition"

    def __init__(
        self,
        message: str,
        *,
        batch_id: str | None = None,
        current_status: str | None = None,
    ) -> None:
        super().__init__(message, batch_id=batch_id)
        self.current_status = current_status

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        if self.current_status is not None:
            detail["current_status"] = self.current_status
        return detail


class BatchNotFound(SupplyChainError):
    code = "not_found"


class PartyNotAuthorized(SupplyChainError):
    code = "party_not_authorized"


class ComplianceLogFailed(SupplyChainError):
    code = "compliance_log_failed"

    def __init__(
        self,
        message: str,
        *,
        batch_id: str | None = None,
        violation_id: int | None = None,
    ) -> None:
        super().__init__(message, batch_id=batch_id)
        self.violation_id = violation_id

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        if self.violation_id is not None:
            detail["violation_id"] = self.violation_id
        return detail


class LedgerUnavailable(SupplyChainError):
    code = "ledger_unavailable"


class LedgerTimeout(LedgerUnavailable):
    """The ledger did not answer in time; the submitted call may or may not have landed."""

    code = "ledger_timeout"


class ReconciliationPartialFailure(SupplyChainError):
    code = "reconciliation_partial_failure"

    def __init__(self, message: str, *, summary: Any) -> None:
        super().__init__(message)
        self.summary = summary
