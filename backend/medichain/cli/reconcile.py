"""Operator commands for ledger reconciliation and party registration."""

# purpose: give operators a shell entry point to the reconciliation and compliance jobs
# status: active
# depends_on: medichain.services.reconciliation, medichain.services.compliance

from __future__ import annotations

import json
from typing import Optional

import typer

from ..database import SessionLocal
from ..errors import SupplyChainError
from ..ledger import LEDGER_OWNER_ADDRESS, build_ledger_gateway
from ..services import compliance, reconciliation

app = typer.Typer(help="MediChain ledger maintenance commands")


def _dump(payload: dict) -> None:
    typer.echo(json.dumps(payload, default=str, sort_keys=True))


@app.command("sync-batch")
def sync_batch_command(
    batch_id: str = typer.Argument(..., help="Batch identifier to re-read from the ledger"),
    backend: Optional[str] = typer.Option(None, help="Override LEDGER_BACKEND"),
) -> None:
    """Copy one batch's canonical state into the store."""

    session = SessionLocal()
    ledger = build_ledger_gateway(backend)
    try:
        result = reconciliation.sync_batch(session, ledger, batch_id)
        session.commit()
    except SupplyChainError as exc:
        session.rollback()
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        ledger.close()
        session.close()
    _dump(
        {
            "batch_id": result.batch_id,
            "created": result.created,
            "changed_fields": result.changed_fields,
            "stale": result.stale,
        }
    )


@app.command("sync-all")
def sync_all_command(
    backend: Optional[str] = typer.Option(None, help="Override LEDGER_BACKEND"),
    strict: bool = typer.Option(False, help="Exit non-zero when any batch fails"),
) -> None:
    """Re-sync every batch with at least one custody identifier."""

    session = SessionLocal()
    ledger = build_ledger_gateway(backend)
    try:
        summary = reconciliation.sync_all(session, ledger)
    finally:
        ledger.close()
        session.close()
    _dump(summary.as_dict())
    if strict and summary.failed:
        raise typer.Exit(code=1)


@app.command("retry-violations")
def retry_violations_command(
    limit: int = typer.Option(100, min=1, help="Maximum violations to resubmit"),
    backend: Optional[str] = typer.Option(None, help="Override LEDGER_BACKEND"),
) -> None:
    """Resubmit pending or failed temperature violations to the ledger."""

    session = SessionLocal()
    ledger = build_ledger_gateway(backend)
    try:
        summary = compliance.retry_failed_violations(session, ledger, limit=limit)
    finally:
        ledger.close()
        session.close()
    _dump(summary)


@app.command("register-party")
def register_party_command(
    address: str = typer.Argument(..., help="Wallet address receiving the role"),
    role: str = typer.Argument(..., help="manufacturer, distributor or retailer"),
    backend: Optional[str] = typer.Option(None, help="Override LEDGER_BACKEND"),
) -> None:
    """Grant a custody role on the ledger as the configured owner."""

    if role not in {"manufacturer", "distributor", "retailer"}:
        raise typer.BadParameter("role must be manufacturer, distributor or retailer")
    ledger = build_ledger_gateway(backend)
    try:
        receipt = ledger.register_party(LEDGER_OWNER_ADDRESS, address, role)
    except SupplyChainError as exc:
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        ledger.close()
    _dump({"address": address, "role": role, "tx_hash": receipt.tx_hash})


if __name__ == "__main__":
    app()
