import json
from datetime import datetime, timedelta, timezone

import pytest
from typer.testing import CliRunner

from medichain import models, record_store
from medichain.cli import reconcile
from medichain.errors import ComplianceLogFailed, LedgerUnavailable
from medichain.services import compliance
from .conftest import DISTRIBUTOR, MANUFACTURER, TestingSessionLocal

runner = CliRunner()


def _use_gateway(monkeypatch, ledger):
    monkeypatch.setattr(reconcile, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(reconcile, "build_ledger_gateway", lambda backend=None: ledger)


def _seed(ledger, batch_id):
    ledger.manufacture_drug(
        MANUFACTURER,
        batch_id,
        "Atorvastatin 20mg",
        "Global Pharmaceuticals",
        datetime.now(timezone.utc) + timedelta(days=90),
        15.0,
        30.0,
    )


def test_sync_batch_command(monkeypatch, ledger):
    _use_gateway(monkeypatch, ledger)
    _seed(ledger, "BATCH-CLI")

    result = runner.invoke(reconcile.app, ["sync-batch", "BATCH-CLI"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["created"] is True
    session = TestingSessionLocal()
    try:
        assert record_store.get_batch(session, "BATCH-CLI").status == "Manufactured"
    finally:
        session.close()


def test_sync_batch_command_reports_missing_batch(monkeypatch, ledger):
    _use_gateway(monkeypatch, ledger)
    result = runner.invoke(reconcile.app, ["sync-batch", "NOPE"])
    assert result.exit_code == 1


def test_sync_all_strict_exit_code(monkeypatch, ledger):
    _use_gateway(monkeypatch, ledger)
    _seed(ledger, "BATCH-CLI2")
    runner.invoke(reconcile.app, ["sync-batch", "BATCH-CLI2"])
    ledger.distribute_drug(DISTRIBUTOR, "BATCH-CLI2")

    result = runner.invoke(reconcile.app, ["sync-all", "--strict"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["processed"] == 1


def test_retry_violations_command(monkeypatch, ledger):
    _use_gateway(monkeypatch, ledger)
    _seed(ledger, "BATCH-CLI3")
    session = TestingSessionLocal()
    try:
        ledger.inject_fault("log_temperature", LedgerUnavailable("node down"))
        with pytest.raises(ComplianceLogFailed):
            compliance.evaluate(session, ledger, "BATCH-CLI3", 45.0, max_attempts=1)
        assert session.query(models.TemperatureViolation).one().ledger_status == "failed"
    finally:
        session.close()

    result = runner.invoke(reconcile.app, ["retry-violations"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"attempted": 1, "failed": 0, "logged": 1}


def test_register_party_command(monkeypatch, ledger):
    _use_gateway(monkeypatch, ledger)
    result = runner.invoke(reconcile.app, ["register-party", "0xcli", "retailer"])
    assert result.exit_code == 0, result.output
    assert ledger.has_role("0xcli", "retailer")

    bad = runner.invoke(reconcile.app, ["register-party", "0xcli", "consumer"])
    assert bad.exit_code != 0
