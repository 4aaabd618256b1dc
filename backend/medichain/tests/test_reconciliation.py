from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from medichain import models, record_store, schemas, tasks
from medichain.errors import BatchNotFound, ReconciliationPartialFailure
from medichain.ledger import DrugStatus
from medichain.services import custody, directory, reconciliation
from .conftest import (
    ADMIN_HEADERS,
    CONSUMER,
    DISTRIBUTOR,
    MANUFACTURER,
    RETAILER,
    TestingSessionLocal,
    batch_payload,
)


def _seed(ledger, batch_id, caller=MANUFACTURER):
    ledger.manufacture_drug(
        caller,
        batch_id,
        "Metformin 850mg",
        "HealthPharma Ltd",
        datetime.now(timezone.utc) + timedelta(days=200),
        15.0,
        25.0,
    )


def _snapshot(db, batch_id):
    db.expire_all()
    batch = record_store.get_batch(db, batch_id)
    return {column.name: getattr(batch, column.name) for column in models.DrugBatch.__table__.columns}


def test_sync_inserts_missing_batch(db, ledger):
    _seed(ledger, "BATCH-R1")
    result = reconciliation.sync_batch(db, ledger, "BATCH-R1")
    db.commit()

    assert result.created is True
    stored = record_store.get_batch(db, "BATCH-R1")
    assert stored.status == "Manufactured"
    assert stored.manufacturer_id == MANUFACTURER
    assert stored.ledger_version == 1
    assert directory.get_company(db, MANUFACTURER).role == "manufacturer"


def test_second_sync_is_a_no_op(db, ledger):
    _seed(ledger, "BATCH-R2")
    reconciliation.sync_batch(db, ledger, "BATCH-R2")
    db.commit()
    first = _snapshot(db, "BATCH-R2")

    again = reconciliation.sync_batch(db, ledger, "BATCH-R2")
    db.commit()

    assert again.created is False
    assert again.changed_fields == []
    assert _snapshot(db, "BATCH-R2") == first


def test_sync_applies_new_ledger_state(db, ledger):
    _seed(ledger, "BATCH-R3")
    reconciliation.sync_batch(db, ledger, "BATCH-R3")
    db.commit()
    ledger.distribute_drug(DISTRIBUTOR, "BATCH-R3")

    result = reconciliation.sync_batch(db, ledger, "BATCH-R3")
    db.commit()

    assert set(result.changed_fields) >= {"status", "distributor_id", "ledger_version", "ledger_tx_hash"}
    stored = record_store.get_batch(db, "BATCH-R3")
    assert stored.status == "Distributed"
    assert stored.distributor_id == DISTRIBUTOR
    assert stored.ledger_synced_at is not None


def test_older_ledger_version_is_ignored(db, ledger):
    _seed(ledger, "BATCH-R4")
    old = ledger.get_drug_details("BATCH-R4")
    ledger.distribute_drug(DISTRIBUTOR, "BATCH-R4")
    reconciliation.sync_batch(db, ledger, "BATCH-R4")
    db.commit()

    result = reconciliation.apply_ledger_record(db, old)
    db.commit()

    assert result.stale is True
    assert record_store.get_batch(db, "BATCH-R4").status == "Distributed"


def _sell(ledger, batch_id):
    ledger.distribute_drug(DISTRIBUTOR, batch_id)
    ledger.retail_drug(RETAILER, batch_id)
    ledger.sell_drug(RETAILER, batch_id, CONSUMER)


def test_unversioned_snapshot_never_moves_status_back(db, ledger):
    _seed(ledger, "BATCH-R4B")
    _sell(ledger, "BATCH-R4B")
    sold = replace(ledger.get_drug_details("BATCH-R4B"), version=0)
    reconciliation.apply_ledger_record(db, sold)
    db.commit()

    earlier = replace(sold, status=DrugStatus.RETAILED, consumer_id=None)
    result = reconciliation.apply_ledger_record(db, earlier)
    db.commit()

    db.expire_all()
    batch = record_store.get_batch(db, "BATCH-R4B")
    assert result.stale is True
    assert batch.status == "Sold"
    assert batch.consumer_id == CONSUMER


def test_unversioned_snapshot_keeps_custody_ids(db, ledger):
    _seed(ledger, "BATCH-R4C")
    _sell(ledger, "BATCH-R4C")
    sold = replace(ledger.get_drug_details("BATCH-R4C"), version=0)
    reconciliation.apply_ledger_record(db, sold)
    db.commit()

    result = reconciliation.apply_ledger_record(db, replace(sold, retailer_id=None, name="Metformin XR"))
    db.commit()

    db.expire_all()
    batch = record_store.get_batch(db, "BATCH-R4C")
    assert result.changed_fields == ["name"]
    assert batch.retailer_id == RETAILER


def test_lost_insert_race_becomes_update(db, ledger, monkeypatch):
    _seed(ledger, "BATCH-R5")
    record = ledger.get_drug_details("BATCH-R5")
    other = TestingSessionLocal()
    try:
        reconciliation.apply_ledger_record(other, replace(record, name="Metformin (other writer)", version=0))
        other.commit()
    finally:
        other.close()

    calls = {"n": 0}
    original_get = record_store.get_batch

    def stale_first_lookup(session, batch_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return original_get(session, batch_id)

    monkeypatch.setattr(record_store, "get_batch", stale_first_lookup)
    result = reconciliation.apply_ledger_record(db, record)
    db.commit()

    assert result.created is False
    assert "name" in result.changed_fields
    assert db.query(models.DrugBatch).filter(models.DrugBatch.batch_id == "BATCH-R5").count() == 1


def test_sync_unknown_batch_raises(db, ledger):
    with pytest.raises(BatchNotFound):
        reconciliation.sync_batch(db, ledger, "UNKNOWN")


def test_provisioning_never_overwrites_existing_company(db, ledger):
    directory.register_company(
        db,
        schemas.CompanyCreate(
            address=MANUFACTURER,
            name="Acme Pharma",
            role="manufacturer",
            email="ops@acme.example",
            license_number="LIC-ACME-1",
        ),
    )
    db.commit()
    _seed(ledger, "BATCH-R6")
    reconciliation.sync_batch(db, ledger, "BATCH-R6")
    db.commit()

    company = directory.get_company(db, MANUFACTURER)
    assert company.name == "Acme Pharma"
    assert company.license_number == "LIC-ACME-1"
    assert company.is_verified is False


def test_provisioned_company_is_deterministic(db):
    first = directory.ensure_party(db, "0x00000000000000000000000000000000000000f1", "retailer")
    db.commit()
    again = directory.ensure_party(db, "0x00000000000000000000000000000000000000f1", "distributor")
    assert again.id == first.id
    assert again.role == "retailer"
    assert first.verified_by == "ledger-auto-sync"
    assert first.email.endswith("@smartmedichain.com")


def _store_only_batch(db, batch_id):
    now = datetime.now(timezone.utc)
    record_store.insert_batch(
        db,
        {
            "batch_id": batch_id,
            "name": "Orphan",
            "manufacturer": "Unknown",
            "manufacture_date": now,
            "expiry_date": now + timedelta(days=30),
            "min_temp": 0.0,
            "max_temp": 10.0,
            "manufacturer_id": MANUFACTURER,
        },
    )
    db.commit()


def test_sync_all_continues_past_failures(db, ledger):
    for batch_id in ("BATCH-A1", "BATCH-A2"):
        _seed(ledger, batch_id)
        reconciliation.sync_batch(db, ledger, batch_id)
    db.commit()
    _store_only_batch(db, "BATCH-ORPHAN")
    ledger.distribute_drug(DISTRIBUTOR, "BATCH-A2")

    summary = reconciliation.sync_all(db, ledger)

    assert summary.total == 3
    assert summary.processed == 2
    assert summary.failed == 1
    assert "BATCH-ORPHAN" in summary.errors
    assert record_store.get_batch(db, "BATCH-A2").status == "Distributed"


def test_sync_all_skips_batches_without_custody(db, ledger):
    now = datetime.now(timezone.utc)
    record_store.insert_batch(
        db,
        {
            "batch_id": "BATCH-DRAFT",
            "name": "Draft",
            "manufacturer": "Nobody",
            "manufacture_date": now,
            "expiry_date": now + timedelta(days=5),
            "min_temp": 0.0,
            "max_temp": 1.0,
        },
    )
    db.commit()

    summary = reconciliation.sync_all(db, ledger)

    assert summary.total == 1
    assert summary.processed == 0
    assert summary.failed == 0


def test_strict_sync_all_raises_after_attempting_everything(db, ledger):
    _seed(ledger, "BATCH-S1")
    reconciliation.sync_batch(db, ledger, "BATCH-S1")
    db.commit()
    _store_only_batch(db, "BATCH-S-ORPHAN")

    with pytest.raises(ReconciliationPartialFailure) as excinfo:
        reconciliation.sync_all(db, ledger, raise_on_failure=True)

    summary = excinfo.value.summary
    assert summary.processed == 1
    assert summary.failed == 1


def test_periodic_task_uses_its_own_gateway(ledger, monkeypatch):
    _seed(ledger, "BATCH-TASK")
    session = TestingSessionLocal()
    reconciliation.sync_batch(session, ledger, "BATCH-TASK")
    session.commit()
    session.close()
    ledger.distribute_drug(DISTRIBUTOR, "BATCH-TASK")

    closed = []
    monkeypatch.setattr(tasks, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(tasks, "build_ledger_gateway", lambda: ledger)
    monkeypatch.setattr(ledger, "close", lambda: closed.append(True))

    result = tasks.reconcile_all_batches.apply().get()

    assert result["processed"] == 1
    assert closed == [True]
    check = TestingSessionLocal()
    try:
        assert record_store.get_batch(check, "BATCH-TASK").status == "Distributed"
    finally:
        check.close()


def test_beat_schedule_needs_a_shared_ledger():
    assert tasks.build_beat_schedule("memory") == {}
    schedule = tasks.build_beat_schedule("rpc")
    assert schedule["reconcile-all-batches"]["task"] == "medichain.tasks.reconcile_all_batches"
    assert schedule["retry-pending-violations"]["task"] == "medichain.tasks.retry_pending_violations"


def test_sync_endpoints(client, ledger):
    _seed(ledger, "BATCH-API")
    resp = client.post("/api/sync/batches/BATCH-API")
    assert resp.status_code == 200
    assert resp.json()["created"] is True

    repeat = client.post("/api/sync/batches/BATCH-API").json()
    assert repeat["created"] is False
    assert repeat["changed_fields"] == []

    assert client.post("/api/sync/all").status_code == 403
    summary = client.post("/api/sync/all", headers=ADMIN_HEADERS).json()
    assert summary["processed"] == 1
    assert summary["failed"] == 0

    status = client.get("/api/sync/status").json()
    assert status["store"]["total_batches"] == 1
    assert status["ledger"]["connected"] is True

    missing = client.post("/api/sync/batches/NOPE")
    assert missing.status_code == 404


def test_manufacture_then_sync_keeps_catalogue_text(db, ledger):
    custody.manufacture(db, ledger, MANUFACTURER, schemas.BatchCreate(**batch_payload("BATCH-CAT")))
    reconciliation.sync_batch(db, ledger, "BATCH-CAT")
    db.commit()
    assert record_store.get_batch(db, "BATCH-CAT").dosage == "500mg every 8 hours"
