import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from medichain import record_store, schemas
from medichain.errors import (
    BatchNotFound,
    InvalidTransition,
    LedgerTimeout,
    LedgerUnavailable,
    PartyNotAuthorized,
)
from medichain.ledger import DrugStatus
from medichain.services import custody, reconciliation
from .conftest import (
    ADMIN_HEADERS,
    CONSUMER,
    DISTRIBUTOR,
    MANUFACTURER,
    OTHER_DISTRIBUTOR,
    RETAILER,
    batch_payload,
    party,
)


def _manufacture(client, batch_id="BATCH-001", **overrides):
    resp = client.post("/api/batches", json=batch_payload(batch_id, **overrides), headers=party(MANUFACTURER))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_full_lifecycle_updates_custody_and_store(client, ledger):
    created = _manufacture(client)
    assert created["status"] == "Manufactured"
    assert created["batch"]["manufacturer_id"] == MANUFACTURER
    assert created["batch"]["description"] == "Broad-spectrum antibiotic"

    resp = client.post("/api/batches/BATCH-001/distribute", headers=party(DISTRIBUTOR))
    assert resp.status_code == 200
    assert resp.json()["status"] == "Distributed"

    resp = client.post("/api/batches/BATCH-001/retail", headers=party(RETAILER))
    assert resp.status_code == 200
    assert resp.json()["status"] == "Retailed"

    resp = client.post(
        "/api/batches/BATCH-001/sell",
        json={"consumer_id": CONSUMER},
        headers=party(RETAILER),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "Sold"
    assert body["batch"]["consumer_id"] == CONSUMER

    record = ledger.get_drug_details("BATCH-001")
    assert record.status == DrugStatus.SOLD
    assert record.manufacturer_id == MANUFACTURER
    assert record.distributor_id == DISTRIBUTOR
    assert record.retailer_id == RETAILER
    assert record.consumer_id == CONSUMER

    detail = client.get("/api/batches/BATCH-001").json()["batch"]
    assert detail["status"] == "Sold"
    assert detail["retailer_id"] == RETAILER
    assert detail["is_expired"] is False


def test_sold_is_terminal(client):
    _manufacture(client)
    client.post("/api/batches/BATCH-001/distribute", headers=party(DISTRIBUTOR))
    client.post("/api/batches/BATCH-001/retail", headers=party(RETAILER))
    client.post("/api/batches/BATCH-001/sell", json={"consumer_id": CONSUMER}, headers=party(RETAILER))

    again = client.post("/api/batches/BATCH-001/sell", json={"consumer_id": "0xdef"}, headers=party(RETAILER))
    assert again.status_code == 409
    assert again.json()["detail"]["current_status"] == "Sold"


def test_retail_on_manufactured_batch_is_rejected(client, ledger):
    _manufacture(client)
    before = ledger.get_drug_details("BATCH-001")

    resp = client.post("/api/batches/BATCH-001/retail", headers=party(RETAILER))
    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["error"] == "invalid_transition"
    assert detail["current_status"] == "Manufactured"

    after = ledger.get_drug_details("BATCH-001")
    assert after == before
    assert after.retailer_id is None


def test_double_distribute_sets_distributor_once(client, ledger):
    _manufacture(client)
    first = client.post("/api/batches/BATCH-001/distribute", headers=party(DISTRIBUTOR))
    assert first.status_code == 200

    second = client.post("/api/batches/BATCH-001/distribute", headers=party(OTHER_DISTRIBUTOR))
    assert second.status_code == 409
    assert ledger.get_drug_details("BATCH-001").distributor_id == DISTRIBUTOR
    assert client.get("/api/batches/BATCH-001").json()["batch"]["distributor_id"] == DISTRIBUTOR


def test_unknown_batch_is_not_found_not_invalid(client):
    resp = client.post("/api/batches/NOPE-404/distribute", headers=party(DISTRIBUTOR))
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "not_found"


def test_caller_without_role_is_forbidden(client):
    _manufacture(client)
    resp = client.post("/api/batches/BATCH-001/distribute", headers=party(RETAILER))
    assert resp.status_code == 403
    assert resp.json()["detail"]["error"] == "party_not_authorized"


def test_missing_party_header_is_unauthorized(client):
    resp = client.post("/api/batches", json=batch_payload("BATCH-NOHDR"))
    assert resp.status_code == 401


def test_duplicate_manufacture_conflicts(client):
    _manufacture(client)
    resp = client.post("/api/batches", json=batch_payload("BATCH-001"), headers=party(MANUFACTURER))
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "duplicate_batch"


def test_manufacture_validation(client):
    inverted = client.post(
        "/api/batches",
        json=batch_payload("BATCH-BAD", min_temp=9.0, max_temp=2.0),
        headers=party(MANUFACTURER),
    )
    assert inverted.status_code == 422

    past = client.post(
        "/api/batches",
        json=batch_payload("BATCH-OLD", expiry_date="2020-01-01T00:00:00+00:00"),
        headers=party(MANUFACTURER),
    )
    assert past.status_code == 422


def test_timeout_with_applied_transition_is_recovered(db, ledger):
    custody.manufacture(db, ledger, MANUFACTURER, schemas.BatchCreate(**batch_payload("BATCH-TMO")))
    ledger.inject_fault("distribute_drug", LedgerTimeout("no receipt"), apply=True)

    result = custody.distribute(db, ledger, DISTRIBUTOR, "BATCH-TMO")

    assert result.receipt.recovered is True
    assert result.status == DrugStatus.DISTRIBUTED
    assert ledger.get_drug_details("BATCH-TMO").distributor_id == DISTRIBUTOR
    # recovery re-reads state and never resubmits
    assert [t["operation"] for t in ledger.transactions].count("distribute_drug") == 1


def test_timeout_without_applied_transition_fails_closed(client, ledger):
    _manufacture(client, "BATCH-TMO2")
    ledger.inject_fault("distribute_drug", LedgerTimeout("no receipt"))

    resp = client.post("/api/batches/BATCH-TMO2/distribute", headers=party(DISTRIBUTOR))

    assert resp.status_code == 503
    assert ledger.get_drug_details("BATCH-TMO2").status == DrugStatus.MANUFACTURED
    assert client.get("/api/batches/BATCH-TMO2").json()["batch"]["status"] == "Manufactured"


def test_timeout_recovery_ignores_other_custodian(db, ledger):
    custody.manufacture(db, ledger, MANUFACTURER, schemas.BatchCreate(**batch_payload("BATCH-RACE")))
    ledger.distribute_drug(OTHER_DISTRIBUTOR, "BATCH-RACE")
    exc = LedgerTimeout("no receipt", batch_id="BATCH-RACE")

    with pytest.raises(LedgerUnavailable):
        custody._recover_after_timeout(
            ledger,
            exc,
            batch_id="BATCH-RACE",
            operation="distribute_drug",
            target=DrugStatus.DISTRIBUTED,
            custodian=DISTRIBUTOR,
        )


def test_store_failure_after_confirmation_keeps_transition(db, ledger, monkeypatch):
    custody.manufacture(db, ledger, MANUFACTURER, schemas.BatchCreate(**batch_payload("BATCH-RCN")))

    def broken_sync(session, record):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(reconciliation, "sync_record", broken_sync)
    result = custody.distribute(db, ledger, DISTRIBUTOR, "BATCH-RCN")

    assert result.batch is None
    assert result.status == DrugStatus.DISTRIBUTED
    assert ledger.get_drug_details("BATCH-RCN").status == DrugStatus.DISTRIBUTED
    assert record_store.get_batch(db, "BATCH-RCN").status == "Manufactured"


def test_status_never_moves_backwards(db, ledger):
    custody.manufacture(db, ledger, MANUFACTURER, schemas.BatchCreate(**batch_payload("BATCH-MONO")))
    seen = [ledger.get_drug_details("BATCH-MONO").status]
    steps = [
        lambda: custody.distribute(db, ledger, DISTRIBUTOR, "BATCH-MONO"),
        lambda: custody.distribute(db, ledger, DISTRIBUTOR, "BATCH-MONO"),
        lambda: custody.retail(db, ledger, RETAILER, "BATCH-MONO"),
        lambda: custody.retail(db, ledger, RETAILER, "BATCH-MONO"),
        lambda: custody.sell(db, ledger, RETAILER, "BATCH-MONO", CONSUMER),
    ]
    for step in steps:
        try:
            step()
        except InvalidTransition:
            pass
        seen.append(ledger.get_drug_details("BATCH-MONO").status)
    assert seen == sorted(seen)
    assert seen[-1] == DrugStatus.SOLD


def test_concurrent_distribute_has_one_winner(ledger):
    ledger.manufacture_drug(
        MANUFACTURER,
        "BATCH-CONC",
        "Insulin",
        "BioMed Manufacturing",
        ledger._clock() + timedelta(days=365),
        2.0,
        8.0,
    )
    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def attempt(caller):
        barrier.wait()
        try:
            ledger.distribute_drug(caller, "BATCH-CONC")
            outcomes.append("ok")
        except InvalidTransition:
            outcomes.append("rejected")

    threads = [threading.Thread(target=attempt, args=(c,)) for c in (DISTRIBUTOR, OTHER_DISTRIBUTOR)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["ok", "rejected"]


def test_ledger_rejects_unregistered_manufacturer(ledger):
    with pytest.raises(PartyNotAuthorized):
        ledger.manufacture_drug(DISTRIBUTOR, "BATCH-X", "n", "m", ledger._clock(), 1.0, 2.0)
    with pytest.raises(BatchNotFound):
        ledger.get_drug_details("BATCH-X")


def test_list_batches_filters_and_paginates(client):
    for idx in range(3):
        _manufacture(client, f"BATCH-L{idx}")
    client.post("/api/batches/BATCH-L0/distribute", headers=party(DISTRIBUTOR))

    page = client.get("/api/batches", params={"limit": 2})
    assert page.status_code == 200
    body = page.json()
    assert body["total"] == 3
    assert body["pages"] == 2
    assert len(body["items"]) == 2

    distributed = client.get("/api/batches", params={"status": "Distributed"}).json()
    assert [b["batch_id"] for b in distributed["items"]] == ["BATCH-L0"]

    searched = client.get("/api/batches", params={"search": "L2"}).json()
    assert [b["batch_id"] for b in searched["items"]] == ["BATCH-L2"]


def test_admin_delete_removes_only_store_copy(client, ledger):
    _manufacture(client)
    forbidden = client.delete("/api/batches/BATCH-001")
    assert forbidden.status_code == 403

    resp = client.delete("/api/batches/BATCH-001", headers=ADMIN_HEADERS)
    assert resp.status_code == 204
    assert client.get("/api/batches/BATCH-001").status_code == 404
    assert ledger.get_drug_details("BATCH-001").batch_id == "BATCH-001"

    restored = client.post("/api/sync/batches/BATCH-001")
    assert restored.status_code == 200
    assert restored.json()["created"] is True
