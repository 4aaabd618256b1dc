import os
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite:///./test_medichain.db"
os.environ.setdefault("ADMIN_API_KEY", "test-admin-token")
os.environ.setdefault("LEDGER_BACKEND", "memory")
import pytest
from fastapi.testclient import TestClient

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[2]))

from medichain import notify, pubsub
from medichain.database import Base, SessionLocal, engine, get_db
from medichain.ledger import LEDGER_OWNER_ADDRESS, InMemoryLedger, get_ledger
from medichain.main import app
from medichain.services import compliance

TestingSessionLocal = SessionLocal

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

MANUFACTURER = "0x1111111111111111111111111111111111111111"
DISTRIBUTOR = "0x2222222222222222222222222222222222222222"
RETAILER = "0x3333333333333333333333333333333333333333"
OTHER_DISTRIBUTOR = "0x4444444444444444444444444444444444444444"
CONSUMER = "0xabc"
ADMIN_HEADERS = {"X-Admin-Token": os.environ["ADMIN_API_KEY"]}


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


def party(address: str) -> dict[str, str]:
    return {"X-Party-Address": address}


def batch_payload(batch_id: str, **overrides) -> dict:
    payload = {
        "batch_id": batch_id,
        "name": "Amoxicillin 500mg",
        "manufacturer": "PharmaCorp Industries",
        "expiry_date": (datetime.now(timezone.utc) + timedelta(days=365)).isoformat(),
        "min_temp": 2.0,
        "max_temp": 8.0,
        "description": "Broad-spectrum antibiotic",
        "dosage": "500mg every 8 hours",
        "side_effects": "Nausea",
    }
    payload.update(overrides)
    return payload


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    notify.EMAIL_OUTBOX.clear()
    # each TestClient runs its own event loop
    monkeypatch.setattr(pubsub, "_redis", None)
    monkeypatch.setattr(compliance, "_sleep", lambda seconds: None)
    yield


@pytest.fixture
def ledger():
    gateway = InMemoryLedger(owner=LEDGER_OWNER_ADDRESS)
    gateway.register_party(LEDGER_OWNER_ADDRESS, MANUFACTURER, "manufacturer")
    gateway.register_party(LEDGER_OWNER_ADDRESS, DISTRIBUTOR, "distributor")
    gateway.register_party(LEDGER_OWNER_ADDRESS, OTHER_DISTRIBUTOR, "distributor")
    gateway.register_party(LEDGER_OWNER_ADDRESS, RETAILER, "retailer")
    app.dependency_overrides[get_ledger] = lambda: gateway
    yield gateway
    app.dependency_overrides.pop(get_ledger, None)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(ledger):
    with TestClient(app) as c:
        yield c
