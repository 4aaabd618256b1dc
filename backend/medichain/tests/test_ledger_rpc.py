from datetime import datetime, timezone

import pytest
import requests

from medichain.errors import (
    BatchNotFound,
    DuplicateBatch,
    InvalidTransition,
    LedgerTimeout,
    LedgerUnavailable,
    PartyNotAuthorized,
)
from medichain.ledger import DrugStatus, JsonRpcLedger, build_ledger_gateway, InMemoryLedger
from medichain.ledger.rpc import ZERO_ADDRESS, translate_revert

EXPIRY = datetime(2027, 1, 1, tzinfo=timezone.utc)
MADE = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._body


class FakeSession:
    """Replays canned JSON-RPC answers keyed by method name."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []
        self.closed = False

    def post(self, url, json, timeout):
        self.calls.append((json["method"], json["params"], timeout))
        answer = self.answers[json["method"]]
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return FakeResponse(answer)

    def close(self):
        self.closed = True


def _drug(**overrides):
    raw = {
        "name": "Insulin Glargine",
        "manufacturer": "BioMed Manufacturing",
        "manufactureDate": int(MADE.timestamp()),
        "expiryDate": int(EXPIRY.timestamp()),
        "status": 1,
        "manufacturerId": "0xaaa",
        "distributorId": "0xbbb",
        "retailerId": ZERO_ADDRESS,
        "consumerId": ZERO_ADDRESS,
        "isTemperatureCompliant": True,
        "minTemp": 2,
        "maxTemp": 8,
        "version": 2,
        "txHash": "0xfeed",
    }
    raw.update(overrides)
    return {"jsonrpc": "2.0", "id": 1, "result": raw}


def _ok(result):
    return {"jsonrpc": "2.0", "id": 1, "result": result}


def _gateway(answers, **kwargs):
    session = FakeSession(answers)
    kwargs.setdefault("poll_interval", 0)
    return JsonRpcLedger("http://ledger.test", session=session, timeout=3.0, **kwargs), session


def test_get_drug_details_parses_contract_struct():
    gateway, session = _gateway({"getDrugDetails": _drug(), "verifyDrug": _ok(True)})

    record = gateway.get_drug_details("BATCH-RPC")

    assert record.status == DrugStatus.DISTRIBUTED
    assert record.expiry_date == EXPIRY
    assert record.distributor_id == "0xbbb"
    assert record.retailer_id is None
    assert record.consumer_id is None
    assert record.min_temp == 2.0
    assert record.version == 2
    assert all(call[2] == 3.0 for call in session.calls)


def test_record_version_falls_back_to_read_block():
    gateway, _ = _gateway(
        {
            "getDrugDetails": [_drug(version=None, blockNumber="0x1a"), _drug(version=None)],
            "verifyDrug": _ok(True),
        }
    )

    assert gateway.get_drug_details("BATCH-RPC").version == 26
    assert gateway.get_drug_details("BATCH-RPC").version == 0


def test_missing_drug_is_not_found():
    gateway, _ = _gateway({"getDrugDetails": _ok(None)})
    with pytest.raises(BatchNotFound):
        gateway.get_drug_details("NOPE")


@pytest.mark.parametrize(
    "reason, error_cls",
    [
        ("Drug does not exist", BatchNotFound),
        ("Drug already exists", DuplicateBatch),
        ("Only registered distributors can call this function", PartyNotAuthorized),
        ("Only owner can call this function", PartyNotAuthorized),
        ("Drug must be in Manufactured state", InvalidTransition),
        ("out of gas", LedgerUnavailable),
    ],
)
def test_revert_reasons_are_translated(reason, error_cls):
    assert type(translate_revert(reason, "B")) is error_cls


def test_revert_in_error_data_is_used():
    answer = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "execution reverted", "data": {"reason": "Drug must be in Distributed state"}}}
    gateway, _ = _gateway({"retailDrug": answer})
    with pytest.raises(InvalidTransition):
        gateway.retail_drug("0xccc", "BATCH-RPC")


def test_transport_timeout_is_ledger_timeout():
    gateway, _ = _gateway({"distributeDrug": requests.Timeout("read timed out")})
    with pytest.raises(LedgerTimeout):
        gateway.distribute_drug("0xbbb", "BATCH-RPC")


def test_connection_error_is_unavailable():
    gateway, _ = _gateway({"verifyDrug": requests.ConnectionError("refused")})
    with pytest.raises(LedgerUnavailable) as excinfo:
        gateway.verify_drug("BATCH-RPC")
    assert not isinstance(excinfo.value, LedgerTimeout)


def test_write_waits_for_receipt():
    gateway, session = _gateway(
        {
            "sellDrug": _ok("0xtx"),
            "eth_getTransactionReceipt": [_ok(None), _ok({"status": 1, "blockNumber": "0x10"})],
        },
        confirmation_timeout=5.0,
    )

    receipt = gateway.sell_drug("0xccc", "BATCH-RPC", "0xabc")

    assert receipt.tx_hash == "0xtx"
    assert receipt.block_number == 16
    assert session.calls[0] == ("sellDrug", ["0xccc", "BATCH-RPC", "0xabc"], 3.0)
    assert [c[0] for c in session.calls].count("eth_getTransactionReceipt") == 2


def test_unconfirmed_write_times_out():
    gateway, _ = _gateway(
        {"distributeDrug": _ok("0xtx"), "eth_getTransactionReceipt": _ok(None)},
        confirmation_timeout=0,
    )
    with pytest.raises(LedgerTimeout):
        gateway.distribute_drug("0xbbb", "BATCH-RPC")


def test_reverted_receipt_is_translated():
    gateway, _ = _gateway(
        {
            "distributeDrug": _ok("0xtx"),
            "eth_getTransactionReceipt": _ok({"status": 0, "revertReason": "Drug must be in Manufactured state"}),
        }
    )
    with pytest.raises(InvalidTransition):
        gateway.distribute_drug("0xbbb", "BATCH-RPC")


def test_health_reports_disconnected_node():
    gateway, _ = _gateway({"eth_blockNumber": requests.ConnectionError("refused")})
    health = gateway.health()
    assert health.connected is False
    assert health.backend == "rpc"


def test_health_reports_block_number():
    gateway, _ = _gateway({"eth_blockNumber": _ok("0x2a"), "eth_chainId": _ok("0x539")})
    health = gateway.health()
    assert health.connected is True
    assert health.block_number == 42


def test_register_party_rejects_unknown_role():
    gateway, _ = _gateway({})
    with pytest.raises(ValueError):
        gateway.register_party("0xowner", "0xnew", "consumer")


def test_close_releases_session():
    gateway, session = _gateway({})
    gateway.close()
    assert session.closed is True


def test_factory_selects_backend():
    assert isinstance(build_ledger_gateway("memory"), InMemoryLedger)
    assert isinstance(build_ledger_gateway("rpc"), JsonRpcLedger)
    with pytest.raises(ValueError):
        build_ledger_gateway("carrier-pigeon")
