import pytest
from fastapi.testclient import TestClient

from allowlist import AllowList
from codes import Ledger
from status_api import create_app
from fakes import FakeClock


@pytest.fixture
def ledger(codes_path):
    ledger = Ledger(codes_path, clock=FakeClock())
    ledger.add_batch(["A1", "B2", "C3"])
    ledger.redeem("B2", "pk1", "msg1")
    ledger.mark_payment_failed(1)
    return ledger


def test_health(ledger):
    r = TestClient(create_app(ledger)).get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_stats(ledger):
    r = TestClient(create_app(ledger)).get("/stats")
    assert r.json() == {"total": 3, "used": 1, "available": 2, "pending_retry": 1}


def test_codes_hide_full_fingerprint(ledger):
    r = TestClient(create_app(ledger)).get("/codes", params={"limit": 2, "offset": 1})
    rows = r.json()
    assert len(rows) == 2
    assert rows[0]["status"] == "USED"
    assert rows[0]["used_by"] == "pk1"
    assert rows[0]["payment_retry_pending"] is True
    assert len(rows[0]["fingerprint_prefix"]) == 16
    assert "fingerprint" not in rows[0]


def test_allowlist_disabled(ledger):
    assert TestClient(create_app(ledger)).get("/allowlist").status_code == 404


def test_allowlist(ledger, whitelist_path):
    al = AllowList(whitelist_path, clock=FakeClock())
    al.add("pk1", "msg1")
    rows = TestClient(create_app(ledger, al)).get("/allowlist").json()
    assert [r["identity"] for r in rows] == ["pk1"]


def test_config(ledger):
    r = TestClient(create_app(ledger, public_settings={"zap_amount_sats": 21})).get("/config")
    assert r.json() == {"settings": {"zap_amount_sats": 21}}
