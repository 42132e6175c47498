from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from pharmastock.app.api.deps import get_db
from pharmastock.app.api.v1.endpoints import units as units_endpoint
from pharmastock.app.config import Settings
from pharmastock.app.main import app
from pharmastock.services import reservations


@pytest.fixture
def client(db_session):
    # chaque commit() d'endpoint = RELEASE SAVEPOINT, tout part au rollback du test
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _warehouse(client, code, country, **kw):
    r = client.post("/v1/warehouses", json={"code": code, "name": f"Almacén {code}", "country": country, **kw})
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _product(client, sku, **kw):
    r = client.post("/v1/products", json={"sku": sku, "brand": "Acme", "name": f"Product {sku}", **kw})
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _document(client, doc_id, kind="QUOTE"):
    r = client.post("/v1/documents", json={"id": doc_id, "kind": kind, "number": f"N-{doc_id}"})
    assert r.status_code == 200, r.text


def _receive(client, product_id, warehouse_id, quantity, *, expires_in=180, **kw):
    body = {
        "product_id": product_id,
        "warehouse_id": warehouse_id,
        "quantity": quantity,
        "lot_code": f"LOT-{product_id}-{warehouse_id}",
        "expiry_date": (date.today() + timedelta(days=expires_in)).isoformat(),
        "unit_cost": "10.00",
        "purchase_order_id": "PO-1",
        "purchase_order_number": "OC-0001",
        "actor": "warehouse",
        **kw,
    }
    r = client.post("/v1/units/receive", json=body)
    assert r.status_code == 200, r.text
    return r.json()["unit_ids"]


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_quote_lifecycle(client):
    dest = _warehouse(client, "DST-1", "DESTINATION")
    origin = _warehouse(client, "ORG-1", "ORIGIN")
    pid = _product(client, "AMOX-500")
    _receive(client, pid, dest, 2)
    _receive(client, pid, origin, 3)

    r = client.post("/v1/availability", json={"products": [{"product_id": pid, "quantity": 4}]})
    assert r.status_code == 200
    body = r.json()
    [p] = body["products"]
    assert p["status"] == "available"
    assert (p["free_destination"], p["free_origin"]) == (2, 3)
    assert p["recommendation"]["source"] == "destination"
    assert [d["quantity"] for d in p["recommendation"]["draws"]] == [2, 2]
    assert body["summary"]["all_available"]

    r = client.post("/v1/documents", json={"id": "Q-100", "kind": "QUOTE", "number": "COT-0100"})
    assert r.status_code == 200

    r = client.post(
        "/v1/reservations",
        json={
            "document_id": "Q-100",
            "document_number": "COT-0100",
            "actor": "seller",
            "products": [{"product_id": pid, "quantity": 4}],
        },
    )
    assert r.status_code == 200, r.text
    res = r.json()
    assert (res["units_destination"], res["units_origin"], res["units_virtual"]) == (2, 2, 0)
    assert res["products"][0]["reserved_quantity"] == 4
    assert res["max_transit_days"] == 15

    r = client.get("/v1/units", params={"reserved_for": "Q-100"})
    assert {u["state"] for u in r.json()} == {"reserved"}
    assert len(r.json()) == 4

    # le cache suit la réservation
    rollups = client.get("/v1/aggregates", params={"product_id": pid}).json()
    assert sum(row["qty_reserved"] for row in rollups) == 4

    r = client.post("/v1/reservations/Q-100/extend", json={"hours": 24, "reason": "client asked", "actor": "seller"})
    assert r.status_code == 200
    assert len(r.json()["unit_ids"]) == 4

    r = client.post("/v1/reservations/Q-100/cancel", json={"reason": "quote lost", "actor": "seller"})
    assert r.status_code == 200
    assert len(r.json()["succeeded"]) == 4

    rollups = client.get("/v1/aggregates", params={"product_id": pid}).json()
    assert sum(row["qty_reserved"] for row in rollups) == 0


def test_reservation_with_shortfall_raises_requirement(client):
    _warehouse(client, "DST-2", "DESTINATION")
    pid = _product(client, "IBU-400")
    _document(client, "Q-101")

    r = client.post(
        "/v1/reservations",
        json={"document_id": "Q-101", "actor": "seller", "products": [{"product_id": pid, "quantity": 3}]},
    )

    assert r.status_code == 200
    [p] = r.json()["products"]
    assert p["shortfall"] == 3
    assert p["requirement"]["number"].startswith("REQ-")
    assert r.json()["units_virtual"] == 3


def test_release_endpoint_reports_per_unit(client):
    dest = _warehouse(client, "DST-3", "DESTINATION")
    pid = _product(client, "PARA-1G")
    _receive(client, pid, dest, 1)
    _document(client, "Q-102")
    res = client.post(
        "/v1/reservations",
        json={"document_id": "Q-102", "actor": "seller", "products": [{"product_id": pid, "quantity": 1}]},
    ).json()
    [unit_id] = res["products"][0]["by_warehouse"][0]["unit_ids"]

    r = client.post("/v1/reservations/release", json={"unit_ids": [unit_id, 424242], "reason": "cleanup", "actor": "t"})

    assert r.status_code == 200
    assert r.json()["succeeded"] == [unit_id]
    assert r.json()["failed"] == [{"unit_id": 424242, "reason": "unit not found"}]


def test_unit_detail_and_write_offs(client):
    dest = _warehouse(client, "DST-4", "DESTINATION")
    pid = _product(client, "OMEP-20")
    [unit_id] = _receive(client, pid, dest, 1)

    r = client.get(f"/v1/units/{unit_id}")
    assert r.status_code == 200
    assert r.json()["state"] == "available_destination"
    assert [m["movement_type"] for m in r.json()["movements"]] == ["RECEIPT"]

    assert client.post(f"/v1/units/{unit_id}/damage", json={"actor": "t"}).json()["state"] == "damaged"

    r = client.post(f"/v1/units/{unit_id}/damage", json={"actor": "t"})
    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_TRANSITION"


def test_dispatch_and_arrival_close_the_transfer(client):
    origin = _warehouse(client, "ORG-5", "ORIGIN")
    dest = _warehouse(client, "DST-5", "DESTINATION")
    pid = _product(client, "LORA-10")
    [unit_id] = _receive(client, pid, origin, 1)

    r = client.post(
        "/v1/units/dispatch",
        json={"unit_ids": [unit_id], "transfer_number": "TR-9", "to_warehouse_id": dest, "actor": "t"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["number"] == "TR-9"

    # en transit dans un transfert actif : rien à corriger
    r = client.post("/v1/reconciliation/state-mismatches")
    assert r.json()["corrected"] == 0

    r = client.post(
        "/v1/units/arrival",
        json={"unit_ids": [unit_id], "warehouse_id": dest, "freight_cost": "2.50", "actor": "t"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["closed_transfers"] == ["TR-9"]

    unit = client.get(f"/v1/units/{unit_id}").json()
    assert (unit["state"], unit["country"], unit["warehouse_id"]) == ("available_destination", "DESTINATION", dest)


def test_orphan_reconciliation_over_http(client):
    dest = _warehouse(client, "DST-6", "DESTINATION")
    pid = _product(client, "CETI-10")
    _receive(client, pid, dest, 1)
    client.post("/v1/documents", json={"id": "Q-200", "kind": "QUOTE", "number": "COT-0200"})
    client.post(
        "/v1/reservations",
        json={"document_id": "Q-200", "actor": "seller", "products": [{"product_id": pid, "quantity": 1}]},
    )

    assert client.delete("/v1/documents/Q-200").status_code == 200
    r = client.post("/v1/reconciliation/orphaned-reservations")

    assert r.status_code == 200
    report = r.json()
    assert (report["job"], report["corrected"], report["errors"]) == ("orphaned-reservations", 1, 0)
    assert "referenced document missing" in report["details"][0]["action"]

    r = client.post("/v1/reconciliation/stock-counters")
    assert r.json()["corrected"] == 1
    [product] = [p for p in client.get("/v1/products").json() if p["id"] == pid]
    assert (product["stock_destination"], product["stock_reserved"], product["stock_available"]) == (1, 0, 1)


def test_aggregates_by_country(client):
    origin = _warehouse(client, "ORG-7", "ORIGIN")
    pid = _product(client, "DICLO-50", min_stock=5)
    _receive(client, pid, origin, 2)

    rows = client.post("/v1/aggregates/rebuild").json()
    assert [(r["product_id"], r["qty_received_origin"], r["is_critical"]) for r in rows] == [(pid, 2, True)]

    summary = client.get("/v1/aggregates/by-country").json()
    assert set(summary) == {"ORIGIN", "DESTINATION"}
    assert summary["ORIGIN"]["available"] == 2
    assert summary["ORIGIN"]["critical_products"] == 1


def test_errors_map_to_http_status(client, monkeypatch):
    dest = _warehouse(client, "DST-8", "DESTINATION")
    pid = _product(client, "AZI-500")
    [unit_id] = _receive(client, pid, dest, 1, reserve_for_document_id="Q-1")
    _receive(client, pid, dest, 1)

    r = client.get("/v1/units/999999")
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"

    # réservée pour un autre document
    r = client.post(
        "/v1/units/sell",
        json={"unit_ids": [unit_id], "document_id": "S-9", "total_price": "10", "actor": "t"},
    )
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_REQUEST"

    r = client.post("/v1/availability", json={"products": [{"product_id": pid, "quantity": 0}]})
    assert r.status_code == 422

    _document(client, "Q-300")
    monkeypatch.setattr(reservations, "select_fefo", lambda *a, **kw: [])
    r = client.post(
        "/v1/reservations",
        json={"document_id": "Q-300", "actor": "seller", "products": [{"product_id": pid, "quantity": 1}]},
    )
    assert r.status_code == 409
    assert r.json()["code"] == "CONCURRENT_MODIFICATION"


def test_traveler_must_be_in_origin_country(client):
    r = client.post(
        "/v1/warehouses",
        json={"code": "DST-9", "name": "Maleta", "country": "DESTINATION", "is_traveler": True},
    )
    assert r.status_code == 400


def test_reservation_for_an_unknown_document_is_not_found(client):
    dest = _warehouse(client, "DST-10", "DESTINATION")
    pid = _product(client, "METF-850")
    [unit_id] = _receive(client, pid, dest, 1)

    r = client.post(
        "/v1/reservations",
        json={"document_id": "Q-404", "actor": "seller", "products": [{"product_id": pid, "quantity": 1}]},
    )

    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"
    assert client.get(f"/v1/units/{unit_id}").json()["state"] == "available_destination"


def test_dispatch_towards_an_origin_warehouse_is_rejected(client):
    """
    GIVEN une unité en ORIGIN et un almacén cible lui aussi en ORIGIN
    WHEN on l'expédie vers cet almacén
    THEN 400 INVALID_REQUEST, l'unité reste reçue en origine et aucun transfert n'est ouvert
    """
    origin = _warehouse(client, "ORG-11", "ORIGIN")
    other_origin = _warehouse(client, "ORG-12", "ORIGIN")
    pid = _product(client, "ATOR-20")
    [unit_id] = _receive(client, pid, origin, 1)

    r = client.post(
        "/v1/units/dispatch",
        json={"unit_ids": [unit_id], "transfer_number": "TR-11", "to_warehouse_id": other_origin, "actor": "t"},
    )

    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_REQUEST"
    assert client.get(f"/v1/units/{unit_id}").json()["state"] == "received_origin"


def test_receipt_reservation_lasts_the_configured_number_of_days(client, monkeypatch):
    monkeypatch.setattr(units_endpoint, "get_settings", lambda: Settings(requirement_reservation_days=7))
    dest = _warehouse(client, "DST-13", "DESTINATION")
    pid = _product(client, "LOSA-50")
    [unit_id] = _receive(client, pid, dest, 1, reserve_for_document_id="Q-13")

    unit = client.get(f"/v1/units/{unit_id}").json()

    assert unit["state"] == "reserved"
    expires_at = datetime.fromisoformat(unit["reservation_expires_at"].replace("Z", "+00:00")).replace(tzinfo=None)
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    assert abs(expires_at - now - timedelta(days=7)) < timedelta(hours=1)
