from datetime import date, timedelta
from decimal import Decimal

import pytest

from pharmastock.app.db.models.core_types import AvailabilityStatus, Country, DocumentKind, StockSource
from pharmastock.services.availability import (
    AvailabilityRequest,
    classify,
    product_availability,
    resolve_availability,
)
from pharmastock.services.errors import InvalidRequestError, NotFoundError
from pharmastock.services.ledger import DocumentRef


def test_classify():
    assert classify(10, 8) == AvailabilityStatus.available
    assert classify(5, 8) == AvailabilityStatus.partial
    assert classify(0, 8) == AvailabilityStatus.no_stock


def test_partial_origin_stock_recommends_what_exists_and_a_requirement(db_session, make_product, make_warehouse, receive):
    """
    GIVEN 5 unités libres dans un almacén d'origine, 0 en destination
    WHEN on demande 8 unités en préférant le pays de destination
    THEN partiel, 5 recommandées depuis l'origine, faltante 3 -> requerimiento
    """
    product = make_product()
    origin = make_warehouse(Country.origin)
    receive(product, origin, 5, unit_cost="10.00")

    pa = product_availability(db_session, product.id, 8, prefer_destination_country=True)

    assert pa.status == AvailabilityStatus.partial
    assert pa.total_free == 5
    assert pa.free_origin == 5
    assert pa.free_destination == 0
    assert pa.requires_purchase

    rec = pa.recommendation
    assert rec.source == StockSource.origin_warehouse
    assert [(d.warehouse_id, d.quantity) for d in rec.draws] == [(origin.id, 5)]
    assert rec.shortfall == 3
    assert rec.generates_requirement
    assert "Shortfall: 3" in rec.rationale
    # 15 j forfaitaires, flete par défaut 5 par unité
    assert rec.max_transit_days == 15
    assert rec.estimated_cost == Decimal("75.00")


def test_destination_stock_is_preferred_and_origin_listed_as_alternative(db_session, make_product, make_warehouse, receive):
    product = make_product()
    origin = make_warehouse(Country.origin)
    dest = make_warehouse(Country.destination)
    receive(product, origin, 4, unit_cost="1.00")
    receive(product, dest, 4, unit_cost="50.00")

    pa = product_availability(db_session, product.id, 3)

    assert pa.status == AvailabilityStatus.available
    rec = pa.recommendation
    assert rec.source == StockSource.destination
    assert rec.rationale == "Stock available in destination country (immediate delivery)"
    assert [(d.warehouse_id, d.quantity) for d in rec.draws] == [(dest.id, 3)]
    assert rec.shortfall == 0
    assert not rec.generates_requirement
    assert len(rec.alternatives) == 1
    assert rec.alternatives[0].source == StockSource.origin_warehouse


def test_draws_span_warehouses_in_priority_order(db_session, make_product, make_warehouse, receive):
    product = make_product()
    dest = make_warehouse(Country.destination)
    slow = make_warehouse(Country.origin)
    traveler = make_warehouse(
        Country.origin,
        is_traveler=True,
        next_departure=date.today() + timedelta(days=2),
        avg_freight_cost=Decimal("3.00"),
    )
    receive(product, dest, 2)
    receive(product, slow, 5)
    receive(product, traveler, 2)

    pa = product_availability(db_session, product.id, 5)

    draws = pa.recommendation.draws
    assert [(d.warehouse_id, d.quantity) for d in draws] == [(dest.id, 2), (traveler.id, 2), (slow.id, 1)]
    assert [d.transit_days for d in draws] == [0, 5, 15]
    assert pa.recommendation.source == StockSource.destination

    # affichage : destination, viajero programmé, puis le reste
    assert [w.warehouse_id for w in pa.warehouses] == [dest.id, traveler.id, slow.id]


def test_reserved_units_are_not_free(db_session, make_product, make_warehouse, receive):
    product = make_product()
    dest = make_warehouse(Country.destination)
    receive(product, dest, 2)
    receive(product, dest, 1, reserve_for=DocumentRef("Q-1", DocumentKind.quote))

    pa = product_availability(db_session, product.id, 3)

    [w] = pa.warehouses
    assert (w.on_hand, w.reserved, w.free) == (3, 1, 2)
    assert len(w.unit_ids) == 2
    assert pa.status == AvailabilityStatus.partial


def test_inactive_warehouses_are_ignored(db_session, make_product, make_warehouse, receive):
    product = make_product()
    closed = make_warehouse(Country.destination, active=False)
    receive(product, closed, 3)

    pa = product_availability(db_session, product.id, 1)

    assert pa.status == AvailabilityStatus.no_stock
    assert pa.warehouses == []
    assert pa.recommendation.source == StockSource.virtual
    assert pa.recommendation.shortfall == 1


def test_resolution_does_not_mutate_anything(db_session, make_product, make_warehouse, receive):
    product = make_product()
    units = receive(product, make_warehouse(Country.destination), 2)
    versions = [u.version for u in units]

    product_availability(db_session, product.id, 2)
    db_session.flush()

    assert [u.version for u in units] == versions
    assert not db_session.dirty


def test_resolve_availability_summary(db_session, make_product, make_warehouse, receive):
    in_stock = make_product()
    missing = make_product()
    receive(in_stock, make_warehouse(Country.origin), 2)

    resp = resolve_availability(db_session, [AvailabilityRequest(in_stock.id, 2), (missing.id, 1)])

    assert [p.status for p in resp.products] == [AvailabilityStatus.available, AvailabilityStatus.no_stock]
    assert not resp.summary.all_available
    assert resp.summary.any_no_stock
    assert resp.summary.requires_requirement
    assert resp.summary.max_transit_days == 15


def test_invalid_requests(db_session, make_product):
    product = make_product()

    with pytest.raises(InvalidRequestError):
        product_availability(db_session, product.id, 0)
    with pytest.raises(NotFoundError):
        product_availability(db_session, 424242, 1)


def test_zero_freight_is_a_real_cost(db_session, make_product, make_warehouse, receive):
    """
    GIVEN un almacén ORIGIN dont le fret moyen est configuré à 0
    WHEN on résout la disponibilité
    THEN le fret estimé vaut 0 (pas le fret par défaut) et le coût rendu n'est pas gonflé
    """
    product = make_product()
    origin = make_warehouse(Country.origin, avg_freight_cost=Decimal("0"))
    receive(product, origin, 2, unit_cost="10.00")

    pa = product_availability(db_session, product.id, 1)

    [w] = pa.warehouses
    assert w.estimated_freight == Decimal("0")
    assert w.landed_unit_cost == w.avg_unit_cost


def test_unset_freight_falls_back_to_the_default(db_session, make_product, make_warehouse, receive):
    product = make_product()
    receive(product, make_warehouse(Country.origin), 1)

    [w] = product_availability(db_session, product.id, 1).warehouses

    assert w.estimated_freight == Decimal("5.0")
