from datetime import timedelta

from pharmastock.app.config import Settings
from pharmastock.app.db.base import utcnow
from pharmastock.app.db.models.models_v1 import CommercialDocument, Unit
from pharmastock.app.db.models.core_types import Country, DocumentKind, MovementType, UnitState
from pharmastock.services import reconciliation
from pharmastock.services.collaborators import StaticDocumentDirectory, StaticTransferDirectory
from pharmastock.services.errors import InvalidRequestError
from pharmastock.services.ledger import DocumentRef, dispatch_to_destination
from pharmastock.services.reconciliation import (
    REASON_DOCUMENT_MISSING,
    REASON_RESERVATION_EXPIRED,
    expected_counters,
    reconcile_orphaned_reservations,
    reconcile_state_mismatches,
    reconcile_stock_counters,
)
from pharmastock.services.reservations import reserve_units
from pharmastock.services.transfers import open_transfer


def _reserve_for_vanished_document(db, product, quantity):
    # "GONE" existe au moment de la réservation, plus au moment du scan
    return reserve_units(
        db,
        [(product.id, quantity)],
        document=DocumentRef("GONE", DocumentKind.quote),
        actor="t",
        documents=StaticDocumentDirectory({"GONE"}),
    )


# ---------- Réservations orphelines ----------
def test_reservation_of_a_deleted_document_is_released(db_session, make_product, make_warehouse, make_document, receive):
    """
    GIVEN une unité réservée pour une cotización qui a été supprimée
    WHEN on lance le scan des réservations orphelines
    THEN l'unité redevient disponible, avec un mouvement RELEASE qui cite la raison
    """
    product = make_product()
    receive(product, make_warehouse(Country.destination), 1)
    doc = make_document(DocumentKind.quote)
    outcome = reserve_units(db_session, [(product.id, 1)], document=doc, actor="seller")
    [unit_id] = outcome.products[0].unit_ids

    db_session.delete(db_session.get(CommercialDocument, doc.id))
    db_session.flush()

    report = reconcile_orphaned_reservations(db_session)

    assert (report.examined, report.corrected, report.errors) == (1, 1, 0)
    [detail] = report.details
    assert detail.record_id == unit_id
    assert detail.after == UnitState.available_destination.value
    assert REASON_DOCUMENT_MISSING in detail.action

    unit = db_session.get(Unit, unit_id)
    assert unit.state == UnitState.available_destination
    assert unit.reserved_for is None
    last = unit.movements[-1]
    assert last.movement_type == MovementType.release
    assert REASON_DOCUMENT_MISSING in last.note


def test_live_reservations_are_left_alone(db_session, make_product, make_warehouse, make_document, receive):
    product = make_product()
    receive(product, make_warehouse(Country.origin), 2)
    doc = make_document(DocumentKind.sale)
    reserve_units(db_session, [(product.id, 2)], document=doc, actor="seller")

    report = reconcile_orphaned_reservations(db_session)

    assert (report.examined, report.corrected) == (2, 0)


def test_expired_reservation_is_released(db_session, make_product, make_warehouse, receive):
    product = make_product()
    receive(product, make_warehouse(Country.origin), 1)
    documents = StaticDocumentDirectory({"Q-1"})
    reserve_units(
        db_session,
        [(product.id, 1)],
        document=DocumentRef("Q-1", DocumentKind.quote),
        actor="seller",
        validity_hours=1,
        documents=documents,
    )

    early = reconcile_orphaned_reservations(db_session, documents, now=utcnow())
    late = reconcile_orphaned_reservations(db_session, documents, now=utcnow() + timedelta(hours=2))

    assert early.corrected == 0
    assert late.corrected == 1
    assert REASON_RESERVATION_EXPIRED in late.details[0].action
    assert late.details[0].after == UnitState.received_origin.value


def test_orphan_scan_converges(db_session, make_product, make_warehouse, receive):
    product = make_product()
    receive(product, make_warehouse(Country.destination), 3)
    _reserve_for_vanished_document(db_session, product, 3)

    first = reconcile_orphaned_reservations(db_session, StaticDocumentDirectory(()))
    second = reconcile_orphaned_reservations(db_session, StaticDocumentDirectory(()))

    assert first.corrected == 3
    assert (second.examined, second.corrected, second.errors) == (0, 0, 0)


def test_failed_batch_is_rolled_back_and_the_scan_continues(
    db_session, make_product, make_warehouse, receive, monkeypatch
):
    product = make_product()
    receive(product, make_warehouse(Country.destination), 3)
    outcome = _reserve_for_vanished_document(db_session, product, 3)
    ids = sorted(outcome.products[0].unit_ids)
    bad_id = ids[1]

    real_release = reconciliation.release_unit

    def failing_release(db, unit, **kw):
        if unit.id == bad_id:
            raise InvalidRequestError("boom")
        return real_release(db, unit, **kw)

    monkeypatch.setattr(reconciliation, "release_unit", failing_release)

    report = reconcile_orphaned_reservations(
        db_session,
        StaticDocumentDirectory(()),
        settings=Settings(reconcile_batch_size=1),
    )

    assert (report.examined, report.corrected, report.errors) == (3, 2, 1)
    assert sorted(d.record_id for d in report.details) == [ids[0], ids[2]]
    assert db_session.get(Unit, bad_id).state == UnitState.reserved


# ---------- Incohérences d'état ----------
def test_illegal_country_state_is_corrected(db_session, make_product, make_warehouse, receive):
    [unit] = receive(make_product(), make_warehouse(Country.destination), 1)
    unit.state = UnitState.received_origin
    db_session.flush()

    report = reconcile_state_mismatches(db_session, StaticTransferDirectory())

    [detail] = report.details
    assert detail.action == "illegal state corrected"
    assert detail.before == f"{Country.destination.value}/{UnitState.received_origin.value}"
    assert detail.after == f"{Country.destination.value}/{UnitState.available_destination.value}"
    assert unit.state == UnitState.available_destination
    assert unit.movements[-1].movement_type == MovementType.adjustment


def test_stale_in_transit_is_corrected_unless_in_an_active_transfer(db_session, make_product, make_warehouse, receive):
    origin = make_warehouse(Country.origin)
    dest = make_warehouse(Country.destination)
    stale, shipped = receive(make_product(), origin, 2)
    dispatch_to_destination(db_session, [stale.id, shipped.id], actor="t")
    open_transfer(db_session, number="TR-1", from_warehouse_id=origin.id, to_warehouse_id=dest.id, unit_ids=[shipped.id])

    report = reconcile_state_mismatches(db_session)

    assert [(d.record_id, d.action) for d in report.details] == [(stale.id, "stale in-transit corrected")]
    assert stale.state == UnitState.received_origin
    assert shipped.state == UnitState.in_transit_destination


def test_units_in_transfer_are_never_touched(db_session, make_product, make_warehouse, receive):
    [unit] = receive(make_product(), make_warehouse(Country.destination), 1)
    unit.state = UnitState.received_origin
    db_session.flush()

    report = reconcile_state_mismatches(db_session, StaticTransferDirectory([unit.id]))

    assert report.corrected == 0
    assert unit.state == UnitState.received_origin


def test_leftover_reservation_linkage_is_cleared(db_session, make_product, make_warehouse, receive):
    [unit] = receive(make_product(), make_warehouse(Country.destination), 1)
    unit.reserved_for = "Q-OLD"
    db_session.flush()

    report = reconcile_state_mismatches(db_session, StaticTransferDirectory())

    [detail] = report.details
    assert detail.action == "reservation linkage cleared"
    assert unit.reserved_for is None
    assert unit.state == UnitState.available_destination
    assert "Q-OLD" in unit.movements[-1].note


def test_state_scan_converges(db_session, make_product, make_warehouse, receive):
    units = receive(make_product(), make_warehouse(Country.destination), 2)
    units[0].state = UnitState.in_transit_origin
    units[1].reserved_for = "Q-OLD"
    db_session.flush()

    first = reconcile_state_mismatches(db_session, StaticTransferDirectory())
    second = reconcile_state_mismatches(db_session, StaticTransferDirectory())

    assert first.corrected == 2
    assert (second.examined, second.corrected) == (2, 0)


# ---------- Compteurs ----------
def test_expected_counters_keep_reserved_units_in_their_country():
    counts = {
        (Country.origin, UnitState.received_origin): 2,
        (Country.origin, UnitState.reserved): 1,
        (Country.origin, UnitState.in_transit_destination): 1,
        (Country.destination, UnitState.available_destination): 3,
        (Country.destination, UnitState.sold): 4,
    }

    assert expected_counters(counts) == {
        "stock_origin": 3,
        "stock_destination": 3,
        "stock_in_transit": 1,
        "stock_reserved": 1,
        "stock_available": 5,
    }


def test_stock_counters_are_recomputed_from_the_ledger(db_session, make_product, make_warehouse, receive):
    product = make_product()
    origin = make_warehouse(Country.origin)
    receive(product, origin, 2)
    receive(product, origin, 1, reserve_for=DocumentRef("Q-1", DocumentKind.quote))
    [moving] = receive(product, origin, 1)
    receive(product, make_warehouse(Country.destination), 3)
    dispatch_to_destination(db_session, [moving.id], actor="t")

    report = reconcile_stock_counters(db_session)

    [detail] = report.details
    assert detail.record_id == product.id
    assert detail.action == "counters updated"
    assert (
        product.stock_origin,
        product.stock_destination,
        product.stock_in_transit,
        product.stock_reserved,
        product.stock_available,
    ) == (3, 3, 1, 1, 5)

    again = reconcile_stock_counters(db_session)
    assert again.corrected == 0
    assert again.examined == 1
