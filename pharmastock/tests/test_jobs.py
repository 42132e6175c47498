import json

import pytest

from pharmastock.app.db.models.core_types import Country, DocumentKind, UnitState
from pharmastock.jobs.reconcile import build_parser, cmd_rebuild, main, run
from pharmastock.services import reconciliation
from pharmastock.services.collaborators import StaticDocumentDirectory
from pharmastock.services.errors import InvalidRequestError
from pharmastock.services.ledger import DocumentRef
from pharmastock.services.reservations import reserve_units


def _orphan(db_session, make_product, make_warehouse, receive, quantity=1):
    product = make_product()
    receive(product, make_warehouse(Country.destination), quantity)
    # "GONE" vivant à la réservation, absent du miroir au scan : réservation orpheline
    outcome = reserve_units(
        db_session,
        [(product.id, quantity)],
        document=DocumentRef("GONE", DocumentKind.quote),
        actor="t",
        documents=StaticDocumentDirectory({"GONE"}),
    )
    return outcome.products[0].unit_ids


def test_parser():
    args = build_parser().parse_args(["--dry-run", "rebuild-rollups", "--product-id", "3"])

    assert args.func is cmd_rebuild
    assert args.dry_run
    assert (args.product_id, args.warehouse_id) == (3, None)


def test_main_without_a_job_prints_help(capsys):
    with pytest.raises(SystemExit) as exc:
        main([])

    assert exc.value.code == 1
    assert "pharmastock-jobs" in capsys.readouterr().out


def test_orphaned_reservations_job(db_session, make_product, make_warehouse, receive, capsys):
    [unit_id] = _orphan(db_session, make_product, make_warehouse, receive)

    code = run(build_parser().parse_args(["-v", "orphaned-reservations"]), db_session)

    assert code == 0
    out = capsys.readouterr().out
    assert "orphaned-reservations: examined=1 corrected=1 errors=0" in out
    assert f"#{unit_id} " in out


def test_dry_run_rolls_back(db_session, make_product, make_warehouse, receive, capsys):
    [unit] = receive(make_product(), make_warehouse(Country.destination), 1)
    unit.state = UnitState.received_origin
    db_session.commit()

    code = run(build_parser().parse_args(["--dry-run", "state-mismatches"]), db_session)

    assert code == 0
    assert "corrected=1" in capsys.readouterr().out
    assert unit.state == UnitState.received_origin


def test_json_output(db_session, make_product, make_warehouse, receive, capsys):
    receive(make_product(), make_warehouse(Country.origin), 2)

    run(build_parser().parse_args(["--json", "stock-counters"]), db_session)

    report = json.loads(capsys.readouterr().out)
    assert report["job"] == "stock-counters"
    assert report["corrected"] == 1
    assert report["details"][0]["action"] == "counters updated"


def test_errors_give_a_non_zero_exit_code(db_session, make_product, make_warehouse, receive, monkeypatch):
    _orphan(db_session, make_product, make_warehouse, receive)

    def broken(db, unit, **kw):
        raise InvalidRequestError("boom")

    monkeypatch.setattr(reconciliation, "release_unit", broken)

    assert run(build_parser().parse_args(["orphaned-reservations"]), db_session) == 1


def test_all_runs_every_job(db_session, make_product, make_warehouse, receive, capsys):
    _orphan(db_session, make_product, make_warehouse, receive, quantity=2)

    code = run(build_parser().parse_args(["all"]), db_session)

    assert code == 0
    lines = capsys.readouterr().out.splitlines()
    assert [line.split(":")[0] for line in lines] == ["orphaned-reservations", "state-mismatches", "stock-counters"]
    assert "corrected=2" in lines[0]
