from datetime import date, timedelta
from decimal import Decimal
from itertools import count

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from pharmastock.app.db.base import Base
from pharmastock.app.db.models import models_v1  # noqa: F401  (import for side effects)
from pharmastock.app.db.models.models_v1 import CommercialDocument, Product, Warehouse
from pharmastock.app.db.models.core_types import Country, DocumentKind
from pharmastock.services.ledger import DocumentRef, receive_lot

_seq = count(1)


@pytest.fixture(scope="session")
def engine():
    """SQLite en mémoire, une seule connexion partagée (StaticPool)."""
    eng = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite : laisser SQLAlchemy émettre BEGIN pour que les SAVEPOINT marchent
    @event.listens_for(eng, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    """
    Session DB isolée par test.

    Utilise une transaction englobante + SAVEPOINT.
    TOUT est rollback à la fin du test, même après commit().
    """
    connection = engine.connect()
    transaction = connection.begin()

    # commit() / rollback() de la session = RELEASE / ROLLBACK TO SAVEPOINT
    session = Session(bind=connection, autoflush=False, join_transaction_mode="create_savepoint")

    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


# ---------- Factories ----------
@pytest.fixture
def make_warehouse(db_session):
    def _make(country=Country.origin, **kw):
        n = next(_seq)
        w = Warehouse(
            code=kw.pop("code", f"WH-{n}"),
            name=kw.pop("name", f"Warehouse {n}"),
            country=country,
            **kw,
        )
        db_session.add(w)
        db_session.flush()
        return w

    return _make


@pytest.fixture
def make_product(db_session):
    def _make(**kw):
        n = next(_seq)
        p = Product(
            sku=kw.pop("sku", f"SKU-{n}"),
            brand=kw.pop("brand", "Acme"),
            name=kw.pop("name", f"Product {n}"),
            **kw,
        )
        db_session.add(p)
        db_session.flush()
        return p

    return _make


@pytest.fixture
def receive(db_session):
    """Réception d'un lot ; `expires_in` en jours depuis aujourd'hui."""

    def _receive(product, warehouse, quantity=1, *, expires_in=365, unit_cost="10.00", **kw):
        n = next(_seq)
        return receive_lot(
            db_session,
            product_id=product.id,
            warehouse_id=warehouse.id,
            quantity=quantity,
            lot_code=kw.pop("lot_code", f"LOT-{n}"),
            expiry_date=date.today() + timedelta(days=expires_in),
            unit_cost=Decimal(unit_cost),
            purchase_order_id=kw.pop("purchase_order_id", f"PO-{n}"),
            purchase_order_number=kw.pop("purchase_order_number", f"OC-{n:04d}"),
            actor="tester",
            **kw,
        )

    return _receive


@pytest.fixture
def make_document(db_session):
    """Document commercial vivant (miroir) + sa référence."""

    def _make(kind=DocumentKind.quote, doc_id=None):
        n = next(_seq)
        doc = CommercialDocument(id=doc_id or f"DOC-{n}", kind=kind, number=f"COT-{n:04d}")
        db_session.add(doc)
        db_session.flush()
        return DocumentRef(id=doc.id, kind=kind, number=doc.number)

    return _make
