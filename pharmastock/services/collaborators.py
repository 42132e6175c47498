"""
Frontières vers les flux externes (ventes/cotizations, logística).

Le moteur ne lit que ces interfaces ; les implémentations SQL lisent les
tables miroir tenues à jour par les flux propriétaires. Les versions
"Static" servent aux appels in-process et aux tests.
"""
from __future__ import annotations

from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.db.models.models_v1 import CommercialDocument, Transfer, TransferLine
from pharmastock.app.db.models.core_types import TransferStatus

ACTIVE_TRANSFER_STATUSES = {
    TransferStatus.preparing,
    TransferStatus.in_transit,
}


class DocumentDirectory(Protocol):
    def existing(self, document_ids: Iterable[str]) -> set[str]:
        """Sous-ensemble des ids qui référencent un document (vente/cotización) vivant."""
        ...


class TransferDirectory(Protocol):
    def active_unit_ids(self, unit_ids: Iterable[int]) -> set[int]:
        """Sous-ensemble des unités embarquées dans un transfert en cours."""
        ...


class SqlDocumentDirectory:
    def __init__(self, db: Session):
        self.db = db

    def existing(self, document_ids: Iterable[str]) -> set[str]:
        ids = {d for d in document_ids if d}
        if not ids:
            return set()
        rows = self.db.execute(
            select(CommercialDocument.id).where(CommercialDocument.id.in_(ids))
        ).scalars()
        return set(rows)


class StaticDocumentDirectory:
    def __init__(self, live_ids: Iterable[str]):
        self.live_ids = set(live_ids)

    def existing(self, document_ids: Iterable[str]) -> set[str]:
        return {d for d in document_ids if d in self.live_ids}


class SqlTransferDirectory:
    def __init__(self, db: Session):
        self.db = db

    def active_unit_ids(self, unit_ids: Iterable[int]) -> set[int]:
        ids = {int(u) for u in unit_ids}
        if not ids:
            return set()
        rows = self.db.execute(
            select(TransferLine.unit_id)
            .join(Transfer, Transfer.id == TransferLine.transfer_id)
            .where(Transfer.status.in_(ACTIVE_TRANSFER_STATUSES))
            .where(TransferLine.unit_id.in_(ids))
        ).scalars()
        return {int(u) for u in rows}


class StaticTransferDirectory:
    def __init__(self, active_ids: Iterable[int] = ()):
        self.active_ids = {int(u) for u in active_ids}

    def active_unit_ids(self, unit_ids: Iterable[int]) -> set[int]:
        return {int(u) for u in unit_ids if int(u) in self.active_ids}
