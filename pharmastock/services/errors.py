"""
Exceptions typées du moteur de stock.

Chaque exception porte un `code` stable (API / logs) et des données
structurées ; les appelants attrapent par type, jamais par message.

    PharmaStockError
    +-- NotFoundError                 NOT_FOUND                (non rejoué)
    +-- InvalidTransitionError        INVALID_TRANSITION       (erreur appelant)
    +-- ConcurrentModificationError   CONCURRENT_MODIFICATION  (rejoué localement, puis remonté)
    +-- InvalidRequestError           INVALID_REQUEST

Le stock insuffisant n'est PAS une erreur : c'est un résultat (statut
`partial` / `no_stock`, faltante) que l'appelant doit tester.
"""
from __future__ import annotations

from pharmastock.app.db.models.core_types import UnitState


class PharmaStockError(Exception):
    code: str = "PHARMASTOCK_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(PharmaStockError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransitionError(PharmaStockError):
    code = "INVALID_TRANSITION"

    def __init__(self, unit_id: int, from_state: UnitState, to_state: UnitState):
        self.unit_id = unit_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Unit {unit_id}: transition {from_state.value} -> {to_state.value} is not allowed"
        )


class ConcurrentModificationError(PharmaStockError):
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, message: str, unit_ids: list[int] | None = None, attempts: int = 0):
        self.unit_ids = unit_ids or []
        self.attempts = attempts
        super().__init__(message)


class InvalidRequestError(PharmaStockError):
    code = "INVALID_REQUEST"
