from __future__ import annotations

from typing import Generator

from pharmastock.app.db.session import SessionLocal


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        # non commité = annulé
        db.close()
