from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.db.models.models_v1 import CommercialDocument
from pharmastock.app.db.models.core_types import DocumentKind

router = APIRouter(prefix="/documents")


class DocumentUpsert(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    kind: DocumentKind
    number: str = Field(min_length=1, max_length=64)


@router.post("")
def upsert_document(payload: DocumentUpsert, db: Session = Depends(get_db)):
    """
    Miroir des cotizations / ventes vivantes, tenu par le flux commercial.
    Une réservation dont le document disparaît devient orpheline.
    """
    doc = db.get(CommercialDocument, payload.id)
    if doc is None:
        doc = CommercialDocument(id=payload.id, kind=payload.kind, number=payload.number)
        db.add(doc)
    else:
        doc.kind = payload.kind
        doc.number = payload.number

    db.commit()
    return {"id": payload.id, "kind": payload.kind, "number": payload.number}


@router.get("/{document_id}")
def get_document(document_id: str, db: Session = Depends(get_db)):
    doc = db.get(CommercialDocument, document_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    return {"id": doc.id, "kind": doc.kind, "number": doc.number, "created_at": doc.created_at}


@router.delete("/{document_id}")
def delete_document(document_id: str, db: Session = Depends(get_db)):
    doc = db.get(CommercialDocument, document_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")

    db.delete(doc)
    db.commit()
    return {"deleted": document_id}
