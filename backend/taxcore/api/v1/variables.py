from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from taxcore.database import get_db
from taxcore.crud import crud_variable
from taxcore.models.variable import SynonymStatus
from taxcore.schema.variable import (
    CanonicalVariableUpsert, CanonicalVariableDeactivate, CanonicalVariableResponse,
    SynonymProposalBatch, SynonymProposalResult, SynonymResponse,
    SynonymApprove, SynonymReject, ResolveResponse
)
from taxcore.services.registry_service import registry_service

router = APIRouter(prefix="/variables", tags=["variables"])


@router.get("", response_model=List[CanonicalVariableResponse])
def list_variables(
    include_inactive: bool = False,
    category: Optional[str] = None,
    db: Session = Depends(get_db)
):
    return crud_variable.get_variables(db, include_inactive=include_inactive, category=category)


@router.put("", response_model=CanonicalVariableResponse)
def upsert_variable(data: CanonicalVariableUpsert, db: Session = Depends(get_db)):
    return registry_service.upsert_variable(db, data)


@router.post("/{key}/deactivate", response_model=CanonicalVariableResponse)
def deactivate_variable(key: str, data: CanonicalVariableDeactivate, db: Session = Depends(get_db)):
    return registry_service.deactivate_variable(db, key, note=data.note, replaced_by_key=data.replaced_by_key)


@router.get("/resolve", response_model=ResolveResponse)
def resolve_term(term: str, db: Session = Depends(get_db)):
    return registry_service.resolve_response(db, term)


@router.post("/proposals", response_model=SynonymProposalResult)
def propose_synonyms(batch: SynonymProposalBatch, db: Session = Depends(get_db)):
    return registry_service.propose_synonyms(db, batch.proposals)


@router.get("/proposals", response_model=List[SynonymResponse])
def list_proposals(
    status: Optional[SynonymStatus] = SynonymStatus.PENDING,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    return crud_variable.get_synonyms(db, status=status, skip=skip, limit=limit)


@router.post("/proposals/{synonym_id}/approve", response_model=SynonymResponse)
def approve_synonym(synonym_id: str, data: SynonymApprove, db: Session = Depends(get_db)):
    return registry_service.approve_synonym(db, synonym_id, data.variable_id, data.decided_by, note=data.note)


@router.post("/proposals/{synonym_id}/reject", response_model=SynonymResponse)
def reject_synonym(synonym_id: str, data: SynonymReject, db: Session = Depends(get_db)):
    return registry_service.reject_synonym(db, synonym_id, data.decided_by, note=data.note)
