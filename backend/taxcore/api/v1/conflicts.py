from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date
from taxcore.database import get_db
from taxcore.models.conflict import ConflictStatus, ConflictAspect
from taxcore.models.rule import RuleType
from taxcore.schema.aggregation import ConflictResponse, ConflictResolveRequest
from taxcore.services.conflict_service import conflict_service

router = APIRouter(prefix="/conflicts", tags=["conflicts"])


@router.get("", response_model=List[ConflictResponse])
def list_conflicts(
    tax_type: Optional[RuleType] = None,
    target_date: Optional[date] = Query(default=None, alias="date"),
    status: Optional[ConflictStatus] = None,
    aspect: Optional[ConflictAspect] = None,
    db: Session = Depends(get_db)
):
    return conflict_service.list_conflicts(db, tax_type=tax_type, target_date=target_date, status=status, aspect=aspect)


@router.post("/{conflict_id}/resolve", response_model=ConflictResponse)
def resolve_conflict(
    conflict_id: str,
    request: ConflictResolveRequest,
    db: Session = Depends(get_db)
):
    return conflict_service.resolve(db, conflict_id, request)
