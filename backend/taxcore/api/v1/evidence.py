from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Union
from taxcore.database import get_db
from taxcore.schema.rule import EvidenceRuleCreate, EvidenceBatch, TaxRuleResponse
from taxcore.services.rule_service import rule_service

router = APIRouter(prefix="/evidence", tags=["evidence"])


@router.post("", response_model=List[TaxRuleResponse], status_code=status.HTTP_201_CREATED)
def ingest_evidence(
    payload: Union[EvidenceBatch, EvidenceRuleCreate],
    db: Session = Depends(get_db)
):
    rules = payload.rules if isinstance(payload, EvidenceBatch) else [payload]
    return rule_service.ingest_evidence(db, rules)
