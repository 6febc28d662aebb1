from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional
from taxcore.database import get_db
from taxcore.models.rule import RuleType, SourceKind, ValidationStatus
from taxcore.schema.rule import (
    TaxRuleResponse, AggregatedRuleDetail, ValidationStatusUpdate, ValidationReport,
    RuleTestCaseCreate, RuleTestCaseResponse
)
from taxcore.services.rule_service import rule_service
from taxcore.services.validation_service import validation_service

router = APIRouter(prefix="/rules", tags=["rules"])


@router.get("", response_model=List[TaxRuleResponse])
def list_rules(
    source_kind: Optional[SourceKind] = None,
    rule_type: Optional[RuleType] = None,
    validation_status: Optional[ValidationStatus] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    return rule_service.list_rules(
        db, source_kind=source_kind, rule_type=rule_type,
        validation_status=validation_status, skip=skip, limit=limit
    )


@router.get("/{rule_id}", response_model=AggregatedRuleDetail)
def get_rule(rule_id: str, db: Session = Depends(get_db)):
    return rule_service.get_rule_detail(db, rule_id)


@router.post("/{rule_id}/validation-status", response_model=ValidationReport)
def update_validation_status(rule_id: str, update: ValidationStatusUpdate, db: Session = Depends(get_db)):
    return validation_service.transition(db, rule_id, update.status)


@router.post("/{rule_id}/fixtures/run", response_model=ValidationReport)
def run_fixtures(rule_id: str, db: Session = Depends(get_db)):
    return validation_service.run_fixtures(db, rule_id)


@router.post("/{rule_id}/activate", response_model=TaxRuleResponse)
def activate_rule(rule_id: str, db: Session = Depends(get_db)):
    return validation_service.activate_rule(db, rule_id)


@router.get("/{rule_id}/test-cases", response_model=List[RuleTestCaseResponse])
def list_test_cases(rule_id: str, db: Session = Depends(get_db)):
    return validation_service.list_test_cases(db, rule_id)


@router.post("/{rule_id}/test-cases", response_model=RuleTestCaseResponse, status_code=status.HTTP_201_CREATED)
def add_test_case(rule_id: str, data: RuleTestCaseCreate, db: Session = Depends(get_db)):
    return validation_service.add_test_case(db, rule_id, data)


@router.delete("/{rule_id}/test-cases/{test_case_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_test_case(rule_id: str, test_case_id: str, db: Session = Depends(get_db)):
    validation_service.remove_test_case(db, rule_id, test_case_id)
