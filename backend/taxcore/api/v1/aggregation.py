from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date
from taxcore.database import get_db
from taxcore.api.deps import get_aggregation_engine
from taxcore.core.config import settings
from taxcore.crud import crud_aggregation_run
from taxcore.exceptions.aggregation_exceptions import AggregationRunNotFoundException
from taxcore.models.rule import RuleType
from taxcore.schema.aggregation import (
    AggregateRequest, AggregateResponse, AggregationRunResponse, PreflightResponse, AdminSummary
)
from taxcore.services.aggregation import AggregationEngine, run_preflight
from taxcore.services.rule_service import rule_service

router = APIRouter(tags=["aggregation"])


@router.post("/aggregate", response_model=AggregateResponse)
def aggregate(
    request: AggregateRequest,
    engine: AggregationEngine = Depends(get_aggregation_engine)
):
    run = engine.run(request.tax_type, request.target_date, requested_by=request.requested_by)

    return AggregateResponse(
        run_id=run.id,
        status=run.status,
        aggregated_rule_id=run.aggregated_rule_id,
        conflicts_count=run.conflicts_count,
        error_type=run.error_type
    )


@router.get("/preflight", response_model=PreflightResponse)
def preflight(
    tax_type: RuleType,
    target_date: date = Query(alias="date"),
    db: Session = Depends(get_db)
):
    result = run_preflight(db, tax_type, target_date)

    return PreflightResponse(
        preflight_id=result.id,
        status=result.status,
        evidence_count=result.evidence_rules_count,
        aggregated_count=result.aggregated_rules_count,
        blockers=result.blockers
    )


@router.get("/aggregation-runs", response_model=List[AggregationRunResponse])
def list_runs(
    tax_type: Optional[RuleType] = None,
    target_date: Optional[date] = Query(default=None, alias="date"),
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db)
):
    return crud_aggregation_run.get_runs(db, tax_type=tax_type, target_date=target_date, skip=skip, limit=limit)


@router.get("/aggregation-runs/{run_id}", response_model=AggregationRunResponse)
def get_run(run_id: str, db: Session = Depends(get_db)):
    run = crud_aggregation_run.get_run(db, run_id)
    if not run:
        raise AggregationRunNotFoundException()
    return run


@router.post("/aggregation-runs/fail-stale", response_model=List[AggregationRunResponse])
def fail_stale_runs(
    older_than_minutes: Optional[int] = None,
    db: Session = Depends(get_db)
):
    return crud_aggregation_run.fail_stale_runs(db, older_than_minutes or settings.STALE_RUN_MINUTES)


@router.get("/admin/summary", response_model=AdminSummary)
def admin_summary(db: Session = Depends(get_db)):
    return rule_service.admin_summary(db)
