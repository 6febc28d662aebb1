"""
Aggregation Run CRUD Operations

Database operations for AggregationRun and PreflightRun.
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import List, Optional, Dict, Any
from datetime import date, datetime, timedelta

from taxcore.models.aggregation_run import (
    AggregationRun, AggregationRunStatus, PreflightRun, PreflightStatus, NON_TERMINAL_RUN_STATUSES
)
from taxcore.models.rule import RuleType
from taxcore.exceptions.aggregation_exceptions import AggregationInProgressException


def get_run(db: Session, run_id: str) -> Optional[AggregationRun]:
    return db.query(AggregationRun).filter(AggregationRun.id == run_id).first()


def get_runs(
    db: Session,
    tax_type: Optional[RuleType] = None,
    target_date: Optional[date] = None,
    skip: int = 0,
    limit: int = 50
) -> List[AggregationRun]:
    query = db.query(AggregationRun)

    if tax_type:
        query = query.filter(AggregationRun.tax_type == tax_type)
    if target_date:
        query = query.filter(AggregationRun.target_date == target_date)

    return query.order_by(AggregationRun.created_at.desc()).offset(skip).limit(limit).all()


def get_active_run(db: Session, tax_type: RuleType, target_date: date) -> Optional[AggregationRun]:
    return db.query(AggregationRun).filter(
        AggregationRun.tax_type == tax_type,
        AggregationRun.target_date == target_date,
        AggregationRun.status.in_(NON_TERMINAL_RUN_STATUSES)
    ).first()


def create_run(
    db: Session,
    tax_type: RuleType,
    target_date: date,
    requested_by: Optional[str] = None
) -> AggregationRun:
    """
    Queue a run for a key. The partial unique index turns a concurrent
    second insert for the same key into an IntegrityError.
    """
    if get_active_run(db, tax_type, target_date):
        raise AggregationInProgressException()

    run = AggregationRun(
        tax_type=tax_type,
        target_date=target_date,
        requested_by=requested_by,
        status=AggregationRunStatus.QUEUED,
        warnings=[]
    )

    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AggregationInProgressException()
    db.refresh(run)

    return run


def mark_run_running(db: Session, run: AggregationRun) -> AggregationRun:
    run.status = AggregationRunStatus.RUNNING
    run.started_at = datetime.now()

    db.commit()
    db.refresh(run)

    return run


def finish_run(
    db: Session,
    run: AggregationRun,
    status: AggregationRunStatus,
    inputs_count: int = 0,
    outputs_count: int = 0,
    conflicts_count: int = 0,
    aggregated_rule_id: Optional[str] = None,
    error_type: Optional[str] = None,
    error_message: Optional[str] = None
) -> AggregationRun:
    """Record the outcome and commit together with whatever the run flushed"""
    run.status = status
    run.completed_at = datetime.now()
    run.inputs_count = inputs_count
    run.outputs_count = outputs_count
    run.conflicts_count = conflicts_count
    run.aggregated_rule_id = aggregated_rule_id
    run.error_type = error_type
    run.error_message = error_message

    db.commit()
    db.refresh(run)

    return run


def fail_stale_runs(db: Session, older_than_minutes: int) -> List[AggregationRun]:
    """Supervisor sweep: non-terminal runs untouched for too long become failed"""
    cutoff = datetime.now() - timedelta(minutes=older_than_minutes)

    stale = db.query(AggregationRun).filter(
        AggregationRun.status.in_(NON_TERMINAL_RUN_STATUSES),
        AggregationRun.updated_at < cutoff
    ).all()

    for run in stale:
        run.status = AggregationRunStatus.FAILED
        run.completed_at = datetime.now()
        run.error_type = "unknown_error"
        run.error_message = f"Abandoned: no progress for {older_than_minutes} minutes"

    db.commit()

    return stale


# =============================================================================
# PREFLIGHT
# =============================================================================

def create_preflight_run(
    db: Session,
    tax_type: RuleType,
    target_date: date,
    evidence_rules_count: int,
    aggregated_rules_count: int,
    blockers: List[str]
) -> PreflightRun:
    preflight = PreflightRun(
        tax_type=tax_type,
        target_date=target_date,
        evidence_rules_count=evidence_rules_count,
        aggregated_rules_count=aggregated_rules_count,
        blockers=blockers,
        status=PreflightStatus.BLOCKED if blockers else PreflightStatus.OK
    )

    db.add(preflight)
    db.commit()
    db.refresh(preflight)

    return preflight


def get_latest_preflight(db: Session, tax_type: RuleType, target_date: date) -> Optional[PreflightRun]:
    return db.query(PreflightRun).filter(
        PreflightRun.tax_type == tax_type,
        PreflightRun.target_date == target_date
    ).order_by(PreflightRun.created_at.desc()).first()
