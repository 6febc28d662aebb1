"""
Calculation Audit CRUD Operations

Database operations for CalculationAudit and CalculationError.
Critical for compliance tracking and audit trails.
"""

from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Optional, Dict, Any
from datetime import datetime
from decimal import Decimal

from taxcore.models.calculation import CalculationAudit, CalculationError, ErrorType


def get_audit_by_execution(db: Session, execution_id: str) -> Optional[CalculationAudit]:
    return db.query(CalculationAudit).filter(CalculationAudit.execution_id == execution_id).first()


def create_audit(
    db: Session,
    execution_id: str,
    calculation_type: str,
    rule_id: str,
    schema_version: int,
    validated_rule: bool,
    input_data: Dict[str, Any],
    result_data: Dict[str, Any],
    final_amount: Decimal,
    started_at: datetime,
    completed_at: datetime,
    duration_ms: int
) -> CalculationAudit:
    """Write the audit row once per execution_id; a replay returns the existing row"""
    existing = get_audit_by_execution(db, execution_id)
    if existing:
        return existing

    audit = CalculationAudit(
        execution_id=execution_id,
        calculation_type=calculation_type,
        rule_id=rule_id,
        schema_version=schema_version,
        validated_rule=validated_rule,
        input_data=input_data,
        result_data=result_data,
        final_amount=final_amount,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=duration_ms
    )

    db.add(audit)
    db.commit()
    db.refresh(audit)

    return audit


def get_audits(
    db: Session,
    calculation_type: Optional[str] = None,
    skip: int = 0,
    limit: int = 100
) -> List[CalculationAudit]:
    query = db.query(CalculationAudit)

    if calculation_type:
        query = query.filter(CalculationAudit.calculation_type == calculation_type)

    return query.order_by(CalculationAudit.created_at.desc()).offset(skip).limit(limit).all()


def count_audits(db: Session, execution_id: Optional[str] = None) -> int:
    query = db.query(func.count(CalculationAudit.id))

    if execution_id:
        query = query.filter(CalculationAudit.execution_id == execution_id)

    return query.scalar()


def create_error(
    db: Session,
    execution_id: str,
    error_type: ErrorType,
    failed_step: Optional[str],
    message: Optional[str],
    retry_count: int = 0,
    calculation_type: Optional[str] = None,
    rule_id: Optional[str] = None,
    input_data: Optional[Dict[str, Any]] = None
) -> CalculationError:
    error = CalculationError(
        execution_id=execution_id,
        error_type=error_type,
        failed_step=failed_step,
        message=message,
        retry_count=retry_count,
        calculation_type=calculation_type,
        rule_id=rule_id,
        input_data=input_data,
        resolved=False
    )

    db.add(error)
    db.commit()
    db.refresh(error)

    return error


def get_error(db: Session, error_id: str) -> Optional[CalculationError]:
    return db.query(CalculationError).filter(CalculationError.id == error_id).first()


def get_errors(
    db: Session,
    execution_id: Optional[str] = None,
    error_type: Optional[ErrorType] = None,
    unresolved_only: bool = False,
    skip: int = 0,
    limit: int = 100
) -> List[CalculationError]:
    query = db.query(CalculationError)

    if execution_id:
        query = query.filter(CalculationError.execution_id == execution_id)
    if error_type:
        query = query.filter(CalculationError.error_type == error_type)
    if unresolved_only:
        query = query.filter(CalculationError.resolved.is_(False))

    return query.order_by(CalculationError.created_at.desc()).offset(skip).limit(limit).all()


def count_unresolved_errors(db: Session) -> int:
    return db.query(func.count(CalculationError.id)).filter(CalculationError.resolved.is_(False)).scalar()


def mark_error_resolved(db: Session, error: CalculationError) -> CalculationError:
    error.resolved = True

    db.commit()
    db.refresh(error)

    return error
