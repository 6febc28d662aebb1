"""
Rule Conflict CRUD Operations

Conflicts are written by the aggregation engine and decided by operators.
"""

from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Optional, Dict, Any
from datetime import date, datetime

from taxcore.models.conflict import RuleConflict, ConflictAspect, ConflictStatus
from taxcore.models.rule import RuleType


UNRESOLVED_STATUSES = (ConflictStatus.OPEN, ConflictStatus.UNDER_REVIEW)


def get_conflict(db: Session, conflict_id: str) -> Optional[RuleConflict]:
    return db.query(RuleConflict).filter(RuleConflict.id == conflict_id).first()


def get_conflicts(
    db: Session,
    tax_type: Optional[RuleType] = None,
    target_date: Optional[date] = None,
    status: Optional[ConflictStatus] = None,
    aspect: Optional[ConflictAspect] = None
) -> List[RuleConflict]:
    query = db.query(RuleConflict)

    if tax_type:
        query = query.filter(RuleConflict.tax_type == tax_type)
    if target_date:
        query = query.filter(RuleConflict.target_date == target_date)
    if status:
        query = query.filter(RuleConflict.status == status)
    if aspect:
        query = query.filter(RuleConflict.aspect == aspect)

    return query.order_by(RuleConflict.created_at.desc(), RuleConflict.subject).all()


def get_conflicts_for_key(db: Session, tax_type: RuleType, target_date: date) -> List[RuleConflict]:
    """Every conflict ever raised for a key, newest first"""
    return db.query(RuleConflict).filter(
        RuleConflict.tax_type == tax_type,
        RuleConflict.target_date == target_date
    ).order_by(RuleConflict.updated_at.desc()).all()


def count_unresolved(
    db: Session,
    tax_type: Optional[RuleType] = None,
    target_date: Optional[date] = None
) -> int:
    query = db.query(func.count(RuleConflict.id)).filter(RuleConflict.status.in_(UNRESOLVED_STATUSES))

    if tax_type:
        query = query.filter(RuleConflict.tax_type == tax_type)
    if target_date:
        query = query.filter(RuleConflict.target_date == target_date)

    return query.scalar()


def create_conflict(
    db: Session,
    tax_type: RuleType,
    target_date: date,
    aspect: ConflictAspect,
    subject: str,
    details: Dict[str, Any],
    run_id: Optional[str] = None
) -> RuleConflict:
    """Flushes only; aggregation commits the whole run at once"""
    conflict = RuleConflict(
        tax_type=tax_type,
        target_date=target_date,
        aspect=aspect,
        subject=subject,
        details=details,
        run_id=run_id,
        status=ConflictStatus.OPEN
    )

    db.add(conflict)
    db.flush()

    return conflict


def refresh_conflict_details(
    db: Session,
    conflict: RuleConflict,
    details: Dict[str, Any],
    run_id: Optional[str] = None
) -> RuleConflict:
    # Keep any operator decision already recorded
    merged = dict(details)
    if conflict.details and "decision" in conflict.details:
        merged["decision"] = conflict.details["decision"]
    conflict.details = merged
    conflict.run_id = run_id or conflict.run_id

    db.flush()

    return conflict


def decide_conflict(
    db: Session,
    conflict: RuleConflict,
    status: ConflictStatus,
    details: Dict[str, Any],
    decided_by: Optional[str] = None
) -> RuleConflict:
    merged = dict(conflict.details or {})
    merged.update(details)

    conflict.status = status
    conflict.details = merged
    if status in (ConflictStatus.RESOLVED, ConflictStatus.DISMISSED):
        conflict.decided_by = decided_by
        conflict.decided_at = datetime.now()

    db.commit()
    db.refresh(conflict)

    return conflict


def withdraw_conflict(db: Session, conflict: RuleConflict, note: str) -> RuleConflict:
    """Dismiss a conflict whose disagreement no longer exists. Flushes only."""
    details = dict(conflict.details or {})
    details["note"] = note

    conflict.status = ConflictStatus.DISMISSED
    conflict.details = details
    conflict.decided_by = "aggregation"
    conflict.decided_at = datetime.now()

    db.flush()

    return conflict
