"""
Canonical Variable CRUD Operations

Database operations for CanonicalVariable and VariableSynonym.
Synonym status is only ever changed through decide_synonym().
"""

from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Optional
from datetime import datetime

from taxcore.models.variable import CanonicalVariable, VariableSynonym, SynonymStatus
from taxcore.schema.variable import CanonicalVariableUpsert


# =============================================================================
# CANONICAL VARIABLES
# =============================================================================

def get_variable(db: Session, variable_id: str) -> Optional[CanonicalVariable]:
    return db.query(CanonicalVariable).filter(CanonicalVariable.id == variable_id).first()


def get_variable_by_key(db: Session, key: str) -> Optional[CanonicalVariable]:
    return db.query(CanonicalVariable).filter(CanonicalVariable.key == key).first()


def get_variables(
    db: Session,
    include_inactive: bool = False,
    category: Optional[str] = None
) -> List[CanonicalVariable]:
    query = db.query(CanonicalVariable)

    if not include_inactive:
        query = query.filter(CanonicalVariable.is_active.is_(True))
    if category:
        query = query.filter(CanonicalVariable.category == category)

    return query.order_by(CanonicalVariable.key).all()


def upsert_variable(db: Session, data: CanonicalVariableUpsert) -> CanonicalVariable:
    """Create a variable, or update it in place and bump its version"""
    variable = get_variable_by_key(db, data.key)

    if variable is None:
        variable = CanonicalVariable(
            key=data.key,
            label=data.label,
            data_type=data.data_type,
            unit=data.unit,
            category=data.category,
            description=data.description,
            created_by=data.created_by
        )
        db.add(variable)
    else:
        variable.label = data.label
        variable.data_type = data.data_type
        variable.unit = data.unit
        variable.category = data.category
        variable.description = data.description
        variable.version += 1

    db.commit()
    db.refresh(variable)

    return variable


def deactivate_variable(
    db: Session,
    variable: CanonicalVariable,
    note: Optional[str] = None,
    replaced_by_key: Optional[str] = None
) -> CanonicalVariable:
    variable.is_active = False
    variable.deprecated_at = datetime.now()
    variable.deprecation_note = note
    variable.replaced_by_key = replaced_by_key

    db.commit()
    db.refresh(variable)

    return variable


# =============================================================================
# SYNONYMS
# =============================================================================

def get_synonym(db: Session, synonym_id: str) -> Optional[VariableSynonym]:
    return db.query(VariableSynonym).filter(VariableSynonym.id == synonym_id).first()


def get_synonym_by_normalized_term(db: Session, normalized_term: str) -> Optional[VariableSynonym]:
    return db.query(VariableSynonym).filter(VariableSynonym.normalized_term == normalized_term).first()


def get_synonyms(
    db: Session,
    status: Optional[SynonymStatus] = None,
    skip: int = 0,
    limit: int = 100
) -> List[VariableSynonym]:
    query = db.query(VariableSynonym)

    if status:
        query = query.filter(VariableSynonym.status == status)

    return query.order_by(VariableSynonym.created_at.desc()).offset(skip).limit(limit).all()


def count_synonyms(db: Session, status: Optional[SynonymStatus] = None) -> int:
    query = db.query(func.count(VariableSynonym.id))

    if status:
        query = query.filter(VariableSynonym.status == status)

    return query.scalar()


def create_synonym(
    db: Session,
    raw_term: str,
    normalized_term: str,
    suggested_key: Optional[str] = None,
    confidence: Optional[float] = None,
    source: Optional[str] = None
) -> VariableSynonym:
    synonym = VariableSynonym(
        raw_term=raw_term,
        normalized_term=normalized_term,
        suggested_key=suggested_key,
        confidence=confidence,
        source=source,
        status=SynonymStatus.PENDING
    )

    db.add(synonym)
    db.commit()
    db.refresh(synonym)

    return synonym


def merge_synonym_proposal(
    db: Session,
    synonym: VariableSynonym,
    suggested_key: Optional[str] = None,
    confidence: Optional[float] = None
) -> VariableSynonym:
    """Fold a repeated proposal into an existing record"""
    synonym.occurrences = (synonym.occurrences or 0) + 1

    if synonym.status == SynonymStatus.PENDING and suggested_key:
        if synonym.confidence is None or (confidence is not None and confidence > synonym.confidence):
            synonym.suggested_key = suggested_key
            synonym.confidence = confidence

    db.commit()
    db.refresh(synonym)

    return synonym


def decide_synonym(
    db: Session,
    synonym: VariableSynonym,
    status: SynonymStatus,
    decided_by: str,
    variable_id: Optional[str] = None,
    note: Optional[str] = None
) -> VariableSynonym:
    synonym.status = status
    synonym.variable_id = variable_id
    synonym.decided_by = decided_by
    synonym.decided_at = datetime.now()
    synonym.decision_note = note

    db.commit()
    db.refresh(synonym)

    return synonym
