"""
Tax Rule CRUD Operations

Database operations for evidence and aggregated TaxRule rows and their
brackets, formulas and provenance links.
"""

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import func, or_
from typing import List, Optional
from datetime import date, datetime

from taxcore.models.rule import (
    TaxRule, TaxBracket, RuleFormula, AggregatedRuleSource,
    RuleType, SourceKind, ValidationStatus, FormulaStatus
)
from taxcore.schema.rule import EvidenceRuleCreate


# =============================================================================
# EVIDENCE RULES
# =============================================================================

def _build_evidence(rule_data: EvidenceRuleCreate) -> TaxRule:
    rule = TaxRule(
        source_kind=SourceKind.EVIDENCE,
        rule_type=rule_data.rule_type,
        rule_category=rule_data.rule_category,
        title=rule_data.title,
        description=rule_data.description,
        rule_data=rule_data.rule_data,
        effective_date=rule_data.effective_date,
        expiry_date=rule_data.expiry_date,
        source_authority=rule_data.source_authority,
        document_source_id=rule_data.document_source_id,
        chunk_id=rule_data.chunk_id,
        chunk_sequence=rule_data.chunk_sequence,
        chunk_confidence=rule_data.chunk_confidence,
        extraction_context=rule_data.extraction_context,
        validation_status=ValidationStatus.PENDING
    )

    # Formulas quoted by the source document travel with the evidence
    for formula in rule_data.rule_data.get("formulas", []):
        rule.formulas.append(RuleFormula(
            output_variable=formula["output_variable"],
            expression=formula["expression"],
            calculation_order=formula.get("calculation_order"),
            description=formula.get("description"),
            dependent_variables=[],
            status=FormulaStatus.DRAFT
        ))

    return rule


def create_evidence_rule(db: Session, rule_data: EvidenceRuleCreate) -> TaxRule:
    """Create a new evidence rule"""
    rule = _build_evidence(rule_data)

    db.add(rule)
    db.commit()
    db.refresh(rule)

    return rule


def create_evidence_rules_batch(db: Session, rules_data: List[EvidenceRuleCreate]) -> List[TaxRule]:
    """Create several evidence rules in one transaction"""
    rules = [_build_evidence(r) for r in rules_data]

    db.add_all(rules)
    db.commit()
    for rule in rules:
        db.refresh(rule)

    return rules


def _in_force_evidence(query, tax_type: RuleType, target_date: date):
    # Evidence rules of a tax type in force on target_date
    return query.filter(
        TaxRule.source_kind == SourceKind.EVIDENCE,
        TaxRule.rule_type == tax_type,
        TaxRule.validation_status != ValidationStatus.DEPRECATED,
        or_(TaxRule.effective_date.is_(None), TaxRule.effective_date <= target_date),
        or_(TaxRule.expiry_date.is_(None), TaxRule.expiry_date >= target_date)
    )


def get_evidence_for_key(db: Session, tax_type: RuleType, target_date: date) -> List[TaxRule]:
    return _in_force_evidence(db.query(TaxRule), tax_type, target_date).options(
        selectinload(TaxRule.formulas)
    ).order_by(TaxRule.created_at, TaxRule.id).all()


def count_evidence_for_key(db: Session, tax_type: RuleType, target_date: date) -> int:
    return _in_force_evidence(db.query(func.count(TaxRule.id)), tax_type, target_date).scalar()


# =============================================================================
# SHARED LOOKUPS
# =============================================================================

def get_rule(db: Session, rule_id: str) -> Optional[TaxRule]:
    return db.query(TaxRule).options(
        selectinload(TaxRule.brackets),
        selectinload(TaxRule.formulas)
    ).filter(TaxRule.id == rule_id).first()


def get_rules(
    db: Session,
    source_kind: Optional[SourceKind] = None,
    rule_type: Optional[RuleType] = None,
    validation_status: Optional[ValidationStatus] = None,
    skip: int = 0,
    limit: int = 100
) -> List[TaxRule]:
    query = db.query(TaxRule)

    if source_kind:
        query = query.filter(TaxRule.source_kind == source_kind)
    if rule_type:
        query = query.filter(TaxRule.rule_type == rule_type)
    if validation_status:
        query = query.filter(TaxRule.validation_status == validation_status)

    return query.order_by(TaxRule.effective_date.desc(), TaxRule.created_at.desc()).offset(skip).limit(limit).all()


def count_rules(
    db: Session,
    source_kind: Optional[SourceKind] = None,
    validation_status: Optional[ValidationStatus] = None,
    active_only: bool = False
) -> int:
    query = db.query(func.count(TaxRule.id))

    if source_kind:
        query = query.filter(TaxRule.source_kind == source_kind)
    if validation_status:
        query = query.filter(TaxRule.validation_status == validation_status)
    if active_only:
        query = query.filter(TaxRule.is_active.is_(True))

    return query.scalar()


def update_validation_status(db: Session, rule: TaxRule, status: ValidationStatus) -> TaxRule:
    """The only mutation allowed on evidence rules"""
    rule.validation_status = status
    rule.validated_at = datetime.now() if status == ValidationStatus.VALIDATED else None
    if status == ValidationStatus.DEPRECATED:
        rule.is_active = False

    db.commit()
    db.refresh(rule)

    return rule


# =============================================================================
# AGGREGATED RULES
# =============================================================================

def get_aggregated_rule_for_key(db: Session, tax_type: RuleType, target_date: date) -> Optional[TaxRule]:
    return db.query(TaxRule).filter(
        TaxRule.source_kind == SourceKind.AGGREGATED,
        TaxRule.rule_type == tax_type,
        TaxRule.effective_date == target_date
    ).first()


def count_aggregated_for_type(db: Session, tax_type: RuleType) -> int:
    return db.query(func.count(TaxRule.id)).filter(
        TaxRule.source_kind == SourceKind.AGGREGATED,
        TaxRule.rule_type == tax_type
    ).scalar()


def get_applicable_aggregated_rule(db: Session, tax_type: RuleType, on_date: date) -> Optional[TaxRule]:
    """Rule a calculation should run against: active first, then most recent effective date"""
    return db.query(TaxRule).options(
        selectinload(TaxRule.brackets),
        selectinload(TaxRule.formulas)
    ).filter(
        TaxRule.source_kind == SourceKind.AGGREGATED,
        TaxRule.rule_type == tax_type,
        TaxRule.validation_status != ValidationStatus.DEPRECATED,
        TaxRule.compile_error.is_(None),
        TaxRule.effective_date <= on_date
    ).order_by(
        TaxRule.is_active.desc(),
        TaxRule.effective_date.desc(),
        TaxRule.updated_at.desc()
    ).first()


def get_active_rules_for_type(db: Session, tax_type: RuleType) -> List[TaxRule]:
    return db.query(TaxRule).filter(
        TaxRule.source_kind == SourceKind.AGGREGATED,
        TaxRule.rule_type == tax_type,
        TaxRule.is_active.is_(True)
    ).all()


def create_aggregated_rule(
    db: Session,
    tax_type: RuleType,
    target_date: date,
    title: str
) -> TaxRule:
    """Create an empty aggregated rule shell; content is filled by replace_aggregated_content"""
    rule = TaxRule(
        source_kind=SourceKind.AGGREGATED,
        rule_type=tax_type,
        title=title,
        rule_data={},
        effective_date=target_date,
        validation_status=ValidationStatus.PENDING,
        version=0,
        pending_aspects=[]
    )

    db.add(rule)
    db.flush()

    return rule


def replace_aggregated_content(
    db: Session,
    rule: TaxRule,
    rule_data: dict,
    brackets: List[TaxBracket],
    formulas: List[RuleFormula],
    sources: List[AggregatedRuleSource],
    pending_aspects: List[str],
    content_hash: str,
    compile_error: Optional[str] = None
) -> TaxRule:
    """
    Swap the rule's children for a freshly aggregated set.
    A compile error leaves the rule unusable and inactive until a later run compiles cleanly.
    Flushes only; the caller owns the transaction.
    """
    rule.brackets.clear()
    rule.formulas.clear()
    rule.sources.clear()
    db.flush()

    rule.brackets.extend(brackets)
    rule.formulas.extend(formulas)
    rule.sources.extend(sources)
    rule.rule_data = rule_data
    rule.pending_aspects = pending_aspects
    rule.compile_error = compile_error
    if compile_error is not None:
        rule.is_active = False

    if rule.content_hash != content_hash:
        rule.content_hash = content_hash
        rule.version = (rule.version or 0) + 1
        # New content must pass the fixture gate again
        rule.validation_status = ValidationStatus.PENDING
        rule.validated_at = None

    db.flush()

    return rule


def set_active_flags(db: Session, rule: TaxRule, others: List[TaxRule]) -> TaxRule:
    """Deactivate `others` and activate `rule` in one transaction"""
    for other in others:
        if other.id != rule.id:
            other.is_active = False
    db.flush()
    rule.is_active = True

    db.commit()
    db.refresh(rule)

    return rule


def get_sources_for_rule(db: Session, rule_id: str) -> List[AggregatedRuleSource]:
    return db.query(AggregatedRuleSource).filter(
        AggregatedRuleSource.aggregated_rule_id == rule_id
    ).order_by(
        AggregatedRuleSource.aspect,
        AggregatedRuleSource.subject,
        AggregatedRuleSource.weight.desc()
    ).all()
