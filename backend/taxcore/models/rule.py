"""
Tax Rule Models

Evidence and aggregated tax rules share one table, told apart by source_kind:
- Evidence rules are extracted from a single source document and are
  immutable once created (only validation_status may change).
- Aggregated rules are the cross-source reconciled rules used for calculation.
  Each owns AggregatedRuleSource links back to the evidence it was built from.

Brackets and formulas hang off either kind of rule.
"""

from sqlalchemy import (
    Column, String, DateTime, Date, Integer, Text, Boolean, Float, Numeric,
    ForeignKey, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import StrEnum, IntEnum
import uuid
from taxcore.database import Base, JSONType


# =============================================================================
# ENUMS
# =============================================================================

class RuleType(StrEnum):
    INCOME_TAX = "income_tax"
    VAT = "vat"
    PAYE = "paye"
    WHT = "wht"
    NBT = "nbt"
    SSCL = "sscl"
    GENERAL = "general"


class RuleCategory(StrEnum):
    BRACKET = "bracket"
    DEDUCTION = "deduction"
    EXEMPTION = "exemption"
    RATE = "rate"
    THRESHOLD = "threshold"
    ALLOWANCE = "allowance"


class SourceAuthority(StrEnum):
    ACT = "Act"
    GAZETTE = "Gazette"
    REGULATION = "Regulation"
    CIRCULAR = "Circular"
    RULING = "Ruling"
    GUIDELINE = "Guideline"
    NOTICE = "Notice"
    OTHER = "Other"


class AuthorityRank(IntEnum):
    # Lower rank wins
    ACT = 1
    GAZETTE = 2
    REGULATION = 3
    CIRCULAR = 4
    RULING = 5
    GUIDELINE = 6
    NOTICE = 7
    OTHER = 8


class SourceKind(StrEnum):
    EVIDENCE = "evidence"
    AGGREGATED = "aggregated"


class ValidationStatus(StrEnum):
    PENDING = "pending"
    VALIDATED = "validated"
    FAILED = "failed"
    DEPRECATED = "deprecated"


class FormulaStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    INVALID = "invalid"


def authority_rank(authority) -> int:
    """Rank of a source authority; unknown values rank as Other."""
    if authority is None:
        return AuthorityRank.OTHER
    try:
        return AuthorityRank[SourceAuthority(authority).name]
    except ValueError:
        return AuthorityRank.OTHER


# =============================================================================
# TAX RULE
# =============================================================================

class TaxRule(Base):
    __tablename__ = "tax_rules"

    # === PRIMARY KEY ===
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    # === IDENTIFICATION ===
    source_kind = Column(SQLEnum(SourceKind), nullable=False, default=SourceKind.EVIDENCE, index=True)
    rule_type = Column(SQLEnum(RuleType), nullable=False, index=True)
    rule_category = Column(SQLEnum(RuleCategory), nullable=True)  # None on aggregated rules
    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=True)

    # === STRUCTURED PAYLOAD ===
    rule_data = Column(JSONType, nullable=False)
    # {"category": "bracket", "brackets": [...], "inputs": ["gross_income"]}

    # === TEMPORAL VALIDITY ===
    effective_date = Column(Date, nullable=True, index=True)
    expiry_date = Column(Date, nullable=True)

    # === PROVENANCE (evidence rules) ===
    source_authority = Column(SQLEnum(SourceAuthority), nullable=True)
    document_source_id = Column(String, nullable=True, index=True)
    chunk_id = Column(String, nullable=True)
    chunk_sequence = Column(Integer, nullable=True)
    chunk_confidence = Column(Numeric(3, 2), nullable=True)
    extraction_context = Column(Text, nullable=True)

    # === LIFECYCLE ===
    validation_status = Column(SQLEnum(ValidationStatus), default=ValidationStatus.PENDING, nullable=False)
    validated_at = Column(DateTime, nullable=True)

    # === AGGREGATED RULE BOOKKEEPING ===
    version = Column(Integer, default=1, nullable=False)
    content_hash = Column(String(64), nullable=True)  # SHA256 of canonical content
    is_active = Column(Boolean, default=False, nullable=False)
    pending_aspects = Column(JSONType, default=list)  # aspects held back by open conflicts
    compile_error = Column(Text, nullable=True)  # last aggregation rejected the brackets or formulas

    # === TIMESTAMPS ===
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # === RELATIONSHIPS ===
    brackets = relationship(
        "TaxBracket", back_populates="rule",
        cascade="all, delete-orphan", order_by="TaxBracket.bracket_order"
    )
    formulas = relationship(
        "RuleFormula", back_populates="rule",
        cascade="all, delete-orphan", order_by="RuleFormula.calculation_order"
    )
    sources = relationship(
        "AggregatedRuleSource", back_populates="aggregated_rule",
        cascade="all, delete-orphan", foreign_keys="AggregatedRuleSource.aggregated_rule_id"
    )
    test_cases = relationship("RuleTestCase", back_populates="rule", cascade="all, delete-orphan")

    @property
    def is_evidence(self) -> bool:
        return self.source_kind == SourceKind.EVIDENCE

    def __repr__(self):
        return f"<TaxRule(id={self.id[:8]}, kind={self.source_kind}, type={self.rule_type}, status={self.validation_status})>"


# =============================================================================
# BRACKETS AND FORMULAS
# =============================================================================

class TaxBracket(Base):
    __tablename__ = "tax_brackets"
    __table_args__ = (
        UniqueConstraint("rule_id", "bracket_order", name="unique_rule_bracket_order"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id = Column(String, ForeignKey("tax_rules.id", ondelete="CASCADE"), nullable=False, index=True)

    min_income = Column(Numeric(15, 2), nullable=False, default=0)
    max_income = Column(Numeric(15, 2), nullable=True)  # None = open top bracket
    rate = Column(Numeric(5, 4), nullable=False)  # 0.24 for 24%
    fixed_amount = Column(Numeric(15, 2), nullable=False, default=0)
    bracket_order = Column(Integer, nullable=False)

    rule = relationship("TaxRule", back_populates="brackets")

    def __repr__(self):
        return f"<TaxBracket(order={self.bracket_order}, {self.min_income}-{self.max_income} @ {self.rate})>"


class RuleFormula(Base):
    __tablename__ = "rule_formulas"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_id = Column(String, ForeignKey("tax_rules.id", ondelete="CASCADE"), nullable=False, index=True)

    output_variable = Column(String(120), nullable=False)
    expression = Column(Text, nullable=False)  # "max(gross_income - personal_relief, 0)"
    calculation_order = Column(Integer, nullable=True)
    dependent_variables = Column(JSONType, default=list)  # canonical keys referenced
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(FormulaStatus), default=FormulaStatus.DRAFT, nullable=False)

    created_at = Column(DateTime, default=datetime.now)

    rule = relationship("TaxRule", back_populates="formulas")

    def __repr__(self):
        return f"<RuleFormula({self.output_variable} = {self.expression}, order={self.calculation_order})>"


# =============================================================================
# PROVENANCE
# =============================================================================

class AggregatedRuleSource(Base):
    # Links an aggregated rule to each evidence rule that fed one of its aspects
    __tablename__ = "aggregated_rule_sources"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    aggregated_rule_id = Column(String, ForeignKey("tax_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    evidence_rule_id = Column(String, ForeignKey("tax_rules.id", ondelete="CASCADE"), nullable=False, index=True)

    aspect = Column(String(40), nullable=False)
    subject = Column(String(200), nullable=False)
    weight = Column(Float, nullable=False)
    reason = Column(String(80), nullable=False)  # "selected", "agreeing", "superseded", "operator_decision"

    created_at = Column(DateTime, default=datetime.now)

    aggregated_rule = relationship("TaxRule", back_populates="sources", foreign_keys=[aggregated_rule_id])
    evidence_rule = relationship("TaxRule", foreign_keys=[evidence_rule_id])

    def __repr__(self):
        return f"<AggregatedRuleSource({self.aspect}:{self.subject} <- {self.evidence_rule_id[:8]}, w={self.weight})>"
