# Canonical Variable Registry tables.
# CanonicalVariable is the stable, typed identifier for a tax concept.
# VariableSynonym maps raw extracted terms onto those identifiers.

from sqlalchemy import Column, String, DateTime, Integer, Text, Boolean, Float, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import StrEnum
import uuid
from taxcore.database import Base


class VariableDataType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATE = "date"
    CURRENCY = "currency"
    PERCENT = "percent"


class SynonymStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CanonicalVariable(Base):
    # Never physically deleted; deactivation keeps the row and records why
    __tablename__ = "canonical_variables"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    key = Column(String(120), unique=True, nullable=False, index=True)  # "gross_income"
    label = Column(String(200), nullable=False)
    data_type = Column(SQLEnum(VariableDataType), nullable=False, default=VariableDataType.NUMBER)
    unit = Column(String(40), nullable=True)  # "LKR", "percent"
    category = Column(String(80), nullable=True)  # "income", "deduction", "result"
    description = Column(Text, nullable=True)
    version = Column(Integer, default=1, nullable=False)

    # Lifecycle
    is_active = Column(Boolean, default=True, nullable=False)
    deprecated_at = Column(DateTime, nullable=True)
    deprecation_note = Column(Text, nullable=True)
    replaced_by_key = Column(String(120), nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    synonyms = relationship("VariableSynonym", back_populates="variable")

    def __repr__(self):
        return f"<CanonicalVariable(key={self.key}, type={self.data_type}, active={self.is_active})>"


class VariableSynonym(Base):
    # One row per normalized term; repeated proposals merge into it
    __tablename__ = "variable_synonyms"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    raw_term = Column(String(300), nullable=False)
    normalized_term = Column(String(300), unique=True, nullable=False, index=True)

    # Mapping (nullable until a human approves it)
    variable_id = Column(String, ForeignKey("canonical_variables.id"), nullable=True, index=True)

    # Proposal from the extraction pipeline
    suggested_key = Column(String(120), nullable=True)
    confidence = Column(Float, nullable=True)
    occurrences = Column(Integer, default=1, nullable=False)
    source = Column(String, nullable=True)  # "extraction", "resolve", "admin"

    # Decision metadata
    status = Column(SQLEnum(SynonymStatus), default=SynonymStatus.PENDING, nullable=False, index=True)
    decided_by = Column(String, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    decision_note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    variable = relationship("CanonicalVariable", back_populates="synonyms")

    def __repr__(self):
        return f"<VariableSynonym(term={self.normalized_term}, status={self.status})>"
