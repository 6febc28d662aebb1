# Disagreements between evidence rules that aggregation refused to auto-resolve.
# Created only by the aggregation engine; decided by an operator.

from sqlalchemy import Column, String, DateTime, Date, Text, Enum as SQLEnum
from datetime import datetime
from enum import StrEnum
import uuid
from taxcore.database import Base, JSONType
from taxcore.models.rule import RuleType


class ConflictAspect(StrEnum):
    BRACKETS = "brackets"
    THRESHOLDS = "thresholds"
    DEFINITIONS = "definitions"
    FORMULAS = "formulas"
    UNITS = "units"
    INPUTS = "inputs"
    OTHER = "other"


class ConflictStatus(StrEnum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class RuleConflict(Base):
    __tablename__ = "rule_conflicts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    tax_type = Column(SQLEnum(RuleType), nullable=False, index=True)
    target_date = Column(Date, nullable=False, index=True)
    aspect = Column(SQLEnum(ConflictAspect), nullable=False)
    subject = Column(String(200), nullable=False)  # canonical key within the aspect

    status = Column(SQLEnum(ConflictStatus), default=ConflictStatus.OPEN, nullable=False, index=True)
    details = Column(JSONType, nullable=False)
    # {"candidates": [{"evidence_rule_id": "...", "value": ..., "authority": "Act"}],
    #  "decision": {"value": ...}}

    run_id = Column(String, nullable=True)  # aggregation run that raised it
    decided_by = Column(String, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    @property
    def is_unresolved(self) -> bool:
        return self.status in (ConflictStatus.OPEN, ConflictStatus.UNDER_REVIEW)

    def __repr__(self):
        return f"<RuleConflict({self.tax_type}@{self.target_date}, {self.aspect}:{self.subject}, status={self.status})>"
