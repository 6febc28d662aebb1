# Records every calculation execution: one audit row per success,
# one error row per failure. Together they are the calculation history.

from sqlalchemy import Column, String, DateTime, Integer, Text, Boolean, Numeric, Enum as SQLEnum
from datetime import datetime
from enum import StrEnum
import uuid
from taxcore.database import Base, JSONType


class ErrorType(StrEnum):
    FORMULA_PARSE_ERROR = "formula_parse_error"
    VARIABLE_MISSING = "variable_missing"
    CALCULATION_OVERFLOW = "calculation_overflow"
    RULE_VALIDATION_FAILED = "rule_validation_failed"
    DATABASE_ERROR = "database_error"
    UNKNOWN_ERROR = "unknown_error"


RETRYABLE_ERROR_TYPES = (ErrorType.DATABASE_ERROR, ErrorType.UNKNOWN_ERROR)


class CalculationAudit(Base):
    __tablename__ = "calculation_audits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = Column(String, unique=True, nullable=False, index=True)

    calculation_type = Column(String(40), nullable=False, index=True)
    rule_id = Column(String, nullable=False)
    schema_version = Column(Integer, nullable=False)
    validated_rule = Column(Boolean, default=False)  # False = preview on an unvalidated rule

    input_data = Column(JSONType, nullable=False)
    result_data = Column(JSONType, nullable=False)
    # {"final_amount": "45000.00", "variables": {...}, "breakdown": [...]}
    final_amount = Column(Numeric(15, 2), nullable=False)

    # Timing
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=False)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.now, index=True)

    def __repr__(self):
        return f"<CalculationAudit(execution={self.execution_id}, type={self.calculation_type}, amount={self.final_amount})>"


class CalculationError(Base):
    __tablename__ = "calculation_errors"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = Column(String, nullable=False, index=True)

    calculation_type = Column(String(40), nullable=True)
    rule_id = Column(String, nullable=True)
    input_data = Column(JSONType, nullable=True)

    error_type = Column(SQLEnum(ErrorType), nullable=False, index=True)
    failed_step = Column(String(200), nullable=True)
    message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    resolved = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.now, index=True)

    def __repr__(self):
        return f"<CalculationError(execution={self.execution_id}, type={self.error_type}, step={self.failed_step})>"
