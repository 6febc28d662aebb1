# Tracks aggregation runs and preflight checks for audit and monitoring.
# At most one queued/running aggregation run may exist per (tax_type, target_date).

from sqlalchemy import Column, String, DateTime, Date, Integer, Text, Index, text, Enum as SQLEnum
from datetime import datetime
from enum import StrEnum
import uuid
from taxcore.database import Base, JSONType
from taxcore.models.rule import RuleType


class AggregationRunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PreflightStatus(StrEnum):
    OK = "ok"
    BLOCKED = "blocked"


NON_TERMINAL_RUN_STATUSES = (AggregationRunStatus.QUEUED, AggregationRunStatus.RUNNING)

# SQLEnum stores member names
_ACTIVE_RUN_WHERE = text("status IN ('QUEUED', 'RUNNING')")


class AggregationRun(Base):
    __tablename__ = "aggregation_runs"
    __table_args__ = (
        Index(
            "uq_aggregation_runs_active_key", "tax_type", "target_date",
            unique=True,
            postgresql_where=_ACTIVE_RUN_WHERE,
            sqlite_where=_ACTIVE_RUN_WHERE,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    tax_type = Column(SQLEnum(RuleType), nullable=False, index=True)
    target_date = Column(Date, nullable=False)

    # Status tracking
    status = Column(SQLEnum(AggregationRunStatus), default=AggregationRunStatus.QUEUED, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Statistics
    inputs_count = Column(Integer, default=0)
    outputs_count = Column(Integer, default=0)
    conflicts_count = Column(Integer, default=0)

    # Outcome
    aggregated_rule_id = Column(String, nullable=True)
    error_type = Column(String(40), nullable=True)
    error_message = Column(Text, nullable=True)
    warnings = Column(JSONType, default=list)

    requested_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    def add_warning(self, warning_message: str, subject: str = None):
        # JSON columns need a new list for change detection
        self.warnings = list(self.warnings or []) + [{
            "timestamp": datetime.now().isoformat(),
            "message": warning_message,
            "subject": subject
        }]

    def __repr__(self):
        return f"<AggregationRun(id={self.id}, key={self.tax_type}@{self.target_date}, status={self.status})>"


class PreflightRun(Base):
    __tablename__ = "preflight_runs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    tax_type = Column(SQLEnum(RuleType), nullable=False, index=True)
    target_date = Column(Date, nullable=False)

    evidence_rules_count = Column(Integer, default=0)
    aggregated_rules_count = Column(Integer, default=0)
    blockers = Column(JSONType, default=list)
    status = Column(SQLEnum(PreflightStatus), nullable=False)

    created_at = Column(DateTime, default=datetime.now)

    def __repr__(self):
        return f"<PreflightRun({self.tax_type}@{self.target_date}, status={self.status}, blockers={len(self.blockers or [])})>"
