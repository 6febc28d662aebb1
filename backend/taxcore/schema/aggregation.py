# Pydantic schemas for aggregation runs, preflight checks and conflicts.

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any, Literal
from datetime import date, datetime
from taxcore.models.rule import RuleType
from taxcore.models.conflict import ConflictAspect, ConflictStatus
from taxcore.models.aggregation_run import AggregationRunStatus, PreflightStatus


class AggregateRequest(BaseModel):
    tax_type: RuleType
    target_date: date
    requested_by: Optional[str] = None


class AggregateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId")
    status: AggregationRunStatus
    aggregated_rule_id: Optional[str] = Field(default=None, alias="aggregatedRuleId")
    conflicts_count: int = Field(default=0, alias="conflictsCount")
    error_type: Optional[str] = Field(default=None, alias="errorType")


class AggregationRunResponse(BaseModel):
    id: str
    tax_type: RuleType
    target_date: date
    status: AggregationRunStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    inputs_count: int
    outputs_count: int
    conflicts_count: int
    aggregated_rule_id: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    warnings: Optional[List[Dict[str, Any]]] = None
    created_at: datetime

    model_config = {
        "from_attributes": True
    }


class PreflightResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    preflight_id: str = Field(alias="preflightId")
    status: PreflightStatus
    evidence_count: int = Field(alias="evidenceCount")
    aggregated_count: int = Field(alias="aggregatedCount")
    blockers: List[str] = []


class ConflictResponse(BaseModel):
    id: str
    tax_type: RuleType
    target_date: date
    aspect: ConflictAspect
    subject: str
    status: ConflictStatus
    details: Dict[str, Any]
    run_id: Optional[str] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {
        "from_attributes": True
    }


class ConflictResolveRequest(BaseModel):
    # "resolved" needs details.decision = {"value": ...} or {"evidence_rule_id": ...}
    status: Literal["under_review", "resolved", "dismissed"]
    details: Dict[str, Any] = {}
    decided_by: Optional[str] = None


class AdminSummary(BaseModel):
    evidence_rules: int
    aggregated_rules: int
    active_rules: int
    validated_rules: int
    open_conflicts: int
    pending_synonyms: int
    unresolved_calculation_errors: int
