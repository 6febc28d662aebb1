# Pydantic schemas for calculation requests, results and history.

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from decimal import Decimal
from taxcore.models.rule import RuleType
from taxcore.models.calculation import ErrorType


class CalculateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    calculation_type: RuleType = Field(alias="calculationType")
    input_data: Dict[str, Any] = Field(alias="inputData")
    target_date: Optional[date] = Field(default=None, alias="targetDate")
    # Client-supplied id makes retries of the same request idempotent
    execution_id: Optional[str] = Field(default=None, alias="executionId")


class BreakdownItem(BaseModel):
    step: int
    kind: str  # "bracket" | "formula" | "floor"
    label: str
    variable: Optional[str] = None
    expression: Optional[str] = None
    bracket_order: Optional[int] = None
    taxable_slice: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    amount: Decimal


class CalculateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    execution_id: str = Field(alias="executionId")
    result: Dict[str, Any]
    breakdown: List[BreakdownItem]
    schema_version: int = Field(alias="schemaVersion")
    rule_id: str = Field(alias="ruleId")
    validated: bool


class CalculationErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error_type: ErrorType = Field(alias="errorType")
    message: str
    failed_step: Optional[str] = Field(default=None, alias="failedStep")


class CalculationAuditResponse(BaseModel):
    id: str
    execution_id: str
    calculation_type: str
    rule_id: str
    schema_version: int
    validated_rule: bool
    input_data: Dict[str, Any]
    result_data: Dict[str, Any]
    final_amount: Decimal
    started_at: datetime
    completed_at: datetime
    duration_ms: Optional[int] = None

    model_config = {
        "from_attributes": True
    }


class CalculationErrorRecord(BaseModel):
    id: str
    execution_id: str
    calculation_type: Optional[str] = None
    rule_id: Optional[str] = None
    error_type: ErrorType
    failed_step: Optional[str] = None
    message: Optional[str] = None
    retry_count: int
    resolved: bool
    created_at: datetime

    model_config = {
        "from_attributes": True
    }
