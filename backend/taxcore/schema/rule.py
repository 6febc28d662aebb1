"""
Tax Rule Schemas

Pydantic schemas for evidence ingestion, aggregated rule responses and
the rule_data payload contract shared with the extraction pipeline.

rule_data is a discriminated union on `category`:
- "bracket": a progressive bracket set
- "threshold" | "allowance" | "deduction" | "exemption" | "rate": one named value
Every payload may also declare user inputs, term definitions and formulas.
"""

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import date, datetime
from decimal import Decimal
from taxcore.models.rule import (
    RuleType, RuleCategory, SourceAuthority, SourceKind, ValidationStatus, FormulaStatus
)


# =============================================================================
# PAYLOAD UNION
# =============================================================================

class BracketSpec(BaseModel):
    min_income: Decimal = Decimal("0")
    max_income: Optional[Decimal] = None
    rate: Decimal
    fixed_amount: Decimal = Decimal("0")
    bracket_order: int

    @field_validator("rate")
    @classmethod
    def normalize_rate(cls, v: Decimal) -> Decimal:
        # Extracted tables often say "6" for 6%
        if v > 1:
            v = v / 100
        if v < 0:
            raise ValueError("rate must not be negative")
        return v.quantize(Decimal("0.0001"))

    @model_validator(mode="after")
    def check_range(self):
        if self.max_income is not None and self.max_income < self.min_income:
            raise ValueError("max_income must be >= min_income")
        return self


class FormulaSpec(BaseModel):
    output_variable: str
    expression: str = Field(min_length=1)
    calculation_order: Optional[int] = None
    description: Optional[str] = None


class _PayloadBase(BaseModel):
    inputs: List[str] = []
    definitions: Dict[str, str] = {}
    formulas: List[FormulaSpec] = []
    unit: Optional[str] = None
    result_variable: Optional[str] = None
    bracket_base: Optional[str] = None


class BracketPayload(_PayloadBase):
    category: Literal["bracket"]
    brackets: List[BracketSpec] = Field(min_length=1)


class ValuePayload(_PayloadBase):
    category: Literal["threshold", "allowance", "deduction", "exemption", "rate"]
    variable: str
    value: Decimal
    definition: Optional[str] = None


RulePayload = Annotated[Union[BracketPayload, ValuePayload], Field(discriminator="category")]

_payload_adapter = TypeAdapter(RulePayload)


def parse_rule_payload(data: Dict[str, Any]) -> Union[BracketPayload, ValuePayload]:
    """Validate a raw rule_data dict into its typed payload."""
    return _payload_adapter.validate_python(data)


# =============================================================================
# EVIDENCE INGESTION
# =============================================================================

class EvidenceRuleCreate(BaseModel):
    rule_type: RuleType
    rule_category: RuleCategory
    title: str
    description: Optional[str] = None
    rule_data: Dict[str, Any]
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None
    source_authority: SourceAuthority = SourceAuthority.OTHER
    document_source_id: Optional[str] = None
    chunk_id: Optional[str] = None
    chunk_sequence: Optional[int] = None
    chunk_confidence: Optional[Decimal] = Field(default=None, ge=0, le=1)
    extraction_context: Optional[str] = None

    @model_validator(mode="after")
    def check_payload(self):
        if self.expiry_date and self.effective_date and self.expiry_date < self.effective_date:
            raise ValueError("expiry_date must be on or after effective_date")
        data = dict(self.rule_data)
        data.setdefault("category", self.rule_category.value)
        if data["category"] != self.rule_category.value:
            raise ValueError("rule_data.category does not match rule_category")
        parse_rule_payload(data)
        self.rule_data = data
        return self


class EvidenceBatch(BaseModel):
    rules: List[EvidenceRuleCreate]


# =============================================================================
# RESPONSES
# =============================================================================

class TaxBracketResponse(BaseModel):
    id: str
    min_income: Decimal
    max_income: Optional[Decimal] = None
    rate: Decimal
    fixed_amount: Decimal
    bracket_order: int

    model_config = {
        "from_attributes": True
    }


class RuleFormulaResponse(BaseModel):
    id: str
    output_variable: str
    expression: str
    calculation_order: Optional[int] = None
    dependent_variables: List[str] = []
    description: Optional[str] = None
    status: FormulaStatus

    model_config = {
        "from_attributes": True
    }


class AggregatedRuleSourceResponse(BaseModel):
    evidence_rule_id: str
    aspect: str
    subject: str
    weight: float
    reason: str

    model_config = {
        "from_attributes": True
    }


class TaxRuleResponse(BaseModel):
    id: str
    source_kind: SourceKind
    rule_type: RuleType
    rule_category: Optional[RuleCategory] = None
    title: str
    description: Optional[str] = None
    rule_data: Dict[str, Any]
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None
    source_authority: Optional[SourceAuthority] = None
    document_source_id: Optional[str] = None
    chunk_id: Optional[str] = None
    chunk_confidence: Optional[Decimal] = None
    validation_status: ValidationStatus
    version: int
    content_hash: Optional[str] = None
    is_active: bool
    pending_aspects: Optional[List[str]] = None
    compile_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    brackets: List[TaxBracketResponse] = []
    formulas: List[RuleFormulaResponse] = []

    model_config = {
        "from_attributes": True
    }


class AggregatedRuleDetail(TaxRuleResponse):
    sources: List[AggregatedRuleSourceResponse] = []


# =============================================================================
# VALIDATION GATE
# =============================================================================

class ValidationStatusUpdate(BaseModel):
    status: ValidationStatus
    requested_by: Optional[str] = None


class FixtureResult(BaseModel):
    test_name: str
    passed: bool
    expected: Dict[str, Any] = {}
    actual: Dict[str, Any] = {}
    message: Optional[str] = None


class ValidationReport(BaseModel):
    rule_id: str
    status: ValidationStatus
    passed: bool
    results: List[FixtureResult] = []
    blockers: List[str] = []


class RuleTestCaseCreate(BaseModel):
    test_name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    input_data: Dict[str, Any]
    expected_output: Dict[str, Any]
    tolerance: Decimal = Decimal("0.01")

    @field_validator("expected_output")
    @classmethod
    def require_expectation(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if "final_amount" not in v and not v.get("variables"):
            raise ValueError("expected_output needs final_amount or variables")
        return v


class RuleTestCaseResponse(BaseModel):
    id: str
    rule_id: str
    test_name: str
    description: Optional[str] = None
    input_data: Dict[str, Any]
    expected_output: Dict[str, Any]
    tolerance: Decimal
    created_at: datetime

    model_config = {
        "from_attributes": True
    }
