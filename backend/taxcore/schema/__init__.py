"""
Schemas Package

Exports all Pydantic schemas for the tax rule engine.
"""

from .variable import (
    CanonicalVariableUpsert,
    CanonicalVariableDeactivate,
    CanonicalVariableResponse,
    SynonymProposal,
    SynonymProposalBatch,
    SynonymProposalResult,
    SynonymResponse,
    SynonymApprove,
    SynonymReject,
    ResolveResponse
)

from .rule import (
    BracketSpec,
    FormulaSpec,
    BracketPayload,
    ValuePayload,
    RulePayload,
    parse_rule_payload,
    EvidenceRuleCreate,
    EvidenceBatch,
    TaxBracketResponse,
    RuleFormulaResponse,
    AggregatedRuleSourceResponse,
    TaxRuleResponse,
    AggregatedRuleDetail,
    ValidationStatusUpdate,
    FixtureResult,
    ValidationReport,
    RuleTestCaseCreate,
    RuleTestCaseResponse
)

from .aggregation import (
    AggregateRequest,
    AggregateResponse,
    AggregationRunResponse,
    PreflightResponse,
    ConflictResponse,
    ConflictResolveRequest,
    AdminSummary
)

from .calculation import (
    CalculateRequest,
    BreakdownItem,
    CalculateResponse,
    CalculationErrorResponse,
    CalculationAuditResponse,
    CalculationErrorRecord
)


__all__ = [
    # Registry
    "CanonicalVariableUpsert",
    "CanonicalVariableDeactivate",
    "CanonicalVariableResponse",
    "SynonymProposal",
    "SynonymProposalBatch",
    "SynonymProposalResult",
    "SynonymResponse",
    "SynonymApprove",
    "SynonymReject",
    "ResolveResponse",

    # Rules
    "BracketSpec",
    "FormulaSpec",
    "BracketPayload",
    "ValuePayload",
    "RulePayload",
    "parse_rule_payload",
    "EvidenceRuleCreate",
    "EvidenceBatch",
    "TaxBracketResponse",
    "RuleFormulaResponse",
    "AggregatedRuleSourceResponse",
    "TaxRuleResponse",
    "AggregatedRuleDetail",
    "ValidationStatusUpdate",
    "FixtureResult",
    "ValidationReport",
    "RuleTestCaseCreate",
    "RuleTestCaseResponse",

    # Aggregation
    "AggregateRequest",
    "AggregateResponse",
    "AggregationRunResponse",
    "PreflightResponse",
    "ConflictResponse",
    "ConflictResolveRequest",
    "AdminSummary",

    # Calculation
    "CalculateRequest",
    "BreakdownItem",
    "CalculateResponse",
    "CalculationErrorResponse",
    "CalculationAuditResponse",
    "CalculationErrorRecord",
]
