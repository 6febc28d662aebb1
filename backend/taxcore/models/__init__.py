"""
Models Package

Exports all SQLAlchemy models and enums for the tax rule engine.
"""

from taxcore.database import Base, engine

# Canonical Variable Registry
from .variable import (
    CanonicalVariable,
    VariableSynonym,
    VariableDataType,
    SynonymStatus
)

# Evidence / aggregated rules
from .rule import (
    TaxRule,
    TaxBracket,
    RuleFormula,
    AggregatedRuleSource,
    RuleType,
    RuleCategory,
    SourceAuthority,
    AuthorityRank,
    SourceKind,
    ValidationStatus,
    FormulaStatus,
    authority_rank
)

from .conflict import (
    RuleConflict,
    ConflictAspect,
    ConflictStatus
)

from .aggregation_run import (
    AggregationRun,
    AggregationRunStatus,
    PreflightRun,
    PreflightStatus,
    NON_TERMINAL_RUN_STATUSES
)

from .calculation import (
    CalculationAudit,
    CalculationError,
    ErrorType,
    RETRYABLE_ERROR_TYPES
)

from .rule_test_case import RuleTestCase


# Uncomment to recreate all tables (use with caution!)
# Base.metadata.drop_all(bind=engine)
# Base.metadata.create_all(bind=engine)


__all__ = [
    # Base
    "Base",
    "engine",

    # Registry models
    "CanonicalVariable",
    "VariableSynonym",
    "VariableDataType",
    "SynonymStatus",

    # Rule models
    "TaxRule",
    "TaxBracket",
    "RuleFormula",
    "AggregatedRuleSource",
    "RuleType",
    "RuleCategory",
    "SourceAuthority",
    "AuthorityRank",
    "SourceKind",
    "ValidationStatus",
    "FormulaStatus",
    "authority_rank",

    # Conflict models
    "RuleConflict",
    "ConflictAspect",
    "ConflictStatus",

    # Run models
    "AggregationRun",
    "AggregationRunStatus",
    "PreflightRun",
    "PreflightStatus",
    "NON_TERMINAL_RUN_STATUSES",

    # Calculation models
    "CalculationAudit",
    "CalculationError",
    "ErrorType",
    "RETRYABLE_ERROR_TYPES",

    # Validation fixtures
    "RuleTestCase",
]
