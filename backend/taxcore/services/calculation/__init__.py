from .brackets import Bracket, BracketSlice, validate_brackets, evaluate_brackets
from .executor import (
    CalculationExecutor, ExecutionLimits, ExecutionResult, ExecutionState, RuleSnapshot,
    to_currency, to_rate
)

__all__ = [
    "Bracket",
    "BracketSlice",
    "validate_brackets",
    "evaluate_brackets",
    "CalculationExecutor",
    "ExecutionLimits",
    "ExecutionResult",
    "ExecutionState",
    "RuleSnapshot",
    "to_currency",
    "to_rate",
]
