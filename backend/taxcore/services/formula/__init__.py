"""
Formula language

Parses formula text into an operation tree and compiles a rule's formula
set into a dependency-ordered, fully resolved plan. Formula text is never
handed to eval().
"""

from .parser import parse_formula
from .compiler import FormulaCompiler, CompiledFormula, CompiledRuleSet, FormulaSource

__all__ = [
    "parse_formula",
    "FormulaCompiler",
    "CompiledFormula",
    "CompiledRuleSet",
    "FormulaSource",
]
