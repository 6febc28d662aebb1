"""
Formula parser and compiler tests
"""

from decimal import Decimal

import pytest

from taxcore.exceptions.calculation_exceptions import (
    FormulaParseException, RuleValidationException, VariableMissingException
)
from taxcore.models.calculation import ErrorType
from taxcore.services.formula import FormulaCompiler, FormulaSource, parse_formula
from taxcore.services.formula.ast import BinOp, Call, Compare, Number, UnaryOp, Var, variables
from taxcore.services.registry_service import normalize_term


KNOWN_KEYS = {"gross_income", "taxable_income", "personal_relief", "income_tax_payable", "tax_credit", "net_tax"}


def lookup(term):
    key = normalize_term(term)
    return key if key in KNOWN_KEYS else None


# =============================================================================
# PARSER
# =============================================================================

def test_operator_precedence():
    tree = parse_formula("gross_income - personal_relief * 2")

    assert tree == BinOp("-", Var("gross_income"), BinOp("*", Var("personal_relief"), Number(Decimal("2"))))


def test_unicode_operators_and_parentheses():
    tree = parse_formula("(a + b) × c ÷ 4")

    assert tree == BinOp("/", BinOp("*", BinOp("+", Var("a"), Var("b")), Var("c")), Number(Decimal("4")))


def test_percent_and_grouped_numbers():
    assert parse_formula("6%") == Number(Decimal("0.06"))
    assert parse_formula("1,200,000 + x") == BinOp("+", Number(Decimal("1200000")), Var("x"))


def test_braced_raw_terms_and_unary_minus():
    tree = parse_formula("-{Personal Relief}")

    assert tree == UnaryOp("-", Var("Personal Relief"))


def test_functions_and_comparisons():
    tree = parse_formula("if(taxable_income > 0, max(taxable_income * 6%, 100), 0)")

    assert isinstance(tree, Call) and tree.name == "if"
    assert isinstance(tree.args[0], Compare)
    assert variables(tree) == ("taxable_income",)


@pytest.mark.parametrize("text", [
    "",
    "gross_income +",
    "min(gross_income)",
    "if(a, b)",
    "sqrt(gross_income)",
    "gross_income $ 2",
    "(gross_income",
    "gross_income %",
])
def test_parse_errors(text):
    with pytest.raises(FormulaParseException) as exc_info:
        parse_formula(text)

    assert exc_info.value.error_type == ErrorType.FORMULA_PARSE_ERROR


# =============================================================================
# COMPILER
# =============================================================================

def test_compiler_derives_topological_order():
    compiler = FormulaCompiler(lookup)
    plan = compiler.compile(
        [
            FormulaSource("net_tax", "income_tax_payable - tax_credit"),
            FormulaSource("income_tax_payable", "brackets(taxable_income)"),
            FormulaSource("Taxable Income", "max(gross_income - {Personal Relief}, 0)"),
        ],
        inputs=["Gross Income", "tax_credit"],
        constants={"personal_relief": Decimal("1200000")},
        has_brackets=True,
        enforce_order=False
    )

    assert plan.outputs == ("taxable_income", "income_tax_payable", "net_tax")
    assert [f.calculation_order for f in plan.formulas] == [1, 2, 3]
    assert plan.formulas[0].dependencies == ("gross_income", "personal_relief")
    assert plan.formulas[1].uses_brackets


def test_compiler_accepts_valid_explicit_order():
    compiler = FormulaCompiler(lookup)
    plan = compiler.compile(
        [
            FormulaSource("taxable_income", "gross_income - personal_relief", calculation_order=10),
            FormulaSource("income_tax_payable", "taxable_income * 6%", calculation_order=20),
        ],
        inputs=["gross_income"],
        constants={"personal_relief": Decimal("1")}
    )

    assert plan.outputs == ("taxable_income", "income_tax_payable")


def test_compiler_rejects_order_that_contradicts_dependencies():
    compiler = FormulaCompiler(lookup)

    with pytest.raises(RuleValidationException) as exc_info:
        compiler.compile(
            [
                FormulaSource("taxable_income", "gross_income", calculation_order=2),
                FormulaSource("income_tax_payable", "taxable_income * 6%", calculation_order=1),
            ],
            inputs=["gross_income"]
        )

    assert exc_info.value.failed_step == "order"


def test_compiler_rejects_cycles():
    compiler = FormulaCompiler(lookup)

    with pytest.raises(RuleValidationException) as exc_info:
        compiler.compile(
            [
                FormulaSource("taxable_income", "income_tax_payable + 1"),
                FormulaSource("income_tax_payable", "taxable_income * 6%"),
            ],
            enforce_order=False
        )

    assert "cycle" in exc_info.value.message.lower()


def test_compiler_rejects_unmapped_variable():
    compiler = FormulaCompiler(lookup)

    with pytest.raises(VariableMissingException) as exc_info:
        compiler.compile([FormulaSource("taxable_income", "gross_income - mystery_relief")], inputs=["gross_income"])

    assert exc_info.value.failed_step == "resolve:taxable_income"


def test_compiler_rejects_dependency_without_source():
    compiler = FormulaCompiler(lookup)

    with pytest.raises(VariableMissingException):
        compiler.compile([FormulaSource("taxable_income", "gross_income - personal_relief")], inputs=["gross_income"])


def test_compiler_rejects_brackets_without_bracket_set():
    compiler = FormulaCompiler(lookup)

    with pytest.raises(RuleValidationException):
        compiler.compile([FormulaSource("income_tax_payable", "brackets(gross_income)")], inputs=["gross_income"])


def test_compiler_rejects_duplicate_outputs():
    compiler = FormulaCompiler(lookup)

    with pytest.raises(RuleValidationException):
        compiler.compile(
            [
                FormulaSource("taxable_income", "gross_income"),
                FormulaSource("Taxable Income", "gross_income * 2"),
            ],
            inputs=["gross_income"]
        )
