"""
Bracket arithmetic and calculation executor tests

These run against in-memory rule snapshots; no database involved.
"""

from decimal import Decimal

import pytest

from taxcore.exceptions.calculation_exceptions import (
    CalculationOverflowException, RuleValidationException, VariableMissingException
)
from taxcore.services.calculation import (
    Bracket, CalculationExecutor, ExecutionLimits, ExecutionState, RuleSnapshot,
    evaluate_brackets, validate_brackets
)
from taxcore.services.formula import FormulaSource
from taxcore.services.registry_service import normalize_term


def D(value):
    return Decimal(str(value))


BRACKETS = (
    Bracket(D(0), D(500000), D("0"), D(0), 1),
    Bracket(D(500001), D(750000), D("0.06"), D(0), 2),
    Bracket(D(750001), D(1500000), D("0.12"), D(15000), 3),
    Bracket(D(1500001), None, D("0.18"), D(105000), 4),
)

LIMITS = ExecutionLimits(
    max_magnitude=D("1e13"),
    timeout_ms=2000,
    gap_tolerance=D(1),
    default_bracket_base="taxable_income"
)


def identity_lookup(term):
    return normalize_term(term) or None


def snapshot(formulas=(), brackets=BRACKETS, inputs=("taxable_income",), constants=None, **kwargs):
    return RuleSnapshot(
        rule_id="rule-1",
        tax_type="income_tax",
        version=1,
        validated=False,
        brackets=tuple(brackets),
        formulas=tuple(formulas),
        inputs=tuple(inputs),
        constants=constants or {},
        **kwargs
    )


# =============================================================================
# BRACKETS
# =============================================================================

def test_worked_example_two_contributing_brackets():
    total, slices = evaluate_brackets(BRACKETS, D(1000000))

    assert total == D(45000)
    assert [s.bracket_order for s in slices] == [2, 3]
    assert [s.amount for s in slices] == [D(15000), D(30000)]
    assert slices[1].taxable_slice == D(250000)


def test_zero_income_pays_nothing():
    total, slices = evaluate_brackets(BRACKETS, D(0))

    assert total == 0
    assert slices == []


def test_tax_is_non_decreasing_and_continuous():
    incomes = [D(i) for i in range(0, 3_000_001, 12_500)]
    taxes = [evaluate_brackets(BRACKETS, income)[0] for income in incomes]

    assert all(b >= a for a, b in zip(taxes, taxes[1:]))

    for boundary in (D(500000), D(750000), D(1500000)):
        below = evaluate_brackets(BRACKETS, boundary)[0]
        above = evaluate_brackets(BRACKETS, boundary + 1)[0]
        assert above - below <= D("0.18"), f"Jump at {boundary}"


def test_top_bracket_entry_matches_stated_fixed_amount():
    assert evaluate_brackets(BRACKETS, D(750000))[0] == D(15000)
    assert evaluate_brackets(BRACKETS, D(1500000))[0] == D(105000)
    assert evaluate_brackets(BRACKETS, D(2000000))[0] == D(195000)


def test_validate_sorts_by_bracket_order():
    ordered = validate_brackets(list(reversed(BRACKETS)))

    assert [b.bracket_order for b in ordered] == [1, 2, 3, 4]


@pytest.mark.parametrize("brackets, fragment", [
    (
        [Bracket(D(0), D(500000), D(0), D(0), 1), Bracket(D(400000), None, D("0.1"), D(0), 2)],
        "overlap",
    ),
    (
        [Bracket(D(0), None, D(0), D(0), 1), Bracket(D(500000), None, D("0.1"), D(0), 2)],
        "open-ended",
    ),
    (
        [Bracket(D(0), D(500000), D(0), D(0), 1), Bracket(D(600000), None, D("0.1"), D(0), 2)],
        "gap",
    ),
    (
        [Bracket(D(0), D(500000), D("0.1"), D(0), 1), Bracket(D(500001), None, D("0.2"), D(70000), 2)],
        "fixed amount",
    ),
])
def test_invalid_bracket_sets(brackets, fragment):
    with pytest.raises(RuleValidationException) as exc_info:
        validate_brackets(brackets)

    assert fragment in exc_info.value.message.lower()


# =============================================================================
# EXECUTOR
# =============================================================================

def test_bracket_only_rule_uses_bracket_base():
    executor = CalculationExecutor(snapshot(), identity_lookup, LIMITS)

    result = executor.run({"taxable_income": 1000000})

    assert executor.state == ExecutionState.COMPLETED
    assert result.final_amount == D("45000.00")
    assert [item.kind for item in result.breakdown] == ["bracket", "bracket"]
    assert [item.amount for item in result.breakdown] == [D("15000.00"), D("30000.00")]
    assert result.breakdown[1].rate == D("0.1200")


def test_formulas_run_in_order_with_constants():
    executor = CalculationExecutor(
        snapshot(
            formulas=[
                FormulaSource("taxable_income", "max(gross_income - personal_relief, 0)", 1),
                FormulaSource("income_tax_payable", "brackets(taxable_income)", 2),
            ],
            inputs=("gross_income",),
            constants={"personal_relief": D(1200000)},
        ),
        identity_lookup,
        LIMITS
    )

    result = executor.run({"Gross Income": "2,200,000", "personal_relief": 0})

    assert result.final_amount == D("45000.00"), "Statutory relief must not be overridden by input"
    assert result.variables["taxable_income"] == D(1000000)
    assert result.result_variable == "income_tax_payable"
    assert [item.kind for item in result.breakdown] == ["formula", "bracket", "bracket", "formula"]


def test_result_variable_selects_final_amount():
    executor = CalculationExecutor(
        snapshot(
            formulas=[
                FormulaSource("income_tax_payable", "gross_income * 10%", 1),
                FormulaSource("net_income", "gross_income - income_tax_payable", 2),
            ],
            inputs=("gross_income",),
            result_variable="income_tax_payable",
        ),
        identity_lookup,
        LIMITS
    )

    assert executor.run({"gross_income": 1000}).final_amount == D("100.00")


def test_negative_result_is_floored_and_recorded():
    executor = CalculationExecutor(
        snapshot(formulas=[FormulaSource("net_tax", "gross_income - 5000", 1)], inputs=("gross_income",)),
        identity_lookup,
        LIMITS
    )

    result = executor.run({"gross_income": 1000})

    assert result.final_amount == D("0.00")
    assert result.breakdown[-1].kind == "floor"
    assert result.breakdown[-1].amount == D("4000.00")


def test_division_by_zero_aborts_with_overflow():
    executor = CalculationExecutor(
        snapshot(formulas=[FormulaSource("ratio", "gross_income / deductions", 1)], inputs=("gross_income", "deductions")),
        identity_lookup,
        LIMITS
    )

    with pytest.raises(CalculationOverflowException) as exc_info:
        executor.run({"gross_income": 1000, "deductions": 0})

    assert exc_info.value.failed_step == "evaluate:ratio"
    assert executor.state == ExecutionState.FAILED


def test_magnitude_ceiling_aborts_with_overflow():
    executor = CalculationExecutor(snapshot(), identity_lookup, LIMITS)

    with pytest.raises(CalculationOverflowException):
        executor.run({"taxable_income": 10 ** 14})


def test_time_budget_aborts_with_overflow():
    limits = ExecutionLimits(max_magnitude=D("1e13"), timeout_ms=-1, gap_tolerance=D(1), default_bracket_base="taxable_income")
    executor = CalculationExecutor(snapshot(), identity_lookup, limits)

    with pytest.raises(CalculationOverflowException) as exc_info:
        executor.run({"taxable_income": 1000000})

    assert "time budget" in exc_info.value.message


def test_missing_input_is_variable_missing():
    executor = CalculationExecutor(snapshot(), identity_lookup, LIMITS)

    with pytest.raises(VariableMissingException) as exc_info:
        executor.run({"gross_income": 1000000})

    assert exc_info.value.failed_step == "resolve:taxable_income"


def test_invalid_bracket_set_is_rejected_before_evaluation():
    overlapping = (
        Bracket(D(0), D(500000), D("0"), D(0), 1),
        Bracket(D(400000), None, D("0.10"), D(0), 2),
    )
    executor = CalculationExecutor(snapshot(brackets=overlapping), identity_lookup, LIMITS)

    with pytest.raises(RuleValidationException) as exc_info:
        executor.run({"taxable_income": 1000000})

    assert exc_info.value.failed_step == "brackets"
    assert executor.state == ExecutionState.FAILED


def test_snapshot_with_compile_error_never_runs():
    executor = CalculationExecutor(
        snapshot(compile_error="Brackets 1 and 2 overlap"), identity_lookup, LIMITS
    )

    with pytest.raises(RuleValidationException) as exc_info:
        executor.run({"taxable_income": 1000000})

    assert exc_info.value.failed_step == "compile"
    assert "overlap" in exc_info.value.message
