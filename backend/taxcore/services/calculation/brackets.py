"""
Progressive bracket arithmetic.

Tax is the sum over brackets of slice x rate, where a bracket's slice is the
part of the income that falls inside it. Tables written in whole currency
units ("0 - 500,000", "500,001 - 750,000") are measured from the previous
bracket's ceiling so the one-unit gap between bands never goes untaxed.

fixed_amount is the cumulative tax at bracket entry as printed in the
source table. It is checked against the slices below it, never added on
top of them, so the total stays continuous at every boundary.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from taxcore.exceptions.calculation_exceptions import RuleValidationException


@dataclass(frozen=True)
class Bracket:
    min_income: Decimal
    max_income: Optional[Decimal]
    rate: Decimal
    fixed_amount: Decimal
    bracket_order: int


@dataclass(frozen=True)
class BracketSlice:
    bracket_order: int
    lower: Decimal
    upper: Optional[Decimal]
    taxable_slice: Decimal
    rate: Decimal
    amount: Decimal


def _lower_bounds(brackets: Sequence[Bracket], gap_tolerance: Decimal) -> List[Decimal]:
    bounds = []
    previous = None
    for bracket in brackets:
        lower = bracket.min_income
        if previous is not None and previous.max_income is not None:
            gap = bracket.min_income - previous.max_income
            if Decimal("0") < gap <= gap_tolerance:
                lower = previous.max_income
        bounds.append(lower)
        previous = bracket
    return bounds


def validate_brackets(
    brackets: Sequence[Bracket],
    gap_tolerance: Decimal = Decimal("1"),
    amount_tolerance: Decimal = Decimal("0.01")
) -> Tuple[Bracket, ...]:
    """
    Sort by bracket_order and check the set is contiguous, non-overlapping,
    open only at the top, and that stated fixed amounts match the slices.
    """
    ordered = tuple(sorted(brackets, key=lambda b: b.bracket_order))
    if not ordered:
        return ordered

    orders = [b.bracket_order for b in ordered]
    if len(set(orders)) != len(orders):
        raise RuleValidationException("Duplicate bracket_order in bracket set", failed_step="brackets")

    for previous, bracket in zip(ordered, ordered[1:]):
        if previous.max_income is None:
            raise RuleValidationException(
                f"Bracket {previous.bracket_order} is open-ended but is not the last bracket",
                failed_step="brackets"
            )
        gap = bracket.min_income - previous.max_income
        if gap < 0:
            raise RuleValidationException(
                f"Brackets {previous.bracket_order} and {bracket.bracket_order} overlap",
                failed_step="brackets"
            )
        if gap > gap_tolerance:
            raise RuleValidationException(
                f"Gap of {gap} between brackets {previous.bracket_order} and {bracket.bracket_order}",
                failed_step="brackets"
            )

    cumulative = Decimal("0")
    lowers = _lower_bounds(ordered, gap_tolerance)
    for bracket, lower in zip(ordered, lowers):
        if bracket.fixed_amount and abs(bracket.fixed_amount - cumulative) > amount_tolerance:
            raise RuleValidationException(
                f"Bracket {bracket.bracket_order} states fixed amount {bracket.fixed_amount} "
                f"but the brackets below it accumulate {cumulative}",
                failed_step="brackets"
            )
        if bracket.max_income is not None:
            cumulative += (bracket.max_income - lower) * bracket.rate

    return ordered


def evaluate_brackets(
    brackets: Sequence[Bracket],
    income: Decimal,
    gap_tolerance: Decimal = Decimal("1")
) -> Tuple[Decimal, List[BracketSlice]]:
    """Total tax for income plus the brackets that contributed a non-zero amount"""
    ordered = sorted(brackets, key=lambda b: b.bracket_order)
    total = Decimal("0")
    slices = []

    for bracket, lower in zip(ordered, _lower_bounds(ordered, gap_tolerance)):
        top = income if bracket.max_income is None else min(income, bracket.max_income)
        taxable = max(top - lower, Decimal("0"))
        amount = taxable * bracket.rate
        total += amount
        if amount != 0:
            slices.append(BracketSlice(
                bracket_order=bracket.bracket_order,
                lower=lower,
                upper=bracket.max_income,
                taxable_slice=taxable,
                rate=bracket.rate,
                amount=amount
            ))

    return total, slices
