"""
Calculation Executor

Runs one calculation against an immutable snapshot of an aggregated rule.

State machine:
    PENDING -> RESOLVING_VARIABLES -> EVALUATING -> COMPLETED
                       |                   |
                       +-------> FAILED <--+

Formulas run strictly in calculation_order. Numbers stay as Decimal at full
precision throughout; rounding happens only when the breakdown and result
are presented. Any numeric failure aborts the whole execution, so callers
either get a complete result or an exception, never a partial breakdown.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, DecimalException, ROUND_HALF_UP, localcontext
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple
import logging
import time

from taxcore.core.config import settings
from taxcore.exceptions.calculation_exceptions import (
    CalculationException, CalculationOverflowException, VariableMissingException, RuleValidationException
)
from taxcore.models.rule import FormulaStatus
from taxcore.schema.calculation import BreakdownItem
from taxcore.services.formula import ast
from taxcore.services.formula.compiler import FormulaCompiler, FormulaSource, CompiledRuleSet, Lookup
from .brackets import Bracket, evaluate_brackets, validate_brackets

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
RATE_STEP = Decimal("0.0001")


def to_currency(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE_STEP, rounding=ROUND_HALF_UP)


class ExecutionState(str, Enum):
    PENDING = "pending"
    RESOLVING_VARIABLES = "resolving_variables"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionLimits:
    max_magnitude: Decimal
    timeout_ms: int
    gap_tolerance: Decimal
    default_bracket_base: str
    amount_tolerance: Decimal = Decimal("0.01")

    @classmethod
    def from_settings(cls) -> "ExecutionLimits":
        return cls(
            max_magnitude=Decimal(str(settings.CALCULATION_MAX_MAGNITUDE)),
            timeout_ms=settings.CALCULATION_TIMEOUT_MS,
            gap_tolerance=Decimal(str(settings.BRACKET_GAP_TOLERANCE)),
            default_bracket_base=settings.DEFAULT_BRACKET_BASE,
            amount_tolerance=Decimal(str(settings.NUMERIC_TOLERANCE))
        )


@dataclass(frozen=True)
class RuleSnapshot:
    """Everything a calculation needs from a rule, copied out of the session up front"""
    rule_id: str
    tax_type: str
    version: int
    validated: bool
    brackets: Tuple[Bracket, ...]
    formulas: Tuple[FormulaSource, ...]
    inputs: Tuple[str, ...] = ()
    constants: Mapping[str, Decimal] = field(default_factory=lambda: MappingProxyType({}))
    result_variable: Optional[str] = None
    bracket_base: Optional[str] = None
    unit: Optional[str] = None
    compile_error: Optional[str] = None

    @classmethod
    def from_rule(cls, rule) -> "RuleSnapshot":
        rule_data = rule.rule_data or {}

        constants = {}
        for key, entry in (rule_data.get("values") or {}).items():
            constants[key] = Decimal(str(entry["value"]))

        # Evidence formulas stay draft; aggregated rules run only what compiled
        compile_error = rule.compile_error
        formulas = list(rule.formulas)
        if not rule.is_evidence:
            formulas = [f for f in rule.formulas if f.status == FormulaStatus.ACTIVE]
            inactive = sorted(f.output_variable for f in rule.formulas if f.status != FormulaStatus.ACTIVE)
            if compile_error is None and inactive:
                compile_error = f"Formulas not active: {', '.join(inactive)}"

        return cls(
            rule_id=rule.id,
            tax_type=str(rule.rule_type),
            version=rule.version,
            validated=str(rule.validation_status) == "validated",
            brackets=tuple(
                Bracket(
                    min_income=Decimal(b.min_income),
                    max_income=Decimal(b.max_income) if b.max_income is not None else None,
                    rate=Decimal(b.rate),
                    fixed_amount=Decimal(b.fixed_amount or 0),
                    bracket_order=b.bracket_order
                )
                for b in rule.brackets
            ),
            formulas=tuple(
                FormulaSource(
                    output_variable=f.output_variable,
                    expression=f.expression,
                    calculation_order=f.calculation_order,
                    description=f.description
                )
                for f in sorted(formulas, key=lambda f: (f.calculation_order or 0, f.output_variable))
            ),
            inputs=tuple(rule_data.get("inputs") or ()),
            constants=MappingProxyType(constants),
            result_variable=rule_data.get("result_variable"),
            bracket_base=rule_data.get("bracket_base"),
            unit=rule_data.get("unit"),
            compile_error=compile_error
        )


@dataclass
class ExecutionResult:
    final_amount: Decimal
    variables: Dict[str, Decimal]
    breakdown: List[BreakdownItem]
    result_variable: Optional[str]
    started_at: datetime
    completed_at: datetime
    duration_ms: int

    def result_payload(self, unit: Optional[str] = None) -> Dict[str, Any]:
        """JSON-safe result body; amounts as 2dp strings"""
        return {
            "final_amount": str(self.final_amount),
            "result_variable": self.result_variable,
            "unit": unit,
            "variables": {key: str(to_currency(value)) for key, value in self.variables.items()},
        }


class CalculationExecutor:
    """
    Usage:
        executor = CalculationExecutor(snapshot, lookup=lambda t: registry_service.lookup(db, t))
        result = executor.run({"gross_income": 2500000})
    """

    def __init__(self, snapshot: RuleSnapshot, lookup: Lookup, limits: Optional[ExecutionLimits] = None):
        self.snapshot = snapshot
        self.lookup = lookup
        self.limits = limits or ExecutionLimits.from_settings()
        self.state = ExecutionState.PENDING
        self.current_step: Optional[str] = None

        self._deadline = 0.0
        self._breakdown: List[BreakdownItem] = []

    # =========================================================================
    # STATE
    # =========================================================================

    def _enter(self, state: ExecutionState):
        logger.debug(f"Execution on rule {self.snapshot.rule_id}: {self.state.value} -> {state.value}")
        self.state = state

    def _check_deadline(self):
        if time.monotonic() > self._deadline:
            raise CalculationOverflowException(
                f"Calculation exceeded its time budget of {self.limits.timeout_ms} ms",
                failed_step=self.current_step
            )

    def _check_magnitude(self, value: Decimal) -> Decimal:
        if not value.is_finite() or abs(value) > self.limits.max_magnitude:
            raise CalculationOverflowException(
                f"Intermediate value exceeds the magnitude ceiling of {self.limits.max_magnitude}",
                failed_step=self.current_step
            )
        return value

    def _add(self, kind: str, label: str, amount: Decimal, **extra):
        self._breakdown.append(BreakdownItem(
            step=len(self._breakdown) + 1,
            kind=kind,
            label=label,
            amount=to_currency(amount),
            **extra
        ))

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self, input_data: Dict[str, Any]) -> ExecutionResult:
        started_at = datetime.now()
        start = time.monotonic()
        self._deadline = start + self.limits.timeout_ms / 1000
        self._breakdown = []

        try:
            with localcontext() as ctx:
                ctx.prec = 34
                self._enter(ExecutionState.RESOLVING_VARIABLES)
                plan = self._compile()
                values = self._resolve_inputs(input_data, plan)

                self._enter(ExecutionState.EVALUATING)
                final_amount, result_key = self._evaluate(plan, values)
        except CalculationException:
            self._enter(ExecutionState.FAILED)
            self._breakdown = []
            raise
        except DecimalException as exc:
            self._enter(ExecutionState.FAILED)
            self._breakdown = []
            raise CalculationOverflowException(f"Arithmetic failure: {exc!r}", failed_step=self.current_step)

        if final_amount < 0:
            logger.warning(f"Rule {self.snapshot.rule_id} produced {final_amount}; floored at zero")
            self._add("floor", f"Negative result {to_currency(final_amount)} floored at zero", -final_amount)
            final_amount = Decimal("0")

        self._enter(ExecutionState.COMPLETED)
        completed_at = datetime.now()

        return ExecutionResult(
            final_amount=to_currency(final_amount),
            variables={key: values[key] for key in plan.outputs},
            breakdown=list(self._breakdown),
            result_variable=result_key,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((time.monotonic() - start) * 1000)
        )

    def _compile(self) -> CompiledRuleSet:
        self.current_step = "compile"
        if self.snapshot.compile_error:
            raise RuleValidationException(
                f"Rule {self.snapshot.rule_id} failed to compile: {self.snapshot.compile_error}",
                failed_step=self.current_step
            )
        validate_brackets(
            self.snapshot.brackets,
            gap_tolerance=self.limits.gap_tolerance,
            amount_tolerance=self.limits.amount_tolerance
        )
        compiler = FormulaCompiler(self.lookup)
        return compiler.compile(
            list(self.snapshot.formulas),
            inputs=self.snapshot.inputs,
            constants=self.snapshot.constants,
            has_brackets=bool(self.snapshot.brackets),
            enforce_order=True
        )

    def _resolve_inputs(self, input_data: Dict[str, Any], plan: CompiledRuleSet) -> Dict[str, Decimal]:
        values: Dict[str, Decimal] = {}

        for term, raw in (input_data or {}).items():
            key = self.lookup(term)
            if key is None:
                logger.debug(f"Ignoring unmapped input field '{term}'")
                continue
            number = _to_decimal(raw)
            if number is None:
                continue
            self.current_step = f"resolve:{key}"
            values[key] = self._check_magnitude(number)

        # Statutory values are not user-overridable
        values.update(plan.constants)

        return values

    def _evaluate(self, plan: CompiledRuleSet, values: Dict[str, Decimal]) -> Tuple[Decimal, Optional[str]]:
        if not plan.formulas:
            return self._evaluate_bracket_base(values), None

        for formula in plan.formulas:
            self.current_step = f"evaluate:{formula.output_key}"
            self._check_deadline()

            for dependency in formula.dependencies:
                if dependency not in values:
                    raise VariableMissingException(
                        f"No value supplied for '{dependency}'", failed_step=self.current_step
                    )

            value = self._check_magnitude(self._eval(formula.tree, formula.bindings, values))
            values[formula.output_key] = value
            self._add(
                "formula", formula.description or formula.output_key, value,
                variable=formula.output_key, expression=formula.expression
            )

        result_key = plan.formulas[-1].output_key
        if self.snapshot.result_variable:
            wanted = self.lookup(self.snapshot.result_variable)
            if wanted not in plan.outputs:
                raise RuleValidationException(
                    f"Result variable '{self.snapshot.result_variable}' is not computed by any formula",
                    failed_step="result"
                )
            result_key = wanted

        return values[result_key], result_key

    def _evaluate_bracket_base(self, values: Dict[str, Decimal]) -> Decimal:
        if not self.snapshot.brackets:
            raise RuleValidationException("Rule has neither formulas nor brackets", failed_step="compile")

        base_term = self.snapshot.bracket_base or self.limits.default_bracket_base
        base_key = self.lookup(base_term) or base_term
        self.current_step = f"resolve:{base_key}"
        if base_key not in values:
            raise VariableMissingException(f"No value supplied for '{base_key}'", failed_step=self.current_step)

        self.current_step = "brackets"
        self._check_deadline()
        return self._apply_brackets(values[base_key])

    def _apply_brackets(self, income: Decimal) -> Decimal:
        total, slices = evaluate_brackets(self.snapshot.brackets, income, self.limits.gap_tolerance)
        for s in slices:
            upper = "and above" if s.upper is None else f"to {to_currency(s.upper)}"
            self._add(
                "bracket", f"{to_currency(s.lower)} {upper} at {to_rate(s.rate) * 100:.2f}%", s.amount,
                bracket_order=s.bracket_order,
                taxable_slice=to_currency(s.taxable_slice),
                rate=to_rate(s.rate)
            )
        return self._check_magnitude(total)

    def _eval(self, node: ast.Node, bindings: Mapping[str, str], values: Dict[str, Decimal]) -> Decimal:
        if isinstance(node, ast.Number):
            return node.value

        if isinstance(node, ast.Var):
            return values[bindings[node.name]]

        if isinstance(node, ast.UnaryOp):
            return -self._eval(node.operand, bindings, values)

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, bindings, values)
            right = self._eval(node.right, bindings, values)
            if node.op == "+":
                result = left + right
            elif node.op == "-":
                result = left - right
            elif node.op == "*":
                result = left * right
            else:
                if right == 0:
                    raise CalculationOverflowException("Division by zero", failed_step=self.current_step)
                result = left / right
            return self._check_magnitude(result)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, bindings, values)
            right = self._eval(node.right, bindings, values)
            outcome = {
                "<": left < right,
                "<=": left <= right,
                ">": left > right,
                ">=": left >= right,
                "==": left == right,
                "!=": left != right,
            }[node.op]
            return Decimal("1") if outcome else Decimal("0")

        if isinstance(node, ast.Call):
            if node.name == "if":
                condition = self._eval(node.args[0], bindings, values)
                branch = node.args[1] if condition != 0 else node.args[2]
                return self._eval(branch, bindings, values)
            args = [self._eval(arg, bindings, values) for arg in node.args]
            if node.name == "min":
                return min(args)
            if node.name == "max":
                return max(args)
            if node.name == "brackets":
                return self._apply_brackets(args[0])

        raise RuleValidationException(f"Unsupported expression node {node!r}", failed_step=self.current_step)


def _to_decimal(raw: Any) -> Optional[Decimal]:
    if isinstance(raw, bool):
        return Decimal(int(raw))
    if isinstance(raw, (int, Decimal)):
        return Decimal(raw)
    if isinstance(raw, float):
        return Decimal(str(raw))
    if isinstance(raw, str):
        cleaned = raw.replace(",", "").strip()
        try:
            return Decimal(cleaned) if cleaned else None
        except DecimalException:
            return None
    return None
