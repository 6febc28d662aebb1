"""
Aspect extraction and comparison.

Every evidence payload is broken into claims, one per (aspect, subject)
slot the aggregated rule can hold:

    brackets     subject "brackets"               the whole bracket set
    thresholds   subject "<category>:<key>"       a single statutory value
    units        subject "<key>" or "brackets"    unit of a value
    definitions  subject "<key>"                  definition text
    formulas     subject "<output key>"           expression text
    other        subject "result_variable" | "bracket_base"

Declared inputs are collected separately as a union and never conflict.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import re

from taxcore.models.conflict import ConflictAspect
from taxcore.models.rule import TaxRule
from taxcore.schema.rule import BracketPayload, BracketSpec, parse_rule_payload
from taxcore.services.registry_service import Unmapped, normalize_term

BRACKETS_SUBJECT = "brackets"

# (min_income, max_income, rate, fixed_amount, bracket_order)
BracketValue = Tuple[Decimal, Optional[Decimal], Decimal, Decimal, int]

_WHITESPACE = re.compile(r"\s+")

CENT = Decimal("0.01")
RATE_STEP = Decimal("0.0001")


@dataclass(frozen=True)
class Claim:
    aspect: ConflictAspect
    subject: str
    value: Any
    evidence: TaxRule
    order_hint: Optional[int] = None
    description: Optional[str] = None


@dataclass
class Extraction:
    claims: List[Claim]
    inputs: List[str]
    warnings: List[str]


def _bracket_value(spec: BracketSpec) -> BracketValue:
    return (
        spec.min_income.quantize(CENT),
        spec.max_income.quantize(CENT) if spec.max_income is not None else None,
        spec.rate.quantize(RATE_STEP),
        spec.fixed_amount.quantize(CENT),
        spec.bracket_order,
    )


def _threshold_value(category: str, value: Decimal) -> Decimal:
    if category == "rate":
        if value > 1:
            value = value / 100
        return value.quantize(RATE_STEP)
    return value.quantize(CENT)


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", str(text)).strip().casefold()


class ClaimExtractor:
    """
    Breaks evidence payloads into claims.

    resolve maps a raw term to a canonical key (or Unmapped); it is the
    registry's write path, so unknown terms surface as pending synonyms.
    """

    def __init__(self, resolve: Callable[[str], Union[str, Unmapped]]):
        self.resolve = resolve

    def _key(self, term: str, warnings: List[str], rule: TaxRule) -> Tuple[str, bool]:
        outcome = self.resolve(term)
        if isinstance(outcome, Unmapped):
            warnings.append(f"Evidence {rule.id}: term '{term}' has no canonical variable")
            return normalize_term(term), False
        return outcome, True

    def extract(self, rule: TaxRule) -> Extraction:
        claims: List[Claim] = []
        inputs: List[str] = []
        warnings: List[str] = []

        payload = parse_rule_payload(rule.rule_data)

        if isinstance(payload, BracketPayload):
            value = tuple(sorted((_bracket_value(b) for b in payload.brackets), key=lambda b: b[4]))
            claims.append(Claim(ConflictAspect.BRACKETS, BRACKETS_SUBJECT, value, rule))
            if payload.unit:
                claims.append(Claim(ConflictAspect.UNITS, BRACKETS_SUBJECT, payload.unit, rule))
        else:
            key, mapped = self._key(payload.variable, warnings, rule)
            if mapped:
                claims.append(Claim(
                    ConflictAspect.THRESHOLDS,
                    f"{payload.category}:{key}",
                    _threshold_value(payload.category, payload.value),
                    rule
                ))
                if payload.unit:
                    claims.append(Claim(ConflictAspect.UNITS, key, payload.unit, rule))
            if payload.definition:
                claims.append(Claim(ConflictAspect.DEFINITIONS, key, payload.definition, rule))

        for term, text in payload.definitions.items():
            key, _ = self._key(term, warnings, rule)
            claims.append(Claim(ConflictAspect.DEFINITIONS, key, text, rule))

        for formula in payload.formulas:
            key, _ = self._key(formula.output_variable, warnings, rule)
            claims.append(Claim(
                ConflictAspect.FORMULAS, key, formula.expression.strip(), rule,
                order_hint=formula.calculation_order,
                description=formula.description
            ))

        for term in payload.inputs:
            key, mapped = self._key(term, warnings, rule)
            if mapped:
                inputs.append(key)

        for field_name in ("result_variable", "bracket_base"):
            term = getattr(payload, field_name)
            if term:
                key, _ = self._key(term, warnings, rule)
                claims.append(Claim(ConflictAspect.OTHER, field_name, key, rule))

        return Extraction(claims=claims, inputs=inputs, warnings=warnings)


def values_agree(
    aspect: ConflictAspect,
    subject: str,
    a: Any,
    b: Any,
    numeric_tolerance: Decimal,
    rate_tolerance: Decimal
) -> bool:
    if aspect == ConflictAspect.BRACKETS:
        if len(a) != len(b):
            return False
        for left, right in zip(a, b):
            if left[4] != right[4]:
                return False
            if abs(left[0] - right[0]) > numeric_tolerance:
                return False
            if (left[1] is None) != (right[1] is None):
                return False
            if left[1] is not None and abs(left[1] - right[1]) > numeric_tolerance:
                return False
            if abs(left[2] - right[2]) > rate_tolerance:
                return False
            if abs(left[3] - right[3]) > numeric_tolerance:
                return False
        return True

    if aspect == ConflictAspect.THRESHOLDS:
        tolerance = rate_tolerance if subject.startswith("rate:") else numeric_tolerance
        return abs(a - b) <= tolerance

    if aspect == ConflictAspect.FORMULAS:
        return _WHITESPACE.sub("", a).casefold() == _WHITESPACE.sub("", b).casefold()

    return normalize_text(a) == normalize_text(b)


def to_json_value(aspect: ConflictAspect, value: Any) -> Any:
    """Conflict-details and rule_data friendly form of a claim value"""
    if aspect == ConflictAspect.BRACKETS:
        return [
            {
                "min_income": str(b[0]),
                "max_income": str(b[1]) if b[1] is not None else None,
                "rate": str(b[2]),
                "fixed_amount": str(b[3]),
                "bracket_order": b[4],
            }
            for b in value
        ]
    if isinstance(value, Decimal):
        return str(value)
    return value


def from_decision(aspect: ConflictAspect, subject: str, raw: Any) -> Any:
    """Turn an operator-supplied decision value back into a claim value"""
    if aspect == ConflictAspect.BRACKETS:
        specs = [BracketSpec.model_validate(b) for b in raw]
        return tuple(sorted((_bracket_value(s) for s in specs), key=lambda b: b[4]))
    if aspect == ConflictAspect.THRESHOLDS:
        category = subject.split(":", 1)[0]
        return _threshold_value(category, Decimal(str(raw)))
    return str(raw)


def candidate_detail(claim: Claim) -> Dict[str, Any]:
    rule = claim.evidence
    return {
        "evidence_rule_id": rule.id,
        "value": to_json_value(claim.aspect, claim.value),
        "authority": str(rule.source_authority) if rule.source_authority else None,
        "effective_date": rule.effective_date.isoformat() if rule.effective_date else None,
        "confidence": str(rule.chunk_confidence) if rule.chunk_confidence is not None else None,
        "document_source_id": rule.document_source_id,
    }
