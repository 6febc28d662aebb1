"""
Aggregation Engine

Reconciles the evidence rules of one (tax_type, target_date) key into a
single aggregated rule.

Run Flow:
┌─────────────────────────────────────────────────────────────────────────┐
│                           AGGREGATION RUN                               │
├─────────────────────────────────────────────────────────────────────────┤
│                                                                         │
│  1. GATE                                                                │
│     ├── Reject if a queued/running run exists for the key (409)         │
│     └── PreflightRun; blocked preflight stops here                      │
│                                                                         │
│  2. QUEUE → RUNNING                                                     │
│     └── AggregationRun record tracks the attempt                        │
│                                                                         │
│  3. FOR EACH (aspect, subject) SLOT:                                    │
│     ├── Rank evidence by authority, effective date, confidence          │
│     ├── Top tier agrees        → accept, link sources                   │
│     ├── Top tier disagrees     → RuleConflict, slot left pending        │
│     └── Conflict decided       → fold in the operator's decision        │
│                                                                         │
│  4. COMPILE                                                             │
│     └── Brackets + formulas checked; failure invalidates every formula  │
│                                                                         │
│  5. FINALIZE                                                            │
│     └── Rule content, conflicts and run outcome committed together      │
│                                                                         │
└─────────────────────────────────────────────────────────────────────────┘

Re-running with unchanged evidence reproduces identical rule content and
leaves the rule's version untouched (content hash comparison).
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taxcore.core.config import settings
from taxcore.crud import crud_rule, crud_conflict, crud_aggregation_run
from taxcore.exceptions.aggregation_exceptions import AggregationInProgressException, AggregationBlockedException
from taxcore.exceptions.calculation_exceptions import CalculationException
from taxcore.models.aggregation_run import AggregationRun, AggregationRunStatus
from taxcore.models.calculation import ErrorType
from taxcore.models.conflict import ConflictAspect, ConflictStatus, RuleConflict
from taxcore.models.rule import (
    TaxRule, TaxBracket, RuleFormula, AggregatedRuleSource, RuleType, FormulaStatus
)
from taxcore.services.calculation.brackets import Bracket, validate_brackets
from taxcore.services.formula.compiler import FormulaCompiler, FormulaSource
from taxcore.services.registry_service import registry_service
from .aspects import (
    BRACKETS_SUBJECT, Claim, ClaimExtractor, candidate_detail, from_decision, to_json_value, values_agree
)
from .precedence import precedence_key, rank_weight, tier_key
from .preflight import run_preflight

logger = logging.getLogger(__name__)

_ASPECT_ORDER = [a.value for a in ConflictAspect]


@dataclass
class AggregationConfig:
    numeric_tolerance: Decimal = field(default_factory=lambda: Decimal(str(settings.NUMERIC_TOLERANCE)))
    rate_tolerance: Decimal = field(default_factory=lambda: Decimal(str(settings.RATE_TOLERANCE)))
    required_aspects: List[str] = field(default_factory=lambda: list(settings.REQUIRED_ASPECTS))
    gap_tolerance: Decimal = field(default_factory=lambda: Decimal(str(settings.BRACKET_GAP_TOLERANCE)))


@dataclass
class SlotOutcome:
    """Accepted value for one slot plus its provenance links"""
    aspect: ConflictAspect
    subject: str
    value: Any
    ranked: List[Claim]
    decided_ids: Tuple[str, ...] = ()
    order_hint: Optional[int] = None
    description: Optional[str] = None


@dataclass
class AggregationOutcome:
    rule: TaxRule
    accepted: int
    pending: List[Tuple[str, str]]
    compile_error: Optional[CalculationException] = None


class AggregationEngine:
    """
    Usage:
        engine = AggregationEngine(db)
        run = engine.run(RuleType.INCOME_TAX, date(2024, 4, 1))
        print(run.status, run.conflicts_count)
    """

    def __init__(self, db: Session, config: Optional[AggregationConfig] = None):
        self.db = db
        self.config = config or AggregationConfig()
        self.current_run: Optional[AggregationRun] = None

    # =========================================================================
    # RUN LIFECYCLE
    # =========================================================================

    def run(self, tax_type: RuleType, target_date: date, requested_by: Optional[str] = None) -> AggregationRun:
        if crud_aggregation_run.get_active_run(self.db, tax_type, target_date):
            raise AggregationInProgressException()

        preflight = run_preflight(self.db, tax_type, target_date)
        if preflight.blockers:
            raise AggregationBlockedException(detail={
                "message": "Preflight check blocked aggregation.",
                "preflightId": preflight.id,
                "blockers": preflight.blockers,
            })

        run = crud_aggregation_run.create_run(self.db, tax_type, target_date, requested_by=requested_by)
        self.current_run = crud_aggregation_run.mark_run_running(self.db, run)
        logger.info(f"Aggregation run {run.id} started for {tax_type}@{target_date}")

        try:
            evidence = crud_rule.get_evidence_for_key(self.db, tax_type, target_date)
            outcome = self._aggregate(run, tax_type, target_date, evidence)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Aggregation run {run.id} hit a database error: {e}")
            return crud_aggregation_run.finish_run(
                self.db, run, AggregationRunStatus.FAILED,
                error_type=ErrorType.DATABASE_ERROR.value, error_message=str(e)
            )
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Aggregation run {run.id} failed unexpectedly")
            return crud_aggregation_run.finish_run(
                self.db, run, AggregationRunStatus.FAILED,
                error_type=ErrorType.UNKNOWN_ERROR.value, error_message=str(e)
            )

        try:
            return self._finalize(run, evidence, outcome)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Aggregation run {run.id} could not be finalized: {e}")
            return crud_aggregation_run.finish_run(
                self.db, run, AggregationRunStatus.FAILED,
                error_type=ErrorType.DATABASE_ERROR.value, error_message=str(e)
            )

    def _finalize(self, run: AggregationRun, evidence: List[TaxRule], outcome: AggregationOutcome) -> AggregationRun:
        conflicts_count = crud_conflict.count_unresolved(self.db, run.tax_type, run.target_date)
        blocking = sorted({
            aspect for aspect, _ in outcome.pending if aspect in self.config.required_aspects
        })

        status = AggregationRunStatus.COMPLETED
        error_type = None
        error_message = None

        if outcome.compile_error is not None:
            status = AggregationRunStatus.FAILED
            error_type = outcome.compile_error.error_type.value
            error_message = outcome.compile_error.message
        elif blocking:
            status = AggregationRunStatus.FAILED
            error_message = f"Open conflicts on required aspects: {', '.join(blocking)}"

        run = crud_aggregation_run.finish_run(
            self.db, run, status,
            inputs_count=len(evidence),
            outputs_count=outcome.accepted,
            conflicts_count=conflicts_count,
            aggregated_rule_id=outcome.rule.id,
            error_type=error_type,
            error_message=error_message
        )

        logger.info(
            f"Aggregation run {run.id} {status.value}: {len(evidence)} evidence, "
            f"{outcome.accepted} accepted, {conflicts_count} open conflicts"
        )

        return run

    # =========================================================================
    # SLOT RECONCILIATION
    # =========================================================================

    def _aggregate(
        self,
        run: AggregationRun,
        tax_type: RuleType,
        target_date: date,
        evidence: List[TaxRule]
    ) -> AggregationOutcome:
        # Registry writes (pending synonyms) happen before any rule content is flushed
        extractor = ClaimExtractor(lambda term: registry_service.resolve(self.db, term, source="aggregation"))

        slots: Dict[Tuple[str, str], List[Claim]] = {}
        inputs = set()
        for rule in evidence:
            extraction = extractor.extract(rule)
            inputs.update(extraction.inputs)
            for warning in extraction.warnings:
                run.add_warning(warning)
            for claim in extraction.claims:
                slots.setdefault((claim.aspect.value, claim.subject), []).append(claim)

        prior: Dict[Tuple[str, str], RuleConflict] = {}
        for conflict in crud_conflict.get_conflicts_for_key(self.db, tax_type, target_date):
            prior.setdefault((conflict.aspect.value, conflict.subject), conflict)

        accepted: List[SlotOutcome] = []
        pending: List[Tuple[str, str]] = []

        for slot_key in sorted(slots, key=lambda k: (_ASPECT_ORDER.index(k[0]), k[1])):
            aspect, subject = slot_key
            result = self._reconcile(run, ConflictAspect(aspect), subject, slots[slot_key], prior.get(slot_key))
            if result is None:
                pending.append(slot_key)
            else:
                accepted.append(result)

        rule = crud_rule.get_aggregated_rule_for_key(self.db, tax_type, target_date)
        if rule is None:
            rule = crud_rule.create_aggregated_rule(
                self.db, tax_type, target_date,
                title=f"{tax_type.value} rules effective {target_date.isoformat()}"
            )

        compile_error = self._build_content(run, rule, accepted, sorted(inputs), pending)

        return AggregationOutcome(rule=rule, accepted=len(accepted), pending=pending, compile_error=compile_error)

    def _reconcile(
        self,
        run: AggregationRun,
        aspect: ConflictAspect,
        subject: str,
        claims: List[Claim],
        prior: Optional[RuleConflict]
    ) -> Optional[SlotOutcome]:
        ranked = sorted(claims, key=lambda c: precedence_key(c.evidence))
        top = ranked[0]
        tier = [c for c in ranked if tier_key(c.evidence) == tier_key(top.evidence)]

        distinct: List[Claim] = []
        for claim in tier:
            if not any(self._agree(aspect, subject, claim.value, d.value) for d in distinct):
                distinct.append(claim)

        if len(distinct) == 1:
            if prior is not None and prior.is_unresolved:
                crud_conflict.withdraw_conflict(self.db, prior, "Top-ranked evidence no longer disagrees")
                logger.info(f"Conflict {prior.id} on {aspect.value}:{subject} withdrawn")
            return self._accept(aspect, subject, top, ranked)

        details = {"candidates": [candidate_detail(c) for c in tier], "ranked_count": len(ranked)}

        if prior is not None and prior.status == ConflictStatus.RESOLVED:
            decided = self._apply_decision(run, aspect, subject, prior, ranked)
            if decided is not None:
                return decided
            return None

        if prior is not None and prior.status == ConflictStatus.DISMISSED:
            return self._accept(aspect, subject, top, ranked)

        if prior is not None:
            crud_conflict.refresh_conflict_details(self.db, prior, details, run_id=run.id)
        else:
            conflict = crud_conflict.create_conflict(
                self.db, run.tax_type, run.target_date, aspect, subject, details, run_id=run.id
            )
            logger.warning(
                f"Conflict {conflict.id}: {len(distinct)} top-tier sources disagree on {aspect.value}:{subject}"
            )
        return None

    def _agree(self, aspect: ConflictAspect, subject: str, a: Any, b: Any) -> bool:
        return values_agree(aspect, subject, a, b, self.config.numeric_tolerance, self.config.rate_tolerance)

    def _accept(self, aspect: ConflictAspect, subject: str, chosen: Claim, ranked: List[Claim]) -> SlotOutcome:
        return SlotOutcome(
            aspect=aspect,
            subject=subject,
            value=chosen.value,
            ranked=ranked,
            order_hint=chosen.order_hint,
            description=chosen.description
        )

    def _apply_decision(
        self,
        run: AggregationRun,
        aspect: ConflictAspect,
        subject: str,
        conflict: RuleConflict,
        ranked: List[Claim]
    ) -> Optional[SlotOutcome]:
        decision = (conflict.details or {}).get("decision") or {}

        if decision.get("evidence_rule_id"):
            for claim in ranked:
                if claim.evidence.id == decision["evidence_rule_id"]:
                    outcome = self._accept(aspect, subject, claim, ranked)
                    outcome.decided_ids = (claim.evidence.id,)
                    return outcome
            run.add_warning(
                f"Decision on conflict {conflict.id} names evidence that is no longer in force",
                subject=subject
            )
            return None

        if "value" in decision:
            try:
                value = from_decision(aspect, subject, decision["value"])
            except (ValueError, ArithmeticError, TypeError) as e:
                run.add_warning(f"Decision on conflict {conflict.id} is unusable: {e}", subject=subject)
                return None
            matching = tuple(c.evidence.id for c in ranked if self._agree(aspect, subject, c.value, value))
            return SlotOutcome(
                aspect=aspect,
                subject=subject,
                value=value,
                ranked=ranked,
                decided_ids=matching,
                order_hint=ranked[0].order_hint,
                description=ranked[0].description
            )

        run.add_warning(f"Conflict {conflict.id} is resolved without a decision", subject=subject)
        return None

    # =========================================================================
    # RULE CONTENT
    # =========================================================================

    def _sources(self, outcome: SlotOutcome) -> List[AggregatedRuleSource]:
        sources = []
        seen = set()
        for position, claim in enumerate(outcome.ranked):
            if claim.evidence.id in seen:
                continue
            seen.add(claim.evidence.id)

            if claim.evidence.id in outcome.decided_ids:
                reason = "operator_decision"
            elif position == 0 and not outcome.decided_ids:
                reason = "selected"
            elif self._agree(outcome.aspect, outcome.subject, claim.value, outcome.value):
                reason = "agreeing"
            else:
                reason = "superseded"

            sources.append(AggregatedRuleSource(
                evidence_rule_id=claim.evidence.id,
                aspect=outcome.aspect.value,
                subject=outcome.subject,
                weight=rank_weight(position),
                reason=reason
            ))
        return sources

    def _build_content(
        self,
        run: AggregationRun,
        rule: TaxRule,
        accepted: List[SlotOutcome],
        inputs: List[str],
        pending: List[Tuple[str, str]]
    ) -> Optional[CalculationException]:
        rule_data: Dict[str, Any] = {"inputs": inputs, "values": {}, "units": {}, "definitions": {}}
        bracket_values = ()
        formula_slots: List[SlotOutcome] = []
        sources: List[AggregatedRuleSource] = []

        for outcome in accepted:
            sources.extend(self._sources(outcome))
            aspect, subject = outcome.aspect, outcome.subject

            if aspect == ConflictAspect.BRACKETS:
                bracket_values = outcome.value
            elif aspect == ConflictAspect.THRESHOLDS:
                category, key = subject.split(":", 1)
                if key in rule_data["values"]:
                    previous = rule_data["values"][key]["category"]
                    run.add_warning(
                        f"'{key}' is stated both as {previous} and as {category}; the {category} value is used",
                        subject=subject
                    )
                rule_data["values"][key] = {"category": category, "value": to_json_value(aspect, outcome.value)}
            elif aspect == ConflictAspect.UNITS:
                if subject == BRACKETS_SUBJECT:
                    rule_data["unit"] = outcome.value
                else:
                    rule_data["units"][subject] = outcome.value
            elif aspect == ConflictAspect.DEFINITIONS:
                rule_data["definitions"][subject] = outcome.value
            elif aspect == ConflictAspect.FORMULAS:
                formula_slots.append(outcome)
            elif aspect == ConflictAspect.OTHER:
                rule_data[subject] = outcome.value

        brackets = [
            TaxBracket(min_income=b[0], max_income=b[1], rate=b[2], fixed_amount=b[3], bracket_order=b[4])
            for b in bracket_values
        ]

        formula_slots.sort(key=lambda o: (o.order_hint if o.order_hint is not None else float("inf"), o.subject))
        formulas, compile_error = self._compile(formula_slots, bracket_values, rule_data)

        content_hash = _content_hash(rule_data, brackets, formulas)
        pending_aspects = sorted({aspect for aspect, _ in pending})

        crud_rule.replace_aggregated_content(
            self.db, rule, rule_data, brackets, formulas, sources, pending_aspects, content_hash,
            compile_error=compile_error.message if compile_error is not None else None
        )

        return compile_error

    def _compile(
        self,
        formula_slots: List[SlotOutcome],
        bracket_values,
        rule_data: Dict[str, Any]
    ) -> Tuple[List[RuleFormula], Optional[CalculationException]]:
        sources = [
            FormulaSource(
                output_variable=o.subject,
                expression=o.value,
                calculation_order=o.order_hint,
                description=o.description
            )
            for o in formula_slots
        ]
        constants = {key: Decimal(entry["value"]) for key, entry in rule_data["values"].items()}

        try:
            validate_brackets(
                [Bracket(*b) for b in bracket_values],
                gap_tolerance=self.config.gap_tolerance,
                amount_tolerance=self.config.numeric_tolerance
            )
            compiler = FormulaCompiler(lambda term: registry_service.lookup(self.db, term))
            plan = compiler.compile(
                sources,
                inputs=rule_data["inputs"],
                constants=constants,
                has_brackets=bool(bracket_values),
                enforce_order=True
            )
        except CalculationException as e:
            logger.warning(f"Aggregated rule rejected at compile time: {e}")
            invalid = [
                RuleFormula(
                    output_variable=s.output_variable,
                    expression=s.expression,
                    calculation_order=position,
                    description=s.description,
                    dependent_variables=[],
                    status=FormulaStatus.INVALID
                )
                for position, s in enumerate(sources, start=1)
            ]
            return invalid, e

        active = [
            RuleFormula(
                output_variable=f.output_key,
                expression=f.expression,
                calculation_order=f.calculation_order,
                description=f.description,
                dependent_variables=list(f.dependencies),
                status=FormulaStatus.ACTIVE
            )
            for f in plan.formulas
        ]
        return active, None


def _content_hash(rule_data: Dict[str, Any], brackets: List[TaxBracket], formulas: List[RuleFormula]) -> str:
    content = {
        "rule_data": rule_data,
        "brackets": [
            [str(b.min_income), str(b.max_income) if b.max_income is not None else None,
             str(b.rate), str(b.fixed_amount), b.bracket_order]
            for b in brackets
        ],
        "formulas": [
            [f.output_variable, f.expression, f.calculation_order, f.status.value, f.dependent_variables]
            for f in formulas
        ],
    }
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
